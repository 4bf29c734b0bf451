"""
PostgreSQL Job Store for the Safari pipeline workers

Reads and writes the CMS tables the batch pipeline owns:
- itinerary_jobs: one row per pipeline run
- image_statuses: authoritative per-item status (keyed by job_id + source_key)
- media: processed media artifacts (unique dedup_key)
- notifications: admin notifications

There is no multi-statement transaction across these tables. Counters are
recomputed from image_statuses instead of being incremented in place.
"""

import os
import logging
import time
from typing import Optional, Dict, Any, List
from contextlib import contextmanager
import psycopg2
from psycopg2.extras import RealDictCursor, Json

from ..config import settings
from .errors import StoreConnectivityError
from .models import Job, WorkItem, Artifact, ItemStatus, ACTIVE_JOB_STATUSES

logger = logging.getLogger(__name__)

# Retry configuration for connection failures
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1

JOB_COLUMNS = {
    'status', 'current_phase', 'version', 'previous_versions',
    'total_items', 'processed', 'skipped', 'failed',
    'error_message', 'error_phase', 'started_at', 'completed_at',
}
WORK_ITEM_COLUMNS = {
    'status', 'artifact_id', 'error', 'started_at', 'completed_at',
}
JSON_COLUMNS = {'previous_versions', 'enrichment', 'used_in'}


def _set_clause(patch: Dict[str, Any], allowed: set) -> tuple:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Unknown columns in update: {sorted(unknown)}")

    assignments = []
    params = []
    for column, value in patch.items():
        assignments.append(f"{column} = %s")
        params.append(Json(value) if column in JSON_COLUMNS and value is not None else value)
    return ', '.join(assignments), params


class DatabaseClient:
    """PostgreSQL-backed job store for the media pipeline"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.DATABASE_URL
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is required")

    def _create_connection(self):
        """Create a new database connection with proper SSL settings"""
        sslmode = 'require' if os.environ.get('NODE_ENV') == 'production' else 'prefer'

        return psycopg2.connect(
            self.database_url,
            cursor_factory=RealDictCursor,
            sslmode=sslmode,
            connect_timeout=10,
            options='-c statement_timeout=30000'
        )

    def _connect(self):
        """Open a connection, retrying connection-level failures"""
        last_error = None

        for attempt in range(MAX_RETRIES):
            try:
                return self._create_connection()
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                last_error = e
                logger.warning(f"Database connection error (attempt {attempt + 1}/{MAX_RETRIES}): {e}")
                if attempt < MAX_RETRIES - 1:
                    time.sleep(RETRY_DELAY_SECONDS * (attempt + 1))

        logger.error(f"Database connection failed after {MAX_RETRIES} retries: {last_error}")
        raise StoreConnectivityError(f"Database unreachable: {last_error}") from last_error

    @contextmanager
    def get_cursor(self):
        """Context manager for a cursor on a fresh connection; commits on success"""
        conn = self._connect()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except psycopg2.Error as e:
            logger.error(f"Database error: {e}")
            try:
                conn.rollback()
            except psycopg2.Error:
                pass
            raise StoreConnectivityError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            cursor.close()
            conn.close()

    # =========================================================================
    # JOBS
    # =========================================================================

    def find_job(self, job_id: str) -> Optional[Job]:
        sql = "SELECT * FROM itinerary_jobs WHERE id = %s"
        with self.get_cursor() as cursor:
            cursor.execute(sql, (job_id,))
            row = cursor.fetchone()
            return Job.from_row(dict(row)) if row else None

    def find_active_job_for_source(self, source_url: str) -> Optional[Job]:
        """Admission check: an unfinished job already running for this source"""
        sql = """
            SELECT * FROM itinerary_jobs
            WHERE source_url = %s AND status IN %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (source_url, tuple(ACTIVE_JOB_STATUSES)))
            row = cursor.fetchone()
            return Job.from_row(dict(row)) if row else None

    def create_job(self, source_url: str, subject_id: Optional[str] = None,
                   current_phase: Optional[str] = None) -> Job:
        sql = """
            INSERT INTO itinerary_jobs (source_url, subject_id, status, current_phase, version, previous_versions)
            VALUES (%s, %s, 'pending', %s, 1, '[]'::jsonb)
            RETURNING *
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (source_url, subject_id, current_phase))
            return Job.from_row(dict(cursor.fetchone()))

    def update_job(self, job_id: str, patch: Dict[str, Any],
                   expected_status: Optional[str] = None) -> bool:
        """
        Apply a partial update to a job.

        With expected_status, the update only applies while the job still has
        that status. Returns False when no row was updated.
        """
        if not patch:
            return True

        assignments, params = _set_clause(patch, JOB_COLUMNS)
        sql = f"UPDATE itinerary_jobs SET {assignments}, updated_at = NOW() WHERE id = %s"
        params.append(job_id)
        if expected_status is not None:
            sql += " AND status = %s"
            params.append(expected_status)

        with self.get_cursor() as cursor:
            cursor.execute(sql, tuple(params))
            return cursor.rowcount > 0

    # =========================================================================
    # WORK ITEMS (image_statuses)
    # =========================================================================

    def find_pending_work_items(self, job_id: str, limit: int) -> List[WorkItem]:
        sql = """
            SELECT * FROM image_statuses
            WHERE job_id = %s AND status = 'pending'
            ORDER BY source_key
            LIMIT %s
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (job_id, limit))
            return [WorkItem.from_row(dict(row)) for row in cursor.fetchall()]

    def claim_work_item(self, job_id: str, source_key: str) -> bool:
        """Move a pending item to processing; False if another run already took it"""
        sql = """
            UPDATE image_statuses
            SET status = 'processing', started_at = NOW(), error = NULL
            WHERE job_id = %s AND source_key = %s AND status = 'pending'
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (job_id, source_key))
            return cursor.rowcount > 0

    def update_work_item(self, job_id: str, source_key: str, patch: Dict[str, Any]) -> bool:
        assignments, params = _set_clause(patch, WORK_ITEM_COLUMNS)
        sql = f"UPDATE image_statuses SET {assignments} WHERE job_id = %s AND source_key = %s"
        params.extend([job_id, source_key])

        with self.get_cursor() as cursor:
            cursor.execute(sql, tuple(params))
            if cursor.rowcount == 0:
                logger.error(f"Work item not found: job={job_id}, source_key={source_key}")
                return False
            return True

    def count_by_status(self, job_id: str) -> Dict[str, int]:
        """Count work items per status; every status is present in the result"""
        sql = """
            SELECT status, COUNT(*) AS count
            FROM image_statuses
            WHERE job_id = %s
            GROUP BY status
        """
        counts = {status.value: 0 for status in ItemStatus}
        with self.get_cursor() as cursor:
            cursor.execute(sql, (job_id,))
            for row in cursor.fetchall():
                counts[row['status']] = int(row['count'])
        return counts

    def reset_failed_work_items(self, job_id: str) -> int:
        sql = """
            UPDATE image_statuses
            SET status = 'pending', error = NULL, started_at = NULL, completed_at = NULL
            WHERE job_id = %s AND status = 'failed'
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (job_id,))
            return cursor.rowcount

    def release_stale_work_items(self, job_id: str, older_than_seconds: int) -> int:
        """Return items stuck in 'processing' (crashed invocation) to 'pending'"""
        sql = """
            UPDATE image_statuses
            SET status = 'pending', started_at = NULL
            WHERE job_id = %s AND status = 'processing'
              AND (started_at IS NULL OR started_at < NOW() - make_interval(secs => %s))
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (job_id, older_than_seconds))
            return cursor.rowcount

    # =========================================================================
    # MEDIA ARTIFACTS
    # =========================================================================

    def find_artifact_by_dedup_key(self, dedup_key: str) -> Optional[Artifact]:
        sql = "SELECT * FROM media WHERE dedup_key = %s"
        with self.get_cursor() as cursor:
            cursor.execute(sql, (dedup_key,))
            row = cursor.fetchone()
            return Artifact.from_row(dict(row)) if row else None

    def insert_artifact(self, dedup_key: str, payload: Dict[str, Any]) -> Optional[Artifact]:
        """
        Insert a media artifact unless one with this dedup_key exists.

        Returns the new artifact, or None when another writer got there first.
        """
        sql = """
            INSERT INTO media (dedup_key, media_type, url, width, height, enrichment, used_in)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (dedup_key) DO NOTHING
            RETURNING *
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (
                dedup_key,
                payload.get('media_type', 'image'),
                payload.get('url'),
                payload.get('width'),
                payload.get('height'),
                Json(payload.get('enrichment') or {}),
                Json(list(payload.get('used_in') or [])),
            ))
            row = cursor.fetchone()
            return Artifact.from_row(dict(row)) if row else None

    def add_artifact_usage(self, artifact_id: str, subject_id: str) -> bool:
        """Append subject_id to media.used_in unless it is already a member"""
        sql = """
            UPDATE media
            SET used_in = used_in || %s::jsonb
            WHERE id = %s AND NOT (used_in @> %s::jsonb)
        """
        member = Json([subject_id])
        with self.get_cursor() as cursor:
            cursor.execute(sql, (member, artifact_id, member))
            return cursor.rowcount > 0

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    def create_notification(self, type: str, message: str, job_id: Optional[str] = None,
                            subject_id: Optional[str] = None) -> None:
        sql = """
            INSERT INTO notifications (type, message, job_id, subject_id, read)
            VALUES (%s, %s, %s, %s, false)
        """
        with self.get_cursor() as cursor:
            cursor.execute(sql, (type, message, job_id, subject_id))


# Singleton instance
_db_client: Optional[DatabaseClient] = None


def get_db() -> DatabaseClient:
    """Get or create the database client singleton"""
    global _db_client
    if _db_client is None:
        _db_client = DatabaseClient()
    return _db_client
