"""
Safari Pipeline - HTTP Trigger Service
Flask app for job control from the CMS admin

Endpoints:
    POST /jobs                    - Queue a new itinerary job
    GET  /jobs/<job_id>           - Job status and progress
    POST /jobs/<job_id>/control   - cancel / retry / retry-failed
    POST /jobs/<job_id>/batch     - Run one media batch synchronously
    GET  /health                  - Health check

Environment:
    REDIS_URL: Redis connection string
    TRIGGER_SECRET: Shared secret for authentication (optional)
"""

import os
import logging
from datetime import datetime
from flask import Flask, request, jsonify

from .config import settings
from .pipeline.job_control import JobController
from .utils.db import get_db
from .utils.errors import JobNotFoundError, StoreConnectivityError
from .utils.execution import ExecutionTrigger, get_redis_connection

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Failure reason -> HTTP status
REASON_STATUS = {
    'invalid-action': 400,
    'invalid-state': 409,
    'nothing-to-retry': 409,
    'legacy-job': 409,
    'already-running': 409,
    'not-found': 404,
    'trigger-failed': 500,
}


def verify_auth():
    """Verify request authentication if TRIGGER_SECRET is set"""
    secret = app.config.get('TRIGGER_SECRET', settings.TRIGGER_SECRET)
    if not secret:
        return True

    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        token = auth_header[7:]
        return token == secret
    return False


def get_store():
    return app.config.get('JOB_STORE') or get_db()


def get_controller() -> JobController:
    trigger = app.config.get('EXECUTION_TRIGGER') or ExecutionTrigger()
    return JobController(get_store(), trigger)


def _unauthorized():
    return jsonify({
        'success': False,
        'error': 'Unauthorized'
    }), 401


def _result_response(result):
    if result.success:
        return jsonify(result.to_dict())
    return jsonify(result.to_dict()), REASON_STATUS.get(result.reason, 400)


@app.errorhandler(StoreConnectivityError)
def handle_store_error(e):
    logger.error(f"Job store unavailable: {e}")
    return jsonify({
        'success': False,
        'error': 'Job store unavailable'
    }), 503


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    try:
        conn = get_redis_connection()
        conn.ping()
        redis_status = 'connected'
    except Exception as e:
        redis_status = f'error: {str(e)}'

    return jsonify({
        'status': 'ok',
        'timestamp': datetime.utcnow().isoformat(),
        'redis': redis_status,
    })


@app.route('/jobs', methods=['POST'])
def queue_job():
    """
    Queue a new job for an itinerary URL.

    Request Body:
        {"itrvlUrl": "https://itrvl.com/...", "subjectId": "123"}

    Returns 409 with reason "already-running" when an unfinished job
    exists for the same URL.
    """
    if not verify_auth():
        return _unauthorized()

    params = request.get_json(silent=True) or {}
    result = get_controller().queue_job(params.get('itrvlUrl'), params.get('subjectId'))
    return _result_response(result)


@app.route('/jobs/<job_id>', methods=['GET'])
def get_job_status(job_id: str):
    """
    Get status of a job by ID.

    Returns:
        {
            "jobId": "42",
            "status": "processing",
            "currentPhase": "Phase 2: Processing Media",
            "version": 1,
            "progress": 40,
            "totalItems": 10,
            "processed": 3, "skipped": 1, "failed": 0,
            ...
        }
    """
    if not verify_auth():
        return _unauthorized()

    job = get_store().find_job(job_id)
    if job is None:
        return jsonify({
            'success': False,
            'error': 'Job not found',
            'reason': 'not-found'
        }), 404

    return jsonify({
        'jobId': job.id,
        'status': job.status,
        'currentPhase': job.current_phase,
        'version': job.version,
        'progress': job.progress_percent(),
        'totalItems': job.total_items,
        'processed': job.processed,
        'skipped': job.skipped,
        'failed': job.failed,
        'errorMessage': job.error_message,
        'errorPhase': job.error_phase,
        'startedAt': job.started_at.isoformat() if job.started_at else None,
        'completedAt': job.completed_at.isoformat() if job.completed_at else None,
    })


@app.route('/jobs/<job_id>/control', methods=['POST'])
def control_job(job_id: str):
    """
    Operator control.

    Request Body:
        {"action": "cancel" | "retry" | "retry-failed"}

    Returns:
        {"success": true, "message": "...", "jobId": "42"}
        {"success": false, "error": "...", "reason": "invalid-state"}
    """
    if not verify_auth():
        return _unauthorized()

    params = request.get_json(silent=True)
    if not isinstance(params, dict):
        return jsonify({
            'success': False,
            'error': 'Invalid JSON body',
            'reason': 'invalid-action'
        }), 400

    result = get_controller().execute(job_id, params.get('action'))
    if result.success:
        logger.info(f"Job {job_id}: {params.get('action')} -> {result.message}")
    return _result_response(result)


@app.route('/jobs/<job_id>/batch', methods=['POST'])
def run_batch(job_id: str):
    """
    Run one media batch in the request (for schedulers that call over HTTP).

    Request Body:
        {"subjectId": "123", "batchIndex": 0}

    Returns:
        {"jobId", "subjectId", "remaining", "succeeded", "failed", "aborted", "advanced"}
    """
    if not verify_auth():
        return _unauthorized()

    from .jobs.process_media import process_media_batch

    params = request.get_json(silent=True) or {}
    try:
        batch_index = int(params.get('batchIndex', 0))
    except (TypeError, ValueError):
        return jsonify({
            'success': False,
            'error': 'batchIndex must be an integer'
        }), 400

    try:
        output = process_media_batch(
            job_id,
            params.get('subjectId'),
            batch_index,
            store=get_store(),
            handlers=app.config.get('MEDIA_HANDLERS'),
        )
    except JobNotFoundError as e:
        return jsonify({
            'success': False,
            'error': str(e),
            'reason': 'not-found'
        }), 404

    return jsonify(output)


if __name__ == '__main__':
    port = int(os.environ.get('TRIGGER_PORT', 5001))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'

    logger.info(f"Starting HTTP Trigger Service on port {port}")
    app.run(host='0.0.0.0', port=port, debug=debug)
