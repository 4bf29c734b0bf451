"""Content-addressed lookup of previously created media artifacts."""

import logging
from typing import Any, Dict, Optional, Tuple

from ..utils.dedup_key import normalize_source_key
from ..utils.models import Artifact

logger = logging.getLogger(__name__)


class DedupIndex:
    """
    Check-before-create over the media store.

    `create` relies on the store's unique dedup_key: the first writer wins,
    later writers get the winner back with created=False.
    """

    def __init__(self, store):
        self.store = store

    @staticmethod
    def key_for(source_key: str) -> str:
        key = normalize_source_key(source_key)
        if not key:
            raise ValueError(f"Cannot derive a dedup key from {source_key!r}")
        return key

    def lookup(self, dedup_key: str) -> Optional[Artifact]:
        return self.store.find_artifact_by_dedup_key(dedup_key)

    def create(self, dedup_key: str, payload: Dict[str, Any]) -> Tuple[Artifact, bool]:
        artifact = self.store.insert_artifact(dedup_key, payload)
        if artifact is not None:
            return artifact, True

        existing = self.store.find_artifact_by_dedup_key(dedup_key)
        if existing is None:
            # Conflict reported but the row is gone (deleted in between)
            raise RuntimeError(f"Artifact for {dedup_key} vanished after insert conflict")
        logger.info(f"Dedup race lost for {dedup_key}; using artifact {existing.id}")
        return existing, False

    def link(self, artifact: Artifact, subject_id: Optional[str]) -> bool:
        """Record that subject_id uses the artifact, unless it already does"""
        if not subject_id:
            return False
        subject_id = str(subject_id)
        if subject_id in artifact.used_in:
            return False

        added = self.store.add_artifact_usage(artifact.id, subject_id)
        if subject_id not in artifact.used_in:
            artifact.used_in.append(subject_id)
        return added
