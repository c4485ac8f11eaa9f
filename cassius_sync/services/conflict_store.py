from typing import List, Optional, Tuple
from sqlalchemy.orm import Session
import hashlib
import json
import logging

from cassius_sync.database.models import SyncConflict, CONFLICT_STATUSES, utcnow
from cassius_sync.errors import NotFoundError, ValidationError
from cassius_sync.models.conflict import ConflictCandidate

logger = logging.getLogger(__name__)


def payload_fingerprint(payload) -> str:
    encoded = json.dumps(payload or {}, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode('utf-8')).hexdigest()[:16]


class ConflictStore:
    """Durable record of sync conflicts for one tenant"""

    def __init__(self, session: Session, tenant_id: str):
        self.session = session
        self.tenant_id = tenant_id

    def _query(self):
        return self.session.query(SyncConflict).filter(SyncConflict.tenant_id == self.tenant_id)

    def _check_status(self, status: str):
        if status not in CONFLICT_STATUSES:
            raise ValidationError(
                f"Invalid conflict status '{status}', expected one of {', '.join(CONFLICT_STATUSES)}"
            )

    def list(self, status: Optional[str] = None) -> List[SyncConflict]:
        """List conflicts, newest first"""
        query = self._query()
        if status:
            self._check_status(status)
            query = query.filter(SyncConflict.status == status)
        return query.order_by(SyncConflict.created_at.desc()).all()

    def get(self, conflict_id: str) -> SyncConflict:
        conflict = self._query().filter(SyncConflict.id == conflict_id).first()
        if conflict is None:
            raise NotFoundError("Conflict", conflict_id)
        return conflict

    def count(self, status: Optional[str] = None) -> int:
        query = self._query()
        if status:
            query = query.filter(SyncConflict.status == status)
        return query.count()

    def create_if_absent(self, candidate: ConflictCandidate) -> Tuple[SyncConflict, bool]:
        """Persist a conflict unless the same divergence is already recorded.

        An open conflict with the same (external id, reason) key is returned
        untouched. A resolved or ignored one with the same key and payload is
        not reopened either; a changed payload is a new divergence.
        """
        fingerprint = payload_fingerprint(candidate.payload)
        existing = (
            self._query()
            .filter(
                SyncConflict.external_id == candidate.external_id,
                SyncConflict.reason == candidate.reason
            )
            .order_by(SyncConflict.created_at.desc())
            .all()
        )
        for conflict in existing:
            if conflict.status == 'open' or conflict.fingerprint == fingerprint:
                return conflict, False

        conflict = SyncConflict(
            tenant_id=self.tenant_id,
            source=candidate.source,
            entity_type=candidate.entity_type,
            external_id=candidate.external_id,
            internal_id=candidate.internal_id,
            reason=candidate.reason,
            payload=candidate.payload,
            fingerprint=fingerprint,
            status='open'
        )
        self.session.add(conflict)
        self.session.flush()
        logger.info(f"Recorded conflict '{candidate.reason}' for event {candidate.external_id}")
        return conflict, True

    def record_all(self, candidates: List[ConflictCandidate]) -> List[SyncConflict]:
        """Persist a detector batch and return the conflicts it created"""
        created = []
        for candidate in candidates:
            conflict, is_new = self.create_if_absent(candidate)
            if is_new:
                created.append(conflict)
        return created

    def update_status(self, conflict_id: str, status: str, resolution: Optional[str] = None,
                      user_id: Optional[str] = None) -> SyncConflict:
        """Operator action; changes the audit status only, never triggers a sync"""
        self._check_status(status)
        conflict = self.get(conflict_id)
        conflict.status = status
        if resolution is not None:
            conflict.resolution = resolution
        now = utcnow()
        conflict.updated_at = now
        if status == 'open':
            conflict.resolved_at = None
            conflict.resolved_by = None
        else:
            conflict.resolved_at = now
            conflict.resolved_by = user_id
        self.session.flush()
        return conflict
