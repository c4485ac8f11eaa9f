from typing import Optional, Literal, Dict, Any
from pydantic import BaseModel, Field

from .imports import ApiModel

SOURCE_GOOGLE = 'google'
SOURCE_INTERNAL = 'cassius'

REASON_DELETED_EXTERNALLY = 'deleted externally'
REASON_MODIFIED_EXTERNALLY = 'modified externally without local change'
REASON_TENTATIVE_MATCH = 'unlinked event matches appointment'
REASON_AMBIGUOUS_MATCH = 'ambiguous match'


class ConflictCandidate(BaseModel):
    """A divergence found by the detector, not yet persisted"""
    source: str = SOURCE_GOOGLE
    entity_type: str = 'event'
    external_id: Optional[str] = None
    internal_id: Optional[str] = None
    reason: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self):
        return {
            'source': self.source,
            'entityType': self.entity_type,
            'externalId': self.external_id,
            'internalId': self.internal_id,
            'reason': self.reason,
            'payload': self.payload
        }


class ConflictUpdate(ApiModel):
    status: Literal['open', 'resolved', 'ignored']
    resolution: Optional[str] = None
