from typing import List
from pydantic import Field

from .imports import ApiModel


class SyncStatus(ApiModel):
    """Counts for one export pass (internal appointments -> Google)"""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0
    errors: List[str] = Field(default_factory=list)

    def record(self, outcome: str):
        setattr(self, outcome, getattr(self, outcome) + 1)
        self.total += 1
