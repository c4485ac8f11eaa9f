from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any, Literal
from datetime import datetime

ROW_OK = 'ok'
ROW_WARNING = 'warning'
ROW_ERROR = 'error'


class ApiModel(BaseModel):
    """Snake case in Python, camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FieldIssue(ApiModel):
    field: str
    message: str


class ValidationSample(ApiModel):
    row: int
    status: str = ROW_OK
    raw: Dict[str, Any] = Field(default_factory=dict)
    data: Optional[Dict[str, Any]] = None
    errors: List[FieldIssue] = Field(default_factory=list)
    warnings: List[FieldIssue] = Field(default_factory=list)
    matched_id: Optional[str] = None
    match_type: Optional[str] = None
    action: Optional[str] = None  # create, update or skip

    def error(self, field: str, message: str):
        self.errors.append(FieldIssue(field=field, message=message))

    def warn(self, field: str, message: str):
        self.warnings.append(FieldIssue(field=field, message=message))

    def classify(self) -> str:
        if self.errors:
            self.status = ROW_ERROR
        elif self.warnings:
            self.status = ROW_WARNING
        else:
            self.status = ROW_OK
        return self.status

    @property
    def writable(self) -> bool:
        return self.status != ROW_ERROR


class ImportStats(ApiModel):
    total: int = 0
    ok: int = 0
    warning: int = 0
    error: int = 0
    to_create: int = 0
    to_update: int = 0


class SampleSet(ApiModel):
    ok: List[ValidationSample] = Field(default_factory=list)
    warnings: List[ValidationSample] = Field(default_factory=list)
    errors: List[ValidationSample] = Field(default_factory=list)


class ValidationResult(ApiModel):
    job_id: Optional[str] = None
    status: str = 'validated'
    stats: ImportStats = Field(default_factory=ImportStats)
    samples: SampleSet = Field(default_factory=SampleSet)
    conflicts: List[Dict[str, Any]] = Field(default_factory=list)


class RowFailure(ApiModel):
    row: int
    message: str


class RunResult(ApiModel):
    """Outcome of phase 2.

    `total` counts the rows eligible for writing, so
    created + updated + skipped + failed == total always holds; rows
    rejected at validation are reported in `invalid`.
    """
    job_id: Optional[str] = None
    status: str = 'completed'
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0
    invalid: int = 0
    rows: int = 0
    failures: List[RowFailure] = Field(default_factory=list)
    conflicts: List[Dict[str, Any]] = Field(default_factory=list)

    def record(self, outcome: str):
        if outcome == 'created':
            self.created += 1
        elif outcome == 'updated':
            self.updated += 1
        else:
            self.skipped += 1
        self.total += 1

    def record_failure(self, row: int, message: str):
        self.failed += 1
        self.total += 1
        self.failures.append(RowFailure(row=row, message=message))

    @property
    def consistent(self) -> bool:
        return self.created + self.updated + self.skipped + self.failed == self.total


class UploadRequest(ApiModel):
    content: str
    file_name: str = 'import.csv'


class JobRequest(ApiModel):
    job_id: str


class CalendarImportRequest(ApiModel):
    calendar_id: Optional[str] = None
    time_min: datetime
    time_max: datetime
    mode: Literal['preview', 'import'] = 'preview'
