"""
Two-phase import protocol shared by the CSV patient import and the calendar
event import.

Phase 1 (validate) classifies every row without writing domain records.
Phase 2 (run) re-checks the content hash, claims the job with a conditional
status update and writes each eligible row in its own savepoint.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Any
from sqlalchemy.orm import Session
import csv
import hashlib
import io
import logging

from cassius_sync.database.models import ImportJob, utcnow
from cassius_sync.errors import NotFoundError, JobStateError, StaleJobError
from cassius_sync.models.imports import (
    ValidationSample, ValidationResult, RunResult, ImportStats, SampleSet, ROW_WARNING, ROW_ERROR
)

logger = logging.getLogger(__name__)

VALIDATABLE_STATUSES = ('uploaded', 'validated', 'failed')


def content_hash(content: str) -> str:
    """sha256 of the content, first 16 hex chars"""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()[:16]


class ImportPipeline(ABC):
    kind: str = None

    def __init__(self, session: Session, tenant_id: str, sample_limit: int = 20, user_id: Optional[str] = None):
        self.session = session
        self.tenant_id = tenant_id
        self.sample_limit = sample_limit
        self.user_id = user_id

    @abstractmethod
    def parse(self, content: str) -> List[Any]:
        """Split content into rows, in a stable order; raises UnreadableFileError"""

    @abstractmethod
    def validate_rows(self, rows: List[Any]) -> List[ValidationSample]:
        """Classify every row; reads are allowed, writes are not"""

    @abstractmethod
    def write_row(self, sample: ValidationSample) -> str:
        """Write one eligible row; returns 'created', 'updated' or 'skipped'"""

    # Phase 1

    def preview(self, content: str) -> ValidationResult:
        samples = self.validate_rows(self.parse(content))
        return self.summarize(samples)

    def summarize(self, samples: List[ValidationSample]) -> ValidationResult:
        stats = ImportStats(total=len(samples))
        sample_set = SampleSet()
        for sample in samples:
            if sample.status == ROW_ERROR:
                stats.error += 1
                bucket = sample_set.errors
            elif sample.status == ROW_WARNING:
                stats.warning += 1
                bucket = sample_set.warnings
            else:
                stats.ok += 1
                bucket = sample_set.ok

            if sample.writable:
                if sample.action == 'create':
                    stats.to_create += 1
                elif sample.action == 'update':
                    stats.to_update += 1

            if len(bucket) < self.sample_limit:
                bucket.append(sample)
        return ValidationResult(stats=stats, samples=sample_set)

    # Job lifecycle

    def upload(self, content: str, file_name: Optional[str] = None) -> ImportJob:
        """Store the content and check it can be read at all"""
        self.parse(content)
        job = ImportJob(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            kind=self.kind,
            status='uploaded',
            file_name=file_name,
            content=content,
            file_hash=content_hash(content)
        )
        self.session.add(job)
        self.session.commit()
        logger.info(f"Uploaded {self.kind} import job {job.id} ({file_name}, hash {job.file_hash})")
        return job

    def get_job(self, job_id: str) -> ImportJob:
        job = (
            self.session.query(ImportJob)
            .filter(ImportJob.id == job_id, ImportJob.tenant_id == self.tenant_id)
            .first()
        )
        if job is None:
            raise NotFoundError("Import job", job_id)
        return job

    def last_job(self) -> Optional[ImportJob]:
        return (
            self.session.query(ImportJob)
            .filter(ImportJob.tenant_id == self.tenant_id, ImportJob.kind == self.kind)
            .order_by(ImportJob.created_at.desc())
            .first()
        )

    def validate(self, job_id: str) -> ValidationResult:
        job = self.get_job(job_id)
        if job.status not in VALIDATABLE_STATUSES:
            raise JobStateError(f"Import job {job_id} is {job.status} and cannot be validated")

        result = self.preview(job.content)
        result.job_id = job.id

        job.status = 'validated'
        job.validated_hash = content_hash(job.content)
        job.validated_at = utcnow()
        job.stats = result.stats.model_dump(by_alias=True)
        job.samples = result.samples.model_dump(by_alias=True, mode='json')
        job.error_message = None
        self.session.commit()

        logger.info(f"Validated import job {job.id}: {job.stats}")
        return result

    # Phase 2

    def _claim(self, job: ImportJob):
        """validated -> running; a concurrent second run observes 0 rows and fails"""
        now = utcnow()
        claimed = (
            self.session.query(ImportJob)
            .filter(
                ImportJob.id == job.id,
                ImportJob.tenant_id == self.tenant_id,
                ImportJob.status == 'validated'
            )
            .update({'status': 'running', 'started_at': now}, synchronize_session=False)
        )
        self.session.commit()
        if claimed == 0:
            self.session.refresh(job)
            raise JobStateError(f"Import job {job.id} is already {job.status}")
        self.session.refresh(job)

    def run(self, job_id: str) -> RunResult:
        job = self.get_job(job_id)
        if job.status != 'validated':
            raise JobStateError(f"Import job {job_id} is {job.status}, validate it before running")

        current = content_hash(job.content)
        if current != job.validated_hash or current != job.file_hash:
            raise StaleJobError(job.id)

        self._claim(job)

        result = RunResult(job_id=job.id)
        try:
            samples = self.validate_rows(self.parse(job.content))
            for sample in samples:
                if not sample.writable:
                    result.invalid += 1
                    continue
                try:
                    with self.session.begin_nested():
                        outcome = self.write_row(sample)
                    result.record(outcome)
                except Exception as e:
                    logger.error(f"Import job {job.id} row {sample.row} failed: {e}")
                    result.record_failure(sample.row, str(e))
            self.after_run(samples, result)

            result.rows = result.total + result.invalid
            job.status = 'completed'
            job.result = result.model_dump(by_alias=True, exclude={'failures', 'conflicts'})
            job.failures = [f.model_dump() for f in result.failures]
            job.completed_at = utcnow()
            self.session.commit()
        except Exception as e:
            logger.error(f"Import job {job.id} aborted: {e}")
            self.session.rollback()
            job = self.get_job(job_id)
            job.status = 'failed'
            job.error_message = str(e)
            job.completed_at = utcnow()
            self.session.commit()
            raise

        logger.info(
            f"Import job {job.id} completed: {result.created} created, {result.updated} updated, "
            f"{result.skipped} skipped, {result.failed} failed, {result.invalid} invalid"
        )
        return result

    def after_run(self, samples: List[ValidationSample], result: RunResult):
        """Hook for work that belongs to the same transaction as the rows"""

    # Reporting

    def error_report(self, job_id: str) -> str:
        """CSV of the rows rejected at validation and the rows that failed to write"""
        job = self.get_job(job_id)
        samples = self.validate_rows(self.parse(job.content))
        # A row that failed to write would fail validation again now; report it once
        failed_rows = {failure['row'] for failure in job.failures or []}

        output = io.StringIO()
        writer = csv.writer(output, delimiter=';')
        writer.writerow(['ligne', 'etape', 'champ', 'message', 'donnees'])
        for sample in samples:
            if sample.status != ROW_ERROR or sample.row in failed_rows:
                continue
            raw = ' | '.join(f"{k}={v}" for k, v in sample.raw.items() if v not in (None, ''))
            for issue in sample.errors:
                writer.writerow([sample.row, 'validation', issue.field, issue.message, raw])
        for failure in job.failures or []:
            writer.writerow([failure['row'], 'import', '', failure['message'], ''])
        return output.getvalue()


