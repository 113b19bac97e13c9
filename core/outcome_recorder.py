"""
Outcome Recorder

Persists job status transitions, audit records and proof screenshots. The
job status write is authoritative; audit and proof writes are advisory and
never fail the job.

Usage:
    recorder = OutcomeRecorder(store=database, proof_storage=LocalProofStorage())
    artifact = await recorder.capture_proof(job, page, "success")
    await recorder.record_terminal(job, JobStatus.COMPLETED, account=account, ...)
    await recorder.attach_proof(job.id, artifact)
"""

import logging
import re
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from core.error_handler import describe_error
from core.models import (
    Account,
    AuditRecord,
    Job,
    JobStatus,
    ProofArtifact,
)

logger = logging.getLogger(__name__)

NAMING_TEMPLATE = "{job_id}_{label}_{timestamp}.png"


def _sanitize(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", value)[:60]


class OutcomeRecorder:
    """Job status, audit log and proof capture. ``store`` follows ``api.database``."""

    def __init__(self, store=None, proof_storage=None, full_page: bool = False):
        if store is None:
            from api import database as store
        self.store = store
        self.proof_storage = proof_storage
        self.full_page = full_page

    async def assign_account(self, job: Job, account: Account):
        """Remember which account a claimed job is using."""
        job.assigned_account_id = account.id
        await self.store.assign_job_account(job.id, account.id)

    async def record_start(
        self,
        job: Job,
        account: Optional[Account] = None,
        proxy_ref: Optional[str] = None,
        direct_connection: bool = False,
    ):
        """Optional in_progress audit entry; failures are logged only."""
        try:
            await self.store.insert_audit_record(**asdict(AuditRecord(
                job_id=job.id,
                status=JobStatus.IN_PROGRESS.value,
                account_id=account.id if account else None,
                proxy_identifier=proxy_ref,
                direct_connection=direct_connection,
                started_at=job.started_at or datetime.now(),
            )))
        except Exception as e:
            logger.warning(f"Start audit write failed for job {job.id}: {e}")

    async def record_terminal(
        self,
        job: Job,
        status: JobStatus,
        account: Optional[Account] = None,
        error: Optional[BaseException] = None,
        *,
        proxy_ref: Optional[str] = None,
        direct_connection: bool = False,
        method: Optional[str] = None,
        confidence: Optional[str] = None,
    ) -> bool:
        """
        Write the terminal status, then an audit record.

        Returns True if the status write applied. A job already terminal is
        left untouched. Audit failures are logged and never undo the status.
        """
        status = JobStatus(status)
        error_message = describe_error(error) if error is not None else None

        applied = await self.store.update_job_status(
            job.id,
            status.value,
            error_message=error_message,
            assigned_account_id=account.id if account else None,
            method=method,
            confidence=confidence,
        )
        if applied:
            job.status = status
            job.error_message = error_message or job.error_message
            job.method = method or job.method
            job.confidence = confidence or job.confidence
        else:
            logger.warning(f"Job {job.id} was already terminal, status {status.value} not applied")

        try:
            await self.store.insert_audit_record(**asdict(AuditRecord(
                job_id=job.id,
                status=status.value,
                account_id=account.id if account else None,
                proxy_identifier=proxy_ref,
                direct_connection=direct_connection,
                method=method,
                confidence=confidence,
                error_message=error_message,
                started_at=job.started_at,
                completed_at=datetime.now(),
            )))
        except Exception as e:
            logger.error(f"Audit write failed for job {job.id}: {e}")

        return applied

    async def capture_proof(self, job: Job, page, label: str) -> Optional[ProofArtifact]:
        """Screenshot the page and upload it. Returns None on any failure."""
        if page is None or self.proof_storage is None:
            return None

        name = NAMING_TEMPLATE.format(
            job_id=_sanitize(job.id),
            label=_sanitize(label),
            timestamp=datetime.now().strftime("%Y%m%d_%H%M%S"),
        )
        try:
            data = await page.screenshot(full_page=self.full_page)
            url = await self.proof_storage.upload(data, "image/png", name)
        except Exception as e:
            logger.warning(f"Proof capture failed for job {job.id}: {e}")
            return None

        logger.info(f"Proof captured for job {job.id}: {url}")
        return ProofArtifact(url=url, path_ref=name)

    async def attach_proof(self, job_id: str, artifact: Optional[ProofArtifact]) -> bool:
        """Link a proof to the job's latest audit record. Best-effort."""
        if artifact is None:
            return False
        try:
            return await self.store.attach_screenshot_to_latest_audit(job_id, artifact.url)
        except Exception as e:
            logger.warning(f"Could not attach proof to job {job_id}: {e}")
            return False
