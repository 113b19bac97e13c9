#!/usr/bin/env python3
"""
Job Scheduler

Polls the job store and processes one review report at a time:
- Claims the oldest pending job atomically (pending -> in_progress)
- Leases an account and proxy, verifies credentials, borrows the browser page
- Runs the report interaction and records the terminal outcome
- Reschedules itself with a cancellable timer; stop() is cooperative

This scheduler is designed to run inside the FastAPI lifespan or the
`main.py worker` command.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from api.config import config as app_config
from api.credential_verifier import get_credential_verifier
from api.logging_config import log_job_event, logger
from api.proof_storage import get_proof_storage
from core.browser import SessionHost
from core.error_handler import (
    AuthenticationFailure,
    JobCancelled,
    ResourceExhausted,
    describe_error,
)
from core.interaction import InteractionConfig, ReportInteraction
from core.models import Account, Job, JobStatus, ProofArtifact, RunStats
from core.outcome_recorder import OutcomeRecorder
from core.resource_directory import ResourceDirectory
from core.retry import Backoff, with_retry
from core.session_auth import BrowserSessionAuthenticator
from core.strategies import classify_route

DIRECT_PROXY_REF = "direct"


@dataclass
class WorkerConfig:
    poll_interval_seconds: float = float(os.getenv("POLL_INTERVAL_SECONDS", "10.0"))
    bookkeeping_retry_delay_seconds: float = float(os.getenv("BOOKKEEPING_RETRY_DELAY_SECONDS", "10.0"))

    # Terminal status write
    terminal_write_attempts: int = int(os.getenv("TERMINAL_WRITE_ATTEMPTS", "3"))
    terminal_write_retry_delay_seconds: float = float(os.getenv("TERMINAL_WRITE_RETRY_DELAY_SECONDS", "1.0"))

    # Pacing between UI actions
    action_delay_min_seconds: float = float(os.getenv("ACTION_DELAY_MIN_SECONDS", "0.5"))
    action_delay_max_seconds: float = float(os.getenv("ACTION_DELAY_MAX_SECONDS", "1.5"))

    # Log the public IP the browser egresses from before each job
    probe_egress_ip: bool = os.getenv("PROBE_EGRESS_IP", "false").lower() == "true"


@dataclass
class JobOutcome:
    """A finished job whose terminal state still has to be persisted."""
    job: Job
    status: JobStatus
    account: Optional[Account] = None
    error: Optional[BaseException] = None
    proxy_ref: Optional[str] = None
    direct_connection: bool = False
    method: Optional[str] = None
    confidence: Optional[str] = None
    artifact: Optional[ProofArtifact] = None


@dataclass
class SchedulerState:
    """Everything the scheduler mutates, owned by one instance."""
    running: bool = False
    timer: Optional[asyncio.TimerHandle] = None
    tick_task: Optional[asyncio.Task] = None
    generation: int = 0
    current_job: Optional[Job] = None
    # Set while a terminal write is outstanding; no new job is claimed until it lands.
    pending_outcome: Optional[JobOutcome] = None
    started_at: Optional[datetime] = None
    stats: RunStats = field(default_factory=RunStats)


@dataclass
class JobScheduler:
    store: Any = None
    session_host: Optional[SessionHost] = None
    directory: Optional[ResourceDirectory] = None
    recorder: Optional[OutcomeRecorder] = None
    verifier: Any = None
    session_auth: Optional[BrowserSessionAuthenticator] = None
    config: WorkerConfig = field(default_factory=WorkerConfig)
    interaction_config: Optional[InteractionConfig] = None
    state: SchedulerState = field(default_factory=SchedulerState)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    _recovered: bool = False

    def __post_init__(self):
        if self.store is None:
            from api import database
            self.store = database
        if self.session_host is None:
            self.session_host = SessionHost(
                headless=app_config.HEADLESS,
                executable_path=app_config.BROWSER_EXECUTABLE_PATH,
                timeout_ms=app_config.BROWSER_TIMEOUT_MS,
            )
        if self.directory is None:
            self.directory = ResourceDirectory(self.store)
        if self.recorder is None:
            self.recorder = OutcomeRecorder(self.store, get_proof_storage())
        if self.verifier is None:
            self.verifier = get_credential_verifier(self.store)
        if self.session_auth is None:
            self.session_auth = BrowserSessionAuthenticator(self.store)
        if self.interaction_config is None:
            self.interaction_config = InteractionConfig(
                action_delay=(self.config.action_delay_min_seconds, self.config.action_delay_max_seconds)
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.state.running

    async def start(self):
        if self.state.running:
            return
        if not self._recovered:
            recovered = await self.store.recover_abandoned_jobs()
            if recovered:
                logger.warning(f"Failed {recovered} job(s) left in progress by a previous run")
            self._recovered = True

        self._stop_requested.clear()
        self.state.running = True
        self.state.started_at = datetime.now()
        self.state.generation += 1
        self._schedule(0)
        logger.info("JobScheduler started")

    async def stop(self):
        """Stop polling, let the in-flight job reach a step boundary, close the browser."""
        was_running = self.state.running
        self.state.running = False
        self._stop_requested.set()
        if self.state.timer is not None:
            self.state.timer.cancel()
            self.state.timer = None

        async with self._lock:
            await self.session_host.close()

        if was_running:
            logger.info("JobScheduler stopped")

    async def shutdown(self):
        """Stop and release HTTP client sessions."""
        await self.stop()
        for client in (self.verifier, self.recorder.proof_storage):
            close = getattr(client, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug(f"Error closing {type(client).__name__}: {e}")

    def checkpoint(self):
        """Raise JobCancelled if stop was requested."""
        if self._stop_requested.is_set():
            raise JobCancelled()

    def status(self) -> dict:
        return {
            "running": self.state.running,
            "startedAt": self.state.started_at.isoformat() if self.state.started_at else None,
            "currentJob": self.state.current_job.to_dict() if self.state.current_job else None,
            "stats": self.state.stats.to_dict(),
        }

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def _schedule(self, delay: float):
        loop = asyncio.get_running_loop()
        generation = self.state.generation
        self.state.timer = loop.call_later(delay, self._on_timer, generation)

    def _on_timer(self, generation: int):
        self.state.timer = None
        if not self.state.running or generation != self.state.generation:
            return
        self.state.tick_task = asyncio.create_task(self._tick(generation), name="job-scheduler-tick")

    async def _tick(self, generation: int):
        delay = self.config.poll_interval_seconds
        try:
            await self.poll_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Bookkeeping failure (store unavailable etc.): skip this cycle.
            logger.error(f"JobScheduler tick error: {e}")
            delay = self.config.bookkeeping_retry_delay_seconds
        finally:
            if self.state.running and generation == self.state.generation:
                self._schedule(delay)

    async def poll_once(self) -> Optional[Job]:
        """Claim and fully process at most one pending job."""
        async with self._lock:
            if self._stop_requested.is_set():
                return None

            if self.state.pending_outcome is not None:
                outcome = self.state.pending_outcome
                logger.warning(f"Retrying terminal write for job {outcome.job.id}")
                await self._finish(outcome)

            row = await self.store.claim_next_job()
            if not row:
                logger.debug("No pending jobs, idle")
                return None

            job = Job.from_row(row)
            self.state.current_job = job
            try:
                await self.process_job(job)
            finally:
                self.state.current_job = None
            return job

    # ------------------------------------------------------------------
    # Job processing
    # ------------------------------------------------------------------

    async def process_job(self, job: Job) -> bool:
        """
        Drive a claimed job to a terminal state.

        Job-level failures become ``failed`` with the error message; only
        store failures while recording the outcome escape.
        """
        log_job_event(job.id, "claimed", job.label or job.target_reference)

        account = None
        proxy = None
        proxy_ref: Optional[str] = None
        direct_connection = False
        result = None
        artifact = None
        error: Optional[BaseException] = None

        try:
            account = await self.directory.lease_account()
            await self.recorder.assign_account(job, account)

            verification = await self.verifier.verify(account.identity)
            if not verification.success:
                await self.session_auth.invalidate(account)
                raise AuthenticationFailure(verification.error or "Credential verification failed")
            self.checkpoint()

            proxy = await self.directory.lease_proxy_or_direct()
            proxy_ref = proxy.identifier if proxy else DIRECT_PROXY_REF
            direct_connection = proxy is None

            async with self.session_host.page_scope(proxy) as lease:
                if lease.direct_connection:
                    proxy_ref, direct_connection = DIRECT_PROXY_REF, True
                if lease.degraded:
                    logger.warning(f"Job {job.id} running degraded: {lease.degraded_reason}")

                await self.recorder.record_start(job, account, proxy_ref, direct_connection)

                if proxy is not None and not lease.direct_connection:
                    await self.session_host.authenticate_proxy(lease.page, self.directory.proxy_credentials(proxy))
                if self.config.probe_egress_ip:
                    ip = await self.session_host.probe_egress_ip(lease.page, app_config.EGRESS_IP_PROBE_URL)
                    logger.info(f"Job {job.id} egress IP: {ip or 'unknown'}")

                await self.session_auth.restore(lease.page, account)
                self.checkpoint()

                interaction = ReportInteraction(lease.page, self.interaction_config, self.checkpoint)
                try:
                    result = await interaction.run(job.target_reference, job.action_parameter)
                except JobCancelled:
                    raise
                except Exception:
                    artifact = await self.recorder.capture_proof(job, interaction.page, "failure")
                    raise

                artifact = await self.recorder.capture_proof(job, interaction.page, "success")
                await self.session_auth.save(interaction.page, account, lease.user_agent)

        except Exception as e:
            error = e
            if isinstance(e, ResourceExhausted):
                await self.session_host.close()

        if error is None:
            outcome = JobOutcome(
                job,
                JobStatus.COMPLETED,
                account,
                proxy_ref=proxy_ref,
                direct_connection=direct_connection,
                method=result.method.value,
                confidence=result.confidence.value,
                artifact=artifact,
            )
            log_job_event(job.id, "completed", f"method={result.method.value} confidence={result.confidence.value}")
        else:
            outcome = JobOutcome(
                job,
                JobStatus.FAILED,
                account,
                error,
                proxy_ref=proxy_ref,
                direct_connection=direct_connection,
                method=classify_route(job.target_reference).value,
                artifact=artifact,
            )
            log_job_event(job.id, "failed", error=describe_error(error))

        self.state.pending_outcome = outcome
        await self._finish(outcome)
        return outcome.status == JobStatus.COMPLETED

    async def _finish(self, outcome: JobOutcome):
        """
        Persist a terminal outcome, then release the account and count it.

        The status write is retried; if it still fails the outcome stays in
        ``state.pending_outcome`` and the error propagates so the tick skips
        a cycle. Stats are counted once, after the write lands.
        """
        job = outcome.job

        async def write(attempt: int):
            return await self.recorder.record_terminal(
                job,
                outcome.status,
                outcome.account,
                outcome.error,
                proxy_ref=outcome.proxy_ref,
                direct_connection=outcome.direct_connection,
                method=outcome.method,
                confidence=outcome.confidence,
            )

        await with_retry(
            write,
            attempts=self.config.terminal_write_attempts,
            backoff=Backoff(
                base_delay_seconds=self.config.terminal_write_retry_delay_seconds,
                max_delay_seconds=max(self.config.terminal_write_retry_delay_seconds, 10.0),
            ),
            label=f"terminal write for job {job.id}",
        )
        self.state.pending_outcome = None

        await self.recorder.attach_proof(job.id, outcome.artifact)

        account = outcome.account
        if account is not None:
            try:
                await self.directory.mark_account_used(account.id)
            except Exception as e:
                logger.error(f"Could not mark account {account.id} used: {e}")

        self.state.stats.record(outcome.status == JobStatus.COMPLETED)
