"""Retry classification and the job runner contract for an external queue.

RetryClassifier maps any exception raised by a reconciliation onto a
RetryDecision:
- Data / validation defects are Fatal immediately (deterministic for the input).
- Rate limits, unresolved conflicts, unavailability and unknown errors are
  retried with exponential backoff from a per-category base delay.
- Once the attempt budget is spent every retryable failure becomes Fatal.

SyncJobRunner.handle() performs exactly one attempt and reports what the queue
should do next. SyncJobRunner.run() drives attempts in-process with tenacity.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type

from src.hubsync.config import SyncConfig
from src.hubsync.sync.errors import (
    FailureCategory,
    FatalSyncError,
    InvalidPropertyTypeError,
    RateLimitedError,
    RemoteConflictError,
    RemoteUnavailableError,
    RemoteValidationError,
    SyncValidationError,
    TransientSyncError,
    UnconvertibleValueError,
)
from src.hubsync.sync.mapper import should_sync
from src.hubsync.sync.reconciler import SyncReconciler
from src.hubsync.sync.schemas import (
    BatchSyncSummary,
    Fatal,
    JobDisposition,
    JobResult,
    Retry,
    SyncJob,
    SyncOutcome,
)

logger = structlog.get_logger(__name__)


class RetryClassifier:
    """Turns a reconciliation failure into Retry(delay) or Fatal(reason)."""

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config = config or SyncConfig()

    def backoff(self, base_delay: float, attempt: int) -> float:
        """base_delay * multiplier^(attempt-1), capped at max_retry_delay."""
        delay = base_delay * self._config.backoff_multiplier ** max(attempt - 1, 0)
        return min(delay, self._config.max_retry_delay)

    def _transient_base(self, exc: BaseException) -> tuple[float, str]:
        if isinstance(exc, RateLimitedError):
            return exc.retry_after or self._config.rate_limit_delay, "rate_limited"
        if isinstance(exc, TransientSyncError):
            return exc.suggested_delay, exc.reason
        if isinstance(exc, RemoteConflictError):
            return self._config.conflict_delay, "conflict_unresolved"
        if isinstance(exc, RemoteUnavailableError):
            return self._config.retry_delay, "remote_unavailable"
        return self._config.retry_delay, f"unexpected: {type(exc).__name__}: {exc}"

    def classify(self, exc: BaseException, attempt: int) -> Retry | Fatal:
        """Decide the disposition of a failed attempt (1-based attempt number)."""
        if isinstance(exc, FatalSyncError):
            return Fatal(reason=exc.reason, category=exc.category)
        if isinstance(exc, (SyncValidationError, RemoteValidationError)):
            return Fatal(reason=str(exc), category=FailureCategory.VALIDATION)
        if isinstance(exc, (UnconvertibleValueError, InvalidPropertyTypeError)):
            return Fatal(reason=str(exc), category=FailureCategory.DATA)

        base_delay, reason = self._transient_base(exc)

        if attempt >= self._config.retry_attempts:
            return Fatal(
                reason=f"{reason} (gave up after {attempt} attempts)",
                category=FailureCategory.EXHAUSTED,
            )
        return Retry(delay_seconds=self.backoff(base_delay, attempt), reason=reason)


def _suggested_delay(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    return getattr(exc, "suggested_delay", 0.0)


class SyncJobRunner:
    """Executes SyncJobs against a reconciler and classifies failures.

    Args:
        reconciler: The reconciliation engine.
        config: Engine configuration (retry policy, disabled switch).
        classifier: Failure classifier; defaults to one built from config.
        sleep: Awaitable sleep used between in-process attempts.
    """

    def __init__(
        self,
        reconciler: SyncReconciler,
        config: SyncConfig | None = None,
        classifier: RetryClassifier | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._reconciler = reconciler
        self._config = config or SyncConfig()
        self._classifier = classifier or RetryClassifier(self._config)
        self._sleep = sleep

    def _skips(self, job: SyncJob) -> bool:
        if should_sync(job.snapshot, self._config.disabled):
            return False
        logger.info(
            "job.skipped",
            kind=job.kind.value,
            local_id=job.snapshot.local_id,
            disabled=self._config.disabled,
        )
        return True

    def _log_decision(
        self, job: SyncJob, attempt: int, decision: Retry | Fatal, exc: BaseException
    ) -> None:
        if isinstance(decision, Retry):
            logger.warning(
                "job.released",
                kind=job.kind.value,
                local_id=job.snapshot.local_id,
                attempt=attempt,
                delay_seconds=decision.delay_seconds,
                reason=decision.reason,
            )
            return
        logger.error(
            "job.failed",
            kind=job.kind.value,
            local_id=job.snapshot.local_id,
            remote_id=job.snapshot.remote_id,
            attempt=attempt,
            category=decision.category.value,
            reason=decision.reason,
            error_type=type(exc).__name__,
        )

    async def handle(self, job: SyncJob) -> JobResult:
        """Run one attempt of a job and report the queue disposition."""
        if self._skips(job):
            return JobResult(disposition=JobDisposition.SKIPPED)

        try:
            outcome = await self._reconciler.reconcile(job.kind, job.snapshot)
        except Exception as exc:
            decision = self._classifier.classify(exc, job.attempt)
            self._log_decision(job, job.attempt, decision, exc)
            disposition = (
                JobDisposition.RELEASED if isinstance(decision, Retry) else JobDisposition.FAILED
            )
            return JobResult(disposition=disposition, decision=decision)

        logger.info(
            "job.completed",
            kind=job.kind.value,
            local_id=job.snapshot.local_id,
            remote_id=outcome.remote_id,
            operation=outcome.operation.value,
        )
        return JobResult(disposition=JobDisposition.COMPLETED, outcome=outcome)

    async def _attempt(self, job: SyncJob, attempt: int) -> SyncOutcome:
        try:
            return await self._reconciler.reconcile(job.kind, job.snapshot)
        except Exception as exc:
            decision = self._classifier.classify(exc, attempt)
            self._log_decision(job, attempt, decision, exc)
            if isinstance(decision, Fatal):
                raise FatalSyncError(decision.reason, decision.category) from exc
            raise TransientSyncError(decision.reason, decision.delay_seconds) from exc

    async def run(self, job: SyncJob) -> SyncOutcome | None:
        """Run a job to a terminal outcome, sleeping between attempts.

        Returns:
            The SyncOutcome, or None when the job was skipped.

        Raises:
            FatalSyncError: The job failed permanently.
        """
        if self._skips(job):
            return None

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientSyncError),
            wait=_suggested_delay,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = job.attempt + attempt.retry_state.attempt_number - 1
                outcome = await self._attempt(job, number)
        return outcome


async def sync_batch(
    runner: SyncJobRunner,
    jobs: Iterable[SyncJob],
    delay_seconds: float = 0.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> BatchSyncSummary:
    """Run jobs one after another, pausing delay_seconds between them.

    Each job gets a single attempt; a failing record never stops the batch.
    """
    summary = BatchSyncSummary()

    for index, job in enumerate(jobs):
        if index and delay_seconds > 0:
            await sleep(delay_seconds)

        summary.total += 1
        result = await runner.handle(job)

        if result.disposition is JobDisposition.COMPLETED:
            summary.succeeded += 1
        elif result.disposition is JobDisposition.SKIPPED:
            summary.skipped += 1
        else:
            summary.failed += 1
            reason = result.decision.reason if result.decision else result.disposition.value
            summary.errors.append(f"{job.kind.value} {job.snapshot.local_id}: {reason}")

    logger.info(
        "batch.completed",
        total=summary.total,
        succeeded=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return summary
