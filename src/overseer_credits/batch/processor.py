"""Batch job orchestrator.

Drives a list of items through the completion engine, one at a time, against
a credit reservation placed when the job is accepted.

Lifecycle::

    pending --start--> processing --all items attempted--> completed
    processing --job-level error--> failed
    pending/processing --cancel--> failed ("Job canceled by user")

Credit reconciliation: each item's actual charge is captured from the job's
reservation first (then from the available balance). Whatever part of the
reservation is still outstanding when the job reaches a terminal state is
released, so the account's pre-authorized balance always returns to its
pre-job value.
"""

from __future__ import annotations

import asyncio
import math
from decimal import Decimal

import structlog

from overseer_credits.batch.models import (
    ActiveJob,
    BatchItem,
    BatchJobRequest,
    BatchJobState,
    JobsPage,
    JobStatus,
    ResultsPage,
)
from overseer_credits.batch.repository import BatchJobRepository
from overseer_credits.completion import CompletionEngine
from overseer_credits.cost_model import (
    ESTIMATE_PRECISION,
    credits_for_estimated_tokens,
    estimate_token_count,
)
from overseer_credits.database.models import _generate_uuid, utcnow
from overseer_credits.error_reporting import ErrorCode, ErrorReport, report_error
from overseer_credits.exceptions import UsageNotRecordedError
from overseer_credits.ledger import Ledger

logger = structlog.get_logger()

CANCELED_BY_USER = "Job canceled by user"
INTERRUPTED_BY_SHUTDOWN = "Job interrupted by shutdown"

DEFAULT_LIST_LIMIT = 10
DEFAULT_RESULTS_LIMIT = 50
MAX_PAGE_SIZE = 100

ZERO = Decimal(0)


def estimate_job_tokens(items: list[BatchItem], multiplier: float) -> int:
    """Estimated input plus output tokens for a batch, safety-multiplied."""
    # Output assumed to be as long as the input
    raw = sum(estimate_token_count(item.content) * 2 for item in items)
    return math.ceil(raw * multiplier)


class BatchProcessor:
    """Creates, runs, cancels and reports on batch jobs.

    Jobs driven by this process are kept in an in-memory cache until they
    reach a terminal state. The database row is authoritative otherwise.
    """

    def __init__(
        self,
        ledger: Ledger,
        repository: BatchJobRepository,
        engine: CompletionEngine,
        *,
        default_model: str = "gpt-4o",
        token_estimate_multiplier: float = 1.2,
        max_items: int = 1000,
    ) -> None:
        self._ledger = ledger
        self._repository = repository
        self._engine = engine
        self._default_model = default_model
        self._token_estimate_multiplier = token_estimate_multiplier
        self._max_items = max_items
        self._active_jobs: dict[str, ActiveJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def active_job_ids(self) -> list[str]:
        return list(self._active_jobs)

    def _validate_request(self, request: BatchJobRequest) -> str | None:
        """Return a reason the request is invalid, or None."""
        if not request.items:
            return "Items array is required and must not be empty"
        if len(request.items) > self._max_items:
            return f"At most {self._max_items} items are allowed per job"
        for item in request.items:
            if not isinstance(item.content, str) or not item.content.strip():
                return f"Item {item.id} has no content"
        multiplier = request.token_estimate_multiplier
        if multiplier is not None and (not math.isfinite(multiplier) or multiplier < 1):
            return "Token estimate multiplier must be at least 1"
        return None

    async def create_job(self, user_id: str, request: BatchJobRequest) -> BatchJobState | None:
        """Accept a batch submission and start processing it in the background.

        Args:
            user_id: Account the job is billed to
            request: Items and options

        Returns:
            The pending job, or None if the request was invalid, the user
            cannot cover the estimate or the job could not be stored
        """
        invalid_reason = self._validate_request(request)
        if invalid_reason:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.CREATE_BATCH_JOB_INVALID_REQUEST,
                    message=invalid_reason,
                    user_id=user_id,
                    agent_id=request.agent_id,
                    payload={"item_count": len(request.items)},
                )
            )
            return None

        model = request.model or self._default_model
        multiplier = request.token_estimate_multiplier or self._token_estimate_multiplier
        estimated_tokens = estimate_job_tokens(request.items, multiplier)
        # Tiny jobs still reserve the smallest unit so an empty account is refused
        estimated_credits = max(
            credits_for_estimated_tokens(estimated_tokens, model), ESTIMATE_PRECISION
        )

        reserved = await self._ledger.has_enough_credits(
            user_id, estimated_tokens, model
        ) and await self._ledger.pre_authorize(user_id, estimated_credits)
        if not reserved:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.CREATE_BATCH_JOB_INSUFFICIENT_CREDITS,
                    message="Insufficient credits for batch job",
                    user_id=user_id,
                    agent_id=request.agent_id,
                    payload={
                        "estimated_tokens": estimated_tokens,
                        "estimated_credits": estimated_credits,
                        "model": model,
                    },
                )
            )
            return None

        job = ActiveJob(
            id=_generate_uuid(),
            user_id=user_id,
            agent_id=request.agent_id,
            model=model,
            items=list(request.items),
            estimated_tokens=estimated_tokens,
            credits_pre_authorized=estimated_credits,
            outstanding=estimated_credits,
        )

        try:
            await self._repository.create(job)
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.CREATE_BATCH_JOB_ERROR,
                    message="Failed to create batch job",
                    user_id=user_id,
                    agent_id=request.agent_id,
                    job_id=job.id,
                    payload={"estimated_credits": estimated_credits, "model": model},
                ),
                exc,
            )
            await self._ledger.release(user_id, estimated_credits)
            return None

        self._active_jobs[job.id] = job
        task = asyncio.create_task(self._run_job(job), name=f"batch-job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, job_id=job.id: self._tasks.pop(job_id, None))

        logger.info(
            "Batch job created",
            job_id=job.id,
            user_id=user_id,
            agent_id=request.agent_id,
            total_items=job.total_items,
            estimated_tokens=estimated_tokens,
            credits_pre_authorized=estimated_credits,
            model=model,
        )
        return job.snapshot()

    async def _run_job(self, job: ActiveJob) -> None:
        try:
            async with job.lock:
                if job.cancel_requested:
                    return
                await self._repository.mark_processing(job.id)
                job.status = JobStatus.PROCESSING
                job.updated_at = utcnow()

            for index, item in enumerate(job.items):
                if job.cancel_requested:
                    break
                await self._process_item(job, index, item)

            await self._complete_job(job)
        except asyncio.CancelledError:
            await self._fail_job(job, INTERRUPTED_BY_SHUTDOWN)
            raise
        except Exception as exc:
            await self._fail_job(job, str(exc) or type(exc).__name__, exc)
        finally:
            self._active_jobs.pop(job.id, None)

    async def _process_item(self, job: ActiveJob, index: int, item: BatchItem) -> None:
        """Run one item. Engine errors are logged and skipped; anything else propagates."""
        try:
            result = await self._engine.complete(
                [{"role": "user", "content": item.content}],
                job.model,
            )
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.BATCH_ITEM_PROCESS_ERROR,
                    message="Failed to process batch item",
                    user_id=job.user_id,
                    agent_id=job.agent_id,
                    job_id=job.id,
                    payload={"item_id": item.id, "item_index": index, "error": str(exc)},
                ),
                exc,
            )
            async with job.lock:
                job.processed_items += 1
                job.updated_at = utcnow()
                await self._repository.save_progress(job)
            return

        async with job.lock:
            tokens = result.usage.tokens
            if tokens > 0:
                charge = await self._ledger.record_usage(
                    job.user_id,
                    job.agent_id,
                    result.usage,
                    job.model,
                    from_reservation=job.outstanding,
                    job_id=job.id,
                )
                if charge is None:
                    raise UsageNotRecordedError(job.id, item.id)
                job.outstanding = max(ZERO, job.outstanding - charge.captured)
                job.credits_used += charge.credits
                job.actual_tokens += tokens

            await self._repository.add_result(
                job.id,
                item_index=index,
                item_id=item.id,
                input_content=item.content,
                output_content=result.content,
                tokens_used=tokens,
            )
            job.processed_items += 1
            job.updated_at = utcnow()
            await self._repository.save_progress(job)

        logger.debug(
            "Batch item processed",
            job_id=job.id,
            item_id=item.id,
            processed_items=job.processed_items,
            total_items=job.total_items,
            progress=job.progress,
        )

    async def _complete_job(self, job: ActiveJob) -> None:
        async with job.lock:
            if job.cancel_requested:
                return
            job.completed_at = utcnow()
            job.updated_at = job.completed_at
            await self._repository.mark_completed(job)
            job.status = JobStatus.COMPLETED
            release_amount = job.outstanding
            job.outstanding = ZERO
            await self._release(job, release_amount)

        logger.info(
            "Batch job completed",
            job_id=job.id,
            user_id=job.user_id,
            processed_items=job.processed_items,
            actual_tokens=job.actual_tokens,
            credits_used=job.credits_used,
            credits_released=release_amount,
        )

    async def _fail_job(
        self, job: ActiveJob, message: str, exc: BaseException | None = None
    ) -> None:
        """Job-level failure: mark the row failed, then release what is still reserved.

        The reservation is released only by whoever moves the row to a terminal
        state. If the row cannot be updated the hold stays outstanding and is
        released when the stored job is canceled.
        """
        release_amount = ZERO
        async with job.lock:
            if job.cancel_requested or job.status.is_terminal:
                return
            job.status = JobStatus.FAILED
            job.error = message
            job.updated_at = utcnow()
            try:
                persisted = await self._repository.mark_failed(job.id, message)
            except Exception as persist_exc:
                report_error(
                    ErrorReport(
                        error_code=ErrorCode.BATCH_JOB_FAILED,
                        message="Failed to record batch job failure",
                        user_id=job.user_id,
                        agent_id=job.agent_id,
                        job_id=job.id,
                        payload={"error": message, "outstanding": job.outstanding},
                    ),
                    persist_exc,
                )
                persisted = False
            if persisted:
                release_amount = job.outstanding
                job.outstanding = ZERO
                await self._release(job, release_amount)

        report_error(
            ErrorReport(
                error_code=ErrorCode.BATCH_JOB_FAILED,
                message=f"Batch job failed: {message}",
                user_id=job.user_id,
                agent_id=job.agent_id,
                job_id=job.id,
                payload={
                    "processed_items": job.processed_items,
                    "credits_used": job.credits_used,
                    "credits_released": release_amount,
                },
            ),
            exc,
        )

    async def _release(self, job: ActiveJob, amount: Decimal) -> None:
        if amount <= 0:
            return
        if not await self._ledger.release(job.user_id, amount):
            report_error(
                ErrorReport(
                    error_code=ErrorCode.BATCH_JOB_RELEASE_ERROR,
                    message="Failed to release batch job reservation",
                    user_id=job.user_id,
                    agent_id=job.agent_id,
                    job_id=job.id,
                    payload={"amount": amount},
                )
            )

    async def get_job_status(self, job_id: str) -> BatchJobState | None:
        """Current state of a job.

        Jobs driven by this process are answered from memory, everything else
        from the database.
        """
        active = self._active_jobs.get(job_id)
        if active is not None:
            return active.snapshot()
        try:
            return await self._repository.get(job_id)
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.GET_JOB_STATUS_ERROR,
                    message="Failed to get job status",
                    job_id=job_id,
                ),
                exc,
            )
            return None

    async def cancel_job(self, job_id: str, user_id: str) -> bool:
        """Cancel a pending or processing job owned by ``user_id``.

        An item already in flight finishes, but no further items start.

        Returns:
            True if the job was canceled
        """
        try:
            active = self._active_jobs.get(job_id)
            if active is not None:
                canceled = await self._cancel_active(active, user_id)
            else:
                canceled = await self._cancel_stored(job_id, user_id)
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.CANCEL_JOB_ERROR,
                    message="Failed to cancel job",
                    user_id=user_id,
                    job_id=job_id,
                ),
                exc,
            )
            return False

        if canceled:
            logger.info("Batch job canceled", job_id=job_id, user_id=user_id)
        return canceled

    async def _cancel_active(self, job: ActiveJob, user_id: str) -> bool:
        if job.user_id != user_id:
            return False
        async with job.lock:
            if job.status.is_terminal:
                return False
            # A persistence error propagates with the job still running and
            # its reservation untouched
            persisted = await self._repository.mark_failed(job.id, CANCELED_BY_USER)
            job.cancel_requested = True
            job.status = JobStatus.FAILED
            job.error = CANCELED_BY_USER
            job.updated_at = utcnow()
            if persisted:
                release_amount = job.outstanding
                job.outstanding = ZERO
                await self._release(job, release_amount)
            else:
                # Already terminal in the database; whoever finished the row released the hold
                job.outstanding = ZERO
        self._active_jobs.pop(job.id, None)
        return persisted

    async def _cancel_stored(self, job_id: str, user_id: str) -> bool:
        """Cancel a job no process is driving (e.g. after a restart)."""
        job = await self._repository.get(job_id)
        if job is None or job.user_id != user_id or job.status.is_terminal:
            return False
        if not await self._repository.mark_failed(job_id, CANCELED_BY_USER):
            return False
        remainder = job.credits_pre_authorized - job.credits_used
        if remainder > 0 and not await self._ledger.release(user_id, remainder):
            report_error(
                ErrorReport(
                    error_code=ErrorCode.BATCH_JOB_RELEASE_ERROR,
                    message="Failed to release batch job reservation",
                    user_id=user_id,
                    agent_id=job.agent_id,
                    job_id=job_id,
                    payload={"amount": remainder},
                )
            )
        return True

    async def list_jobs(
        self,
        user_id: str,
        *,
        status: JobStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> JobsPage:
        """A user's jobs, newest first."""
        try:
            return await self._repository.list_for_user(
                user_id,
                status=status,
                limit=max(1, min(limit, MAX_PAGE_SIZE)),
                offset=max(0, offset),
            )
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.LIST_JOBS_ERROR,
                    message="Failed to list jobs",
                    user_id=user_id,
                    payload={"status": status, "limit": limit, "offset": offset},
                ),
                exc,
            )
            return JobsPage()

    async def get_job_results(
        self,
        job_id: str,
        *,
        limit: int = DEFAULT_RESULTS_LIMIT,
        offset: int = 0,
    ) -> ResultsPage:
        """Stored results of a job's successful items, in submission order."""
        try:
            return await self._repository.list_results(
                job_id,
                limit=max(1, min(limit, MAX_PAGE_SIZE)),
                offset=max(0, offset),
            )
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.GET_JOB_RESULTS_ERROR,
                    message="Failed to get job results",
                    job_id=job_id,
                    payload={"limit": limit, "offset": offset},
                ),
                exc,
            )
            return ResultsPage()

    async def wait_for_job(self, job_id: str) -> None:
        """Wait until this process has finished driving a job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Give running jobs ``timeout`` seconds to finish, then interrupt them.

        Interrupted jobs are failed and their reservations released.
        """
        tasks = set(self._tasks.values())
        if not tasks:
            return
        logger.info("Waiting for batch jobs to finish", count=len(tasks), timeout=timeout)
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Interrupted unfinished batch jobs", count=len(pending))
