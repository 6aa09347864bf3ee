"""Persistence for batch job rows and item results."""

from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from overseer_credits.batch.models import (
    ACTIVE_STATUSES,
    ActiveJob,
    BatchJobState,
    ItemResult,
    JobsPage,
    JobStatus,
    ResultsPage,
)
from overseer_credits.database.models import BatchItemResult, BatchJob, utcnow
from overseer_credits.exceptions import JobPersistenceError


class BatchJobRepository:
    """Reads and writes batch jobs.

    Every method runs in its own short transaction. Write failures raise
    ``JobPersistenceError`` so the orchestrator can reconcile the job.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, job: ActiveJob) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    BatchJob(
                        id=job.id,
                        user_id=job.user_id,
                        agent_id=job.agent_id,
                        status=job.status.value,
                        progress=0,
                        total_items=job.total_items,
                        processed_items=0,
                        estimated_tokens=job.estimated_tokens,
                        actual_tokens=0,
                        credits_pre_authorized=job.credits_pre_authorized,
                        credits_used=job.credits_used,
                        model=job.model,
                        created_at=job.created_at,
                        updated_at=job.updated_at,
                    )
                )
        except Exception as exc:
            raise JobPersistenceError(job.id, "create") from exc

    async def get(self, job_id: str) -> BatchJobState | None:
        async with self._session_factory() as session:
            row = await session.get(BatchJob, job_id)
            return BatchJobState.from_row(row) if row is not None else None

    async def mark_processing(self, job_id: str) -> None:
        """Move a pending job to processing; fails if it is no longer pending."""
        await self._update(
            job_id,
            "start",
            only_if_status=JobStatus.PENDING,
            status=JobStatus.PROCESSING.value,
            updated_at=utcnow(),
        )

    async def save_progress(self, job: ActiveJob) -> None:
        """Persist counters; never touches the status column."""
        await self._update(
            job.id,
            "update progress of",
            processed_items=job.processed_items,
            progress=job.processed_items * 100 // max(job.total_items, 1),
            actual_tokens=job.actual_tokens,
            credits_used=job.credits_used,
            updated_at=job.updated_at,
        )

    async def mark_completed(self, job: ActiveJob) -> None:
        await self._update(
            job.id,
            "complete",
            only_if_status=JobStatus.PROCESSING,
            status=JobStatus.COMPLETED.value,
            progress=100,
            processed_items=job.processed_items,
            actual_tokens=job.actual_tokens,
            credits_used=job.credits_used,
            completed_at=job.completed_at,
            updated_at=job.updated_at,
        )

    async def mark_failed(self, job_id: str, error: str) -> bool:
        """Move a non-terminal job to failed.

        Returns:
            True if the row was still pending/processing and is now failed
        """
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(BatchJob)
                    .where(
                        BatchJob.id == job_id,
                        BatchJob.status.in_([s.value for s in ACTIVE_STATUSES]),
                    )
                    .values(status=JobStatus.FAILED.value, error=error, updated_at=utcnow())
                )
                return bool(result.rowcount)
        except Exception as exc:
            raise JobPersistenceError(job_id, "fail") from exc

    async def add_result(
        self,
        job_id: str,
        *,
        item_index: int,
        item_id: str,
        input_content: str,
        output_content: str,
        tokens_used: int,
    ) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                session.add(
                    BatchItemResult(
                        job_id=job_id,
                        item_index=item_index,
                        item_id=item_id,
                        input_content=input_content,
                        output_content=output_content,
                        tokens_used=tokens_used,
                    )
                )
        except Exception as exc:
            raise JobPersistenceError(job_id, "store a result for") from exc

    async def list_for_user(
        self,
        user_id: str,
        *,
        status: JobStatus | None,
        limit: int,
        offset: int,
    ) -> JobsPage:
        conditions = [BatchJob.user_id == user_id]
        if status is not None:
            conditions.append(BatchJob.status == JobStatus(status).value)

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(BatchJob).where(*conditions)
            )
            rows = await session.scalars(
                select(BatchJob)
                .where(*conditions)
                .order_by(BatchJob.created_at.desc(), BatchJob.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return JobsPage(jobs=[BatchJobState.from_row(r) for r in rows], total=total or 0)

    async def list_results(self, job_id: str, *, limit: int, offset: int) -> ResultsPage:
        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count())
                .select_from(BatchItemResult)
                .where(BatchItemResult.job_id == job_id)
            )
            rows = await session.scalars(
                select(BatchItemResult)
                .where(BatchItemResult.job_id == job_id)
                .order_by(BatchItemResult.item_index.asc())
                .limit(limit)
                .offset(offset)
            )
            return ResultsPage(results=[ItemResult.from_row(r) for r in rows], total=total or 0)

    async def _update(
        self,
        job_id: str,
        operation: str,
        only_if_status: JobStatus | None = None,
        **values: object,
    ) -> None:
        conditions = [BatchJob.id == job_id]
        if only_if_status is not None:
            conditions.append(BatchJob.status == only_if_status.value)
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(update(BatchJob).where(*conditions).values(**values))
                if not result.rowcount:
                    raise JobPersistenceError(job_id, operation)
        except JobPersistenceError:
            raise
        except Exception as exc:
            raise JobPersistenceError(job_id, operation) from exc
