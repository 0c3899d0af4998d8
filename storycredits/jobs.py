"""Generation job status guard.

A job that was marked failed (and refunded) must never flip to completed,
or the user would keep both the refund and the result. The rule is enforced
three times: a pure check for callers, a compare-and-swap UPDATE, and the
``generation_jobs_status_guard`` trigger in the database.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import UUID

import logfire
from sqlalchemy import select, update

from storycredits.credits.service import CreditService
from storycredits.errors import IllegalJobTransitionError
from storycredits.models import GenerationJob

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class JobStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def check_transition(job_id: UUID, current: str, requested: str) -> None:
    """Raise if ``current -> requested`` is the forbidden failed -> completed."""
    if current == JobStatus.FAILED and requested == JobStatus.COMPLETED:
        raise IllegalJobTransitionError(job_id, current, requested)


async def create_job(
    session: AsyncSession,
    user_id: UUID,
    *,
    kind: str = "story",
    credits_charged: int = 0,
) -> GenerationJob:
    job = GenerationJob(
        user_id=user_id,
        kind=kind,
        status=str(JobStatus.PENDING),
        credits_charged=credits_charged,
    )
    session.add(job)
    await session.flush()
    return job


async def get_job(session: AsyncSession, job_id: UUID) -> GenerationJob | None:
    result = await session.execute(
        select(GenerationJob)
        .where(GenerationJob.id == job_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def set_job_status(
    session: AsyncSession,
    job_id: UUID,
    status: JobStatus | str,
    *,
    result: dict | None = None,
    error: str | None = None,
) -> None:
    """Compare-and-swap the job status.

    Raises:
        LookupError: If the job does not exist.
        IllegalJobTransitionError: If the job is failed and ``status`` is completed.
    """
    status = JobStatus(status)
    values: dict = {"status": str(status)}
    if result is not None:
        values["result"] = result
    if error is not None:
        values["error"] = error

    stmt = update(GenerationJob).where(GenerationJob.id == job_id)
    if status == JobStatus.COMPLETED:
        stmt = stmt.where(GenerationJob.status != str(JobStatus.FAILED))

    updated = await session.execute(
        stmt.values(**values)
        .returning(GenerationJob.id)
        .execution_options(synchronize_session=False)
    )
    if updated.scalar_one_or_none() is not None:
        return

    current = await session.execute(
        select(GenerationJob.status).where(GenerationJob.id == job_id)
    )
    current_status = current.scalar_one_or_none()
    if current_status is None:
        msg = f"Job {job_id} not found"
        raise LookupError(msg)
    raise IllegalJobTransitionError(job_id, current_status, status)


class JobService:
    """Job lifecycle for generation workers.

    Usage:
        async with db.session() as session:
            jobs = JobService(session)
            if not await jobs.complete(job_id, {"story_id": ...}):
                return  # Job was failed meanwhile, drop the result
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def start(self, job_id: UUID) -> None:
        await set_job_status(self.session, job_id, JobStatus.PROCESSING)

    async def complete(self, job_id: UUID, result: dict | None = None) -> bool:
        """Mark the job completed. Returns False if it already failed."""
        try:
            await set_job_status(
                self.session, job_id, JobStatus.COMPLETED, result=result or {}
            )
        except IllegalJobTransitionError:
            logfire.warn("job_completion_rejected", job_id=str(job_id))
            return False
        logfire.info("job_completed", job_id=str(job_id))
        return True

    async def fail_with_refund(self, job_id: UUID, error: str) -> UUID | None:
        """Mark the job failed and refund what it charged.

        The refund is keyed on the job, so failing twice refunds once.

        Returns:
            The refund grant id, or None if the job charged nothing.
        """
        job = await get_job(self.session, job_id)
        if job is None:
            msg = f"Job {job_id} not found"
            raise LookupError(msg)

        await set_job_status(self.session, job_id, JobStatus.FAILED, error=error)
        logfire.info("job_failed", job_id=str(job_id), error=error)

        if job.credits_charged <= 0:
            return None
        return await CreditService(self.session).refund(
            job.user_id,
            job.credits_charged,
            source_id=f"refund:job:{job_id}",
            reason=f"Refund for failed {job.kind} generation",
            metadata={"job_id": str(job_id), "error": error},
        )
