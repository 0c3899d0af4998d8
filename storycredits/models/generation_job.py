"""Generation job model with its status guard trigger."""

from __future__ import annotations

import uuid

from sqlalchemy import DDL, CheckConstraint, String, Text, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storycredits.models.base import Base, TimestampMixin

JOB_STATUS_GUARD_FUNCTION = """
CREATE OR REPLACE FUNCTION prevent_failed_job_completion()
RETURNS TRIGGER AS $$
BEGIN
    IF OLD.status = 'failed' AND NEW.status = 'completed' THEN
        RAISE EXCEPTION 'Cannot change job status from failed to completed'
            USING DETAIL = 'job_id=' || OLD.id::text,
                  HINT = 'Start a new job to retry.',
                  ERRCODE = 'check_violation';
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

JOB_STATUS_GUARD_TRIGGER = """
CREATE TRIGGER generation_jobs_status_guard
BEFORE UPDATE OF status ON generation_jobs
FOR EACH ROW EXECUTE FUNCTION prevent_failed_job_completion();
"""


class GenerationJob(Base, TimestampMixin):
    """An asynchronous story or audio generation.

    ``failed -> completed`` is rejected by a trigger, so a stalled worker that
    wakes up late cannot overwrite a failure the user was already refunded for.
    """

    __tablename__ = "generation_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="generation_jobs_status_valid",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)

    user_id: Mapped[uuid.UUID] = mapped_column(index=True)

    # story, audio
    kind: Mapped[str] = mapped_column(String(20), default="story")

    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)

    # Credits consumed up front, refunded if the job fails
    credits_charged: Mapped[int] = mapped_column(default=0)

    result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<GenerationJob(id={self.id}, status={self.status!r})>"


event.listen(
    GenerationJob.__table__, "after_create", DDL(JOB_STATUS_GUARD_FUNCTION)
)
event.listen(
    GenerationJob.__table__, "after_create", DDL(JOB_STATUS_GUARD_TRIGGER)
)
