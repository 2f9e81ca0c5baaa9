from datetime import datetime
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from canvascast.db.session import Base
from canvascast.domain.retry import MAX_RETRY_COUNT
from canvascast.domain.states import CreditState, JobEvent, JobStatus, LedgerType, ProjectStatus
from canvascast.utils.timeutil import utcnow

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")

class Project(Base):
    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)

    # Generation preferences
    niche_preset: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    target_minutes: Mapped[int] = mapped_column(Integer, default=1)
    template_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    visual_preset_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    voice_profile_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    image_density: Mapped[str] = mapped_column(String, default="normal")

    status: Mapped[ProjectStatus] = mapped_column(String, default=ProjectStatus.DRAFT)
    timeline_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    inputs: Mapped[list["ProjectInput"]] = relationship("ProjectInput", back_populates="project", cascade="all, delete-orphan")

class ProjectInput(Base):
    __tablename__ = "project_inputs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), index=True)

    # text | file | url
    type: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    content_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    storage_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    project: Mapped["Project"] = relationship("Project", back_populates="inputs")

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    project_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("projects.id"), index=True, nullable=False)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)

    # Pipeline state
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.QUEUED, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)

    # Credits
    cost_credits_reserved: Mapped[int] = mapped_column(Integer, default=0)
    cost_credits_final: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    credit_state: Mapped[CreditState] = mapped_column(String, default=CreditState.NONE)

    # Retry / DLQ
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=MAX_RETRY_COUNT)
    dlq_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    dlq_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Failure markers
    error_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failed_step: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Scheduling
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    lease: Mapped[Optional["JobLease"]] = relationship("JobLease", back_populates="job", uselist=False, cascade="all, delete-orphan")
    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        # Optimization for the claim query: status=QUEUED + available_at <= now
        Index("ix_jobs_poll", "status", "available_at", postgresql_where=text("status = 'QUEUED'")),
    )

class JobLease(Base):
    __tablename__ = "job_leases"

    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    worker_id: Mapped[str] = mapped_column(String, nullable=False)
    lease_token: Mapped[UUID] = mapped_column(Uuid, default=uuid4)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    job: Mapped["Job"] = relationship("Job", back_populates="lease")

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    stage: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    # Context (e.g. worker_id, error code, retry count)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")

class JobCheckpoint(Base):
    """Latest checkpoint per job. Overwritten after every completed stage."""
    __tablename__ = "job_checkpoints"

    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    last_completed_step: Mapped[JobStatus] = mapped_column(String, nullable=False)
    artifacts: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    saved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

class JobCheckpointHistory(Base):
    """Append-only copy of every checkpoint save. Never read by resume logic."""
    __tablename__ = "job_checkpoint_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    step: Mapped[JobStatus] = mapped_column(String, nullable=False)
    artifacts: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    saved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

class CreditLedgerEntry(Base):
    __tablename__ = "credit_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    job_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="SET NULL"), index=True, nullable=True)
    type: Mapped[LedgerType] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

class Asset(Base):
    __tablename__ = "assets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)
    project_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)

    # script | audio | captions | image | timeline | thumbnail | video | zip
    kind: Mapped[str] = mapped_column(String, nullable=False)
    path: Mapped[str] = mapped_column(String, nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)

    __table_args__ = (
        # Re-running a step after a crash upserts instead of duplicating
        UniqueConstraint("job_id", "path", name="uq_assets_job_path"),
    )
