from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from canvascast.domain.states import JobStatus

@dataclass
class CheckpointState:
    job_id: UUID
    last_completed_step: Optional[JobStatus]
    artifacts: dict[str, Any] = field(default_factory=dict)
    progress: int = 0
    saved_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return self.last_completed_step is None

@dataclass(frozen=True)
class RetryOptions:
    can_retry_from_checkpoint: bool
    next_step: Optional[JobStatus]
    message: str

@dataclass
class JobLeaseDomain:
    job_id: UUID
    worker_id: str
    token: UUID
    expires_at: datetime
