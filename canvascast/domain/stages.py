"""
Canonical stage order and the status -> progress table.

Every "is before/after" question about job status is answered by index in
STAGE_ORDER. A job's status names the last stage it completed and its progress
is that stage's upper bound.
"""
from typing import Optional

from canvascast.domain.states import JobStatus

STAGE_ORDER: tuple[JobStatus, ...] = (
    JobStatus.QUEUED,
    JobStatus.CLAIMED,
    JobStatus.SCRIPTING,
    JobStatus.VOICE_GEN,
    JobStatus.ALIGNMENT,
    JobStatus.VISUAL_PLAN,
    JobStatus.IMAGE_GEN,
    JobStatus.TIMELINE_BUILD,
    JobStatus.RENDERING,
    JobStatus.PACKAGING,
    JobStatus.READY,
)

# Stages that do work, in execution order.
PIPELINE_STAGES: tuple[JobStatus, ...] = STAGE_ORDER[2:-1]

PROGRESS_RANGES: dict[JobStatus, tuple[int, int]] = {
    JobStatus.QUEUED: (0, 0),
    JobStatus.CLAIMED: (0, 0),
    JobStatus.SCRIPTING: (0, 15),
    JobStatus.VOICE_GEN: (15, 30),
    JobStatus.ALIGNMENT: (30, 40),
    JobStatus.VISUAL_PLAN: (40, 50),
    JobStatus.IMAGE_GEN: (50, 70),
    JobStatus.TIMELINE_BUILD: (70, 80),
    JobStatus.RENDERING: (80, 95),
    JobStatus.PACKAGING: (95, 100),
    JobStatus.READY: (100, 100),
}


def stage_index(status: JobStatus | str) -> int:
    """Position in the canonical order. Raises ValueError for FAILED/CANCELED."""
    return STAGE_ORDER.index(JobStatus(status))


def is_at_or_after(status: JobStatus | str, other: JobStatus | str) -> bool:
    return stage_index(status) >= stage_index(other)


def first_stage() -> JobStatus:
    return PIPELINE_STAGES[0]


def next_stage(status: Optional[JobStatus | str]) -> Optional[JobStatus]:
    """The stage that runs after `status` completed; None once PACKAGING is done."""
    if status is None:
        return first_stage()
    idx = stage_index(status)
    for candidate in STAGE_ORDER[idx + 1:]:
        if candidate in PIPELINE_STAGES:
            return candidate
    return None


def progress_range(status: JobStatus | str) -> Optional[tuple[int, int]]:
    return PROGRESS_RANGES.get(JobStatus(status))


def progress_for(status: JobStatus | str) -> int:
    """Progress reported once `status` has completed."""
    return PROGRESS_RANGES[JobStatus(status)][1]


def progress_matches_status(status: JobStatus | str, progress: int) -> bool:
    bounds = progress_range(status)
    if bounds is None:
        # FAILED / CANCELED carry whatever progress was reached
        return True
    start, end = bounds
    return start <= progress <= end
