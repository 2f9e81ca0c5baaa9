"""
Credit refund policy.

Progress percentage is the canonical input. A failure strictly below the
threshold (scripting and early voice generation) gets the full reservation
back; from the threshold on, paid third-party work has already happened and
nothing is refunded. There are no partial refunds.
"""
import logging
import math
from typing import Optional

from canvascast.domain.stages import progress_matches_status, progress_range
from canvascast.domain.states import JobStatus

logger = logging.getLogger(__name__)

REFUND_THRESHOLD_PROGRESS = 30

def should_refund_credits(
    status: JobStatus | str,
    progress: int,
    threshold: int = REFUND_THRESHOLD_PROGRESS
) -> bool:
    if not progress_matches_status(status, progress):
        logger.warning(
            "Status %s and progress %s disagree with the stage table; deciding refund by progress",
            status, progress
        )
    return progress < threshold

def calculate_refund_amount(
    reserved_credits: int,
    status: JobStatus | str,
    progress: int,
    threshold: int = REFUND_THRESHOLD_PROGRESS
) -> int:
    if reserved_credits <= 0:
        return 0
    if should_refund_credits(status, progress, threshold):
        return reserved_credits
    return 0

def status_refund_eligibility(
    status: JobStatus | str,
    threshold: int = REFUND_THRESHOLD_PROGRESS
) -> Optional[bool]:
    """
    Refund eligibility derived from status alone.

    Returns None when the status's progress range straddles the threshold
    (VOICE_GEN spans 15-30), in which case only the progress can decide.
    """
    bounds = progress_range(status)
    if bounds is None:
        return None
    start, end = bounds
    if end < threshold:
        return True
    if start >= threshold:
        return False
    return None

def calculate_final_credits(narration_duration_ms: Optional[int]) -> int:
    """One credit per started minute of narration, minimum one."""
    if not narration_duration_ms or narration_duration_ms <= 0:
        return 1
    return max(1, math.ceil(narration_duration_ms / 60000))
