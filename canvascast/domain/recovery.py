from typing import Optional

from canvascast.domain.models import CheckpointState, RetryOptions
from canvascast.domain.stages import first_stage, is_at_or_after, next_stage
from canvascast.domain.states import JobStatus

# Stages up to here are cheap to redo; image generation and later are not.
CHECKPOINT_THRESHOLD_STEP = JobStatus.IMAGE_GEN

def can_retry_from_checkpoint(
    checkpoint: Optional[CheckpointState],
    threshold: JobStatus = CHECKPOINT_THRESHOLD_STEP
) -> bool:
    if checkpoint is None or checkpoint.last_completed_step is None:
        return False
    return is_at_or_after(checkpoint.last_completed_step, threshold)

def get_next_step_from_checkpoint(checkpoint: Optional[CheckpointState]) -> Optional[JobStatus]:
    if checkpoint is None:
        return first_stage()
    return next_stage(checkpoint.last_completed_step)

def _step_label(step: JobStatus) -> str:
    return step.value.lower().replace("_", " ")

def _preserved_summary(checkpoint: CheckpointState) -> str:
    artifacts = checkpoint.artifacts or {}
    parts = []
    image_count = len(artifacts.get("image_paths") or [])
    if image_count:
        parts.append(f"{image_count} images were generated successfully")
    if artifacts.get("narration_path"):
        parts.append("voice narration was created")
    if artifacts.get("video_path"):
        parts.append("the video was rendered")
    if not parts:
        return f"Work up to {_step_label(checkpoint.last_completed_step)} was saved"
    return " and ".join(parts).capitalize()

def get_retry_options(
    checkpoint: Optional[CheckpointState],
    threshold: JobStatus = CHECKPOINT_THRESHOLD_STEP
) -> RetryOptions:
    if not can_retry_from_checkpoint(checkpoint, threshold):
        return RetryOptions(
            can_retry_from_checkpoint=False,
            next_step=None,
            message=(
                "This job requires a full retry from the beginning. "
                "No checkpoint is available for partial recovery."
            ),
        )

    following = next_stage(checkpoint.last_completed_step)
    preserved = _preserved_summary(checkpoint)
    if following is None:
        message = f"{preserved}. All pipeline steps are complete; only finalization remains."
    else:
        message = (
            f"{preserved}, resuming from {_step_label(following)}. "
            "You won't be charged again for the completed steps."
        )
    return RetryOptions(can_retry_from_checkpoint=True, next_step=following, message=message)
