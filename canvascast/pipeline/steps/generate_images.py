import asyncio
import logging

from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import AssetEffect, StepResult, UploadEffect, VisualSlot

logger = logging.getLogger(__name__)

MAX_CONCURRENT = 3
MAX_RETRIES = 2


async def _generate_one(ctx: PipelineContext, slot: VisualSlot) -> bytes:
    attempt = 0
    while True:
        try:
            return await ctx.services.images.generate_image(slot.prompt, slot.style)
        except Exception as e:
            attempt += 1
            if attempt > MAX_RETRIES:
                raise
            logger.warning(f"Image {slot.id} for job {ctx.job_id} failed (attempt {attempt}): {e}")


@step_boundary(ErrorCode.IMAGE_GEN)
async def generate_images(ctx: PipelineContext) -> StepResult:
    plan = ctx.artifacts.visual_plan
    if plan is None or not plan.slots:
        return missing(ErrorCode.IMAGE_GEN, "generate_images", "visual_plan")

    images: dict[str, bytes] = {}
    failed: list[str] = []

    for start in range(0, len(plan.slots), MAX_CONCURRENT):
        batch = plan.slots[start:start + MAX_CONCURRENT]
        results = await asyncio.gather(*(_generate_one(ctx, slot) for slot in batch), return_exceptions=True)
        for slot, result in zip(batch, results):
            if isinstance(result, BaseException):
                failed.append(slot.id)
            else:
                images[slot.id] = result

    if failed:
        return StepResult.failure(
            ErrorCode.IMAGE_GEN,
            f"Failed to generate {len(failed)} of {len(plan.slots)} images",
            failed_slots=failed,
        )

    effects = []
    image_paths = []
    for slot in plan.slots:
        path = f"{ctx.base_path}/images/{slot.id}.png"
        image_paths.append(path)
        effects.append(UploadEffect(path, images[slot.id], "image/png"))
        effects.append(AssetEffect("image", path, {"slot_id": slot.id, "prompt": slot.prompt}))

    return StepResult.success({"image_paths": image_paths}, effects)
