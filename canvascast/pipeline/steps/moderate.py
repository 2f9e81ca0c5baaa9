from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import StepResult


async def _check(ctx: PipelineContext, texts: list[str], what: str) -> StepResult:
    result = await ctx.services.moderator.moderate(texts)
    if result.flagged:
        # Same content will be flagged again, so retrying is pointless
        return StepResult.failure(
            ErrorCode.MODERATION,
            f"The generated {what} was flagged by content moderation",
            retryable=False,
            categories=result.categories,
        )
    return StepResult.success()


@step_boundary(ErrorCode.MODERATION)
async def moderate_script(ctx: PipelineContext) -> StepResult:
    script = ctx.artifacts.script
    if script is None:
        return missing(ErrorCode.MODERATION, "moderate_script", "script")
    texts = [script.title] + [s.narration_text for s in script.sections]
    return await _check(ctx, texts, "script")


@step_boundary(ErrorCode.MODERATION)
async def moderate_prompts(ctx: PipelineContext) -> StepResult:
    plan = ctx.artifacts.visual_plan
    if plan is None:
        return missing(ErrorCode.MODERATION, "moderate_prompts", "visual_plan")
    return await _check(ctx, [slot.prompt for slot in plan.slots], "image prompts")
