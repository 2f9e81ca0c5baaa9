from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import AssetEffect, StepResult, UploadEffect


@step_boundary(ErrorCode.RENDER)
async def render_video(ctx: PipelineContext) -> StepResult:
    timeline = ctx.artifacts.timeline
    if timeline is None:
        return missing(ErrorCode.RENDER, "render_video", "timeline")

    video = await ctx.services.renderer.render(timeline)
    if not video:
        return StepResult.failure(ErrorCode.RENDER, "Renderer returned an empty video")

    path = f"{ctx.output_path}/video.mp4"
    return StepResult.success(
        {"video_path": path},
        [
            UploadEffect(path, video, "video/mp4"),
            AssetEffect("video", path, {"duration_ms": timeline.duration_ms, "size_bytes": len(video)}),
        ],
    )
