from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import step_boundary
from canvascast.pipeline.types import AssetEffect, StepResult, UploadEffect

THUMBNAIL_WIDTH = 640
THUMBNAIL_HEIGHT = 360


@step_boundary(ErrorCode.PREVIEW)
async def generate_preview(ctx: PipelineContext) -> StepResult:
    """Thumbnail from the first generated image."""
    image_paths = ctx.artifacts.image_paths
    if not image_paths:
        return StepResult.failure(ErrorCode.PREVIEW, "No images available for preview generation")

    source = await ctx.storage.download(image_paths[0])
    thumbnail = await ctx.services.renderer.thumbnail(source, THUMBNAIL_WIDTH, THUMBNAIL_HEIGHT)

    path = f"{ctx.output_path}/thumbnail.jpg"
    return StepResult.success(
        {"thumbnail_path": path},
        [
            UploadEffect(path, thumbnail, "image/jpeg"),
            AssetEffect("thumbnail", path, {"width": THUMBNAIL_WIDTH, "height": THUMBNAIL_HEIGHT}),
        ],
    )
