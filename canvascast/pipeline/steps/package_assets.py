import io
import json
import posixpath
import zipfile

from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import AssetEffect, StepResult, UploadEffect


@step_boundary(ErrorCode.PACKAGING)
async def package_assets(ctx: PipelineContext) -> StepResult:
    """Bundles script, timeline, captions, narration and images into assets.zip."""
    bag = ctx.artifacts
    if bag.script is None or bag.timeline is None or not bag.video_path:
        return missing(ErrorCode.PACKAGING, "package_assets", "script", "timeline", "video_path")

    buffer = io.BytesIO()
    files = []
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("script.json", json.dumps(bag.script.model_dump(mode="json"), indent=2))
        archive.writestr("timeline.json", json.dumps(bag.timeline.model_dump(mode="json"), indent=2))
        files += ["script.json", "timeline.json"]

        if bag.captions_srt_path:
            archive.writestr("captions.srt", await ctx.storage.download(bag.captions_srt_path))
            files.append("captions.srt")
        if bag.narration_path:
            archive.writestr("narration.mp3", await ctx.storage.download(bag.narration_path))
            files.append("narration.mp3")
        for image_path in bag.image_paths or []:
            name = f"images/{posixpath.basename(image_path)}"
            archive.writestr(name, await ctx.storage.download(image_path))
            files.append(name)

        manifest = {
            "job_id": str(ctx.job_id),
            "project_id": str(ctx.project_id),
            "title": bag.script.title,
            "video_path": bag.video_path,
            "thumbnail_path": bag.thumbnail_path,
            "duration_ms": bag.timeline.duration_ms,
            "files": files,
        }
        archive.writestr("manifest.json", json.dumps(manifest, indent=2))

    path = f"{ctx.output_path}/assets.zip"
    data = buffer.getvalue()
    return StepResult.success(
        {"zip_path": path},
        [
            UploadEffect(path, data, "application/zip"),
            AssetEffect("zip", path, {"files": len(files) + 1, "size_bytes": len(data)}),
        ],
    )
