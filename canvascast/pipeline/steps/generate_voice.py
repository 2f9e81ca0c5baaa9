from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import AssetEffect, StepResult, UploadEffect


@step_boundary(ErrorCode.TTS)
async def generate_voice(ctx: PipelineContext) -> StepResult:
    script = ctx.artifacts.script
    if script is None:
        return missing(ErrorCode.TTS, "generate_voice", "script")

    narration = "\n\n".join(s.narration_text.strip() for s in script.sections if s.narration_text.strip())
    if not narration:
        return StepResult.failure(ErrorCode.TTS, "Script has no narration text")

    audio = await ctx.services.speech.synthesize(narration, ctx.project.voice_profile_id)
    if not audio.data:
        return StepResult.failure(ErrorCode.TTS, "Speech synthesis returned empty audio")

    path = f"{ctx.base_path}/narration.mp3"
    return StepResult.success(
        {"narration_path": path, "narration_duration_ms": audio.duration_ms},
        [
            UploadEffect(path, audio.data, audio.content_type),
            AssetEffect("audio", path, {"duration_ms": audio.duration_ms}),
        ],
    )
