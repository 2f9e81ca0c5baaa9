from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import AssetEffect, StepResult, UploadEffect, WhisperSegment


def format_srt_timestamp(ms: int) -> str:
    hours, rem = divmod(max(ms, 0), 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def build_srt(segments: list[WhisperSegment]) -> str:
    blocks = []
    for i, seg in enumerate(segments, start=1):
        blocks.append(
            f"{i}\n"
            f"{format_srt_timestamp(seg.start_ms)} --> {format_srt_timestamp(seg.end_ms)}\n"
            f"{seg.text.strip()}\n"
        )
    return "\n".join(blocks)


@step_boundary(ErrorCode.WHISPER)
async def run_alignment(ctx: PipelineContext) -> StepResult:
    """Transcribes the narration for word timing and writes captions.srt."""
    narration_path = ctx.artifacts.narration_path
    if not narration_path:
        return missing(ErrorCode.WHISPER, "run_alignment", "narration_path")

    audio = await ctx.storage.download(narration_path)
    segments = await ctx.services.transcriber.transcribe(audio)
    if not segments:
        return StepResult.failure(ErrorCode.WHISPER, "Transcription returned no segments")

    path = f"{ctx.base_path}/captions.srt"
    return StepResult.success(
        {"whisper_segments": segments, "captions_srt_path": path},
        [
            UploadEffect(path, build_srt(segments).encode("utf-8"), "application/x-subrip"),
            AssetEffect("captions", path, {"segments": len(segments)}),
        ],
    )
