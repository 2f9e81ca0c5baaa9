import json

from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.services import ScriptRequest
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import AssetEffect, Script, StepResult, UploadEffect

WORDS_PER_MINUTE = 150


def _duration_ms(words: int) -> int:
    return round(words / WORDS_PER_MINUTE * 60000)


def normalize_script(script: Script) -> Script:
    """Fills section ids, pace hints and word-count based durations."""
    sections = []
    total_words = 0
    for i, section in enumerate(script.sections):
        words = len(section.narration_text.split())
        total_words += words
        sections.append(section.model_copy(update={
            "id": section.id or f"section_{i:03d}",
            "pace_hint": section.pace_hint or "normal",
            "estimated_duration_ms": _duration_ms(words),
        }))
    return script.model_copy(update={
        "sections": sections,
        "total_word_count": total_words,
        "estimated_duration_ms": _duration_ms(total_words),
    })


@step_boundary(ErrorCode.SCRIPT_GEN)
async def generate_script(ctx: PipelineContext) -> StepResult:
    source = ctx.artifacts.merged_input_text
    if not source:
        return missing(ErrorCode.SCRIPT_GEN, "generate_script", "merged_input_text")

    project = ctx.project
    request = ScriptRequest(
        title=project.title,
        source_text=source,
        niche_preset=project.niche_preset,
        target_minutes=project.target_minutes,
        target_words=project.target_minutes * WORDS_PER_MINUTE,
    )
    script = await ctx.services.script.generate_script(request)
    if not script.sections:
        return StepResult.failure(ErrorCode.SCRIPT_GEN, "Script generation returned no sections")

    script = normalize_script(script)
    path = f"{ctx.base_path}/script.json"
    return StepResult.success(
        {"script": script},
        [
            UploadEffect(path, json.dumps(script.model_dump(mode="json")).encode("utf-8"), "application/json"),
            AssetEffect("script", path, {"word_count": script.total_word_count, "sections": len(script.sections)}),
        ],
    )
