import re

from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import ScriptSection, StepResult, VisualPlan, VisualSlot, WhisperSegment

# Milliseconds of narration per image
CADENCE_MS = {
    "low": 10000,
    "normal": 7000,
    "high": 4000,
}
DEFAULT_CADENCE_MS = 8000

STYLE_PREFIXES = {
    "photorealistic": "Photorealistic photograph, natural lighting, high detail, ",
    "illustration": "Digital illustration, vibrant colors, clean linework, ",
    "minimalist": "Minimalist design, simple shapes, muted palette, ",
    "cinematic": "Cinematic film still, dramatic lighting, shallow depth of field, ",
    "anime": "Anime style artwork, expressive characters, detailed background, ",
}
DEFAULT_STYLE = "cinematic"

SECTIONS_PER_SLOT_GROUP = 3
PROMPT_TEXT_LIMIT = 100


def clean_text(text: str) -> str:
    text = re.sub(r"[^\w\s,.'-]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def build_prompt(text: str, keywords: list[str], style: str) -> str:
    prefix = STYLE_PREFIXES.get(style, STYLE_PREFIXES[DEFAULT_STYLE])
    keyword_part = f"{', '.join(keywords)}, " if keywords else ""
    return f"{prefix}{keyword_part}scene depicting: {clean_text(text)[:PROMPT_TEXT_LIMIT]}"


def build_visual_plan(
    segments: list[WhisperSegment],
    sections: list[ScriptSection],
    image_density: str,
    style: str
) -> VisualPlan:
    """
    Groups consecutive segments into image slots of roughly `cadence` length.
    Every three slots move on to the next script section's keywords.
    """
    cadence = CADENCE_MS.get(image_density, DEFAULT_CADENCE_MS)
    slots: list[VisualSlot] = []
    slot_start = None
    texts: list[str] = []

    for i, seg in enumerate(segments):
        if slot_start is None:
            slot_start = seg.start_ms
        texts.append(seg.text.strip())

        if seg.end_ms - slot_start >= cadence or i == len(segments) - 1:
            index = len(slots)
            keywords = []
            if sections:
                section = sections[(index // SECTIONS_PER_SLOT_GROUP) % len(sections)]
                keywords = section.visual_keywords
            text = " ".join(t for t in texts if t)
            slots.append(VisualSlot(
                id=f"slot_{index:03d}",
                start_ms=slot_start,
                end_ms=seg.end_ms,
                text=text,
                prompt=build_prompt(text, keywords, style),
                style=style,
            ))
            slot_start = None
            texts = []

    return VisualPlan(cadence_ms=cadence, slots=slots)


@step_boundary(ErrorCode.VISUAL_PLAN)
async def plan_visuals(ctx: PipelineContext) -> StepResult:
    script = ctx.artifacts.script
    segments = ctx.artifacts.whisper_segments
    if script is None or not segments:
        return missing(ErrorCode.VISUAL_PLAN, "plan_visuals", "script", "whisper_segments")

    style = ctx.project.visual_preset_id if ctx.project.visual_preset_id in STYLE_PREFIXES else DEFAULT_STYLE
    plan = build_visual_plan(segments, script.sections, ctx.project.image_density, style)
    if not plan.slots:
        return StepResult.failure(ErrorCode.VISUAL_PLAN, "Visual plan has no slots")

    return StepResult.success({"visual_plan": plan})
