import json

from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import missing, step_boundary
from canvascast.pipeline.types import AssetEffect, StepResult, Timeline, TimelineCaption, TimelineScene, UploadEffect

FPS = 30
WIDTH = 1920
HEIGHT = 1080


def ms_to_frames(ms: int, fps: int = FPS) -> int:
    return round(ms * fps / 1000)


@step_boundary(ErrorCode.TIMELINE)
async def build_timeline(ctx: PipelineContext) -> StepResult:
    bag = ctx.artifacts
    if not bag.image_paths or not bag.narration_path or bag.visual_plan is None:
        return missing(ErrorCode.TIMELINE, "build_timeline", "image_paths", "narration_path", "visual_plan")

    slots = bag.visual_plan.slots
    if len(slots) != len(bag.image_paths):
        return StepResult.failure(
            ErrorCode.TIMELINE,
            f"Visual plan has {len(slots)} slots but {len(bag.image_paths)} images were generated",
        )

    scenes = []
    for i, (slot, image_path) in enumerate(zip(slots, bag.image_paths)):
        # Scenes butt against each other so there are no gaps between images
        end_ms = slots[i + 1].start_ms if i + 1 < len(slots) else slot.end_ms
        scenes.append(TimelineScene(
            id=slot.id,
            image_path=image_path,
            start_frame=ms_to_frames(slot.start_ms),
            end_frame=ms_to_frames(end_ms),
        ))

    captions = [
        TimelineCaption(text=seg.text.strip(), start_frame=ms_to_frames(seg.start_ms), end_frame=ms_to_frames(seg.end_ms))
        for seg in bag.whisper_segments or []
    ]

    duration_ms = max(bag.narration_duration_ms or 0, slots[-1].end_ms)
    timeline = Timeline(
        fps=FPS,
        width=WIDTH,
        height=HEIGHT,
        duration_frames=ms_to_frames(duration_ms),
        duration_ms=duration_ms,
        audio_path=bag.narration_path,
        scenes=scenes,
        captions=captions,
    )

    path = f"{ctx.base_path}/timeline.json"
    return StepResult.success(
        {"timeline": timeline, "timeline_path": path},
        [
            UploadEffect(path, json.dumps(timeline.model_dump(mode="json")).encode("utf-8"), "application/json"),
            AssetEffect("timeline", path, {"scenes": len(scenes), "duration_ms": duration_ms}),
        ],
    )
