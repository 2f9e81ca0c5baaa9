import logging
from dataclasses import dataclass
from typing import Optional

from canvascast.domain.stages import PIPELINE_STAGES, PROGRESS_RANGES, stage_index
from canvascast.domain.states import ErrorCode, JobStatus
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import StepFn
from canvascast.pipeline.steps.build_timeline import build_timeline
from canvascast.pipeline.steps.generate_images import generate_images
from canvascast.pipeline.steps.generate_preview import generate_preview
from canvascast.pipeline.steps.generate_script import generate_script
from canvascast.pipeline.steps.generate_voice import generate_voice
from canvascast.pipeline.steps.ingest_inputs import ingest_inputs
from canvascast.pipeline.steps.moderate import moderate_prompts, moderate_script
from canvascast.pipeline.steps.package_assets import package_assets
from canvascast.pipeline.steps.plan_visuals import plan_visuals
from canvascast.pipeline.steps.render_video import render_video
from canvascast.pipeline.steps.run_alignment import run_alignment
from canvascast.pipeline.types import StepResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepUnit:
    fn: StepFn
    # A non-critical unit's failure is logged and the stage carries on
    critical: bool = True

    @property
    def name(self) -> str:
        return self.fn.__name__


@dataclass(frozen=True)
class PipelineStep:
    name: JobStatus
    order: int
    progress_start: int
    progress_end: int
    error_code: ErrorCode
    units: tuple[StepUnit, ...]

    async def execute(self, ctx: PipelineContext) -> StepResult:
        """Runs the units in order; each sees the artifacts produced by the ones before it."""
        patch: dict = {}
        effects: list = []
        for unit in self.units:
            unit_ctx = ctx.with_artifacts(ctx.artifacts.merge(patch)) if patch else ctx
            result = await unit.fn(unit_ctx)
            if not result.ok:
                if unit.critical:
                    return result
                logger.warning(
                    "Non-critical unit %s failed for job %s: %s",
                    unit.name, ctx.job_id, result.error.message
                )
                continue
            patch.update(result.patch)
            effects.extend(result.effects)
        return StepResult.success(patch, effects)


_UNITS: dict[JobStatus, tuple[ErrorCode, tuple[StepUnit, ...]]] = {
    JobStatus.SCRIPTING: (ErrorCode.SCRIPT_GEN, (
        StepUnit(ingest_inputs), StepUnit(generate_script), StepUnit(moderate_script),
    )),
    JobStatus.VOICE_GEN: (ErrorCode.TTS, (StepUnit(generate_voice),)),
    JobStatus.ALIGNMENT: (ErrorCode.WHISPER, (StepUnit(run_alignment),)),
    JobStatus.VISUAL_PLAN: (ErrorCode.VISUAL_PLAN, (StepUnit(plan_visuals), StepUnit(moderate_prompts))),
    JobStatus.IMAGE_GEN: (ErrorCode.IMAGE_GEN, (StepUnit(generate_images),)),
    JobStatus.TIMELINE_BUILD: (ErrorCode.TIMELINE, (
        StepUnit(build_timeline), StepUnit(generate_preview, critical=False),
    )),
    JobStatus.RENDERING: (ErrorCode.RENDER, (StepUnit(render_video),)),
    JobStatus.PACKAGING: (ErrorCode.PACKAGING, (StepUnit(package_assets),)),
}

PIPELINE_STEPS: tuple[PipelineStep, ...] = tuple(
    PipelineStep(
        name=stage,
        order=stage_index(stage),
        progress_start=PROGRESS_RANGES[stage][0],
        progress_end=PROGRESS_RANGES[stage][1],
        error_code=_UNITS[stage][0],
        units=_UNITS[stage][1],
    )
    for stage in PIPELINE_STAGES
)


def get_step(name: JobStatus | str) -> PipelineStep:
    for step in PIPELINE_STEPS:
        if step.name == name:
            return step
    raise KeyError(name)


def steps_from(name: Optional[JobStatus]) -> tuple[PipelineStep, ...]:
    """Steps starting at `name`; empty when there is nothing left to run."""
    if name is None:
        return ()
    start = PIPELINE_STEPS.index(get_step(name))
    return PIPELINE_STEPS[start:]
