import functools
import logging
from typing import Awaitable, Callable

from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.types import StepResult

logger = logging.getLogger(__name__)

StepFn = Callable[[PipelineContext], Awaitable[StepResult]]


def step_boundary(code: ErrorCode) -> Callable[[StepFn], StepFn]:
    """Turns any exception raised inside a step into a failure carrying the step's error code."""

    def decorator(fn: StepFn) -> StepFn:
        @functools.wraps(fn)
        async def wrapper(ctx: PipelineContext) -> StepResult:
            try:
                return await fn(ctx)
            except Exception as e:
                logger.warning("Step %s failed for job %s: %s", fn.__name__, ctx.job_id, e)
                return StepResult.failure(code, f"{fn.__name__} failed: {e}", exception=type(e).__name__)

        return wrapper

    return decorator


def missing(code: ErrorCode, step: str, *names: str) -> StepResult:
    return StepResult.failure(code, f"{step} requires {', '.join(names)}", missing=list(names))
