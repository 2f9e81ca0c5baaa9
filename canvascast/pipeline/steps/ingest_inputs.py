import logging

from canvascast.domain.states import ErrorCode
from canvascast.pipeline.context import PipelineContext
from canvascast.pipeline.steps.base import step_boundary
from canvascast.pipeline.types import StepResult

logger = logging.getLogger(__name__)


async def _read_input(ctx: PipelineContext, item) -> str:
    if item.type == "file" and item.storage_path:
        data = await ctx.storage.download(item.storage_path)
        return data.decode("utf-8", errors="replace")
    if item.type == "url" and not item.content_text and item.storage_path:
        return await ctx.services.fetcher.fetch_text(item.storage_path)
    return item.content_text or ""


@step_boundary(ErrorCode.INPUT_FETCH)
async def ingest_inputs(ctx: PipelineContext) -> StepResult:
    """Merges every project input into one source text, titles as headings."""
    parts = []
    for item in ctx.inputs:
        text = (await _read_input(ctx, item)).strip()
        if not text:
            continue
        if item.title:
            parts.append(f"## {item.title}\n\n{text}")
        else:
            parts.append(text)

    if not parts:
        return StepResult.failure(ErrorCode.INPUT_FETCH, "No input content available for this project")

    merged = "\n\n---\n\n".join(parts)
    logger.info(f"Merged {len(parts)} inputs ({len(merged)} chars) for job {ctx.job_id}")
    return StepResult.success({"merged_input_text": merged})
