"""Tests for the individual step units and stage composition."""

import io
import json
import zipfile

import pytest

from canvascast.domain.states import ErrorCode, JobStatus
from canvascast.pipeline.context import InputRecord
from canvascast.pipeline.definitions import get_step
from canvascast.pipeline.steps.build_timeline import build_timeline, ms_to_frames
from canvascast.pipeline.steps.generate_images import generate_images
from canvascast.pipeline.steps.generate_preview import generate_preview
from canvascast.pipeline.steps.generate_script import generate_script, normalize_script
from canvascast.pipeline.steps.generate_voice import generate_voice
from canvascast.pipeline.steps.ingest_inputs import ingest_inputs
from canvascast.pipeline.steps.moderate import moderate_prompts, moderate_script
from canvascast.pipeline.steps.package_assets import package_assets
from canvascast.pipeline.steps.plan_visuals import build_prompt, build_visual_plan, plan_visuals
from canvascast.pipeline.steps.render_video import render_video
from canvascast.pipeline.steps.run_alignment import build_srt, format_srt_timestamp, run_alignment
from canvascast.pipeline.types import ArtifactBag, AssetEffect, Script, ScriptSection, UploadEffect, WhisperSegment


async def run_units(ctx, *units):
    """Runs units in order, merging each patch and applying uploads like the runner does."""
    for unit in units:
        result = await unit(ctx)
        assert result.ok, result.error
        for effect in result.effects:
            if isinstance(effect, UploadEffect):
                await ctx.storage.upload(effect.path, effect.data, effect.content_type)
        ctx = ctx.with_artifacts(ctx.artifacts.merge(result.patch))
    return ctx


async def prepare_visual_plan(make_context):
    ctx = make_context(ArtifactBag(merged_input_text="source"))
    return await run_units(ctx, generate_script, generate_voice, run_alignment, plan_visuals)


class TestIngestInputs:

    async def test_merges_inputs_with_titles(self, make_context, storage):
        await storage.upload("uploads/notes.txt", b"Notes from a file.")
        ctx = make_context(inputs=[
            InputRecord(type="text", title="Intro", content_text="Hello ocean."),
            InputRecord(type="file", storage_path="uploads/notes.txt"),
            InputRecord(type="url", storage_path="https://example.com/deep-sea"),
        ])
        result = await ingest_inputs(ctx)
        assert result.ok
        merged = result.patch["merged_input_text"]
        assert merged.startswith("## Intro\n\nHello ocean.")
        assert "Notes from a file." in merged
        assert "Article fetched from https://example.com/deep-sea" in merged

    async def test_no_inputs_fails(self, make_context):
        result = await ingest_inputs(make_context(inputs=[InputRecord(type="text", content_text="   ")]))
        assert not result.ok
        assert result.error.code == ErrorCode.INPUT_FETCH
        assert result.error.message == "No input content available for this project"

    async def test_missing_file_maps_to_input_fetch(self, make_context):
        result = await ingest_inputs(make_context(inputs=[InputRecord(type="file", storage_path="gone.txt")]))
        assert not result.ok
        assert result.error.code == ErrorCode.INPUT_FETCH


class TestScript:

    def test_normalize_script_uses_150_wpm(self):
        script = normalize_script(Script(title="t", sections=[
            ScriptSection(narration_text=" ".join(["word"] * 150)),
            ScriptSection(id="custom", narration_text=" ".join(["word"] * 75)),
        ]))
        assert script.total_word_count == 225
        assert script.sections[0].id == "section_000"
        assert script.sections[1].id == "custom"
        assert script.sections[0].estimated_duration_ms == 60000
        assert script.estimated_duration_ms == 90000

    async def test_generate_script_requires_source(self, make_context):
        result = await generate_script(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.SCRIPT_GEN
        assert result.error.details["missing"] == ["merged_input_text"]

    async def test_generate_script_uploads_json(self, make_context):
        ctx = make_context(ArtifactBag(merged_input_text="source"))
        result = await generate_script(ctx)
        assert result.ok
        upload = next(e for e in result.effects if isinstance(e, UploadEffect))
        assert upload.path.endswith("/script.json")
        assert json.loads(upload.data)["title"] == "Deep sea creatures"
        assert any(isinstance(e, AssetEffect) and e.kind == "script" for e in result.effects)

    async def test_service_error_maps_to_script_gen(self, make_context, fake_services):
        fake_services.fail["generate_script"] = RuntimeError("LLM unavailable")
        result = await generate_script(make_context(ArtifactBag(merged_input_text="source")))
        assert not result.ok
        assert result.error.code == ErrorCode.SCRIPT_GEN
        assert "LLM unavailable" in result.error.message


class TestModeration:

    async def test_flagged_script_is_not_retryable(self, make_context, fake_services):
        fake_services.flagged = True
        ctx = make_context(ArtifactBag(script=Script(title="t", sections=[ScriptSection(narration_text="x")])))
        result = await moderate_script(ctx)
        assert not result.ok
        assert result.error.code == ErrorCode.MODERATION
        assert result.error.retryable is False

    async def test_prompts_require_plan(self, make_context):
        result = await moderate_prompts(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.MODERATION


class TestVoiceAndAlignment:

    async def test_voice_requires_script(self, make_context):
        result = await generate_voice(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.TTS

    def test_srt_formatting(self):
        assert format_srt_timestamp(3_723_004) == "01:02:03,004"
        srt = build_srt([
            WhisperSegment(id=0, start_ms=0, end_ms=1500, text=" Hello "),
            WhisperSegment(id=1, start_ms=1500, end_ms=3000, text="world"),
        ])
        assert srt.startswith("1\n00:00:00,000 --> 00:00:01,500\nHello\n")
        assert "2\n00:00:01,500 --> 00:00:03,000\nworld\n" in srt

    async def test_voice_then_alignment(self, make_context, storage):
        ctx = make_context(ArtifactBag(merged_input_text="source"))
        ctx = await run_units(ctx, generate_script, generate_voice, run_alignment)
        assert ctx.artifacts.narration_duration_ms == 65000
        assert len(ctx.artifacts.whisper_segments) == 10
        assert storage.objects[ctx.artifacts.captions_srt_path].startswith(b"1\n00:00:00,000")

    async def test_alignment_without_narration(self, make_context):
        result = await run_alignment(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.WHISPER


class TestVisualPlan:

    def segments(self, count=10, length=6500):
        return [WhisperSegment(id=i, start_ms=i * length, end_ms=(i + 1) * length, text=f"s{i}") for i in range(count)]

    def test_slots_group_segments_by_cadence(self):
        plan = build_visual_plan(self.segments(), [ScriptSection(narration_text="x")], "normal", "cinematic")
        assert plan.cadence_ms == 7000
        assert [s.id for s in plan.slots] == ["slot_000", "slot_001", "slot_002", "slot_003", "slot_004"]
        assert plan.slots[0].start_ms == 0
        assert plan.slots[0].end_ms == 13000
        assert plan.slots[-1].end_ms == 65000

    def test_density_and_default_cadence(self):
        assert build_visual_plan(self.segments(), [], "high", "cinematic").cadence_ms == 4000
        assert build_visual_plan(self.segments(), [], "low", "cinematic").cadence_ms == 10000
        assert build_visual_plan(self.segments(), [], "unknown", "cinematic").cadence_ms == 8000

    def test_keywords_rotate_every_three_slots(self):
        sections = [
            ScriptSection(narration_text="a", visual_keywords=["first"]),
            ScriptSection(narration_text="b", visual_keywords=["second"]),
        ]
        plan = build_visual_plan(self.segments(count=20), sections, "high", "cinematic")
        assert "first" in plan.slots[0].prompt
        assert "first" in plan.slots[2].prompt
        assert "second" in plan.slots[3].prompt

    def test_prompt_shape(self):
        prompt = build_prompt("A glowing fish!!  swims <fast>", ["bioluminescence"], "anime")
        assert prompt.startswith("Anime style artwork")
        assert "bioluminescence, scene depicting: A glowing fish swims fast" in prompt

    async def test_plan_requires_segments(self, make_context):
        result = await plan_visuals(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.VISUAL_PLAN


class TestImagesAndTimeline:

    async def test_images_uploaded_per_slot(self, make_context, storage):
        ctx = await run_units(await prepare_visual_plan(make_context), generate_images)
        assert len(ctx.artifacts.image_paths) == 5
        assert ctx.artifacts.image_paths[0].endswith("/images/slot_000.png")
        assert all(path in storage.objects for path in ctx.artifacts.image_paths)

    async def test_image_retries_then_succeeds(self, make_context, fake_services):
        ctx = await prepare_visual_plan(make_context)
        fake_services.fail["generate_image"] = RuntimeError("rate limited")
        fake_services.fail_times["generate_image"] = 2
        result = await generate_images(ctx)
        assert result.ok

    async def test_image_gives_up_after_retries(self, make_context, fake_services):
        ctx = await prepare_visual_plan(make_context)
        fake_services.fail["generate_image"] = RuntimeError("provider down")
        result = await generate_images(ctx)
        assert not result.ok
        assert result.error.code == ErrorCode.IMAGE_GEN
        assert len(result.error.details["failed_slots"]) == 5
        # one call plus two retries per slot
        assert fake_services.calls["generate_image"] == 15

    async def test_images_require_slots(self, make_context):
        result = await generate_images(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.IMAGE_GEN

    async def test_timeline_covers_narration(self, make_context):
        ctx = await run_units(await prepare_visual_plan(make_context), generate_images, build_timeline)
        timeline = ctx.artifacts.timeline
        assert timeline.fps == 30
        assert (timeline.width, timeline.height) == (1920, 1080)
        assert timeline.duration_ms == 65000
        assert timeline.duration_frames == ms_to_frames(65000) == 1950
        assert len(timeline.scenes) == 5
        assert timeline.scenes[0].end_frame == timeline.scenes[1].start_frame
        assert timeline.audio_path == ctx.artifacts.narration_path
        assert len(timeline.captions) == 10


class TestPreview:

    async def test_no_images(self, make_context):
        result = await generate_preview(make_context(ArtifactBag(image_paths=[])))
        assert not result.ok
        assert result.error.code == ErrorCode.PREVIEW
        assert result.error.message == "No images available for preview generation"

    async def test_thumbnail_from_first_image(self, make_context, storage):
        await storage.upload("img/0.png", b"first-image")
        result = await generate_preview(make_context(ArtifactBag(image_paths=["img/0.png"])))
        assert result.ok
        assert result.patch["thumbnail_path"].endswith("/thumbnail.jpg")

    async def test_preview_failure_does_not_fail_the_stage(self, make_context, fake_services):
        ctx = await prepare_visual_plan(make_context)
        ctx = await run_units(ctx, generate_images)
        fake_services.fail["thumbnail"] = RuntimeError("thumbnailer down")
        result = await get_step(JobStatus.TIMELINE_BUILD).execute(ctx)
        assert result.ok
        assert "timeline" in result.patch
        assert "thumbnail_path" not in result.patch


class TestRenderAndPackage:

    async def test_render_requires_timeline(self, make_context):
        result = await render_video(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.RENDER

    async def test_package_contains_manifest(self, make_context, storage):
        ctx = await prepare_visual_plan(make_context)
        ctx = await run_units(ctx, generate_images, build_timeline, render_video, package_assets)
        data = storage.objects[ctx.artifacts.zip_path]
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
            manifest = json.loads(archive.read("manifest.json"))
        assert {"script.json", "timeline.json", "captions.srt", "narration.mp3", "manifest.json"} <= set(names)
        assert "images/slot_000.png" in names
        assert manifest["video_path"] == ctx.artifacts.video_path
        assert ctx.artifacts.zip_path.endswith("/assets.zip")

    async def test_package_requires_video(self, make_context):
        result = await package_assets(make_context())
        assert not result.ok
        assert result.error.code == ErrorCode.PACKAGING


class TestStageExecution:

    async def test_scripting_stage_runs_all_units(self, make_context, fake_services):
        result = await get_step(JobStatus.SCRIPTING).execute(make_context())
        assert result.ok
        assert {"merged_input_text", "script"} <= set(result.patch)
        assert fake_services.calls["moderate"] == 1

    async def test_scripting_stage_stops_at_first_critical_failure(self, make_context, fake_services):
        result = await get_step(JobStatus.SCRIPTING).execute(make_context(inputs=[]))
        assert not result.ok
        assert result.error.code == ErrorCode.INPUT_FETCH
        assert "generate_script" not in fake_services.calls

    @pytest.mark.parametrize("step", [JobStatus.VOICE_GEN, JobStatus.RENDERING, JobStatus.PACKAGING])
    async def test_units_never_raise_on_missing_artifacts(self, make_context, step):
        result = await get_step(step).execute(make_context())
        assert not result.ok
        assert result.error.code == get_step(step).error_code
