"""Tests for the processing pipeline: stage order, fallbacks, failure handling and retry."""

import asyncio
import json

import pytest

from viralclip.services.clipper.errors import InvalidTransitionError, PipelineBusyError, ProjectNotFoundError
from viralclip.services.clipper.pipeline import (
    PipelineRunner,
    ProcessingStatus,
    ProjectEventWriter,
    build_pipeline,
    can_retry_from,
)

from conftest import (
    AUDIO_URL,
    CLIPPED_URL,
    GOOD_MOMENT,
    SAMPLE_WORDS,
    SOURCE_URL,
    chat_completion,
    deepgram_payload,
    run,
)

S = ProcessingStatus

HAPPY_PATH = [
    "transcribing",
    "transcribed",
    "detecting",
    "segment_selected",
    "clipping",
    "rendering",
    "ready",
]


def log_messages(store, project_id):
    return [(log.step, log.message) for log in run(store.list_logs(project_id))]


class TestProcessingStatus:

    def test_forward_only(self):
        assert S.PROCESSING.can_advance_to(S.TRANSCRIBING)
        assert S.TRANSCRIBED.can_advance_to(S.ANALYSIS_SKIPPED)
        assert not S.CLIPPING.can_advance_to(S.DETECTING)
        assert not S.CLIPPING.can_advance_to(S.CLIPPING)

    def test_outcome_variants_share_a_stage(self):
        assert not S.TRANSCRIBED.can_advance_to(S.TRANSCRIPT_EMPTY)
        assert not S.SEGMENT_SELECTED.can_advance_to(S.ANALYSIS_FAILED)

    def test_error_reachable_from_any_running_state(self):
        for status in S:
            if status.is_terminal:
                continue
            assert status.can_advance_to(S.ERROR)

    def test_error_only_goes_back_to_processing(self):
        assert S.ERROR.can_advance_to(S.PROCESSING)
        assert not S.ERROR.can_advance_to(S.TRANSCRIBING)
        assert not S.ERROR.can_advance_to(S.READY)

    def test_ready_is_final(self):
        assert not any(S.READY.can_advance_to(s) for s in S)


class FlakyStore:
    """Store whose log writes always fail."""

    def __init__(self):
        self.statuses = []

    async def add_log(self, *args, **kwargs):
        raise RuntimeError("database is locked")

    async def set_status(self, project_id, status):
        self.statuses.append(status)


class TestProjectEventWriter:

    def test_writes_in_emission_order(self, store, project):
        async def scenario():
            writer = ProjectEventWriter(project.id, store)
            writer.start()
            writer.emit("transcribing", "one", S.TRANSCRIBING)
            writer.emit("transcribing", "two")
            writer.emit("transcribing", "three", S.TRANSCRIBED)
            await writer.close()

        run(scenario())

        assert [m for _, m in log_messages(store, project.id)] == ["one", "two", "three"]
        assert store.statuses[project.id] == ["transcribing", "transcribed"]
        assert run(store.get_project(project.id)).status == "transcribed"

    def test_rejects_backwards_transition(self, store, project):
        async def scenario():
            writer = ProjectEventWriter(project.id, store)
            writer.start()
            writer.emit("clipping", "cut", S.CLIPPING)
            try:
                writer.emit("detecting", "again", S.DETECTING)
            finally:
                await writer.close()

        with pytest.raises(InvalidTransitionError):
            run(scenario())
        assert store.statuses[project.id] == ["clipping"]

    def test_failed_write_does_not_abort(self):
        flaky = FlakyStore()

        async def scenario():
            writer = ProjectEventWriter(1, flaky)
            writer.start()
            writer.emit("transcribing", "start", S.TRANSCRIBING)
            writer.emit("error", "boom", S.ERROR)
            await writer.close()
            return writer.status

        assert run(scenario()) is S.ERROR
        assert flaky.statuses == ["transcribing", "error"]


class TestPipelineHappyPath:

    def test_runs_every_stage(self, runner, store, project, fake_services):
        outcome = run(runner.run(project.id))

        assert outcome.success
        assert outcome.status is S.READY
        assert outcome.viral_moment.start_time == 2.0
        assert store.statuses[project.id] == HAPPY_PATH
        assert log_messages(store, project.id)[-1] == ("complete", "Video processing complete!")
        assert not runner.is_running(project.id)

    def test_transcribes_extracted_audio_with_primary_model(self, runner, project, fake_services):
        run(runner.run(project.id))

        deepgram = fake_services.requests_to("deepgram.test")
        assert len(deepgram) == 1
        assert deepgram[0].url.params["model"] == "nova-2"
        assert json.loads(deepgram[0].content) == {"url": AUDIO_URL}

    def test_persists_transcript(self, runner, store, project):
        run(runner.run(project.id))

        raw = run(store.get_raw_video(project.id))
        assert raw.transcript == " ".join(SAMPLE_WORDS)
        assert raw.duration_seconds == 18.0
        assert len(raw.transcript_json) == 4
        assert raw.word_timestamps[0]["word"] == "Most"

    def test_stores_clip_and_clip_relative_captions(self, runner, store, project, fake_services):
        run(runner.run(project.id))

        video = run(store.get_generated_video(project.id))
        assert video.video_url == CLIPPED_URL
        assert video.clipped
        assert (video.start_time, video.end_time) == (2.0, 12.0)
        assert video.hook_text == GOOD_MOMENT["hook_text"]
        assert video.captions_json[0]["start"] == 0.0
        assert video.captions_json[0]["text"].startswith("is luck.")
        assert all(seg["end"] <= 10.0 + 0.1 for seg in video.captions_json)

        clip_request = json.loads(fake_services.requests_to("clipper.test", "/clip")[0].content)
        assert clip_request["inputUrl"] == SOURCE_URL
        assert (clip_request["startTime"], clip_request["endTime"]) == (2.0, 12.0)

    def test_stores_both_subtitle_formats(self, runner, store, project):
        run(runner.run(project.id))

        srt = run(store.get_subtitle(project.id, "srt"))
        vtt = run(store.get_subtitle(project.id, "vtt"))
        assert srt.content_type == "text/plain"
        assert srt.content.decode("utf-8").startswith("1\n00:00:00,000 --> ")
        assert vtt.content_type == "text/vtt"
        assert vtt.content.decode("utf-8").startswith("WEBVTT\n\n00:00:00.000 --> ")


class TestTranscriptionFallbacks:

    def test_primary_model_failure_uses_fallback(self, runner, store, project, fake_services):
        fake_services.deepgram["nova-2"] = 500

        outcome = run(runner.run(project.id))

        assert outcome.success
        fallback = [r for r in fake_services.requests_to("deepgram.test") if r.url.params["model"] == "nova"]
        assert len(fallback) == 1
        assert json.loads(fallback[0].content) == {"url": SOURCE_URL}
        assert any("nova-2 failed" in m for _, m in log_messages(store, project.id))
        assert store.statuses[project.id] == HAPPY_PATH

    def test_empty_primary_transcript_uses_fallback(self, runner, project, fake_services):
        fake_services.deepgram["nova-2"] = {"metadata": {"duration": 18.0}, "results": {}}

        outcome = run(runner.run(project.id))

        assert outcome.success
        assert outcome.viral_moment.end_time == 12.0

    def test_audio_extraction_failure_uses_fallback(self, runner, project, fake_services):
        fake_services.extract_audio = 502

        outcome = run(runner.run(project.id))

        assert outcome.success
        models = [r.url.params["model"] for r in fake_services.requests_to("deepgram.test")]
        assert models == ["nova"]

    def test_total_failure_continues_with_empty_transcript(self, runner, store, project, fake_services):
        fake_services.deepgram_default = 503

        outcome = run(runner.run(project.id))

        assert outcome.success
        assert store.statuses[project.id] == [
            "transcribing",
            "transcript_empty",
            "analysis_skipped",
            "clipping",
            "rendering",
            "ready",
        ]
        # Default segment comes from the uploaded duration (90s)
        assert (outcome.viral_moment.start_time, outcome.viral_moment.end_time) == (0.0, 60.0)
        assert fake_services.requests_to("ai.test") == []
        srt = run(store.get_subtitle(project.id, "srt"))
        assert srt.content == b""


class TestDetectionFallbacks:

    def test_short_transcript_skips_detection(self, runner, store, project, fake_services):
        fake_services.deepgram_default = deepgram_payload(SAMPLE_WORDS[:8])

        outcome = run(runner.run(project.id))

        assert outcome.success
        assert "analysis_skipped" in store.statuses[project.id]
        assert fake_services.requests_to("ai.test") == []
        assert (outcome.viral_moment.start_time, outcome.viral_moment.end_time) == (0.0, 4.0)

    def test_detection_error_uses_default_segment(self, runner, store, project, fake_services):
        fake_services.ai = 500

        outcome = run(runner.run(project.id))

        assert outcome.success
        assert store.statuses[project.id] == [
            "transcribing",
            "transcribed",
            "detecting",
            "analysis_failed",
            "clipping",
            "rendering",
            "ready",
        ]
        assert (outcome.viral_moment.start_time, outcome.viral_moment.end_time) == (0.0, 18.0)

    def test_malformed_answer_past_media_end_uses_default(self, runner, project, fake_services):
        fake_services.ai = chat_completion("garbage")

        outcome = run(runner.run(project.id))

        # The 30-75s fallback starts after this 18s video ends
        assert outcome.success
        assert (outcome.viral_moment.start_time, outcome.viral_moment.end_time) == (0.0, 18.0)

    def test_moment_clamped_to_media_duration(self, runner, project, fake_services):
        fake_services.ai = chat_completion({**GOOD_MOMENT, "start_time": 10.0, "end_time": 40.0})

        outcome = run(runner.run(project.id))

        assert (outcome.viral_moment.start_time, outcome.viral_moment.end_time) == (10.0, 18.0)


class TestClipFallback:

    def test_clip_failure_keeps_source_video(self, runner, store, project, fake_services):
        fake_services.clip = 500

        outcome = run(runner.run(project.id))

        assert outcome.success
        video = run(store.get_generated_video(project.id))
        assert video.video_url == SOURCE_URL
        assert not video.clipped
        # Captions stay on the source timeline
        assert video.captions_json[0]["start"] == 2.0
        assert any(step == "clip_failed" for step, _ in log_messages(store, project.id))
        assert store.statuses[project.id] == HAPPY_PATH


class TestPipelineErrors:

    def test_missing_credentials(self, settings, store, project, http_client, fake_services):
        settings = settings.model_copy(update={"deepgram_api_key": ""})
        runner = PipelineRunner(build_pipeline(settings, store, http_client=http_client))

        outcome = run(runner.run(project.id))

        assert not outcome.success
        assert outcome.status is S.ERROR
        assert "DEEPGRAM_API_KEY" in outcome.error
        assert store.statuses[project.id] == ["error"]
        step, message = log_messages(store, project.id)[-1]
        assert step == "error"
        assert "DEEPGRAM_API_KEY" in message
        assert fake_services.requests == []

    def test_missing_source_media(self, runner, store, project, fake_services):
        fake_services.source_status = 404

        outcome = run(runner.run(project.id))

        assert outcome.status is S.ERROR
        assert outcome.error == "Failed to fetch video: HTTP 404"
        assert run(store.get_project(project.id)).status == "error"
        assert fake_services.requests_to("deepgram.test") == []

    def test_unexpected_failure_ends_in_error(self, runner, store, project, monkeypatch):
        async def broken(**kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "replace_generated_video", broken)

        outcome = run(runner.run(project.id))

        assert outcome.status is S.ERROR
        assert outcome.error == "disk full"
        assert store.statuses[project.id][-2:] == ["rendering", "error"]
        assert log_messages(store, project.id)[-1] == ("error", "disk full")
        assert not runner.is_running(project.id)


class TestRunner:

    def test_unknown_project(self, runner):
        with pytest.raises(ProjectNotFoundError):
            run(runner.run(999))

    def test_busy_project_rejected(self, runner, project):
        runner.claim(project.id)
        with pytest.raises(PipelineBusyError):
            run(runner.run(project.id))
        runner.release(project.id)

    def test_concurrent_runs_only_one_starts(self, runner, store, project):
        async def scenario():
            return await asyncio.gather(
                runner.run(project.id),
                runner.run(project.id),
                return_exceptions=True,
            )

        results = run(scenario())
        rejected = [r for r in results if isinstance(r, (PipelineBusyError, InvalidTransitionError))]
        done = [r for r in results if not isinstance(r, Exception)]
        assert len(rejected) == 1
        assert len(done) == 1 and done[0].success
        assert run(store.count_generated_videos(project.id)) == 1

    def test_cannot_rerun_ready_project(self, runner, project):
        run(runner.run(project.id))
        with pytest.raises(InvalidTransitionError):
            run(runner.run(project.id))

    def test_retry_only_from_error(self, runner, project):
        with pytest.raises(InvalidTransitionError):
            run(runner.retry(project.id))
        assert not runner.is_running(project.id)

    def test_retry_after_error(self, runner, store, project, fake_services):
        fake_services.source_status = 404
        assert not run(runner.run(project.id)).success

        fake_services.source_status = 200
        outcome = run(runner.retry(project.id))

        assert outcome.success
        logs = log_messages(store, project.id)
        assert logs[0][0] == "transcribing"
        assert all(step != "error" for step, _ in logs)
        assert run(store.get_project(project.id)).status == "ready"

    def test_retry_replaces_earlier_output(self, runner, store, project):
        run(runner.run(project.id))
        # A crash after the clip was stored but before `ready` was written
        run(store.set_status(project.id, "error"))

        outcome = run(runner.retry(project.id))

        assert outcome.success
        assert run(store.count_generated_videos(project.id)) == 1
        assert run(store.get_subtitle(project.id, "srt")) is not None

    def test_retry_after_interrupted_run(self, runner, store, project):
        # The process died mid-clip; nothing is running any more
        run(store.set_status(project.id, "clipping"))
        assert not runner.is_running(project.id)

        outcome = run(runner.retry(project.id))

        assert outcome.success
        assert run(store.get_project(project.id)).status == "ready"
        assert run(store.count_generated_videos(project.id)) == 1

    def test_retry_refused_while_running(self, runner, store, project):
        run(store.set_status(project.id, "clipping"))
        runner.claim(project.id)
        try:
            with pytest.raises(PipelineBusyError):
                run(runner.retry(project.id))
        finally:
            runner.release(project.id)

    def test_retry_refused_after_ready(self, runner, store, project):
        run(runner.run(project.id))
        with pytest.raises(InvalidTransitionError):
            run(runner.retry(project.id))
        assert run(store.count_generated_videos(project.id)) == 1

    def test_double_retry_runs_once(self, runner, store, project, fake_services):
        fake_services.source_status = 404
        run(runner.run(project.id))
        fake_services.source_status = 200

        async def scenario():
            return await asyncio.gather(
                runner.retry(project.id),
                runner.retry(project.id),
                return_exceptions=True,
            )

        results = run(scenario())
        rejected = [r for r in results if isinstance(r, (PipelineBusyError, InvalidTransitionError))]
        done = [r for r in results if not isinstance(r, Exception)]
        assert len(rejected) == 1
        assert len(done) == 1 and done[0].success
        assert run(store.count_generated_videos(project.id)) == 1

    def test_retry_twice_in_a_row(self, runner, store, project, fake_services):
        fake_services.source_status = 404
        run(runner.run(project.id))
        fake_services.source_status = 200

        assert run(runner.retry(project.id)).success
        with pytest.raises(InvalidTransitionError):
            run(runner.retry(project.id))
        assert run(store.count_generated_videos(project.id)) == 1


def test_retry_allowed_from():
    assert can_retry_from(S.ERROR)
    assert can_retry_from(S.CLIPPING)
    assert can_retry_from(S.TRANSCRIPT_EMPTY)
    assert can_retry_from(None)
    assert not can_retry_from(S.PROCESSING)
    assert not can_retry_from(S.READY)
