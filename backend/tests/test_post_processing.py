import asyncio

import pytest

from hangjegyzet.core.config import Settings
from hangjegyzet.core.modes import resolve_processing_options
from hangjegyzet.models.models import JobPriority, TranscriptionMode
from hangjegyzet.schemas.transcription import ProcessingOptionsInput
from hangjegyzet.services.post_processing import AIPostProcessor, word_similarity

from fakes import EchoEnhancer, make_segments


def options(mode=TranscriptionMode.BALANCED, **overrides):
    return resolve_processing_options(mode, "hu", ProcessingOptionsInput(**overrides))


class SlowEnhancer(EchoEnhancer):

    async def enhance_text(self, text: str, instructions: str) -> str:
        await asyncio.sleep(1.0)
        return text


class TestShouldRun:

    def test_runs_for_eligible_job(self):
        processor = AIPostProcessor(EchoEnhancer())
        assert processor.should_run(TranscriptionMode.BALANCED, options(), 600.0) == (True, "")

    @pytest.mark.parametrize("mode, opts, duration, reason", [
        (TranscriptionMode.FAST, {}, 600.0, "mode"),
        (TranscriptionMode.BALANCED, {"enable_ai_post_processing": False}, 600.0, "disabled"),
        (TranscriptionMode.BALANCED, {}, 30.0, "too_short"),
        (TranscriptionMode.PRECISION, {"priority": JobPriority.LOW}, 600.0, "priority"),
    ])
    def test_skipped(self, mode, opts, duration, reason):
        processor = AIPostProcessor(EchoEnhancer())
        assert processor.should_run(mode, options(mode, **opts), duration) == (False, reason)

    def test_high_priority_still_runs(self):
        processor = AIPostProcessor(EchoEnhancer())
        run, _ = processor.should_run(TranscriptionMode.PRECISION, options(priority=JobPriority.URGENT), 600.0)
        assert run

    def test_without_enhancer(self):
        assert AIPostProcessor(None).should_run(TranscriptionMode.BALANCED, options(), 600.0) == (False, "no_enhancer")


class TestProcess:

    async def test_accepts_edits_and_rejects_changed_numbers(self):
        enhancer = EchoEnhancer(response=(
            "1. Ma reggel tárgyalunk a szerződésről.\n"
            "2. A határidő 30 nap."
        ))
        segments = make_segments("ma reggel tárgyalunk a szerződésről", "a határidő 15 nap")

        result = await AIPostProcessor(enhancer).process(segments, "hu")

        assert [s.text for s in result.segments] == ["Ma reggel tárgyalunk a szerződésről.", "a határidő 15 nap"]
        assert result.changed == 1
        assert result.rejected == 1
        assert [(s.start_time, s.end_time) for s in result.segments] == [(0.0, 5.0), (5.0, 10.0)]

    async def test_rejects_content_drift(self):
        enhancer = EchoEnhancer(response="1. Teljesen más mondat született itt most.")
        segments = make_segments("holnap reggel kilenckor kezdünk")

        result = await AIPostProcessor(enhancer).process(segments, "hu")

        assert result.segments == segments
        assert result.rejected == 1

    async def test_missing_lines_keep_original(self):
        enhancer = EchoEnhancer(response="2. Második.")
        segments = make_segments("első", "második")

        result = await AIPostProcessor(enhancer).process(segments, "hu")

        assert [s.text for s in result.segments] == ["első", "Második."]

    async def test_timeout(self):
        processor = AIPostProcessor(SlowEnhancer(), Settings(AI_ENHANCEMENT_TIMEOUT=0.05))
        with pytest.raises(asyncio.TimeoutError):
            await processor.process(make_segments("szia"), "hu")

    async def test_empty_transcript(self):
        enhancer = EchoEnhancer()
        result = await AIPostProcessor(enhancer).process([], "hu")
        assert result.segments == []
        assert enhancer.calls == 0


def test_instructions_mention_language_and_terms():
    processor = AIPostProcessor(EchoEnhancer())
    instructions = processor.build_instructions("hu", ["költségvetés"], ["Teams"])
    assert "Hungarian" in instructions
    assert "költségvetés" in instructions
    assert "Teams" in instructions


def test_word_similarity_ignores_case_and_punctuation():
    assert word_similarity("Jó reggelt!", "jó reggelt") == 1.0
    assert word_similarity("egy kettő", "három négy") == 0.0
