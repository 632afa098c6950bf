import asyncio

import pytest

from hangjegyzet.audio_processor.audio_io import AudioBuffer, save_audio
from hangjegyzet.audio_processor.pipeline import AudioPreprocessor
from hangjegyzet.audio_processor.vad import SpeechRegion
from hangjegyzet.core.exceptions import FileCorruptedError, ProviderError, ResourceNotFoundError
from hangjegyzet.core.modes import resolve_processing_options
from hangjegyzet.models.models import AudioQuality, JobState, PipelineErrorKind, TranscriptionMode
from hangjegyzet.schemas.organization import OrganizationCreate
from hangjegyzet.schemas.transcription import (
    AdmissionRequest, JobEventType, JobRecord, JobSubmission, ProcessingOptionsInput
)
from hangjegyzet.services.orchestrator import is_allowed_transition

from fakes import (
    ORG_ID, TEST_SAMPLE_RATE, CannedPreprocessor, EchoEnhancer, ScriptedProvider, gated_tone, make_transcript,
    next_event, noisy_room,
)


def submission(
    mode=TranscriptionMode.BALANCED,
    minutes=2.0,
    organization_id=ORG_ID,
    source="/uploads/meeting-42.m4a",
    admission_id=None,
    **options,
) -> JobSubmission:
    return JobSubmission(
        meeting_id="meeting-42",
        source_audio_path=source,
        organization_id=organization_id,
        mode=mode,
        estimated_duration_minutes=minutes,
        processing_options=ProcessingOptionsInput(**options),
        admission_id=admission_id,
    )


def admission_request(minutes: float = 2.0) -> AdmissionRequest:
    return AdmissionRequest(
        organization_id=ORG_ID, mode=TranscriptionMode.BALANCED, estimated_duration_minutes=minutes
    )


async def run_one(pipeline, sub: JobSubmission):
    """Submit a job on a running pipeline and wait for its terminal event"""
    events = pipeline.events.subscribe()
    await pipeline.start()
    try:
        result = await pipeline.orchestrator.submit(sub)
        assert result.admitted
        event = await next_event(events)
        job = await pipeline.store.get_job(result.job.id)
    finally:
        await pipeline.stop()
    return job, event


async def usage(store, job: JobRecord) -> int:
    return await store.get_usage(job.organization_id, job.mode, job.usage_period)


class TestHappyPath:

    async def test_job_completes(self, make_pipeline, store, organization):
        provider = ScriptedProvider([make_transcript("jó reggelt", "kezdjük a megbeszélést")])
        job, event = await run_one(make_pipeline(provider), submission())

        assert job.state == JobState.COMPLETED
        assert job.progress == 100
        assert job.transcript_text == "jó reggelt kezdjük a megbeszélést"
        assert job.pass_count == 1
        assert job.provider_calls == 1
        assert job.duration_seconds == pytest.approx(120.0)
        assert job.completed_at is not None
        assert await usage(store, job) == 2

        assert event.type == JobEventType.COMPLETED
        assert event.status == JobState.COMPLETED
        assert event.transcript_ref == f"transcription_jobs/{job.id}"
        assert event.metadata == {"mode": "balanced", "attempts": 1}
        assert len(await store.list_metrics(ORG_ID)) == 1

    async def test_escalated_audio_is_recorded(self, make_pipeline, organization):
        preprocessor = CannedPreprocessor(quality=AudioQuality.FAIR, quality_before=AudioQuality.POOR)
        job, _ = await run_one(
            make_pipeline(ScriptedProvider([make_transcript("zajos terem")]), preprocessor),
            submission(TranscriptionMode.PRECISION),
        )

        assert job.state == JobState.COMPLETED
        assert job.quality_before == AudioQuality.POOR
        assert job.audio_quality == AudioQuality.FAIR
        assert job.pass_count >= 2

    async def test_low_confidence_adds_a_pass(self, make_pipeline, organization):
        provider = ScriptedProvider([
            make_transcript("talán ez hangzott el", confidence=0.5),
            make_transcript("talán ez hangzott el", confidence=0.9),
        ])

        job, _ = await run_one(make_pipeline(provider), submission(TranscriptionMode.BALANCED))

        assert job.state == JobState.COMPLETED
        assert job.options.pass_count == 1
        assert job.pass_count == 2
        assert [c["temperature"] for c in provider.calls] == [0.0, 0.2]

    async def test_noisy_recording_is_cleaned_and_retranscribed(self, make_pipeline, config, organization, tmp_path):
        source = save_audio(AudioBuffer(noisy_room(), TEST_SAMPLE_RATE), tmp_path / "zajos.wav")
        provider = ScriptedProvider([
            make_transcript("zajos terem", confidence=0.5),
            make_transcript("zajos terem", confidence=0.8),
        ])

        job, _ = await run_one(
            make_pipeline(provider, AudioPreprocessor(config)),
            submission(TranscriptionMode.BALANCED, source=str(source)),
        )

        assert job.state == JobState.COMPLETED
        assert job.quality_before == AudioQuality.POOR
        assert job.audio_quality == AudioQuality.FAIR
        assert job.pass_count == 2
        assert len(provider.calls) == 2

    async def test_long_audio_is_chunked(self, make_pipeline, organization):
        preprocessor = CannedPreprocessor(duration=600.0)
        provider = ScriptedProvider([make_transcript("első mondat", "második mondat")])

        job, _ = await run_one(make_pipeline(provider, preprocessor), submission(minutes=10))

        assert job.state == JobState.COMPLETED
        assert len(preprocessor.exported) == 4
        assert len(provider.calls) == 4
        assert sorted(c["path"] for c in provider.calls) == sorted(preprocessor.exported)
        starts = [s.start_time for s in job.segments]
        assert starts == sorted(starts)
        assert starts[-1] > 500.0

    async def test_silent_chunks_are_skipped(self, make_pipeline, organization):
        preprocessor = CannedPreprocessor(duration=600.0, speech_regions=[SpeechRegion(start=10.0, end=100.0)])
        provider = ScriptedProvider([make_transcript("csak az elején beszélünk")])

        job, _ = await run_one(make_pipeline(provider, preprocessor), submission(minutes=10))

        assert job.state == JobState.COMPLETED
        assert len(provider.calls) == 1

    async def test_quiet_recording_is_transcribed(self, make_pipeline, config, organization, tmp_path):
        source = save_audio(AudioBuffer(gated_tone(0.02).unsqueeze(0), TEST_SAMPLE_RATE), tmp_path / "halk.wav")
        provider = ScriptedProvider([make_transcript("halkan beszélünk")])

        job, _ = await run_one(
            make_pipeline(provider, AudioPreprocessor(config)),
            submission(TranscriptionMode.FAST, source=str(source)),
        )

        assert job.state == JobState.COMPLETED
        assert len(provider.calls) == 1
        assert job.transcript_text == "halkan beszélünk"

    async def test_vocabulary_prompt_reaches_provider(self, make_pipeline, organization):
        provider = ScriptedProvider([make_transcript("a sprint tervezés")])
        await run_one(make_pipeline(provider), submission(custom_vocabulary=["Jira"], context_hints=["sprint"]))
        assert provider.calls[0]["prompt"] == "Context: sprint. Additional terms: Jira."

    async def test_ai_failure_becomes_warning(self, make_pipeline, organization):
        enhancer = EchoEnhancer(error=ProviderError("openai", "server error", status_code=500))
        provider = ScriptedProvider([make_transcript("ma a költségvetésről lesz szó")])

        job, event = await run_one(make_pipeline(provider, enhancer=enhancer), submission())

        assert job.state == JobState.COMPLETED
        assert enhancer.calls == 1
        assert len(job.warnings) == 1
        assert job.warnings[0].kind == PipelineErrorKind.PROCESSING_FAILED
        assert job.warnings[0].stage == "ai_post_processing"
        assert job.transcript_text == "ma a költségvetésről lesz szó"

    async def test_ai_post_processing_applied(self, make_pipeline, organization):
        enhancer = EchoEnhancer(response="1. Ma a költségvetésről lesz szó.")
        provider = ScriptedProvider([make_transcript("ma a költségvetésről lesz szó")])

        job, _ = await run_one(make_pipeline(provider, enhancer=enhancer), submission())

        assert job.transcript_text == "Ma a költségvetésről lesz szó."
        assert job.warnings == []

    async def test_accuracy_measured_before_corrections(self, make_pipeline, store, organization):
        enhancer = EchoEnhancer(response="Ma a költségvetésről lesz szó.")
        provider = ScriptedProvider([make_transcript("ma a koltsegvetesrol lesz szo")])

        job, _ = await run_one(make_pipeline(provider, enhancer=enhancer), submission(pass_count=2))

        assert job.pass_count == 2
        assert job.transcript_text == "Ma a költségvetésről lesz szó."
        [metric] = await store.list_metrics(ORG_ID)
        assert metric.estimated_wer == 0.0
        assert metric.estimated_cer == 0.0


class TestFailures:

    async def test_timeout_is_retried(self, make_pipeline, store, organization):
        provider = ScriptedProvider([asyncio.TimeoutError(), make_transcript("második próbálkozás")])

        job, event = await run_one(make_pipeline(provider), submission())

        assert job.state == JobState.COMPLETED
        assert job.attempts == 2
        assert len(provider.calls) == 2
        assert await usage(store, job) == 2
        assert event.metadata["attempts"] == 2

    async def test_retries_exhausted(self, make_pipeline, store, burst_limiter, organization):
        provider = ScriptedProvider([asyncio.TimeoutError()])

        job, event = await run_one(make_pipeline(provider), submission())

        assert job.state == JobState.FAILED_PERMANENT
        assert job.attempts == 3
        assert job.error.kind == PipelineErrorKind.TIMEOUT
        assert job.requires_manual_intervention
        assert job.usage_refunded
        assert await usage(store, job) == 0
        assert burst_limiter.in_flight[(ORG_ID, "balanced")] == 0
        assert event.type == JobEventType.FAILED

    async def test_corrupted_file_fails_immediately(self, make_pipeline, store, organization):
        preprocessor = CannedPreprocessor(error=FileCorruptedError("Could not decode meeting-42.m4a"))

        job, event = await run_one(make_pipeline(ScriptedProvider([make_transcript("x")]), preprocessor), submission())

        assert job.state == JobState.FAILED_PERMANENT
        assert job.attempts == 1
        assert job.error.kind == PipelineErrorKind.FILE_CORRUPTED
        assert job.error.stage == "preprocessing"
        assert "sérült" in job.error.user_message
        assert job.usage_refunded
        assert await usage(store, job) == 0
        assert event.error.kind == PipelineErrorKind.FILE_CORRUPTED

    async def test_insufficient_audio_quality(self, make_pipeline, store, organization):
        provider = ScriptedProvider([make_transcript("x")])
        preprocessor = CannedPreprocessor(quality=AudioQuality.FAIR)

        job, _ = await run_one(
            make_pipeline(provider, preprocessor), submission(minimum_audio_quality=AudioQuality.GOOD)
        )

        assert job.state == JobState.FAILED_PERMANENT
        assert job.error.kind == PipelineErrorKind.INSUFFICIENT_AUDIO_QUALITY
        assert provider.calls == []
        assert job.usage_refunded

    async def test_failure_after_provider_call_keeps_usage(self, make_pipeline, store, organization):
        provider = ScriptedProvider([
            make_transcript("első chunk"),
            ProviderError("whisper", "invalid_request", status_code=400),
        ])
        preprocessor = CannedPreprocessor(duration=600.0)

        job, _ = await run_one(make_pipeline(provider, preprocessor), submission(minutes=10))

        assert job.state == JobState.FAILED_PERMANENT
        assert job.error.kind == PipelineErrorKind.API_INVALID_REQUEST
        assert job.provider_calls >= 1
        assert not job.usage_refunded
        assert await usage(store, job) == 10


class TestSubmission:

    async def test_rejected_submission_creates_no_job(self, make_pipeline, store):
        await store.create_organization(
            OrganizationCreate(name="Kicsi Bt", mode_limits={"balanced": 1}), organization_id="org-small"
        )
        pipeline = make_pipeline(ScriptedProvider([make_transcript("x")]))

        result = await pipeline.orchestrator.submit(submission(minutes=5, organization_id="org-small"))

        assert not result.admitted
        assert result.job is None
        assert result.decision.requested == 5
        assert await store.list_jobs() == []

    async def test_job_fields_resolved_at_submission(self, make_pipeline, organization):
        pipeline = make_pipeline(ScriptedProvider([make_transcript("x")]))

        result = await pipeline.orchestrator.submit(submission(TranscriptionMode.PRECISION, minutes=12.4))

        job = result.job
        assert job.state == JobState.QUEUED
        assert job.charged_minutes == 13
        assert job.max_attempts == 5
        assert job.options.pass_count == 2
        status = await pipeline.orchestrator.get_status(job.id)
        assert status.state == JobState.QUEUED

    async def test_unknown_job(self, make_pipeline):
        pipeline = make_pipeline(ScriptedProvider([make_transcript("x")]))
        with pytest.raises(ResourceNotFoundError):
            await pipeline.orchestrator.get_status("missing")
        with pytest.raises(ResourceNotFoundError):
            await pipeline.orchestrator.cancel("missing")

    async def test_held_admission_is_not_charged_again(self, make_pipeline, store, burst_limiter, organization):
        pipeline = make_pipeline(ScriptedProvider([make_transcript("egyszer fizetünk")]))
        held = await pipeline.gate.hold(admission_request())

        job, _ = await run_one(pipeline, submission(admission_id=held.admission_id))

        assert job.state == JobState.COMPLETED
        assert job.charged_minutes == 2
        assert await usage(store, job) == 2
        assert burst_limiter.in_flight[(ORG_ID, "balanced")] == 0

    async def test_stop_refunds_held_admissions(self, make_pipeline, store, burst_limiter, organization):
        pipeline = make_pipeline(ScriptedProvider([make_transcript("x")]))
        await pipeline.start()
        held = await pipeline.gate.hold(admission_request())

        await pipeline.stop()

        assert await store.get_usage(ORG_ID, TranscriptionMode.BALANCED, held.period) == 0
        assert burst_limiter.in_flight[(ORG_ID, "balanced")] == 0
        assert pipeline.gate.held == {}


class TestCancellation:

    async def test_cancel_running_job(self, make_pipeline, store, burst_limiter, organization):
        provider = ScriptedProvider([make_transcript("soha nem ér véget")])
        provider.release = asyncio.Event()
        pipeline = make_pipeline(provider)
        events = pipeline.events.subscribe()
        await pipeline.start()
        try:
            result = await pipeline.orchestrator.submit(submission())
            await asyncio.wait_for(provider.started.wait(), timeout=5)
            assert (await store.get_job(result.job.id)).state == JobState.TRANSCRIBING

            job = await pipeline.orchestrator.cancel(result.job.id)
            event = await next_event(events)
        finally:
            await pipeline.stop()

        assert job.state == JobState.CANCELLED
        assert job.usage_refunded
        assert await usage(store, job) == 0
        assert burst_limiter.in_flight[(ORG_ID, "balanced")] == 0
        assert event.type == JobEventType.CANCELLED

    async def test_cancel_queued_job(self, make_pipeline, store, organization):
        pipeline = make_pipeline(ScriptedProvider([make_transcript("x")]))
        result = await pipeline.orchestrator.submit(submission())

        job = await pipeline.orchestrator.cancel(result.job.id)

        assert job.state == JobState.CANCELLED
        assert await usage(store, job) == 0
        assert await pipeline.orchestrator.process_job(job.id) is None

    async def test_cancel_terminal_job_is_noop(self, make_pipeline, store, organization):
        job, _ = await run_one(make_pipeline(ScriptedProvider([make_transcript("kész")])), submission())
        assert (await make_pipeline(ScriptedProvider([])).orchestrator.cancel(job.id)).state == JobState.COMPLETED
        assert await usage(store, job) == 2


async def test_recover_requeues_abandoned_jobs(make_pipeline, store, organization):
    options = resolve_processing_options(TranscriptionMode.BALANCED, "hu")
    common = dict(
        meeting_id="meeting-7",
        organization_id=ORG_ID,
        source_audio_path="/uploads/meeting-7.wav",
        mode=TranscriptionMode.BALANCED,
        language="hu",
        options=options,
        queue_priority=5,
        max_attempts=3,
        estimated_duration_minutes=1.0,
    )
    await store.create_job(JobRecord(id="job-crashed", state=JobState.TRANSCRIBING, **common))
    await store.create_job(JobRecord(id="job-waiting", state=JobState.QUEUED, **common))

    pipeline = make_pipeline(ScriptedProvider([make_transcript("folytatjuk")]))
    events = pipeline.events.subscribe()
    await pipeline.start()
    try:
        finished = {(await next_event(events)).job_id, (await next_event(events)).job_id}
    finally:
        await pipeline.stop()

    assert finished == {"job-crashed", "job-waiting"}
    crashed = await store.get_job("job-crashed")
    assert crashed.state == JobState.COMPLETED
    assert crashed.attempts == 2
    assert (await store.get_job("job-waiting")).attempts == 1


@pytest.mark.parametrize("current, requested, allowed", [
    (JobState.QUEUED, JobState.PREPROCESSING, True),
    (JobState.TRANSCRIBING, JobState.MONITORING, True),
    (JobState.ENHANCING, JobState.TRANSCRIBING, False),
    (JobState.TRANSCRIBING, JobState.FAILED_RETRYABLE, True),
    (JobState.FAILED_RETRYABLE, JobState.QUEUED, True),
    (JobState.FAILED_RETRYABLE, JobState.PREPROCESSING, False),
    (JobState.COMPLETED, JobState.CANCELLED, False),
    (JobState.CANCELLED, JobState.QUEUED, False),
    (JobState.MONITORING, JobState.CANCELLED, True),
])
def test_transition_rules(current, requested, allowed):
    assert is_allowed_transition(current, requested) is allowed
