"""
Transcription job orchestration

Jobs are admitted through the quota gate, queued per mode and executed by
fixed-size per-mode worker pools. Each attempt walks the stage sequence
preprocessing → transcribing → enhancing → (ai_post_processing) →
monitoring → completed; failures are classified and either re-queued with
a backoff or end the job.
"""
import asyncio
import shutil
import tempfile
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from hangjegyzet.audio_processor.pipeline import AudioPreprocessor, ProcessedAudio
from hangjegyzet.audio_processor.quality import quality_rank
from hangjegyzet.audio_processor.vad import VoiceActivityDetector
from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import (
    InsufficientAudioQualityError, InvalidStateTransitionError, QuotaStoreUnavailableError,
    ResourceNotFoundError, WorkerCrashedError
)
from hangjegyzet.core.modes import get_profile, resolve_processing_options
from hangjegyzet.models.models import JobState, TranscriptionMode
from hangjegyzet.schemas.errors import PipelineError
from hangjegyzet.schemas.transcription import (
    AdmissionRequest, JobEvent, JobEventType, JobRecord, JobStatusResponse, JobSubmission, SubmissionResult
)
from hangjegyzet.services.accuracy_monitor import AccuracyMonitor, transcript_text
from hangjegyzet.services.chunking import ChunkPlan, plan_chunks, reassemble
from hangjegyzet.services.error_classifier import ErrorClassifier
from hangjegyzet.services.events import EventBus
from hangjegyzet.services.job_queue import JobQueue
from hangjegyzet.services.multi_pass import (
    MultiPassResult, MultiPassTranscriber, aggregate_confidence, assign_speakers, build_vocabulary_prompt
)
from hangjegyzet.services.post_processing import AIPostProcessor
from hangjegyzet.services.quota_gate import QuotaGate
from hangjegyzet.services.vocabulary_service import VocabularyService
from hangjegyzet.storage.base import PipelineStore
from hangjegyzet.utils.time import utcnow

# Forward order of the processing stages
STAGE_ORDER: Dict[JobState, int] = {
    JobState.QUEUED: 0,
    JobState.PREPROCESSING: 1,
    JobState.TRANSCRIBING: 2,
    JobState.ENHANCING: 3,
    JobState.AI_POST_PROCESSING: 4,
    JobState.MONITORING: 5,
    JobState.COMPLETED: 6,
}

IN_FLIGHT_STATES = (
    JobState.PREPROCESSING,
    JobState.TRANSCRIBING,
    JobState.ENHANCING,
    JobState.AI_POST_PROCESSING,
    JobState.MONITORING,
)

TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED_PERMANENT, JobState.CANCELLED)

STAGE_PROGRESS: Dict[JobState, int] = {
    JobState.QUEUED: 0,
    JobState.PREPROCESSING: 10,
    JobState.TRANSCRIBING: 25,
    JobState.ENHANCING: 75,
    JobState.AI_POST_PROCESSING: 85,
    JobState.MONITORING: 95,
    JobState.COMPLETED: 100,
}

TRANSCRIBING_PROGRESS_END = 70


def is_allowed_transition(current: JobState, requested: JobState) -> bool:
    """Monotonic lifecycle; failed_retryable -> queued is the only way back"""
    if current in TERMINAL_STATES:
        return False
    if requested in (JobState.FAILED_RETRYABLE, JobState.FAILED_PERMANENT, JobState.CANCELLED):
        return True
    if current == JobState.FAILED_RETRYABLE:
        return requested == JobState.QUEUED
    return STAGE_ORDER[requested] > STAGE_ORDER[current]


class _Attempt:
    """Mutable bookkeeping of one running attempt"""

    def __init__(self, job: JobRecord, workspace: Path):
        self.job = job
        self.workspace = workspace
        self.stage: JobState = JobState.QUEUED
        self.provider_calls = 0
        self.started = time.monotonic()
        self.task: Optional[asyncio.Task] = None

    def count_call(self, _pass_number: int = 0) -> None:
        self.provider_calls += 1


class JobOrchestrator:
    """
    Runs transcription jobs through the staged pipeline

    All collaborators are injected. Usage is charged once at admission and
    refunded once if the job ends failed or cancelled without any successful
    provider call. The burst limiter slot taken at admission is released
    when the job reaches a terminal state.
    """

    def __init__(
        self,
        store: PipelineStore,
        gate: QuotaGate,
        preprocessor: AudioPreprocessor,
        transcriber: MultiPassTranscriber,
        vocabulary: VocabularyService,
        post_processor: AIPostProcessor,
        accuracy: AccuracyMonitor,
        classifier: ErrorClassifier,
        events: EventBus,
        queue: Optional[JobQueue] = None,
        config: Optional[Settings] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.gate = gate
        self.preprocessor = preprocessor
        self.transcriber = transcriber
        self.vocabulary = vocabulary
        self.post_processor = post_processor
        self.accuracy = accuracy
        self.classifier = classifier
        self.events = events
        self.queue = queue or JobQueue()
        self.config = config or default_settings
        self.clock = clock

        self.workers: List[asyncio.Task] = []
        self.sweeper: Optional[asyncio.Task] = None
        self.running: Dict[str, _Attempt] = {}
        self.cancel_requested: Set[str] = set()
        self.chunk_semaphore = asyncio.Semaphore(self.config.MAX_PARALLEL_CHUNKS)

    # Lifecycle

    async def start(self) -> None:
        """Recover abandoned jobs and start the per-mode worker pools"""
        if self.workers:
            return
        await self.recover()
        for mode_value, size in self.config.WORKER_POOL_SIZES.items():
            for index in range(size):
                task = asyncio.create_task(self._worker(mode_value, index), name=f"worker-{mode_value}-{index}")
                self.workers.append(task)
        self.sweeper = asyncio.create_task(self._expire_admissions(), name="admission-sweeper")
        logger.info(f"Started {len(self.workers)} transcription workers")

    async def stop(self) -> None:
        """
        Stop workers; jobs interrupted mid-stage are recovered on the next start

        Admissions still held for a submission are refunded and released.
        """
        tasks = self.workers + ([self.sweeper] if self.sweeper is not None else [])
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.workers.clear()
        self.sweeper = None
        await self.queue.close()
        await self.gate.expire_held(everything=True)
        logger.info("Transcription workers stopped")

    async def recover(self) -> int:
        """
        Put jobs left behind by a previous process back on track

        In-flight jobs are treated as crashed workers; queued and
        failed_retryable jobs are re-queued.

        Returns:
            Number of recovered jobs
        """
        waiting = await self.store.list_jobs(states=(JobState.QUEUED, JobState.FAILED_RETRYABLE), limit=10000)
        for job in waiting:
            self.queue.put(job.id, job.mode, job.priority)
        recovered = len(waiting)

        for job in await self.store.list_jobs(states=IN_FLIGHT_STATES, limit=10000):
            logger.warning(f"Job {job.id} found in {job.state.value}, recovering as crashed worker")
            await self._handle_failure(job.id, WorkerCrashedError("Worker stopped during processing"), job.state)
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} job(s)")
        return recovered

    async def _worker(self, mode_value: str, index: int) -> None:
        mode = TranscriptionMode(mode_value)
        while True:
            job_id = await self.queue.get(mode)
            try:
                await self.process_job(job_id)
            except Exception as e:
                logger.exception(f"Worker {mode.value}-{index} failed on job {job_id}: {e}")
            finally:
                self.queue.task_done(mode)

    async def _expire_admissions(self) -> None:
        while True:
            await asyncio.sleep(self.config.ADMISSION_SWEEP_INTERVAL)
            try:
                await self.gate.expire_held()
            except Exception as e:
                logger.exception(f"Expiring held admissions failed: {e}")

    # Submission

    async def submit(self, submission: JobSubmission) -> SubmissionResult:
        """
        Validate, admit and enqueue a transcription job

        A submission carrying an admission_id uses that held admission
        instead of admitting again.

        Args:
            submission: Job submission

        Returns:
            The admission decision, with the created job when admitted

        Raises:
            LanguageNotSupportedError: If the language is not supported
            ModeNotAvailableError: If an option is not offered in the mode
            ValidationError: If the options are invalid or the held admission
                does not cover the job
            ResourceNotFoundError: If the held admission is unknown or expired
            QuotaStoreUnavailableError: If the usage store is unreachable
        """
        options = resolve_processing_options(
            submission.mode, submission.language, submission.processing_options, self.config
        )
        if submission.admission_id:
            decision = await self.gate.redeem(
                submission.admission_id,
                submission.organization_id,
                submission.mode,
                submission.estimated_duration_minutes,
            )
        else:
            decision = await self.gate.admit(AdmissionRequest(
                organization_id=submission.organization_id,
                mode=submission.mode,
                estimated_duration_minutes=submission.estimated_duration_minutes,
                language=submission.language,
            ))
        if not decision.allowed:
            return SubmissionResult(decision=decision)

        profile = get_profile(submission.mode)
        record = JobRecord(
            id=str(uuid.uuid4()),
            meeting_id=submission.meeting_id,
            organization_id=submission.organization_id,
            user_id=submission.user_id,
            source_audio_path=submission.source_audio_path,
            mode=submission.mode,
            language=submission.language,
            options=options,
            priority=options.priority,
            queue_priority=profile.queue_priority,
            max_attempts=self.classifier.max_attempts(submission.mode),
            estimated_duration_minutes=submission.estimated_duration_minutes,
            charged_minutes=decision.requested,
            usage_period=decision.period,
        )
        try:
            job = await self.store.create_job(record)
        except Exception:
            await self.gate.refund(record.organization_id, record.mode, decision.period, decision.requested)
            await self.gate.release(record.organization_id, record.mode)
            raise

        self.queue.put(job.id, job.mode, job.priority)
        logger.info(
            f"Job {job.id} queued: meeting {job.meeting_id}, {job.mode.value} mode, "
            f"{job.charged_minutes} min charged"
        )
        return SubmissionResult(decision=decision, job=job)

    async def get_status(self, job_id: str) -> JobStatusResponse:
        job = await self.store.get_job(job_id)
        if job is None:
            raise ResourceNotFoundError("TranscriptionJob", job_id)
        return JobStatusResponse.from_job(job)

    async def cancel(self, job_id: str) -> JobRecord:
        """
        Cancel a job

        A running attempt is interrupted and its workspace removed. Terminal
        jobs are returned unchanged.

        Raises:
            ResourceNotFoundError: If the job does not exist
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise ResourceNotFoundError("TranscriptionJob", job_id)
        if job.is_terminal:
            return job

        attempt = self.running.get(job_id)
        if attempt is not None and not attempt.task.done():
            self.cancel_requested.add(job_id)
            attempt.task.cancel()
            await asyncio.wait({attempt.task})
            return await self._finish_cancelled(job_id, attempt.provider_calls)

        return await self._finish_cancelled(job_id)

    # Execution

    async def process_job(self, job_id: str) -> Optional[JobRecord]:
        """
        Execute one attempt of a queued job

        Returns:
            The job after the attempt, None if it was no longer runnable
        """
        job = await self.store.get_job(job_id)
        if job is None or job.state not in (JobState.QUEUED, JobState.FAILED_RETRYABLE):
            return None
        if job.state == JobState.FAILED_RETRYABLE:
            job = await self._transition(job, JobState.QUEUED, attempts=job.attempts + 1, progress=0)

        workspace = Path(tempfile.mkdtemp(prefix=f"job-{job.id}-", dir=self.config.WORKSPACE_DIR))
        attempt = _Attempt(job, workspace)
        attempt.task = asyncio.create_task(self._run_attempt(attempt))
        self.running[job_id] = attempt
        try:
            await attempt.task
        except asyncio.CancelledError:
            # cancel() settles the job once the attempt has stopped
            if job_id not in self.cancel_requested:
                raise
        finally:
            self.running.pop(job_id, None)
            self.cancel_requested.discard(job_id)
            shutil.rmtree(workspace, ignore_errors=True)
        return await self.store.get_job(job_id)

    async def _run_attempt(self, attempt: _Attempt) -> None:
        job = attempt.job
        logger.info(f"Job {job.id}: attempt {job.attempts}/{job.max_attempts} started")
        try:
            await asyncio.wait_for(self._run_stages(attempt), timeout=self.config.TOTAL_JOB_TIMEOUT)
        except Exception as e:
            logger.error(f"Job {job.id}: {attempt.stage.value} failed: {type(e).__name__}: {e}")
            await self._handle_failure(job.id, e, attempt.stage, attempt.provider_calls)

    async def _run_stages(self, attempt: _Attempt) -> None:
        job = attempt.job
        options = job.options

        attempt.job = job = await self._enter(attempt, JobState.PREPROCESSING, started_at=job.started_at or self.clock())
        audio = await self.preprocessor.preprocess(Path(job.source_audio_path), options, attempt.workspace)
        attempt.job = job = await self.store.update_job(
            job.id,
            duration_seconds=round(audio.duration, 3),
            quality_before=audio.quality_before.quality,
            audio_quality=audio.quality,
            snr_db=audio.quality_after.snr_db,
        )
        if options.minimum_audio_quality is not None and (
            quality_rank(audio.quality) < quality_rank(options.minimum_audio_quality)
        ):
            raise InsufficientAudioQualityError(
                f"Audio quality {audio.quality.value} is below the required {options.minimum_audio_quality.value}",
                {"quality": audio.quality.value, "required": options.minimum_audio_quality.value},
            )

        attempt.job = job = await self._enter(attempt, JobState.TRANSCRIBING)
        terms = await self.vocabulary.get_active_terms(job.organization_id) if options.enable_vocabulary else []
        prompt = build_vocabulary_prompt(terms, options.custom_vocabulary, options.context_hints, self.config)
        transcript = await self._transcribe(attempt, audio, prompt)
        segments = assign_speakers(
            transcript.segments, options.speaker_count, self.config.SPEAKER_CHANGE_GAP_SECONDS
        )
        attempt.job = job = await self.store.update_job(
            job.id,
            provider_calls=job.provider_calls + attempt.provider_calls,
            pass_count=transcript.pass_count,
            detected_language=transcript.detected_language,
        )
        attempt.provider_calls = 0

        attempt.job = job = await self._enter(attempt, JobState.ENHANCING)
        if options.enable_vocabulary:
            enhanced = await self.vocabulary.enhance(
                job.organization_id, segments, options.context_hints, job.language
            )
            segments = enhanced.segments

        warnings = list(job.warnings)
        run_ai, reason = self.post_processor.should_run(job.mode, options, audio.duration)
        if run_ai:
            attempt.job = job = await self._enter(attempt, JobState.AI_POST_PROCESSING)
            try:
                processed = await self.post_processor.process(
                    segments, job.language, options.context_hints, [t.term for t in terms]
                )
                segments = processed.segments
            except Exception as e:
                warning = self.classifier.classify(e, job.attempts, stage=JobState.AI_POST_PROCESSING.value)
                warnings.append(warning)
                logger.warning(f"Job {job.id}: AI post-processing skipped after {warning.kind.value}: {e}")
        else:
            logger.debug(f"Job {job.id}: AI post-processing not applied ({reason})")

        confidence = aggregate_confidence(segments)
        attempt.job = job = await self._enter(
            attempt, JobState.MONITORING, confidence=round(confidence, 4), warnings=warnings
        )
        try:
            await self.accuracy.record_job(
                job,
                segments,
                transcript.pass_texts,
                time.monotonic() - attempt.started,
                merged_text=transcript_text(transcript.segments),
            )
        except Exception as e:
            warning = self.classifier.classify(e, job.attempts, stage=JobState.MONITORING.value)
            warnings.append(warning)
            logger.warning(f"Job {job.id}: accuracy metric not recorded: {e}")

        attempt.job = job = await self._transition(
            job,
            JobState.COMPLETED,
            progress=STAGE_PROGRESS[JobState.COMPLETED],
            segments=list(segments),
            transcript_text=transcript_text(segments),
            warnings=warnings,
            error=None,
            completed_at=self.clock(),
        )
        await self.gate.release(job.organization_id, job.mode)
        logger.info(
            f"Job {job.id} completed: {len(segments)} segments, confidence {confidence:.3f}, "
            f"{job.pass_count} pass(es), quality {job.audio_quality.value if job.audio_quality else '-'}"
        )
        await self._publish(job, JobEventType.COMPLETED)

    async def _transcribe(self, attempt: _Attempt, audio: ProcessedAudio, prompt: Optional[str]) -> MultiPassResult:
        job = attempt.job
        chunks = plan_chunks(
            audio.duration,
            self.config.CHUNK_DURATION,
            self.config.CHUNK_OVERLAP,
            self.config.CHUNKING_MIN_DURATION,
        )
        chunked = len(chunks) > 1
        completed = 0

        async def run_chunk(chunk: ChunkPlan) -> Optional[MultiPassResult]:
            nonlocal completed
            if not VoiceActivityDetector.has_speech(audio.speech_regions, chunk.start, chunk.end):
                logger.debug(f"Job {job.id}: chunk {chunk.index} has no speech, skipped")
                result = None
            else:
                async with self.chunk_semaphore:
                    result = await self._transcribe_chunk(attempt, audio, chunk, prompt, chunked)
            completed += 1
            progress = STAGE_PROGRESS[JobState.TRANSCRIBING] + int(
                (TRANSCRIBING_PROGRESS_END - STAGE_PROGRESS[JobState.TRANSCRIBING]) * completed / len(chunks)
            )
            await self.store.update_job(job.id, progress=progress)
            return result

        tasks = [asyncio.create_task(run_chunk(chunk)) for chunk in chunks]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # One failed chunk fails the attempt; stop the others
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        transcribed = [(chunk, result) for chunk, result in zip(chunks, results) if result is not None]
        if not transcribed:
            return MultiPassResult(segments=[], confidence=0.0, pass_count=0, pass_texts=[])

        segments = reassemble([(chunk, result.segments) for chunk, result in transcribed], self.config.CHUNK_OVERLAP)
        pass_count = max(result.pass_count for _, result in transcribed)
        pass_texts = [
            " ".join(result.pass_texts[i] for _, result in transcribed if i < len(result.pass_texts)).strip()
            for i in range(pass_count)
        ]
        detected = next((r.detected_language for _, r in transcribed if r.detected_language), None)
        return MultiPassResult(
            segments=segments,
            confidence=aggregate_confidence(segments),
            pass_count=pass_count,
            pass_texts=pass_texts,
            detected_language=detected,
        )

    async def _transcribe_chunk(
        self,
        attempt: _Attempt,
        audio: ProcessedAudio,
        chunk: ChunkPlan,
        prompt: Optional[str],
        chunked: bool,
    ) -> MultiPassResult:
        job = attempt.job
        if chunked:
            path = await self.preprocessor.export_chunk(
                audio, chunk.start, chunk.end, attempt.workspace / f"chunk_{chunk.index:03d}.wav"
            )
        else:
            path = audio.audio_path

        # Single-chunk jobs retry at job level only
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.CHUNK_MAX_ATTEMPTS if chunked else 1),
            retry=retry_if_exception(self.classifier.is_retryable),
            wait=self.classifier.tenacity_wait,
            reraise=True,
        )
        async for try_ in retrying:
            with try_:
                number = try_.retry_state.attempt_number
                if number > 1:
                    logger.info(f"Job {job.id}: retrying chunk {chunk.index}, try {number}")
                return await asyncio.wait_for(
                    self.transcriber.transcribe(
                        path,
                        job.options,
                        language=job.language,
                        quality=audio.quality,
                        prompt=prompt,
                        on_pass=attempt.count_call,
                    ),
                    timeout=self.config.CHUNK_TIMEOUT,
                )

    # State handling

    async def _enter(self, attempt: _Attempt, state: JobState, **fields) -> JobRecord:
        attempt.stage = state
        return await self._transition(attempt.job, state, progress=STAGE_PROGRESS[state], **fields)

    async def _transition(self, job: JobRecord, state: JobState, **fields) -> JobRecord:
        current = await self.store.get_job(job.id)
        if current is None:
            raise ResourceNotFoundError("TranscriptionJob", job.id)
        if not is_allowed_transition(current.state, state):
            raise InvalidStateTransitionError(job.id, current.state.value, state.value)
        logger.debug(f"Job {job.id}: {current.state.value} -> {state.value}")
        return await self.store.update_job(job.id, state=state, **fields)

    async def _handle_failure(
        self, job_id: str, error: BaseException, stage: JobState, provider_calls: int = 0
    ) -> JobRecord:
        job = await self.store.get_job(job_id)
        if job is None or job.is_terminal:
            return job
        if provider_calls:
            job = await self.store.update_job(job_id, provider_calls=job.provider_calls + provider_calls)

        decision = self.classifier.decide(error, job.attempts, job.mode, stage=stage.value)
        if decision.retry:
            job = await self._transition(job, JobState.FAILED_RETRYABLE, error=decision.error)
            self.queue.put_later(job.id, job.mode, job.priority, decision.delay_seconds)
            logger.warning(
                f"Job {job.id}: {decision.error.kind.value} on attempt {job.attempts}, "
                f"retrying in {decision.delay_seconds:.1f}s"
            )
            return job
        return await self._finish_failed(job, decision.error)

    async def _finish_failed(self, job: JobRecord, error: PipelineError) -> JobRecord:
        job = await self._transition(
            job,
            JobState.FAILED_PERMANENT,
            error=error,
            requires_manual_intervention=True,
            completed_at=self.clock(),
        )
        logger.error(f"Job {job.id} failed permanently: {error.kind.value} ({error.technical_message})")
        job = await self._settle_usage(job)
        await self._publish(job, JobEventType.FAILED)
        return job

    async def _finish_cancelled(self, job_id: str, provider_calls: int = 0) -> JobRecord:
        job = await self.store.get_job(job_id)
        if job is None or job.is_terminal:
            return job
        job = await self._transition(
            job,
            JobState.CANCELLED,
            provider_calls=job.provider_calls + provider_calls,
            completed_at=self.clock(),
        )
        logger.info(f"Job {job.id} cancelled")
        job = await self._settle_usage(job)
        await self._publish(job, JobEventType.CANCELLED)
        return job

    async def _settle_usage(self, job: JobRecord) -> JobRecord:
        """Release the admission slot and refund jobs that never reached a provider"""
        await self.gate.release(job.organization_id, job.mode)
        if job.usage_refunded or job.provider_calls > 0 or not job.charged_minutes or not job.usage_period:
            return job
        try:
            await self.gate.refund(job.organization_id, job.mode, job.usage_period, job.charged_minutes)
        except QuotaStoreUnavailableError as e:
            logger.error(f"Job {job.id}: refund of {job.charged_minutes} min failed: {e}")
            return job
        return await self.store.update_job(job.id, usage_refunded=True)

    async def _publish(self, job: JobRecord, event_type: JobEventType) -> None:
        await self.events.publish(JobEvent(
            type=event_type,
            job_id=job.id,
            meeting_id=job.meeting_id,
            organization_id=job.organization_id,
            status=job.state,
            transcript_ref=f"transcription_jobs/{job.id}" if job.state == JobState.COMPLETED else None,
            error=job.error,
            occurred_at=self.clock(),
            metadata={"mode": job.mode.value, "attempts": job.attempts},
        ))
