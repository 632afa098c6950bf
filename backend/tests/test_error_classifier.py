import asyncio
import errno

import httpx
import pytest

from hangjegyzet.core.config import Settings
from hangjegyzet.core.exceptions import (
    FileCorruptedError, InsufficientAudioQualityError, ProviderError, WorkerCrashedError
)
from hangjegyzet.models.models import PipelineErrorKind, TranscriptionMode
from hangjegyzet.services.error_classifier import ErrorClassifier

K = PipelineErrorKind


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier(Settings(DEFAULT_LOCALE="en"))


class TestClassify:

    @pytest.mark.parametrize("error, kind", [
        (asyncio.TimeoutError(), K.TIMEOUT),
        (httpx.ConnectError("connection refused"), K.NETWORK_ERROR),
        (ProviderError("whisper", "slow down", status_code=429, retry_after=12), K.API_RATE_LIMIT),
        (ProviderError("whisper", "no credit", status_code=429, code="insufficient_quota"), K.API_QUOTA_EXCEEDED),
        (ProviderError("whisper", "bad key", status_code=401), K.API_AUTHENTICATION),
        (ProviderError("whisper", "boom", status_code=503), K.PROCESSING_FAILED),
        (FileCorruptedError("Could not decode meeting.mp3"), K.FILE_CORRUPTED),
        (OSError(errno.ENOSPC, "No space left on device"), K.DISK_SPACE_FULL),
        (MemoryError(), K.OUT_OF_MEMORY),
        (RuntimeError("ECONNRESET while uploading"), K.NETWORK_ERROR),
        (RuntimeError("something odd"), K.UNKNOWN),
    ])
    def test_kind(self, classifier, error, kind):
        assert classifier.classify(error).kind == kind

    def test_retryable_flags(self, classifier):
        assert classifier.classify(asyncio.TimeoutError()).retryable
        corrupted = classifier.classify(FileCorruptedError("bad header"))
        assert not corrupted.retryable
        assert corrupted.requires_manual_intervention
        assert corrupted.backoff_seconds is None

    def test_classification_is_deterministic(self, classifier):
        error = ProviderError("whisper", "timeout", status_code=504)
        first = classifier.classify(error, attempt=2)
        second = classifier.classify(error, attempt=2)
        assert first.kind == second.kind
        assert first.backoff_seconds == second.backoff_seconds

    def test_rate_limit_uses_retry_after(self, classifier):
        error = ProviderError("whisper", "slow down", status_code=429, retry_after=12)
        assert classifier.classify(error).backoff_seconds == 12

    def test_network_backoff_grows_and_caps(self, classifier):
        delays = [classifier.backoff_seconds(K.NETWORK_ERROR, attempt) for attempt in (1, 2, 3, 10)]
        assert delays == [5.0, 10.0, 20.0, 60.0]

    def test_user_message_localized(self):
        hungarian = ErrorClassifier(Settings(DEFAULT_LOCALE="hu"))
        message = hungarian.classify(FileCorruptedError("x")).user_message
        assert "sérült" in message

    def test_stage_and_attempt_recorded(self, classifier):
        error = classifier.classify(asyncio.TimeoutError(), attempt=3, stage="transcribing")
        assert error.attempt == 3
        assert error.stage == "transcribing"


class TestDecide:

    def test_retry_within_budget(self, classifier):
        decision = classifier.decide(asyncio.TimeoutError(), attempt=1, mode=TranscriptionMode.BALANCED)
        assert decision.retry
        assert decision.delay_seconds == 5.0

    def test_budget_exhausted(self, classifier):
        decision = classifier.decide(asyncio.TimeoutError(), attempt=3, mode=TranscriptionMode.BALANCED)
        assert not decision.retry
        assert decision.attempts_exhausted
        assert decision.error.requires_manual_intervention

    def test_precision_has_larger_budget(self, classifier):
        assert classifier.max_attempts(TranscriptionMode.FAST) == 2
        assert classifier.max_attempts(TranscriptionMode.PRECISION) == 5
        decision = classifier.decide(WorkerCrashedError(), attempt=4, mode=TranscriptionMode.PRECISION)
        assert decision.retry

    def test_fast_mode_does_not_retry_provider_errors(self, classifier):
        error = ProviderError("whisper", "boom", status_code=500)
        assert classifier.decide(error, attempt=1, mode=TranscriptionMode.BALANCED).retry
        assert not classifier.decide(error, attempt=1, mode=TranscriptionMode.FAST).retry

    def test_permanent_error_never_retried(self, classifier):
        decision = classifier.decide(InsufficientAudioQualityError("poor"), 1, TranscriptionMode.PRECISION)
        assert not decision.retry
        assert decision.error.kind == K.INSUFFICIENT_AUDIO_QUALITY

    def test_backoff_multiplier(self):
        classifier = ErrorClassifier(Settings(RETRY_BACKOFF_MULTIPLIER=0.0))
        decision = classifier.decide(asyncio.TimeoutError(), attempt=1, mode=TranscriptionMode.BALANCED)
        assert decision.retry
        assert decision.delay_seconds == 0.0

    def test_cancellation_is_not_retryable(self, classifier):
        assert not classifier.is_retryable(asyncio.CancelledError())
        assert classifier.is_retryable(asyncio.TimeoutError())
