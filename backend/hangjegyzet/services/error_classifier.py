import asyncio
import errno
import re
from concurrent.futures import BrokenExecutor
from typing import Dict, Iterable, Optional, Tuple

import httpx
import openai
from tenacity import RetryCallState

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import PipelineException, ProviderError
from hangjegyzet.models.models import PipelineErrorKind, TranscriptionMode
from hangjegyzet.schemas.errors import PipelineError, RetryDecision

K = PipelineErrorKind

RETRYABLE_KINDS = frozenset({
    K.NETWORK_ERROR,
    K.TIMEOUT,
    K.API_RATE_LIMIT,
    K.PROCESSING_FAILED,
    K.OUT_OF_MEMORY,
    K.WORKER_CRASHED,
    K.UNKNOWN,
})

# Fast mode gives up on anything that is not a plain transport hiccup
FAST_MODE_RETRYABLE_KINDS = frozenset({K.NETWORK_ERROR, K.TIMEOUT, K.WORKER_CRASHED})

MESSAGES: Dict[PipelineErrorKind, Dict[str, str]] = {
    K.NETWORK_ERROR: {
        "en": "Network problem while processing. We will retry automatically.",
        "hu": "Hálózati hiba a feldolgozás során. Automatikusan újrapróbáljuk.",
    },
    K.TIMEOUT: {
        "en": "Processing took too long. We will retry automatically.",
        "hu": "A feldolgozás túl sokáig tartott. Automatikusan újrapróbáljuk.",
    },
    K.API_RATE_LIMIT: {
        "en": "The transcription service is busy. Your job will continue shortly.",
        "hu": "Az átirat szolgáltatás túlterhelt. A feldolgozás hamarosan folytatódik.",
    },
    K.API_QUOTA_EXCEEDED: {
        "en": "The transcription service quota is exhausted. Our operators have been notified.",
        "hu": "Az átirat szolgáltatás kerete elfogyott. Munkatársainkat értesítettük.",
    },
    K.API_AUTHENTICATION: {
        "en": "The transcription service rejected our credentials. Please contact support.",
        "hu": "Az átirat szolgáltatás hitelesítési hibát jelzett. Kérjük, lépjen kapcsolatba az ügyfélszolgálattal.",
    },
    K.API_INVALID_REQUEST: {
        "en": "The transcription request was rejected. Please contact support.",
        "hu": "Az átirat kérést a szolgáltatás elutasította. Kérjük, lépjen kapcsolatba az ügyfélszolgálattal.",
    },
    K.FILE_NOT_FOUND: {
        "en": "The uploaded file could not be found. Please upload it again.",
        "hu": "A feltöltött fájl nem található. Kérjük, töltse fel újra.",
    },
    K.FILE_TOO_LARGE: {
        "en": "The file is too large. Please upload a smaller or compressed recording.",
        "hu": "A fájl túl nagy. Kérjük, töltsön fel kisebb vagy tömörített felvételt.",
    },
    K.FILE_INVALID_FORMAT: {
        "en": "Unsupported file format. Please upload MP3, WAV, M4A, OGG, FLAC, WEBM or MP4.",
        "hu": "Nem támogatott fájlformátum. Kérjük, MP3, WAV, M4A, OGG, FLAC, WEBM vagy MP4 fájlt töltsön fel.",
    },
    K.FILE_CORRUPTED: {
        "en": "The file appears to be damaged and cannot be read. Please upload it again.",
        "hu": "A fájl sérült és nem olvasható. Kérjük, töltse fel újra.",
    },
    K.PROCESSING_FAILED: {
        "en": "Processing failed unexpectedly. We will retry automatically.",
        "hu": "A feldolgozás váratlanul megszakadt. Automatikusan újrapróbáljuk.",
    },
    K.INSUFFICIENT_AUDIO_QUALITY: {
        "en": "The audio quality is too low for this mode. Try a higher mode or a cleaner recording.",
        "hu": "A hangminőség túl gyenge ehhez a módhoz. Válasszon magasabb módot vagy tisztább felvételt.",
    },
    K.LANGUAGE_NOT_SUPPORTED: {
        "en": "This language is not supported. Please choose Hungarian or English.",
        "hu": "Ez a nyelv nem támogatott. Kérjük, válassza a magyar vagy az angol nyelvet.",
    },
    K.OUT_OF_MEMORY: {
        "en": "The server ran out of memory. We will retry shortly.",
        "hu": "A szerver memóriája elfogyott. Hamarosan újrapróbáljuk.",
    },
    K.DISK_SPACE_FULL: {
        "en": "The server is out of storage space. Our operators have been notified.",
        "hu": "A szerver tárhelye megtelt. Munkatársainkat értesítettük.",
    },
    K.WORKER_CRASHED: {
        "en": "A processing worker stopped unexpectedly. We will retry automatically.",
        "hu": "Egy feldolgozó folyamat váratlanul leállt. Automatikusan újrapróbáljuk.",
    },
    K.ORGANIZATION_LIMIT_EXCEEDED: {
        "en": "Your organization has used its monthly minutes for this mode. Upgrade or wait for the next period.",
        "hu": "Szervezete elérte a havi perckeretet ebben a módban. Váltson csomagot vagy várja meg a következő időszakot.",
    },
    K.SUBSCRIPTION_EXPIRED: {
        "en": "Your subscription has expired. Please renew it to continue.",
        "hu": "Előfizetése lejárt. Kérjük, újítsa meg a folytatáshoz.",
    },
    K.MODE_NOT_AVAILABLE: {
        "en": "This transcription mode is not included in your plan.",
        "hu": "Ez az átirat mód nem része az előfizetésének.",
    },
    K.UNKNOWN: {
        "en": "An unexpected error occurred. We will retry, then escalate to support.",
        "hu": "Váratlan hiba történt. Újrapróbáljuk, majd szükség esetén az ügyfélszolgálathoz továbbítjuk.",
    },
}

# (compiled pattern, kind) checked in order against the failure message
MESSAGE_PATTERNS: Tuple[Tuple[re.Pattern, PipelineErrorKind], ...] = (
    (re.compile(r"insufficient_quota|quota exceeded", re.I), K.API_QUOTA_EXCEEDED),
    (re.compile(r"rate_limit_exceeded|rate limit|too many requests", re.I), K.API_RATE_LIMIT),
    (re.compile(r"invalid_api_key|unauthorized|authentication", re.I), K.API_AUTHENTICATION),
    (re.compile(r"model_not_found|invalid_request", re.I), K.API_INVALID_REQUEST),
    (re.compile(r"ETIMEDOUT|timed out|timeout", re.I), K.TIMEOUT),
    (re.compile(r"ECONNREFUSED|ECONNRESET|ENOTFOUND|fetch failed|connection (refused|reset)", re.I), K.NETWORK_ERROR),
    (re.compile(r"ENOENT|no such file", re.I), K.FILE_NOT_FOUND),
    (re.compile(r"file too large", re.I), K.FILE_TOO_LARGE),
    (re.compile(r"invalid file format|unsupported format", re.I), K.FILE_INVALID_FORMAT),
    (re.compile(r"corrupt|could not decode|invalid data found", re.I), K.FILE_CORRUPTED),
    (re.compile(r"ENOMEM|out of memory", re.I), K.OUT_OF_MEMORY),
    (re.compile(r"ENOSPC|no space left", re.I), K.DISK_SPACE_FULL),
)


class ErrorClassifier:
    """
    Single decision authority for pipeline failures

    ``classify`` maps any raised exception to a PipelineError and is a pure
    function of the exception and attempt number. ``decide`` applies the
    per-mode attempt budget on top of it. Nothing else in the pipeline
    decides whether or when to retry.
    """

    def __init__(self, config: Optional[Settings] = None, backoff_multiplier: Optional[float] = None):
        self.config = config or default_settings
        self.backoff_multiplier = (
            self.config.RETRY_BACKOFF_MULTIPLIER if backoff_multiplier is None else backoff_multiplier
        )
        self.locale = self.config.DEFAULT_LOCALE

    def classify(
        self,
        error: BaseException,
        attempt: int = 1,
        locale: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> PipelineError:
        """
        Map a raw failure to a classified PipelineError

        Args:
            error: The exception raised by a stage, provider or store
            attempt: Attempt number the failure happened on (1-based)
            locale: Language for the user message
            stage: Pipeline stage the failure came from

        Returns:
            PipelineError with kind, retryable flag, backoff hint and message
        """
        kind, retry_after = self._resolve_kind(error)
        retryable = kind in RETRYABLE_KINDS
        return PipelineError(
            kind=kind,
            retryable=retryable,
            backoff_seconds=self.backoff_seconds(kind, attempt, retry_after) if retryable else None,
            user_message=self.user_message(kind, locale),
            technical_message=f"{type(error).__name__}: {error}",
            requires_manual_intervention=not retryable,
            attempt=attempt,
            stage=stage,
        )

    def decide(
        self,
        error: BaseException,
        attempt: int,
        mode: TranscriptionMode,
        locale: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> RetryDecision:
        """
        Decide whether a failed job attempt is retried

        Args:
            error: The exception that ended the attempt
            attempt: Attempt number that failed (1-based)
            mode: Job mode, which sets the attempt budget
            locale: Language for the user message
            stage: Stage the failure came from

        Returns:
            RetryDecision carrying the classified error and the delay
        """
        classified = self.classify(error, attempt, locale, stage)
        exhausted = attempt >= self.max_attempts(mode)
        retry = self.is_retryable_in_mode(classified.kind, mode) and not exhausted

        if not retry:
            # Terminal failures are flagged for operators
            classified = classified.model_copy(update={"requires_manual_intervention": True})
        return RetryDecision(
            error=classified,
            retry=retry,
            delay_seconds=(classified.backoff_seconds or 0.0) if retry else 0.0,
            attempts_exhausted=exhausted and classified.retryable,
        )

    def max_attempts(self, mode: TranscriptionMode) -> int:
        return int(self.config.MODE_MAX_ATTEMPTS.get(TranscriptionMode(mode).value, 3))

    @staticmethod
    def is_retryable_in_mode(kind: PipelineErrorKind, mode: TranscriptionMode) -> bool:
        if TranscriptionMode(mode) == TranscriptionMode.FAST:
            return kind in FAST_MODE_RETRYABLE_KINDS
        return kind in RETRYABLE_KINDS

    def backoff_seconds(
        self, kind: PipelineErrorKind, attempt: int, retry_after: Optional[float] = None
    ) -> float:
        """Deterministic delay before the next attempt"""
        attempt = max(1, attempt)
        if kind == K.API_RATE_LIMIT:
            delay = retry_after if retry_after is not None else min(300.0, 30.0 * attempt)
        elif kind in (K.NETWORK_ERROR, K.TIMEOUT):
            delay = min(60.0, 5.0 * 2 ** (attempt - 1))
        elif kind == K.OUT_OF_MEMORY:
            delay = 30.0
        elif kind == K.WORKER_CRASHED:
            delay = 5.0
        elif kind == K.PROCESSING_FAILED:
            delay = min(120.0, 20.0 * attempt)
        else:
            delay = min(60.0, 2.0 * 2 ** attempt)
        return delay * self.backoff_multiplier

    def user_message(self, kind: PipelineErrorKind, locale: Optional[str] = None) -> str:
        messages = MESSAGES.get(kind, MESSAGES[K.UNKNOWN])
        return messages.get(locale or self.locale) or messages["en"]

    # tenacity hooks, used for in-place chunk retries

    def is_retryable(self, error: BaseException) -> bool:
        # Cancellation is never retried
        return isinstance(error, Exception) and self.classify(error).retryable

    def tenacity_wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        if error is None:
            return 0.0
        classified = self.classify(error, retry_state.attempt_number)
        return classified.backoff_seconds or 0.0

    def _resolve_kind(self, error: BaseException) -> Tuple[PipelineErrorKind, Optional[float]]:
        if isinstance(error, ProviderError):
            return self._kind_from_provider(error.status_code, error.code, str(error)), error.retry_after

        if isinstance(error, PipelineException):
            return error.kind, None

        if isinstance(error, openai.APIStatusError):
            return (
                self._kind_from_provider(error.status_code, _openai_error_code(error), str(error)),
                _retry_after_from_headers(error.response.headers if error.response is not None else None),
            )

        # Timeout types subclass the transport types, so they are checked first
        if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, openai.APITimeoutError)):
            return K.TIMEOUT, None

        if isinstance(error, (httpx.TransportError, openai.APIConnectionError, ConnectionError)):
            return K.NETWORK_ERROR, None

        if isinstance(error, httpx.HTTPStatusError):
            return (
                self._kind_from_provider(error.response.status_code, None, str(error)),
                _retry_after_from_headers(error.response.headers),
            )

        if isinstance(error, MemoryError):
            return K.OUT_OF_MEMORY, None

        if isinstance(error, BrokenExecutor):
            return K.WORKER_CRASHED, None

        if isinstance(error, FileNotFoundError):
            return K.FILE_NOT_FOUND, None

        if isinstance(error, OSError):
            if error.errno == errno.ENOSPC:
                return K.DISK_SPACE_FULL, None
            if error.errno == errno.ENOMEM:
                return K.OUT_OF_MEMORY, None
            if error.errno == errno.ENOENT:
                return K.FILE_NOT_FOUND, None

        return _kind_from_message(str(error)), None

    @staticmethod
    def _kind_from_provider(status_code: Optional[int], code: Optional[str], message: str) -> PipelineErrorKind:
        if code == "insufficient_quota":
            return K.API_QUOTA_EXCEEDED
        if code == "rate_limit_exceeded" or status_code == 429:
            return K.API_RATE_LIMIT
        if code == "invalid_api_key" or status_code in (401, 403):
            return K.API_AUTHENTICATION
        if code == "model_not_found" or status_code in (400, 404, 422):
            return K.API_INVALID_REQUEST
        if status_code == 413:
            return K.FILE_TOO_LARGE
        if status_code == 415:
            return K.FILE_INVALID_FORMAT
        if status_code in (408, 504):
            return K.TIMEOUT
        if status_code is not None and status_code >= 500:
            return K.PROCESSING_FAILED
        return _kind_from_message(message)


def _kind_from_message(message: str) -> PipelineErrorKind:
    for pattern, kind in MESSAGE_PATTERNS:
        if pattern.search(message):
            return kind
    return K.UNKNOWN


def _openai_error_code(error: "openai.APIStatusError") -> Optional[str]:
    code = getattr(error, "code", None)
    if code:
        return str(code)
    body = error.body if isinstance(error.body, dict) else {}
    nested = body.get("error") if isinstance(body.get("error"), dict) else body
    return nested.get("code") if nested else None


def _retry_after_from_headers(headers: Optional[Iterable]) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
