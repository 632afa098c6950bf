import math
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import httpx
from loguru import logger

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import ProviderError
from hangjegyzet.providers.base import ProviderTranscript, TranscriptionProvider
from hangjegyzet.schemas.transcription import TranscriptSegment


class WhisperProvider(TranscriptionProvider):
    """
    OpenAI Whisper over the REST transcription endpoint

    Requests verbose_json so that segment timings and log-probabilities are
    available for confidence estimation.
    """

    name = "whisper"

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or default_settings
        self.client = client or httpx.AsyncClient(timeout=self.config.WHISPER_REQUEST_TIMEOUT)
        self.url = f"{self.config.OPENAI_API_BASE.rstrip('/')}/audio/transcriptions"
        logger.info(f"Whisper provider initialized with model {self.config.WHISPER_MODEL}")

    async def close(self) -> None:
        await self.client.aclose()

    async def transcribe(
        self,
        audio_path: Path,
        *,
        language: Optional[str] = None,
        temperature: float = 0.0,
        prompt: Optional[str] = None,
    ) -> ProviderTranscript:
        """
        Transcribe audio using OpenAI's Whisper API

        Args:
            audio_path: Path to audio file
            language: Language code (optional)
            temperature: Sampling temperature
            prompt: Vocabulary and context prompt (optional)

        Returns:
            Provider transcript

        Raises:
            ProviderError: If the API key is missing or the API returns an error
        """
        if not self.config.OPENAI_API_KEY:
            raise ProviderError(self.name, "OpenAI API key is not configured", status_code=401, code="invalid_api_key")

        audio_path = Path(audio_path)
        async with aiofiles.open(audio_path, "rb") as audio_file:
            data = await audio_file.read()

        files: Dict[str, Any] = {
            "file": (audio_path.name, data),
            "model": (None, self.config.WHISPER_MODEL),
            "response_format": (None, "verbose_json"),
            "temperature": (None, str(temperature)),
        }
        if language:
            files["language"] = (None, language)
        if prompt:
            files["prompt"] = (None, prompt[: self.config.WHISPER_PROMPT_MAX_CHARS])

        logger.debug(f"Sending {audio_path.name} to Whisper (temperature {temperature})")
        response = await self.client.post(
            self.url,
            headers={"Authorization": f"Bearer {self.config.OPENAI_API_KEY}"},
            files=files,
        )

        if response.status_code != 200:
            raise self._error_from_response(response)

        result = response.json()
        transcript = self.parse_response(result, language)
        logger.info(
            f"Whisper transcription completed, {len(transcript.segments)} segments, "
            f"confidence {transcript.confidence:.2f}"
        )
        return transcript

    def _error_from_response(self, response: httpx.Response) -> ProviderError:
        code = None
        message = f"Transcription failed with status {response.status_code}"
        if response.headers.get("content-type", "").startswith("application/json"):
            payload = response.json()
            error = payload.get("error") if isinstance(payload, dict) else None
            error = error if isinstance(error, dict) else {}
            code = error.get("code") or error.get("type")
            # Provider messages may echo request details
            if self.config.ENVIRONMENT != "production" and error.get("message"):
                message = f"{message}: {error['message']}"

        retry_after = None
        if "retry-after" in response.headers:
            try:
                retry_after = float(response.headers["retry-after"])
            except ValueError:
                retry_after = None
        return ProviderError(self.name, message, status_code=response.status_code, code=code, retry_after=retry_after)

    @staticmethod
    def parse_response(result: Dict[str, Any], language: Optional[str] = None) -> ProviderTranscript:
        """Convert a verbose_json payload into a ProviderTranscript"""
        segments: List[TranscriptSegment] = []
        weighted = 0.0
        total = 0.0
        for item in result.get("segments") or []:
            text = (item.get("text") or "").strip()
            if not text:
                continue
            start = float(item.get("start", 0.0))
            end = float(item.get("end", start))
            confidence = segment_confidence(item)
            segments.append(TranscriptSegment(start_time=start, end_time=end, text=text, confidence=confidence))
            span = max(end - start, 0.01)
            weighted += confidence * span
            total += span

        text = (result.get("text") or "").strip()
        if not segments and text:
            duration = float(result.get("duration") or 0.0)
            segments.append(TranscriptSegment(start_time=0.0, end_time=duration, text=text, confidence=0.5))
            weighted, total = 0.5, 1.0

        return ProviderTranscript(
            text=text or " ".join(s.text for s in segments),
            segments=segments,
            confidence=weighted / total if total else 0.0,
            detected_language=_language_code(result.get("language")) or language,
            duration=result.get("duration"),
        )


def segment_confidence(item: Dict[str, Any]) -> float:
    """Segment confidence from Whisper's average log-probability and no-speech probability"""
    avg_logprob = float(item.get("avg_logprob", -1.0))
    no_speech = float(item.get("no_speech_prob", 0.0))
    confidence = math.exp(min(0.0, avg_logprob)) * (1.0 - no_speech)
    return max(0.0, min(1.0, confidence))


_LANGUAGE_NAMES = {"hungarian": "hu", "english": "en"}


def _language_code(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.lower()
    return _LANGUAGE_NAMES.get(value, value)
