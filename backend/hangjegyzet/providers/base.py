from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from hangjegyzet.schemas.transcription import TranscriptSegment


class ProviderTranscript(BaseModel):
    """Result of one provider transcription call"""
    text: str
    segments: List[TranscriptSegment] = []
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    detected_language: Optional[str] = None
    duration: Optional[float] = None


class TranscriptionProvider(ABC):
    """Speech-to-text backend"""

    name: str = "provider"

    @abstractmethod
    async def transcribe(
        self,
        audio_path: Path,
        *,
        language: Optional[str] = None,
        temperature: float = 0.0,
        prompt: Optional[str] = None,
    ) -> ProviderTranscript:
        """
        Transcribe an audio file

        Raises:
            ProviderError: On a non-success provider response
        """


class TextEnhancer(ABC):
    """Language-model backend for transcript clean-up"""

    name: str = "enhancer"

    @abstractmethod
    async def enhance_text(self, text: str, instructions: str) -> str:
        """Return the text rewritten according to the instructions"""
