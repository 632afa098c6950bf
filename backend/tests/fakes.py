"""Scripted collaborators for pipeline tests"""
import asyncio
import math
from pathlib import Path
from typing import List, Optional, Sequence, Union

import torch

from hangjegyzet.audio_processor.audio_io import AudioBuffer
from hangjegyzet.audio_processor.pipeline import ProcessedAudio
from hangjegyzet.audio_processor.quality import QualityMetrics
from hangjegyzet.audio_processor.vad import SpeechRegion
from hangjegyzet.models.models import AudioQuality
from hangjegyzet.providers.base import ProviderTranscript, TextEnhancer, TranscriptionProvider
from hangjegyzet.schemas.transcription import ProcessingOptions, TranscriptSegment

ORG_ID = "org-1"
TEST_SAMPLE_RATE = 16000


def tone(seconds: float, amplitude: float = 0.5, frequency: float = 440.0, sample_rate: int = TEST_SAMPLE_RATE):
    t = torch.arange(int(seconds * sample_rate)) / sample_rate
    return amplitude * torch.sin(2 * math.pi * frequency * t)


def silence(seconds: float, sample_rate: int = TEST_SAMPLE_RATE):
    return torch.zeros(int(seconds * sample_rate))


def gated_tone(amplitude: float, bursts: int = 2, seconds: float = 1.0) -> torch.Tensor:
    """Mono tone bursts separated by equally long pauses"""
    return torch.cat([torch.cat([tone(seconds, amplitude), silence(seconds)]) for _ in range(bursts)])


def noisy_room(seed: int = 11) -> torch.Tensor:
    """
    Tone bursts under mains hum and hiss, shape (1, samples)

    The hum keeps the pauses loud enough to rate POOR. Once the hum is
    filtered out, the hiss alone leaves it FAIR.
    """
    speech = gated_tone(0.05)
    hum = tone(speech.shape[-1] / TEST_SAMPLE_RATE, amplitude=0.03, frequency=50.0)
    generator = torch.Generator().manual_seed(seed)
    hiss = 0.01 * torch.randn(speech.shape[-1], generator=generator)
    return (speech + hum + hiss).unsqueeze(0)


def make_segments(*texts: str, confidence: float = 0.9, span: float = 5.0) -> List[TranscriptSegment]:
    return [
        TranscriptSegment(start_time=i * span, end_time=(i + 1) * span, text=text, confidence=confidence)
        for i, text in enumerate(texts)
    ]


def make_transcript(*texts: str, confidence: float = 0.9) -> ProviderTranscript:
    return ProviderTranscript(
        text=" ".join(texts),
        segments=make_segments(*texts, confidence=confidence),
        confidence=confidence,
        detected_language="hu",
    )


def make_quality(quality: AudioQuality, snr_db: float = 25.0) -> QualityMetrics:
    return QualityMetrics(
        snr_db=snr_db,
        peak_db=-3.0,
        rms_db=-20.0,
        clipping_ratio=0.0,
        clipping_detected=False,
        silence_ratio=0.1,
        quality=quality,
    )


class ScriptedProvider(TranscriptionProvider):
    """
    Speech provider replaying a script

    Each call consumes the next entry: exceptions are raised, transcripts
    returned. The last entry repeats once the script is exhausted. Setting
    ``release`` to an unset event holds every call until it is set.
    """

    name = "scripted"

    def __init__(self, script: Sequence[Union[ProviderTranscript, BaseException]]):
        self.script = list(script)
        self.calls: List[dict] = []
        self.started = asyncio.Event()
        self.release: Optional[asyncio.Event] = None

    async def transcribe(self, audio_path: Path, *, language=None, temperature=0.0, prompt=None):
        self.calls.append({"path": audio_path, "language": language, "temperature": temperature, "prompt": prompt})
        self.started.set()
        if self.release is not None:
            await self.release.wait()
        entry = self.script[min(len(self.calls) - 1, len(self.script) - 1)]
        if isinstance(entry, BaseException):
            raise entry
        return entry


class EchoEnhancer(TextEnhancer):
    """Text enhancer returning its input, a fixed response or an error"""

    name = "echo"

    def __init__(self, response: Optional[str] = None, error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.calls = 0

    async def enhance_text(self, text: str, instructions: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.response if self.response is not None else text


class CannedPreprocessor:
    """Preprocessor stand-in returning silent audio with preset quality"""

    def __init__(
        self,
        duration: float = 120.0,
        quality: AudioQuality = AudioQuality.GOOD,
        quality_before: Optional[AudioQuality] = None,
        error: Optional[Exception] = None,
        speech_regions: Optional[List[SpeechRegion]] = None,
    ):
        self.duration = duration
        self.quality = quality
        self.quality_before = quality_before or quality
        self.error = error
        self.speech_regions = speech_regions
        self.calls = 0
        self.exported: List[Path] = []

    async def preprocess(self, source_path: Path, options: ProcessingOptions, workspace: Path) -> ProcessedAudio:
        self.calls += 1
        if self.error is not None:
            raise self.error
        before_snr = 5.0 if self.quality_before == AudioQuality.POOR else 25.0
        regions = self.speech_regions
        if regions is None:
            regions = [SpeechRegion(start=0.0, end=self.duration)]
        return ProcessedAudio(
            buffer=AudioBuffer(torch.zeros(1, int(TEST_SAMPLE_RATE * self.duration)), TEST_SAMPLE_RATE),
            quality_before=make_quality(self.quality_before, snr_db=before_snr),
            quality_after=make_quality(self.quality),
            speech_regions=regions,
            enhanced=self.quality_before != self.quality,
            audio_path=Path(workspace) / "cleaned.wav",
        )

    async def export_chunk(self, audio: ProcessedAudio, start: float, end: float, path: Path) -> Path:
        self.exported.append(path)
        return path


async def next_event(queue: asyncio.Queue, timeout: float = 5.0):
    return await asyncio.wait_for(queue.get(), timeout=timeout)
