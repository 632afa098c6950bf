import asyncio
from pathlib import Path
from typing import List, Optional

import torch
import torchaudio
from loguru import logger

from hangjegyzet.audio_processor.audio_io import AudioBuffer, load_audio, save_audio
from hangjegyzet.audio_processor.processors.base_processor import BaseProcessor
from hangjegyzet.audio_processor.processors.dynamics_processor import DynamicsProcessor
from hangjegyzet.audio_processor.processors.loudness_processor import LoudnessProcessor
from hangjegyzet.audio_processor.processors.noise_processor import NoiseProcessor
from hangjegyzet.audio_processor.quality import QualityMetrics, analyze_quality
from hangjegyzet.audio_processor.vad import SpeechRegion, VoiceActivityDetector
from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import FileCorruptedError
from hangjegyzet.models.models import AudioQuality
from hangjegyzet.schemas.transcription import ProcessingOptions


class ProcessedAudio:
    """Cleaned audio plus everything measured while producing it"""

    def __init__(
        self,
        buffer: AudioBuffer,
        quality_before: QualityMetrics,
        quality_after: QualityMetrics,
        speech_regions: List[SpeechRegion],
        enhanced: bool = False,
        audio_path: Optional[Path] = None,
    ):
        self.buffer = buffer
        self.quality_before = quality_before
        self.quality_after = quality_after
        self.speech_regions = speech_regions
        self.enhanced = enhanced
        self.audio_path = audio_path

    @property
    def duration(self) -> float:
        return self.buffer.duration

    @property
    def quality(self) -> AudioQuality:
        return self.quality_after.quality


class AudioPreprocessor:
    """
    Audio preparation ahead of transcription

    Decodes the upload, converts it to mono at TARGET_SAMPLE_RATE and, when
    the job's options ask for it, runs noise reduction, loudness
    normalization and compression. Audio that is still poor afterwards gets
    a stronger enhancement chain if the mode allows it.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.sample_rate = self.config.TARGET_SAMPLE_RATE
        self.vad = VoiceActivityDetector(self.config)

    def standard_chain(self, options: ProcessingOptions) -> List[BaseProcessor]:
        processors: List[BaseProcessor] = []
        if options.noise_reduction:
            processors.append(NoiseProcessor(self.sample_rate, self.config))
        if options.loudness_normalization:
            processors.append(LoudnessProcessor(self.sample_rate, self.config))
        if options.compression:
            processors.append(DynamicsProcessor(self.sample_rate, self.config))
        return processors

    def enhancement_chain(self) -> List[BaseProcessor]:
        config = self.config
        return [
            NoiseProcessor(
                self.sample_rate,
                config,
                highpass_cutoff=config.ENHANCE_HIGHPASS_CUTOFF,
                lowpass_cutoff=config.ENHANCE_LOWPASS_CUTOFF,
                reduction_db=config.ENHANCE_NOISE_REDUCTION_DB,
            ),
            DynamicsProcessor(
                self.sample_rate,
                config,
                threshold_db=config.ENHANCE_COMP_THRESHOLD,
                ratio=config.ENHANCE_COMP_RATIO,
            ),
            LoudnessProcessor(self.sample_rate, config, target_lufs=config.ENHANCE_TARGET_LOUDNESS_LUFS),
        ]

    def to_target_format(self, buffer: AudioBuffer) -> torch.Tensor:
        waveform = buffer.waveform.to(torch.float32)
        if waveform.shape[0] > 1:
            waveform = torch.mean(waveform, dim=0, keepdim=True)
        if buffer.sample_rate != self.sample_rate:
            waveform = torchaudio.functional.resample(waveform, buffer.sample_rate, self.sample_rate)
        return waveform

    @staticmethod
    def run_chain(waveform: torch.Tensor, processors: List[BaseProcessor]) -> torch.Tensor:
        for processor in processors:
            waveform = processor.process(waveform)
            logger.debug(f"Shape after {processor.__class__.__name__}: {tuple(waveform.shape)}")
        return waveform

    def process_buffer(self, buffer: AudioBuffer, options: ProcessingOptions) -> ProcessedAudio:
        """
        Clean an in-memory buffer according to the job's options

        Args:
            buffer: Decoded audio
            options: Resolved processing options

        Returns:
            Processed audio with quality before and after cleaning
        """
        waveform = self.to_target_format(buffer)
        if waveform.shape[-1] == 0:
            raise FileCorruptedError("Audio contains no samples")
        before = analyze_quality(waveform, self.sample_rate, self.config)

        enhanced = False
        if options.enable_preprocessing:
            waveform = self.run_chain(waveform, self.standard_chain(options))
        after = analyze_quality(waveform, self.sample_rate, self.config)

        if options.enable_preprocessing and options.enhance_poor_audio and after.quality == AudioQuality.POOR:
            logger.info(f"Audio still poor after cleaning (SNR {after.snr_db} dB), applying enhancement")
            waveform = self.run_chain(waveform, self.enhancement_chain())
            after = analyze_quality(waveform, self.sample_rate, self.config)
            enhanced = True

        waveform = waveform.clamp(-1.0, 1.0)
        regions = self.vad.detect(waveform, self.sample_rate)
        logger.info(
            f"Preprocessed {waveform.shape[-1] / self.sample_rate:.1f}s: quality "
            f"{before.quality.value} -> {after.quality.value}, {len(regions)} speech region(s)"
        )
        return ProcessedAudio(
            buffer=AudioBuffer(waveform, self.sample_rate),
            quality_before=before,
            quality_after=after,
            speech_regions=regions,
            enhanced=enhanced,
        )

    def process_file(self, source_path: Path, options: ProcessingOptions, workspace: Path) -> ProcessedAudio:
        buffer = load_audio(Path(source_path), self.config)
        result = self.process_buffer(buffer, options)
        result.audio_path = save_audio(result.buffer, Path(workspace) / "cleaned.wav")
        return result

    async def preprocess(self, source_path: Path, options: ProcessingOptions, workspace: Path) -> ProcessedAudio:
        """
        Decode, clean and store the job's audio in its workspace

        Raises:
            AudioFileNotFoundError: If the source file does not exist
            InvalidFileFormatError: If the extension is not accepted
            FileTooLargeError: If the file exceeds MAX_UPLOAD_SIZE
            FileCorruptedError: If the file cannot be decoded
        """
        return await asyncio.to_thread(self.process_file, source_path, options, workspace)

    def write_chunk(self, audio: ProcessedAudio, start: float, end: float, path: Path) -> Path:
        return save_audio(audio.buffer.slice(start, end), path)

    async def export_chunk(self, audio: ProcessedAudio, start: float, end: float, path: Path) -> Path:
        return await asyncio.to_thread(self.write_chunk, audio, start, end, path)
