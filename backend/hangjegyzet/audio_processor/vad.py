from typing import List, Optional

import torch
from pydantic import BaseModel

from hangjegyzet.core.config import Settings, settings as default_settings


class SpeechRegion(BaseModel):
    """Span of detected speech in seconds"""
    start: float
    end: float


def frame_levels_db(waveform: torch.Tensor, sample_rate: int, frame_seconds: float) -> torch.Tensor:
    """RMS level of consecutive mono frames in dBFS"""
    mono = waveform.mean(dim=0) if waveform.dim() > 1 else waveform
    frame_length = max(1, int(sample_rate * frame_seconds))
    usable = (mono.shape[-1] // frame_length) * frame_length
    if usable == 0:
        frames = mono.unsqueeze(0)
    else:
        frames = mono[:usable].reshape(-1, frame_length)
    rms = torch.sqrt(torch.mean(frames ** 2, dim=-1))
    return 20 * torch.log10(rms + 1e-10)


def speech_threshold_db(levels_db: torch.Tensor, config: Optional[Settings] = None) -> float:
    """
    Frame level above which a frame counts as speech

    The threshold adapts to the recording. It sits VAD_NOISE_MARGIN_DB above
    the noise floor (the NOISE_PROFILE_PERCENTILE frame) but never closer
    than that margin to the speech level (the opposite percentile frame), so
    recordings without pauses stay mostly speech. It is also kept within
    VAD_DYNAMIC_RANGE_DB of the speech level and above VAD_SILENCE_FLOOR_DB.

    Args:
        levels_db: Frame levels from frame_levels_db
        config: Settings, defaults to the global settings

    Returns:
        Threshold in dBFS
    """
    config = config or default_settings
    if levels_db.numel() == 0:
        return config.VAD_SILENCE_FLOOR_DB
    levels = levels_db.to(torch.float32)
    noise_floor = float(torch.quantile(levels, config.NOISE_PROFILE_PERCENTILE))
    speech_level = float(torch.quantile(levels, 1.0 - config.NOISE_PROFILE_PERCENTILE))
    above_noise = min(noise_floor + config.VAD_NOISE_MARGIN_DB, speech_level - config.VAD_NOISE_MARGIN_DB)
    return max(above_noise, speech_level - config.VAD_DYNAMIC_RANGE_DB, config.VAD_SILENCE_FLOOR_DB)


class VoiceActivityDetector:
    """
    Energy based voice activity segmentation

    A frame is speech when its level exceeds speech_threshold_db for the
    buffer, so quiet but clean recordings are segmented the same way as
    loud ones. Silences shorter than VAD_MIN_SILENCE_SECONDS are bridged
    and speech regions shorter than VAD_MIN_SPEECH_SECONDS are dropped.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.frame_seconds = self.config.VAD_FRAME_SECONDS
        self.min_speech = self.config.VAD_MIN_SPEECH_SECONDS
        self.min_silence = self.config.VAD_MIN_SILENCE_SECONDS

    def detect(self, waveform: torch.Tensor, sample_rate: int) -> List[SpeechRegion]:
        if waveform.shape[-1] == 0:
            return []
        levels = frame_levels_db(waveform, sample_rate, self.frame_seconds)
        threshold = speech_threshold_db(levels, self.config)
        active = (levels > threshold).tolist()
        frame = max(1, int(sample_rate * self.frame_seconds)) / sample_rate
        total = waveform.shape[-1] / sample_rate

        regions: List[SpeechRegion] = []
        start = None
        for index, is_speech in enumerate(active):
            if is_speech and start is None:
                start = index * frame
            elif not is_speech and start is not None:
                regions.append(SpeechRegion(start=start, end=index * frame))
                start = None
        if start is not None:
            regions.append(SpeechRegion(start=start, end=min(total, len(active) * frame)))

        bridged: List[SpeechRegion] = []
        for region in regions:
            if bridged and region.start - bridged[-1].end < self.min_silence:
                bridged[-1] = SpeechRegion(start=bridged[-1].start, end=region.end)
            else:
                bridged.append(region)
        return [r for r in bridged if r.end - r.start >= self.min_speech]

    @staticmethod
    def has_speech(regions: List[SpeechRegion], start: float, end: float) -> bool:
        """Whether any region overlaps [start, end)"""
        return any(r.start < end and start < r.end for r in regions)
