import math
from typing import Optional

import torch
import torchaudio
from loguru import logger

from hangjegyzet.audio_processor.processors.base_processor import BaseProcessor
from hangjegyzet.core.config import Settings

# ITU-R BS.1770 gating blocks are 400 ms long
MIN_LOUDNESS_SECONDS = 0.4


def measure_loudness(waveform: torch.Tensor, sample_rate: int) -> Optional[float]:
    """Integrated loudness in LUFS, None for silent or too short audio"""
    if waveform.shape[-1] < int(MIN_LOUDNESS_SECONDS * sample_rate):
        return None
    value = float(torchaudio.functional.loudness(waveform, sample_rate))
    if not math.isfinite(value):
        return None
    return value


class LoudnessProcessor(BaseProcessor):
    """Loudness normalization with a peak ceiling"""

    def __init__(
        self,
        sample_rate: int,
        config: Optional[Settings] = None,
        target_lufs: Optional[float] = None,
        peak_ceiling_db: Optional[float] = None,
    ):
        super().__init__(sample_rate, config)
        self.target_lufs = target_lufs if target_lufs is not None else self.config.TARGET_LOUDNESS_LUFS
        self.peak_ceiling_db = peak_ceiling_db if peak_ceiling_db is not None else self.config.PEAK_CEILING_DB

    def process(self, waveform: torch.Tensor) -> torch.Tensor:
        measured = measure_loudness(waveform, self.sample_rate)
        if measured is None:
            logger.debug("Loudness not measurable, skipping normalization")
            return waveform

        gain = 10 ** ((self.target_lufs - measured) / 20)
        waveform = waveform * gain

        ceiling = 10 ** (self.peak_ceiling_db / 20)
        peak = torch.max(torch.abs(waveform))
        if peak > ceiling:
            waveform = waveform * (ceiling / peak)
        return waveform
