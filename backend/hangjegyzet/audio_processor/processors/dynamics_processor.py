import math
from typing import Optional

import torch

from hangjegyzet.audio_processor.processors.base_processor import BaseProcessor
from hangjegyzet.core.config import Settings


class DynamicsProcessor(BaseProcessor):
    """
    Downward compressor

    The envelope follows frame peaks (10 ms frames) with separate attack and
    release smoothing; the resulting gain curve is interpolated back to
    sample resolution.
    """

    def __init__(
        self,
        sample_rate: int,
        config: Optional[Settings] = None,
        threshold_db: Optional[float] = None,
        ratio: Optional[float] = None,
    ):
        super().__init__(sample_rate, config)
        self.comp_threshold = threshold_db if threshold_db is not None else self.config.COMP_THRESHOLD
        self.comp_ratio = ratio if ratio is not None else self.config.COMP_RATIO
        self.comp_attack_time = self.config.COMP_ATTACK_TIME
        self.comp_release_time = self.config.COMP_RELEASE_TIME
        self.frame_length = max(1, sample_rate // 100)

    def envelope(self, waveform: torch.Tensor) -> torch.Tensor:
        frames = torch.nn.functional.max_pool1d(
            torch.abs(waveform).unsqueeze(0),
            kernel_size=self.frame_length,
            stride=self.frame_length,
            ceil_mode=True,
        ).squeeze(0)

        frame_rate = self.sample_rate / self.frame_length
        attack_coeff = math.exp(-1.0 / (frame_rate * self.comp_attack_time / 1000))
        release_coeff = math.exp(-1.0 / (frame_rate * self.comp_release_time / 1000))

        smoothed = torch.zeros_like(frames)
        smoothed[:, 0] = frames[:, 0]
        for t in range(1, frames.shape[1]):
            coeff = torch.where(
                frames[:, t] > smoothed[:, t - 1],
                torch.tensor(attack_coeff),
                torch.tensor(release_coeff),
            )
            smoothed[:, t] = coeff * smoothed[:, t - 1] + (1 - coeff) * frames[:, t]
        return smoothed

    def process(self, waveform: torch.Tensor) -> torch.Tensor:
        if waveform.shape[-1] == 0:
            return waveform
        threshold = 10 ** (self.comp_threshold / 20)
        smoothed = self.envelope(waveform)

        gain = torch.where(
            smoothed > threshold,
            (threshold / (smoothed + 1e-8)) ** (1 - 1 / self.comp_ratio),
            torch.ones_like(smoothed),
        )
        gain = torch.nn.functional.interpolate(
            gain.unsqueeze(0), size=waveform.shape[-1], mode="linear", align_corners=False
        ).squeeze(0)
        return waveform * gain
