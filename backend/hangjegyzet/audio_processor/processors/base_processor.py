from typing import Optional

import torch

from hangjegyzet.core.config import Settings, settings as default_settings


class BaseProcessor:
    def __init__(self, sample_rate: int, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.sample_rate = sample_rate
        self.n_fft = self.config.N_FFT
        self.hop_length = self.config.HOP_LENGTH
        self.window = torch.hann_window(self.n_fft)

    def process(self, waveform: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError
