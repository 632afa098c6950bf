from typing import Optional

import torch
import torchaudio

from hangjegyzet.audio_processor.processors.base_processor import BaseProcessor
from hangjegyzet.core.config import Settings


class NoiseProcessor(BaseProcessor):
    """Band-limiting biquads followed by spectral gating against a noise profile"""

    def __init__(
        self,
        sample_rate: int,
        config: Optional[Settings] = None,
        highpass_cutoff: Optional[float] = None,
        lowpass_cutoff: Optional[float] = None,
        reduction_db: Optional[float] = None,
    ):
        super().__init__(sample_rate, config)
        self.highpass_cutoff = highpass_cutoff or self.config.HIGHPASS_CUTOFF
        self.lowpass_cutoff = lowpass_cutoff or self.config.LOWPASS_CUTOFF
        self.reduction_db = reduction_db if reduction_db is not None else self.config.NOISE_REDUCTION_STRENGTH_DB
        self.profile_percentile = self.config.NOISE_PROFILE_PERCENTILE
        # Bins must exceed the profile by this factor to pass the gate
        self.gate_factor = 2.0

    def band_limit(self, waveform: torch.Tensor) -> torch.Tensor:
        nyquist = self.sample_rate / 2
        if self.highpass_cutoff < nyquist:
            waveform = torchaudio.functional.highpass_biquad(waveform, self.sample_rate, self.highpass_cutoff)
        if self.lowpass_cutoff < nyquist:
            waveform = torchaudio.functional.lowpass_biquad(waveform, self.sample_rate, self.lowpass_cutoff)
        return waveform

    def spectral_gate(self, waveform: torch.Tensor) -> torch.Tensor:
        if waveform.shape[-1] < self.n_fft:
            return waveform

        stft = torch.stft(waveform, n_fft=self.n_fft, hop_length=self.hop_length,
                          window=self.window, return_complex=True)
        mag_spec = torch.abs(stft)

        frames = mag_spec.shape[-1]
        k = max(1, int(frames * self.profile_percentile))
        noise_profile = mag_spec.kthvalue(k, dim=-1, keepdim=True).values

        attenuation = 10 ** (self.reduction_db / 20)
        mask = torch.where(
            mag_spec > noise_profile * self.gate_factor,
            torch.ones_like(mag_spec),
            torch.full_like(mag_spec, attenuation),
        )

        kernel_size = 5
        flat = mask.reshape(-1, 1, frames)
        smoothing_kernel = torch.ones(1, 1, kernel_size) / kernel_size
        smoothed = torch.nn.functional.conv1d(flat, smoothing_kernel, padding=kernel_size // 2)
        mask = smoothed.reshape(mask.shape).clamp(attenuation, 1.0)

        return torch.istft(stft * mask, n_fft=self.n_fft, hop_length=self.hop_length,
                           window=self.window, length=waveform.shape[-1])

    def process(self, waveform: torch.Tensor) -> torch.Tensor:
        return self.spectral_gate(self.band_limit(waveform))
