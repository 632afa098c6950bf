from typing import Optional

import torch
from pydantic import BaseModel

from hangjegyzet.audio_processor.vad import frame_levels_db, speech_threshold_db
from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.models.models import AudioQuality

QUALITY_ORDER = [AudioQuality.POOR, AudioQuality.FAIR, AudioQuality.GOOD, AudioQuality.EXCELLENT]

# Samples at or above this magnitude count as clipped
CLIP_LEVEL = 0.999


class QualityMetrics(BaseModel):
    """Measured properties of an audio buffer"""
    snr_db: float
    peak_db: float
    rms_db: float
    clipping_ratio: float
    clipping_detected: bool
    silence_ratio: float
    quality: AudioQuality


def quality_rank(quality: AudioQuality) -> int:
    return QUALITY_ORDER.index(AudioQuality(quality))


def estimate_snr(levels_db: torch.Tensor) -> float:
    """Speech level (90th percentile frame) over noise floor (10th percentile frame)"""
    if levels_db.numel() < 2:
        return 0.0
    ordered, _ = torch.sort(levels_db)
    noise = ordered[int((ordered.numel() - 1) * 0.1)]
    signal = ordered[int((ordered.numel() - 1) * 0.9)]
    return max(0.0, float(signal - noise))


def classify_quality(snr_db: float, clipping_detected: bool, config: Optional[Settings] = None) -> AudioQuality:
    config = config or default_settings
    thresholds = config.QUALITY_SNR_THRESHOLDS
    if clipping_detected or snr_db < thresholds["fair"]:
        return AudioQuality.POOR
    if snr_db < thresholds["good"]:
        return AudioQuality.FAIR
    if snr_db < thresholds["excellent"]:
        return AudioQuality.GOOD
    return AudioQuality.EXCELLENT


def analyze_quality(waveform: torch.Tensor, sample_rate: int, config: Optional[Settings] = None) -> QualityMetrics:
    config = config or default_settings
    if waveform.shape[-1] == 0:
        return QualityMetrics(
            snr_db=0.0, peak_db=-200.0, rms_db=-200.0, clipping_ratio=0.0,
            clipping_detected=False, silence_ratio=1.0, quality=AudioQuality.POOR,
        )

    magnitude = torch.abs(waveform)
    peak = float(torch.max(magnitude))
    rms = float(torch.sqrt(torch.mean(waveform ** 2)))
    clipping_ratio = float((magnitude >= CLIP_LEVEL).float().mean())
    clipping_detected = clipping_ratio > config.CLIPPING_RATIO

    levels = frame_levels_db(waveform, sample_rate, config.VAD_FRAME_SECONDS)
    snr_db = estimate_snr(levels)
    silence_ratio = float((levels <= speech_threshold_db(levels, config)).float().mean())

    return QualityMetrics(
        snr_db=round(snr_db, 2),
        peak_db=round(20 * torch.log10(torch.tensor(peak + 1e-10)).item(), 2),
        rms_db=round(20 * torch.log10(torch.tensor(rms + 1e-10)).item(), 2),
        clipping_ratio=clipping_ratio,
        clipping_detected=clipping_detected,
        silence_ratio=silence_ratio,
        quality=classify_quality(snr_db, clipping_detected, config),
    )
