from pathlib import Path
from typing import Optional

import numpy as np
import torch
from loguru import logger
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import (
    AudioFileNotFoundError, FileCorruptedError, FileTooLargeError, InvalidFileFormatError
)


class AudioBuffer:
    """Float waveform of shape (channels, samples) in [-1, 1] plus its sample rate"""

    def __init__(self, waveform: torch.Tensor, sample_rate: int):
        if waveform.dim() == 1:
            waveform = waveform.unsqueeze(0)
        self.waveform = waveform
        self.sample_rate = sample_rate

    @property
    def duration(self) -> float:
        return self.waveform.shape[-1] / self.sample_rate

    def slice(self, start: float, end: float) -> "AudioBuffer":
        first = max(0, int(round(start * self.sample_rate)))
        last = min(self.waveform.shape[-1], int(round(end * self.sample_rate)))
        return AudioBuffer(self.waveform[:, first:last], self.sample_rate)


def validate_audio_file(path: Path, config: Optional[Settings] = None) -> None:
    """
    Check an upload before decoding it

    Raises:
        AudioFileNotFoundError: If the file does not exist
        InvalidFileFormatError: If the extension is not an accepted audio/video type
        FileTooLargeError: If the file exceeds MAX_UPLOAD_SIZE
    """
    config = config or default_settings
    path = Path(path)
    if not path.is_file():
        raise AudioFileNotFoundError(f"Audio file not found: {path}", {"path": str(path)})
    if path.suffix.lower() not in config.ALLOWED_AUDIO_EXTENSIONS:
        raise InvalidFileFormatError(
            f"Invalid file format: {path.suffix or 'no extension'}",
            {"allowed": config.ALLOWED_AUDIO_EXTENSIONS},
        )
    size = path.stat().st_size
    if size > config.MAX_UPLOAD_SIZE:
        raise FileTooLargeError(
            f"File too large: {size} bytes",
            {"size": size, "max_size": config.MAX_UPLOAD_SIZE},
        )


def load_audio(path: Path, config: Optional[Settings] = None) -> AudioBuffer:
    """
    Decode an audio or video file into an AudioBuffer

    Args:
        path: Source file
        config: Settings used for validation limits

    Returns:
        Decoded audio

    Raises:
        FileCorruptedError: If the file cannot be decoded or holds no samples
    """
    path = Path(path)
    validate_audio_file(path, config)
    try:
        segment = AudioSegment.from_file(str(path))
    except (CouldntDecodeError, IndexError, OSError) as e:
        raise FileCorruptedError(f"Could not decode {path.name}: {e}", {"path": str(path)}) from e

    if len(segment) == 0 or segment.frame_count() == 0:
        raise FileCorruptedError(f"No audio samples in {path.name}", {"path": str(path)})

    samples = np.array(segment.get_array_of_samples(), dtype=np.float32)
    samples = samples.reshape((-1, segment.channels)).T
    samples /= float(1 << (8 * segment.sample_width - 1))

    logger.debug(
        f"Decoded {path.name}: {len(segment) / 1000:.1f}s, "
        f"{segment.channels} channel(s) at {segment.frame_rate} Hz"
    )
    return AudioBuffer(torch.from_numpy(np.ascontiguousarray(samples)), segment.frame_rate)


def to_segment(buffer: AudioBuffer) -> AudioSegment:
    """16-bit PCM AudioSegment of a buffer"""
    waveform = buffer.waveform.detach().cpu().clamp(-1.0, 1.0)
    pcm = (waveform.numpy().T * 32767.0).astype(np.int16)
    return AudioSegment(
        data=pcm.tobytes(),
        sample_width=2,
        frame_rate=buffer.sample_rate,
        channels=waveform.shape[0],
    )


def save_audio(buffer: AudioBuffer, output_path: Path) -> Path:
    """Write a buffer as 16-bit PCM WAV"""
    output_path = Path(output_path).with_suffix(".wav")
    output_path.parent.mkdir(parents=True, exist_ok=True)
    to_segment(buffer).export(str(output_path), format="wav")
    logger.debug(f"Saved {buffer.duration:.1f}s of audio to {output_path}")
    return output_path
