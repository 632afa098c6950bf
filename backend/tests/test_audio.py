import pytest
import torch

from hangjegyzet.audio_processor.audio_io import AudioBuffer, load_audio, save_audio, validate_audio_file
from hangjegyzet.audio_processor.pipeline import AudioPreprocessor
from hangjegyzet.audio_processor.quality import analyze_quality, classify_quality, estimate_snr, quality_rank
from hangjegyzet.audio_processor.vad import VoiceActivityDetector, speech_threshold_db
from hangjegyzet.core.config import Settings
from hangjegyzet.core.exceptions import (
    AudioFileNotFoundError, FileCorruptedError, FileTooLargeError, InvalidFileFormatError
)
from hangjegyzet.core.modes import resolve_processing_options
from hangjegyzet.models.models import AudioQuality, TranscriptionMode
from hangjegyzet.schemas.transcription import ProcessingOptionsInput

from fakes import TEST_SAMPLE_RATE as SAMPLE_RATE, noisy_room, silence, tone


def speech_like():
    """1 s silence, 2 s tone, 1 s silence"""
    return torch.cat([silence(1.0), tone(2.0), silence(1.0)]).unsqueeze(0)


class TestQuality:

    def test_tone_with_pauses_is_excellent(self):
        metrics = analyze_quality(speech_like(), SAMPLE_RATE)
        assert metrics.quality == AudioQuality.EXCELLENT
        assert not metrics.clipping_detected
        assert metrics.silence_ratio == pytest.approx(0.5)

    def test_steady_noise_is_poor(self):
        generator = torch.Generator().manual_seed(7)
        noise = 0.1 * torch.randn(1, SAMPLE_RATE * 3, generator=generator)
        metrics = analyze_quality(noise, SAMPLE_RATE)
        assert metrics.snr_db < 10.0
        assert metrics.quality == AudioQuality.POOR

    def test_clipping_is_poor(self):
        square = torch.sign(tone(2.0)).unsqueeze(0)
        metrics = analyze_quality(torch.cat([silence(1.0).unsqueeze(0), square], dim=-1), SAMPLE_RATE)
        assert metrics.clipping_detected
        assert metrics.quality == AudioQuality.POOR

    def test_empty_audio(self):
        metrics = analyze_quality(torch.zeros(1, 0), SAMPLE_RATE)
        assert metrics.quality == AudioQuality.POOR
        assert metrics.silence_ratio == 1.0

    @pytest.mark.parametrize("snr, expected", [
        (35.0, AudioQuality.EXCELLENT),
        (25.0, AudioQuality.GOOD),
        (15.0, AudioQuality.FAIR),
        (5.0, AudioQuality.POOR),
    ])
    def test_classify(self, snr, expected):
        assert classify_quality(snr, clipping_detected=False) == expected

    def test_snr_needs_frames(self):
        assert estimate_snr(torch.tensor([-20.0])) == 0.0

    def test_quality_rank(self):
        assert quality_rank(AudioQuality.POOR) < quality_rank(AudioQuality.FAIR) < quality_rank(AudioQuality.EXCELLENT)


class TestVoiceActivity:

    def test_detects_tone_region(self):
        regions = VoiceActivityDetector().detect(speech_like(), SAMPLE_RATE)
        assert len(regions) == 1
        assert regions[0].start == pytest.approx(1.0, abs=0.03)
        assert regions[0].end == pytest.approx(3.0, abs=0.03)

    def test_short_gaps_bridged_short_blips_dropped(self):
        waveform = torch.cat([
            tone(1.0), silence(0.1), tone(1.0), silence(1.0), tone(0.1), silence(1.0)
        ]).unsqueeze(0)
        regions = VoiceActivityDetector().detect(waveform, SAMPLE_RATE)
        assert len(regions) == 1
        assert regions[0].end == pytest.approx(2.1, abs=0.03)

    def test_has_speech(self):
        regions = VoiceActivityDetector().detect(speech_like(), SAMPLE_RATE)
        assert VoiceActivityDetector.has_speech(regions, 0.5, 1.5)
        assert not VoiceActivityDetector.has_speech(regions, 3.2, 4.0)

    def test_silence_has_no_regions(self):
        assert VoiceActivityDetector().detect(torch.zeros(1, SAMPLE_RATE), SAMPLE_RATE) == []

    def test_quiet_recording_is_detected(self):
        # Around -37 dBFS, a distant microphone
        waveform = torch.cat([
            tone(1.0, amplitude=0.02), silence(1.0), tone(1.0, amplitude=0.02), silence(1.0)
        ]).unsqueeze(0)
        regions = VoiceActivityDetector().detect(waveform, SAMPLE_RATE)
        assert len(regions) == 2
        assert regions[0].start == pytest.approx(0.0, abs=0.03)
        assert regions[1].start == pytest.approx(2.0, abs=0.03)

    def test_quiet_speech_over_noise_floor(self):
        generator = torch.Generator().manual_seed(3)
        noise = 0.001 * torch.randn(SAMPLE_RATE * 4, generator=generator)
        speech = torch.cat([silence(1.0), tone(2.0, amplitude=0.02), silence(1.0)])
        regions = VoiceActivityDetector().detect((noise + speech).unsqueeze(0), SAMPLE_RATE)
        assert len(regions) == 1
        assert regions[0].start == pytest.approx(1.0, abs=0.05)
        assert regions[0].end == pytest.approx(3.0, abs=0.05)

    def test_speech_without_pauses_is_one_region(self):
        waveform = torch.cat([tone(1.0, amplitude=0.3), tone(1.0, amplitude=0.15), tone(1.0, amplitude=0.3)])
        regions = VoiceActivityDetector().detect(waveform.unsqueeze(0), SAMPLE_RATE)
        assert len(regions) == 1
        assert regions[0].end - regions[0].start == pytest.approx(3.0, abs=0.05)

    def test_threshold_follows_levels(self):
        loud = speech_threshold_db(torch.tensor([-200.0] * 5 + [-9.0] * 5))
        quiet = speech_threshold_db(torch.tensor([-200.0] * 5 + [-37.0] * 5))
        assert loud == pytest.approx(-39.0)
        assert quiet == pytest.approx(-67.0)
        assert speech_threshold_db(torch.tensor([-200.0] * 10)) == -70.0


class TestPreprocessor:

    def test_converts_to_mono_target_rate(self):
        stereo = torch.stack([tone(1.0, sample_rate=44100), tone(1.0, sample_rate=44100)])
        options = resolve_processing_options(TranscriptionMode.FAST, "hu")

        result = AudioPreprocessor().process_buffer(AudioBuffer(stereo, 44100), options)

        assert result.buffer.sample_rate == SAMPLE_RATE
        assert result.buffer.waveform.shape[0] == 1
        assert result.duration == pytest.approx(1.0, abs=0.01)
        assert not result.enhanced

    def test_cleaning_keeps_length_and_range(self):
        options = resolve_processing_options(TranscriptionMode.BALANCED, "hu")
        buffer = AudioBuffer(speech_like(), SAMPLE_RATE)

        result = AudioPreprocessor().process_buffer(buffer, options)

        assert result.buffer.waveform.shape == buffer.waveform.shape
        assert float(result.buffer.waveform.abs().max()) <= 1.0
        assert result.speech_regions

    def test_noise_reduction_lifts_poor_audio(self):
        options = resolve_processing_options(TranscriptionMode.BALANCED, "hu")

        result = AudioPreprocessor().process_buffer(AudioBuffer(noisy_room(), SAMPLE_RATE), options)

        assert result.quality_before.quality == AudioQuality.POOR
        assert result.quality_after.quality == AudioQuality.FAIR
        assert result.quality_after.snr_db > result.quality_before.snr_db
        assert not result.enhanced
        assert len(result.speech_regions) == 2

    def test_preprocessing_disabled_leaves_samples(self):
        options = resolve_processing_options(
            TranscriptionMode.BALANCED, "hu", ProcessingOptionsInput(enable_preprocessing=False)
        )
        buffer = AudioBuffer(speech_like(), SAMPLE_RATE)
        result = AudioPreprocessor().process_buffer(buffer, options)
        assert torch.equal(result.buffer.waveform, buffer.waveform)

    def test_empty_buffer_is_corrupted(self):
        options = resolve_processing_options(TranscriptionMode.FAST, "hu")
        with pytest.raises(FileCorruptedError):
            AudioPreprocessor().process_buffer(AudioBuffer(torch.zeros(1, 0), SAMPLE_RATE), options)

    async def test_preprocess_writes_workspace_file(self, tmp_path):
        source = save_audio(AudioBuffer(speech_like(), SAMPLE_RATE), tmp_path / "meeting.wav")
        options = resolve_processing_options(TranscriptionMode.FAST, "hu")

        result = await AudioPreprocessor().preprocess(source, options, tmp_path / "work")

        assert result.audio_path == tmp_path / "work" / "cleaned.wav"
        assert result.audio_path.is_file()
        chunk = await AudioPreprocessor().export_chunk(result, 1.0, 2.0, tmp_path / "work" / "chunk_0000.wav")
        assert load_audio(chunk).duration == pytest.approx(1.0, abs=0.01)


class TestFiles:

    def test_saved_wav_decodes(self, tmp_path):
        path = save_audio(AudioBuffer(tone(0.5), SAMPLE_RATE), tmp_path / "tone")
        loaded = load_audio(path)
        assert path.suffix == ".wav"
        assert loaded.sample_rate == SAMPLE_RATE
        assert loaded.duration == pytest.approx(0.5, abs=0.01)
        assert float(loaded.waveform.abs().max()) == pytest.approx(0.5, abs=0.01)

    def test_missing_file(self, tmp_path):
        with pytest.raises(AudioFileNotFoundError):
            validate_audio_file(tmp_path / "nincs.wav")

    def test_wrong_extension(self, tmp_path):
        path = tmp_path / "jegyzet.txt"
        path.write_text("nem hang")
        with pytest.raises(InvalidFileFormatError):
            validate_audio_file(path)

    def test_too_large(self, tmp_path):
        path = tmp_path / "nagy.wav"
        path.write_bytes(b"\0" * 64)
        with pytest.raises(FileTooLargeError):
            validate_audio_file(path, Settings(MAX_UPLOAD_SIZE=10))

    def test_corrupted_file(self, tmp_path):
        path = tmp_path / "serult.wav"
        path.write_bytes(b"RIFF\x00\x00garbage that is not audio")
        with pytest.raises(FileCorruptedError):
            load_audio(path)
