from hangjegyzet.audio_processor.audio_io import AudioBuffer, load_audio, save_audio
from hangjegyzet.audio_processor.pipeline import AudioPreprocessor, ProcessedAudio
from hangjegyzet.audio_processor.quality import QualityMetrics, analyze_quality, classify_quality, quality_rank
from hangjegyzet.audio_processor.vad import SpeechRegion, VoiceActivityDetector
