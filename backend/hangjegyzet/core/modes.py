"""
Mode profiles

Each transcription mode carries explicit defaults for every processing
option. Submissions are resolved against these once, and the resulting
ProcessingOptions travel unchanged through every stage.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import (
    LanguageNotSupportedError, ModeNotAvailableError, ValidationError
)
from hangjegyzet.models.models import JobPriority, TranscriptionMode
from hangjegyzet.schemas.transcription import ProcessingOptions, ProcessingOptionsInput


class ModeProfile(BaseModel):
    """Per-mode processing defaults"""
    mode: TranscriptionMode
    queue_priority: int
    preprocessing: bool
    noise_reduction: bool
    loudness_normalization: bool
    compression: bool
    enhance_poor_audio: bool
    multi_pass: bool
    default_passes: int
    max_passes: int
    temperatures: List[float]
    vocabulary: bool
    ai_post_processing: bool
    credits_per_minute: int

    model_config = ConfigDict(frozen=True)


MODE_PROFILES: Dict[TranscriptionMode, ModeProfile] = {
    TranscriptionMode.FAST: ModeProfile(
        mode=TranscriptionMode.FAST,
        queue_priority=1,
        preprocessing=False,
        noise_reduction=False,
        loudness_normalization=False,
        compression=False,
        enhance_poor_audio=False,
        multi_pass=False,
        default_passes=1,
        max_passes=1,
        temperatures=[0.0],
        vocabulary=True,
        ai_post_processing=False,
        credits_per_minute=1,
    ),
    TranscriptionMode.BALANCED: ModeProfile(
        mode=TranscriptionMode.BALANCED,
        queue_priority=5,
        preprocessing=True,
        noise_reduction=True,
        loudness_normalization=True,
        compression=False,
        enhance_poor_audio=False,
        multi_pass=True,
        default_passes=1,
        max_passes=2,
        temperatures=[0.0, 0.2],
        vocabulary=True,
        ai_post_processing=True,
        credits_per_minute=2,
    ),
    TranscriptionMode.PRECISION: ModeProfile(
        mode=TranscriptionMode.PRECISION,
        queue_priority=10,
        preprocessing=True,
        noise_reduction=True,
        loudness_normalization=True,
        compression=True,
        enhance_poor_audio=True,
        multi_pass=True,
        default_passes=2,
        max_passes=3,
        temperatures=[0.0, 0.2, 0.4],
        vocabulary=True,
        ai_post_processing=True,
        credits_per_minute=4,
    ),
}

PRIORITY_RANK: Dict[JobPriority, int] = {
    JobPriority.URGENT: 0,
    JobPriority.HIGH: 1,
    JobPriority.NORMAL: 2,
    JobPriority.LOW: 3,
}


def get_profile(mode: TranscriptionMode) -> ModeProfile:
    return MODE_PROFILES[TranscriptionMode(mode)]


def resolve_processing_options(
    mode: TranscriptionMode,
    language: str,
    overrides: Optional[ProcessingOptionsInput] = None,
    config: Optional[Settings] = None,
) -> ProcessingOptions:
    """
    Merge caller overrides into the mode's defaults and validate the result

    Args:
        mode: Requested transcription mode
        language: Requested transcript language
        overrides: Caller supplied option overrides
        config: Settings, defaults to the application settings

    Returns:
        Resolved, immutable processing options

    Raises:
        LanguageNotSupportedError: If the language is not supported
        ModeNotAvailableError: If an option is not offered in this mode
        ValidationError: If the pass count is outside the mode's range
    """
    config = config or default_settings
    overrides = overrides or ProcessingOptionsInput()
    profile = get_profile(mode)

    if language not in config.SUPPORTED_LANGUAGES:
        raise LanguageNotSupportedError(
            f"Language '{language}' is not supported",
            {"supported": config.SUPPORTED_LANGUAGES},
        )

    if overrides.enable_ai_post_processing and not profile.ai_post_processing:
        raise ModeNotAvailableError(
            f"AI post-processing is not available in {profile.mode.value} mode",
            {"mode": profile.mode.value},
        )

    multi_pass = profile.multi_pass if overrides.enable_multi_pass is None else overrides.enable_multi_pass
    if multi_pass and not profile.multi_pass:
        raise ModeNotAvailableError(
            f"Multi-pass transcription is not available in {profile.mode.value} mode",
            {"mode": profile.mode.value},
        )

    max_passes = profile.max_passes if multi_pass else 1
    default_passes = profile.default_passes if multi_pass else 1
    pass_count = overrides.pass_count if overrides.pass_count is not None else default_passes
    if pass_count > max_passes:
        raise ValidationError(
            f"pass_count must be between 1 and {max_passes} in {profile.mode.value} mode"
        )

    preprocessing = profile.preprocessing if overrides.enable_preprocessing is None else overrides.enable_preprocessing

    return ProcessingOptions(
        enable_preprocessing=preprocessing,
        noise_reduction=preprocessing,
        loudness_normalization=preprocessing,
        compression=preprocessing and profile.compression,
        enhance_poor_audio=preprocessing and profile.enhance_poor_audio,
        enable_multi_pass=multi_pass,
        pass_count=pass_count,
        max_passes=max_passes,
        temperatures=list(profile.temperatures[:max_passes]),
        enable_vocabulary=profile.vocabulary if overrides.enable_vocabulary is None else overrides.enable_vocabulary,
        enable_ai_post_processing=(
            profile.ai_post_processing
            if overrides.enable_ai_post_processing is None
            else overrides.enable_ai_post_processing
        ),
        speaker_count=overrides.speaker_count,
        custom_vocabulary=[t.strip() for t in overrides.custom_vocabulary if t.strip()],
        context_hints=[h.strip() for h in overrides.context_hints if h.strip()],
        minimum_audio_quality=overrides.minimum_audio_quality,
        minimum_confidence_score=(
            overrides.minimum_confidence_score
            if overrides.minimum_confidence_score is not None
            else config.MULTI_PASS_CONFIDENCE_THRESHOLD
        ),
        priority=overrides.priority,
    )
