"""
Multi-pass transcription

Runs the speech provider once per pass on a temperature ladder and merges
the passes into a single transcript, adding passes while the merged
confidence stays below the job's threshold.
"""
import math
from collections import Counter
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.models.models import AudioQuality
from hangjegyzet.providers.base import TranscriptionProvider
from hangjegyzet.schemas.transcription import ProcessingOptions, TranscriptSegment
from hangjegyzet.schemas.vocabulary import VocabularyTermRead
from hangjegyzet.utils.text import normalize_text


class MultiPassResult(BaseModel):
    """Merged transcript of one or more passes"""
    segments: List[TranscriptSegment]
    confidence: float
    pass_count: int
    pass_texts: List[str]
    detected_language: Optional[str] = None


def aggregate_confidence(segments: Sequence[TranscriptSegment]) -> float:
    """Duration-weighted mean confidence of a transcript"""
    if not segments:
        return 0.0
    weighted = 0.0
    total = 0.0
    for segment in segments:
        span = max(segment.end_time - segment.start_time, 0.01)
        weighted += segment.confidence * span
        total += span
    return weighted / total


def _aligned(a: TranscriptSegment, b: TranscriptSegment, tolerance: float) -> bool:
    return abs(a.start_time - b.start_time) <= tolerance and abs(a.end_time - b.end_time) <= tolerance


def _overlaps(a: TranscriptSegment, b: TranscriptSegment) -> bool:
    return a.start_time < b.end_time and b.start_time < a.end_time


def _pick(candidates: List[Tuple[int, TranscriptSegment]], agreement_bonus: float) -> TranscriptSegment:
    """Choose one segment out of aligned candidates from different passes"""
    keys = [normalize_text(segment.text) for _, segment in candidates]
    counts = Counter(keys)

    majority_key = None
    if len(candidates) >= 3:
        key, count = counts.most_common(1)[0]
        if count * 2 > len(candidates):
            majority_key = key

    if majority_key is not None:
        # Earliest pass among the majority
        chosen_index = keys.index(majority_key)
    else:
        chosen_index = min(
            range(len(candidates)),
            key=lambda i: (-candidates[i][1].confidence, candidates[i][0]),
        )

    chosen_key = keys[chosen_index]
    agreeing = [segment.confidence for (_, segment), key in zip(candidates, keys) if key == chosen_key]
    confidence = sum(agreeing) / len(agreeing)
    if len(agreeing) > 1:
        confidence += agreement_bonus
    return candidates[chosen_index][1].model_copy(update={"confidence": min(1.0, confidence)})


def merge_passes(
    passes: Sequence[Sequence[TranscriptSegment]],
    tolerance: float = 0.5,
    agreement_bonus: float = 0.1,
) -> List[TranscriptSegment]:
    """
    Merge pass transcripts into one

    Segments of later passes are aligned to the first (temperature 0) pass
    when both start and end fall within tolerance. Each aligned group
    resolves to the strict-majority text when at least three candidates
    exist, otherwise to the highest-confidence candidate, earliest pass
    winning ties. Later-pass segments that align with nothing are kept only
    where they do not overlap an existing segment.

    Args:
        passes: Segments of each pass, first pass first
        tolerance: Alignment tolerance in seconds
        agreement_bonus: Confidence added when several passes agree

    Returns:
        Merged segments ordered by start time
    """
    if not passes:
        return []
    if len(passes) == 1:
        return sorted(passes[0], key=lambda s: (s.start_time, s.end_time))

    groups: List[List[Tuple[int, TranscriptSegment]]] = [[(0, segment)] for segment in passes[0]]
    unaligned: List[Tuple[int, TranscriptSegment]] = []

    for pass_index, segments in enumerate(passes[1:], start=1):
        for segment in segments:
            for group in groups:
                if _aligned(group[0][1], segment, tolerance) and all(p != pass_index for p, _ in group):
                    group.append((pass_index, segment))
                    break
            else:
                unaligned.append((pass_index, segment))

    for pass_index, segment in unaligned:
        if any(_overlaps(group[0][1], segment) for group in groups):
            continue
        groups.append([(pass_index, segment)])

    merged = [_pick(group, agreement_bonus) for group in groups]
    merged.sort(key=lambda s: (s.start_time, s.end_time))
    return merged


def rank_prompt_terms(terms: Sequence[VocabularyTermRead], min_confidence: float, limit: int) -> List[str]:
    """Vocabulary terms worth priming the provider with, best first"""
    eligible = [t for t in terms if t.is_active and t.confidence_score > min_confidence]
    eligible.sort(key=lambda t: (-(t.confidence_score * (1 + math.log(t.usage_count + 1))), t.term))
    return [t.term for t in eligible[:limit]]


def build_vocabulary_prompt(
    terms: Sequence[VocabularyTermRead],
    custom_vocabulary: Sequence[str] = (),
    context_hints: Sequence[str] = (),
    config: Optional[Settings] = None,
) -> Optional[str]:
    """
    Provider prompt of context hints and key terms

    Returns:
        Prompt text, None when there is nothing to prime with
    """
    config = config or default_settings
    parts = []
    if context_hints:
        parts.append(f"Context: {', '.join(context_hints)}.")
    key_terms = rank_prompt_terms(
        terms, config.VOCABULARY_MIN_PROMPT_CONFIDENCE, config.VOCABULARY_MAX_PROMPT_TERMS
    )
    if key_terms:
        parts.append(f"Key terms: {', '.join(key_terms)}.")
    additional = [t for t in custom_vocabulary if t not in key_terms]
    if additional:
        parts.append(f"Additional terms: {', '.join(additional)}.")
    if not parts:
        return None
    return " ".join(parts)[: config.WHISPER_PROMPT_MAX_CHARS]


def assign_speakers(
    segments: Sequence[TranscriptSegment],
    speaker_count: Optional[int],
    gap_seconds: float = 2.0,
) -> List[TranscriptSegment]:
    """
    Label speakers when the provider did not

    With a speaker count above one, the label rotates whenever the pause
    before a segment is longer than gap_seconds.
    """
    segments = list(segments)
    if not speaker_count or speaker_count < 2 or any(s.speaker for s in segments):
        return segments

    labelled = []
    current = 1
    previous_end = None
    for segment in segments:
        if previous_end is not None and segment.start_time - previous_end > gap_seconds:
            current = current % speaker_count + 1
        labelled.append(segment.model_copy(update={"speaker": f"Speaker {current}"}))
        previous_end = segment.end_time
    return labelled


class MultiPassTranscriber:
    """Adaptive multi-pass transcription over one provider"""

    def __init__(self, provider: TranscriptionProvider, config: Optional[Settings] = None):
        self.provider = provider
        self.config = config or default_settings

    def plan(self, options: ProcessingOptions, quality: Optional[AudioQuality]) -> Tuple[int, int]:
        """(planned passes, pass ceiling) for a job"""
        if not options.enable_multi_pass or quality == AudioQuality.EXCELLENT:
            return 1, 1
        return options.pass_count, max(options.pass_count, options.max_passes)

    def temperature(self, options: ProcessingOptions, pass_index: int) -> float:
        ladder = options.temperatures or [0.0]
        return ladder[min(pass_index, len(ladder) - 1)]

    async def transcribe(
        self,
        audio_path: Path,
        options: ProcessingOptions,
        language: Optional[str] = None,
        quality: Optional[AudioQuality] = None,
        prompt: Optional[str] = None,
        on_pass: Optional[Callable[[int], None]] = None,
    ) -> MultiPassResult:
        """
        Transcribe with as many passes as the options and confidence require

        Args:
            audio_path: Audio file to transcribe
            options: Resolved processing options
            language: Transcript language
            quality: Audio quality after preprocessing
            prompt: Vocabulary prompt for the provider
            on_pass: Called with the pass number after each successful pass

        Returns:
            Merged multi-pass result
        """
        planned, ceiling = self.plan(options, quality)
        threshold = options.minimum_confidence_score

        passes: List[List[TranscriptSegment]] = []
        texts: List[str] = []
        detected_language = None
        merged: List[TranscriptSegment] = []
        confidence = 0.0

        while len(passes) < ceiling:
            temperature = self.temperature(options, len(passes))
            transcript = await self.provider.transcribe(
                audio_path, language=language, temperature=temperature, prompt=prompt
            )
            passes.append(list(transcript.segments))
            texts.append(transcript.text)
            detected_language = detected_language or transcript.detected_language
            if on_pass is not None:
                on_pass(len(passes))

            merged = merge_passes(
                passes,
                tolerance=self.config.MULTI_PASS_ALIGNMENT_TOLERANCE,
                agreement_bonus=self.config.MULTI_PASS_AGREEMENT_BONUS,
            )
            confidence = aggregate_confidence(merged)
            logger.debug(
                f"Pass {len(passes)} at temperature {temperature}: merged confidence {confidence:.3f}"
            )
            if len(passes) >= planned and confidence >= threshold:
                break

        return MultiPassResult(
            segments=merged,
            confidence=confidence,
            pass_count=len(passes),
            pass_texts=texts,
            detected_language=detected_language,
        )
