import asyncio
import re
from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.modes import PRIORITY_RANK, get_profile
from hangjegyzet.models.models import JobPriority, TranscriptionMode
from hangjegyzet.providers.base import TextEnhancer
from hangjegyzet.schemas.transcription import ProcessingOptions, TranscriptSegment
from hangjegyzet.utils.text import levenshtein, numbers, words

LANGUAGE_NAMES = {"hu": "Hungarian", "en": "English"}

INSTRUCTIONS = """You are an expert transcription post-processor for {language} business meetings.
Correct grammar, punctuation and capitalization and improve coherence.
Do not add, remove or change facts, names, numbers or meaning.
Context: {context}
Key terms: {terms}

The transcript is given as numbered lines. Return exactly the same numbered
lines, one per input line, in the form "<number>. <text>", with no other output."""

_LINE_RE = re.compile(r"^\s*(\d+)[.)]\s?(.*)$")


class PostProcessingResult(BaseModel):
    """Segments after AI clean-up"""
    segments: List[TranscriptSegment]
    changed: int = 0
    rejected: int = 0


def word_similarity(a: str, b: str) -> float:
    """1 - word-level edit distance, ignoring case and punctuation"""
    words_a = words(a)
    words_b = words(b)
    if not words_a and not words_b:
        return 1.0
    return 1.0 - levenshtein(words_a, words_b) / max(len(words_a), len(words_b))


class AIPostProcessor:
    """
    Grammar and coherence clean-up through a language model

    The model only sees numbered transcript lines and every returned line is
    checked against its source line: lines whose words drift too far or
    whose numbers change are replaced by the original.
    """

    def __init__(self, enhancer: Optional[TextEnhancer], config: Optional[Settings] = None):
        self.enhancer = enhancer
        self.config = config or default_settings

    def should_run(
        self,
        mode: TranscriptionMode,
        options: ProcessingOptions,
        duration_seconds: Optional[float],
    ) -> Tuple[bool, str]:
        """Whether the stage applies to a job, with the reason when it does not"""
        if self.enhancer is None:
            return False, "no_enhancer"
        if not get_profile(mode).ai_post_processing:
            return False, "mode"
        if not options.enable_ai_post_processing:
            return False, "disabled"
        if duration_seconds is None or duration_seconds < self.config.AI_MIN_DURATION_SECONDS:
            return False, "too_short"
        floor = JobPriority(self.config.AI_PRIORITY_FLOOR)
        if PRIORITY_RANK[options.priority] > PRIORITY_RANK[floor]:
            return False, "priority"
        return True, ""

    def build_instructions(
        self, language: str, context_hints: Sequence[str] = (), terms: Sequence[str] = ()
    ) -> str:
        return INSTRUCTIONS.format(
            language=LANGUAGE_NAMES.get(language, language),
            context=", ".join(context_hints) or "General business meeting",
            terms=", ".join(terms[:100]) or "-",
        )

    @staticmethod
    def parse_lines(response: str) -> Dict[int, str]:
        lines: Dict[int, str] = {}
        for raw in response.splitlines():
            match = _LINE_RE.match(raw)
            if match:
                lines.setdefault(int(match.group(1)), match.group(2).strip())
        return lines

    def accept_line(self, original: str, candidate: Optional[str]) -> bool:
        if not candidate:
            return False
        if numbers(original) != numbers(candidate):
            return False
        return word_similarity(original, candidate) >= self.config.AI_CONTENT_SIMILARITY_THRESHOLD

    async def process(
        self,
        segments: Sequence[TranscriptSegment],
        language: str,
        context_hints: Sequence[str] = (),
        terms: Sequence[str] = (),
    ) -> PostProcessingResult:
        """
        Clean up segment texts, keeping timing and speakers

        Args:
            segments: Transcript segments
            language: Transcript language
            context_hints: Job context keywords
            terms: Vocabulary terms to keep spelled as given

        Returns:
            Post-processing result

        Raises:
            asyncio.TimeoutError: If the model does not answer within AI_ENHANCEMENT_TIMEOUT
            ProviderError: If the model call fails
        """
        if not segments:
            return PostProcessingResult(segments=[])

        numbered = "\n".join(f"{i}. {segment.text}" for i, segment in enumerate(segments, start=1))
        response = await asyncio.wait_for(
            self.enhancer.enhance_text(numbered, self.build_instructions(language, context_hints, terms)),
            timeout=self.config.AI_ENHANCEMENT_TIMEOUT,
        )
        lines = self.parse_lines(response)

        processed = []
        changed = rejected = 0
        for i, segment in enumerate(segments, start=1):
            candidate = lines.get(i)
            if candidate == segment.text:
                processed.append(segment)
            elif self.accept_line(segment.text, candidate):
                processed.append(segment.model_copy(update={"text": candidate}))
                changed += 1
            else:
                processed.append(segment)
                rejected += 1

        logger.info(f"AI post-processing changed {changed} of {len(segments)} segments, rejected {rejected}")
        return PostProcessingResult(segments=processed, changed=changed, rejected=rejected)
