import csv
import io
import time
from collections import Counter, defaultdict
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel

from hangjegyzet.core.config import Settings, settings as default_settings
from hangjegyzet.core.exceptions import ResourceNotFoundError, ValidationError
from hangjegyzet.models.models import TermCategory, TermSource
from hangjegyzet.schemas.transcription import TranscriptSegment
from hangjegyzet.schemas.vocabulary import (
    EnhancementResult, TermMatch, TermSuggestion, VocabularyTermCreate,
    VocabularyTermRead, VocabularyTermUpdate
)
from hangjegyzet.services.default_vocabulary import DEFAULT_TERMS
from hangjegyzet.storage.base import PipelineStore
from hangjegyzet.utils.phonetics import phonetic_similarity
from hangjegyzet.utils.text import normalize_text, word_spans, words

CSV_COLUMNS = [
    "term", "variations", "category", "phonetic_hint", "context_hints", "usage_count", "confidence_score"
]

_MATCH_RANK = {"exact": 0, "variation": 1, "phonetic": 2}


def match_case(source: str, replacement: str) -> str:
    """Give the replacement the capitalization pattern of the text it replaces"""
    if len(source) > 1 and source.isupper():
        return replacement.upper()
    if source[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word, case-insensitive phrase containment"""
    needle = " ".join(words(phrase))
    if not needle:
        return False
    return f" {needle} " in f" {' '.join(words(text))} "


class VocabularyMatcher:
    """
    Finds organization terms in transcript text

    Exact occurrences of a term are confirmed but never rewritten. Any other
    candidate (a declared variation or a phonetically similar phrase) is
    substituted only if its phonetic similarity reaches the threshold and a
    context keyword occurs within the window around it.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.threshold = self.config.VOCABULARY_PHONETIC_THRESHOLD
        self.window = self.config.VOCABULARY_CONTEXT_WINDOW

    def has_context(self, text: str, start: int, end: int, keywords: Sequence[str]) -> bool:
        surrounding = text[max(0, start - self.window): end + self.window].lower()
        return any(keyword.lower() in surrounding for keyword in keywords if keyword.strip())

    def _candidates(
        self, text: str, term: VocabularyTermRead, context_hints: Sequence[str], language: str
    ) -> List[TermMatch]:
        spans = word_spans(text)
        term_key = normalize_text(term.term)
        variation_keys = {normalize_text(v) for v in term.variations if v.strip()}
        anchors = [term.term] + ([term.phonetic_hint] if term.phonetic_hint else [])
        keywords = list(term.context_hints) + list(context_hints)

        sizes = {len(words(term.term))} | {len(words(v)) for v in term.variations if v.strip()}
        found: List[TermMatch] = []
        for size in sorted(s for s in sizes if s > 0):
            for i in range(len(spans) - size + 1):
                start = spans[i][1]
                end = spans[i + size - 1][2]
                candidate = text[start:end]
                key = normalize_text(candidate)

                if key == term_key:
                    found.append(TermMatch(
                        term_id=term.id, term=term.term, matched_text=candidate, match_type="exact",
                        similarity=1.0, start=start, end=end, accepted=True, reason="exact",
                    ))
                    continue

                if key in variation_keys:
                    match_type, score = "variation", 1.0
                else:
                    match_type = "phonetic"
                    score = max(phonetic_similarity(candidate, anchor, language) for anchor in anchors)
                    if score < self.threshold:
                        continue

                accepted = self.has_context(text, start, end, keywords)
                found.append(TermMatch(
                    term_id=term.id, term=term.term, matched_text=candidate, match_type=match_type,
                    similarity=round(score, 4), start=start, end=end, accepted=accepted,
                    replaced=accepted, reason=None if accepted else "no_context",
                ))
        return found

    def find_matches(
        self,
        text: str,
        terms: Sequence[VocabularyTermRead],
        context_hints: Sequence[str] = (),
        language: str = "hu",
    ) -> List[TermMatch]:
        """
        Non-overlapping term matches in text, ordered by position

        Args:
            text: Segment text
            terms: Active organization terms
            context_hints: Job-level context keywords
            language: Transcript language

        Returns:
            Matches, including rejected candidates that overlap nothing accepted
        """
        candidates: List[TermMatch] = []
        for term in terms:
            if not term.is_active or term.language != language:
                continue
            candidates.extend(self._candidates(text, term, context_hints, language))

        candidates.sort(key=lambda m: (not m.accepted, _MATCH_RANK[m.match_type], -m.similarity, m.start, m.term))
        selected: List[TermMatch] = []
        for match in candidates:
            if any(match.start < other.end and other.start < match.end for other in selected):
                continue
            selected.append(match)
        selected.sort(key=lambda m: m.start)
        return selected

    @staticmethod
    def apply(text: str, matches: Sequence[TermMatch]) -> str:
        """Substitute replaced matches, right to left so offsets stay valid"""
        for match in sorted((m for m in matches if m.replaced), key=lambda m: m.start, reverse=True):
            text = text[:match.start] + match_case(match.matched_text, match.term) + text[match.end:]
        return text

    def enhance_segments(
        self,
        segments: Sequence[TranscriptSegment],
        terms: Sequence[VocabularyTermRead],
        context_hints: Sequence[str] = (),
        language: str = "hu",
    ) -> EnhancementResult:
        enhanced = []
        all_matches: List[TermMatch] = []
        for segment in segments:
            matches = self.find_matches(segment.text, terms, context_hints, language)
            all_matches.extend(matches)
            if any(m.replaced for m in matches):
                segment = segment.model_copy(update={"text": self.apply(segment.text, matches)})
            enhanced.append(segment)
        return EnhancementResult(segments=enhanced, matches=all_matches)


class VocabularyCache:
    """TTL cache of active terms per organization"""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self.entries: Dict[str, Tuple[float, List[VocabularyTermRead]]] = {}

    def get(self, organization_id: str) -> Optional[List[VocabularyTermRead]]:
        entry = self.entries.get(organization_id)
        if entry is None:
            return None
        expires_at, terms = entry
        if self.clock() >= expires_at:
            del self.entries[organization_id]
            return None
        return terms

    def set(self, organization_id: str, terms: List[VocabularyTermRead]) -> None:
        self.entries[organization_id] = (self.clock() + self.ttl, terms)

    def invalidate(self, organization_id: str) -> None:
        self.entries.pop(organization_id, None)


class CorrectionLearning(BaseModel):
    """Term changes caused by one correction"""
    boosted: List[str] = []
    penalized: List[str] = []
    learned_variations: Dict[str, List[str]] = {}
    auto_learned: List[str] = []


class VocabularyService:
    """Organization vocabulary: management, enhancement and learning"""

    def __init__(
        self,
        store: PipelineStore,
        cache: Optional[VocabularyCache] = None,
        matcher: Optional[VocabularyMatcher] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.config = config or default_settings
        self.cache = cache or VocabularyCache(ttl=self.config.VOCABULARY_CACHE_TTL)
        self.matcher = matcher or VocabularyMatcher(self.config)

    # Term management

    async def get_active_terms(self, organization_id: str) -> List[VocabularyTermRead]:
        terms = self.cache.get(organization_id)
        if terms is None:
            terms = await self.store.list_terms(organization_id)
            self.cache.set(organization_id, terms)
        return terms

    async def list_terms(
        self,
        organization_id: str,
        category: Optional[TermCategory] = None,
        include_inactive: bool = False,
    ) -> List[VocabularyTermRead]:
        terms = await self.store.list_terms(organization_id, include_inactive=include_inactive)
        if category is not None:
            terms = [t for t in terms if t.category == category]
        return sorted(terms, key=lambda t: (-t.usage_count, t.term))

    async def get_term(self, organization_id: str, term_id: str) -> VocabularyTermRead:
        """
        Raises:
            ResourceNotFoundError: If the term does not exist in the organization
        """
        term = await self.store.get_term(term_id)
        if term is None or term.organization_id != organization_id:
            raise ResourceNotFoundError("VocabularyTerm", term_id)
        return term

    async def add_term(self, organization_id: str, obj_in: VocabularyTermCreate) -> VocabularyTermRead:
        """
        Add a term to an organization's vocabulary

        Raises:
            ValidationError: If an active term with the same text exists
        """
        existing = await self.store.list_terms(organization_id)
        key = normalize_text(obj_in.term)
        if any(normalize_text(t.term) == key for t in existing):
            raise ValidationError(f"Term '{obj_in.term}' already exists", code="duplicate_term")

        obj_in = obj_in.model_copy(update={
            "term": obj_in.term.strip(),
            "variations": _clean_list(obj_in.variations),
            "context_hints": _clean_list(obj_in.context_hints),
        })
        term = await self.store.create_term(organization_id, obj_in)
        self.cache.invalidate(organization_id)
        logger.info(f"Added vocabulary term '{term.term}' for organization {organization_id}")
        return term

    async def update_term(self, term_id: str, obj_in: VocabularyTermUpdate) -> VocabularyTermRead:
        fields = obj_in.model_dump(exclude_unset=True)
        for name in ("variations", "context_hints"):
            if fields.get(name) is not None:
                fields[name] = _clean_list(fields[name])
        term = await self.store.update_term(term_id, fields)
        if term is None:
            raise ResourceNotFoundError("VocabularyTerm", term_id)
        self.cache.invalidate(term.organization_id)
        return term

    async def delete_term(self, term_id: str) -> VocabularyTermRead:
        """Soft-delete a term"""
        term = await self.store.deactivate_term(term_id)
        if term is None:
            raise ResourceNotFoundError("VocabularyTerm", term_id)
        self.cache.invalidate(term.organization_id)
        logger.info(f"Deactivated vocabulary term {term_id}")
        return term

    async def seed_defaults(self, organization_id: str, language: str = "hu") -> int:
        """Add the default business terms missing from an organization"""
        existing = {normalize_text(t.term) for t in await self.store.list_terms(organization_id)}
        added = 0
        for category, entries in DEFAULT_TERMS.get(language, {}).items():
            for entry in entries:
                if normalize_text(entry["term"]) in existing:
                    continue
                await self.store.create_term(organization_id, VocabularyTermCreate(
                    term=entry["term"],
                    variations=entry.get("variations", []),
                    context_hints=entry.get("context_hints", []),
                    phonetic_hint=entry.get("phonetic_hint"),
                    category=category,
                    language=language,
                    confidence_score=self.config.VOCABULARY_DEFAULT_CONFIDENCE,
                    source=TermSource.DEFAULT,
                ))
                added += 1
        self.cache.invalidate(organization_id)
        logger.info(f"Seeded {added} default {language} terms for organization {organization_id}")
        return added

    async def import_csv(
        self,
        organization_id: str,
        content: str,
        default_category: TermCategory = TermCategory.CUSTOM,
        language: str = "hu",
    ) -> List[VocabularyTermRead]:
        """
        Import terms from CSV

        Rows whose term already exists are updated in place; blank terms are
        skipped.

        Raises:
            ValidationError: If the CSV has no term column or a row is invalid
        """
        reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
        if not reader.fieldnames or "term" not in [f.strip().lower() for f in reader.fieldnames]:
            raise ValidationError("CSV must have a 'term' column", code="invalid_csv")

        existing = {normalize_text(t.term): t for t in await self.store.list_terms(organization_id)}
        imported = []
        for line_no, raw in enumerate(reader, start=2):
            row = {(k or "").strip().lower(): (v or "").strip() for k, v in raw.items()}
            if not row.get("term"):
                continue
            try:
                data = {
                    "term": row["term"],
                    "variations": _split(row.get("variations")),
                    "context_hints": _split(row.get("context_hints") or row.get("context")),
                    "phonetic_hint": row.get("phonetic_hint") or row.get("phonetic") or None,
                    "category": TermCategory(row["category"]) if row.get("category") else default_category,
                    "language": language,
                }
                if row.get("usage_count"):
                    data["usage_count"] = int(row["usage_count"])
                if row.get("confidence_score"):
                    data["confidence_score"] = float(row["confidence_score"])
            except ValueError as e:
                raise ValidationError(f"Invalid CSV row {line_no}: {e}", code="invalid_csv") from e

            current = existing.get(normalize_text(data["term"]))
            if current is not None:
                term = await self.store.update_term(current.id, data)
            else:
                term = await self.store.create_term(organization_id, VocabularyTermCreate(**data))
            existing[normalize_text(term.term)] = term
            imported.append(term)

        self.cache.invalidate(organization_id)
        logger.info(f"Imported {len(imported)} vocabulary terms for organization {organization_id}")
        return imported

    async def export_csv(self, organization_id: str, category: Optional[TermCategory] = None) -> str:
        terms = await self.list_terms(organization_id, category=category)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for term in terms:
            writer.writerow([
                term.term,
                ";".join(term.variations),
                term.category.value,
                term.phonetic_hint or "",
                ";".join(term.context_hints),
                term.usage_count,
                term.confidence_score,
            ])
        return buffer.getvalue()

    # Enhancement

    async def enhance(
        self,
        organization_id: str,
        segments: Sequence[TranscriptSegment],
        context_hints: Sequence[str] = (),
        language: str = "hu",
    ) -> EnhancementResult:
        """
        Apply organization vocabulary to transcript segments

        Every accepted match (including exact, unchanged ones) counts as a
        confirmed use of its term.
        """
        terms = await self.get_active_terms(organization_id)
        if not terms:
            return EnhancementResult(segments=list(segments), matches=[])

        result = self.matcher.enhance_segments(segments, terms, context_hints, language)

        confirmed = Counter(m.term_id for m in result.matches if m.accepted)
        for term_id, uses in sorted(confirmed.items()):
            await self.store.adjust_term(
                term_id,
                self.config.VOCABULARY_CONFIDENCE_BOOST,
                usage_increment=uses,
                floor=self.config.VOCABULARY_CONFIDENCE_FLOOR,
            )
        if confirmed:
            self.cache.invalidate(organization_id)

        logger.debug(
            f"Vocabulary enhancement for {organization_id}: {len(result.matches)} matches, "
            f"{len(result.replacements)} replacements"
        )
        return result

    # Learning

    async def learn_from_correction(
        self, organization_id: str, original_text: str, corrected_text: str
    ) -> CorrectionLearning:
        """
        Adjust term confidence from a human correction

        A term present in both texts was recognized and is boosted. A term in
        only one of them was missed or wrongly inserted and is penalized.
        When the correction introduced a term, phonetically close words of the
        original are learned as its variations.
        """
        outcome = CorrectionLearning()
        original_words = set(words(original_text))
        corrected_words = set(words(corrected_text))
        config = self.config

        for term in await self.store.list_terms(organization_id):
            forms = [term.term] + list(term.variations)
            in_original = any(contains_phrase(original_text, form) for form in forms)
            in_corrected = any(contains_phrase(corrected_text, form) for form in forms)

            if in_original and in_corrected:
                await self.store.adjust_term(
                    term.id, config.VOCABULARY_CONFIDENCE_BOOST, usage_increment=1,
                    floor=config.VOCABULARY_CONFIDENCE_FLOOR,
                )
                outcome.boosted.append(term.id)
            elif in_original or in_corrected:
                await self.store.adjust_term(
                    term.id, -config.VOCABULARY_CONFIDENCE_PENALTY, usage_increment=1 if in_corrected else 0,
                    floor=config.VOCABULARY_CONFIDENCE_FLOOR,
                )
                outcome.penalized.append(term.id)

            if in_corrected and not in_original:
                known = {normalize_text(v) for v in forms}
                learned = sorted(
                    word for word in original_words - corrected_words
                    if word not in known
                    and phonetic_similarity(word, term.term, term.language)
                    >= config.VOCABULARY_VARIATION_LEARNING_THRESHOLD
                )
                if learned:
                    await self.store.update_term(term.id, {"variations": list(term.variations) + learned})
                    outcome.learned_variations[term.id] = learned

        if config.VOCABULARY_AUTO_LEARNING_ENABLED:
            for suggestion in await self.auto_learn(organization_id):
                outcome.auto_learned.append(suggestion.term)

        self.cache.invalidate(organization_id)
        return outcome

    async def suggestions(self, organization_id: str) -> List[TermSuggestion]:
        """
        Candidate terms mined from corrections

        A word qualifies when corrections keep introducing it (it is in the
        corrected text but not the original), it is long enough, and no known
        term or variation covers it. Confidence is the share of corrections
        containing the word in which the correction introduced it.
        """
        config = self.config
        corrections = await self.store.list_corrections(organization_id)
        known = set()
        for term in await self.store.list_terms(organization_id, include_inactive=True):
            for form in [term.term] + list(term.variations):
                known.update(words(form))

        introduced: Counter = Counter()
        appearances: Counter = Counter()
        examples: Dict[str, List[str]] = defaultdict(list)
        for record in corrections:
            original = set(words(record.original_text))
            corrected = set(words(record.corrected_text))
            for word in corrected:
                if len(word) < config.VOCABULARY_SUGGESTION_MIN_LENGTH or word.isdigit() or word in known:
                    continue
                appearances[word] += 1
                if word not in original:
                    introduced[word] += 1
                    if len(examples[word]) < 3:
                        examples[word].append(record.corrected_text)

        suggestions = [
            TermSuggestion(
                term=word,
                frequency=count,
                confidence=round(count / appearances[word], 4),
                examples=examples[word],
            )
            for word, count in introduced.items()
            if count >= config.VOCABULARY_SUGGESTION_MIN_FREQUENCY
        ]
        suggestions.sort(key=lambda s: (-s.frequency, -s.confidence, s.term))
        return suggestions

    async def auto_learn(self, organization_id: str, language: str = "hu") -> List[TermSuggestion]:
        """Add strong suggestions as learned terms"""
        learned = []
        for suggestion in await self.suggestions(organization_id):
            if (
                suggestion.frequency >= self.config.VOCABULARY_AUTO_LEARN_MIN_FREQUENCY
                and suggestion.confidence >= self.config.VOCABULARY_AUTO_LEARN_MIN_CONFIDENCE
            ):
                await self.store.create_term(organization_id, VocabularyTermCreate(
                    term=suggestion.term,
                    category=TermCategory.CUSTOM,
                    language=language,
                    confidence_score=self.config.VOCABULARY_DEFAULT_CONFIDENCE,
                    source=TermSource.LEARNED,
                ))
                learned.append(suggestion.model_copy(update={"auto_learned": True}))
                logger.info(f"Auto-learned vocabulary term '{suggestion.term}' for {organization_id}")
        if learned:
            self.cache.invalidate(organization_id)
        return learned


def _split(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return _clean_list(value.split(";"))


def _clean_list(values: Sequence[str]) -> List[str]:
    seen = []
    for value in values:
        value = value.strip()
        if value and value not in seen:
            seen.append(value)
    return seen
