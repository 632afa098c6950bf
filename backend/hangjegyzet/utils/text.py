import re
import unicodedata
from typing import List, Sequence, Tuple

import numpy as np

_PUNCTUATION_RE = re.compile(r"[.,!?;:]")
_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\w+(?:[-']\w+)*", re.UNICODE)
_NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)*")


def normalize_text(text: str) -> str:
    """Lowercase, strip sentence punctuation and collapse whitespace"""
    text = _PUNCTUATION_RE.sub("", text.lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def word_spans(text: str) -> List[Tuple[str, int, int]]:
    """Words with their character offsets"""
    return [(m.group(0), m.start(), m.end()) for m in _WORD_RE.finditer(text)]


def words(text: str) -> List[str]:
    return [w.lower() for w in _WORD_RE.findall(text)]


def numbers(text: str) -> List[str]:
    return _NUMBER_RE.findall(text)


def levenshtein(a: Sequence, b: Sequence) -> int:
    """
    Edit distance between two sequences (strings or token lists)

    Args:
        a: Reference sequence
        b: Hypothesis sequence

    Returns:
        Minimum number of substitutions, insertions and deletions
    """
    if len(a) == 0:
        return len(b)
    if len(b) == 0:
        return len(a)

    previous = np.arange(len(b) + 1, dtype=np.int32)
    for i in range(1, len(a) + 1):
        current = np.empty_like(previous)
        current[0] = i
        for j in range(1, len(b) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
        previous = current
    return int(previous[-1])


def word_error_rate(reference: str, hypothesis: str) -> float:
    """WER on normalized text, capped at 1"""
    ref = normalize_text(reference).split()
    hyp = normalize_text(hypothesis).split()
    if not ref:
        return 0.0 if not hyp else 1.0
    return min(1.0, levenshtein(ref, hyp) / len(ref))


def char_error_rate(reference: str, hypothesis: str) -> float:
    """CER on normalized text, capped at 1"""
    ref = normalize_text(reference)
    hyp = normalize_text(hypothesis)
    if not ref:
        return 0.0 if not hyp else 1.0
    return min(1.0, levenshtein(ref, hyp) / len(ref))


def similarity(a: str, b: str) -> float:
    """1 - normalized edit distance"""
    if not a and not b:
        return 1.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein(a, b) / longest
