"""Language-aware phonetic keys for vocabulary matching"""
import re

from hangjegyzet.utils.text import similarity, strip_accents

# Order matters: trigraphs before digraphs
_HU_RULES = [
    ("dzs", "J"),
    ("cs", "C"),
    ("sz", "S"),
    ("zs", "Z"),
    ("gy", "G"),
    ("ny", "N"),
    ("ty", "T"),
    ("ly", "j"),
    ("dz", "Z"),
    ("x", "ks"),
    ("w", "v"),
    ("q", "k"),
    ("ch", "C"),
]

_EN_RULES = [
    ("tch", "C"),
    ("sch", "sk"),
    ("ph", "f"),
    ("gh", "g"),
    ("ck", "k"),
    ("qu", "kv"),
    ("th", "t"),
    ("sh", "S"),
    ("ch", "C"),
    ("wh", "v"),
    ("w", "v"),
    ("x", "ks"),
    ("z", "s"),
    ("q", "k"),
]

_SOFT_C_RE = re.compile(r"c(?=[eiy])")
_NON_ALNUM_RE = re.compile(r"[^0-9A-Za-z]")
_REPEAT_RE = re.compile(r"(.)\1+")


def phonetic_key(text: str, language: str = "hu") -> str:
    """
    Reduce a word or phrase to a coarse phonetic key

    Accents are folded, language-specific digraphs collapse to single
    symbols, doubled letters are merged and non-letters dropped, so that
    "Szentgyörgyi" and "szent gyorgyi" share a key.

    Args:
        text: Word or phrase
        language: "hu" or "en"; other values use the Hungarian rules

    Returns:
        Phonetic key string
    """
    # Digraph symbols are uppercase, so fold case before applying rules
    value = strip_accents(text.lower())
    if language == "en":
        value = _SOFT_C_RE.sub("s", value)
        rules = _EN_RULES
    else:
        rules = _HU_RULES
    for pattern, replacement in rules:
        value = value.replace(pattern, replacement)
    if language == "en":
        value = value.replace("c", "k").replace("y", "i")
    value = _NON_ALNUM_RE.sub("", value)
    return _REPEAT_RE.sub(r"\1", value)


def phonetic_similarity(a: str, b: str, language: str = "hu") -> float:
    """Similarity of the phonetic keys of two strings, 0..1"""
    key_a = phonetic_key(a, language)
    key_b = phonetic_key(b, language)
    if not key_a or not key_b:
        return 0.0
    return similarity(key_a, key_b)
