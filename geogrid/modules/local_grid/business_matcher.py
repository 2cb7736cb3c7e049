"""Business identity matching for inconsistently formatted listing names.

The scanner (locating the target in provider results) and the aggregator
(merging name variants across points) must use these same functions.
"""

import re

_QUOTE_MAP = str.maketrans({
    "‘": "'",
    "’": "'",
    "“": '"',
    "”": '"',
    "–": "-",
    "—": "-",
})

_SYNONYMS = (
    (re.compile(r"\bdentistry\b"), "dental"),
)

_ENTITY_SUFFIXES = re.compile(r"\b(?:llc|inc|pc|dds|dmd)\b")

# Apostrophes, hyphens and ampersands carry meaning in business names.
_PUNCTUATION = re.compile(r"[^\w\s'&-]")

_WHITESPACE = re.compile(r"\s+")

# Shorter names must exceed this length to match by containment.
MIN_PARTIAL_MATCH_LENGTH = 5


def normalize_business_name(name: str) -> str:
    """Normalize a business name for identity comparison.

    Examples:
        >>> normalize_business_name("Fielder Park Dentistry, P.C.")
        'fielder park dental'
        >>> normalize_business_name("Smile — Studio  LLC")
        'smile - studio'
    """
    text = (name or "").lower().translate(_QUOTE_MAP)
    text = _WHITESPACE.sub(" ", text)
    for pattern, replacement in _SYNONYMS:
        text = pattern.sub(replacement, text)
    # "p.c." only becomes a strippable token once the dots are gone
    text = re.sub(r"\b([a-z])\.([a-z])\.", r"\1\2", text)
    text = _ENTITY_SUFFIXES.sub("", text)
    text = _PUNCTUATION.sub("", text)
    text = _ENTITY_SUFFIXES.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def is_match(a: str, b: str) -> bool:
    """Return True if two listing names denote the same business.

    Names match when their normalized forms are equal, or when the shorter
    normalized form is contained in the longer one and is longer than
    ``MIN_PARTIAL_MATCH_LENGTH`` characters, so generic fragments such as
    "park" never match on their own.

    The heuristic is approximate: chains sharing a name can over-merge and
    heavily abbreviated listings can fail to merge.
    """
    norm_a = normalize_business_name(a)
    norm_b = normalize_business_name(b)
    if not norm_a or not norm_b:
        return False
    if norm_a == norm_b:
        return True

    shorter, longer = sorted((norm_a, norm_b), key=len)
    return len(shorter) > MIN_PARTIAL_MATCH_LENGTH and shorter in longer


def is_target_match(business_name: str, target_name: str) -> bool:
    """Decide whether an aggregated business row is the scan's target."""
    return is_match(business_name, target_name)
