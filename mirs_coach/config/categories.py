"""
Static MIRS category tables.

- CATEGORY_LABELS: category key -> human-readable label
- MIRS_CATEGORIES: category key -> rubric item names (exact phrases)
- SYNONYMS: category key -> regex trigger patterns (softer signals)

Declaration order is the match order used by the intention detector.
Loaded once at import; the mappings are read-only.
"""

from enum import Enum
from types import MappingProxyType
from typing import Mapping, Tuple


class MirsCategory(str, Enum):
    """MIRS rubric categories."""
    OPEN = "OPEN"
    GATH = "GATH"
    PERS = "PERS"
    SHARE = "SHARE"
    AGREE = "AGREE"
    CLOSE = "CLOSE"
    REL = "REL"


DEFAULT_CATEGORY = MirsCategory.OPEN

CATEGORY_LABELS: Mapping[MirsCategory, str] = MappingProxyType({
    MirsCategory.OPEN: "Opens the Discussion",
    MirsCategory.GATH: "Gathers Information",
    MirsCategory.PERS: "Understands the Patient's Perspective",
    MirsCategory.SHARE: "Shares Information",
    MirsCategory.AGREE: "Reaches Agreement",
    MirsCategory.CLOSE: "Provides Closure",
    MirsCategory.REL: "Builds a Relationship",
})

MIRS_CATEGORIES: Mapping[MirsCategory, Tuple[str, ...]] = MappingProxyType({
    MirsCategory.OPEN: (
        "introduces self",
        "elicits chief complaint",
        "reason for the visit",
    ),
    MirsCategory.GATH: (
        "agenda setting",
        "questioning skills",
        "narrative thread",
        "timeline",
        "summarizing",
        "transitional statements",
        "pacing of the interview",
        "verification of patient information",
    ),
    MirsCategory.PERS: (
        "patient's perspective",
        "impact of illness",
        "support systems",
        "acknowledges emotions",
    ),
    MirsCategory.SHARE: (
        "lack of jargon",
        "verifies patient understanding",
        "teach-back",
        "patient education",
    ),
    MirsCategory.AGREE: (
        "shared decision making",
        "encouragement of questions",
        "achieves a shared plan",
        "barriers to the plan",
    ),
    MirsCategory.CLOSE: (
        "closure",
        "follow-up arrangements",
        "final summary",
    ),
    MirsCategory.REL: (
        "rapport",
        "empathy",
        "nonverbal facilitation",
        "encourages participation",
    ),
})

SYNONYMS: Mapping[MirsCategory, Tuple[str, ...]] = MappingProxyType({
    MirsCategory.OPEN: (
        r"\bintroduc(e|ed|es|ing|tion)\b",
        r"\bgreet(ed|ing|s)?\b",
        r"\bopening\b",
    ),
    MirsCategory.GATH: (
        r"\bhistory\b",
        r"\bopen[- ]ended\b",
        r"\bclosed[- ]ended\b",
        r"\bsymptoms?\b",
    ),
    MirsCategory.PERS: (
        r"\bworr(y|ied|ies)\b",
        r"\bfeel(s|ing|ings)?\b",
        r"\bperspective\b",
        r"\bexpectations?\b",
    ),
    MirsCategory.SHARE: (
        r"\bexplain(ed|ing|s)?\b",
        r"\bjargon\b",
        r"\bdiagnos(is|es|ed)\b",
    ),
    MirsCategory.AGREE: (
        r"\btreatment options?\b",
        r"\bplan of care\b",
        r"\bconsent\b",
        r"\bshared decision\b",
    ),
    MirsCategory.CLOSE: (
        r"\bwrap(ped|ping)? up\b",
        r"\bnext steps?\b",
        r"\bgoodbye\b",
        r"\bend of the (visit|interview)\b",
    ),
    MirsCategory.REL: (
        r"\btrust\b",
        r"\beye contact\b",
        r"\bbody language\b",
        r"\bwarm(th)?\b",
    ),
})


def category_label(category: MirsCategory) -> str:
    """Human-readable label for a category, falling back to its key."""
    return CATEGORY_LABELS.get(category, category.value)


def parse_category(value) -> MirsCategory:
    """
    Parse a category key ("gath", " GATH ") into a MirsCategory.

    Raises:
        ValueError: If the key is not part of the enumeration
    """
    if isinstance(value, MirsCategory):
        return value
    return MirsCategory(str(value).strip().upper())
