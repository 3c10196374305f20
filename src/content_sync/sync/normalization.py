"""
Field normalization applied to inbound sync payloads.

Categorical values are matched against a fixed allow-list and free text
destined for rich-text fields is wrapped into the block structure the
content store expects.
"""

import re
from typing import Any, Dict, List, Optional, Sequence

from ..utils.logging import get_logger


logger = get_logger("content-sync.normalization")


INDUSTRY_PARTNERSHIPS: tuple = (
    "Financial Services",
    "Technology Consulting",
    "Cybersecurity",
    "Digital Transformation",
    "Data Analytics",
    "Enterprise Software",
    "Healthcare Information Systems",
    "Government & Public Sector",
    "Retail Technology",
    "Supply Chain & Logistics",
    "Fintech",
    "Education Technology",
    "Manufacturing Systems",
    "Professional Services",
    "Business Process Outsourcing",
    "Cloud Services",
    "E-commerce",
    "Telecommunications",
    "Intellectual Property & Digital Assets",
    "Business Intelligence",
)

COURSE_LEVELS: Dict[str, str] = {
    "Undergraduate 1st & 2nd year": "Undergraduate 1st & 2nd year",
    "Undergraduate penultimate & final year": "Undergraduate penultimate & final year",
    "Postgraduate": "Postgraduate",
    "Other": "Other",
}

_WHITESPACE = re.compile(r"\s+")


def match_category(value: str, allowed: Sequence[str]) -> Optional[str]:
    """
    Find the canonical spelling of ``value`` in ``allowed``.

    Tries an exact match, then a case-insensitive one, then a case-insensitive
    match with all whitespace removed. Returns None when nothing matches.
    """
    if value in allowed:
        return value

    folded = value.casefold()
    for candidate in allowed:
        if candidate.casefold() == folded:
            return candidate

    squashed = _WHITESPACE.sub("", value).casefold()
    for candidate in allowed:
        if _WHITESPACE.sub("", candidate).casefold() == squashed:
            return candidate

    return None


def normalize_industry_partnership(value: str) -> str:
    """Canonical industry partnership name; raises ValueError naming the bad value."""
    normalized = match_category(value, INDUSTRY_PARTNERSHIPS)
    if normalized is None:
        raise ValueError(f"Invalid target industry partnership: {value}")
    if normalized != value:
        logger.debug("category_normalized", received=value, normalized=normalized)
    return normalized


def map_course_level(level: str) -> str:
    return COURSE_LEVELS.get(level, level)


def text_to_blocks(text: Any) -> List[Dict[str, Any]]:
    """Wrap plain text into a single paragraph block; non-text yields no blocks."""
    if not text or not isinstance(text, str):
        return []

    return [
        {
            "type": "paragraph",
            "children": [
                {"type": "text", "text": text}
            ]
        }
    ]


def ensure_blocks(value: Any) -> Any:
    """Convert strings to blocks, leave already-structured values alone."""
    if isinstance(value, str) and value:
        return text_to_blocks(value)
    return value
