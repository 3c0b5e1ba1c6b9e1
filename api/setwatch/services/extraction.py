from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Literal

CURRENT_RECONCILIATION_VERSION = "1.2.0"

# Token shape shared by every version: 3-7 ASCII digits with an optional 1-2 digit variant suffix.
_BASE_TOKEN = r"\d{3,7}(?:-\d{1,2})?\b"

IDENTIFIER_PATTERNS: dict[str, re.Pattern[str]] = {
    "1.0.0": re.compile(r"\b" + _BASE_TOKEN, re.ASCII),
    # "100%" is a percentage, not a set number.
    "1.1.0": re.compile(r"\b" + _BASE_TOKEN + r"(?!%)", re.ASCII),
    # "9.344" is a decimal; its fractional part is not a set number.
    "1.2.0": re.compile(r"(?<!\d\.)\b" + _BASE_TOKEN + r"(?!%)", re.ASCII),
}

Condition = Literal["new", "used", "unknown"]

_PIECE_UNIT = r"(?:pieces?|pcs?|bricks?)"
_MINIFIG_UNIT = r"(?:minifigs?|figs?|minifigures?)"
_ESTIMATE_PREFIX = r"(?:~|\b(?:approx\.?|approximately|about|around|roughly|est\.?|estimated))"
_ESTIMATE_SUFFIX = r"(?:~|(?:approx\.?|approximately|about|around|roughly|est\.?|estimated)(?!\w))"


def _count_patterns(unit: str) -> tuple[tuple[re.Pattern[str], ...], tuple[re.Pattern[str], ...]]:
    estimated = (
        re.compile(rf"{_ESTIMATE_PREFIX}\s*(\d+)\s*{unit}\b", re.IGNORECASE | re.ASCII),
        re.compile(rf"\b(\d+)\s*{unit}\s*{_ESTIMATE_SUFFIX}", re.IGNORECASE | re.ASCII),
    )
    stated = (
        re.compile(rf"\b(\d+)\s*{unit}\b", re.IGNORECASE | re.ASCII),
        re.compile(rf"\b{unit}\s*:\s*(\d+)", re.IGNORECASE | re.ASCII),
    )
    return estimated, stated


_PIECE_PATTERNS = _count_patterns(_PIECE_UNIT)
_MINIFIG_PATTERNS = _count_patterns(_MINIFIG_UNIT)

_NEW_CONDITION = re.compile(r"\b(?:brand new|new|sealed|unopened|unused|mint)\b", re.IGNORECASE)
_USED_CONDITION = re.compile(
    r"\b(?:used|pre-owned|preowned|second hand|second-hand|previously owned|worn|played with)\b",
    re.IGNORECASE,
)


class UnknownReconciliationVersionError(ValueError):
    """Raised when no extraction pattern is registered for a reconciliation version."""

    def __init__(self, version: str) -> None:
        super().__init__(f"unknown reconciliation version: {version}")
        self.version = version


@dataclass(slots=True, frozen=True)
class CountExtraction:
    count: int
    estimated: bool


@dataclass(slots=True, frozen=True)
class ListingExtraction:
    piece_count: int | None
    piece_count_estimated: bool
    minifig_count: int | None
    minifig_count_estimated: bool
    condition: Condition


def supported_versions() -> tuple[str, ...]:
    return tuple(IDENTIFIER_PATTERNS)


def get_identifier_pattern(version: str) -> re.Pattern[str]:
    try:
        return IDENTIFIER_PATTERNS[version]
    except KeyError as exc:
        raise UnknownReconciliationVersionError(version) from exc


def extract_identifiers(text: str | None, version: str = CURRENT_RECONCILIATION_VERSION) -> tuple[str, ...]:
    """Return candidate set numbers in first-occurrence order without duplicates.

    Pure function of ``(text, version)``: the same inputs always yield the same tuple.
    """
    pattern = get_identifier_pattern(version)
    if not text:
        return ()
    # dict preserves insertion order, which keeps the first occurrence of each token.
    seen: dict[str, None] = {}
    for match in pattern.finditer(text):
        seen.setdefault(match.group(0), None)
    return tuple(seen)


def _extract_count(
    text: str | None,
    patterns: tuple[tuple[re.Pattern[str], ...], tuple[re.Pattern[str], ...]],
) -> CountExtraction | None:
    if not text:
        return None
    estimated_patterns, stated_patterns = patterns
    for estimated, group in ((True, estimated_patterns), (False, stated_patterns)):
        for pattern in group:
            match = pattern.search(text)
            if match is None:
                continue
            count = int(match.group(1))
            if count > 0:
                return CountExtraction(count=count, estimated=estimated)
    return None


def extract_piece_count(text: str | None) -> CountExtraction | None:
    return _extract_count(text, _PIECE_PATTERNS)


def extract_minifig_count(text: str | None) -> CountExtraction | None:
    return _extract_count(text, _MINIFIG_PATTERNS)


def extract_condition(text: str | None) -> Condition:
    if not text:
        return "unknown"
    if _NEW_CONDITION.search(text):
        return "new"
    if _USED_CONDITION.search(text):
        return "used"
    return "unknown"


def extract_all(text: str | None) -> ListingExtraction:
    pieces = extract_piece_count(text)
    minifigs = extract_minifig_count(text)
    return ListingExtraction(
        piece_count=pieces.count if pieces else None,
        piece_count_estimated=pieces.estimated if pieces else False,
        minifig_count=minifigs.count if minifigs else None,
        minifig_count_estimated=minifigs.estimated if minifigs else False,
        condition=extract_condition(text),
    )


def build_listing_text(*parts: str | None) -> str:
    return " ".join(part for part in parts if part)
