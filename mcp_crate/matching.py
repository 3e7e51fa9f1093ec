"""
Track Matching Engine

Fuzzy comparison of track lists coming from different catalogs (the DJ
collection, a streaming server playlist, a release tracklist). Text only:
artist and title are normalized, compared by Levenshtein similarity and
combined into a 0-100 confidence.

Matching is greedy per source track, not a global assignment.
"""

import math
import re
from typing import List, Optional, Tuple

from loguru import logger
from rapidfuzz.distance import Levenshtein

from .models import ComparisonResult, ComparisonStats, MatchResult, NormalizedTrack

DEFAULT_THRESHOLD = 70
TITLE_WEIGHT = 0.6
ARTIST_WEIGHT = 0.4
CONTAINMENT_BONUS = 10

_PARENTHETICAL = re.compile(r"\s*\([^()]*\)")
_BRACKETED = re.compile(r"\s*\[[^\[\]]*\]")
_FEATURING = re.compile(r"\b(feat\.?|ft\.?|featuring)\b.*", re.IGNORECASE)
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _fold(value: str) -> str:
    return _WHITESPACE.sub(" ", (value or "").lower()).strip()


def normalize_string(value: str) -> str:
    """
    Normalize artist/title text for comparison.

    Lowercases, drops (...) and [...] groups (innermost first, until none
    are left), cuts "feat./ft./featuring" and everything after it, removes
    punctuation and collapses whitespace.
    """
    if not value:
        return ""

    s = value.lower()
    while True:
        stripped = _BRACKETED.sub("", _PARENTHETICAL.sub("", s))
        if stripped == s:
            break
        s = stripped
    s = _FEATURING.sub("", s)
    s = _NON_WORD.sub("", s)
    return _WHITESPACE.sub(" ", s).strip()


def similarity(a: str, b: str) -> int:
    """Similarity percentage (0-100) from the Levenshtein distance."""
    if a == b:
        return 100
    if not a or not b:
        return 0
    distance = Levenshtein.distance(a, b)
    return _round_half_up((1 - distance / max(len(a), len(b))) * 100)


def _contains(a: str, b: str) -> bool:
    return bool(a and b) and (a in b or b in a)


def calculate_match_confidence(track1: NormalizedTrack, track2: NormalizedTrack) -> int:
    artist1 = normalize_string(track1.artist)
    artist2 = normalize_string(track2.artist)
    title1 = normalize_string(track1.title)
    title2 = normalize_string(track2.title)

    # nothing left of a title to compare
    if not title1 or not title2:
        return 0

    if artist1 == artist2 and title1 == title2:
        return 100

    # Titles are more distinctive than artist names
    weighted = similarity(title1, title2) * TITLE_WEIGHT + similarity(artist1, artist2) * ARTIST_WEIGHT

    bonus = 0
    if _contains(artist1, artist2):
        bonus += CONTAINMENT_BONUS
    if _contains(title1, title2):
        bonus += CONTAINMENT_BONUS

    return min(100, _round_half_up(weighted + bonus))


def find_best_match(
    track: NormalizedTrack,
    candidates: List[NormalizedTrack],
    threshold: int = DEFAULT_THRESHOLD,
) -> Tuple[Optional[NormalizedTrack], int]:
    """
    Highest-scoring candidate for ``track`` if it reaches ``threshold``.

    Ties go to the first candidate that reached the best score.
    """
    best: Optional[NormalizedTrack] = None
    best_confidence = 0

    for candidate in candidates:
        confidence = calculate_match_confidence(track, candidate)
        if confidence > best_confidence:
            best_confidence = confidence
            best = candidate

    if best is not None and best_confidence >= threshold:
        return best, best_confidence
    return None, 0


def match_type(source: NormalizedTrack, target: NormalizedTrack, confidence: int) -> str:
    if (
        confidence == 100
        and _fold(source.original_artist) == _fold(target.original_artist)
        and _fold(source.original_title) == _fold(target.original_title)
    ):
        return "exact"
    return "fuzzy"


def compare_tracks(
    source_tracks: List[NormalizedTrack],
    target_tracks: List[NormalizedTrack],
    threshold: int = DEFAULT_THRESHOLD,
) -> ComparisonResult:
    """Partition two catalogs into matched pairs and the tracks each side lacks."""
    matched: List[MatchResult] = []
    missing_from_target: List[NormalizedTrack] = []
    matched_target_ids = set()

    for source in source_tracks:
        target, confidence = find_best_match(source, target_tracks, threshold)
        if target is None:
            missing_from_target.append(source)
            continue
        matched.append(MatchResult(
            source_track=source,
            target_track=target,
            confidence=confidence,
            match_type=match_type(source, target, confidence),
        ))
        matched_target_ids.add(target.id)

    missing_from_source = [t for t in target_tracks if t.id not in matched_target_ids]

    logger.info(
        f"Compared {len(source_tracks)} source tracks against {len(target_tracks)} targets: "
        f"{len(matched)} matched, {len(missing_from_target)} missing from target, "
        f"{len(missing_from_source)} missing from source"
    )

    return ComparisonResult(
        matched=matched,
        missing_from_target=missing_from_target,
        missing_from_source=missing_from_source,
        stats=ComparisonStats(
            total_source=len(source_tracks),
            total_target=len(target_tracks),
            matched_count=len(matched),
            missing_from_target_count=len(missing_from_target),
            missing_from_source_count=len(missing_from_source),
        ),
    )


# ---------------------------------------------------------------------------
# Search query cleanup
# ---------------------------------------------------------------------------

_QUERY_PARENTHETICAL = re.compile(r"\s*[(\[].*?[)\]]")
_QUERY_FEATURING = re.compile(r"\s+(?:ft\.|feat\.|featuring)\s+.*$", re.IGNORECASE)
_APOSTROPHE_SUFFIX = re.compile(r"(\w+)'\w+")


def clean_search_query(query: str) -> str:
    """
    Reduce "Artist - Title (feat. X)" style text to a store-friendly search.

    >>> clean_search_query("Don't Stop (Radio Edit) feat. Someone")
    'Don Stop'
    """
    cleaned = _QUERY_PARENTHETICAL.sub("", query)
    cleaned = _QUERY_FEATURING.sub("", cleaned)
    cleaned = cleaned.replace("-", " ")
    # "You're" -> "You", "Don't" -> "Don"
    cleaned = _APOSTROPHE_SUFFIX.sub(r"\1", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()
