"""
Comment categorizer

Buckets the distinct free-text track comments of a collection so they can be
reviewed and cleaned up in bulk. Heuristic by nature: the contract is a
deterministic result for a given set of comments, not semantic accuracy.
"""

import re
from typing import Iterable, List

from .models import CategorizedComments, CombinationComment

GENRE_KEYWORDS = [
    "house", "hip hop", "hip-hop", "hiphop", "rap", "r&b", "rnb", "soul", "funk",
    "jazz", "disco", "electronic", "electro", "techno", "drum and bass", "dnb",
    "dubstep", "garage", "grime", "afrobeat", "afrobeats", "reggae", "dancehall",
    "latin", "salsa", "cumbia", "brazilian", "bossa", "downtempo", "chillout",
    "lounge", "ambient", "trap", "drill", "boom bap", "breaks", "breakbeat",
    "booty", "bass", "nudisco", "nu-disco", "italo", "boogie", "pop", "rock",
    "indie", "alternative", "world", "afro", "tribal", "minimal", "progressive",
    "trance", "acid", "dub", "deep", "soulful", "classic", "vocal", "instrumental",
    "remix", "edit", "bootleg", "mashup",
]

GENRE_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(g) for g in GENRE_KEYWORDS) + r")\b",
    re.IGNORECASE,
)
# "[House] [Deep]"
BRACKET_STYLE_PATTERN = re.compile(r"^\[.+\]\s*\[.+\]$")
# "4A - 128", "8Am - 138 -", "128 - 4A"
KEY_BPM_PATTERN = re.compile(
    r"^[0-9]{1,2}[ABab]m?\s*[-–]\s*[0-9]{1,3}(\s*[-–])?$"
    r"|^[0-9]{1,3}\s*[-–]\s*[0-9]{1,2}[ABab]m?$"
)
URL_PATTERN = re.compile(
    r"https?://|www\.|\.com|\.net|\.org|\.info|\.io|\.fm|\.me|\.co\.uk"
    r"|bandcamp|soundcloud|myspace|facebook|twitter|instagram|youtube"
    r"|blogspot|tumblr|beatport|whitelabel|official\.fm",
    re.IGNORECASE,
)
HEX_PATTERN = re.compile(r"^[\s0-9A-Fa-f]{40,}$")

BUCKETS = ("key_bpm", "genre", "url", "hex")


def comment_categories(comment: str) -> List[str]:
    """Categories a single comment falls into, in a fixed order."""
    c = comment.strip()
    if not c:
        return []

    categories = []
    if KEY_BPM_PATTERN.search(c):
        categories.append("key_bpm")
    if URL_PATTERN.search(c):
        categories.append("url")
    if HEX_PATTERN.search(c):
        categories.append("hex")
    # a hash is never also a genre
    if "hex" not in categories and (GENRE_PATTERN.search(c) or BRACKET_STYLE_PATTERN.search(c)):
        categories.append("genre")
    return categories


def categorize_comments(comments: Iterable[str]) -> CategorizedComments:
    """
    Sort comments into buckets.

    The original (untrimmed) string is stored so it can be matched exactly
    by a later bulk update. Blank comments are dropped; comments in two or
    more categories go to ``combination`` only.
    """
    result = CategorizedComments()

    for comment in comments:
        if not comment.strip():
            continue
        categories = comment_categories(comment)
        if not categories:
            result.other.append(comment)
        elif len(categories) == 1:
            getattr(result, categories[0]).append(comment)
        else:
            result.combination.append(CombinationComment(comment=comment, categories=categories))

    for bucket in BUCKETS + ("other",):
        getattr(result, bucket).sort()
    result.combination.sort(key=lambda c: c.comment)
    return result
