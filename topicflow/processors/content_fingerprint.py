"""
Content normalization, fingerprints and word shingles
"""
import hashlib
from datetime import datetime
from typing import FrozenSet, Iterable, Optional

from topicflow.utils.constants import ContentConstants, DedupConstants
from topicflow.utils.models import CandidateItem


def normalize_content(text: str) -> str:
    """Case-fold, strip markup and punctuation, and collapse whitespace."""
    if not text:
        return ""
    text = ContentConstants.HTML_TAG_PATTERN.sub(" ", text)
    text = ContentConstants.UNICODE_CLEANING_PATTERN.sub(" ", text)
    text = text.casefold()
    text = ContentConstants.PUNCTUATION_PATTERN.sub(" ", text)
    # \w keeps underscores; treat them as separators too
    text = text.replace("_", " ")
    return ContentConstants.EXCESSIVE_WHITESPACE_PATTERN.sub(" ", text).strip()


def fingerprint(text: str) -> str:
    """Stable hex digest of the normalized text."""
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def _stable_hash(value: str) -> int:
    # builtin hash() is salted per process, shingles are persisted
    return int.from_bytes(hashlib.blake2b(value.encode("utf-8"), digest_size=8).digest(), "big", signed=True)


def shingles(text: str, size: int = DedupConstants.SHINGLE_SIZE) -> FrozenSet[int]:
    """Hashed word k-grams of the normalized text.

    Texts shorter than ``size`` words produce a single shingle covering the
    whole text, so short items still compare.
    """
    tokens = normalize_content(text).split()
    if not tokens:
        return frozenset()
    if len(tokens) < size:
        return frozenset({_stable_hash(" ".join(tokens))})
    return frozenset(
        _stable_hash(" ".join(tokens[i:i + size]))
        for i in range(len(tokens) - size + 1)
    )


def jaccard(a: Iterable[int], b: Iterable[int]) -> float:
    """Jaccard overlap of two shingle sets, 0.0 when either is empty."""
    a, b = set(a), set(b)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def build_candidate(
    topic_id: int,
    source_id: int,
    fetched_at: datetime,
    content: str,
    title: str = "",
    item_id: Optional[int] = None,
    shingle_size: int = DedupConstants.SHINGLE_SIZE,
) -> CandidateItem:
    """Derive a CandidateItem from raw text.

    Only the body is fingerprinted, so the same story syndicated under
    different headlines still collides. An empty body falls back to the title.
    """
    body = content if normalize_content(content) else title
    return CandidateItem(
        id=item_id,
        topic_id=topic_id,
        source_id=source_id,
        fetched_at=fetched_at,
        fingerprint=fingerprint(body),
        shingles=shingles(body, shingle_size),
        title=title,
    )


def contains_keyword(text: str, keywords: Iterable[str]) -> Optional[str]:
    """Return the first keyword that appears as a whole word/phrase in text."""
    haystack = f" {normalize_content(text)} "
    for keyword in keywords:
        needle = normalize_content(keyword)
        if needle and f" {needle} " in haystack:
            return keyword
    return None
