"""
Duplicate resolution against a per-topic recent-content index
"""
import asyncio
import bisect
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Iterable, List, Optional, Tuple

from topicflow.processors.content_fingerprint import jaccard
from topicflow.utils.constants import DedupConstants
from topicflow.utils.logger import logger
from topicflow.utils.models import CandidateItem, Resolution, Verdict, normalize_datetime


def order_key(item: CandidateItem) -> Tuple[datetime, int]:
    """Arrival order: fetch timestamp, then item id for ties."""
    return (normalize_datetime(item.fetched_at), item.id if item.id is not None else -1)


class RecentContentIndex:
    """Sliding window of recently accepted items for one topic.

    Entries are kept in arrival order. Lookups for an item only ever see
    entries that arrived strictly before it and within ``window_days`` of it,
    so a duplicate is always judged against earlier content.
    """

    def __init__(self, window_days: int = DedupConstants.WINDOW_DAYS, max_items: int = DedupConstants.MAX_WINDOW_ITEMS):
        self.window = timedelta(days=window_days)
        self.max_items = max_items
        self._keys: List[Tuple[datetime, int]] = []
        self._entries: List[CandidateItem] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item_id: int) -> bool:
        return any(e.id == item_id for e in self._entries)

    def add(self, item: CandidateItem) -> None:
        if item.id is not None and item.id in self:
            self.remove(item.id)
        key = order_key(item)
        pos = bisect.bisect_right(self._keys, key)
        self._keys.insert(pos, key)
        self._entries.insert(pos, item)
        # Oldest entries fall off first
        overflow = len(self._entries) - self.max_items
        if overflow > 0:
            del self._keys[:overflow]
            del self._entries[:overflow]

    def remove(self, item_id: int) -> bool:
        for pos, entry in enumerate(self._entries):
            if entry.id == item_id:
                del self._keys[pos]
                del self._entries[pos]
                return True
        return False

    def evict_before(self, cutoff: datetime) -> int:
        """Drop entries fetched before cutoff; returns how many were dropped."""
        pos = bisect.bisect_left(self._keys, (normalize_datetime(cutoff), -2))
        if pos:
            del self._keys[:pos]
            del self._entries[:pos]
        return pos

    def earlier_than(self, item: CandidateItem) -> List[CandidateItem]:
        """Most recent entries that arrived before item, inside the window."""
        key = order_key(item)
        end = bisect.bisect_left(self._keys, key)
        start = bisect.bisect_left(self._keys, (key[0] - self.window, -2))
        start = max(start, end - self.max_items)
        return [e for e in self._entries[start:end] if e.id is None or e.id != item.id]

    def entries(self) -> List[CandidateItem]:
        return list(self._entries)


class DuplicateResolver:
    """Scores candidate originality and classifies it into confidence bands"""

    def __init__(self, config=None):
        dedup = getattr(config, "dedup", None)
        self.window_days = getattr(dedup, "window_days", DedupConstants.WINDOW_DAYS)
        self.max_window_items = getattr(dedup, "max_window_items", DedupConstants.MAX_WINDOW_ITEMS)
        self.batch_size = getattr(dedup, "scan_batch_size", DedupConstants.SCAN_BATCH_SIZE)

    def new_index(self) -> RecentContentIndex:
        return RecentContentIndex(self.window_days, self.max_window_items)

    @staticmethod
    def classify(confidence: int) -> Verdict:
        if confidence >= DedupConstants.ORIGINAL_MIN_CONFIDENCE:
            return Verdict.ORIGINAL
        if confidence >= DedupConstants.LIKELY_ORIGINAL_MIN_CONFIDENCE:
            return Verdict.LIKELY_ORIGINAL
        return Verdict.DUPLICATE

    def resolve(self, item: CandidateItem, recent_index: RecentContentIndex) -> Resolution:
        """Resolve one candidate against earlier items in the index.

        An exact fingerprint match is a hard duplicate with confidence 0.
        Otherwise confidence is 100 minus the best shingle overlap (as a
        percentage) against any earlier item.
        """
        candidates = recent_index.earlier_than(item)

        for earlier in candidates:
            if earlier.fingerprint == item.fingerprint:
                logger.debug(f"Item {item.id} matches fingerprint of item {earlier.id}")
                return Resolution(
                    confidence=0,
                    verdict=Verdict.DUPLICATE,
                    similarity=1.0,
                    matched_item_id=earlier.id,
                    detection_method=DedupConstants.DETECTION_EXACT,
                )

        best_similarity = 0.0
        best_match = None
        for earlier in candidates:
            similarity = jaccard(item.shingles, earlier.shingles)
            if similarity > best_similarity:
                best_similarity = similarity
                best_match = earlier

        confidence = max(0, min(100, 100 - round(best_similarity * 100)))
        verdict = self.classify(confidence)
        if verdict == Verdict.DUPLICATE:
            logger.debug(
                f"Item {item.id} overlaps item {best_match.id} at {best_similarity:.2f}"
            )

        return Resolution(
            confidence=confidence,
            verdict=verdict,
            similarity=best_similarity,
            matched_item_id=best_match.id if best_match else None,
            detection_method=DedupConstants.DETECTION_SHINGLE if best_match else None,
        )

    def resolve_and_index(self, item: CandidateItem, recent_index: RecentContentIndex) -> Resolution:
        """Resolve an item and admit it to the index unless it is a duplicate."""
        resolution = self.resolve(item, recent_index)
        if resolution.verdict != Verdict.DUPLICATE:
            recent_index.add(item)
        return resolution

    async def scan(
        self,
        items: Iterable[CandidateItem],
        batch_size: Optional[int] = None,
        protected_ids: Iterable[int] = (),
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> AsyncIterator[Tuple[int, int, List[Tuple[CandidateItem, Resolution]]]]:
        """Re-resolve a backlog in bounded batches.

        Items are replayed in arrival order through a fresh index, so the set
        of duplicates found does not depend on ``batch_size``. Protected items
        (published or operator-overridden) seed the index but are never
        re-judged. Yields ``(batch_number, processed, results)`` and gives the
        event loop a turn after every batch; cancellation is checked before
        each batch starts.
        """
        batch_size = batch_size or self.batch_size
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        protected = set(protected_ids)
        ordered = sorted(items, key=order_key)
        index = self.new_index()

        batch_number = 0
        for start in range(0, len(ordered), batch_size):
            if should_cancel and should_cancel():
                logger.info(f"Scan cancelled before batch {batch_number + 1}")
                return
            batch = ordered[start:start + batch_size]
            batch_number += 1
            results = []
            for item in batch:
                if item.id in protected:
                    index.add(item)
                    continue
                results.append((item, self.resolve_and_index(item, index)))
            yield batch_number, len(batch), results
            await asyncio.sleep(0)
