"""
Source health service for topicflow.

Tracks per-source reliability counters and decides eligibility. A source is
suspended while its success rate is below 50% or it has 3+ consecutive
failures; the next success resets the consecutive counter, so reinstatement
needs no separate action. Every attempt is appended to ``source_attempts``.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from topicflow.utils.constants import HealthConstants
from topicflow.utils.models import (
    AttemptOutcome,
    FetchResult,
    ForceTestResult,
    HealthSnapshot,
    HealthStatus,
    SourceRef,
    TopicHealth,
    utcnow,
)
from topicflow.web.models import Source, SourceAttempt

logger = logging.getLogger(__name__)


# Custom Exceptions
class SourceHealthError(Exception):
    """Base exception for source health errors."""

    pass


class SourceNotFoundError(SourceHealthError):
    """Raised when a source doesn't exist."""

    pass


class PersistenceFailure(SourceHealthError):
    """Raised when an attempt or counter update could not be written."""

    pass


class ForceTestError(SourceHealthError):
    """Raised when an operator re-test cannot be carried out."""

    pass


def _health_setting(config, name: str, default):
    return getattr(getattr(config, "health", None), name, default)


def is_suspended(source: Source, config=None) -> bool:
    """Suspension rule: low success rate or too many consecutive failures."""
    min_rate = _health_setting(config, "min_success_rate", HealthConstants.MIN_SUCCESS_RATE)
    max_failures = _health_setting(
        config, "max_consecutive_failures", HealthConstants.MAX_CONSECUTIVE_FAILURES
    )
    return source.success_rate < min_rate or (source.consecutive_failures or 0) >= max_failures


def source_is_eligible(source: Source, config=None) -> bool:
    """Eligible sources are active and not suspended."""
    return bool(source.is_active) and not is_suspended(source, config)


def get_source(db: Session, source_id: int) -> Source:
    """
    Get source by ID.

    Raises:
        SourceNotFoundError: If source doesn't exist
    """
    source = db.query(Source).filter(Source.id == source_id).first()
    if not source:
        raise SourceNotFoundError(f"Source with ID {source_id} not found")
    return source


def source_ref(source: Source) -> SourceRef:
    return SourceRef(
        id=source.id, topic_id=source.topic_id, name=source.name, feed_url=source.feed_url
    )


def recent_volume(db: Session, source_id: int, days: int = HealthConstants.VOLUME_WINDOW_DAYS) -> int:
    """Articles found by successful attempts in the last ``days`` days."""
    since = utcnow() - timedelta(days=days)
    total = (
        db.query(func.coalesce(func.sum(SourceAttempt.articles_found), 0))
        .filter(
            SourceAttempt.source_id == source_id,
            SourceAttempt.attempted_at >= since,
            SourceAttempt.outcome == AttemptOutcome.SUCCESS.value,
        )
        .scalar()
    )
    return int(total or 0)


def build_snapshot(db: Session, source: Source, config=None, persistence_degraded: bool = False) -> HealthSnapshot:
    suspended = is_suspended(source, config)
    return HealthSnapshot(
        source_id=source.id,
        topic_id=source.topic_id,
        name=source.name,
        success_count=source.success_count or 0,
        failure_count=source.failure_count or 0,
        consecutive_failures=source.consecutive_failures or 0,
        success_rate=round(source.success_rate, 2),
        is_active=bool(source.is_active),
        is_eligible=bool(source.is_active) and not suspended,
        is_suspended=suspended,
        last_7_days_volume=recent_volume(
            db, source.id, _health_setting(config, "volume_window_days", HealthConstants.VOLUME_WINDOW_DAYS)
        ),
        last_error=source.last_error,
        last_attempt_at=source.last_attempt_at,
        persistence_degraded=persistence_degraded,
    )


def record_attempt(
    db: Session,
    source_id: int,
    outcome: AttemptOutcome,
    error: Optional[str] = None,
    articles_found: int = 0,
    response_time_ms: Optional[int] = None,
    triggered_by: str = "poll",
    config=None,
) -> HealthSnapshot:
    """
    Apply one fetch attempt to a source's counters and append an attempt row.

    Counters and the attempt row are committed together; on a write failure
    the session is rolled back so no partial update is visible.

    Args:
        db: Database session
        source_id: Source ID
        outcome: Attempt outcome
        error: Failure reason ('timeout', '404', ...)
        articles_found: Items returned by a successful fetch
        response_time_ms: Fetch duration
        triggered_by: 'poll' or 'operator'
        config: Optional Config with health thresholds

    Returns:
        HealthSnapshot after the attempt

    Raises:
        SourceNotFoundError: If source doesn't exist
        PersistenceFailure: If the update could not be committed
    """
    outcome = AttemptOutcome(outcome)
    source = get_source(db, source_id)
    was_eligible = source_is_eligible(source, config)
    now = utcnow()

    try:
        if outcome == AttemptOutcome.SUCCESS:
            source.success_count = (source.success_count or 0) + 1
            source.consecutive_failures = 0
            source.last_success_at = now
            source.last_error = None
        else:
            source.failure_count = (source.failure_count or 0) + 1
            source.consecutive_failures = (source.consecutive_failures or 0) + 1
            source.last_failure_at = now
            source.last_error = error or "unknown"
        source.last_attempt_at = now

        if response_time_ms is not None:
            attempts = (source.success_count or 0) + (source.failure_count or 0)
            previous = source.avg_response_time_ms
            source.avg_response_time_ms = (
                float(response_time_ms)
                if previous is None
                else previous + (response_time_ms - previous) / attempts
            )

        db.add(
            SourceAttempt(
                source_id=source.id,
                attempted_at=now,
                outcome=outcome.value,
                error=error if outcome == AttemptOutcome.FAILURE else None,
                articles_found=articles_found if outcome == AttemptOutcome.SUCCESS else 0,
                response_time_ms=response_time_ms,
                triggered_by=triggered_by,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Could not record attempt for source {source_id}: {e}")

    db.refresh(source)
    now_eligible = source_is_eligible(source, config)
    if was_eligible and not now_eligible:
        logger.warning(
            f"Suspended source {source.id} '{source.name}': success rate "
            f"{source.success_rate:.0f}%, {source.consecutive_failures} consecutive failures"
        )
    elif not was_eligible and now_eligible:
        logger.info(f"Source {source.id} '{source.name}' is eligible again")

    return build_snapshot(db, source, config)


def is_eligible(db: Session, source_id: int, config=None) -> bool:
    """
    Check whether a source may be polled.

    Raises:
        SourceNotFoundError: If source doesn't exist
    """
    return source_is_eligible(get_source(db, source_id), config)


def snapshot(db: Session, topic_id: int, config=None, persistence_degraded: bool = False) -> List[HealthSnapshot]:
    """Health snapshots for every source attached to a topic."""
    sources = (
        db.query(Source).filter(Source.topic_id == topic_id).order_by(Source.id).all()
    )
    return [build_snapshot(db, s, config, persistence_degraded) for s in sources]


def classify_topic_health(eligible: int, total: int, config=None) -> HealthStatus:
    """
    Aggregate health band from eligible/total sources.

    A topic without sources can gather nothing and is reported critical.
    """
    if total == 0:
        return HealthStatus.CRITICAL
    ratio = eligible / total
    if ratio >= _health_setting(config, "healthy_ratio", HealthConstants.HEALTHY_RATIO):
        return HealthStatus.HEALTHY
    if ratio >= _health_setting(config, "degraded_ratio", HealthConstants.DEGRADED_RATIO):
        return HealthStatus.DEGRADED
    return HealthStatus.CRITICAL


def topic_health(db: Session, topic_id: int, config=None, persistence_degraded: bool = False) -> TopicHealth:
    sources = db.query(Source).filter(Source.topic_id == topic_id).all()
    total = len(sources)
    eligible = sum(1 for s in sources if source_is_eligible(s, config))
    return TopicHealth(
        topic_id=topic_id,
        total_sources=total,
        eligible_sources=eligible,
        ratio=round(eligible / total, 4) if total else 0.0,
        status=classify_topic_health(eligible, total, config),
        persistence_degraded=persistence_degraded,
    )


def set_source_active(db: Session, source_id: int, active: bool) -> Source:
    """Operator activation toggle; does not touch reliability counters."""
    source = get_source(db, source_id)
    source.is_active = active
    db.commit()
    db.refresh(source)
    logger.info(f"Source {source_id} {'activated' if active else 'deactivated'} by operator")
    return source


def prune_attempts(db: Session, older_than_days: int = HealthConstants.ATTEMPT_RETENTION_DAYS) -> int:
    """Delete attempt rows older than the retention window. Counters are unaffected."""
    cutoff = utcnow() - timedelta(days=older_than_days)
    deleted = (
        db.query(SourceAttempt)
        .filter(SourceAttempt.attempted_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info(f"Pruned {deleted} source attempts older than {older_than_days} days")
    return deleted


def classify_fetch_error(error: Exception) -> str:
    """Short failure reason for an exception raised by a fetch."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    error_str = str(error).lower()
    if "404" in error_str or "not found" in error_str:
        return "404"
    elif "403" in error_str or "forbidden" in error_str:
        return "403"
    elif "redirect" in error_str:
        return "redirect"
    elif "timeout" in error_str:
        return "timeout"
    return "unknown"


async def probe_source(aggregator, source: SourceRef, timeout_seconds: float) -> FetchResult:
    """
    Fetch one source with a timeout, turning exceptions into failure outcomes.

    Args:
        aggregator: Ingestion collaborator (``BaseAggregator``)
        source: Source to poll
        timeout_seconds: Per-source timeout

    Returns:
        FetchResult; never raises for fetch problems
    """
    start = time.time()
    try:
        result = await asyncio.wait_for(aggregator.fetch(source), timeout=timeout_seconds)
    except Exception as e:
        elapsed_ms = int((time.time() - start) * 1000)
        reason = classify_fetch_error(e)
        logger.debug(f"Fetch failed for source {source.id}: {reason}")
        return FetchResult(
            outcome=AttemptOutcome.FAILURE, error=reason, response_time_ms=elapsed_ms
        )

    if result.response_time_ms is None:
        result = result.model_copy(
            update={"response_time_ms": int((time.time() - start) * 1000)}
        )
    return result


class SourceHealthTracker:
    """
    Serialized access to source health counters.

    Every counter mutation, from the polling path or from an operator
    re-test, goes through the per-source lock so a source has at most one
    in-flight update. Persistence failures are retried; when retries run
    out the attempt is logged as lost and ``persistence_degraded`` is raised
    and reported in every snapshot. The flag stays set until the process
    restarts, even after later writes succeed; ``lost_attempts`` counts the
    attempts missing from the counters.
    """

    def __init__(self, session_factory: Callable[[], Session], config=None):
        self.session_factory = session_factory
        self.config = config
        self.persistence_retries = _health_setting(
            config, "persistence_retries", HealthConstants.PERSISTENCE_RETRIES
        )
        self.fetch_timeout = _health_setting(
            config, "fetch_timeout_seconds", HealthConstants.DEFAULT_FETCH_TIMEOUT_SECONDS
        )
        self.persistence_degraded = False
        self.lost_attempts = 0
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, source_id: int) -> asyncio.Lock:
        if source_id not in self._locks:
            self._locks[source_id] = asyncio.Lock()
        return self._locks[source_id]

    def _write_attempt(self, source_id: int, outcome: AttemptOutcome, error, articles_found, response_time_ms, triggered_by) -> HealthSnapshot:
        db = self.session_factory()
        try:
            snap = record_attempt(
                db,
                source_id,
                outcome,
                error=error,
                articles_found=articles_found,
                response_time_ms=response_time_ms,
                triggered_by=triggered_by,
                config=self.config,
            )
            return snap.model_copy(update={"persistence_degraded": self.persistence_degraded})
        finally:
            db.close()

    def _read_snapshot(self, source_id: int) -> HealthSnapshot:
        db = self.session_factory()
        try:
            return build_snapshot(
                db, get_source(db, source_id), self.config, self.persistence_degraded
            )
        finally:
            db.close()

    async def record_attempt(
        self,
        source_id: int,
        outcome: AttemptOutcome,
        error: Optional[str] = None,
        articles_found: int = 0,
        response_time_ms: Optional[int] = None,
    ) -> HealthSnapshot:
        """
        Record a polling attempt.

        Returns:
            Snapshot after the attempt, or the last consistent snapshot
            (flagged ``persistence_degraded``) when the write was lost

        Raises:
            SourceNotFoundError: If source doesn't exist
            PersistenceFailure: If even the last consistent state can't be read
        """
        async with self._lock_for(source_id):
            last_error = None
            for attempt in range(self.persistence_retries + 1):
                try:
                    return self._write_attempt(
                        source_id, outcome, error, articles_found, response_time_ms, "poll"
                    )
                except PersistenceFailure as e:
                    last_error = e
                    logger.warning(
                        f"Attempt write for source {source_id} failed "
                        f"({attempt + 1}/{self.persistence_retries + 1}): {e}"
                    )

            self.persistence_degraded = True
            self.lost_attempts += 1
            logger.error(
                f"Lost {outcome.value} attempt for source {source_id} after retries: {last_error}"
            )
            return self._read_snapshot(source_id)

    def is_eligible(self, source_id: int) -> bool:
        db = self.session_factory()
        try:
            return is_eligible(db, source_id, self.config)
        finally:
            db.close()

    def snapshot(self, topic_id: int) -> List[HealthSnapshot]:
        db = self.session_factory()
        try:
            return snapshot(db, topic_id, self.config, self.persistence_degraded)
        finally:
            db.close()

    def topic_health(self, topic_id: int) -> TopicHealth:
        db = self.session_factory()
        try:
            return topic_health(db, topic_id, self.config, self.persistence_degraded)
        finally:
            db.close()

    async def force_test(self, source_id: int, aggregator) -> ForceTestResult:
        """
        Operator re-test of a source through the serialized update path.

        The probe's outcome is recorded like any other attempt. If the
        result can't be saved, the operator gets a failure reason and the
        counters stay as they were.

        Raises:
            SourceNotFoundError: If source doesn't exist
        """
        async with self._lock_for(source_id):
            db = self.session_factory()
            try:
                ref = source_ref(get_source(db, source_id))
            finally:
                db.close()

            result = await probe_source(aggregator, ref, self.fetch_timeout)
            try:
                snap = self._write_attempt(
                    source_id,
                    result.outcome,
                    result.error,
                    len(result.items),
                    result.response_time_ms,
                    "operator",
                )
            except PersistenceFailure as e:
                logger.error(f"Force test for source {source_id} not saved: {e}")
                return ForceTestResult(
                    source_id=source_id,
                    success=False,
                    reason="Test result could not be saved; counters unchanged",
                    snapshot=self._read_snapshot(source_id),
                )

        success = result.outcome == AttemptOutcome.SUCCESS
        logger.info(
            f"Force test for source {source_id}: {'passed' if success else 'failed'}"
            + ("" if success else f" ({result.error})")
        )
        return ForceTestResult(
            source_id=source_id,
            success=success,
            reason=None if success else result.error,
            snapshot=snap,
        )

    async def reinstate(self, source_id: int, aggregator) -> ForceTestResult:
        """Re-activate a source and immediately re-test it."""
        async with self._lock_for(source_id):
            db = self.session_factory()
            try:
                set_source_active(db, source_id, True)
            except SQLAlchemyError as e:
                db.rollback()
                raise ForceTestError(f"Could not reactivate source {source_id}: {e}")
            finally:
                db.close()
        return await self.force_test(source_id, aggregator)

    async def deactivate(self, source_id: int) -> HealthSnapshot:
        async with self._lock_for(source_id):
            db = self.session_factory()
            try:
                source = set_source_active(db, source_id, False)
                return build_snapshot(db, source, self.config, self.persistence_degraded)
            finally:
                db.close()
