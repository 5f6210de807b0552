"""
Window Aggregator

Buffers classified signals per user until their processing window closes.

- Immediate: the window closes at ingestion, so a run is requested at once.
- DailyWindow: closes at the next local midnight in the user's timezone.
- WeeklyWindow: closes at the next local Monday 00:00.

Boundaries come from cron expressions evaluated with croniter in the
user's timezone, the same way scheduled work is computed elsewhere.

Claiming is lease-based: a run leases the signals that existed when it
started, and either commits their consumption together with its
recommendations or releases them. A crashed process never releases, so
the lease lapses and the next run picks the signals up again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional
from uuid import uuid4

import pytz
from croniter import croniter

from services.recommendations.models import DomainEvent, SignalEntry, WindowType, utcnow
from services.recommendations.signal_classifier import SignalClassification, SignalClassifier
from services.recommendations.store import RecommendationStore

logger = logging.getLogger(__name__)


WINDOW_SCHEDULES: Mapping[WindowType, str] = {
    WindowType.DAILY: "0 0 * * *",
    WindowType.WEEKLY: "0 0 * * 1",
}


def window_close_time(
    window_type: WindowType,
    from_time: Optional[datetime] = None,
    tz_name: str = "UTC",
    schedules: Mapping[WindowType, str] = WINDOW_SCHEDULES,
) -> datetime:
    """
    Next boundary of a window after `from_time`, as a UTC datetime.

    Unknown timezones fall back to UTC.
    """
    if from_time is None:
        from_time = datetime.now(timezone.utc)

    if window_type == WindowType.IMMEDIATE:
        return from_time

    try:
        tz = pytz.timezone(tz_name or "UTC")
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC

    local_time = from_time.astimezone(tz)
    cron = croniter(schedules[window_type], local_time)
    next_local = cron.get_next(datetime)
    return next_local.astimezone(timezone.utc)


@dataclass
class SignalClaim:
    """Signals leased by one run. `holder` identifies the lease."""
    holder: str
    signals: list[SignalEntry]
    cutoff: datetime

    @property
    def signal_ids(self) -> list[str]:
        return [s.id for s in self.signals]

    @property
    def window_type(self) -> WindowType:
        """The most urgent window represented in the claim."""
        types = {s.window_type for s in self.signals}
        for window_type in (WindowType.IMMEDIATE, WindowType.DAILY, WindowType.WEEKLY):
            if window_type in types:
                return window_type
        return WindowType.IMMEDIATE


class WindowAggregator:

    def __init__(
        self,
        store: RecommendationStore,
        classifier: SignalClassifier,
        lease_seconds: int = 120,
    ):
        self.store = store
        self.classifier = classifier
        self.lease_seconds = lease_seconds

    async def ingest(
        self,
        event: DomainEvent,
        tz_name: str = "UTC",
        now: Optional[datetime] = None,
    ) -> Optional[SignalEntry]:
        """
        Classify a domain event and queue the resulting signal.

        Returns the queued SignalEntry, or None when the event was excluded
        or unmapped.
        """
        now = now or utcnow()
        outcome = self.classifier.classify(event.event_type)
        if not isinstance(outcome, SignalClassification):
            return None

        pending = await self.store.list_unconsumed_signals(event.user_id, now)
        closes_at = window_close_time(outcome.window_type, now, tz_name)
        signal = self.classifier.to_signal_entry(
            event,
            pending=pending,
            window_closes_at=closes_at,
            now=now,
        )
        if signal is None:
            return None

        await self.store.add_signal(signal)
        logger.info(
            f"[SIGNALS] Queued {signal.source_event_type} for {event.user_id} "
            f"({signal.priority.value}/{signal.window_type.value})"
        )
        return signal

    async def claim(
        self,
        user_id: str,
        cutoff: datetime,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> SignalClaim:
        """
        Lease the user's signals that existed at `cutoff`.

        Without `force` only signals whose window has closed are claimed;
        a forced flush (explicit generate) takes everything pending.
        """
        now = now or utcnow()
        holder = str(uuid4())
        signals = await self.store.lease_signals(
            user_id=user_id,
            holder=holder,
            cutoff=cutoff,
            lease_until=now + timedelta(seconds=self.lease_seconds),
            now=now,
            closed_by=None if force else now,
        )
        if signals:
            logger.info(f"[SIGNALS] Run {holder[:8]} leased {len(signals)} signal(s) for {user_id}")
        return SignalClaim(holder=holder, signals=signals, cutoff=cutoff)

    async def release(self, claim: SignalClaim) -> None:
        if not claim.signals:
            return
        released = await self.store.release_signals(claim.holder)
        logger.info(f"[SIGNALS] Run {claim.holder[:8]} released {released} signal(s)")

    async def due_users(self, now: Optional[datetime] = None) -> list[str]:
        return await self.store.due_signal_users(now or utcnow())
