"""Change feed fanning grant transitions out to interested subscribers.

Events are "something changed, re-fetch" signals.  The grant row stays the
source of truth; the feed only has to be at-least-once and ordered per
record.  Every committed transition is also persisted as a
:class:`~rxshare.db.models.GrantEvent`, so a subscriber that falls behind or
reconnects replays from the store instead of slowing the publisher down.
"""

from __future__ import annotations

import asyncio
import enum
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Set, Union

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from rxshare.db.models import GrantEvent
from rxshare.metrics import FEED_EVENTS, FEED_RESYNCS
from rxshare.time_utils import ensure_utc, isoformat_utc

logger = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 100


class EventKind(str, enum.Enum):
    VIEWED = "viewed"
    LINKED = "linked"


def record_topic(record_id: str) -> str:
    return f"record:{record_id}"


def owner_topic(owner_id: str) -> str:
    return f"owner:{owner_id}"


def patient_topic(account_id: str) -> str:
    return f"patient:{account_id}"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed transition of one grant."""

    event_id: int
    kind: EventKind
    record_id: str
    owner_id: str
    account_id: Optional[str]
    sequence: int
    occurred_at: datetime

    @classmethod
    def from_row(cls, row: GrantEvent) -> "ChangeEvent":
        return cls(
            event_id=int(row.id),
            kind=EventKind(row.kind),
            record_id=row.record_id,
            owner_id=row.owner_id,
            account_id=row.account_id,
            sequence=int(row.sequence),
            occurred_at=ensure_utc(row.occurred_at),
        )

    def topics(self) -> List[str]:
        topics = [record_topic(self.record_id), owner_topic(self.owner_id)]
        if self.kind is EventKind.LINKED and self.account_id:
            topics.append(patient_topic(self.account_id))
        return topics

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "change",
            "eventId": self.event_id,
            "kind": self.kind.value,
            "recordId": self.record_id,
            "ownerId": self.owner_id,
            "accountId": self.account_id,
            "sequence": self.sequence,
            "occurredAt": isoformat_utc(self.occurred_at),
        }


@dataclass(frozen=True)
class ResyncRequired:
    """Delivered once after a subscriber overflowed and lost events."""

    topic: str
    dropped: int

    def to_payload(self) -> Dict[str, Any]:
        return {"type": "resync", "topic": self.topic, "dropped": self.dropped}


FeedItem = Union[ChangeEvent, ResyncRequired]


class SubscriptionClosed(Exception):
    """Raised by :meth:`Subscription.get` once the subscription is closed."""


@dataclass(eq=False)
class Subscription:
    """A bounded, per-consumer buffer attached to one topic.

    ``deliver`` may be called from any thread.  Consumers either ``drain``
    synchronously or ``await get()`` from the event loop the subscription was
    bound to.
    """

    topic: str
    buffer_size: int = DEFAULT_BUFFER_SIZE
    loop: Optional[asyncio.AbstractEventLoop] = None
    _buffer: Deque[ChangeEvent] = field(default_factory=deque, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)
    _last_sequence: Dict[str, int] = field(default_factory=dict, init=False)
    _dropped: int = field(default=0, init=False)
    _wakeup: Optional[asyncio.Event] = field(default=None, init=False)
    closed: bool = field(default=False, init=False)

    def __post_init__(self) -> None:
        if self.loop is not None:
            self._wakeup = asyncio.Event()

    @property
    def needs_resync(self) -> bool:
        with self._lock:
            return self._dropped > 0

    def deliver(self, event: ChangeEvent) -> bool:
        """Queue ``event``; returns ``False`` when it was dropped."""

        with self._lock:
            if self.closed:
                return False
            if self._dropped:
                self._dropped += 1
                return False
            queued = len(self._buffer) < self.buffer_size
            if queued:
                self._buffer.append(event)
            else:
                self._dropped = len(self._buffer) + 1
                self._buffer.clear()
        if not queued:
            FEED_RESYNCS.inc()
            logger.warning("feed_subscriber_resync", topic=self.topic)
        self._notify()
        return queued

    def accept(self, events: List[ChangeEvent]) -> List[ChangeEvent]:
        """Filter ``events`` to those newer than what this consumer has seen.

        Used for replayed batches and for live items alike, so an event
        arriving both ways is handed out once per record sequence.
        """

        fresh: List[ChangeEvent] = []
        with self._lock:
            for event in events:
                seen = self._last_sequence.get(event.record_id, 0)
                if event.sequence <= seen:
                    continue
                self._last_sequence[event.record_id] = event.sequence
                fresh.append(event)
        return fresh

    def drain(self) -> List[FeedItem]:
        """Return everything currently buffered without waiting."""

        items: List[FeedItem] = []
        while True:
            item = self._pop()
            if item is None:
                return items
            items.append(item)

    async def get(self) -> FeedItem:
        """Wait for the next item on the bound event loop."""

        if self._wakeup is None:
            raise RuntimeError("Subscription is not bound to an event loop")
        while True:
            item = self._pop()
            if item is not None:
                return item
            if self.closed:
                raise SubscriptionClosed(self.topic)
            self._wakeup.clear()
            item = self._pop()
            if item is not None:
                return item
            await self._wakeup.wait()

    def close(self) -> None:
        with self._lock:
            self.closed = True
            self._buffer.clear()
        self._notify()

    def _pop(self) -> Optional[FeedItem]:
        while True:
            with self._lock:
                if self._dropped:
                    dropped, self._dropped = self._dropped, 0
                    return ResyncRequired(topic=self.topic, dropped=dropped)
                if not self._buffer:
                    return None
                event = self._buffer.popleft()
            if self.accept([event]):
                return event

    def _notify(self) -> None:
        if self.loop is None or self._wakeup is None:
            return
        try:
            self.loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:  # loop already closed
            logger.debug("feed_wakeup_skipped", topic=self.topic)


class ChangeFeed:
    """Broadcast committed grant transitions to topic subscribers."""

    def __init__(self, *, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        self.buffer_size = max(1, buffer_size)
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(
        self,
        topic: str,
        *,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Subscription:
        subscription = Subscription(topic=topic, buffer_size=self.buffer_size, loop=loop)
        with self._lock:
            self._subscribers[topic].add(subscription)
        logger.debug("feed_subscribed", topic=topic)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        with self._lock:
            subscribers = self._subscribers.get(subscription.topic)
            if not subscribers:
                return
            subscribers.discard(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.topic, None)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every subscriber of its topics.

        Never blocks on a consumer and never raises: the transition it
        describes is already committed.
        """

        FEED_EVENTS.labels(kind=event.kind.value).inc()
        with self._lock:
            targets: List[Subscription] = []
            for topic in event.topics():
                targets.extend(self._subscribers.get(topic, ()))
        delivered = 0
        for subscription in targets:
            try:
                if subscription.deliver(event):
                    delivered += 1
            except Exception:  # pragma: no cover
                logger.exception("feed_delivery_failed", topic=subscription.topic)
        logger.debug(
            "feed_published",
            kind=event.kind.value,
            record_id=event.record_id,
            sequence=event.sequence,
            delivered=delivered,
        )
        return delivered

    @staticmethod
    def replay(session: Session, topic: str, since: Optional[int] = None) -> List[ChangeEvent]:
        """Return persisted events for ``topic`` with ids greater than ``since``."""

        scope, _, key = topic.partition(":")
        stmt = select(GrantEvent)
        if scope == "record":
            stmt = stmt.where(GrantEvent.record_id == key)
        elif scope == "owner":
            stmt = stmt.where(GrantEvent.owner_id == key)
        elif scope == "patient":
            stmt = stmt.where(
                GrantEvent.account_id == key, GrantEvent.kind == EventKind.LINKED.value
            )
        else:
            raise ValueError(f"Unknown topic {topic!r}")
        if since is not None:
            stmt = stmt.where(GrantEvent.id > since)
        rows = session.execute(stmt.order_by(GrantEvent.id)).scalars().all()
        return [ChangeEvent.from_row(row) for row in rows]


__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "EventKind",
    "FeedItem",
    "ResyncRequired",
    "Subscription",
    "SubscriptionClosed",
    "owner_topic",
    "patient_topic",
    "record_topic",
]
