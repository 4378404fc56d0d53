"""Progress tracking for running analyses.

ProgressRegistry is a bounded in-memory cache of progress records keyed
by run id, with a pull interface (``get``) and a push interface
(subscriptions fed by every ``set``). The database stays the source of
truth: evicting a record never touches the persisted run.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

import structlog

from api.exceptions import RateLimitError
from api.metrics import update_subscriber_count
from api.models.base import utcnow
from api.models.run import STATUS_PROGRESS, RunStatus, is_terminal

logger = structlog.get_logger(__name__)


class ProgressEventType(StrEnum):
    """Event types pushed to subscribers."""

    CONNECTED = "connected"
    PROGRESS = "progress"
    COMPLETED = "completed"
    ERROR = "error"
    HEARTBEAT = "heartbeat"
    TIMEOUT = "timeout"


@dataclass
class ProgressRecord:
    """Latest known progress of one run."""

    run_id: str
    client_id: str
    status: str
    competitor_id: str | None = None
    progress: int = 0
    detail: str | None = None
    step: str | None = None
    overall_percent: int = 0
    result: dict[str, Any] | None = None
    updated_at: datetime = field(default_factory=utcnow)
    # Last record of the whole analysis, not just of one entity
    final: bool = False

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "runId": self.run_id,
            "clientId": self.client_id,
            "competitorId": self.competitor_id,
            "status": self.status,
            "progress": self.progress,
            "overallPercent": self.overall_percent,
            "message": self.detail,
            "step": self.step,
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.result is not None:
            data["result"] = self.result
        return data


@dataclass
class ProgressEvent:
    """One event pushed to a subscriber."""

    event: ProgressEventType
    data: dict[str, Any]

    @classmethod
    def for_record(cls, record: ProgressRecord) -> ProgressEvent:
        if record.status == RunStatus.COMPLETED:
            event_type = ProgressEventType.COMPLETED
        elif record.status == RunStatus.FAILED:
            event_type = ProgressEventType.ERROR
        else:
            event_type = ProgressEventType.PROGRESS
        return cls(event=event_type, data=record.to_dict())

    @classmethod
    def for_client(cls, record: ProgressRecord) -> ProgressEvent:
        """Client-channel event: only the analysis-wide final record is terminal."""
        if record.final:
            return cls.for_record(record)
        return cls(event=ProgressEventType.PROGRESS, data=record.to_dict())

    def to_sse(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data, default=str)}\n\n"


def run_topic(run_id: str) -> str:
    return f"run:{run_id}"


def client_topic(client_id: str) -> str:
    return f"client:{client_id}"


class Subscription:
    """A subscriber's queue of pending events."""

    def __init__(self, topic: str, max_queue: int = 256, lifetime: float | None = None):
        self.topic = topic
        self.queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=max_queue)
        self.closed = False
        self.deadline = time.monotonic() + lifetime if lifetime is not None else None

    def push(self, event: ProgressEvent) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # Slow consumer: drop the oldest event rather than block the publisher
            self.queue.get_nowait()
            self.queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            self.queue.get_nowait()
            self.queue.put_nowait(None)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """
        Yield events until the subscription is closed.

        Past its deadline the subscription yields one ``timeout`` event and
        ends, so long-lived connections have to reconnect.
        """
        while True:
            if self.deadline is None:
                event = await self.queue.get()
            else:
                try:
                    event = await asyncio.wait_for(
                        self.queue.get(), max(0.0, self.deadline - time.monotonic())
                    )
                except TimeoutError:
                    self.closed = True
                    yield ProgressEvent(
                        event=ProgressEventType.TIMEOUT,
                        data={
                            "message": "Connection timeout - please refresh to reconnect",
                            "timestamp": utcnow().isoformat(),
                        },
                    )
                    return
            if event is None:
                return
            yield event


@dataclass
class _Entry:
    record: ProgressRecord
    expires_at: float | None = None


class ProgressRegistry:
    """
    Bounded TTL cache of progress records with push subscriptions.

    Records of active runs are kept until they reach a terminal state,
    then for ``grace_seconds`` more to answer late polls. When more than
    ``max_records`` are held, the oldest entries are evicted first.

    Client-channel subscriptions are capped per client and in total (None
    disables a cap) and end after ``max_connection_seconds``.
    """

    def __init__(
        self,
        max_records: int = 1000,
        grace_seconds: float = 300.0,
        heartbeat_interval: float = 15.0,
        max_subscribers_per_client: int | None = None,
        max_subscribers: int | None = None,
        max_connection_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_records = max_records
        self.grace_seconds = grace_seconds
        self.heartbeat_interval = heartbeat_interval
        self.max_subscribers_per_client = max_subscribers_per_client
        self.max_subscribers = max_subscribers
        self.max_connection_seconds = max_connection_seconds
        self._clock = clock
        self._records: OrderedDict[str, _Entry] = OrderedDict()
        self._subscribers: dict[str, set[Subscription]] = {}
        self._heartbeat_task: asyncio.Task | None = None

    # Pull interface

    def get(self, run_id: str) -> ProgressRecord | None:
        self._evict_expired()
        entry = self._records.get(str(run_id))
        return entry.record if entry else None

    def latest_for_client(self, client_id: str) -> ProgressRecord | None:
        """Most recently updated record of any run of ``client_id``."""
        self._evict_expired()
        client_id = str(client_id)
        for entry in reversed(self._records.values()):
            if entry.record.client_id == client_id:
                return entry.record
        return None

    def set(self, run_id: str, record: ProgressRecord) -> None:
        """Store a record and push it to subscribers of its run and client."""
        run_id = str(run_id)
        record.updated_at = utcnow()
        expires_at = self._clock() + self.grace_seconds if record.is_terminal else None

        self._records[run_id] = _Entry(record=record, expires_at=expires_at)
        self._records.move_to_end(run_id)
        self._evict_expired()
        while len(self._records) > self.max_records:
            evicted, _ = self._records.popitem(last=False)
            logger.debug("progress_record_evicted", run_id=evicted, reason="capacity")

        self._publish(run_topic(run_id), ProgressEvent.for_record(record))
        self._publish(client_topic(record.client_id), ProgressEvent.for_client(record))

        if record.is_terminal:
            self._close_topic(run_topic(run_id))

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._records)

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [
            run_id
            for run_id, entry in self._records.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for run_id in expired:
            del self._records[run_id]
            logger.debug("progress_record_evicted", run_id=run_id, reason="expired")

    # Push interface

    def subscribe(
        self,
        run_id: str | None = None,
        client_id: str | None = None,
        fallback: ProgressRecord | None = None,
    ) -> Subscription:
        """
        Subscribe to one run or to every run of one client.

        The first event queued is always ``connected``, followed by the
        current state: the run's record, or the client's most recent one,
        or ``fallback`` (typically rebuilt from the database) when the
        registry holds none. A run subscriber whose run is already
        terminal receives that final event and is closed straight away.

        Raises:
            RateLimitError: Too many open subscriptions for the client or
                in total
        """
        if (run_id is None) == (client_id is None):
            raise ValueError("Subscribe to exactly one of run_id or client_id")

        topic = run_topic(str(run_id)) if run_id is not None else client_topic(str(client_id))
        self._check_capacity(topic, client_id)
        subscription = Subscription(topic, lifetime=self.max_connection_seconds)
        subscription.push(
            ProgressEvent(
                event=ProgressEventType.CONNECTED,
                data={
                    "runId": str(run_id) if run_id is not None else None,
                    "clientId": str(client_id) if client_id is not None else None,
                    "status": None,
                    "overallPercent": None,
                    "message": "connected",
                },
            )
        )

        if run_id is not None:
            current = self.get(str(run_id)) or fallback
            if current is not None:
                subscription.push(ProgressEvent.for_record(current))
                if current.is_terminal:
                    subscription.close()
                    return subscription
        else:
            current = self.latest_for_client(str(client_id)) or fallback
            if current is not None:
                subscription.push(ProgressEvent.for_client(current))

        self._subscribers.setdefault(topic, set()).add(subscription)
        update_subscriber_count(self.subscriber_count)
        logger.debug("progress_subscribed", topic=topic)
        return subscription

    def _check_capacity(self, topic: str, client_id: str | None) -> None:
        if self.max_subscribers is not None and self.subscriber_count >= self.max_subscribers:
            logger.warning("progress_subscribe_rejected", topic=topic, reason="total_limit")
            raise RateLimitError("Too many open progress connections")
        if (
            client_id is not None
            and self.max_subscribers_per_client is not None
            and len(self._subscribers.get(topic, ())) >= self.max_subscribers_per_client
        ):
            logger.warning("progress_subscribe_rejected", topic=topic, reason="client_limit")
            raise RateLimitError("Too many open progress connections for this client")

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscriber, e.g. on client disconnect."""
        subscribers = self._subscribers.get(subscription.topic)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.topic]
        subscription.close()
        update_subscriber_count(self.subscriber_count)

    def close_client_channel(self, client_id: str) -> None:
        """End every client-channel subscription once the analysis is over."""
        self._close_topic(client_topic(str(client_id)))

    def _close_topic(self, topic: str) -> None:
        subscribers = self._subscribers.pop(topic, set())
        for subscription in subscribers:
            subscription.close()
        if subscribers:
            update_subscriber_count(self.subscriber_count)

    def _publish(self, topic: str, event: ProgressEvent) -> None:
        for subscription in list(self._subscribers.get(topic, ())):
            subscription.push(event)

    @property
    def subscriber_count(self) -> int:
        return sum(len(s) for s in self._subscribers.values())

    # Heartbeats

    def heartbeat(self) -> None:
        """Push a heartbeat to every open subscription."""
        event = ProgressEvent(
            event=ProgressEventType.HEARTBEAT,
            data={"timestamp": utcnow().isoformat()},
        )
        for subscribers in list(self._subscribers.values()):
            for subscription in list(subscribers):
                subscription.push(event)

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.heartbeat()
            self._evict_expired()

    def start(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        for topic in list(self._subscribers):
            self._close_topic(topic)


class ProgressSink(Protocol):
    """Receives phase transitions of one entity's run."""

    def report(
        self,
        status: RunStatus,
        detail: str | None = None,
        *,
        step: str | None = None,
        result: dict[str, Any] | None = None,
        final: bool = False,
    ) -> ProgressRecord: ...


# Analysis-level weights for overallPercent
CLIENT_WEIGHT = 40
COMPETITORS_WEIGHT = 50
INSIGHTS_WEIGHT = 10


class AnalysisTracker:
    """
    Tracks one analysis (client plus competitors) and hands out a sink
    per entity. Each report updates the run's record and recomputes the
    analysis-level ``overall_percent``.
    """

    def __init__(self, registry: ProgressRegistry, client_id: str, competitor_count: int = 0):
        self.registry = registry
        self.client_id = str(client_id)
        self.competitor_count = competitor_count
        self._client_progress = 0
        self._competitor_progress: dict[str, int] = {}
        self._insights_progress = 0

    @property
    def overall_percent(self) -> int:
        insights = INSIGHTS_WEIGHT * self._insights_progress / 100
        if self.competitor_count == 0:
            client = (CLIENT_WEIGHT + COMPETITORS_WEIGHT) * self._client_progress / 100
            return min(100, round(client + insights))
        client = CLIENT_WEIGHT * self._client_progress / 100
        competitors = (
            COMPETITORS_WEIGHT
            * sum(self._competitor_progress.values())
            / (100 * self.competitor_count)
        )
        return min(100, round(client + competitors + insights))

    def mark_insights_done(self) -> None:
        self._insights_progress = 100

    def sink_for(self, run_id: str, competitor_id: str | None = None) -> EntityProgressSink:
        return EntityProgressSink(self, str(run_id), str(competitor_id) if competitor_id else None)

    def _record_progress(self, competitor_id: str | None, progress: int) -> None:
        if competitor_id is None:
            self._client_progress = progress
        else:
            self._competitor_progress[competitor_id] = progress


class EntityProgressSink:
    """ProgressSink for one entity's run within an analysis."""

    def __init__(self, tracker: AnalysisTracker, run_id: str, competitor_id: str | None):
        self.tracker = tracker
        self.run_id = run_id
        self.competitor_id = competitor_id
        self._progress = 0

    def report(
        self,
        status: RunStatus,
        detail: str | None = None,
        *,
        step: str | None = None,
        result: dict[str, Any] | None = None,
        final: bool = False,
    ) -> ProgressRecord:
        if status == RunStatus.FAILED:
            # A failed entity no longer holds back the analysis total
            entity_progress = 100
        else:
            self._progress = max(self._progress, STATUS_PROGRESS.get(status, self._progress))
            entity_progress = self._progress
        self.tracker._record_progress(self.competitor_id, entity_progress)

        record = ProgressRecord(
            run_id=self.run_id,
            client_id=self.tracker.client_id,
            competitor_id=self.competitor_id,
            status=status.value,
            progress=self._progress,
            detail=detail,
            step=step or status.value,
            overall_percent=self.tracker.overall_percent,
            result=result,
            final=final,
        )
        self.tracker.registry.set(self.run_id, record)
        return record
