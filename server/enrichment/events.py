"""
Event System for Enrichment Progress Notifications

Typed, timestamped lifecycle events published while a run is processed.
Events go to a Redis channel per table (``enrichment:{table_id}``) and are
streamed to clients via Server-Sent Events. Publishing is fire-and-forget:
a failing publisher never interrupts enrichment.
"""

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Protocol

logger = logging.getLogger("enrichment.events")

CHANNEL_PREFIX = "enrichment"


def channel_for(table_id: str) -> str:
    return f"{CHANNEL_PREFIX}:{table_id}"


class EventType(str, Enum):
    """Types of events emitted during an enrichment run"""

    # Row lifecycle
    ROW_START = "row-start"
    ROW_COMPLETE = "row-complete"
    ROW_RETRYING = "row-retrying"
    ROW_FAILED = "row-failed"
    ROW_SKIPPED = "row-skipped"

    # Stage progress inside a row
    STAGE_START = "stage-start"
    STAGE_COMPLETE = "stage-complete"

    # Cell writes
    CELL_UPDATE = "cell-update"

    # Run lifecycle
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    INSUFFICIENT_CREDITS = "insufficient-credits"


class Stage(str, Enum):
    """Phases of one enrichment cycle"""
    LOOKUP = "lookup"    # Query planning
    SEARCH = "search"    # Web search
    SCRAPE = "scrape"    # Bulk crawl
    PARSE = "parse"      # Structured extraction


# Events that are worth an INFO line when published
LOGGED_EVENT_TYPES = {
    EventType.ROW_START,
    EventType.ROW_COMPLETE,
    EventType.ROW_RETRYING,
    EventType.ROW_FAILED,
    EventType.COMPLETE,
}


@dataclass
class EnrichmentEvent:
    """An event emitted during an enrichment run"""

    event_type: EventType
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Row data
    row_id: Optional[str] = None
    row_position: Optional[int] = None

    # Stage data
    stage: Optional[str] = None

    # Cell data
    column_id: Optional[str] = None
    column_name: Optional[str] = None
    value: Optional[str] = None

    # Progress data
    columns_filled: Optional[int] = None
    columns_total: Optional[int] = None
    cycle: Optional[int] = None

    # Terminal data
    reason: Optional[str] = None
    message: Optional[str] = None
    credits_remaining: Optional[int] = None

    _WIRE_NAMES = {
        "row_id": "rowId",
        "row_position": "rowPosition",
        "stage": "stage",
        "column_id": "columnId",
        "column_name": "columnName",
        "value": "value",
        "columns_filled": "columnsFilled",
        "columns_total": "columnsTotal",
        "cycle": "cycle",
        "reason": "reason",
        "message": "message",
        "credits_remaining": "creditsRemaining",
    }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire format (camelCase keys, None fields dropped)"""
        result = {"type": self.event_type.value}
        for attr, wire_name in self._WIRE_NAMES.items():
            value = getattr(self, attr)
            if value is not None:
                result[wire_name] = value
        result["timestamp"] = self.timestamp
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_sse(self) -> str:
        """Convert to Server-Sent Event format"""
        return f"event: {self.event_type.value}\ndata: {self.to_json()}\n\n"


RowEventSink = Callable[[EnrichmentEvent], Awaitable[None]]


class EventPublisher(Protocol):
    """Anything that can publish an event to a table's channel"""

    async def publish(self, table_id: str, event: EnrichmentEvent) -> None:
        ...


async def safe_publish(publisher: Optional[EventPublisher], table_id: str, event: EnrichmentEvent):
    """Publish and swallow any failure; enrichment must continue regardless"""
    if publisher is None:
        return
    try:
        await publisher.publish(table_id, event)
    except Exception as e:
        logger.error(f"Failed to publish {event.event_type.value} to {channel_for(table_id)}: {e}")


def bind_sink(publisher: Optional[EventPublisher], table_id: str) -> RowEventSink:
    """Bind a publisher to one table so the row agent can emit without knowing the channel"""

    async def sink(event: EnrichmentEvent):
        await safe_publish(publisher, table_id, event)

    return sink


class RedisEventPublisher:
    """
    Publishes enrichment events to Redis pub/sub.

    Channel format: enrichment:{table_id}
    """

    def __init__(self, redis_client):
        self.redis = redis_client

    async def publish(self, table_id: str, event: EnrichmentEvent) -> None:
        channel = channel_for(table_id)
        try:
            await self.redis.publish(channel, event.to_json())
            if event.event_type in LOGGED_EVENT_TYPES:
                logger.info(f"[REDIS EVENT] Published {event.event_type.value} to {channel}")
        except Exception as e:
            logger.error(f"[REDIS EVENT] Failed to publish event to {channel}: {e}")


async def stream_events(redis_client, table_id: str) -> AsyncIterator[str]:
    """Yield SSE frames for every message published on a table's channel"""
    pubsub = redis_client.pubsub()
    channel = channel_for(table_id)
    await pubsub.subscribe(channel)
    logger.info(f"SSE subscriber attached to {channel}")
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message["data"]
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                event_type = json.loads(data).get("type", "message")
            except json.JSONDecodeError:
                event_type = "message"
            yield f"event: {event_type}\ndata: {data}\n\n"
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.info(f"SSE subscriber detached from {channel}")


class InMemoryEventPublisher:
    """
    Process-local publisher that records each table's events for inspection
    instead of broadcasting them. Only the most recent `max_history` events
    per table are kept.
    """

    def __init__(self, max_history: int = 500):
        self.max_history = max_history
        self._history: Dict[str, Deque[EnrichmentEvent]] = {}

    async def publish(self, table_id: str, event: EnrichmentEvent) -> None:
        if table_id not in self._history:
            self._history[table_id] = deque(maxlen=self.max_history)
        self._history[table_id].append(event)
        logger.debug(f"[{table_id}] Recorded: {event.event_type.value}")

    def history(self, table_id: str) -> List[EnrichmentEvent]:
        return list(self._history.get(table_id, ()))


# Helper functions for creating events

def row_start(row_id: str, row_position: int) -> EnrichmentEvent:
    return EnrichmentEvent(event_type=EventType.ROW_START, row_id=row_id, row_position=row_position)


def stage_start(stage: Stage) -> EnrichmentEvent:
    return EnrichmentEvent(event_type=EventType.STAGE_START, stage=stage.value)


def stage_complete(stage: Stage) -> EnrichmentEvent:
    return EnrichmentEvent(event_type=EventType.STAGE_COMPLETE, stage=stage.value)


def cell_update(row_id: str, column_id: str, column_name: str, value: str) -> EnrichmentEvent:
    return EnrichmentEvent(
        event_type=EventType.CELL_UPDATE,
        row_id=row_id,
        column_id=column_id,
        column_name=column_name,
        value=value
    )


def row_complete(row_id: str, row_position: int, columns_filled: int, columns_total: int) -> EnrichmentEvent:
    return EnrichmentEvent(
        event_type=EventType.ROW_COMPLETE,
        row_id=row_id,
        row_position=row_position,
        columns_filled=columns_filled,
        columns_total=columns_total
    )


def row_retrying(
    row_id: Optional[str],
    row_position: Optional[int],
    columns_filled: int,
    columns_total: int,
    cycle: int
) -> EnrichmentEvent:
    return EnrichmentEvent(
        event_type=EventType.ROW_RETRYING,
        row_id=row_id,
        row_position=row_position,
        columns_filled=columns_filled,
        columns_total=columns_total,
        cycle=cycle
    )


def row_failed(row_id: str, row_position: int, reason: str) -> EnrichmentEvent:
    return EnrichmentEvent(event_type=EventType.ROW_FAILED, row_id=row_id, row_position=row_position, reason=reason)


def row_skipped(row_id: str, row_position: int, reason: str) -> EnrichmentEvent:
    return EnrichmentEvent(event_type=EventType.ROW_SKIPPED, row_id=row_id, row_position=row_position, reason=reason)


def run_complete() -> EnrichmentEvent:
    return EnrichmentEvent(event_type=EventType.COMPLETE)


def run_cancelled(reason: str = "Cancelled by user") -> EnrichmentEvent:
    return EnrichmentEvent(event_type=EventType.CANCELLED, reason=reason)


def insufficient_credits(credits_remaining: int) -> EnrichmentEvent:
    return EnrichmentEvent(
        event_type=EventType.INSUFFICIENT_CREDITS,
        message=f"Insufficient credits to continue enrichment ({credits_remaining} remaining)",
        credits_remaining=credits_remaining
    )
