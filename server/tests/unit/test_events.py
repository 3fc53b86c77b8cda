"""
Unit Tests for enrichment events

Tests the wire format, SSE framing, and fire-and-forget publishing.
"""

import json
from unittest.mock import AsyncMock

import pytest

from enrichment.events import (
    EventType,
    InMemoryEventPublisher,
    RedisEventPublisher,
    Stage,
    bind_sink,
    cell_update,
    channel_for,
    insufficient_credits,
    row_retrying,
    safe_publish,
    stage_start,
)


class TestWireFormat:

    def test_camel_case_keys_and_dropped_nones(self):
        event = row_retrying("row_1", 4, columns_filled=1, columns_total=2, cycle=2)

        data = event.to_dict()

        assert data["type"] == "row-retrying"
        assert data["rowId"] == "row_1"
        assert data["rowPosition"] == 4
        assert data["columnsFilled"] == 1
        assert data["columnsTotal"] == 2
        assert data["cycle"] == 2
        assert "timestamp" in data
        assert "reason" not in data
        assert "columnName" not in data

    def test_cell_update_payload(self):
        data = cell_update("row_1", "col_email", "Email", "info@acme.com").to_dict()
        assert data == {
            "type": "cell-update",
            "rowId": "row_1",
            "columnId": "col_email",
            "columnName": "Email",
            "value": "info@acme.com",
            "timestamp": data["timestamp"],
        }

    def test_sse_frame(self):
        event = stage_start(Stage.SCRAPE)

        frame = event.to_sse()

        assert frame.startswith("event: stage-start\ndata: ")
        assert frame.endswith("\n\n")
        payload = json.loads(frame.split("data: ", 1)[1])
        assert payload["stage"] == "scrape"

    def test_insufficient_credits_carries_balance(self):
        data = insufficient_credits(0).to_dict()
        assert data["type"] == "insufficient-credits"
        assert data["creditsRemaining"] == 0
        assert "message" in data

    def test_channel_name(self):
        assert channel_for("tbl_1") == "enrichment:tbl_1"


class TestPublishing:

    @pytest.mark.asyncio
    async def test_redis_publisher_sends_json_to_table_channel(self):
        redis_client = AsyncMock()
        publisher = RedisEventPublisher(redis_client)

        await publisher.publish("tbl_1", stage_start(Stage.LOOKUP))

        channel, payload = redis_client.publish.await_args.args
        assert channel == "enrichment:tbl_1"
        assert json.loads(payload)["type"] == "stage-start"

    @pytest.mark.asyncio
    async def test_redis_publish_failure_is_swallowed(self):
        redis_client = AsyncMock()
        redis_client.publish.side_effect = ConnectionError("redis down")

        await RedisEventPublisher(redis_client).publish("tbl_1", stage_start(Stage.LOOKUP))

    @pytest.mark.asyncio
    async def test_safe_publish_swallows_publisher_errors(self):
        publisher = AsyncMock()
        publisher.publish.side_effect = RuntimeError("boom")

        await safe_publish(publisher, "tbl_1", stage_start(Stage.PARSE))

        publisher.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bound_sink_targets_one_table(self):
        publisher = InMemoryEventPublisher()
        sink = bind_sink(publisher, "tbl_9")

        await sink(stage_start(Stage.SEARCH))

        assert [e.event_type for e in publisher.history("tbl_9")] == [EventType.STAGE_START]
        assert publisher.history("tbl_1") == []

    @pytest.mark.asyncio
    async def test_sink_without_publisher_is_noop(self):
        await bind_sink(None, "tbl_1")(stage_start(Stage.SEARCH))


class TestInMemoryPublisher:

    @pytest.mark.asyncio
    async def test_history_is_kept_per_table(self):
        publisher = InMemoryEventPublisher()

        await publisher.publish("tbl_1", stage_start(Stage.LOOKUP))
        await publisher.publish("tbl_2", stage_start(Stage.SEARCH))

        assert [e.stage for e in publisher.history("tbl_1")] == ["lookup"]
        assert [e.stage for e in publisher.history("tbl_2")] == ["search"]
        assert publisher.history("tbl_3") == []

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        publisher = InMemoryEventPublisher(max_history=3)
        for stage in [Stage.LOOKUP, Stage.SEARCH, Stage.SCRAPE, Stage.PARSE, Stage.LOOKUP]:
            await publisher.publish("tbl_1", stage_start(stage))

        assert [e.stage for e in publisher.history("tbl_1")] == ["scrape", "parse", "lookup"]
