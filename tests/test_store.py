"""
Tests for the storage layer.
"""

from datetime import timedelta, timezone

import pytest

from conftest import T0, entry
from streamarchiver.models import BreakerState, CircuitBreakerState, FetchState


class TestRecordingStore:
    """Test RecordingStore."""

    @pytest.mark.asyncio
    async def test_timestamps_come_back_aware_utc(self, store):
        await store.add_discovered("chan", [entry("v1", T0)])

        recording = await store.get("chan", "v1")

        assert recording.start == T0
        assert recording.start.tzinfo is not None
        assert recording.start.utcoffset() == timedelta(0)
        assert recording.fetch_state == FetchState.PENDING
        assert recording.priority == 0

    @pytest.mark.asyncio
    async def test_discovery_does_not_touch_existing_rows(self, store):
        await store.add_discovered("chan", [entry("v1", T0, title="Old")])
        await store.set_priority("chan", "v1", 50)

        inserted = await store.add_discovered("chan", [
            entry("v1", T0, title="New"),
            entry("v2", T0 + timedelta(days=1)),
        ])

        assert inserted == 1
        recording = await store.get("chan", "v1")
        assert recording.title == "Old"
        assert recording.priority == 50

    @pytest.mark.asyncio
    async def test_same_id_in_two_channels(self, store):
        await store.add_discovered("a", [entry("v1", T0)])
        await store.add_discovered("b", [entry("v1", T0)])

        assert await store.get("a", "v1") is not None
        assert await store.get("b", "v1") is not None

    @pytest.mark.asyncio
    async def test_placeholder_is_created_once(self, store):
        assert await store.create_placeholder("chan", "live-1", "LIVE: x", T0) is True
        assert await store.create_placeholder("chan", "live-1", "LIVE: x", T0) is False

        placeholders = await store.list_placeholders("chan")
        assert [r.id for r in placeholders] == ["live-1"]
        assert placeholders[0].is_placeholder

    @pytest.mark.asyncio
    async def test_progress_is_clamped_to_total(self, store):
        await store.add_discovered("chan", [entry("v1", T0)])

        await store.update_progress("chan", "v1", 150, 100)

        progress = await store.progress("chan", "v1")
        assert progress.bytes_downloaded == 100
        assert progress.bytes_total == 100
        assert progress.percent == 100.0
        assert progress.progress_updated_at is not None

    @pytest.mark.asyncio
    async def test_progress_without_total(self, store):
        await store.add_discovered("chan", [entry("v1", T0)])

        await store.update_progress("chan", "v1", 500, 0)

        progress = await store.progress("chan", "v1")
        assert progress.bytes_downloaded == 500
        assert progress.percent is None

    @pytest.mark.asyncio
    async def test_fetch_failure_accumulates_attempts(self, store):
        await store.add_discovered("chan", [entry("v1", T0)])

        await store.record_fetch_failure("chan", "v1", "boom", attempts=3, now=T0)
        await store.record_fetch_failure("chan", "v1", "boom again", attempts=2, now=T0)

        recording = await store.get("chan", "v1")
        assert recording.fetch_state == FetchState.FAILED
        assert recording.retry_count == 5
        assert recording.last_error == "boom again"
        assert recording.last_error_at == T0

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_fetch_result(self, store):
        await store.add_discovered("chan", [entry("v1", T0)])
        await store.mark_fetched("chan", "v1", "/data/v1.mp4")

        await store.record_publish_failure("chan", "v1", "flood wait")

        recording = await store.get("chan", "v1")
        assert recording.fetch_state == FetchState.COMPLETED
        assert recording.local_path == "/data/v1.mp4"
        assert recording.last_error == "publish: flood wait"

    @pytest.mark.asyncio
    async def test_reprocess_resets_everything(self, store):
        await store.add_discovered("chan", [entry("v1", T0)])
        await store.mark_fetched("chan", "v1", "/data/v1.mp4")
        await store.record_publish_success("chan", "v1", "https://t.me/c/1/2")

        assert await store.reprocess("chan", "v1") is True

        recording = await store.get("chan", "v1")
        assert recording.fetch_state == FetchState.PENDING
        assert recording.publish_url is None
        assert recording.retry_count == 0

    @pytest.mark.asyncio
    async def test_admin_updates_report_missing_rows(self, store):
        assert await store.set_priority("chan", "missing", 10) is False
        assert await store.set_skip_publish("chan", "missing", True) is False
        assert await store.reprocess("chan", "missing") is False

    @pytest.mark.asyncio
    async def test_pending_counts_by_priority(self, store):
        await store.add_discovered("chan", [
            entry("a", T0), entry("b", T0), entry("c", T0), entry("d", T0),
        ])
        await store.set_priority("chan", "a", 10)
        await store.mark_fetched("chan", "d", "/data/d.mp4")
        await store.create_placeholder("chan", "live-1", "LIVE", T0)

        counts = await store.pending_counts_by_priority("chan")

        assert counts == {10: 1, 0: 2}

    @pytest.mark.asyncio
    async def test_chat_messages_in_relative_order(self, store):
        await store.create_placeholder("chan", "live-1", "LIVE", T0)
        await store.add_chat_message("chan", "live-1", "bob", "second", T0 + timedelta(seconds=20), 20.0)
        await store.add_chat_message("chan", "live-1", "amy", "first", T0 + timedelta(seconds=5), 5.0, badges="vip/1", color="#FF0000")

        messages = await store.chat_messages("chan", "live-1")

        assert [m.text for m in messages] == ["first", "second"]
        assert messages[0].badges == "vip/1"
        assert messages[0].abs_timestamp.tzinfo == timezone.utc


class TestStateStore:
    """Test StateStore."""

    @pytest.mark.asyncio
    async def test_breaker_defaults_to_closed(self, state_store):
        state = await state_store.get_breaker_state("chan")
        assert state.state == BreakerState.CLOSED
        assert state.failures == 0
        assert state.open_until is None

    @pytest.mark.asyncio
    async def test_breaker_round_trip(self, state_store):
        until = T0 + timedelta(minutes=5)
        await state_store.put_breaker_state("chan", CircuitBreakerState(BreakerState.OPEN, 5, until))

        state = await state_store.get_breaker_state("chan")

        assert state.state == BreakerState.OPEN
        assert state.failures == 5
        assert state.open_until == until

    @pytest.mark.asyncio
    async def test_channels_are_independent(self, state_store):
        await state_store.put_breaker_state("a", CircuitBreakerState(BreakerState.OPEN, 5, T0))
        await state_store.put_ema("a", "fetch", 12.5)

        assert (await state_store.get_breaker_state("b")).state == BreakerState.CLOSED
        assert await state_store.get_ema("b", "fetch") is None
        assert await state_store.get_ema("a", "fetch") == 12.5


class TestCircuitBreakerState:
    def test_open_until_cleared_unless_open(self):
        state = CircuitBreakerState(BreakerState.HALF_OPEN, 3, T0)
        assert state.open_until is None
