"""
Tests for the debounced autosave coordinator.
"""

import asyncio

import pytest

from portfolio.client.autosave import AutosaveCoordinator, SaveState
from portfolio.client.change_bus import ChangeBus
from portfolio.client.store_client import SaveResult
from portfolio.core.errors import BackendError

DELAY = 1.5


class RecordingStore:
    """Fake store that records each set() with the clock time it happened at."""

    def __init__(self, clock, fail_ids=()):
        self.clock = clock
        self.fail_ids = set(fail_ids)
        self.calls = []

    async def set(self, element_type, element_id, value, auto_save=False, validate=True, notify=True):
        self.calls.append({
            "at": self.clock.now,
            "key": f"{element_type}:{element_id}",
            "value": value,
            "auto_save": auto_save,
            "notify": notify,
        })
        if element_id in self.fail_ids:
            raise BackendError("storage offline")
        return SaveResult(True, value=value, version=len(self.calls))


def make_coordinator(clock, store=None, bus=None):
    store = store or RecordingStore(clock)
    bus = bus or ChangeBus()
    return AutosaveCoordinator(store, bus, delay=DELAY, loop=clock), store, bus


class TestDebounce:
    def test_burst_of_edits_flushes_once_with_last_value(self, clock):
        """Edits closer together than the window coalesce into one write."""
        async def scenario():
            coordinator, store, _ = make_coordinator(clock)
            for value in ["h", "he", "hel", "hell", "hello"]:
                coordinator.edit("text", "a1", value)
                clock.advance(0.5)
            clock.advance(DELAY)
            await coordinator.wait_idle()
            return store.calls

        calls = asyncio.run(scenario())
        assert len(calls) == 1
        assert calls[0]["value"] == "hello"

    def test_edits_separated_by_quiet_period_flush_twice_in_order(self, clock):
        async def scenario():
            coordinator, store, _ = make_coordinator(clock)
            coordinator.edit("text", "a1", "first")
            clock.advance(DELAY + 0.1)
            await coordinator.wait_idle()
            coordinator.edit("text", "a1", "second")
            clock.advance(DELAY + 0.1)
            await coordinator.wait_idle()
            return store.calls

        calls = asyncio.run(scenario())
        assert [c["value"] for c in calls] == ["first", "second"]

    def test_restarted_timer_scenario(self, clock):
        """delay=1.5s, edits at t=0 and t=1.0: exactly one write at t=2.5 with the second value."""
        async def scenario():
            coordinator, store, _ = make_coordinator(clock)
            coordinator.edit("text", "a1", "hello")
            clock.advance(1.0)
            coordinator.edit("text", "a1", "hello world")

            clock.advance(1.49)
            await asyncio.sleep(0)
            assert store.calls == []

            clock.advance(0.01)
            await coordinator.wait_idle()
            clock.advance(10)
            await coordinator.wait_idle()
            return store.calls

        calls = asyncio.run(scenario())
        assert len(calls) == 1
        assert calls[0]["value"] == "hello world"
        assert calls[0]["at"] == pytest.approx(2.5)

    def test_keys_are_independent(self, clock):
        async def scenario():
            coordinator, store, _ = make_coordinator(clock)
            coordinator.edit("text", "a1", "one")
            clock.advance(1.0)
            coordinator.edit("text", "b2", "two")
            clock.advance(0.5)
            await coordinator.wait_idle()
            first = [c["key"] for c in store.calls]
            clock.advance(1.0)
            await coordinator.wait_idle()
            return first, [c["key"] for c in store.calls]

        first, both = asyncio.run(scenario())
        assert first == ["text:a1"]
        assert both == ["text:a1", "text:b2"]

    def test_autosave_is_silent_and_publishes_change(self, clock):
        """Flushes use auto_save=True, notify=False and announce the change on the bus."""
        async def scenario():
            coordinator, store, bus = make_coordinator(clock)
            events = []
            bus.subscribe(events.append)
            coordinator.edit("profile", "bio", {"text": "About me"})
            clock.advance(DELAY)
            await coordinator.wait_idle()
            return store.calls, events

        calls, events = asyncio.run(scenario())
        assert calls[0]["auto_save"] is True
        assert calls[0]["notify"] is False
        assert len(events) == 1
        assert events[0].key == "profile:bio"
        assert events[0].new_value == {"text": "About me"}


class TestCancellation:
    def test_cancel_all_prevents_any_flush(self, clock):
        async def scenario():
            coordinator, store, _ = make_coordinator(clock)
            coordinator.edit("text", "a1", "x")
            coordinator.edit("text", "b2", "y")
            coordinator.cancel_all()
            clock.advance(DELAY * 10)
            await coordinator.wait_idle()
            return coordinator, store.calls

        coordinator, calls = asyncio.run(scenario())
        assert calls == []
        assert coordinator.pending_changes == 0
        assert clock.active_timers == []

    def test_cancel_all_is_idempotent_with_nothing_pending(self, clock):
        coordinator, _, _ = make_coordinator(clock)
        coordinator.cancel_all()
        coordinator.cancel_all()
        assert coordinator.pending_count == 0

    def test_cancel_single_key(self, clock):
        async def scenario():
            coordinator, store, _ = make_coordinator(clock)
            coordinator.edit("text", "a1", "keep")
            coordinator.edit("text", "b2", "drop")
            coordinator.cancel("text", "b2")
            clock.advance(DELAY)
            await coordinator.wait_idle()
            return store.calls

        calls = asyncio.run(scenario())
        assert [c["key"] for c in calls] == ["text:a1"]


class TestStates:
    def test_idle_pending_flushing_idle(self, clock):
        async def scenario():
            gate = asyncio.Event()

            class GatedStore(RecordingStore):
                async def set(self, *args, **kwargs):
                    result = await super().set(*args, **kwargs)
                    await gate.wait()
                    return result

            coordinator, _, _ = make_coordinator(clock, store=GatedStore(clock))
            states = [coordinator.state("text", "a1")]
            coordinator.edit("text", "a1", "v")
            states.append(coordinator.state("text", "a1"))
            clock.advance(DELAY)
            await asyncio.sleep(0)
            states.append(coordinator.state("text", "a1"))
            gate.set()
            await coordinator.wait_idle()
            states.append(coordinator.state("text", "a1"))
            return states

        assert asyncio.run(scenario()) == [SaveState.IDLE, SaveState.PENDING, SaveState.FLUSHING, SaveState.IDLE]

    def test_edit_during_flush_waits_for_flush_to_finish(self, clock):
        """A mid-flush edit is queued; its debounce starts after the in-flight write completes."""
        async def scenario():
            gate = asyncio.Event()
            in_flight = []

            class GatedStore(RecordingStore):
                async def set(self, *args, **kwargs):
                    in_flight.append(1)
                    assert len(in_flight) == 1, "writes for one key must not overlap"
                    result = await super().set(*args, **kwargs)
                    await gate.wait()
                    in_flight.pop()
                    return result

            store = GatedStore(clock)
            coordinator, _, _ = make_coordinator(clock, store=store)
            coordinator.edit("text", "a1", "v1")
            clock.advance(DELAY)
            await asyncio.sleep(0)

            coordinator.edit("text", "a1", "v2")
            assert coordinator.state("text", "a1") == SaveState.FLUSHING
            assert clock.active_timers == []
            assert coordinator.pending_changes == 1

            gate.set()
            await coordinator.wait_idle()
            assert coordinator.state("text", "a1") == SaveState.PENDING

            clock.advance(DELAY)
            await coordinator.wait_idle()
            return [c["value"] for c in store.calls]

        assert asyncio.run(scenario()) == ["v1", "v2"]


class TestFailures:
    def test_failed_autosave_is_not_retried_and_counts_as_pending(self, clock):
        async def scenario():
            coordinator, store, bus = make_coordinator(clock, store=RecordingStore(clock, fail_ids={"a1"}))
            events = []
            bus.subscribe(events.append)
            coordinator.edit("text", "a1", "lost")
            clock.advance(DELAY)
            await coordinator.wait_idle()
            clock.advance(DELAY * 5)
            await coordinator.wait_idle()
            return coordinator, store.calls, events

        coordinator, calls, events = asyncio.run(scenario())
        assert len(calls) == 1
        assert events == []
        assert coordinator.state("text", "a1") == SaveState.IDLE
        assert coordinator.failed_count == 1
        assert coordinator.pending_changes == 1

    def test_validation_rejection_counts_as_failed(self, clock):
        class RejectingStore(RecordingStore):
            async def set(self, *args, **kwargs):
                await super().set(*args, **kwargs)
                return SaveResult(False, errors=["Text must be 10 characters or less"])

        async def scenario():
            coordinator, _, _ = make_coordinator(clock, store=RejectingStore(clock))
            coordinator.edit("text", "a1", "x" * 50)
            clock.advance(DELAY)
            await coordinator.wait_idle()
            return coordinator

        assert asyncio.run(scenario()).failed_count == 1

    def test_successful_save_clears_failure(self, clock):
        async def scenario():
            store = RecordingStore(clock, fail_ids={"a1"})
            coordinator, _, _ = make_coordinator(clock, store=store)
            coordinator.edit("text", "a1", "lost")
            clock.advance(DELAY)
            await coordinator.wait_idle()
            store.fail_ids.clear()
            await coordinator.save_now("text", "a1", "saved")
            return coordinator

        assert asyncio.run(scenario()).pending_changes == 0

    def test_unexpected_store_error_is_recorded_as_failure(self, clock):
        """A fault outside the error taxonomy still leaves the key counted as unsaved."""
        class BrokenStore(RecordingStore):
            async def set(self, *args, **kwargs):
                await super().set(*args, **kwargs)
                raise ValueError("Expecting value: line 1 column 1 (char 0)")

        async def scenario():
            coordinator, _, bus = make_coordinator(clock, store=BrokenStore(clock))
            events = []
            bus.subscribe(events.append)
            coordinator.edit("text", "a1", "lost")
            clock.advance(DELAY)
            flush = coordinator._flushing["text:a1"]
            await flush
            return coordinator, events

        coordinator, events = asyncio.run(scenario())
        assert events == []
        assert coordinator.state("text", "a1") == SaveState.IDLE
        assert coordinator.failed_count == 1
        assert coordinator.pending_changes == 1


class TestSaveNow:
    def test_save_now_bypasses_debounce_and_cancels_timer(self, clock):
        async def scenario():
            coordinator, store, bus = make_coordinator(clock)
            events = []
            bus.subscribe(events.append)
            coordinator.edit("text", "a1", "draft")
            result = await coordinator.save_now("text", "a1", "final")
            clock.advance(DELAY * 2)
            await coordinator.wait_idle()
            return result, store.calls, events

        result, calls, events = asyncio.run(scenario())
        assert result.success
        assert len(calls) == 1
        assert calls[0]["value"] == "final"
        assert calls[0]["notify"] is True
        assert calls[0]["auto_save"] is False
        assert [e.new_value for e in events] == ["final"]

    def test_save_now_propagates_backend_errors(self, clock):
        async def scenario():
            coordinator, _, _ = make_coordinator(clock, store=RecordingStore(clock, fail_ids={"a1"}))
            with pytest.raises(BackendError):
                await coordinator.save_now("text", "a1", "x")
            return coordinator

        assert asyncio.run(scenario()).failed_count == 1

    def test_save_now_lands_after_in_flight_autosave(self, clock):
        """An explicit save waits for an older autosave already in flight, so the newer value wins."""
        async def scenario():
            gate = asyncio.Event()
            landed = []

            class GatedStore(RecordingStore):
                async def set(self, element_type, element_id, value, **kwargs):
                    if value == "old":
                        await gate.wait()
                    landed.append(value)
                    return SaveResult(True, value=value, version=len(landed))

            coordinator, _, bus = make_coordinator(clock, store=GatedStore(clock))
            events = []
            bus.subscribe(events.append)
            coordinator.edit("text", "a1", "old")
            clock.advance(DELAY)
            await asyncio.sleep(0)
            assert coordinator.state("text", "a1") == SaveState.FLUSHING

            save = asyncio.create_task(coordinator.save_now("text", "a1", "new"))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            assert landed == []

            gate.set()
            result = await save
            await coordinator.wait_idle()
            return result, landed, [e.new_value for e in events], coordinator

        result, landed, published, coordinator = asyncio.run(scenario())
        assert result.success
        assert landed == ["old", "new"]
        assert published == ["old", "new"]
        assert coordinator.pending_changes == 0

    def test_flush_pending_writes_everything_now(self, clock):
        async def scenario():
            coordinator, store, _ = make_coordinator(clock)
            coordinator.edit("text", "a1", "one")
            coordinator.edit("text", "b2", "two")
            await coordinator.flush_pending()
            return coordinator, store.calls

        coordinator, calls = asyncio.run(scenario())
        assert sorted(c["value"] for c in calls) == ["one", "two"]
        assert coordinator.pending_count == 0
        assert clock.active_timers == []
