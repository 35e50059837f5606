"""
Debounced autosave of element edits.

Each (element_type, element_id) key is in one of three states:

    IDLE      no buffered edit
    PENDING   edit buffered, debounce timer running
    FLUSHING  write in flight

Repeated edits to a PENDING key overwrite the buffered value and restart the
timer, so only the last value before a quiet period is written. An edit that
arrives while the key is FLUSHING is queued and its timer starts once the
in-flight write finishes, so writes for one key never overlap.

Timers come from a loop-like object exposing call_later (the running asyncio
loop by default). All state is owned by the event loop thread; no locking.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set

from ..core.config import get_autosave_delay
from ..core.errors import PortfolioError
from ..core.schema import ChangeEvent, element_key
from .change_bus import ChangeBus
from util.logging import logger


class SaveState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    FLUSHING = "flushing"


@dataclass
class PendingEdit:
    element_type: str
    element_id: str
    value: Any
    handle: Any = None

    @property
    def key(self) -> str:
        return element_key(self.element_type, self.element_id)

    def cancel_timer(self):
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None


class AutosaveCoordinator:
    def __init__(self, store, change_bus: ChangeBus, delay: Optional[float] = None, loop=None):
        """
        Args:
            store: object with an async set(element_type, element_id, value, ...) returning a SaveResult
            change_bus: bus that receives a ChangeEvent after every successful write
            delay: debounce window in seconds (AUTOSAVE_DELAY_MS by default)
            loop: timer source with call_later(); the running loop when omitted
        """
        self.store = store
        self.change_bus = change_bus
        self.delay = get_autosave_delay() if delay is None else delay
        self._loop = loop
        self._pending: Dict[str, PendingEdit] = {}
        self._queued: Dict[str, PendingEdit] = {}
        self._flushing: Dict[str, asyncio.Task] = {}
        self._failed: Set[str] = set()
        self.flush_count = 0

    def _timer_loop(self):
        return self._loop if self._loop is not None else asyncio.get_running_loop()

    def state(self, element_type: str, element_id: str) -> SaveState:
        key = element_key(element_type, element_id)
        if key in self._flushing:
            return SaveState.FLUSHING
        if key in self._pending:
            return SaveState.PENDING
        return SaveState.IDLE

    def has_unsaved_edit(self, element_type: str, element_id: str) -> bool:
        """True while a newer local value is buffered or queued for the key."""
        key = element_key(element_type, element_id)
        return key in self._pending or key in self._queued

    @property
    def pending_count(self) -> int:
        """Keys with an edit that is buffered, queued or in flight."""
        return len(set(self._pending) | set(self._queued) | set(self._flushing))

    @property
    def failed_count(self) -> int:
        return len(self._failed)

    @property
    def pending_changes(self) -> int:
        """Unsaved-changes indicator: outstanding edits plus failed autosaves."""
        return len(set(self._pending) | set(self._queued) | set(self._flushing) | self._failed)

    def edit(self, element_type: str, element_id: str, value: Any):
        """Buffer an edit and (re)start the debounce timer for its key."""
        key = element_key(element_type, element_id)

        if key in self._flushing:
            self._queued[key] = PendingEdit(element_type, element_id, value)
            return

        pending = self._pending.get(key)
        if pending is None:
            pending = PendingEdit(element_type, element_id, value)
            self._pending[key] = pending
        else:
            pending.cancel_timer()
            pending.value = value

        pending.handle = self._timer_loop().call_later(self.delay, self._on_timer, key)

    def _on_timer(self, key: str):
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        pending.handle = None
        self._flushing[key] = asyncio.get_running_loop().create_task(self._flush(pending))

    async def _flush(self, pending: PendingEdit):
        key = pending.key
        try:
            result = await self.store.set(pending.element_type, pending.element_id, pending.value,
                                          auto_save=True, validate=True, notify=False)
            if result.success:
                self._failed.discard(key)
                self.flush_count += 1
                logger.log_autosave(pending.element_type, pending.element_id)
                self.change_bus.publish(ChangeEvent(
                    element_type=pending.element_type,
                    element_id=pending.element_id,
                    old_value=result.previous_value,
                    new_value=result.value,
                ))
            else:
                self._failed.add(key)
                logger.log_autosave(pending.element_type, pending.element_id, status="failed",
                                    details={"errors": result.errors})
        except PortfolioError as e:
            # No retry; the key stays counted in pending_changes until saved again
            self._failed.add(key)
            logger.log_autosave(pending.element_type, pending.element_id, status="failed",
                                details={"error": str(e), "error_type": type(e).__name__})
        except Exception as e:
            self._failed.add(key)
            logger.exception(f"Unexpected autosave failure for {key}: {e}")
            logger.log_autosave(pending.element_type, pending.element_id, status="failed",
                                details={"error": str(e), "error_type": type(e).__name__})
        finally:
            self._flushing.pop(key, None)
            queued = self._queued.pop(key, None)
            if queued is not None:
                self.edit(queued.element_type, queued.element_id, queued.value)

    async def save_now(self, element_type: str, element_id: str, value: Any):
        """
        Write immediately with a user-facing notification, bypassing the debounce.

        Any buffered or queued edit for the key is superseded and its timer
        canceled. An autosave already in flight for the key finishes first, so
        this write lands after it. Errors from the store propagate to the caller.
        """
        key = element_key(element_type, element_id)
        self.cancel(element_type, element_id)

        in_flight = self._flushing.get(key)
        if in_flight is not None:
            await asyncio.gather(in_flight, return_exceptions=True)

        try:
            result = await self.store.set(element_type, element_id, value,
                                          auto_save=False, validate=True, notify=True)
        except PortfolioError:
            self._failed.add(key)
            raise

        if result.success:
            self._failed.discard(key)
            self.change_bus.publish(ChangeEvent(
                element_type=element_type,
                element_id=element_id,
                old_value=result.previous_value,
                new_value=result.value,
            ))
        return result

    def cancel(self, element_type: str, element_id: str):
        """Drop the buffered and queued edit for one key without writing it."""
        key = element_key(element_type, element_id)
        pending = self._pending.pop(key, None)
        if pending is not None:
            pending.cancel_timer()
        self._queued.pop(key, None)

    def cancel_all(self):
        """Hard cancel: clear every timer and buffered edit. Safe to call repeatedly."""
        for pending in self._pending.values():
            pending.cancel_timer()
        self._pending.clear()
        self._queued.clear()
        self._failed.clear()

    async def flush_pending(self):
        """Write every buffered edit now and wait for the writes to finish."""
        for key in list(self._pending):
            self._pending[key].cancel_timer()
            self._on_timer(key)
        await self.wait_idle()

    async def wait_idle(self):
        """Wait until no write is in flight."""
        while self._flushing:
            await asyncio.gather(*list(self._flushing.values()), return_exceptions=True)
