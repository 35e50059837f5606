"""
Listener for the backend's server-sent change notifications.

Each notification becomes a ChangeEvent on the Change Bus. Dropped connections
are retried after a short delay; a rejected session stops the listener.
"""

import asyncio
import contextlib
import json
from typing import List, Optional, Tuple

import httpx

from ..core.errors import BackendError, PermissionDenied, Unauthenticated
from ..core.schema import ChangeEvent
from .change_bus import ChangeBus
from .store_client import RemoteStoreClient, raise_for_status
from util.logging import logger

RECONNECT_DELAY_SEC = 2.0


class SSEParser:
    """Incremental text/event-stream parser fed one line at a time."""

    def __init__(self):
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed_line(self, line: str) -> Optional[Tuple[str, str]]:
        """Returns (event, data) when a blank line completes a message."""
        if line == "":
            if not self._data:
                self._event = None
                return None
            message = (self._event or "message", "\n".join(self._data))
            self._event = None
            self._data = []
            return message

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        return None


class RealtimeListener:
    def __init__(self, client: RemoteStoreClient, change_bus: ChangeBus, prefix: Optional[str] = None,
                 reconnect_delay: float = RECONNECT_DELAY_SEC):
        self.client = client
        self.change_bus = change_bus
        self.prefix = prefix
        self.reconnect_delay = reconnect_delay
        self.received_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def handle_message(self, data: str) -> Optional[ChangeEvent]:
        """Publish one notification payload on the bus; malformed payloads are logged and skipped."""
        try:
            event = ChangeEvent.from_notification(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed realtime notification: {e}")
            return None

        self.received_count += 1
        self.change_bus.publish(event)
        return event

    async def _listen_once(self):
        params = {"prefix": self.prefix} if self.prefix else {}
        parser = SSEParser()
        async with self.client.http.stream("GET", "/realtime", params=params,
                                           headers=self.client.auth_headers(), timeout=None) as response:
            if response.status_code >= 400:
                await response.aread()
                raise_for_status(response)
            async for line in response.aiter_lines():
                message = parser.feed_line(line)
                if message and message[0] == "change":
                    self.handle_message(message[1])

    async def run(self):
        while True:
            try:
                await self._listen_once()
            except (Unauthenticated, PermissionDenied) as e:
                logger.error(f"Realtime subscription rejected: {e}")
                return
            except (httpx.HTTPError, BackendError) as e:
                logger.warning(f"Realtime connection lost, retrying in {self.reconnect_delay}s: {e}")
            await asyncio.sleep(self.reconnect_delay)

    def start(self):
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
