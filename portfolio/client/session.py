"""
Portfolio session: the local view state that page bindings read and edit.

Holds a cache of element values keyed "type:id", hydrated in bulk on load and
updated optimistically on edit. Change events from autosave, explicit saves
and the realtime listener all reconcile the cache through the Change Bus.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.errors import PortfolioError, Unauthenticated
from ..core.schema import ChangeEvent, element_key, utcnow
from .autosave import AutosaveCoordinator
from .change_bus import ChangeBus
from .realtime import RealtimeListener
from .store_client import BulkSaveResult, RemoteStoreClient, SaveResult
from util.logging import logger


class PortfolioSession:
    def __init__(self, client: RemoteStoreClient, change_bus: Optional[ChangeBus] = None,
                 autosave: Optional[AutosaveCoordinator] = None):
        self.client = client
        self.notifications = client.notifications
        self.change_bus = change_bus or ChangeBus()
        self.autosave = autosave or AutosaveCoordinator(client, self.change_bus)
        self.data: Dict[str, Any] = {}
        self.loading = False
        self.load_failed = False
        self.last_sync_time: Optional[datetime] = None
        self._listener: Optional[RealtimeListener] = None
        self._unsubscribe = self.change_bus.subscribe(self._on_change)
        self._closed = False

    @property
    def can_edit(self) -> bool:
        return self.client.principal is not None and self.client.principal.is_owner

    @property
    def pending_changes(self) -> int:
        return self.autosave.pending_changes

    def _on_change(self, event: ChangeEvent):
        # A buffered local edit is newer than whatever the server just echoed
        if self.autosave.has_unsaved_edit(event.element_type, event.element_id):
            return
        if event.action == "DELETE":
            self.data.pop(event.key, None)
        else:
            self.data[event.key] = event.new_value
        self.last_sync_time = utcnow()

    async def load_all(self) -> Dict[str, Any]:
        """Hydrate the cache; on failure the cache is left empty and load_failed is set."""
        self.loading = True
        try:
            data = await self.client.fetch_all()
        except PortfolioError as e:
            logger.error(f"Failed to load portfolio data: {e}")
            self.notifications.error("Failed to load portfolio data. Please refresh the page.")
            self.load_failed = True
            self.data = {}
            return {}
        finally:
            self.loading = False

        self.data = data
        self.load_failed = False
        self.last_sync_time = utcnow()
        return dict(data)

    def get_value(self, element_type: str, element_id: str, default: Any = "") -> Any:
        value = self.data.get(element_key(element_type, element_id))
        return default if value is None else value

    async def update(self, element_type: str, element_id: str, value: Any,
                     auto_save: bool = True) -> Optional[SaveResult]:
        """
        Apply an edit locally, then autosave it (debounced) or save it now.

        Autosaved edits return None; the outcome shows up in pending_changes.
        Immediate saves return the SaveResult, with backend faults folded into
        an unsuccessful result.
        """
        self.data[element_key(element_type, element_id)] = value

        if auto_save:
            self.autosave.edit(element_type, element_id, value)
            return None

        try:
            result = await self.autosave.save_now(element_type, element_id, value)
        except Unauthenticated as e:
            self.notifications.error("Please sign in to save changes.")
            return SaveResult(False, errors=[str(e)])
        except PortfolioError as e:
            logger.error(f"Failed to update {element_type}:{element_id}: {e}")
            return SaveResult(False, errors=[str(e)])

        if result.success:
            self.last_sync_time = utcnow()
        return result

    async def bulk_save(self, updates: List[Dict[str, Any]]) -> BulkSaveResult:
        """Save several values; only the ones the backend applied enter the cache."""
        try:
            result = await self.client.bulk_set(updates)
        except PortfolioError as e:
            logger.error(f"Bulk save failed: {e}")
            return BulkSaveResult(
                success=False,
                saved_count=0,
                errors=[{"element_type": u["element_type"], "element_id": u["element_id"], "message": str(e)}
                        for u in updates],
            )

        saved = set(result.saved_keys)
        for update in updates:
            key = element_key(update["element_type"], update["element_id"])
            if key in saved:
                self.data[key] = update["value"]
        if result.saved_count:
            self.last_sync_time = utcnow()
        return result

    async def delete(self, element_type: str, element_id: str) -> bool:
        self.autosave.cancel(element_type, element_id)
        deleted = await self.client.delete(element_type, element_id)
        if deleted:
            self.data.pop(element_key(element_type, element_id), None)
        return deleted

    def start_realtime(self, prefix: Optional[str] = None) -> RealtimeListener:
        if self._listener is None:
            self._listener = RealtimeListener(self.client, self.change_bus, prefix=prefix)
        self._listener.start()
        return self._listener

    async def health_check(self) -> Dict[str, Any]:
        health = await self.client.health_check()
        health["details"].update({
            "pending_changes": self.pending_changes,
            "active_timers": self.autosave.pending_count,
            "listeners": self.change_bus.subscriber_count,
        })
        if not health["is_healthy"]:
            self.notifications.error("Data persistence system is experiencing issues.")
        return health

    async def close(self):
        """Tear down: drop unsaved autosaves, unsubscribe and stop realtime. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.autosave.cancel_all()
        self._unsubscribe()
        if self._listener is not None:
            await self._listener.stop()
