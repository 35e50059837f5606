"""
Async client for the backend element store.

Writes return structured results (SaveResult, BulkSaveResult). A missing
session, a permission failure, or a backend fault raises instead, and the
call site handles it. HTTP status codes map back onto the shared error
taxonomy: 401 Unauthenticated, 403 PermissionDenied, 422 ValidationFailed,
5xx or transport failure BackendError.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..core.auth import Principal
from ..core.config import API_BASE_URL
from ..core.errors import BackendError, PermissionDenied, Unauthenticated, ValidationFailed
from ..core.schema import element_key, utcnow
from ..core.validation import validate_element_value
from .notifications import NotificationCenter
from util.logging import logger

DEFAULT_TIMEOUT = 10.0


@dataclass
class SaveResult:
    success: bool
    value: Any = None
    errors: List[str] = field(default_factory=list)
    version: Optional[int] = None
    previous_value: Any = None

    def raise_for_errors(self):
        if not self.success:
            raise ValidationFailed(self.errors)
        return self.value


@dataclass
class BulkSaveResult:
    success: bool
    saved_count: int
    saved_keys: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def messages(self) -> List[str]:
        return [f"{e['element_type']}:{e['element_id']}: {e['message']}" for e in self.errors]


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text}
    if not isinstance(body, dict):
        return {"message": str(body)}
    if "message" not in body and "detail" in body:
        body["message"] = str(body["detail"])
    return body


def raise_for_status(response: httpx.Response):
    """Translate an error response into the shared exception taxonomy."""
    if response.status_code < 400:
        return

    body = _error_body(response)
    message = body.get("message") or f"HTTP {response.status_code}"

    if response.status_code == 401:
        raise Unauthenticated(message)
    if response.status_code == 403:
        raise PermissionDenied(message)
    if response.status_code == 422:
        raise ValidationFailed(body.get("errors") or [message], message)
    raise BackendError(f"{message} (HTTP {response.status_code})")


class RemoteStoreClient:
    """Element store operations for one client session."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 notifications: Optional[NotificationCenter] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url or API_BASE_URL, timeout=timeout)
        self.token = token
        self.principal: Optional[Principal] = None
        self.notifications = notifications or NotificationCenter()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self._http.aclose()

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}

    def _require_session(self):
        if not self.token:
            raise Unauthenticated()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**self.auth_headers(), **kwargs.pop("headers", {})}
        try:
            return await self._http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise BackendError(f"Request to backend failed: {e}") from e

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        response = await self._request(method, path, **kwargs)
        raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Malformed response from {path}: {e}") from e

    # --- Session ---

    async def login(self, username: str, password: str) -> Principal:
        """Sign in with a username or email and keep the session token."""
        data = await self._call("POST", "/auth/login", json={"username": username, "password": password})
        self.token = data["token"]
        self.principal = Principal(user_id=data["user_id"], username=data["username"], role=data["role"])
        return self.principal

    async def logout(self) -> bool:
        if not self.token:
            return False
        try:
            data = await self._call("POST", "/auth/logout")
            return bool(data.get("success"))
        finally:
            self.token = None
            self.principal = None

    # --- Elements ---

    async def get(self, element_type: str, element_id: str) -> Any:
        """Stored value or None; not found is not an error."""
        self._require_session()
        data = await self._call("GET", "/rpc/get", params={"element_type": element_type, "element_id": element_id})
        elements = data.get("elements", [])
        return elements[0]["value"] if elements else None

    async def set(self, element_type: str, element_id: str, value: Any, auto_save: bool = False,
                  validate: bool = True, notify: bool = True) -> SaveResult:
        """
        Save one element.

        Validation failures (local or server-side) come back as an unsuccessful
        SaveResult carrying the error messages. On success the result holds the
        value actually stored, which may be sanitized.

        Raises:
            Unauthenticated: no active session
            PermissionDenied: the session is not the portfolio owner
            BackendError: network or storage fault
        """
        self._require_session()

        if validate:
            validation = validate_element_value(value)
            if not validation.valid:
                logger.log_validation_error("set", validation.errors, element_key(element_type, element_id))
                if notify:
                    self.notifications.error(f"Validation failed: {', '.join(validation.errors)}")
                return SaveResult(False, errors=validation.errors)
            value = validation.sanitized

        payload = {
            "element_type": element_type,
            "element_id": element_id,
            "value": value,
            "metadata": {"auto_save": auto_save, "last_modified": utcnow().isoformat()},
        }

        try:
            data = await self._call("POST", "/rpc/upsert", json=payload)
        except ValidationFailed as e:
            if notify:
                self.notifications.error(f"Validation failed: {', '.join(e.errors)}")
            return SaveResult(False, errors=e.errors)
        except (BackendError, PermissionDenied, Unauthenticated) as e:
            if notify:
                self.notifications.error(f"Failed to save: {e}")
            raise

        element = data.get("element") if isinstance(data, dict) else None
        if not element:
            raise BackendError("Save response did not include the stored element")
        if notify and not auto_save:
            self.notifications.success("Changes saved successfully!")
        return SaveResult(True, value=element["value"], version=element["version"],
                          previous_value=data.get("previous_value"))

    async def delete(self, element_type: str, element_id: str, notify: bool = True) -> bool:
        """Soft delete; the server backs up the prior value first."""
        self._require_session()
        try:
            data = await self._call("DELETE", f"/elements/{element_type}/{element_id}")
        except BackendError as e:
            if notify:
                self.notifications.error(f"Failed to delete: {e}")
            raise

        deleted = bool(data.get("success"))
        if deleted and notify:
            self.notifications.success("Item deleted successfully!")
        return deleted

    async def fetch_all(self) -> Dict[str, Any]:
        """All active values keyed "type:id"; guests get the public portfolio. Raises on failure."""
        path = "/rpc/get" if self.token else "/public/elements"
        data = await self._call("GET", path)
        return {element_key(e["element_type"], e["element_id"]): e["value"] for e in data.get("elements", [])}

    async def list_all(self) -> Dict[str, Any]:
        """Like fetch_all, but a failure degrades to an empty mapping."""
        try:
            return await self.fetch_all()
        except (BackendError, Unauthenticated, PermissionDenied) as e:
            logger.error(f"Failed to load portfolio data: {e}")
            return {}

    async def bulk_set(self, updates: List[Dict[str, Any]], validate: bool = True,
                       notify: bool = True) -> BulkSaveResult:
        """
        Save several elements. Not atomic: each item succeeds or fails alone.

        Each update is {element_type, element_id, value}. success is True only
        when every item was saved; saved_keys lists what was applied.
        """
        self._require_session()

        errors: List[Dict[str, str]] = []
        to_send = []
        for update in updates:
            item = {
                "element_type": update["element_type"],
                "element_id": update["element_id"],
                "value": update["value"],
                "metadata": {"bulk_operation": True, "timestamp": utcnow().isoformat()},
            }
            if validate:
                validation = validate_element_value(update["value"])
                if not validation.valid:
                    errors.append({"element_type": item["element_type"], "element_id": item["element_id"],
                                   "message": "; ".join(validation.errors)})
                    continue
                item["value"] = validation.sanitized
            to_send.append(item)

        saved_count = 0
        if to_send:
            try:
                data = await self._call("POST", "/rpc/bulk_upsert", json={"updates": to_send})
            except BackendError as e:
                if notify:
                    self.notifications.error(f"Bulk save failed: {e}")
                raise
            saved_count = data["saved_count"]
            errors.extend(data.get("errors", []))

        failed = {element_key(e["element_type"], e["element_id"]) for e in errors}
        saved_keys = [element_key(i["element_type"], i["element_id"]) for i in to_send
                      if element_key(i["element_type"], i["element_id"]) not in failed]
        result = BulkSaveResult(success=saved_count == len(updates), saved_count=saved_count,
                                saved_keys=saved_keys, errors=errors)

        if notify:
            if result.success:
                self.notifications.success(f"Successfully saved {saved_count} items!")
            else:
                self.notifications.warning(f"Saved {saved_count} of {len(updates)} items")
        return result

    # --- Audit and backups ---

    async def get_audit_log(self, limit: int = 50) -> List[Dict[str, Any]]:
        try:
            data = await self._call("GET", "/audit", params={"limit": limit})
        except (BackendError, Unauthenticated, PermissionDenied) as e:
            logger.error(f"Failed to get audit log: {e}")
            return []
        return data.get("entries", [])

    async def list_backups(self, element_type: Optional[str] = None, element_id: Optional[str] = None,
                           limit: int = 50) -> List[Dict[str, Any]]:
        self._require_session()
        params = {"limit": limit}
        if element_type is not None:
            params["element_type"] = element_type
        if element_id is not None:
            params["element_id"] = element_id
        data = await self._call("GET", "/backups", params=params)
        return data.get("backups", [])

    async def restore_from_backup(self, backup_id: int) -> bool:
        """Write a backed-up value back as the live element."""
        self._require_session()
        response = await self._request("GET", f"/backups/{backup_id}")
        if response.status_code == 404:
            self.notifications.error("Restore failed: backup not found")
            return False
        raise_for_status(response)
        backup = response.json()

        result = await self.set(backup["element_type"], backup["element_id"], backup["value"], notify=False)
        if result.success:
            self.notifications.success("Data restored from backup successfully!")
            return True

        self.notifications.error(f"Restore failed: {', '.join(result.errors) or 'unknown error'}")
        return False

    # --- Share links ---

    async def create_share_link(self, target_type: str, target_id: str, expires_in_days: Optional[int] = None,
                                permissions: Optional[List[str]] = None,
                                password: Optional[str] = None) -> Dict[str, Any]:
        self._require_session()
        payload = {"target_type": target_type, "target_id": target_id, "permissions": permissions or ["read"]}
        if expires_in_days is not None:
            payload["expires_in_days"] = expires_in_days
        if password:
            payload["password"] = password
        return await self._call("POST", "/shares", json=payload)

    async def list_share_links(self, target_id: Optional[str] = None) -> List[Dict[str, Any]]:
        self._require_session()
        params = {"target_id": target_id} if target_id else {}
        data = await self._call("GET", "/shares", params=params)
        return data.get("shares", [])

    async def revoke_share_link(self, share_id: str) -> bool:
        self._require_session()
        data = await self._call("DELETE", f"/shares/{share_id}")
        return bool(data.get("success"))

    async def validate_share_link(self, share_id: str) -> bool:
        """Pure check; works without a session and records no access."""
        data = await self._call("GET", f"/shares/{share_id}/validate")
        return bool(data.get("valid"))

    async def open_shared_content(self, share_id: str, password: Optional[str] = None) -> Dict[str, Any]:
        """Read-only content behind a share link. Raises PermissionDenied for invalid links."""
        params = {"password": password} if password else {}
        return await self._call("GET", f"/shares/{share_id}/content", params=params)

    # --- Health ---

    async def health_check(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {"authenticated": self.is_authenticated}
        try:
            server = await self._call("GET", "/health")
        except BackendError as e:
            details["database_connected"] = False
            details["error"] = str(e)
            return {"is_healthy": False, "details": details}

        details["database_connected"] = bool(server.get("db_health"))
        details["server_status"] = server.get("status")
        details["version"] = server.get("version")
        return {
            "is_healthy": details["authenticated"] and details["database_connected"],
            "details": details,
        }
