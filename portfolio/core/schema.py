"""
Record types for elements, backups, audit entries, share links and change events.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def element_key(element_type: str, element_id: str) -> str:
    """Cache key used for bulk hydration: "type:id"."""
    return f"{element_type}:{element_id}"


def split_element_key(key: str):
    element_type, _, element_id = key.partition(":")
    return element_type, element_id


@dataclass
class ElementRecord:
    owner_id: str
    element_type: str
    element_id: str
    value: Any
    version: int
    is_active: bool
    updated_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def key(self) -> str:
        return element_key(self.element_type, self.element_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['updated_at'] = self.updated_at.isoformat()
        return data


@dataclass
class BackupRecord:
    id: int
    original_id: int
    owner_id: str
    element_type: str
    element_id: str
    value: Any
    backup_reason: str
    created_at: datetime


@dataclass
class AuditEntry:
    id: int
    owner_id: str
    table_name: str
    record_id: int
    action: str  # INSERT, UPDATE, DELETE
    old_data: Optional[Dict[str, Any]]
    new_data: Optional[Dict[str, Any]]
    changed_fields: List[str]
    created_at: datetime


@dataclass
class ShareLink:
    share_id: str
    owner_id: str
    target_type: str
    target_id: str
    expires_at: datetime
    permissions: List[str] = field(default_factory=lambda: ["read"])
    is_active: bool = True
    access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    requires_password: bool = False
    created_at: Optional[datetime] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """Active and not yet expired; now == expires_at counts as expired."""
        now = now or utcnow()
        return self.is_active and now < self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ("expires_at", "last_accessed_at", "created_at"):
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return data


@dataclass
class ChangeEvent:
    """One element change, delivered synchronously through the Change Bus."""
    element_type: str
    element_id: str
    old_value: Any
    new_value: Any
    timestamp: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None
    action: str = "UPDATE"

    @property
    def key(self) -> str:
        return element_key(self.element_type, self.element_id)

    @classmethod
    def from_notification(cls, payload: Dict[str, Any]) -> 'ChangeEvent':
        """Build an event from a backend realtime notification."""
        return cls(
            element_type=payload["element_type"],
            element_id=payload["element_id"],
            old_value=payload.get("old_data"),
            new_value=payload.get("data"),
            timestamp=parse_timestamp(payload.get("timestamp")) or utcnow(),
            user_id=payload.get("owner_id"),
            action=payload.get("action", "UPDATE"),
        )
