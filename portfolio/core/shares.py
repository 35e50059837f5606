"""
Share links: capability URLs granting read access to one element without a session.

A link is valid iff it exists, is active and now < expires_at (equality is
expired). Checking validity never mutates anything; access is recorded
separately by record_share_access, and open_shared_content is the one place
that does both.
"""

import json
import secrets
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .auth import hash_password, verify_password
from .config import ELEMENT_TYPES, SHARE_LINK_DEFAULT_DAYS
from .dao import get_element
from .db import get_db
from .errors import BackendError, PermissionDenied, ValidationFailed
from .schema import ShareLink, parse_timestamp, utcnow
from util.logging import audit_event, logger

SHARE_COLUMNS = ("share_id, owner_id, target_type, target_id, permissions, password_hash, "
                 "expires_at, is_active, access_count, last_accessed_at, created_at")

# Shared views are read-only
SHARE_PERMISSIONS = ('read',)


def _row_to_share(row) -> ShareLink:
    return ShareLink(
        share_id=row[0],
        owner_id=row[1],
        target_type=row[2],
        target_id=row[3],
        permissions=json.loads(row[4]) if row[4] else ["read"],
        requires_password=row[5] is not None,
        expires_at=parse_timestamp(row[6]),
        is_active=bool(row[7]),
        access_count=row[8] or 0,
        last_accessed_at=parse_timestamp(row[9]),
        created_at=parse_timestamp(row[10]),
    )


def create_share_link(owner_id: str, target_type: str, target_id: str,
                      expires_in_days: Optional[int] = None,
                      permissions: Optional[List[str]] = None,
                      password: Optional[str] = None) -> ShareLink:
    """Create an active share link for one of the owner's elements."""
    permissions = permissions or ["read"]
    expires_in_days = SHARE_LINK_DEFAULT_DAYS if expires_in_days is None else expires_in_days

    errors = []
    if target_type not in ELEMENT_TYPES:
        errors.append(f"Invalid target_type: {target_type}")
    if not target_id or not target_id.strip():
        errors.append("target_id cannot be empty")
    if expires_in_days <= 0:
        errors.append("expires_in_days must be positive")
    unknown = [p for p in permissions if p not in SHARE_PERMISSIONS]
    if unknown:
        errors.append(f"Unknown permissions: {unknown}")
    if errors:
        raise ValidationFailed(errors)

    share_id = f"share_{secrets.token_urlsafe(16)}"
    now = utcnow()
    expires_at = now + timedelta(days=expires_in_days)
    password_hash = password_salt = None
    if password:
        password_hash, password_salt = hash_password(password)

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                '''INSERT INTO share_links (share_id, owner_id, target_type, target_id, permissions,
                                            password_hash, password_salt, expires_at, is_active,
                                            access_count, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, 0, ?, ?)''',
                (share_id, owner_id, target_type, target_id, json.dumps(permissions),
                 password_hash, password_salt, expires_at.isoformat(), now.isoformat(), now.isoformat())
            )
            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Failed to create share link for {target_type}:{target_id}: {e}")
        raise BackendError("Failed to create share link") from e

    audit_event("share.create", {"owner_id": owner_id, "share_id": share_id},
                {"target": f"{target_type}:{target_id}", "expires_at": expires_at.isoformat(),
                 "permissions": permissions, "password": password})
    return get_share_link(share_id)


def get_share_link(share_id: str) -> Optional[ShareLink]:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(f"SELECT {SHARE_COLUMNS} FROM share_links WHERE share_id = ?", (share_id,))
        row = cursor.fetchone()
        return _row_to_share(row) if row else None


def is_share_valid(share_id: str, now: Optional[datetime] = None) -> bool:
    """Pure check: exists, active, and not expired."""
    share = get_share_link(share_id)
    return share is not None and share.is_valid(now)


def record_share_access(share_id: str) -> int:
    """Increment the access counter; returns the new count (0 if the link is unknown)."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            '''UPDATE share_links
               SET access_count = access_count + 1, last_accessed_at = ?, updated_at = ?
               WHERE share_id = ?''',
            (utcnow().isoformat(), utcnow().isoformat(), share_id)
        )
        conn.commit()
        if cursor.rowcount == 0:
            return 0
        cursor.execute("SELECT access_count FROM share_links WHERE share_id = ?", (share_id,))
        return cursor.fetchone()[0]


def _check_share_password(share_id: str, password: Optional[str]) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT password_hash, password_salt FROM share_links WHERE share_id = ?", (share_id,))
        row = cursor.fetchone()
    if not row or row[0] is None:
        return True
    return bool(password) and verify_password(password, row[0], row[1])


def open_shared_content(share_id: str, password: Optional[str] = None,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Resolve a share link to its read-only content.

    Validates the link, checks the password when one is set, records the
    access and returns the share plus the target element value (None when the
    element no longer exists).

    Raises:
        PermissionDenied: invalid, expired, revoked, or wrong password
    """
    share = get_share_link(share_id)
    if share is None or not share.is_valid(now):
        reason = "not_found" if share is None else "expired_or_revoked"
        logger.log_share_access(share_id, granted=False, reason=reason)
        raise PermissionDenied("Share link is invalid or has expired")

    if share.requires_password and not _check_share_password(share_id, password):
        logger.log_share_access(share_id, granted=False, reason="bad_password")
        raise PermissionDenied("Share link password is incorrect")

    share.access_count = record_share_access(share_id)
    logger.log_share_access(share_id, granted=True)

    element = get_element(share.owner_id, share.target_type, share.target_id)
    return {
        "share": share,
        "value": element.value if element else None,
        "updated_at": element.updated_at if element else None,
    }


def revoke_share_link(owner_id: str, share_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            "UPDATE share_links SET is_active = 0, updated_at = ? WHERE share_id = ? AND owner_id = ?",
            (utcnow().isoformat(), share_id, owner_id)
        )
        conn.commit()
        revoked = cursor.rowcount > 0

    logger.log_operation("share.revoke", "success" if revoked else "not_found", {"share_id": share_id})
    return revoked


def list_share_links(owner_id: str, target_id: Optional[str] = None) -> List[ShareLink]:
    """Owner's share links, newest first."""
    query = f"SELECT {SHARE_COLUMNS} FROM share_links WHERE owner_id = ?"
    params: List[Any] = [owner_id]
    if target_id is not None:
        query += " AND target_id = ?"
        params.append(target_id)
    query += " ORDER BY created_at DESC"

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return [_row_to_share(row) for row in cursor.fetchall()]
