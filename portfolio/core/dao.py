"""
Element store data access.

Owner-scoped upserts with version/backup/audit bookkeeping, soft deletes,
bulk writes without cross-batch atomicity, and audit/backup reads. Every write
is announced on the realtime change feed after it commits.
"""

import json
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from .config import ELEMENT_TYPES, is_strict_delete_backup
from .db import get_db, init_db
from .errors import BackendError, BackupError, ValidationFailed
from .realtime import change_feed
from .schema import AuditEntry, BackupRecord, ElementRecord, parse_timestamp, utcnow
from .validation import validate_element_value
from util.logging import audit_event, logger

# Initialize database on module import
init_db()

ELEMENT_COLUMNS = "id, owner_id, element_type, element_id, element_value, json_data, metadata, version, is_active, updated_at"


def _encode_value(value: Any) -> Tuple[Optional[str], Optional[str]]:
    """Strings go to element_value, structured payloads to json_data."""
    if isinstance(value, str):
        return value, None
    return None, json.dumps(value)


def _decode_value(element_value: Optional[str], json_data: Optional[str]) -> Any:
    if json_data is not None:
        return json.loads(json_data)
    return element_value


def _row_to_record(row) -> ElementRecord:
    row_id, owner_id, element_type, element_id, element_value, json_data, metadata, version, is_active, updated_at = row
    return ElementRecord(
        id=row_id,
        owner_id=owner_id,
        element_type=element_type,
        element_id=element_id,
        value=_decode_value(element_value, json_data),
        metadata=json.loads(metadata) if metadata else {},
        version=version,
        is_active=bool(is_active),
        updated_at=parse_timestamp(updated_at),
    )


def _check_element(element_type: str, element_id: str, value: Any) -> Any:
    """Server-side validation; returns the sanitized value or raises ValidationFailed."""
    errors = []
    if element_type not in ELEMENT_TYPES:
        errors.append(f"Invalid element_type: {element_type}")
    if not element_id or not element_id.strip():
        errors.append("element_id cannot be empty")
    if value is None:
        errors.append("value cannot be null")
    if errors:
        raise ValidationFailed(errors)

    result = validate_element_value(value, required=False)
    if not result.valid:
        raise ValidationFailed(result.errors)
    return result.sanitized


def _insert_audit(cursor, owner_id: str, record_id: int, action: str,
                  old_data: Optional[Dict[str, Any]], new_data: Optional[Dict[str, Any]],
                  changed_fields: List[str]):
    cursor.execute(
        '''INSERT INTO audit_log (owner_id, table_name, record_id, action, old_data, new_data, changed_fields, created_at)
           VALUES (?, 'elements', ?, ?, ?, ?, ?, ?)''',
        (
            owner_id,
            record_id,
            action,
            json.dumps(old_data) if old_data is not None else None,
            json.dumps(new_data) if new_data is not None else None,
            json.dumps(changed_fields),
            utcnow().isoformat(),
        )
    )


def _insert_backup(cursor, row, reason: str):
    row_id, owner_id, element_type, element_id, element_value, json_data = row[:6]
    cursor.execute(
        '''INSERT INTO element_backups (original_id, owner_id, element_type, element_id, element_value, json_data, backup_reason, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
        (row_id, owner_id, element_type, element_id, element_value, json_data, reason, utcnow().isoformat())
    )


def _select_row(cursor, owner_id: str, element_type: str, element_id: str):
    cursor.execute(
        f"SELECT {ELEMENT_COLUMNS} FROM elements WHERE owner_id = ? AND element_type = ? AND element_id = ?",
        (owner_id, element_type, element_id)
    )
    return cursor.fetchone()


def upsert_element(owner_id: str, element_type: str, element_id: str, value: Any,
                   metadata: Optional[Dict[str, Any]] = None) -> Tuple[ElementRecord, Any]:
    """
    Insert or update one element in a single write transaction.

    Returns the stored record and the previous active value (None on insert).
    An update backs up the prior row, bumps version and refreshes updated_at.

    Raises:
        ValidationFailed: unknown element type or a value over the size limits
        BackendError: storage fault
    """
    value = _check_element(element_type, element_id, value)
    element_value, json_data = _encode_value(value)
    metadata_json = json.dumps(metadata or {})
    now = utcnow().isoformat()

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")

            existing = _select_row(cursor, owner_id, element_type, element_id)
            if existing:
                previous_record = _row_to_record(existing)
                previous_value = previous_record.value if previous_record.is_active else None
                _insert_backup(cursor, existing, "pre_update_backup")

                changed_fields = []
                if existing[4] != element_value:
                    changed_fields.append("element_value")
                if existing[5] != json_data:
                    changed_fields.append("json_data")
                if existing[6] != metadata_json:
                    changed_fields.append("metadata")
                if not existing[8]:
                    changed_fields.append("is_active")

                cursor.execute(
                    '''UPDATE elements
                       SET element_value = ?, json_data = ?, metadata = ?, version = version + 1,
                           is_active = 1, updated_at = ?
                       WHERE id = ?''',
                    (element_value, json_data, metadata_json, now, existing[0])
                )
                record_id = existing[0]
                action = "UPDATE"
                _insert_audit(cursor, owner_id, record_id, action,
                              {"value": previous_record.value, "version": previous_record.version},
                              {"value": value, "version": previous_record.version + 1},
                              changed_fields)
            else:
                previous_value = None
                cursor.execute(
                    '''INSERT INTO elements (owner_id, element_type, element_id, element_value, json_data, metadata,
                                             version, is_active, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, 1, 1, ?, ?)''',
                    (owner_id, element_type, element_id, element_value, json_data, metadata_json, now, now)
                )
                record_id = cursor.lastrowid
                action = "INSERT"
                _insert_audit(cursor, owner_id, record_id, action, None, {"value": value, "version": 1}, [])

            conn.commit()
            record = _row_to_record(_select_row(cursor, owner_id, element_type, element_id))
    except sqlite3.Error as e:
        logger.log_element_operation("upsert", element_type, element_id, status="failed")
        logger.error(f"Database error during upsert_element for owner '{owner_id}': {e}")
        raise BackendError(f"Failed to save {element_type}:{element_id}") from e

    logger.log_element_operation("upsert", element_type, element_id, value)
    change_feed.publish(owner_id, element_type, element_id, action,
                        data=record.value, old_data=previous_value)
    return record, previous_value


def get_elements(owner_id: str, element_type: Optional[str] = None,
                 element_id: Optional[str] = None) -> List[ElementRecord]:
    """Active elements for an owner, newest first. Omitted filters match everything."""
    if not owner_id:
        return []

    query = f"SELECT {ELEMENT_COLUMNS} FROM elements WHERE owner_id = ? AND is_active = 1"
    params: List[Any] = [owner_id]
    if element_type is not None:
        query += " AND element_type = ?"
        params.append(element_type)
    if element_id is not None:
        query += " AND element_id = ?"
        params.append(element_id)
    query += " ORDER BY updated_at DESC, id DESC"

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_row_to_record(row) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        logger.error(f"Failed to read elements for owner '{owner_id}': {e}")
        raise BackendError("Failed to read elements") from e


def get_element(owner_id: str, element_type: str, element_id: str) -> Optional[ElementRecord]:
    """Single active element or None; not-found is not an error."""
    rows = get_elements(owner_id, element_type, element_id)
    return rows[0] if rows else None


def bulk_upsert(owner_id: str, updates: List[Dict[str, Any]]) -> Tuple[int, List[Dict[str, str]]]:
    """
    Apply each update in its own transaction.

    A failing item does not roll back the ones before it; its error is reported
    as {element_type, element_id, message}.
    """
    saved_count = 0
    errors: List[Dict[str, str]] = []

    for update in updates:
        element_type = update.get("element_type", "")
        element_id = update.get("element_id", "")
        try:
            upsert_element(owner_id, element_type, element_id, update.get("value"), update.get("metadata"))
            saved_count += 1
        except ValidationFailed as e:
            errors.append({"element_type": element_type, "element_id": element_id,
                           "message": "; ".join(e.errors)})
        except BackendError as e:
            errors.append({"element_type": element_type, "element_id": element_id, "message": str(e)})

    logger.log_operation("element.bulk_upsert", "success" if not errors else "partial",
                         {"saved_count": saved_count, "error_count": len(errors)})
    return saved_count, errors


def soft_delete_element(owner_id: str, element_type: str, element_id: str,
                        strict_backup: Optional[bool] = None) -> bool:
    """
    Copy the element to the backup table, then mark it inactive.

    The backup is best-effort unless strict_backup is set (or
    STRICT_DELETE_BACKUP is enabled), in which case a failed backup raises
    BackupError and nothing is deleted. Returns False if no active row exists.
    """
    if strict_backup is None:
        strict_backup = is_strict_delete_backup()

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")

            existing = _select_row(cursor, owner_id, element_type, element_id)
            if not existing or not existing[8]:
                conn.rollback()
                return False

            try:
                cursor.execute("SAVEPOINT element_backup")
                _insert_backup(cursor, existing, "pre_deletion_backup")
                cursor.execute("RELEASE SAVEPOINT element_backup")
            except sqlite3.Error as backup_error:
                cursor.execute("ROLLBACK TO SAVEPOINT element_backup")
                if strict_backup:
                    conn.rollback()
                    raise BackupError(f"Backup before deleting {element_type}:{element_id} failed") from backup_error
                logger.warning(f"Backup before deleting {element_type}:{element_id} failed, continuing: {backup_error}")

            previous_value = _decode_value(existing[4], existing[5])
            cursor.execute(
                "UPDATE elements SET is_active = 0, updated_at = ? WHERE id = ?",
                (utcnow().isoformat(), existing[0])
            )
            _insert_audit(cursor, owner_id, existing[0], "DELETE",
                          {"value": previous_value, "version": existing[7]}, None, ["is_active"])
            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Database error during soft_delete_element for owner '{owner_id}': {e}")
        raise BackendError(f"Failed to delete {element_type}:{element_id}") from e

    logger.log_element_operation("delete", element_type, element_id)
    audit_event("element.soft_delete", {"owner_id": owner_id, "element": f"{element_type}:{element_id}"},
                {"value": previous_value, "strict_backup": strict_backup})
    change_feed.publish(owner_id, element_type, element_id, "DELETE", data=None, old_data=previous_value)
    return True


BACKUP_COLUMNS = "id, original_id, owner_id, element_type, element_id, element_value, json_data, backup_reason, created_at"


def _row_to_backup(row) -> BackupRecord:
    return BackupRecord(
        id=row[0],
        original_id=row[1],
        owner_id=row[2],
        element_type=row[3],
        element_id=row[4],
        value=_decode_value(row[5], row[6]),
        backup_reason=row[7],
        created_at=parse_timestamp(row[8]),
    )


def list_backups(owner_id: str, element_type: Optional[str] = None, element_id: Optional[str] = None,
                 limit: int = 50) -> List[BackupRecord]:
    """Backups for an owner, newest first."""
    if limit <= 0:
        return []

    query = f"SELECT {BACKUP_COLUMNS} FROM element_backups WHERE owner_id = ?"
    params: List[Any] = [owner_id]
    if element_type is not None:
        query += " AND element_type = ?"
        params.append(element_type)
    if element_id is not None:
        query += " AND element_id = ?"
        params.append(element_id)
    query += " ORDER BY id DESC LIMIT ?"
    params.append(limit)

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_row_to_backup(row) for row in cursor.fetchall()]
    except sqlite3.Error as e:
        logger.error(f"Failed to read backups for owner '{owner_id}': {e}")
        raise BackendError("Failed to read backups") from e


def get_backup(owner_id: str, backup_id: int) -> Optional[BackupRecord]:
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {BACKUP_COLUMNS} FROM element_backups WHERE owner_id = ? AND id = ?",
                (owner_id, backup_id)
            )
            row = cursor.fetchone()
            return _row_to_backup(row) if row else None
    except sqlite3.Error as e:
        logger.error(f"Failed to read backup {backup_id} for owner '{owner_id}': {e}")
        raise BackendError("Failed to read backup") from e


def list_audit_log(owner_id: str, limit: int = 50) -> List[AuditEntry]:
    """Audit entries for an owner, newest first."""
    if limit <= 0:
        return []

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                '''SELECT id, owner_id, table_name, record_id, action, old_data, new_data, changed_fields, created_at
                   FROM audit_log WHERE owner_id = ? ORDER BY id DESC LIMIT ?''',
                (owner_id, limit)
            )
            return [
                AuditEntry(
                    id=row[0],
                    owner_id=row[1],
                    table_name=row[2],
                    record_id=row[3],
                    action=row[4],
                    old_data=json.loads(row[5]) if row[5] else None,
                    new_data=json.loads(row[6]) if row[6] else None,
                    changed_fields=json.loads(row[7]) if row[7] else [],
                    created_at=parse_timestamp(row[8]),
                )
                for row in cursor.fetchall()
            ]
    except sqlite3.Error as e:
        logger.error(f"Failed to read audit log for owner '{owner_id}': {e}")
        raise BackendError("Failed to read audit log") from e


def count_elements(owner_id: Optional[str] = None) -> int:
    """Count active elements for an owner or for all owners."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            if owner_id:
                cursor.execute("SELECT COUNT(*) FROM elements WHERE owner_id = ? AND is_active = 1", (owner_id,))
            else:
                cursor.execute("SELECT COUNT(*) FROM elements WHERE is_active = 1")
            result = cursor.fetchone()
            return result[0] if result else 0
    except sqlite3.Error as e:
        logger.error(f"Failed to count elements: {e}")
        return 0
