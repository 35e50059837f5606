"""
Structured logging for the portfolio sync layer.

Element writes, autosave flushes, share-link access and auth events all go
through one logger so the trail reads the same everywhere. Anything that may
carry user content is redacted or truncated before it is written.
"""

import logging
import os
from typing import Any, Dict, List, Optional

SENSITIVE_FIELDS = ['value', 'data', 'payload', 'content', 'secret', 'password', 'token']
MAX_LOGGED_STRING = 100
REDACTED = "[REDACTED]"

# Statuses that are expected outcomes rather than faults
WARNING_STATUSES = ("denied", "rejected", "partial")
ERROR_STATUSES = ("failed", "error")


class StructuredLogger:
    """Structured logger for element store, autosave and share-link operations."""

    def __init__(self, name: str = "portfolio", level: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

        # One stream handler per named logger, even if constructed twice
        if not self.logger.handlers:
            stream = logging.StreamHandler()
            stream.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
            self.logger.addHandler(stream)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log one operation outcome; the level follows the status."""
        message = f"{operation} [{status}]"
        if details:
            message = f"{message} {details}"

        if status in ERROR_STATUSES:
            self.logger.error(message)
        elif status in WARNING_STATUSES:
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_element_operation(self, operation: str, element_type: str, element_id: str,
                              value: Any = None, status: str = "success"):
        details = {"element": f"{element_type}:{element_id}"}
        if value is not None:
            details["value"] = _truncate(value if isinstance(value, str) else str(value), 50)
        self.log_operation(f"element.{operation}", status, details)

    def log_autosave(self, element_type: str, element_id: str, status: str = "success",
                     details: Dict[str, Any] = None):
        self.log_operation("autosave.flush", status, {"element": f"{element_type}:{element_id}", **(details or {})})

    def log_share_access(self, share_id: str, granted: bool, reason: str = ""):
        details = {"share_id": share_id, "granted": granted}
        if reason:
            details["reason"] = _truncate(reason, MAX_LOGGED_STRING, suffix="")
        self.log_operation("share.access", "granted" if granted else "denied", details)

    def log_validation_error(self, operation: str, errors: List[Any], target_identifier: str = None):
        """Log validation errors without echoing the rejected values."""
        messages = [_truncate(str(error), MAX_LOGGED_STRING, suffix="") for error in errors]
        details = {"operation": operation, "errors": messages, "error_count": len(messages)}
        if target_identifier:
            details["target_identifier"] = target_identifier
        self.log_operation("validation.error", "rejected", details)

    def log_auth_event(self, action: str, username: str, status: str = "success"):
        self.log_operation(f"auth.{action}", status, {"username": username})

    def info(self, message: str):
        self.logger.info(message)

    def warning(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)

    def debug(self, message: str):
        self.logger.debug(message)

    def exception(self, message: str):
        """Error plus the active traceback."""
        self.logger.exception(message)


logger = StructuredLogger()


def _truncate(text: str, limit: int, suffix: str = "...") -> str:
    return text[:limit] + suffix if len(text) > limit else text


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """
    Write an audit line: identifiers verbatim, payload redacted.

    The operation name is the event type with dots replaced by underscores
    ("share.create" is logged as "share_create").
    """
    details = dict(identifiers or {})
    if payload:
        details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)
    logger.log_operation(event_type.replace(".", "_"), "audit", details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Redact sensitive keys at any depth and truncate long strings."""
    hidden = () if reveal_sensitive else (SENSITIVE_FIELDS if sensitive_fields is None else sensitive_fields)

    def clean(item: Any) -> Any:
        if isinstance(item, dict):
            return {k: REDACTED if k in hidden else clean(v) for k, v in item.items()}
        if isinstance(item, list):
            return [clean(v) for v in item]
        if isinstance(item, str):
            return _truncate(item, MAX_LOGGED_STRING)
        return item

    return clean(payload)
