"""
Runtime configuration for the portfolio backend service and client.
Everything is read from environment variables; scripts load a .env first.
"""

import os
from pathlib import Path

# Database path configuration (read through get_db_path() so it can be redirected)
DB_PATH = os.getenv("DB_PATH", "./data/portfolio.db")

# Client defaults
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
SITE_ORIGIN = os.getenv("SITE_ORIGIN", "http://localhost:3000")
SHARE_PATH = os.getenv("SHARE_PATH", "forms")

# Autosave and validation limits
AUTOSAVE_DELAY_MS = int(os.getenv("AUTOSAVE_DELAY_MS", "2000"))
TEXT_MAX_LENGTH = int(os.getenv("TEXT_MAX_LENGTH", "10000"))
JSON_MAX_BYTES = int(os.getenv("JSON_MAX_BYTES", "1048576"))  # 1 MiB

# Share links and sessions
SHARE_LINK_DEFAULT_DAYS = int(os.getenv("SHARE_LINK_DEFAULT_DAYS", "30"))
SESSION_TTL_SEC = int(os.getenv("SESSION_TTL_SEC", "86400"))

# Bootstrap owner account (local username/password login)
OWNER_USERNAME = os.getenv("OWNER_USERNAME")
OWNER_PASSWORD = os.getenv("OWNER_PASSWORD")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

ELEMENT_TYPES = [
    "text",
    "image",
    "project",
    "education",
    "profile",
    "form",
    "form_submission",
    "share",
]

# Version string
VERSION = "1.0.0"


def get_db_path() -> str:
    """Current database path; honours DB_PATH changes made after import."""
    return os.getenv("DB_PATH", DB_PATH)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def ensure_db_directory():
    """Ensure the database directory exists."""
    Path(get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def get_autosave_delay() -> float:
    """Debounce window in seconds."""
    return AUTOSAVE_DELAY_MS / 1000.0


def is_strict_delete_backup() -> bool:
    """Two-phase delete: a failed backup aborts the delete instead of being ignored."""
    return os.getenv("STRICT_DELETE_BACKUP", "false").lower() == "true"


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if AUTOSAVE_DELAY_MS < 0:
        issues.append("AUTOSAVE_DELAY_MS must be >= 0")

    if TEXT_MAX_LENGTH < 1:
        issues.append("TEXT_MAX_LENGTH must be >= 1")

    if JSON_MAX_BYTES < 1:
        issues.append("JSON_MAX_BYTES must be >= 1")

    if SHARE_LINK_DEFAULT_DAYS < 1:
        issues.append("SHARE_LINK_DEFAULT_DAYS must be >= 1")

    if SESSION_TTL_SEC < 60:
        issues.append("SESSION_TTL_SEC must be >= 60")

    if bool(OWNER_USERNAME) != bool(OWNER_PASSWORD):
        issues.append("OWNER_USERNAME and OWNER_PASSWORD must be set together")

    return issues
