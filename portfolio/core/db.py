"""
SQLite storage for the portfolio backend service.
One row per (owner, element_type, element_id); soft-deleted rows stay in place
with is_active = 0.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator
from .config import get_db_path, ensure_db_directory


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    ensure_db_directory()
    conn = sqlite3.connect(get_db_path(), timeout=10)
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize the database with required tables."""
    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS elements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                element_type TEXT NOT NULL,
                element_id TEXT NOT NULL,
                element_value TEXT,
                json_data TEXT,
                metadata TEXT DEFAULT '{}',
                version INTEGER DEFAULT 1,
                is_active BOOLEAN DEFAULT TRUE,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                UNIQUE (owner_id, element_type, element_id)
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS element_backups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                original_id INTEGER NOT NULL,
                owner_id TEXT NOT NULL,
                element_type TEXT NOT NULL,
                element_id TEXT NOT NULL,
                element_value TEXT,
                json_data TEXT,
                backup_reason TEXT DEFAULT 'auto_backup',
                created_at TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                table_name TEXT NOT NULL,
                record_id INTEGER NOT NULL,
                action TEXT NOT NULL CHECK (action IN ('INSERT', 'UPDATE', 'DELETE')),
                old_data TEXT,
                new_data TEXT,
                changed_fields TEXT,
                created_at TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS share_links (
                share_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                target_type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                permissions TEXT DEFAULT '["read"]',
                password_hash TEXT,
                password_salt TEXT,
                expires_at TIMESTAMP NOT NULL,
                is_active BOOLEAN DEFAULT TRUE,
                access_count INTEGER DEFAULT 0,
                last_accessed_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT UNIQUE NOT NULL,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                password_salt TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'guest' CHECK (role IN ('owner', 'guest')),
                created_at TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                expires_at TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_elements_owner_type_id ON elements(owner_id, element_type, element_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_elements_updated_at ON elements(updated_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_log_owner ON audit_log(owner_id, created_at)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_backups_owner ON element_backups(owner_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_share_links_target ON share_links(owner_id, target_id)')

        conn.commit()


def health_check() -> bool:
    """Check if database is accessible and has correct schema."""
    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='elements'")
            return cursor.fetchone() is not None
    except sqlite3.Error:
        return False
