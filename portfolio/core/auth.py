"""
Local username/password accounts and bearer-token sessions.

Bare usernames map to a derived "<username>@portfolio.local" email so owners
can sign in with either form. Passwords are stored as PBKDF2-HMAC-SHA256
digests with a per-user salt.
"""

import base64
import os
import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import OWNER_PASSWORD, OWNER_USERNAME, SESSION_TTL_SEC
from .db import get_db
from .errors import BackendError, Unauthenticated
from .schema import parse_timestamp, utcnow
from util.logging import logger

ROLES = ('owner', 'guest')
LOCAL_EMAIL_DOMAIN = "portfolio.local"
PBKDF2_ITERATIONS = 100000


@dataclass
class Principal:
    user_id: str
    username: str
    role: str

    @property
    def is_owner(self) -> bool:
        return self.role == 'owner'


@dataclass
class Session:
    token: str
    principal: Principal
    expires_at: datetime


def _kdf(salt: bytes) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )


def hash_password(password: str, salt: Optional[bytes] = None):
    """Return (hash, salt) as base64 strings."""
    salt = salt or os.urandom(16)
    digest = _kdf(salt).derive(password.encode())
    return base64.b64encode(digest).decode(), base64.b64encode(salt).decode()


def verify_password(password: str, password_hash: str, password_salt: str) -> bool:
    try:
        _kdf(base64.b64decode(password_salt)).verify(password.encode(), base64.b64decode(password_hash))
        return True
    except InvalidKey:
        return False


def derive_email(identifier: str) -> str:
    """Emails pass through; bare usernames get the local domain."""
    identifier = identifier.strip().lower()
    if '@' in identifier:
        return identifier
    return f"{identifier}@{LOCAL_EMAIL_DOMAIN}"


def create_user(username: str, password: str, role: str = 'guest', email: Optional[str] = None) -> Principal:
    """Create an account. Raises ValueError for bad input or a taken username."""
    if role not in ROLES:
        raise ValueError(f"role must be one of: {list(ROLES)}")
    if not username or not username.strip():
        raise ValueError("username cannot be empty")
    if not password or len(password) < 8:
        raise ValueError("password must be at least 8 characters")

    username = username.strip()
    password_hash, password_salt = hash_password(password)
    user_id = str(uuid.uuid4())

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                '''INSERT INTO users (id, username, email, password_hash, password_salt, role, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)''',
                (user_id, username, email or derive_email(username), password_hash, password_salt, role,
                 utcnow().isoformat())
            )
            conn.commit()
    except sqlite3.IntegrityError as e:
        raise ValueError(f"user '{username}' already exists") from e

    logger.log_auth_event("create_user", username)
    return Principal(user_id=user_id, username=username, role=role)


def ensure_owner_account(username: Optional[str] = None, password: Optional[str] = None) -> Optional[Principal]:
    """Create the bootstrap owner from config if it does not exist yet."""
    username = username or OWNER_USERNAME
    password = password or OWNER_PASSWORD
    if not username or not password:
        return None

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT id, username, role FROM users WHERE username = ?", (username,))
        row = cursor.fetchone()
    if row:
        return Principal(user_id=row[0], username=row[1], role=row[2])

    return create_user(username, password, role='owner')


def authenticate(identifier: str, password: str) -> Session:
    """Sign in with a username or email. Raises Unauthenticated on bad credentials."""
    email = derive_email(identifier or "")

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT id, username, password_hash, password_salt, role FROM users WHERE email = ? OR username = ?",
            (email, (identifier or "").strip())
        )
        row = cursor.fetchone()

    if not row or not verify_password(password or "", row[2], row[3]):
        logger.log_auth_event("login", identifier or "", status="denied")
        raise Unauthenticated("Invalid login credentials")

    principal = Principal(user_id=row[0], username=row[1], role=row[4])
    token = secrets.token_urlsafe(32)
    now = utcnow()
    expires_at = now + timedelta(seconds=SESSION_TTL_SEC)

    try:
        with get_db() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO sessions (token, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (token, principal.user_id, now.isoformat(), expires_at.isoformat())
            )
            conn.commit()
    except sqlite3.Error as e:
        raise BackendError("Failed to create session") from e

    logger.log_auth_event("login", principal.username)
    return Session(token=token, principal=principal, expires_at=expires_at)


def get_principal(token: Optional[str]) -> Optional[Principal]:
    """Resolve a bearer token; expired or unknown tokens yield None."""
    if not token:
        return None

    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(
            '''SELECT u.id, u.username, u.role, s.expires_at
               FROM sessions s JOIN users u ON u.id = s.user_id
               WHERE s.token = ?''',
            (token,)
        )
        row = cursor.fetchone()

    if not row:
        return None
    if parse_timestamp(row[3]) <= utcnow():
        revoke_session(token)
        return None
    return Principal(user_id=row[0], username=row[1], role=row[2])


def revoke_session(token: str) -> bool:
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute("DELETE FROM sessions WHERE token = ?", (token,))
        conn.commit()
        return cursor.rowcount > 0


def get_portfolio_owner_id() -> Optional[str]:
    """The first owner account; guests read this owner's portfolio."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT id FROM users WHERE role = 'owner' ORDER BY created_at ASC LIMIT 1")
        row = cursor.fetchone()
        return row[0] if row else None
