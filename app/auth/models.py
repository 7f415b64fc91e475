# ============================================================================
# STREET PATROL LOG - Users & Sessions
# ============================================================================
# Local user accounts with bcrypt password hashes. The rest of the
# application only ever sees a Session value: who is acting, nothing more.
# ============================================================================

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import bcrypt

from app.config import get_config
from app.db import get_conn
from app.errors import AuthError, StoreError, ValidationError

logger = logging.getLogger("auth.models")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);
"""


@dataclass(frozen=True)
class Session:
    """The acting user, passed explicitly to every patrol operation."""
    user_id: str
    email: str = ""

    def to_dict(self):
        return {"user_id": self.user_id, "email": self.email}


def session_from_mapping(data) -> Optional[Session]:
    """Rebuild a Session from a cookie session dict; None when logged out."""
    if not data:
        return None
    user_id = data.get("user_id")
    if not user_id:
        return None
    return Session(user_id=user_id, email=data.get("email") or "")


# ============================================================================
# Password hashing
# ============================================================================

def hash_password(password: str) -> str:
    """bcrypt hash; rounds come from the bcrypt_rounds config key."""
    # bcrypt only reads the first 72 bytes
    password_bytes = password.encode("utf-8")[:72]
    rounds = get_config("bcrypt_rounds", 12)
    return bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, stored: str) -> bool:
    password_bytes = password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(password_bytes, stored.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a bcrypt hash")
        return False


def _clean_email(value: Any) -> str:
    if not isinstance(value, str):
        raise ValidationError("A valid email address is required")
    return value.strip().lower()


def _check_password(password: Any):
    min_length = get_config("password_min_length", 6)
    if not isinstance(password, str) or len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters")


# ============================================================================
# Repository
# ============================================================================

class UserRepository:

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = db_path

    def init_schema(self):
        try:
            conn = get_conn(self.db_path)
            try:
                conn.executescript(SCHEMA_SQL)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Failed to initialize users schema: %s", e)
            raise StoreError("Could not initialize the user store") from e

    def _fetch(self, sql: str, params):
        try:
            conn = get_conn(self.db_path)
            try:
                return conn.execute(sql, params).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("User lookup failed: %s", e)
            raise StoreError("Failed to load user account") from e

    def create(self, email: Any, password: Any) -> Session:
        email = _clean_email(email)
        if not email or "@" not in email:
            raise ValidationError("A valid email address is required")
        _check_password(password)

        user_id = uuid.uuid4().hex
        try:
            conn = get_conn(self.db_path)
            try:
                conn.execute(
                    "INSERT INTO users (id, email, password_hash) VALUES (?, ?, ?)",
                    (user_id, email, hash_password(password)),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.IntegrityError:
            raise ValidationError("An account with this email already exists")
        except sqlite3.Error as e:
            logger.error("User insert failed: %s", e)
            raise StoreError("Failed to create account") from e

        logger.info("Created user %s", user_id)
        return Session(user_id=user_id, email=email)

    def find_by_email(self, email: Any) -> Optional[Session]:
        """Session for an existing account, without a password check."""
        row = self._fetch("SELECT id, email FROM users WHERE email = ?", (_clean_email(email),))
        if not row:
            return None
        return Session(user_id=row["id"], email=row["email"])

    def authenticate(self, email: Any, password: Any) -> Session:
        if not isinstance(email, str) or not isinstance(password, str):
            raise AuthError("Invalid email or password")
        row = self._fetch(
            "SELECT id, email, password_hash FROM users WHERE email = ?", (_clean_email(email),)
        )
        if not row or not verify_password(password, row["password_hash"]):
            raise AuthError("Invalid email or password")
        return Session(user_id=row["id"], email=row["email"])

    def change_password(self, session: Optional[Session], current: Any, new: Any, confirm: Any):
        if session is None:
            raise AuthError("You must be logged in to change your password")
        if new != confirm:
            raise ValidationError("New passwords do not match")
        _check_password(new)

        row = self._fetch("SELECT password_hash FROM users WHERE id = ?", (session.user_id,))
        if not row:
            raise AuthError("Account not found")
        if not isinstance(current, str) or not verify_password(current, row["password_hash"]):
            raise ValidationError("Current password is incorrect")

        try:
            conn = get_conn(self.db_path)
            try:
                conn.execute(
                    "UPDATE users SET password_hash = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (hash_password(new), session.user_id),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error("Password update failed: %s", e)
            raise StoreError("Failed to change password") from e
