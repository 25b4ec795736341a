"""Access control: accounts, credentials, sessions and the blocked flag.

Passwords are hashed with werkzeug; the hash never leaves this module.
A successful login issues an opaque session token (``secrets.token_hex``)
stored in the ``sessions`` table with an expiry. Requests present it as
``Authorization: Bearer <token>``. Blocking a user revokes their sessions.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from werkzeug.security import check_password_hash, generate_password_hash

from config import settings
from database import connection, parse_timestamp, transaction, utcnow_iso
from errors import (
    AccountBlocked,
    DuplicateIdentity,
    InvalidCredentials,
    LibraryError,
    NotAuthenticated,
    NotFound,
    ValidationError,
)
from utils.validators import TextValidator, UserValidator

logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_USER)

USER_COLUMNS = "username, email, password_hash, role, blocked, first_name, last_name, phone, created_at"

# Self-service profile fields, keyed by their API name
PROFILE_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "phone": "phone",
    "email": "email",
}


@dataclass
class User:
    username: str
    email: str
    role: str = ROLE_USER
    blocked: bool = False
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    created_at: Optional[str] = None
    password_hash: str = field(default="", repr=False)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> dict:
        return {
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "blocked": self.blocked,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phone": self.phone,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_row(row) -> "User":
        return User(
            username=row["username"],
            email=row["email"],
            role=row["role"],
            blocked=bool(row["blocked"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            phone=row["phone"],
            created_at=row["created_at"],
            password_hash=row["password_hash"],
        )


# Principal used for requests authenticated with the service API key
SYSTEM_USER = User(username="system", email="", role=ROLE_ADMIN)


class AccessControl:

    def __init__(self, session_minutes: Optional[int] = None) -> None:
        self.session_minutes = session_minutes or settings.session_expiration_minutes

    # ------------------------- Accounts ------------------------- #
    def register(self, username: str, password: str, confirm_password: str, first_name: str,
                 last_name: str, email: str, phone: str = "", role: str = ROLE_USER) -> User:
        """Create a user account.

        Raises ValidationError for missing or malformed fields and
        DuplicateIdentity when the username or email is already in use.
        """
        for value, name in ((first_name, "firstName"), (last_name, "lastName")):
            TextValidator.require(value, name)
        name = UserValidator.validate_username(username)
        UserValidator.validate_password(password)
        if password != confirm_password:
            raise ValidationError("Passwords do not match")
        mail = UserValidator.validate_email(email)
        if role not in ROLES:
            raise ValidationError(f"role must be one of {', '.join(ROLES)}")

        user = User(
            username=name,
            email=mail,
            role=role,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone=(phone or "").strip(),
            created_at=utcnow_iso(),
            password_hash=generate_password_hash(password),
        )
        with transaction() as c:
            existing = c.execute(
                "SELECT 1 FROM users WHERE username = ? OR email = ?", (user.username, user.email)
            ).fetchone()
            if existing:
                raise DuplicateIdentity()
            c.execute(
                f"INSERT INTO users ({USER_COLUMNS}) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?)",
                (
                    user.username, user.email, user.password_hash, user.role,
                    user.first_name, user.last_name, user.phone, user.created_at,
                ),
            )
        logger.info(f"User registered: {user.username} ({user.role})")
        return user

    def ensure_admin(self, username: str, password: str, email: str) -> User:
        """Create the bootstrap administrator if it does not exist yet."""
        existing = self.get_user(username)
        if existing is not None:
            return existing
        return self.register(username, password, password, "Library", "Administrator", email, role=ROLE_ADMIN)

    def get_user(self, username: str) -> Optional[User]:
        with connection() as c:
            row = c.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE username = ?", ((username or "").strip().lower(),)
            ).fetchone()
        return User.from_row(row) if row else None

    def require_user(self, username: str) -> User:
        user = self.get_user(username)
        if user is None:
            raise NotFound("User not found")
        return user

    def require_active(self, username: str) -> User:
        """The user must exist and not be blocked."""
        user = self.require_user(username)
        if user.blocked:
            raise AccountBlocked()
        return user

    def list_users(self) -> List[User]:
        with connection() as c:
            rows = c.execute(f"SELECT {USER_COLUMNS} FROM users ORDER BY username").fetchall()
        return [User.from_row(row) for row in rows]

    def update_profile(self, username: str, fields: Dict[str, Any], allow_role: bool = False) -> User:
        """Update profile fields; ``role`` only when ``allow_role`` (admin callers)."""
        updates: Dict[str, Any] = {}
        for key, column in PROFILE_FIELDS.items():
            if fields.get(key) is None:
                continue
            value = str(fields[key]).strip()
            if key == "email":
                value = UserValidator.validate_email(value)
            updates[column] = value
        if fields.get("role") is not None:
            if not allow_role:
                raise ValidationError("Only administrators can change roles")
            if fields["role"] not in ROLES:
                raise ValidationError(f"role must be one of {', '.join(ROLES)}")
            updates["role"] = fields["role"]

        name = (username or "").strip().lower()
        with transaction() as c:
            if c.execute("SELECT 1 FROM users WHERE username = ?", (name,)).fetchone() is None:
                raise NotFound("User not found")
            if "email" in updates:
                taken = c.execute(
                    "SELECT 1 FROM users WHERE email = ? AND username != ?", (updates["email"], name)
                ).fetchone()
                if taken:
                    raise DuplicateIdentity("Email already in use")
            if updates:
                set_clause = ", ".join(f"{column} = ?" for column in updates)
                c.execute(f"UPDATE users SET {set_clause} WHERE username = ?", list(updates.values()) + [name])
        logger.info(f"User updated: {name} fields={sorted(updates)}")
        return self.require_user(name)

    def set_blocked(self, username: str, blocked: bool) -> User:
        name = (username or "").strip().lower()
        with transaction() as c:
            cursor = c.execute("UPDATE users SET blocked = ? WHERE username = ?", (1 if blocked else 0, name))
            if cursor.rowcount == 0:
                raise NotFound("User not found")
            if blocked:
                c.execute("DELETE FROM sessions WHERE username = ?", (name,))
        logger.info(f"User {'blocked' if blocked else 'unblocked'}: {name}")
        return self.require_user(name)

    def import_users(self, records: Iterable[Dict[str, Any]]) -> int:
        """Register seed users that do not exist yet. Returns the count added."""
        added = 0
        for record in records:
            try:
                password = record.get("password") or ""
                user = self.register(
                    username=record.get("username", ""),
                    password=password,
                    confirm_password=password,
                    first_name=record.get("firstName") or record.get("name") or "",
                    last_name=record.get("lastName") or "",
                    email=record.get("email", ""),
                    phone=record.get("phone") or "",
                    role=record.get("role") or ROLE_USER,
                )
                if record.get("blocked"):
                    self.set_blocked(user.username, True)
                added += 1
            except DuplicateIdentity:
                logger.info(f"Skipping existing user {record.get('username')}")
            except LibraryError as e:
                logger.warning(f"Skipping invalid user record {record.get('username')!r}: {e.message}")
        return added

    # ------------------------- Credentials ------------------------- #
    def authenticate(self, username: str, password: str) -> User:
        """Return the user if the credentials match and the account is not blocked."""
        if TextValidator.is_blank(username) or not password:
            raise ValidationError("Username and password are required")
        user = self.get_user(username)
        if user is None or not check_password_hash(user.password_hash, password):
            logger.warning(f"Failed login for {username!r}")
            raise InvalidCredentials()
        if user.blocked:
            logger.warning(f"Blocked user attempted login: {user.username}")
            raise AccountBlocked()
        return user

    def login(self, username: str, password: str) -> Tuple[str, User]:
        """Authenticate and issue a session token."""
        user = self.authenticate(username, password)
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=self.session_minutes)
        token = secrets.token_hex(32)
        with transaction() as c:
            c.execute(
                "INSERT INTO sessions (token, username, created_at, expires_at) VALUES (?, ?, ?, ?)",
                (token, user.username, now.isoformat(), expires_at.isoformat()),
            )
        logger.info(f"User logged in: {user.username}")
        return token, user

    def logout(self, token: str) -> bool:
        """Invalidate a token. Returns True if the token existed."""
        with transaction() as c:
            cursor = c.execute("DELETE FROM sessions WHERE token = ?", (token,))
        return cursor.rowcount > 0

    def user_for_token(self, token: Optional[str]) -> User:
        """Resolve a session token to its user, rejecting expired sessions and blocked accounts."""
        if not token:
            raise NotAuthenticated()
        with connection() as c:
            row = c.execute("SELECT username, expires_at FROM sessions WHERE token = ?", (token,)).fetchone()
        if row is None:
            raise NotAuthenticated("Invalid or expired session")
        if parse_timestamp(row["expires_at"]) < datetime.now(timezone.utc):
            self.logout(token)
            raise NotAuthenticated("Invalid or expired session")
        user = self.get_user(row["username"])
        if user is None:
            raise NotAuthenticated("Invalid or expired session")
        if user.blocked:
            raise AccountBlocked()
        return user

    def change_password(self, username: str, current_password: str, new_password: str,
                        confirm_password: str) -> None:
        if TextValidator.is_blank(username) or not current_password or not new_password or not confirm_password:
            raise ValidationError("All fields are required")
        UserValidator.validate_password(new_password, "New password")
        if new_password != confirm_password:
            raise ValidationError("Passwords do not match")
        if new_password == current_password:
            raise ValidationError("New password must differ from the current one")

        user = self.require_user(username)
        if not check_password_hash(user.password_hash, current_password):
            raise InvalidCredentials("Current password is incorrect")
        with transaction() as c:
            c.execute(
                "UPDATE users SET password_hash = ? WHERE username = ?",
                (generate_password_hash(new_password), user.username),
            )
        logger.info(f"Password changed: {user.username}")
