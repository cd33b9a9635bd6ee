"""
SQLite user table.

Thread-safe storage for user records: password hash, role, permanent ban and
temporary suspension. Everything else in vaultgate is volatile.
"""

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import bcrypt
from loguru import logger

from ..errors import Conflict, InvalidInput
from .models import User
from .permissions import Role


# bcrypt only hashes the first 72 bytes; newer releases reject longer input
MAX_PASSWORD_BYTES = 72


class UserDatabase:
    """
    Thread-safe user database.

    All operations are protected by threading.RLock for thread safety.
    """

    def __init__(self, db_path: Path, bcrypt_rounds: int = 12):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
            bcrypt_rounds: bcrypt work factor for new password hashes
        """
        self.db_path = Path(db_path)
        self.bcrypt_rounds = bcrypt_rounds
        self._lock = threading.RLock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_db(self):
        """Create tables if they don't exist."""
        with self._lock:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    username TEXT PRIMARY KEY,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'member',
                    created_at TEXT NOT NULL,
                    banned INTEGER NOT NULL DEFAULT 0,
                    suspended_until TEXT
                )
            """)

            conn.commit()
            conn.close()

            logger.info(f"User database initialized: {self.db_path}")

    @staticmethod
    def _row_to_user(row) -> User:
        return User(
            username=row[0],
            password_hash=row[1],
            role=Role.parse(row[2]),
            created_at=datetime.fromisoformat(row[3]),
            banned=bool(row[4]),
            suspended_until=datetime.fromisoformat(row[5]) if row[5] else None,
        )

    # ========================================================================
    # User Operations
    # ========================================================================

    def create_user(self, username: str, password: str, role: str = "member") -> User:
        """
        Create new user with hashed password.

        Args:
            username: Unique username
            password: Plain text password (will be hashed)
            role: Role name (member/pro/moderator/owner)

        Returns:
            Created User object

        Raises:
            InvalidInput: If a field is missing or the role is unknown
            Conflict: If the username already exists
        """
        username = (username or "").strip()
        if not username or not password or not role:
            raise InvalidInput("MissingFields", "username, password and role are required")

        try:
            role_enum = Role.parse(role)
        except ValueError:
            raise InvalidInput("InvalidRole", f"Unknown role: {role}")

        if len(password.encode('utf-8')) > MAX_PASSWORD_BYTES:
            raise InvalidInput(
                "PasswordTooLong", f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
            )

        password_hash = bcrypt.hashpw(
            password.encode('utf-8'),
            bcrypt.gensalt(rounds=self.bcrypt_rounds)
        ).decode('utf-8')

        user = User(
            username=username,
            password_hash=password_hash,
            role=role_enum,
            created_at=datetime.now(timezone.utc),
        )

        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    INSERT INTO users (username, password_hash, role, created_at, banned, suspended_until)
                    VALUES (?, ?, ?, ?, 0, NULL)
                """, (
                    user.username,
                    user.password_hash,
                    user.role.value,
                    user.created_at.isoformat(),
                ))
                conn.commit()
            except sqlite3.IntegrityError:
                raise Conflict("DuplicateUser", f"User '{username}' already exists")
            finally:
                conn.close()

        logger.info(f"User created: {username} with role: {role_enum.value}")
        return user

    def get_user(self, username: str) -> Optional[User]:
        """
        Get user by username.

        Args:
            username: Username to search for

        Returns:
            User object if found, None otherwise
        """
        with self._lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute("""
                SELECT username, password_hash, role, created_at, banned, suspended_until
                FROM users WHERE username = ?
            """, (username,))
            row = cursor.fetchone()
            conn.close()

            if not row:
                return None

            return self._row_to_user(row)

    def verify_password(self, user: User, password: str) -> bool:
        """
        Verify password against user's hash.

        Args:
            user: User object
            password: Plain text password to verify

        Returns:
            True if password matches, False otherwise
        """
        try:
            return bcrypt.checkpw(
                password.encode('utf-8'),
                user.password_hash.encode('utf-8')
            )
        except ValueError as e:
            logger.warning(f"Password check failed for {user.username}: {e}")
            return False

    def list_users(self) -> List[User]:
        """
        Get all users.

        Returns:
            List of all User objects ordered by username
        """
        with self._lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute("""
                SELECT username, password_hash, role, created_at, banned, suspended_until
                FROM users ORDER BY username
            """)
            rows = cursor.fetchall()
            conn.close()

            return [self._row_to_user(row) for row in rows]

    def count_users(self) -> int:
        with self._lock:
            conn = self._connect()
            count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            conn.close()
            return count

    def _update(self, username: str, sql: str, params: tuple) -> bool:
        with self._lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute(sql, params + (username,))
            conn.commit()
            success = cursor.rowcount > 0
            conn.close()
            return success

    def set_banned(self, username: str, banned: bool = True) -> bool:
        """
        Set or clear the permanent ban flag.

        Returns:
            True if the user exists
        """
        success = self._update(
            username, "UPDATE users SET banned = ? WHERE username = ?", (1 if banned else 0,)
        )
        if success:
            logger.info(f"User {'banned' if banned else 'unbanned'}: {username}")
        return success

    def set_suspended_until(self, username: str, until: datetime) -> bool:
        """
        Suspend a user until `until`.

        Returns:
            True if the user exists
        """
        success = self._update(
            username, "UPDATE users SET suspended_until = ? WHERE username = ?", (until.isoformat(),)
        )
        if success:
            logger.info(f"User suspended: {username} until {until.isoformat()}")
        return success

    def clear_suspension(self, username: str) -> bool:
        return self._update(
            username, "UPDATE users SET suspended_until = NULL WHERE username = ?", ()
        )

    def set_role(self, username: str, role: str) -> bool:
        """
        Change a user's role. Existing credentials keep their snapshotted role.

        Raises:
            InvalidInput: If the role is unknown
        """
        try:
            role_enum = Role.parse(role)
        except ValueError:
            raise InvalidInput("InvalidRole", f"Unknown role: {role}")

        success = self._update(
            username, "UPDATE users SET role = ? WHERE username = ?", (role_enum.value,)
        )
        if success:
            logger.info(f"User role changed: {username} -> {role_enum.value}")
        return success
