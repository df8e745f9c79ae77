"""User account storage: names, password hashes, online state and connection handles."""

from __future__ import annotations

import sqlite3
import threading


class UserStoreError(Exception):
    """Base error for user store operations."""


class UserExistsError(UserStoreError):
    """Raised when registering a name that is already taken."""


class UnknownUserError(UserStoreError, KeyError):
    """Raised when a named user is not in the store."""


class UserStore:
    """SQLite-backed table of users shared by all server connections."""

    def __init__(self, path: str = ":memory:") -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS user ("
                " name TEXT PRIMARY KEY,"
                " pw TEXT NOT NULL,"
                " state INTEGER NOT NULL DEFAULT 0,"
                " data_sock INTEGER NOT NULL DEFAULT 0)"
            )

    def __enter__(self) -> "UserStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _fetchone(self, sql: str, params: tuple):
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def register(self, name: str, password_hash: str) -> None:
        """Add a new offline user; raise UserExistsError if the name is taken."""
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO user (name, pw, state, data_sock) VALUES (?, ?, 0, 0)",
                    (name, password_hash),
                )
        except sqlite3.IntegrityError as exc:
            raise UserExistsError(name) from exc

    def check_password(self, name: str, password_hash: str) -> bool:
        """Return whether the stored hash for name equals password_hash."""
        row = self._fetchone("SELECT pw FROM user WHERE name = ?", (name,))
        if row is None:
            raise UnknownUserError(name)
        return row[0] == password_hash

    def set_state(self, name: str, online: bool, handle: int) -> None:
        """Record whether name is online and which connection handle it uses."""
        with self._lock, self._conn:
            self._conn.execute(
                "UPDATE user SET state = ?, data_sock = ? WHERE name = ?",
                (1 if online else 0, handle, name),
            )

    def online_users(self) -> list[str]:
        """Names of users currently online, in registration order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name FROM user WHERE state = 1 ORDER BY rowid"
            ).fetchall()
        return [row[0] for row in rows]

    def online_summary(self) -> str:
        """The online list as 'count#name1#name2...'."""
        names = self.online_users()
        return "#".join([str(len(names)), *names])

    def delete(self, name: str) -> bool:
        """Remove a user; return whether a row was removed."""
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM user WHERE name = ?", (name,))
        return cursor.rowcount > 0

    def handle_of(self, name: str) -> int:
        """Connection handle of name, or 0 when offline or unknown."""
        row = self._fetchone("SELECT data_sock FROM user WHERE name = ?", (name,))
        return int(row[0]) if row is not None else 0

    def name_of(self, handle: int) -> str | None:
        """Name of the user on the given connection handle, or None."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name FROM user WHERE data_sock = ? ORDER BY rowid", (handle,)
            ).fetchall()
        return rows[-1][0] if rows else None

    def exists(self, name: str) -> bool:
        """Whether a user with this name is registered."""
        row = self._fetchone("SELECT COUNT(*) FROM user WHERE name = ?", (name,))
        return row[0] > 0

    def close(self) -> None:
        """Close the underlying database."""
        with self._lock:
            self._conn.close()