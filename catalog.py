"""Catalog and identity lookups consulted by the circulation core.

Catalog metadata management (books, authors, publishers and so on) lives
elsewhere; these stores only expose what lending needs: copies with their
availability status, and users with their role.
"""

import logging
import sqlite3
from typing import List, Optional

from config import settings
from database import db_session, use_connection
from errors import ConflictError, NotFoundError, ValidationError
from models import Copy, User

logger = logging.getLogger(__name__)

AVAILABLE = "Available"
ON_LOAN = "On loan"
DAMAGED = "Damaged"
LOST = "Lost"

_COPY_SELECT = """
    SELECT c.id, c.code, c.book_id, s.name AS status, s.permits_loan
    FROM copies c JOIN copy_statuses s ON s.id = c.status_id
"""

_USER_SELECT = """
    SELECT u.id, u.name, u.email, u.active, r.name AS role
    FROM users u JOIN roles r ON r.id = u.role_id
"""


class CatalogStore:
    """Copies of books and their availability status."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def add_copy(self, code: str, book_id: Optional[int] = None, status: str = AVAILABLE) -> Copy:
        code = (code or "").strip()
        if not code:
            raise ValidationError("Copy code cannot be empty.", field="code")
        with db_session(self.db_file) as conn:
            status_id = self._status_id(conn, status)
            try:
                cursor = conn.execute(
                    "INSERT INTO copies (code, book_id, status_id) VALUES (?, ?, ?)",
                    (code, book_id, status_id),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Copy with code {code} already exists.") from e
            return self.get_copy(cursor.lastrowid, conn=conn)

    def get_copy(self, copy_id: int, conn: Optional[sqlite3.Connection] = None) -> Copy:
        with use_connection(conn, self.db_file) as c:
            row = c.execute(f"{_COPY_SELECT} WHERE c.id = ?", (copy_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Copy {copy_id} not found.")
        return Copy.from_row(row)

    def list_copies(self) -> List[Copy]:
        with db_session(self.db_file) as conn:
            rows = conn.execute(f"{_COPY_SELECT} ORDER BY c.code").fetchall()
        return [Copy.from_row(r) for r in rows]

    def set_copy_status(self, copy_id: int, status: str, conn: Optional[sqlite3.Connection] = None) -> None:
        with use_connection(conn, self.db_file) as c:
            status_id = self._status_id(c, status)
            cursor = c.execute("UPDATE copies SET status_id = ? WHERE id = ?", (status_id, copy_id))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Copy {copy_id} not found.")
        logger.debug(f"Copy {copy_id} status -> {status}")

    @staticmethod
    def _status_id(conn: sqlite3.Connection, status: str) -> int:
        row = conn.execute("SELECT id FROM copy_statuses WHERE name = ?", (status,)).fetchone()
        if row is None:
            raise ValidationError(f"Unknown copy status: {status}", field="status")
        return row["id"]


class IdentityStore:
    """Users and their roles."""

    def __init__(self, db_file: Optional[str] = None, staff_roles: Optional[List[str]] = None) -> None:
        self.db_file = db_file
        self.staff_roles = [r.lower() for r in (staff_roles or settings.staff_roles)]

    def add_user(self, name: str, role: str = "Member", email: Optional[str] = None, active: bool = True) -> User:
        name = (name or "").strip()
        if not name:
            raise ValidationError("User name cannot be empty.", field="name")
        with db_session(self.db_file) as conn:
            role_row = conn.execute("SELECT id FROM roles WHERE name = ?", (role,)).fetchone()
            if role_row is None:
                raise ValidationError(f"Unknown role: {role}", field="role")
            cursor = conn.execute(
                "INSERT INTO users (name, email, active, role_id) VALUES (?, ?, ?, ?)",
                (name, email, 1 if active else 0, role_row["id"]),
            )
            return self.get_user(cursor.lastrowid, conn=conn)

    def get_user(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> User:
        with use_connection(conn, self.db_file) as c:
            row = c.execute(f"{_USER_SELECT} WHERE u.id = ?", (user_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"User {user_id} not found.")
        return User.from_row(row)

    def set_active(self, user_id: int, active: bool) -> User:
        with db_session(self.db_file) as conn:
            cursor = conn.execute("UPDATE users SET active = ? WHERE id = ?", (1 if active else 0, user_id))
            if cursor.rowcount == 0:
                raise NotFoundError(f"User {user_id} not found.")
            return self.get_user(user_id, conn=conn)

    def is_staff(self, user: User) -> bool:
        return user.active and user.role.lower() in self.staff_roles
