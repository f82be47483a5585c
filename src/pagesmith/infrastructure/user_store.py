from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Dict, Optional, Protocol
import os
import sqlite3
import uuid

from .database import get_connection, init_db


class DuplicateEmail(Exception):
    def __init__(self, email: str) -> None:
        super().__init__(f"User with email {email} already exists")
        self.email = email


@dataclass(frozen=True)
class UserRecord:
    user_id: str
    name: str
    email: str
    password_hash: str
    created_at: str


class UserStore(Protocol):
    def create_user(self, name: str, email: str, password_hash: str) -> UserRecord: ...

    def get_by_email(self, email: str) -> Optional[UserRecord]: ...

    def get_by_id(self, user_id: str) -> Optional[UserRecord]: ...


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class InMemoryUserStore:
    def __init__(self) -> None:
        self._users: Dict[str, UserRecord] = {}
        self._by_email: Dict[str, str] = {}
        self._lock = RLock()

    def create_user(self, name: str, email: str, password_hash: str) -> UserRecord:
        email_l = _normalize_email(email)
        with self._lock:
            if email_l in self._by_email:
                raise DuplicateEmail(email_l)
            rec = UserRecord(
                user_id=uuid.uuid4().hex,
                name=name.strip(),
                email=email_l,
                password_hash=password_hash,
                created_at=_now_iso(),
            )
            self._users[rec.user_id] = rec
            self._by_email[email_l] = rec.user_id
            return rec

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        with self._lock:
            uid = self._by_email.get(_normalize_email(email))
            return self._users.get(uid) if uid else None

    def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self._users.get(user_id)


class SqliteUserStore:
    def __init__(self, db_path: Optional[Path] = None) -> None:
        self._db_path = db_path
        init_db(db_path)

    def _row_to_record(self, row: Optional[sqlite3.Row]) -> Optional[UserRecord]:
        if row is None:
            return None
        return UserRecord(
            user_id=row["user_id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=row["created_at"],
        )

    def create_user(self, name: str, email: str, password_hash: str) -> UserRecord:
        rec = UserRecord(
            user_id=uuid.uuid4().hex,
            name=name.strip(),
            email=_normalize_email(email),
            password_hash=password_hash,
            created_at=_now_iso(),
        )
        conn = get_connection(self._db_path)
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO users (user_id, name, email, password_hash, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (rec.user_id, rec.name, rec.email, rec.password_hash, rec.created_at),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEmail(rec.email) from exc
        finally:
            conn.close()
        return rec

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (_normalize_email(email),)).fetchone()
            return self._row_to_record(row)
        finally:
            conn.close()

    def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            return self._row_to_record(row)
        finally:
            conn.close()


_user_store: UserStore | None = None


def get_user_store() -> UserStore:
    global _user_store
    if _user_store is not None:
        return _user_store
    impl = os.getenv("PAGESMITH_STORE_IMPL", "sqlite").lower()
    if impl == "memory":
        _user_store = InMemoryUserStore()
    else:
        _user_store = SqliteUserStore()
    return _user_store
