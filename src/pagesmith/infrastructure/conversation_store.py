from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Protocol, Sequence
import os
import sqlite3
import uuid

from ..domain.chat_models import Conversation, Message, StoredMessage
from .database import get_connection, init_db


class PersistenceFailure(Exception):
    """A conversation could not be written to the store."""


class ConversationStore(Protocol):
    def create_conversation(self, user_id: str, messages: Sequence[Message]) -> str: ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    def list_conversations(self, user_id: str) -> List[Conversation]: ...


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass
class _Conversation:
    conversation_id: str
    user_id: str
    created_at: str
    messages: List[StoredMessage] = field(default_factory=list)


class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: Dict[str, _Conversation] = {}
        self._by_user: Dict[str, List[str]] = {}
        self._lock = RLock()

    def _model(self, conv: _Conversation) -> Conversation:
        return Conversation(
            conversation_id=conv.conversation_id,
            user_id=conv.user_id,
            created_at=conv.created_at,
            messages=list(conv.messages),
        )

    def create_conversation(self, user_id: str, messages: Sequence[Message]) -> str:
        with self._lock:
            cid = uuid.uuid4().hex
            conv = _Conversation(
                conversation_id=cid,
                user_id=user_id,
                created_at=_now_iso(),
                messages=[
                    StoredMessage(position=idx, role=m.role, content=m.content)
                    for idx, m in enumerate(messages)
                ],
            )
            self._conversations[cid] = conv
            self._by_user.setdefault(user_id, []).append(cid)
            return cid

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            return self._model(conv) if conv else None

    def list_conversations(self, user_id: str) -> List[Conversation]:
        with self._lock:
            out = [self._model(self._conversations[cid]) for cid in self._by_user.get(user_id, [])]
            # Newest first
            return sorted(out, key=lambda c: c.created_at, reverse=True)


class SqliteConversationStore:
    """Each turn becomes a new conversation row plus its ordered messages, in one transaction."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self._db_path = db_path
        try:
            init_db(db_path)
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not initialise conversation database: {exc}") from exc

    def create_conversation(self, user_id: str, messages: Sequence[Message]) -> str:
        cid = uuid.uuid4().hex
        try:
            conn = get_connection(self._db_path)
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO conversations (conversation_id, user_id, created_at) VALUES (?, ?, ?)",
                        (cid, user_id, _now_iso()),
                    )
                    conn.executemany(
                        """
                        INSERT INTO conversation_messages (conversation_id, position, role, content)
                        VALUES (?, ?, ?, ?)
                        """,
                        [(cid, idx, m.role, m.content) for idx, m in enumerate(messages)],
                    )
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"Could not save conversation for user {user_id}: {exc}") from exc
        return cid

    def _load(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Conversation:
        msgs = conn.execute(
            "SELECT position, role, content FROM conversation_messages WHERE conversation_id = ? ORDER BY position",
            (row["conversation_id"],),
        ).fetchall()
        return Conversation(
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            messages=[StoredMessage(position=m["position"], role=m["role"], content=m["content"]) for m in msgs],
        )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
            return self._load(conn, row) if row else None
        finally:
            conn.close()

    def list_conversations(self, user_id: str) -> List[Conversation]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM conversations WHERE user_id = ? ORDER BY created_at DESC", (user_id,)
            ).fetchall()
            return [self._load(conn, row) for row in rows]
        finally:
            conn.close()


_store: ConversationStore | None = None


def get_conversation_store() -> ConversationStore:
    global _store
    if _store is not None:
        return _store
    impl = os.getenv("PAGESMITH_STORE_IMPL", "sqlite").lower()
    if impl == "memory":
        _store = InMemoryConversationStore()
    else:
        _store = SqliteConversationStore()
    return _store
