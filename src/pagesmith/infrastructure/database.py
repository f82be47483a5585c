from __future__ import annotations

"""SQLite connection helpers shared by the user and conversation stores."""

from pathlib import Path
from typing import Optional
import os
import sqlite3


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        conversation_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(user_id) REFERENCES users(user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_messages (
        conversation_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        PRIMARY KEY (conversation_id, position),
        FOREIGN KEY(conversation_id) REFERENCES conversations(conversation_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id)",
)


def default_db_path() -> Path:
    return Path(os.getenv("PAGESMITH_DB_PATH", "pagesmith.db"))


def get_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or default_db_path(), check_same_thread=False, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: Optional[Path] = None) -> None:
    conn = get_connection(db_path)
    try:
        with conn:
            for statement in SCHEMA:
                conn.execute(statement)
    finally:
        conn.close()
