from __future__ import annotations

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant", "model", "system"]
ProviderRole = Literal["user", "model"]


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ChatRequest(BaseModel):
    # Emptiness is checked by the history adapter so it surfaces as EmptyTurn
    messages: List[Message] = Field(default_factory=list)


class ProviderHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: ProviderRole
    parts: List[str]


class StreamRecord(BaseModel):
    """One NDJSON line of the chat response body."""

    text: str


class StoredMessage(BaseModel):
    position: int
    role: Role
    content: str


class Conversation(BaseModel):
    conversation_id: str
    user_id: str
    created_at: str
    messages: List[StoredMessage] = []


class ErrorResponse(BaseModel):
    message: str
    errors: Optional[List[dict]] = None
