from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi.testclient import TestClient

from src.pagesmith.services.generation import ProviderStreamError, ProviderUnavailable


DEFAULT_FRAGMENTS = [
    "Here is your page:\n```ht",
    "ml\n<!DOCTYPE html>\n<h1>Hello</h1>\n",
    "```\nEnjoy!",
]


def register_and_login(
    client: TestClient,
    email: str = "owner@example.com",
    *,
    name: str = "Page Owner",
    password: str = "secret123",
) -> Tuple[Dict[str, str], Dict[str, Any]]:
    """Create an account, log in and return auth headers plus the token payload."""
    res = client.post("/auth/register", json={"name": name, "email": email, "password": password})
    assert res.status_code == 201, res.text
    res = client.post("/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    data = res.json()
    return {"Authorization": f"Bearer {data['access_token']}"}, data


def auth_headers(client: TestClient, email: str = "owner@example.com") -> Dict[str, str]:
    headers, _ = register_and_login(client, email)
    return headers


def ndjson_lines(body: bytes) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in body.decode("utf-8").split("\n") if line.strip()]


def sse_line(text: str, **extra: Any) -> bytes:
    part: Dict[str, Any] = {"text": text}
    part.update(extra)
    payload = {"candidates": [{"content": {"role": "model", "parts": [part]}}]}
    return ("data: " + json.dumps(payload)).encode("utf-8")


class FakeFragmentStream:
    """Scripted stand-in for a provider fragment stream."""

    def __init__(self, fragments: Sequence[str], fail_after: Optional[int] = None) -> None:
        self._fragments = list(fragments)
        self._fail_after = fail_after
        self._pos = 0
        self.closed = False
        self.deadline: Optional[float] = None

    def __iter__(self) -> "FakeFragmentStream":
        return self

    def __next__(self) -> str:
        if self.closed:
            raise StopIteration
        if self._fail_after is not None and self._pos >= self._fail_after:
            raise ProviderStreamError("connection reset by provider")
        if self._pos >= len(self._fragments):
            raise StopIteration
        frag = self._fragments[self._pos]
        self._pos += 1
        return frag

    def close(self) -> None:
        self.closed = True

    def set_deadline(self, deadline: float) -> None:
        self.deadline = deadline


class FakeChatSession:
    def __init__(self, client: "FakeGenerationClient") -> None:
        self._client = client

    def send_message_stream(self, prompt: str) -> FakeFragmentStream:
        self._client.prompts.append(prompt)
        if self._client.unavailable:
            raise ProviderUnavailable("provider down")
        stream = FakeFragmentStream(self._client.fragments, self._client.fail_after)
        self._client.streams.append(stream)
        return stream


class FakeGenerationClient:
    def __init__(
        self,
        fragments: Sequence[str] = (),
        *,
        fail_after: Optional[int] = None,
        unavailable: bool = False,
    ) -> None:
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.unavailable = unavailable
        self.histories: List[list] = []
        self.prompts: List[str] = []
        self.streams: List[FakeFragmentStream] = []

    def start_chat(self, history) -> FakeChatSession:
        self.histories.append(list(history))
        return FakeChatSession(self)
