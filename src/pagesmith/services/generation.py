from __future__ import annotations

"""Streaming client for the hosted Gemini model.

One ``ChatSession`` per request: history is supplied when the session is
created and the prompt triggers a single ``streamGenerateContent`` call over
SSE. Fragments are surfaced as soon as each ``data:`` line arrives.

Env vars:
- GEMINI_API_KEY (required to generate)
- GEMINI_MODEL (default gemini-2.5-flash)
- GEMINI_BASE_URL (default https://generativelanguage.googleapis.com/v1beta)
- PAGESMITH_LLM_TEMPERATURE, PAGESMITH_LLM_CONNECT_TIMEOUT, PAGESMITH_LLM_READ_TIMEOUT
- PAGESMITH_LLM_BREAKER_THRESHOLD, PAGESMITH_LLM_BREAKER_COOLDOWN
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence
import json
import logging
import os
import time

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.chat_models import ProviderHistoryEntry


logger = logging.getLogger(__name__)
LOG = logging.getLogger("pagesmith.llm")

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("PAGESMITH_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("PAGESMITH_LLM_BREAKER_COOLDOWN", "60.0"))


class ProviderUnavailable(Exception):
    """The generation session could not be started; nothing was produced."""


class ProviderStreamError(Exception):
    """The fragment stream terminated abnormally after it was opened."""


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning(
            "llm_breaker_opened",
            extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
        )


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("llm_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def _build_session() -> requests.Session:
    session = requests.Session()
    # Retries only cover the initial POST; a body that is already streaming is never replayed
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


@dataclass(frozen=True)
class GenerationConfig:
    api_key: Optional[str]
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    temperature: float = 0.2
    connect_timeout: float = 5.0
    read_timeout: float = 60.0

    @staticmethod
    def from_env() -> "GenerationConfig":
        return GenerationConfig(
            api_key=os.getenv("GEMINI_API_KEY") or None,
            model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            base_url=os.getenv("GEMINI_BASE_URL", DEFAULT_BASE_URL),
            temperature=float(os.getenv("PAGESMITH_LLM_TEMPERATURE", "0.2")),
            connect_timeout=float(os.getenv("PAGESMITH_LLM_CONNECT_TIMEOUT", "5")),
            read_timeout=float(os.getenv("PAGESMITH_LLM_READ_TIMEOUT", "60")),
        )

    @property
    def stream_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/models/{self.model}:streamGenerateContent?alt=sse"


def _content(entry: ProviderHistoryEntry) -> Dict[str, Any]:
    return {"role": entry.role, "parts": [{"text": part} for part in entry.parts]}


def _extract_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    # Thinking models interleave "thought" parts; they are not page content
    return "".join(str(p.get("text") or "") for p in parts if not p.get("thought"))


def _error_detail(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        return str(err.get("message") or err.get("status") or "")
    return str(data)[:200]


class FragmentStream:
    """Single-use iterator of text fragments from one streaming response.

    ``close()`` may be called from another thread to tear the response down
    while a read is blocked; the reader then stops quietly.
    """

    def __init__(self, response: requests.Response, model: str) -> None:
        self._response = response
        self._lines = response.iter_lines()
        self._closed = False
        self.model = model
        self.fragments = 0
        self.deadline: Optional[float] = None

    def __iter__(self) -> "FragmentStream":
        return self

    def __next__(self) -> str:
        while True:
            if self._closed:
                raise StopIteration
            if self.deadline is not None and time.monotonic() > self.deadline:
                self.close()
                LOG.warning("llm_stream_deadline_exceeded", extra={"model": self.model, "fragments": self.fragments})
                raise ProviderStreamError("Gemini stream exceeded its time limit")
            try:
                raw = next(self._lines)
            except StopIteration:
                LOG.debug("llm_stream_completed", extra={"model": self.model, "fragments": self.fragments})
                self.close()
                raise
            except Exception as exc:
                if self._closed:
                    raise StopIteration from None
                self.close()
                LOG.warning("llm_stream_broken", extra={"model": self.model, "fragments": self.fragments, "err": str(exc)})
                raise ProviderStreamError(f"Gemini stream interrupted: {exc}") from exc
            text = self._parse_line(raw)
            if text:
                self.fragments += 1
                return text

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()

    def set_deadline(self, deadline: float) -> None:
        """Stop with ProviderStreamError once time.monotonic() passes ``deadline``."""
        self.deadline = deadline

    def _parse_line(self, raw: bytes | str) -> Optional[str]:
        if not raw:
            return None
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            LOG.warning("llm_stream_unparseable_line", extra={"model": self.model})
            return None
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            self.close()
            err = data["error"]
            detail = err.get("message") if isinstance(err, dict) else str(err)
            raise ProviderStreamError(f"Gemini reported an error mid-stream: {detail}")
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            self.close()
            raise ProviderStreamError(f"Prompt blocked by provider: {block_reason}")
        return _extract_text(data)


class ChatSession:
    def __init__(self, client: "GeminiChatClient", history: Sequence[ProviderHistoryEntry]) -> None:
        self._client = client
        self.history: List[ProviderHistoryEntry] = list(history)

    def send_message_stream(self, prompt: str) -> FragmentStream:
        return self._client.open_stream(self.history, prompt)


class GenerationClient(Protocol):
    def start_chat(self, history: Sequence[ProviderHistoryEntry]) -> ChatSession: ...


class GeminiChatClient:
    def __init__(self, config: GenerationConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self._session = session or _build_session()

    def start_chat(self, history: Sequence[ProviderHistoryEntry]) -> ChatSession:
        return ChatSession(self, history)

    def build_payload(self, history: Sequence[ProviderHistoryEntry], prompt: str) -> Dict[str, Any]:
        contents = [_content(entry) for entry in history]
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        return {
            "contents": contents,
            "generationConfig": {"temperature": self.config.temperature},
        }

    def open_stream(self, history: Sequence[ProviderHistoryEntry], prompt: str) -> FragmentStream:
        """Start the streaming call and return its fragments.

        Raises
        ------
        ProviderUnavailable
            Missing key, open breaker, connection failure or non-200 status.
        """

        if not self.config.api_key:
            raise ProviderUnavailable("Gemini API key not configured")
        if _breaker_open():
            raise ProviderUnavailable("Gemini temporarily disabled after repeated failures")

        LOG.debug(
            "llm_stream_request",
            extra={"model": self.config.model, "history_len": len(history), "prompt_len": len(prompt)},
        )
        try:
            resp = self._session.post(
                self.config.stream_url,
                json=self.build_payload(history, prompt),
                headers={"x-goog-api-key": self.config.api_key, "Content-Type": "application/json"},
                timeout=(self.config.connect_timeout, self.config.read_timeout),
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            _record_fail()
            LOG.warning("llm_stream_connect_failed", extra={"model": self.config.model, "err": str(exc)})
            raise ProviderUnavailable(f"Could not reach Gemini: {exc}") from exc

        if resp.status_code != 200:
            detail = _error_detail(resp)
            resp.close()
            _record_fail()
            LOG.warning(
                "llm_stream_rejected",
                extra={"model": self.config.model, "status": resp.status_code, "detail": detail},
            )
            raise ProviderUnavailable(f"Gemini API error ({resp.status_code}): {detail}")

        _record_success()
        LOG.info("llm_stream_opened", extra={"model": self.config.model})
        return FragmentStream(resp, self.config.model)


_client: GenerationClient | None = None


def get_generation_client() -> GenerationClient:
    """Process-wide client; configuration (API key included) is read once."""
    global _client
    if _client is None:
        config = GenerationConfig.from_env()
        if not config.api_key:
            logger.warning("GEMINI_API_KEY is not set; chat requests will fail until it is configured")
        _client = GeminiChatClient(config)
    return _client
