from __future__ import annotations

"""HTTP client for the Pagesmith API (used by the Streamlit UI)."""

from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Tuple, Union
import logging
import os

import requests

from ..domain.chat_models import Message
from .preview import PreviewState
from .stream_consumer import StreamAborted, consume_byte_stream


logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://127.0.0.1:8000"


class ApiError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ChatRequestFailed(ApiError):
    """The chat request was answered with a non-200 status (or not at all)."""


def _message_from(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.reason or "Request failed"
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return resp.reason or "Request failed"


class PagesmithClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: Tuple[float, float] = (5.0, 120.0),
    ) -> None:
        self.base_url = (base_url or os.getenv("PAGESMITH_API_URL", DEFAULT_API_URL)).rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _post_json(self, path: str, body: Dict[str, Any], expected: int) -> Dict[str, Any]:
        try:
            resp = self._session.post(f"{self.base_url}{path}", json=body, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise ApiError(0, "Could not reach the server") from exc
        if resp.status_code != expected:
            raise ApiError(resp.status_code, _message_from(resp))
        return resp.json()

    def register(self, name: str, email: str, password: str) -> Dict[str, Any]:
        return self._post_json("/auth/register", {"name": name, "email": email, "password": password}, 201)

    def login(self, email: str, password: str) -> Dict[str, Any]:
        data = self._post_json("/auth/login", {"email": email, "password": password}, 200)
        self.token = data["access_token"]
        return data

    def stream_chat(
        self,
        messages: Sequence[Union[Message, Mapping[str, str]]],
        state: PreviewState,
    ) -> Iterator[PreviewState]:
        """Submit the full history and yield a preview state per received fragment.

        Raises ChatRequestFailed for a non-200 answer and StreamAborted when the
        body breaks off before the server finished it. The request is only sent
        once iteration starts.
        """
        payload = {
            "messages": [m.model_dump() if isinstance(m, Message) else dict(m) for m in messages],
        }
        try:
            resp = self._session.post(
                f"{self.base_url}/chat",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            raise ChatRequestFailed(0, "Could not reach the server") from exc

        with resp:
            if resp.status_code != 200:
                raise ChatRequestFailed(resp.status_code, _message_from(resp))
            try:
                yield from consume_byte_stream(resp.iter_content(chunk_size=None), state)
            except requests.exceptions.RequestException as exc:
                logger.warning("Chat stream broke off: %s", exc)
                raise StreamAborted(str(exc)) from exc
