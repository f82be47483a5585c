"""Bridge a provider fragment stream into an NDJSON HTTP response body.

Wire format: one ``{"text": "<fragment>"}`` object per line, UTF-8, one
write per fragment. Errors are never written into the body; a broken
provider stream aborts the response instead so the framing of the records
already sent stays intact.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import AsyncIterator, Iterator, Optional, Protocol, Sequence, Tuple

from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from ..domain.chat_models import Message, StreamRecord
from ..infrastructure.conversation_store import PersistenceFailure, get_conversation_store
from ..observability.metrics import FRAGMENTS_RELAYED, PERSISTENCE_FAILURES, record_stream_outcome
from .generation import ProviderStreamError, ProviderUnavailable


logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"
DEFAULT_STREAM_MAX_SECONDS = 180.0


class FragmentSource(Protocol):
    def __iter__(self) -> Iterator[str]: ...

    def __next__(self) -> str: ...

    def close(self) -> None: ...

    def set_deadline(self, deadline: float) -> None: ...


class StreamStarter(Protocol):
    def send_message_stream(self, prompt: str) -> FragmentSource: ...


def stream_max_seconds() -> float:
    raw = os.getenv("PAGESMITH_STREAM_MAX_SECONDS")
    try:
        value = float(raw) if raw else DEFAULT_STREAM_MAX_SECONDS
    except ValueError:
        return DEFAULT_STREAM_MAX_SECONDS
    return value if value > 0 else DEFAULT_STREAM_MAX_SECONDS


def encode_fragment(text: str) -> bytes:
    # JSON escapes embedded newlines, so "\n" only ever terminates a record
    return (StreamRecord(text=text).model_dump_json() + "\n").encode("utf-8")


def persist_turn(user_id: str, messages: Sequence[Message]) -> Optional[str]:
    """Record the request messages; a failure is logged and never raised."""
    try:
        store = get_conversation_store()
        conversation_id = store.create_conversation(user_id, messages)
    except PersistenceFailure:
        PERSISTENCE_FAILURES.inc()
        logger.exception("conversation_persist_failed", extra={"user_id": user_id, "messages": len(messages)})
        return None
    logger.debug("conversation_persisted", extra={"user_id": user_id, "conversation_id": conversation_id})
    return conversation_id


def _open_and_prime(
    session: StreamStarter, prompt: str, deadline: Optional[float]
) -> Tuple[FragmentSource, Optional[str]]:
    stream = session.send_message_stream(prompt)
    if deadline is not None:
        stream.set_deadline(deadline)
    try:
        first = next(stream, None)
    except ProviderStreamError as exc:
        stream.close()
        # Nothing reached the client yet, so this is still a failure to start
        raise ProviderUnavailable(f"Stream failed before the first fragment: {exc}") from exc
    return stream, first


async def start_generation(
    session: StreamStarter, prompt: str, *, max_seconds: Optional[float] = None
) -> Tuple[FragmentSource, Optional[str]]:
    """Open the provider stream and wait for its first fragment.

    With ``max_seconds`` the stream itself gives up once that much time has
    passed, including while it skips lines that carry no text.

    Raises ProviderUnavailable if that fails, before any response status is
    committed.
    """
    deadline = time.monotonic() + max_seconds if max_seconds else None
    return await run_in_threadpool(_open_and_prime, session, prompt, deadline)


async def relay_fragments(
    stream: FragmentSource,
    first: Optional[str] = None,
    *,
    max_seconds: Optional[float] = None,
) -> AsyncIterator[bytes]:
    deadline = time.monotonic() + max_seconds if max_seconds else None
    relayed = 0
    outcome = "failed"
    try:
        if first is not None:
            relayed += 1
            FRAGMENTS_RELAYED.inc()
            yield encode_fragment(first)
        async for fragment in iterate_in_threadpool(stream):
            if deadline is not None and time.monotonic() > deadline:
                raise ProviderStreamError(f"Stream exceeded the {max_seconds:.0f}s limit")
            relayed += 1
            FRAGMENTS_RELAYED.inc()
            yield encode_fragment(fragment)
        outcome = "completed"
        logger.info("chat_stream_completed", extra={"fragments": relayed})
    except ProviderStreamError as exc:
        outcome = "aborted"
        logger.warning("chat_stream_aborted", extra={"fragments": relayed, "err": str(exc)})
        raise
    except (asyncio.CancelledError, GeneratorExit):
        outcome = "cancelled"
        logger.info("chat_stream_cancelled", extra={"fragments": relayed})
        raise
    finally:
        stream.close()
        record_stream_outcome(outcome)
