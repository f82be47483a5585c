import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

# Never touch a real database file from the suite unless a test asks for one
os.environ.setdefault("PAGESMITH_STORE_IMPL", "memory")

from .utils import DEFAULT_FRAGMENTS, FakeGenerationClient  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch):
    """Fresh stores, limiter, breaker and a scripted generation client per test."""
    from src.pagesmith.infrastructure import conversation_store, user_store
    from src.pagesmith.security.rate_limit import limiter
    from src.pagesmith.services import generation

    monkeypatch.setenv("PAGESMITH_STORE_IMPL", "memory")
    monkeypatch.delenv("PAGESMITH_RATE_LIMIT_DISABLED", raising=False)
    monkeypatch.setattr(conversation_store, "_store", None)
    monkeypatch.setattr(user_store, "_user_store", None)
    monkeypatch.setattr(generation, "_client", FakeGenerationClient(DEFAULT_FRAGMENTS))
    monkeypatch.setattr(generation, "_BREAKER_STATE", {"fails": 0, "opened_at": 0.0})
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def fake_llm():
    from src.pagesmith.services import generation

    return generation._client
