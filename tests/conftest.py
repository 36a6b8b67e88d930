# conftest.py
# Put the repository root on sys.path so the tests can import the core,
# agent and tools packages without an editable install, and share the
# fixtures every test module uses.

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)

if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from core.config import Settings  # noqa: E402

from fakes import EventSink, make_fetcher, make_providers  # noqa: E402


@pytest.fixture
def sink():
    """Captures structured events instead of parsing log output."""
    return EventSink()


@pytest.fixture
def providers():
    """Offline fixture providers pinned to the test clock."""
    return make_providers()


@pytest.fixture
def fetcher(providers):
    return make_fetcher(providers)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def agent_settings():
    return Settings(agent_mode=True, primary_model="primary", fallback_model="backup")
