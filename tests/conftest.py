"""Pytest configuration and fixtures."""

import os

import pytest

# Settings are read lazily, but modules may touch them at import time
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("PIPELINE_ENV", "test")

from app.core.config import get_settings  # noqa: E402
from app.core.llm import GenerationClient  # noqa: E402
from app.core.pipeline_orchestrator import PipelineOrchestrator  # noqa: E402
from tests.fakes.fake_anthropic import FakeAnthropic  # noqa: E402
from tests.fakes.fake_store import FakeProjectStore  # noqa: E402

ADMIN_HEADERS = {"X-API-Key": "test-admin-key"}


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
    os.environ["ADMIN_API_KEY"] = "test-admin-key"
    get_settings.cache_clear()


@pytest.fixture
def store() -> FakeProjectStore:
    return FakeProjectStore()


@pytest.fixture
def make_client():
    """Build a GenerationClient over scripted provider replies, with no backoff."""

    def _make(*replies) -> GenerationClient:
        return GenerationClient(
            api_key="test-anthropic-key",
            model="claude-sonnet-4-20250514",
            max_retries=3,
            base_delay=0,
            client=FakeAnthropic(*replies),
        )

    return _make


@pytest.fixture
def usage_log() -> list[dict]:
    return []


@pytest.fixture
def make_orchestrator(store, make_client, usage_log):
    def _make(*replies) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            store=store,
            generator=make_client(*replies),
            usage_logger=lambda **row: usage_log.append(row),
        )

    return _make
