"""Shared fixtures for the genesys test-suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from genesys.context import RetryPolicy, RunContext
from genesys.providers.mock import MockProvider
from genesys.state import StateLedger


@pytest.fixture
def run_ctx() -> RunContext:
    """Fresh, uncancelled run context."""
    return RunContext(call_timeout=5.0)


@pytest.fixture
def mock_provider() -> MockProvider:
    """Seeded mock provider that accepts apply."""
    return MockProvider("us-east-1")


@pytest.fixture
def ledger(tmp_path: Path) -> StateLedger:
    """Empty ledger stored under the test's temporary directory."""
    return StateLedger.load(tmp_path / "state.json")


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy without backoff delays."""
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=0.0)
