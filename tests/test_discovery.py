"""Tests for concurrent resource discovery."""
from __future__ import annotations

import pytest

from genesys.context import RetryPolicy, RunContext
from genesys.discovery import SERVICE_NAMES, discover, select_services
from genesys.errors import ErrorKind, OperationCancelled, ProviderError, ValidationError
from genesys.providers.mock import MockProvider


def test_discover_returns_every_service_sorted(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """All services are scanned and the output is deterministic."""
    result = discover(run_ctx, mock_provider, retry=fast_retry)

    assert list(result.services) == list(SERVICE_NAMES)
    assert result.errors == {}
    assert result.total == 5
    assert [resource.id for resource in result.services["network"]] == ["vpc-existing"]
    bucket = result.services["storage"][0]
    assert (bucket.kind, bucket.name, bucket.state) == ("bucket", "existing-bucket", "available")
    assert result.to_dict()["provider"] == "mock"


def test_repeated_discovery_is_identical(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """Two scans of unchanged state serialise the same way."""
    first = discover(run_ctx, mock_provider, retry=fast_retry, max_workers=1).to_dict()
    second = discover(run_ctx, mock_provider, retry=fast_retry, max_workers=5).to_dict()
    assert first == second


def test_service_selection(mock_provider: MockProvider) -> None:
    """Requested services are normalised and validated."""
    assert select_services(mock_provider, [" Storage", "compute", "storage"]) == ["compute", "storage"]
    assert select_services(mock_provider, None) == list(SERVICE_NAMES)
    with pytest.raises(ValidationError) as excinfo:
        select_services(mock_provider, ["queues"])
    assert excinfo.value.field == "service"


def test_failing_service_does_not_hide_the_others(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """One service error is reported alongside the successful scans."""
    mock_provider.inject_failure("database", "discover", ProviderError("access denied", kind=ErrorKind.UNAUTHORIZED))

    result = discover(run_ctx, mock_provider, services=["database", "storage"], retry=fast_retry)

    assert list(result.services) == ["storage"]
    assert result.errors == {"database": "access denied"}
    assert result.to_dict()["errors"] == {"database": "access denied"}


def test_throttled_scan_is_retried(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """Transient failures during a scan are absorbed by retries."""
    mock_provider.inject_failure(
        "compute", "discover", ProviderError("slow down", kind=ErrorKind.THROTTLED), times=2
    )

    result = discover(run_ctx, mock_provider, services=["compute"], retry=fast_retry)

    assert [resource.id for resource in result.services["compute"]] == ["i-existing-1"]
    assert result.errors == {}


def test_fallback_reports_requested_provider(run_ctx: RunContext, fast_retry: RetryPolicy) -> None:
    """An offline stand-in is labelled with the provider the user asked for."""
    offline = MockProvider("eu-west-1", offline=True, requested="aws")

    result = discover(run_ctx, offline, retry=fast_retry, note="showing offline mock data")

    payload = result.to_dict()
    assert payload["provider"] == "aws"
    assert payload["region"] == "eu-west-1"
    assert payload["note"] == "showing offline mock data"
    assert offline.mutating_calls() == []


def test_cancelled_context_raises(mock_provider: MockProvider, fast_retry: RetryPolicy) -> None:
    """A cancelled run does not return partial results."""
    ctx = RunContext()
    ctx.cancel()
    with pytest.raises(OperationCancelled):
        discover(ctx, mock_provider, retry=fast_retry)
