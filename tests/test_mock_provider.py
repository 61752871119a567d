"""Tests for the in-memory mock provider."""
from __future__ import annotations

import pytest

from genesys.context import RunContext
from genesys.errors import ErrorKind, ProviderError
from genesys.providers.mock import MockProvider
from genesys.specs import BucketSpec, InstanceSpec, NetworkSpec, SubnetSpec

REGION = "us-east-1"


def test_seeded_state(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Every resource service starts with one canned resource."""
    assert [item.name for item in mock_provider.storage.discover(run_ctx)] == ["existing-bucket"]
    assert [item.id for item in mock_provider.compute.discover(run_ctx)] == ["i-existing-1"]
    assert mock_provider.network.find_by_name(run_ctx, "default-vpc").cidr == "172.16.0.0/16"
    assert mock_provider.database.get(run_ctx, "db-existing").engine == "postgres"
    assert mock_provider.serverless.find_by_name(run_ctx, "api-handler").id == "fn-existing"
    assert MockProvider(seed=False).storage.discover(run_ctx) == []


def test_calls_are_recorded(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Reads are recorded but not counted as mutations."""
    mock_provider.storage.find_by_name(run_ctx, "existing-bucket")
    mock_provider.storage.create(run_ctx, BucketSpec(name="assets", region=REGION, provider="mock"))

    assert [(call.service, call.operation, call.target) for call in mock_provider.calls] == [
        ("storage", "find", "existing-bucket"),
        ("storage", "create", "assets"),
    ]
    assert [call.operation for call in mock_provider.mutating_calls()] == ["create"]


def test_create_update_delete_lifecycle(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Resources can be created, updated in place and deleted."""
    spec = InstanceSpec(name="web", region=REGION, provider="mock", size="small", public_ip=True)
    instance_id = mock_provider.compute.create(run_ctx, spec)
    assert instance_id == "i-mock-0001"
    created = mock_provider.compute.get(run_ctx, instance_id)
    assert created.public_ip_address.startswith("203.0.113.")

    spec.size = "large"
    mock_provider.compute.update(run_ctx, instance_id, spec)
    updated = mock_provider.compute.get(run_ctx, instance_id)
    assert updated.size == "large"
    assert updated.private_ip == created.private_ip

    mock_provider.compute.delete(run_ctx, instance_id)
    with pytest.raises(ProviderError) as excinfo:
        mock_provider.compute.get(run_ctx, instance_id)
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


def test_duplicate_names_are_rejected(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Creating a second resource with the same name fails."""
    with pytest.raises(ProviderError) as excinfo:
        mock_provider.storage.create(run_ctx, BucketSpec(name="existing-bucket", region=REGION, provider="mock"))
    assert excinfo.value.kind is ErrorKind.ALREADY_EXISTS


def test_network_subnets_default_zone(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Subnets without a zone land in the region's first zone."""
    spec = NetworkSpec(
        name="app",
        region=REGION,
        provider="mock",
        subnets=[SubnetSpec(name="public", cidr="10.0.1.0/24", public=True)],
    )
    network = mock_provider.network.get(run_ctx, mock_provider.network.create(run_ctx, spec))

    (subnet,) = network.subnets
    assert subnet.az == "us-east-1a"
    assert network.tags["Name"] == "app"


def test_injected_failures_are_consumed(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """A targeted failure fires once, only for its target."""
    mock_provider.inject_failure(
        "storage", "get", ProviderError("flaky", kind=ErrorKind.TRANSIENT), target="existing-bucket"
    )
    with pytest.raises(ProviderError):
        mock_provider.storage.get(run_ctx, "existing-bucket")
    assert mock_provider.storage.get(run_ctx, "existing-bucket").name == "existing-bucket"

    mock_provider.inject_failure("storage", "get", ProviderError("flaky", kind=ErrorKind.TRANSIENT), times=2)
    mock_provider.clear_failures()
    assert mock_provider.storage.get(run_ctx, "existing-bucket").versioning is True


def test_offline_mock_is_read_only(run_ctx: RunContext) -> None:
    """The fallback mock answers reads and refuses writes."""
    offline = MockProvider(REGION, offline=True, requested="azure")
    assert offline.allows_apply is False
    assert offline.storage.discover(run_ctx)

    with pytest.raises(ProviderError) as excinfo:
        offline.storage.create(run_ctx, BucketSpec(name="assets", region=REGION, provider="azure"))

    assert excinfo.value.kind is ErrorKind.UNAUTHORIZED
    assert "'azure'" in excinfo.value.message
    assert [item.name for item in offline.storage.discover(run_ctx)] == ["existing-bucket"]


def test_objects_roundtrip_and_empty(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Objects can be uploaded, listed, downloaded and cleared."""
    storage = mock_provider.storage
    storage.upload(run_ctx, "existing-bucket", "reports/a.txt", b"alpha")
    storage.upload(run_ctx, "existing-bucket", "b.txt", b"beta")

    assert [obj.key for obj in storage.list_objects(run_ctx, "existing-bucket", prefix="reports/")] == ["reports/a.txt"]
    assert storage.download(run_ctx, "existing-bucket", "b.txt") == b"beta"
    assert storage.empty(run_ctx, "existing-bucket") == 2
    assert storage.list_objects(run_ctx, "existing-bucket") == []


def test_role_lifecycle(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Roles with attached policies cannot be deleted."""
    identity = mock_provider.identity
    role = identity.create_role(run_ctx, "worker", trust_policy="{}", tags={"ManagedBy": "genesys"})
    identity.attach_policy(run_ctx, "worker", "arn:aws:iam::aws:policy/PolicyA")
    assert identity.list_attached_policies(run_ctx, "worker") == ["arn:aws:iam::aws:policy/PolicyA"]

    with pytest.raises(ProviderError) as excinfo:
        identity.delete_role(run_ctx, "worker")
    assert excinfo.value.kind is ErrorKind.CONFLICT

    identity.detach_policy(run_ctx, "worker", "arn:aws:iam::aws:policy/PolicyA")
    identity.delete_role(run_ctx, "worker")
    assert role.arn == "arn:aws:iam::000000000000:role/worker"
    with pytest.raises(ProviderError):
        identity.get_role(run_ctx, "worker")


def test_metrics_and_logs_are_deterministic(run_ctx: RunContext, mock_provider: MockProvider) -> None:
    """Canned monitoring data does not depend on the clock."""
    points = mock_provider.monitoring.query_metrics(run_ctx, "AWS/EC2", "CPUUtilization", minutes=30, period=300)
    assert len(points) == 6
    assert points[0].timestamp == "2023-12-31T23:30:00Z"
    events = mock_provider.logs.tail(run_ctx, "/aws/lambda/api", limit=2)
    assert [event.message for event in events][-1].startswith("REPORT")
    assert len(events) == 2
