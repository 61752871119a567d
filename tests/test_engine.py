"""Tests for the apply engine: ordering, partial failure and ledger updates."""
from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from genesys.context import RetryPolicy, RunContext
from genesys.engine import ActionStatus, ApplyEngine
from genesys.errors import ErrorKind, ProviderError
from genesys.iam import IAMRoleManager
from genesys.planner import Action, ActionKind, Plan, Planner
from genesys.providers.mock import MockProvider
from genesys.specs import (
    BucketSpec,
    FunctionSpec,
    ResourceKind,
    RoleSpec,
    build_spec,
)
from genesys.state import IAMLink, ResourceRecord, StateLedger

REGION = "us-east-1"


def _engine(provider: MockProvider, ledger: StateLedger, retry: RetryPolicy) -> ApplyEngine:
    return ApplyEngine(provider, ledger, retry=retry, config_file="deploy.toml")


def test_happy_path_bucket_create(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """A messy bucket name is normalised, planned as one create and recorded."""
    spec = build_spec(
        ResourceKind.BUCKET,
        {"name": "My Bucket!", "encryption": True},
        label="bucket",
        provider="mock",
        region="r1",
    )
    assert spec.name == "my-bucket"

    plan = Planner(mock_provider, retry=fast_retry).plan(run_ctx, [spec])
    assert [action.kind for action in plan.actions] == [ActionKind.CREATE]

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    assert report.succeeded is True
    assert report.exit_code == 0
    (record,) = ledger.resources
    assert (record.kind, record.region, record.name, record.id) == ("bucket", "r1", "my-bucket", "my-bucket")
    assert record.config_file == "deploy.toml"
    assert StateLedger.load(ledger.path).resources == ledger.resources


def test_partial_apply_stops_on_fatal(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Earlier successes stay recorded; later actions are not attempted."""
    role = RoleSpec(name="r", region=REGION, provider="mock")
    function = FunctionSpec(name="f", region=REGION, provider="mock", role="r")
    bucket = BucketSpec(name="b-assets", region=REGION, provider="mock")
    plan = Plan(
        provider="mock",
        region=REGION,
        actions=[
            Action(ActionKind.CREATE, role),
            Action(ActionKind.CREATE, function),
            Action(ActionKind.CREATE, bucket),
        ],
    )
    mock_provider.inject_failure("serverless", "create", ProviderError("boom", kind=ErrorKind.FATAL))

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    assert [result.status for result in report.results] == [
        ActionStatus.SUCCEEDED,
        ActionStatus.FAILED,
        ActionStatus.NOT_ATTEMPTED,
    ]
    assert report.exit_code == 2
    assert report.failure is not None and report.failure.error is not None
    assert report.failure.error.message == "boom"
    assert [(record.kind, record.name) for record in ledger.resources] == [("role", "r")]
    assert not [call for call in mock_provider.calls if call.service == "storage" and call.mutating]
    counts = report.to_dict()["counts"]
    assert counts == {"succeeded": 1, "skipped": 0, "failed": 1, "not_attempted": 1}


def test_function_role_reference_is_resolved_to_arn(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """A role named in the same deployment is created first and bound by ARN."""
    specs = [
        FunctionSpec(name="api", region=REGION, provider="mock", role="api-role"),
        RoleSpec(name="api-role", region=REGION, provider="mock"),
    ]
    plan = Planner(mock_provider, retry=fast_retry).plan(run_ctx, specs)
    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    assert report.succeeded
    function = mock_provider.serverless.get(run_ctx, "api")
    assert function.role == "arn:aws:iam::000000000000:role/api-role"
    role_record = ledger.find_by_name("api-role", kind="role")[0]
    assert role_record.id == function.role
    assert role_record.iam == IAMLink("api-role", "genesys", True)


def test_managed_role_is_created_and_linked(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Functions without a role get a generated managed role recorded on the entry."""
    spec = build_spec(ResourceKind.FUNCTION, {"name": "worker"}, label="function", provider="mock", region=REGION)
    plan = Planner(mock_provider, retry=fast_retry).plan(run_ctx, [spec])

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    (result,) = report.results
    assert result.role is not None and result.role.created is True
    (record,) = ledger.resources
    assert record.iam is not None
    assert record.iam.role_name.startswith("genesys-function-worker-")
    assert record.iam.auto_cleanup is True
    assert mock_provider.serverless.get(run_ctx, "worker").role == result.role.role_arn


def test_ledger_holds_each_resource_once_after_reapply(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Applying, drifting and re-applying never duplicates records."""
    planner = Planner(mock_provider, retry=fast_retry)
    engine = _engine(mock_provider, ledger, fast_retry)
    specs = [
        BucketSpec(name="assets", region=REGION, provider="mock"),
        BucketSpec(name="logs-archive", region=REGION, provider="mock"),
    ]
    engine.execute(run_ctx, planner.plan(run_ctx, specs))
    created_at = {record.id: record.created_at for record in ledger.resources}

    second = planner.plan(run_ctx, specs)
    assert second.has_changes is False
    assert all(result.status is ActionStatus.SKIPPED for result in engine.execute(run_ctx, second).results)

    drifted = [BucketSpec(name="assets", region=REGION, provider="mock", versioning=False), specs[1]]
    update_plan = planner.plan(run_ctx, drifted)
    assert update_plan.actions[0].kind is ActionKind.UPDATE
    engine.execute(run_ctx, update_plan)

    ids = [record.id for record in ledger.resources]
    assert sorted(ids) == ["assets", "logs-archive"]
    assert all(record.complete for record in ledger.resources)
    assert {record.id: record.created_at for record in ledger.resources} == created_at


def test_offline_provider_refuses_apply(
    run_ctx: RunContext,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """A fallback mock plans but never applies."""
    offline = MockProvider(REGION, offline=True, requested="aws")
    plan = Planner(offline, retry=fast_retry).plan(
        run_ctx, [BucketSpec(name="assets", region=REGION, provider="aws")]
    )

    with pytest.raises(ProviderError) as excinfo:
        _engine(offline, ledger, fast_retry).execute(run_ctx, plan)

    assert excinfo.value.kind is ErrorKind.UNAUTHORIZED
    assert excinfo.value.hint is not None and "configure setup" in excinfo.value.hint
    assert offline.mutating_calls() == []
    assert len(ledger) == 0


def test_dry_run_leaves_ledger_untouched(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    tmp_path: Path,
    fast_retry: RetryPolicy,
) -> None:
    """Planning issues no mutating calls and leaves the ledger byte-identical."""
    path = tmp_path / "state.json"
    ledger = StateLedger.load(path)
    ledger.add(ResourceRecord(id="old", name="old", kind="bucket", provider="mock", region=REGION))
    before = path.read_bytes()

    specs = [BucketSpec(name="assets", region=REGION, provider="mock")]
    first = Planner(mock_provider, retry=fast_retry).plan(run_ctx, specs)
    second = Planner(mock_provider, retry=fast_retry).plan(run_ctx, specs)

    assert mock_provider.mutating_calls() == []
    assert path.read_bytes() == before
    assert first.to_json() == second.to_json()


def test_already_exists_stops_with_hint(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """A create racing another writer asks the user to re-plan."""
    spec = BucketSpec(name="existing-bucket", region=REGION, provider="mock")
    plan = Plan(provider="mock", region=REGION, actions=[Action(ActionKind.CREATE, spec)])

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    failure = report.failure
    assert failure is not None and failure.error is not None
    assert failure.error.kind is ErrorKind.ALREADY_EXISTS
    assert failure.error.hint is not None and "Re-run the plan" in failure.error.hint
    assert report.exit_code == 2


def test_cancellation_marks_remaining_actions(
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """A cancelled run attempts nothing further and exits with 130."""
    ctx = RunContext()
    specs = [
        BucketSpec(name="assets", region=REGION, provider="mock"),
        BucketSpec(name="logs-archive", region=REGION, provider="mock"),
    ]
    plan = Planner(mock_provider, retry=fast_retry).plan(ctx, specs)
    ctx.cancel()

    report = _engine(mock_provider, ledger, fast_retry).execute(ctx, plan)

    assert report.cancelled is True
    assert report.exit_code == 130
    assert all(result.status is ActionStatus.NOT_ATTEMPTED for result in report.results)
    assert len(ledger) == 0


def test_replace_swaps_the_ledger_record(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """A replacement deletes the old resource and records the new id."""
    ledger.add(ResourceRecord(id="i-existing-1", name="existing-instance", kind="instance", provider="mock", region=REGION))
    spec = build_spec(
        ResourceKind.INSTANCE,
        {"name": "existing-instance", "size": "medium", "image": "debian-12", "network": "vpc-existing"},
        label="instance",
        provider="mock",
        region=REGION,
    )
    plan = Planner(mock_provider, retry=fast_retry).plan(run_ctx, [spec])
    assert plan.actions[0].kind is ActionKind.REPLACE

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    (result,) = report.results
    assert result.status is ActionStatus.SUCCEEDED
    assert result.resource_id != "i-existing-1"
    assert [record.id for record in ledger.resources] == [result.resource_id]


def test_delete_cleans_up_managed_role(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Deleting a resource removes its record and its genesys-managed role."""
    planner = Planner(mock_provider, retry=fast_retry)
    engine = _engine(mock_provider, ledger, fast_retry)
    spec = build_spec(ResourceKind.FUNCTION, {"name": "worker"}, label="function", provider="mock", region=REGION)
    engine.execute(run_ctx, planner.plan(run_ctx, [spec]))
    role_name = ledger.resources[0].iam.role_name  # type: ignore[union-attr]

    fresh = build_spec(ResourceKind.FUNCTION, {"name": "worker"}, label="function", provider="mock", region=REGION)
    report = engine.execute(run_ctx, planner.plan(run_ctx, [fresh], destroy=True))

    assert report.succeeded
    assert len(ledger) == 0
    assert role_name not in mock_provider.identity.roles  # type: ignore[attr-defined]


def test_delete_keeps_external_role_with_warning(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """A role whose live tag is not genesys survives and is reported."""
    mock_provider.seed_role("shared", tags={"ManagedBy": "external"})
    ledger.add(
        ResourceRecord(
            id="existing-bucket",
            name="existing-bucket",
            kind="bucket",
            provider="mock",
            region=REGION,
            iam=IAMLink("shared", "genesys", True),
        )
    )
    plan = Planner(mock_provider, retry=fast_retry).plan(
        run_ctx, [BucketSpec(name="existing-bucket", region=REGION, provider="mock")], destroy=True
    )

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    (result,) = report.results
    assert result.status is ActionStatus.SUCCEEDED
    assert result.warnings and "Refusing to delete role shared" in result.warnings[0]
    assert "shared" in mock_provider.identity.roles  # type: ignore[attr-defined]
    assert len(ledger) == 0


def test_delete_of_absent_resource_forgets_stale_record(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Records for resources that are already gone are dropped."""
    ledger.add(ResourceRecord(id="ghost", name="ghost-bucket", kind="bucket", provider="mock", region=REGION))
    plan = Planner(mock_provider, retry=fast_retry).plan(
        run_ctx, [BucketSpec(name="ghost-bucket", region=REGION, provider="mock")], destroy=True
    )
    assert plan.has_changes is False

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    assert report.results[0].status is ActionStatus.SKIPPED
    assert len(ledger) == 0


def test_update_keeps_generated_role(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Updating a function reuses its recorded role instead of minting a new one."""
    ticks = iter(datetime(2024, 1, 1) + timedelta(minutes=step) for step in range(10))
    iam = IAMRoleManager(mock_provider.identity, retry=fast_retry, clock=lambda: next(ticks))
    engine = ApplyEngine(mock_provider, ledger, iam=iam, retry=fast_retry)
    planner = Planner(mock_provider, retry=fast_retry)

    spec = build_spec(ResourceKind.FUNCTION, {"name": "worker"}, label="function", provider="mock", region=REGION)
    engine.execute(run_ctx, planner.plan(run_ctx, [spec]))
    role_name = ledger.resources[0].iam.role_name  # type: ignore[union-attr]
    roles = sorted(mock_provider.identity.roles)  # type: ignore[attr-defined]

    resized = build_spec(
        ResourceKind.FUNCTION, {"name": "worker", "memory": 512}, label="function", provider="mock", region=REGION
    )
    plan = planner.plan(run_ctx, [resized])
    assert plan.actions[0].kind is ActionKind.UPDATE
    report = engine.execute(run_ctx, plan)

    assert report.succeeded
    assert sorted(mock_provider.identity.roles) == roles  # type: ignore[attr-defined]
    (record,) = ledger.resources
    assert record.iam is not None and record.iam.role_name == role_name
    function = mock_provider.serverless.get(run_ctx, "worker")
    assert function.memory == 512
    assert function.role.endswith(f"/{role_name}")


def test_delete_keeps_same_name_in_other_regions_and_providers(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Destroying one region's resource leaves its namesakes recorded."""
    engine = _engine(mock_provider, ledger, fast_retry)
    planner = Planner(mock_provider, retry=fast_retry)
    spec = BucketSpec(name="assets", region=REGION, provider="mock")
    engine.execute(run_ctx, planner.plan(run_ctx, [spec]))
    ledger.add(ResourceRecord(id="assets", name="assets", kind="bucket", provider="mock", region="eu-west-1"))
    ledger.add(ResourceRecord(id="assets", name="assets", kind="bucket", provider="aws", region=REGION))

    plan = planner.plan(run_ctx, [BucketSpec(name="assets", region=REGION, provider="mock")], destroy=True)
    assert plan.actions[0].kind is ActionKind.DELETE
    report = engine.execute(run_ctx, plan)

    assert report.succeeded
    assert sorted((record.provider, record.region) for record in ledger.resources) == [
        ("aws", REGION),
        ("mock", "eu-west-1"),
    ]


def test_delete_of_absent_resource_keeps_other_regions(
    run_ctx: RunContext,
    mock_provider: MockProvider,
    ledger: StateLedger,
    fast_retry: RetryPolicy,
) -> None:
    """Stale-record cleanup stays within the resource's provider and region."""
    for provider, region in (("mock", REGION), ("mock", "eu-west-1"), ("aws", REGION)):
        ledger.add(ResourceRecord(id="ghost", name="ghost-bucket", kind="bucket", provider=provider, region=region))
    plan = Planner(mock_provider, retry=fast_retry).plan(
        run_ctx, [BucketSpec(name="ghost-bucket", region=REGION, provider="mock")], destroy=True
    )

    report = _engine(mock_provider, ledger, fast_retry).execute(run_ctx, plan)

    assert report.results[0].status is ActionStatus.SKIPPED
    assert sorted((record.provider, record.region) for record in ledger.resources) == [
        ("aws", REGION),
        ("mock", "eu-west-1"),
    ]
