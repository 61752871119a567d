"""Tests for IAM role ensure, additive reconcile and guarded cleanup."""
from __future__ import annotations

import json
from datetime import datetime

import pytest

from genesys.context import RetryPolicy, RunContext
from genesys.errors import ErrorKind, ProviderError, ValidationError
from genesys.iam import (
    MANAGED_BY_EXTERNAL,
    MANAGED_BY_GENESYS,
    IAMRoleManager,
    RoleCleanupRefused,
    default_policies,
    generated_role_name,
    render_trust_policy,
    resolve_policy_arns,
)
from genesys.providers.mock import MockProvider
from genesys.specs import IAMConfig

POLICY_A = "arn:aws:iam::aws:policy/PolicyA"
POLICY_B = "arn:aws:iam::aws:policy/PolicyB"
CLOCK = datetime(2024, 3, 1, 9, 15, 0)


def _manager(provider: MockProvider, retry: RetryPolicy) -> IAMRoleManager:
    return IAMRoleManager(provider.identity, retry=retry, clock=lambda: CLOCK)


def test_reconcile_is_additive(run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy) -> None:
    """Missing policies are attached and nothing is ever detached."""
    mock_provider.seed_role("r", tags={"ManagedBy": "genesys"}, policies=[POLICY_A])
    manager = _manager(mock_provider, fast_retry)

    outcome = manager.reconcile(
        run_ctx,
        IAMConfig(role_name="r", required_policies=[POLICY_A, POLICY_B]),
        "function",
        "api",
    )

    assert outcome.created is False
    assert outcome.managed_by == MANAGED_BY_GENESYS
    assert outcome.attached == [POLICY_B]
    role = mock_provider.identity.get_role(run_ctx, "r")
    assert set(role.attached_policies) == {POLICY_A, POLICY_B}
    assert not [call for call in mock_provider.calls if call.operation == "detach_policy"]


def test_reconcile_keeps_out_of_band_policies(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """Policies attached outside genesys survive a reconcile."""
    mock_provider.seed_role("r", tags={"ManagedBy": "genesys"}, policies=[POLICY_A, POLICY_B])
    manager = _manager(mock_provider, fast_retry)

    outcome = manager.reconcile(run_ctx, IAMConfig(role_name="r", required_policies=[POLICY_A]), "function", "api")

    assert outcome.attached == []
    assert set(mock_provider.identity.get_role(run_ctx, "r").attached_policies) == {POLICY_A, POLICY_B}
    assert mock_provider.mutating_calls() == []


def test_ensure_role_creates_with_defaults(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """A new role gets a generated name, the ManagedBy tag and kind defaults."""
    manager = _manager(mock_provider, fast_retry)
    cfg = IAMConfig()

    arn = manager.ensure_role(run_ctx, cfg, "function", "api")

    assert cfg.role_name == "genesys-function-api-20240301-091500"
    assert arn.endswith(f"role/{cfg.role_name}")
    role = mock_provider.identity.get_role(run_ctx, cfg.role_name)
    assert role.tags["ManagedBy"] == "genesys"
    assert role.tags["ResourceName"] == "api"
    assert set(resolve_policy_arns(default_policies("function"))) <= set(role.attached_policies)
    assert json.loads(role.trust_policy)["Statement"][0]["Principal"]["Service"] == "lambda.amazonaws.com"
    assert cfg.auto_cleanup is True
    assert cfg.managed_by == MANAGED_BY_GENESYS


def test_existing_untagged_role_is_external(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """Roles that genesys did not create are recorded as external."""
    mock_provider.seed_role("shared")
    manager = _manager(mock_provider, fast_retry)
    cfg = IAMConfig(role_name="shared", required_policies=[POLICY_A])

    outcome = manager.reconcile(run_ctx, cfg, "function", "api")

    assert outcome.managed_by == MANAGED_BY_EXTERNAL
    assert cfg.managed_by == MANAGED_BY_EXTERNAL


def test_failed_attachment_is_reported_not_raised(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """One policy failing to attach leaves the role usable."""
    mock_provider.seed_role("r", tags={"ManagedBy": "genesys"})
    mock_provider.inject_failure(
        "identity",
        "attach_policy",
        ProviderError("denied", kind=ErrorKind.UNAUTHORIZED),
        target=f"r:{POLICY_A}",
    )
    manager = _manager(mock_provider, fast_retry)

    outcome = manager.reconcile(run_ctx, IAMConfig(role_name="r", required_policies=[POLICY_A, POLICY_B]), "bucket", "b")

    assert outcome.failed == [POLICY_A]
    assert outcome.attached == [POLICY_B]


def test_cleanup_refuses_external_role(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """A live ManagedBy tag other than genesys blocks deletion."""
    original = mock_provider.seed_role("ext", tags={"ManagedBy": "external"}, policies=[POLICY_A])
    manager = _manager(mock_provider, fast_retry)

    with pytest.raises(RoleCleanupRefused):
        # The config claims ownership; the live tag still wins.
        manager.cleanup_role(run_ctx, IAMConfig(role_name="ext", managed_by="genesys", auto_cleanup=True))

    assert mock_provider.identity.get_role(run_ctx, "ext") == original
    assert mock_provider.mutating_calls() == []


@pytest.mark.parametrize(
    "cfg",
    [
        IAMConfig(role_name="owned", managed_by="external", auto_cleanup=True),
        IAMConfig(role_name="owned", managed_by="genesys", auto_cleanup=False),
    ],
)
def test_cleanup_refused_by_configuration(
    cfg: IAMConfig, run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """The configuration can veto a cleanup even for a tagged role."""
    mock_provider.seed_role("owned", tags={"ManagedBy": "genesys"})
    manager = _manager(mock_provider, fast_retry)

    with pytest.raises(RoleCleanupRefused):
        manager.cleanup_role(run_ctx, cfg)
    assert mock_provider.identity.get_role(run_ctx, "owned").name == "owned"


def test_cleanup_detaches_then_deletes(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """Managed roles lose their policies before being deleted."""
    mock_provider.seed_role("owned", tags={"ManagedBy": "genesys"}, policies=[POLICY_A, POLICY_B])
    manager = _manager(mock_provider, fast_retry)

    deleted = manager.cleanup_role(run_ctx, IAMConfig(role_name="owned", managed_by="genesys", auto_cleanup=True))

    assert deleted is True
    operations = [call.operation for call in mock_provider.mutating_calls()]
    assert operations == ["detach_policy", "detach_policy", "delete_role"]
    with pytest.raises(ProviderError) as excinfo:
        mock_provider.identity.get_role(run_ctx, "owned")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND


def test_cleanup_of_missing_role_returns_false(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """A role that is already gone is not an error."""
    manager = _manager(mock_provider, fast_retry)
    assert manager.cleanup_role(run_ctx, IAMConfig(role_name="gone", managed_by="genesys", auto_cleanup=True)) is False


@pytest.mark.parametrize(
    ("cfg", "field"),
    [
        (IAMConfig(role_arn="not-an-arn"), "iam.role_arn"),
        (IAMConfig(role_name="has space"), "iam.role_name"),
        (IAMConfig(role_name="r" * 65), "iam.role_name"),
    ],
)
def test_invalid_configuration_is_rejected(
    cfg: IAMConfig, field: str, run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """Malformed names and ARNs fail before any provider call."""
    manager = _manager(mock_provider, fast_retry)
    with pytest.raises(ValidationError) as excinfo:
        manager.reconcile(run_ctx, cfg, "function", "api")
    assert excinfo.value.field == field
    assert mock_provider.calls == []


def test_role_name_from_arn_is_reused(
    run_ctx: RunContext, mock_provider: MockProvider, fast_retry: RetryPolicy
) -> None:
    """An explicit ARN names the role to reconcile."""
    seeded = mock_provider.seed_role("byarn", tags={"ManagedBy": "genesys"})
    manager = _manager(mock_provider, fast_retry)
    cfg = IAMConfig(role_arn=seeded.arn, required_policies=[POLICY_A])

    outcome = manager.reconcile(run_ctx, cfg, "instance", "web")

    assert outcome.role_name == "byarn"
    assert outcome.created is False


def test_helpers() -> None:
    """Policy names resolve to ARNs without duplicates; unknown names are rejected."""
    assert resolve_policy_arns(["S3 full access", POLICY_A, POLICY_A]) == [
        "arn:aws:iam::aws:policy/AmazonS3FullAccess",
        POLICY_A,
    ]
    with pytest.raises(ValidationError) as excinfo:
        resolve_policy_arns(["S3 ful access"])
    assert excinfo.value.suggestion == "S3 full access"
    literal = '{"Version": "2012-10-17"}'
    assert render_trust_policy(literal) == literal
    principal = json.loads(render_trust_policy("bucket"))["Statement"][0]["Principal"]["Service"]
    assert principal == ["s3.amazonaws.com", "ec2.amazonaws.com"]
    long_name = generated_role_name("function", "x" * 80, now=CLOCK)
    assert len(long_name) <= 64
    assert long_name.endswith("-20240301-091500")
