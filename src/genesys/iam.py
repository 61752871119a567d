"""IAM role lifecycle: ensure, reconcile additively, clean up safely.

Roles created here carry ``ManagedBy=genesys``. That tag on the live role
is the only authority for deletion; the configuration flags can veto a
cleanup but never authorise one on their own.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeVar

from .context import RetryPolicy, RunContext, call_with_retry
from .errors import ErrorKind, GenesysError, ProviderError, ValidationError
from .naming import format_name
from .providers.base import IdentityService
from .providers.models import Role
from .specs import POLICY_ARNS, IAMConfig, unknown_policy_error

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MANAGED_BY_GENESYS = "genesys"
MANAGED_BY_EXTERNAL = "external"
MANAGED_BY_TAG = "ManagedBy"
ROLE_NAME_MAX = 64

# Resource kind -> service whose defaults and trust policy apply.
_KIND_SERVICES = {
    "bucket": "s3",
    "instance": "ec2",
    "function": "lambda",
    "table": "rds",
}

DEFAULT_POLICIES: dict[str, tuple[str, ...]] = {
    "s3": ("S3 full access", "CloudWatch full access"),
    "ec2": ("Systems Manager Parameter access", "CloudWatch full access"),
    "lambda": ("Basic CloudWatch Logs access",),
    "rds": ("CloudWatch full access",),
}
FALLBACK_POLICIES: tuple[str, ...] = ("CloudWatch full access",)

TRUST_PRINCIPALS: dict[str, str | list[str]] = {
    "lambda": "lambda.amazonaws.com",
    "s3": ["s3.amazonaws.com", "ec2.amazonaws.com"],
    "ec2": "ec2.amazonaws.com",
    "rds": "rds.amazonaws.com",
}


class RoleCleanupRefused(GenesysError):
    """Raised when a role is not eligible for deletion by genesys."""

    default_kind = ErrorKind.CONFLICT


@dataclass(slots=True)
class RoleOutcome:
    """What :meth:`IAMRoleManager.reconcile` did to a role."""

    role_name: str
    role_arn: str
    created: bool
    managed_by: str
    attached: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "role_name": self.role_name,
            "role_arn": self.role_arn,
            "created": self.created,
            "managed_by": self.managed_by,
            "attached": list(self.attached),
            "failed": list(self.failed),
        }


def service_for_kind(kind: str) -> str:
    """Return the service key (``s3``, ``ec2`` ...) used for *kind* defaults."""
    lowered = kind.lower()
    return _KIND_SERVICES.get(lowered, lowered)


def default_policies(kind: str) -> list[str]:
    return list(DEFAULT_POLICIES.get(service_for_kind(kind), FALLBACK_POLICIES))


def render_trust_policy(trust: str) -> str:
    """Return the trust policy document for a kind key or literal JSON."""
    if "{" in trust:
        return trust
    principal = TRUST_PRINCIPALS.get(service_for_kind(trust), TRUST_PRINCIPALS["ec2"])
    document = {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": principal},
                "Action": "sts:AssumeRole",
            }
        ],
    }
    return json.dumps(document)


def resolve_policy_arn(reference: str) -> str | None:
    """Translate a policy reference to an ARN; ``None`` when unknown."""
    if reference.startswith("arn:"):
        return reference
    return POLICY_ARNS.get(reference)


def resolve_policy_arns(references: list[str]) -> list[str]:
    """Resolve *references* in order; an unknown reference raises ValidationError."""
    arns: list[str] = []
    for reference in references:
        arn = resolve_policy_arn(reference)
        if arn is None:
            raise unknown_policy_error(reference, "required_policies")
        if arn not in arns:
            arns.append(arn)
    return arns


def validate_config(cfg: IAMConfig | None) -> None:
    """Reject malformed role ARNs and names."""
    if cfg is None:
        return
    if cfg.role_arn and not cfg.role_arn.startswith("arn:aws:iam::"):
        raise ValidationError(f"Invalid role ARN format: {cfg.role_arn}", field="iam.role_arn")
    if cfg.role_name:
        if len(cfg.role_name) > ROLE_NAME_MAX:
            raise ValidationError(
                f"Role name too long (max {ROLE_NAME_MAX} characters): {cfg.role_name}",
                field="iam.role_name",
            )
        if " " in cfg.role_name:
            raise ValidationError(f"Role name cannot contain spaces: {cfg.role_name}", field="iam.role_name")


def generated_role_name(kind: str, name: str, *, now: datetime | None = None) -> str:
    """Return ``genesys-<kind>-<name>-<YYYYmmdd-HHMMSS>`` within the role limit."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    suffix = f"-{stamp}"
    base = format_name("role", f"genesys-{kind}-{name}")
    return base[: ROLE_NAME_MAX - len(suffix)].rstrip("-_.") + suffix


class IAMRoleManager:
    """Ensures roles exist with their required policies and cleans them up."""

    def __init__(
        self,
        identity: IdentityService,
        *,
        retry: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._identity = identity
        self._retry = retry or RetryPolicy()
        self._clock = clock or datetime.now

    def _call(self, ctx: RunContext, description: str, fn: Callable[[], T]) -> T:
        return call_with_retry(ctx, fn, policy=self._retry, description=description)

    def apply_defaults(self, cfg: IAMConfig, kind: str, name: str) -> IAMConfig:
        """Fill unset fields of *cfg* in place and return it."""
        if not cfg.role_name and cfg.role_arn:
            cfg.role_name = cfg.role_arn.rsplit("/", 1)[-1]
        if not cfg.role_name:
            cfg.role_name = generated_role_name(kind, name, now=self._clock())
        if cfg.auto_manage is None:
            cfg.auto_manage = not cfg.managed_by or cfg.managed_by == MANAGED_BY_GENESYS
        if cfg.auto_cleanup is None:
            cfg.auto_cleanup = not cfg.managed_by or cfg.managed_by == MANAGED_BY_GENESYS
        if not cfg.required_policies:
            cfg.required_policies = default_policies(kind)
        if not cfg.trust_policy:
            cfg.trust_policy = service_for_kind(kind)
        if not cfg.description:
            cfg.description = f"Auto-created by Genesys for {kind}: {name}"
        cfg.tags.setdefault(MANAGED_BY_TAG, MANAGED_BY_GENESYS)
        cfg.tags.setdefault("ResourceType", kind)
        cfg.tags.setdefault("ResourceName", name)
        return cfg

    def ensure_role(self, ctx: RunContext, cfg: IAMConfig, kind: str, name: str) -> str:
        """Make sure the role for *kind*/*name* exists; return its ARN."""
        return self.reconcile(ctx, cfg, kind, name).role_arn

    def reconcile(self, ctx: RunContext, cfg: IAMConfig, kind: str, name: str) -> RoleOutcome:
        """Create or additively reconcile the role described by *cfg*."""
        validate_config(cfg)
        self.apply_defaults(cfg, kind, name)
        validate_config(cfg)
        role_name = cfg.role_name
        try:
            role = self._call(ctx, f"get role {role_name}", lambda: self._identity.get_role(ctx, role_name))
        except ProviderError as exc:
            if exc.kind is not ErrorKind.NOT_FOUND:
                raise
            return self._create(ctx, cfg)

        cfg.managed_by = MANAGED_BY_GENESYS if role.managed_by == MANAGED_BY_GENESYS else MANAGED_BY_EXTERNAL
        cfg.role_arn = role.arn
        LOGGER.info("Found existing role %s (%s)", role_name, cfg.managed_by)
        outcome = RoleOutcome(role_name=role_name, role_arn=role.arn, created=False, managed_by=cfg.managed_by)
        self._attach_missing(ctx, role, cfg, outcome)
        return outcome

    def _create(self, ctx: RunContext, cfg: IAMConfig) -> RoleOutcome:
        role_name = cfg.role_name
        document = render_trust_policy(cfg.trust_policy)
        role = self._call(
            ctx,
            f"create role {role_name}",
            lambda: self._identity.create_role(
                ctx,
                role_name,
                trust_policy=document,
                description=cfg.description,
                tags=cfg.tags,
            ),
        )
        cfg.managed_by = MANAGED_BY_GENESYS
        cfg.role_arn = role.arn
        LOGGER.info("Created role %s", role_name)
        outcome = RoleOutcome(role_name=role_name, role_arn=role.arn, created=True, managed_by=MANAGED_BY_GENESYS)
        for arn in resolve_policy_arns(cfg.required_policies):
            self._attach(ctx, role_name, arn, outcome)
        return outcome

    def _attach_missing(self, ctx: RunContext, role: Role, cfg: IAMConfig, outcome: RoleOutcome) -> None:
        attached = set(
            self._call(
                ctx,
                f"list policies of {role.name}",
                lambda: self._identity.list_attached_policies(ctx, role.name),
            )
        )
        for arn in resolve_policy_arns(cfg.required_policies):
            if arn not in attached:
                self._attach(ctx, role.name, arn, outcome)

    def _attach(self, ctx: RunContext, role_name: str, arn: str, outcome: RoleOutcome) -> None:
        try:
            self._call(
                ctx,
                f"attach {arn} to {role_name}",
                lambda: self._identity.attach_policy(ctx, role_name, arn),
            )
        except GenesysError as exc:
            # One failed attachment leaves the role usable; re-running converges.
            LOGGER.warning("Failed to attach %s to %s: %s", arn, role_name, exc.message)
            outcome.failed.append(arn)
        else:
            outcome.attached.append(arn)

    def cleanup_role(self, ctx: RunContext, cfg: IAMConfig) -> bool:
        """Detach policies from and delete a genesys-managed role.

        Returns False when the role no longer exists. Raises
        :class:`RoleCleanupRefused` when the configuration or the live
        ``ManagedBy`` tag does not allow deletion.
        """
        role_name = cfg.role_name or cfg.role_arn.rsplit("/", 1)[-1]
        if cfg.managed_by != MANAGED_BY_GENESYS or not cfg.auto_cleanup:
            raise RoleCleanupRefused(
                f"Refusing to delete role {role_name}: it is not marked as managed by genesys "
                "with auto_cleanup enabled."
            )
        try:
            role = self._call(ctx, f"get role {role_name}", lambda: self._identity.get_role(ctx, role_name))
        except ProviderError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                LOGGER.info("Role %s is already gone", role_name)
                return False
            raise
        if role.managed_by != MANAGED_BY_GENESYS:
            raise RoleCleanupRefused(
                f"Refusing to delete role {role_name}: its {MANAGED_BY_TAG} tag is "
                f"'{role.managed_by or 'unset'}', not '{MANAGED_BY_GENESYS}'."
            )
        policies = self._call(
            ctx,
            f"list policies of {role_name}",
            lambda: self._identity.list_attached_policies(ctx, role_name),
        )
        for arn in policies:
            try:
                self._call(
                    ctx,
                    f"detach {arn} from {role_name}",
                    lambda arn=arn: self._identity.detach_policy(ctx, role_name, arn),
                )
            except GenesysError as exc:
                LOGGER.warning("Failed to detach %s from %s: %s", arn, role_name, exc.message)
        self._call(ctx, f"delete role {role_name}", lambda: self._identity.delete_role(ctx, role_name))
        LOGGER.info("Deleted role %s", role_name)
        return True


__all__ = [
    "DEFAULT_POLICIES",
    "IAMRoleManager",
    "MANAGED_BY_EXTERNAL",
    "MANAGED_BY_GENESYS",
    "POLICY_ARNS",
    "RoleCleanupRefused",
    "RoleOutcome",
    "default_policies",
    "generated_role_name",
    "render_trust_policy",
    "resolve_policy_arn",
    "resolve_policy_arns",
    "service_for_kind",
    "validate_config",
]
