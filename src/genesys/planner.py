"""Diff desired specs against live state and order the resulting actions."""
from __future__ import annotations

import hashlib
import json
import logging
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from .context import RetryPolicy, RunContext, call_with_retry
from .costs import CostEstimate, CostEstimator
from .errors import ConflictError, ErrorKind, ProviderError, ValidationError
from .iam import default_policies, resolve_policy_arns
from .providers.base import Provider
from .specs import (
    BucketSpec,
    NetworkSpec,
    Policies,
    ResourceKind,
    ResourceSpec,
    RoleSpec,
    TableSpec,
    check_policies,
    sort_key,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


MUTATING_ACTIONS = frozenset({ActionKind.CREATE, ActionKind.UPDATE, ActionKind.REPLACE, ActionKind.DELETE})


@dataclass(frozen=True, slots=True)
class Change:
    """One attribute that differs between desired and live state."""

    attribute: str
    current: object
    desired: object
    mutable: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "attribute": self.attribute,
            "current": self.current,
            "desired": self.desired,
            "mutable": self.mutable,
        }


@dataclass(frozen=True, slots=True)
class Action:
    """A single step of a plan."""

    kind: ActionKind
    spec: ResourceSpec
    resource_id: str = ""
    changes: tuple[Change, ...] = ()
    side_effects: tuple[str, ...] = ()
    cost: CostEstimate | None = None
    note: str = ""

    @property
    def mutating(self) -> bool:
        return self.kind in MUTATING_ACTIONS

    @property
    def label(self) -> str:
        return f"{self.spec.kind.value} '{self.spec.name}'"

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "action": self.kind.value,
            "resource": self.spec.to_dict(),
            "resource_id": self.resource_id,
            "changes": [change.to_dict() for change in self.changes],
            "side_effects": list(self.side_effects),
            "cost": self.cost.to_dict() if self.cost else None,
        }
        if self.note:
            payload["note"] = self.note
        return payload


@dataclass(slots=True)
class Plan:
    """Ordered actions for one provider and region."""

    provider: str
    region: str
    actions: list[Action] = field(default_factory=list)
    destroy: bool = False

    @property
    def id(self) -> str:
        """Content hash of the actions; equal plans share an id."""
        canonical = json.dumps([action.to_dict() for action in self.actions], sort_keys=True)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    @property
    def changes(self) -> list[Action]:
        return [action for action in self.actions if action.mutating]

    @property
    def has_changes(self) -> bool:
        return any(action.mutating for action in self.actions)

    def summary(self) -> dict[str, int]:
        counts = Counter(action.kind.value for action in self.actions)
        return {kind.value: counts.get(kind.value, 0) for kind in ActionKind}

    def monthly_cost(self) -> float:
        return round(sum(action.cost.monthly for action in self.actions if action.cost), 2)

    def to_dict(self) -> dict[str, object]:
        return {
            "plan_id": self.id,
            "provider": self.provider,
            "region": self.region,
            "destroy": self.destroy,
            "summary": self.summary(),
            "estimated_monthly_cost": self.monthly_cost(),
            "actions": [action.to_dict() for action in self.actions],
        }

    def to_json(self) -> str:
        """Return the canonical JSON rendering (sorted keys, stable order)."""
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


# Predicted API calls per kind and action.
_CREATE_EFFECTS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.ROLE: ("iam:CreateRole", "iam:AttachRolePolicy"),
    ResourceKind.NETWORK: ("ec2:CreateVpc",),
    ResourceKind.BUCKET: ("s3:CreateBucket", "s3:PutBucketVersioning"),
    ResourceKind.INSTANCE: ("ec2:RunInstances",),
    ResourceKind.FUNCTION: ("lambda:CreateFunction",),
}
_UPDATE_EFFECTS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.ROLE: ("iam:AttachRolePolicy",),
    ResourceKind.NETWORK: ("ec2:CreateTags",),
    ResourceKind.BUCKET: ("s3:PutBucketVersioning",),
    ResourceKind.INSTANCE: ("ec2:ModifyInstanceAttribute",),
    ResourceKind.FUNCTION: ("lambda:UpdateFunctionConfiguration",),
}
_DELETE_EFFECTS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.ROLE: ("iam:DetachRolePolicy", "iam:DeleteRole"),
    ResourceKind.NETWORK: ("ec2:DeleteVpc",),
    ResourceKind.BUCKET: ("s3:DeleteObjects", "s3:DeleteBucket"),
    ResourceKind.INSTANCE: ("ec2:TerminateInstances",),
    ResourceKind.FUNCTION: ("lambda:DeleteFunction",),
}


def side_effects(kind: ActionKind, spec: ResourceSpec) -> tuple[str, ...]:
    """Return the API calls an action is expected to make."""
    if kind is ActionKind.NOOP:
        return ()
    if kind is ActionKind.REPLACE:
        return side_effects(ActionKind.DELETE, spec) + side_effects(ActionKind.CREATE, spec)
    effects: list[str] = []
    if kind is ActionKind.DELETE:
        if isinstance(spec, TableSpec):
            effects.append("dynamodb:DeleteTable" if spec.engine == "dynamodb" else "rds:DeleteDBInstance")
        effects.extend(_DELETE_EFFECTS.get(spec.kind, ()))
        return tuple(effects)

    if spec.iam is not None and kind is ActionKind.CREATE:
        effects.extend(("iam:CreateRole", "iam:AttachRolePolicy"))
    if isinstance(spec, TableSpec):
        if kind is ActionKind.CREATE:
            effects.append("dynamodb:CreateTable" if spec.engine == "dynamodb" else "rds:CreateDBInstance")
        else:
            effects.append("dynamodb:UpdateTable" if spec.engine == "dynamodb" else "rds:ModifyDBInstance")
    table = _CREATE_EFFECTS if kind is ActionKind.CREATE else _UPDATE_EFFECTS
    effects.extend(table.get(spec.kind, ()))
    if isinstance(spec, BucketSpec):
        if spec.encryption:
            effects.append("s3:PutBucketEncryption")
        else:
            effects.append("s3:DeleteBucketEncryption")
        if not spec.public_access:
            effects.append("s3:PutBucketPublicAccessBlock")
    if isinstance(spec, NetworkSpec) and spec.subnets and kind is ActionKind.CREATE:
        effects.append("ec2:CreateSubnet")
    return tuple(dict.fromkeys(effects))


class Planner:
    """Computes deterministic plans against one provider."""

    def __init__(
        self,
        provider: Provider,
        *,
        retry: RetryPolicy | None = None,
        estimator: CostEstimator | None = None,
    ) -> None:
        self._provider = provider
        self._retry = retry or RetryPolicy()
        self._estimator = estimator or CostEstimator()

    def _call(self, ctx: RunContext, description: str, fn: Callable[[], T]) -> T:
        return call_with_retry(ctx, fn, policy=self._retry, description=description)

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------
    def lookup(self, ctx: RunContext, kind: ResourceKind, name: str, *, allow_id: bool = False) -> Any | None:
        """Return the live resource of *kind* named *name*.

        With ``allow_id`` a name that matches no resource is retried as a
        provider id, which is how specs reference pre-existing resources.
        """
        try:
            if kind is ResourceKind.ROLE:
                identity = self._provider.identity
                return self._call(ctx, f"look up role {name}", lambda: identity.get_role(ctx, name))
            service = self._provider.service_for(kind)
            found = self._call(ctx, f"look up {kind.value} {name}", lambda: service.find_by_name(ctx, name))
            if found is not None or not allow_id:
                return found
            return self._call(ctx, f"get {kind.value} {name}", lambda: service.get(ctx, name))
        except ProviderError as exc:
            if exc.kind is ErrorKind.NOT_FOUND or (allow_id and exc.kind is ErrorKind.VALIDATION):
                return None
            raise

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    def plan(
        self,
        ctx: RunContext,
        specs: Sequence[ResourceSpec],
        *,
        policies: Policies | None = None,
        destroy: bool = False,
    ) -> Plan:
        """Return the ordered plan turning live state into *specs*.

        With ``destroy`` every present resource becomes a delete, ordered
        in reverse dependency order.
        """
        self._check_unique(specs)
        if not destroy:
            violations = check_policies(specs, policies or Policies())
            if violations:
                raise ValidationError("Policy violations: " + " ".join(violations), field="policies")

        ordered = sorted(specs, key=lambda spec: sort_key(spec.kind, spec.name))
        observed = {id(spec): self.lookup(ctx, spec.kind, spec.name) for spec in ordered}

        if destroy:
            actions = [self._delete_action(spec, observed[id(spec)]) for spec in reversed(ordered)]
        else:
            self._check_dependencies(ctx, ordered)
            actions = [self._classify(spec, observed[id(spec)]) for spec in ordered]
            self._check_budget(ordered, policies)

        provider = ordered[0].provider if ordered else self._provider.name
        region = ordered[0].region if ordered else self._provider.region
        plan = Plan(provider=provider, region=region, actions=actions, destroy=destroy)
        LOGGER.info("Plan %s: %s", plan.id, plan.summary())
        return plan

    def _check_unique(self, specs: Sequence[ResourceSpec]) -> None:
        seen: set[tuple[str, str, str, str]] = set()
        for spec in specs:
            if spec.key in seen:
                raise ConflictError(
                    f"Duplicate {spec.kind.value} '{spec.name}' for {spec.provider} in {spec.region}; "
                    "names must be unique per provider, kind and region."
                )
            seen.add(spec.key)

    def _check_dependencies(self, ctx: RunContext, specs: Sequence[ResourceSpec]) -> None:
        declared = {(spec.kind, spec.name) for spec in specs}
        for spec in specs:
            for dep_kind, dep_name in spec.dependencies():
                if (dep_kind, dep_name) in declared:
                    continue
                if self.lookup(ctx, dep_kind, dep_name, allow_id=True) is not None:
                    continue
                raise ConflictError(
                    f"{spec.kind.value} '{spec.name}' depends on {dep_kind.value} '{dep_name}', "
                    "which is neither declared nor present."
                )

    def _check_budget(self, specs: Sequence[ResourceSpec], policies: Policies | None) -> None:
        if policies is None or policies.max_cost_per_month is None:
            return
        total = round(sum(self._estimator.estimate(spec).monthly for spec in specs), 2)
        if total > policies.max_cost_per_month:
            raise ValidationError(
                f"Estimated monthly cost ${total:.2f} exceeds policies.max_cost_per_month "
                f"(${policies.max_cost_per_month:.2f}).",
                field="policies.max_cost_per_month",
            )

    def _desired_attributes(self, spec: ResourceSpec) -> dict[str, object]:
        desired = spec.attributes()
        if isinstance(spec, RoleSpec):
            desired["required_policies"] = sorted(
                resolve_policy_arns(spec.required_policies or default_policies(spec.kind.value))
            )
        return desired

    def diff(self, spec: ResourceSpec, live: Any) -> list[Change]:
        """Return attribute differences between *spec* and *live*.

        Attributes the provider does not report (``None``) are skipped.
        """
        current = live.attributes()
        changes: list[Change] = []
        for attribute, desired in self._desired_attributes(spec).items():
            observed = current.get(attribute)
            if desired is None or observed is None:
                continue
            if spec.same_value(attribute, desired, observed):
                continue
            changes.append(
                Change(
                    attribute=attribute,
                    current=observed,
                    desired=desired,
                    mutable=attribute in spec.MUTABLE,
                )
            )
        return changes

    def _classify(self, spec: ResourceSpec, live: Any | None) -> Action:
        if live is None:
            return Action(
                kind=ActionKind.CREATE,
                spec=spec,
                side_effects=side_effects(ActionKind.CREATE, spec),
                cost=self._estimator.estimate(spec),
            )
        changes = tuple(self.diff(spec, live))
        if not changes:
            return Action(kind=ActionKind.NOOP, spec=spec, resource_id=str(live.id))
        kind = ActionKind.UPDATE if all(change.mutable for change in changes) else ActionKind.REPLACE
        note = ""
        if kind is ActionKind.REPLACE:
            immutable = ", ".join(change.attribute for change in changes if not change.mutable)
            note = f"{immutable} cannot change in place"
        return Action(
            kind=kind,
            spec=spec,
            resource_id=str(live.id),
            changes=changes,
            side_effects=side_effects(kind, spec),
            cost=self._estimator.estimate(spec),
            note=note,
        )

    def _delete_action(self, spec: ResourceSpec, live: Any | None) -> Action:
        if live is None:
            return Action(kind=ActionKind.NOOP, spec=spec, note="already absent")
        return Action(
            kind=ActionKind.DELETE,
            spec=spec,
            resource_id=str(live.id),
            side_effects=side_effects(ActionKind.DELETE, spec),
        )


__all__ = [
    "Action",
    "ActionKind",
    "Change",
    "MUTATING_ACTIONS",
    "Plan",
    "Planner",
    "side_effects",
]
