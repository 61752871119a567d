"""Execute plans: ordered, retried, recorded after every success.

Actions run strictly one after another. Each successful create or update
is written to the ledger before the next action starts. The first
failure that survives retries stops the run; earlier results stay in the
ledger and later actions are reported as not attempted. Nothing is rolled
back automatically.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from .context import RetryPolicy, RunContext, call_with_retry
from .errors import (
    CREDENTIALS_HINT,
    ErrorKind,
    GenesysError,
    OperationCancelled,
    ProviderError,
)
from .exit_codes import ExitCode
from .iam import MANAGED_BY_GENESYS, IAMRoleManager, RoleCleanupRefused, RoleOutcome
from .planner import Action, ActionKind, Plan
from .providers.base import Provider
from .specs import FunctionSpec, IAMConfig, ResourceKind, ResourceSpec, RoleSpec
from .state import IAMLink, LedgerError, ResourceRecord, StateLedger

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ActionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(slots=True)
class ActionResult:
    """Outcome of one plan action."""

    action: Action
    status: ActionStatus
    resource_id: str = ""
    error: GenesysError | None = None
    role: RoleOutcome | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "action": self.action.kind.value,
            "kind": self.action.spec.kind.value,
            "name": self.action.spec.name,
            "status": self.status.value,
            "resource_id": self.resource_id,
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.role is not None:
            payload["role"] = self.role.to_dict()
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


@dataclass(slots=True)
class ApplyReport:
    """Per-action results of an apply or delete run."""

    plan: Plan
    results: list[ActionResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def failure(self) -> ActionResult | None:
        return next((result for result in self.results if result.status is ActionStatus.FAILED), None)

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.failure is None

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return int(ExitCode.CANCELLED)
        failure = self.failure
        if failure is not None and failure.error is not None:
            return failure.error.exit_code
        return int(ExitCode.OK)

    def count(self, status: ActionStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    def to_dict(self) -> dict[str, object]:
        return {
            "plan_id": self.plan.id,
            "succeeded": self.succeeded,
            "cancelled": self.cancelled,
            "counts": {status.value: self.count(status) for status in ActionStatus},
            "results": [result.to_dict() for result in self.results],
        }


class ApplyEngine:
    """Runs plans against one provider and records results in the ledger."""

    def __init__(
        self,
        provider: Provider,
        ledger: StateLedger,
        *,
        iam: IAMRoleManager | None = None,
        retry: RetryPolicy | None = None,
        config_file: Path | str | None = None,
    ) -> None:
        self._provider = provider
        self._ledger = ledger
        self._retry = retry or RetryPolicy()
        self._iam = iam or IAMRoleManager(provider.identity, retry=self._retry)
        self._config_file = str(config_file) if config_file else ""

    def _call(self, ctx: RunContext, description: str, fn: Callable[[], T]) -> T:
        return call_with_retry(ctx, fn, policy=self._retry, description=description)

    def _ensure_writable(self, plan: Plan) -> None:
        if plan.has_changes and not self._provider.allows_apply:
            requested = getattr(self._provider, "requested", self._provider.name)
            raise ProviderError(
                f"Refusing to change resources: no usable credentials for '{requested}', "
                "so the offline mock provider is standing in.",
                kind=ErrorKind.UNAUTHORIZED,
                hint=CREDENTIALS_HINT,
            )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------
    def execute(self, ctx: RunContext, plan: Plan) -> ApplyReport:
        """Apply *plan*, or delete when it is a destroy plan."""
        return self.delete(ctx, plan) if plan.destroy else self.apply(ctx, plan)

    def apply(self, ctx: RunContext, plan: Plan) -> ApplyReport:
        """Walk *plan* in order, creating and updating resources."""
        return self._run(ctx, plan, self._apply_action)

    def delete(self, ctx: RunContext, plan: Plan) -> ApplyReport:
        """Walk a destroy plan (already in reverse dependency order)."""
        return self._run(ctx, plan, self._delete_action)

    def _run(
        self,
        ctx: RunContext,
        plan: Plan,
        handler: Callable[[RunContext, Action], ActionResult],
    ) -> ApplyReport:
        self._ensure_writable(plan)
        report = ApplyReport(plan=plan)
        for index, action in enumerate(plan.actions):
            try:
                ctx.check()
                result = handler(ctx, action)
            except OperationCancelled:
                LOGGER.warning("Cancelled during %s %s", action.kind.value, action.label)
                report.cancelled = True
                report.results.extend(
                    ActionResult(pending, ActionStatus.NOT_ATTEMPTED) for pending in plan.actions[index:]
                )
                break
            except GenesysError as exc:
                LOGGER.error("%s %s failed: %s", action.kind.value, action.label, exc.message)
                if exc.kind is ErrorKind.ALREADY_EXISTS and not exc.hint:
                    exc.hint = "Re-run the plan; the existing resource will be compared instead of created."
                report.results.append(ActionResult(action, ActionStatus.FAILED, action.resource_id, error=exc))
                report.results.extend(
                    ActionResult(pending, ActionStatus.NOT_ATTEMPTED) for pending in plan.actions[index + 1 :]
                )
                break
            report.results.append(result)
        return report

    # ------------------------------------------------------------------
    # Apply path
    # ------------------------------------------------------------------
    def _apply_action(self, ctx: RunContext, action: Action) -> ActionResult:
        spec = action.spec
        if action.kind is ActionKind.NOOP:
            return ActionResult(action, ActionStatus.SKIPPED, action.resource_id)
        if action.kind is ActionKind.DELETE:
            return self._delete_action(ctx, action)
        if isinstance(spec, RoleSpec):
            outcome = self._iam.reconcile(ctx, spec.to_iam_config(), spec.kind.value, spec.name)
            self._record(spec, outcome.role_arn, IAMLink(outcome.role_name, outcome.managed_by, spec.auto_cleanup))
            return self._with_role_warnings(ActionResult(action, ActionStatus.SUCCEEDED, outcome.role_arn, role=outcome))

        if action.kind in (ActionKind.UPDATE, ActionKind.REPLACE):
            self._reuse_linked_role(spec, action.resource_id)
        outcome = self._bind_role(ctx, spec)
        service = self._provider.service_for(spec.kind)
        if action.kind is ActionKind.REPLACE:
            self._call(ctx, f"delete {action.label}", lambda: service.delete(ctx, action.resource_id))
            self._forget(spec, self._key(spec, action.resource_id))
            resource_id = self._call(ctx, f"create {action.label}", lambda: service.create(ctx, spec))
        elif action.kind is ActionKind.UPDATE:
            self._call(ctx, f"update {action.label}", lambda: service.update(ctx, action.resource_id, spec))
            resource_id = action.resource_id
        else:
            resource_id = self._call(ctx, f"create {action.label}", lambda: service.create(ctx, spec))

        link = None
        if outcome is not None and spec.iam is not None:
            link = IAMLink(outcome.role_name, outcome.managed_by, bool(spec.iam.auto_cleanup))
        self._record(spec, resource_id, link)
        LOGGER.info("%s %s -> %s", action.kind.value, action.label, resource_id)
        return self._with_role_warnings(ActionResult(action, ActionStatus.SUCCEEDED, resource_id, role=outcome))

    def _reuse_linked_role(self, spec: ResourceSpec, resource_id: str) -> None:
        # Keep the role recorded for this resource instead of generating a new one.
        if spec.iam is None or spec.iam.role_name or spec.iam.role_arn:
            return
        record = self._ledger.find(self._key(spec, resource_id))
        if record is not None and record.iam is not None:
            spec.iam.role_name = record.iam.role_name

    def _bind_role(self, ctx: RunContext, spec: ResourceSpec) -> RoleOutcome | None:
        if isinstance(spec, FunctionSpec) and spec.role and not spec.role.startswith("arn:"):
            role_name = spec.role
            role = self._call(ctx, f"get role {role_name}", lambda: self._provider.identity.get_role(ctx, role_name))
            spec.bind_role(role.arn)
        if spec.iam is None:
            return None
        outcome = self._iam.reconcile(ctx, spec.iam, spec.kind.value, spec.name)
        spec.bind_role(outcome.role_arn)
        return outcome

    @staticmethod
    def _with_role_warnings(result: ActionResult) -> ActionResult:
        if result.role is not None:
            result.warnings.extend(
                f"Could not attach {arn} to {result.role.role_name}; re-run to converge."
                for arn in result.role.failed
            )
        return result

    @staticmethod
    def _key(spec: ResourceSpec, resource_id: str) -> tuple[str, str, str, str]:
        return (spec.provider, spec.region, spec.kind.value, resource_id)

    def _record(self, spec: ResourceSpec, resource_id: str, iam: IAMLink | None) -> None:
        existing = self._ledger.find(self._key(spec, resource_id))
        record = ResourceRecord(
            id=resource_id,
            name=spec.name,
            kind=spec.kind.value,
            provider=spec.provider,
            region=spec.region,
            config_file=self._config_file,
            created_at=existing.created_at if existing else "",
            tags=dict(spec.tags),
            iam=iam or (existing.iam if existing else None),
        )
        try:
            self._ledger.add(record)
        except LedgerError as exc:
            raise GenesysError(
                f"{spec.kind.value} '{spec.name}' ({resource_id}) was changed but could not be recorded: {exc}",
                kind=ErrorKind.FATAL,
                underlying=exc,
            ) from exc

    def _forget(self, spec: ResourceSpec, key: tuple[str, str, str, str]) -> None:
        resource_id = key[3]
        try:
            self._ledger.remove(key)
        except LedgerError as exc:
            raise GenesysError(
                f"{spec.kind.value} '{spec.name}' ({resource_id}) was deleted but the ledger could not be updated: {exc}",
                kind=ErrorKind.FATAL,
                underlying=exc,
            ) from exc

    # ------------------------------------------------------------------
    # Delete path
    # ------------------------------------------------------------------
    def _ledger_record(self, spec: ResourceSpec, resource_id: str) -> ResourceRecord | None:
        record = self._ledger.find(self._key(spec, resource_id))
        if record is not None:
            return record
        matches = self._records_named(spec)
        return matches[0] if matches else None

    def _records_named(self, spec: ResourceSpec) -> list[ResourceRecord]:
        """Records for *spec*'s name within its own provider, region and kind."""
        return [
            record
            for record in self._ledger.filter(kind=spec.kind.value, provider=spec.provider, region=spec.region)
            if record.name == spec.name
        ]

    def _delete_action(self, ctx: RunContext, action: Action) -> ActionResult:
        spec = action.spec
        if action.kind is ActionKind.NOOP:
            for stale in self._records_named(spec):
                self._forget(spec, stale.key)
            return ActionResult(action, ActionStatus.SKIPPED, action.resource_id)

        record = self._ledger_record(spec, action.resource_id)
        if spec.kind is ResourceKind.ROLE:
            link = record.iam if record else None
            cfg = IAMConfig(
                role_name=spec.name,
                managed_by=link.managed_by if link else MANAGED_BY_GENESYS,
                auto_cleanup=link.auto_cleanup if link else True,
            )
            self._iam.cleanup_role(ctx, cfg)
            self._forget(spec, record.key if record else self._key(spec, action.resource_id))
            return ActionResult(action, ActionStatus.SUCCEEDED, action.resource_id)

        service = self._provider.service_for(spec.kind)
        try:
            self._call(ctx, f"delete {action.label}", lambda: service.delete(ctx, action.resource_id))
        except ProviderError as exc:
            if exc.kind is not ErrorKind.NOT_FOUND:
                raise
            LOGGER.info("%s is already gone", action.label)
        self._forget(spec, record.key if record else self._key(spec, action.resource_id))

        result = ActionResult(action, ActionStatus.SUCCEEDED, action.resource_id)
        link = record.iam if record else None
        if link is not None and link.auto_cleanup:
            cfg = IAMConfig(role_name=link.role_name, managed_by=link.managed_by, auto_cleanup=link.auto_cleanup)
            try:
                self._iam.cleanup_role(ctx, cfg)
            except RoleCleanupRefused as exc:
                result.warnings.append(exc.message)
            except OperationCancelled:
                raise
            except GenesysError as exc:
                result.warnings.append(f"Role {link.role_name} was not cleaned up: {exc.message}")
        return result


__all__ = ["ActionResult", "ActionStatus", "ApplyEngine", "ApplyReport"]
