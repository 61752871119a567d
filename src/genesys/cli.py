"""Typer-powered command line for ``genesys``.

Commands share one :class:`RuntimeContext` built from the settings file.
Each command runs inside a structured-log operation, prints plain ASCII
status prefixes for humans or sorted-key JSON for machines, and exits
with the code attached to the failure it hit.
"""
from __future__ import annotations

import json
import signal
import textwrap
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .context import RunContext
from .credentials import CredentialStore, CredentialStoreError
from .discovery import DiscoveryResult, discover
from .engine import ActionStatus, ApplyEngine, ApplyReport
from .errors import ErrorKind, GenesysError, OperationCancelled, ProviderError, ValidationError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .planner import ActionKind, Plan, Planner
from .providers import ProviderSelection, open_provider
from .specs import ResourceKind, load_deployment
from .state import LedgerError, ResourceRecord, StateLedger
from .wizard import generate_config, parse_assignments, run_interact, run_setup

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to genesys' YAML settings file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of human-readable output.",
)
NO_INPUT_OPTION = typer.Option(
    False,
    "--no-input",
    help="Never prompt; fail when a required value is missing.",
)
PROVIDER_FILTER_OPTION = typer.Option(None, "--provider", help="Only show records for this provider.")
REGION_FILTER_OPTION = typer.Option(None, "--region", help="Only show records in this region.")

_STATUS_STYLES = {
    "OK": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "DRY RUN": "cyan",
    "WOULD REMOVE": "yellow",
    "REMOVED": "yellow",
    "MISSING": "yellow",
    "SKIPPED": "dim",
    "NOT ATTEMPTED": "dim",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Genesys multi-cloud infrastructure CLI.

        Generate declarative resource files, preview plans, apply them against
        a cloud provider, discover what already exists and keep a local ledger
        of everything genesys deployed.
        """
    ).strip(),
)
configure_app = typer.Typer(help="Manage provider credentials and the default provider.")
state_app = typer.Typer(help="Inspect and maintain the local resource ledger.")

app.add_typer(configure_app, name="configure")
app.add_typer(state_app, name="state")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    credentials: CredentialStore
    run: RunContext
    _ledger: StateLedger | None = field(default=None, repr=False)

    @property
    def ledger(self) -> StateLedger:
        if self._ledger is None:
            self._ledger = StateLedger.load(self.config.state_file)
        return self._ledger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        _status("ERROR", str(exc))
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        credentials=CredentialStore(config.config_dir),
        run=RunContext(config.call_timeout),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the genesys version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"genesys {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ------------------------------------------------------------------
# Output and error helpers
# ------------------------------------------------------------------


def _status(prefix: str, message: str) -> None:
    style = _STATUS_STYLES.get(prefix, "bold")
    console.print(f"[{style}]{escape(f'[{prefix}]')}[/{style}] {escape(message)}", soft_wrap=True)


def _emit_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    hint: str | None = None,
    json_output: bool = False,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    if json_output:
        payload: dict[str, object] = {"error": {"message": message, "rc": rc}}
        if hint:
            payload["error"]["hint"] = hint  # type: ignore[index]
        _emit_json(payload)
    else:
        _status("ERROR", message)
        if hint:
            console.print(f"  hint: {escape(hint)}", soft_wrap=True)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _guard(op: OperationScope, runtime: RuntimeContext, *, json_output: bool = False) -> Iterator[None]:
    """Map genesys failures raised inside a command to exit codes."""
    try:
        yield
    except ValidationError as exc:
        message = exc.message
        if exc.suggestion:
            message = f"{message} Suggestion: {exc.suggestion}"
        _command_error(op, message, rc=exc.exit_code, hint=exc.hint, json_output=json_output)
    except GenesysError as exc:
        _command_error(op, exc.message, rc=exc.exit_code, hint=exc.hint, json_output=json_output)
    except CredentialStoreError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION), json_output=json_output)
    except LedgerError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.PROVIDER), json_output=json_output)
    except (OperationCancelled, KeyboardInterrupt) as exc:
        runtime.run.cancel()
        _command_error(op, "Operation cancelled.", rc=int(ExitCode.CANCELLED), errors=[str(exc) or "interrupted"])


@contextmanager
def _cancel_on_sigterm(run: RunContext) -> Iterator[None]:
    """Cancel *run* when SIGTERM arrives while applying."""
    def _handler(signum: int, frame: FrameType | None) -> None:
        run.cancel()

    try:
        previous = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Not on the main thread (e.g. inside a test runner thread).
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _open(
    runtime: RuntimeContext,
    provider: str,
    *,
    region: str | None,
    json_output: bool,
) -> ProviderSelection:
    selection = open_provider(
        provider,
        ctx=runtime.run,
        region=region,
        store=runtime.credentials,
    )
    if selection.fallback and not json_output:
        _status(
            "WARNING",
            f"Using the offline mock provider instead of {selection.requested.upper()}: "
            f"{selection.fallback_reason}",
        )
    return selection


# ------------------------------------------------------------------
# configure
# ------------------------------------------------------------------


@configure_app.command("setup")
def configure_setup(
    ctx: typer.Context,
    provider: str | None = typer.Option(None, "--provider", help="Provider to configure (aws, gcp, azure, tencent)."),
    local: bool | None = typer.Option(
        None,
        "--local/--manual",
        help="Use locally available credentials, or store keys manually.",
    ),
    credential: list[str] | None = typer.Option(
        None,
        "--credential",
        metavar="KEY=VALUE",
        help="Credential value for manual mode; repeat for each key.",
    ),
    region: str | None = typer.Option(None, "--region", help="Default region for the provider."),
    make_default: bool | None = typer.Option(
        None,
        "--default/--no-default",
        help="Make this provider the default.",
    ),
    no_input: bool = NO_INPUT_OPTION,
) -> None:
    """Create or replace a provider credential record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure setup",
        args={"provider": provider, "local": local, "region": region, "default": make_default},
        target={"kind": "credentials", "provider": provider},
    ) as op, _guard(op, runtime):
        values = parse_assignments(credential, option="--credential")
        record = run_setup(
            runtime.credentials,
            provider=provider,
            use_local=local,
            credentials={key: str(value) for key, value in values.items()},
            region=region,
            make_default=make_default,
            interactive=not no_input,
        )
        path = runtime.credentials.path_for(record.provider)
        _status("OK", f"Saved {record.provider.upper()} configuration to {path}")
        if record.default_config:
            _status("OK", f"{record.provider.upper()} is the default provider.")
        op.success("Saved provider configuration.", changed=1, context=record.describe())


@configure_app.command("list")
def configure_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List configured providers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure list",
        args={"json": json_output},
        target={"kind": "credentials"},
    ) as op, _guard(op, runtime, json_output=json_output):
        records = runtime.credentials.list()
        default = runtime.credentials.default_provider()
        if json_output:
            _emit_json(
                {
                    "default_provider": default,
                    "providers": [record.describe() for record in records],
                }
            )
            op.success("Listed providers as JSON.", changed=0)
            return
        if not records:
            _status("WARNING", "No providers configured. Run `genesys configure setup`.")
            op.warning("No providers configured.")
            return
        for record in records:
            marker = " *" if record.provider == default else ""
            _status("OK", f"{record.provider.upper()}{marker}")
            info = record.describe()
            console.print(f"    Region: {escape(record.region)}")
            console.print(f"    Auth: {info['auth']}")
        op.success("Listed providers.", changed=0)


@configure_app.command("show")
def configure_show(
    ctx: typer.Context,
    provider: str | None = typer.Argument(None, help="Provider to show (defaults to the default provider)."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one provider configuration without secret values."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure show",
        args={"provider": provider, "json": json_output},
        target={"kind": "credentials", "provider": provider},
    ) as op, _guard(op, runtime, json_output=json_output):
        record = runtime.credentials.resolve(provider)
        info = record.describe()
        if json_output:
            _emit_json(info)
            op.success("Displayed provider as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Provider", record.provider.upper())
        table.add_row("Region", record.region)
        table.add_row("Auth", str(info["auth"]))
        table.add_row("Default", "yes" if record.default_config else "no")
        table.add_row("Credential keys", ", ".join(info["credential_keys"]) or "(none)")  # type: ignore[arg-type]
        table.add_row("Last refreshed", record.last_refreshed or "never")
        if record.expires_at:
            table.add_row("Expires", record.expires_at + (" (expired)" if record.is_expired() else ""))
        console.print(table)
        op.success("Displayed provider.", changed=0)


@configure_app.command("default")
def configure_default(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider to make the default."),
) -> None:
    """Set the default provider."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure default",
        args={"provider": provider},
        target={"kind": "credentials", "provider": provider},
    ) as op, _guard(op, runtime):
        runtime.credentials.set_default(provider)
        _status("OK", f"{provider.upper()} is now the default provider.")
        op.success("Updated default provider.", changed=1)


@configure_app.command("refresh")
def configure_refresh(ctx: typer.Context) -> None:
    """Re-read stored credentials and re-detect local sources."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure refresh",
        args={},
        target={"kind": "credentials"},
    ) as op, _guard(op, runtime):
        refreshed = runtime.credentials.refresh()
        for record in refreshed:
            _status("OK", f"{record.provider.upper()} refreshed ({record.describe()['auth']})")
        _status("OK", f"Refreshed {len(refreshed)} provider configuration(s).")
        op.success("Refreshed credentials.", changed=len(refreshed))


@configure_app.command("validate")
def configure_validate(
    ctx: typer.Context,
    provider: str | None = typer.Argument(None, help="Provider to validate (defaults to the default provider)."),
) -> None:
    """Check that stored credentials authenticate against the provider."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "configure validate",
        args={"provider": provider},
        target={"kind": "credentials", "provider": provider},
    ) as op, _guard(op, runtime):
        name = provider or runtime.credentials.default_provider() or runtime.config.default_provider
        selection = open_provider(name, ctx=runtime.run, store=runtime.credentials)
        if selection.fallback:
            raise ProviderError(
                f"{name.upper()} credentials could not be validated: {selection.fallback_reason}",
                kind=ErrorKind.UNAUTHORIZED,
            )
        _status("OK", f"{name.upper()} credentials are valid.")
        for key, value in sorted(selection.identity.items()):
            console.print(f"    {key}: {escape(str(value))}")
        op.success("Validated credentials.", changed=0, context={"identity": selection.identity})


# ------------------------------------------------------------------
# interact
# ------------------------------------------------------------------


@app.command()
def interact(
    ctx: typer.Context,
    kind: str | None = typer.Option(None, "--kind", help="Resource kind (role, network, bucket, table, instance, function)."),
    name: str | None = typer.Option(None, "--name", help="Resource name; normalised for the kind."),
    region: str | None = typer.Option(None, "--region", help="Region for the resource."),
    provider: str | None = typer.Option(None, "--provider", help="Provider for the resource."),
    attribute: list[str] | None = typer.Option(
        None,
        "--set",
        metavar="KEY=VALUE",
        help="Set a resource attribute without prompting; repeatable.",
    ),
    output_dir: Path | None = typer.Option(
        None,
        "--output-dir",
        file_okay=False,
        help="Directory for generated files (defaults to the resources_dir setting).",
    ),
    no_input: bool = NO_INPUT_OPTION,
) -> None:
    """Answer a few questions and write a declarative resource file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "interact",
        args={"kind": kind, "name": name, "region": region, "provider": provider},
        target={"kind": kind or "resource", "name": name},
    ) as op, _guard(op, runtime):
        spec = run_interact(
            kind=kind,
            name=name,
            region=region,
            provider=provider,
            attributes=parse_assignments(attribute, option="--set"),
            default_provider=runtime.credentials.default_provider() or runtime.config.default_provider,
            default_region=runtime.config.default_region,
            interactive=not no_input,
        )
        path = generate_config(spec, output_dir or runtime.config.resources_dir)
        _status("OK", f"Wrote {path}")
        console.print(f"Next: genesys execute {escape(str(path))} --dry-run", soft_wrap=True)
        op.success("Generated resource file.", changed=1, context={"path": str(path), "spec": spec.to_dict()})


# ------------------------------------------------------------------
# execute
# ------------------------------------------------------------------


def _describe_changes(plan_action_changes: Sequence[object]) -> str:
    parts = []
    for change in plan_action_changes:
        attribute = getattr(change, "attribute", "")
        mutable = getattr(change, "mutable", True)
        parts.append(attribute if mutable else f"{attribute} (forces replace)")
    return ", ".join(parts)


def _render_plan(plan: Plan, *, dry_run: bool) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Action", style="bold")
    table.add_column("Kind")
    table.add_column("Name")
    table.add_column("Resource ID")
    table.add_column("Changes")
    table.add_column("Monthly", justify="right")

    if not plan.actions:
        table.add_row("(none)", "", "", "", "", "")
    for action in plan.actions:
        details = _describe_changes(action.changes) or action.note
        cost = f"${action.cost.monthly:.2f}" if action.cost else ""
        table.add_row(
            action.kind.value,
            action.spec.kind.value,
            action.spec.name,
            action.resource_id,
            details,
            cost,
        )
    console.print(table)

    summary = plan.summary()
    counts = ", ".join(f"{summary[kind.value]} {kind.value}" for kind in ActionKind if summary[kind.value])
    console.print(
        f"Plan {plan.id}: {counts or 'nothing to do'}. "
        f"Estimated monthly cost: ${plan.monthly_cost():.2f}",
        soft_wrap=True,
    )
    if dry_run:
        _status("DRY RUN", "No changes were made.")


def _render_report(report: ApplyReport) -> None:
    for result in report.results:
        action = result.action
        if result.status is ActionStatus.SUCCEEDED:
            detail = f" -> {result.resource_id}" if result.resource_id else ""
            _status("OK", f"{action.kind.value} {action.label}{detail}")
        elif result.status is ActionStatus.SKIPPED:
            _status("SKIPPED", f"{action.label} {action.note or 'is up to date'}")
        elif result.status is ActionStatus.FAILED and result.error is not None:
            _status("ERROR", f"{action.kind.value} {action.label}: {result.error.message}")
        else:
            _status("NOT ATTEMPTED", f"{action.kind.value} {action.label}")
        for warning in result.warnings:
            _status("WARNING", warning)


@app.command()
def execute(
    ctx: typer.Context,
    file: Path = typer.Argument(..., dir_okay=False, help="Declarative TOML resource file."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only compute and show the plan (default)."),
    apply: bool = typer.Option(False, "--apply", help="Apply the plan."),
    delete: bool = typer.Option(False, "--delete", help="Delete the resources declared in the file."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Plan a resource file and optionally apply or delete it."""
    runtime = _get_runtime(ctx)
    mode = "dry-run" if dry_run or not (apply or delete) else ("delete" if delete else "apply")
    with runtime.logger.operation(
        "execute",
        args={"file": str(file), "mode": mode, "delete": delete, "json": json_output},
        target={"kind": "deployment", "path": str(file)},
    ) as op, _guard(op, runtime, json_output=json_output):
        if apply and delete:
            raise ValidationError("--apply and --delete cannot be combined.", field="mode")

        deployment = load_deployment(
            file,
            default_provider=runtime.config.default_provider,
            default_region=runtime.config.default_region,
        )
        strays = sorted({spec.region for spec in deployment.resources} - {deployment.region})
        if strays:
            raise ValidationError(
                f"Every resource in {file} must use region {deployment.region}; found {', '.join(strays)}.",
                field="region",
            )
        selection = _open(runtime, deployment.provider, region=deployment.region, json_output=json_output)
        provider = selection.provider
        op.add_step("provider.open", detail={"provider": selection.requested, "fallback": selection.fallback_reason})

        planner = Planner(provider, retry=runtime.config.retry)
        plan = planner.plan(
            runtime.run,
            deployment.resources,
            policies=deployment.policies,
            destroy=delete,
        )
        op.add_step("plan", detail={"plan_id": plan.id, "summary": plan.summary()})

        if mode == "dry-run":
            if json_output:
                typer.echo(plan.to_json())
            else:
                _render_plan(plan, dry_run=True)
            op.success("Computed plan.", changed=0, context={"plan_id": plan.id})
            return

        if not json_output:
            _render_plan(plan, dry_run=False)
        if not plan.has_changes:
            if json_output:
                _emit_json({"plan": plan.to_dict(), "report": None})
            else:
                _status("OK", "Nothing to do; live state already matches.")
            op.success("Plan had no changes.", changed=0, context={"plan_id": plan.id})
            return

        verb = "Delete" if delete else "Apply"
        if not yes and not typer.confirm(f"{verb} {len(plan.changes)} change(s)?", default=False):
            _status("WARNING", f"{verb} declined; no changes were made.")
            op.warning(f"{verb} declined by user.")
            return

        engine = ApplyEngine(
            provider,
            runtime.ledger,
            retry=runtime.config.retry,
            config_file=file.resolve(),
        )
        with _cancel_on_sigterm(runtime.run):
            report = engine.execute(runtime.run, plan)

        if json_output:
            _emit_json({"plan": plan.to_dict(), "report": report.to_dict()})
        else:
            _render_report(report)

        changed = report.count(ActionStatus.SUCCEEDED)
        if report.exit_code != int(ExitCode.OK):
            failure = report.failure
            message = (
                "Operation cancelled."
                if report.cancelled
                else f"{verb} stopped: {failure.error.message}"  # type: ignore[union-attr]
            )
            op.error(message, rc=report.exit_code, context=report.to_dict())
            raise typer.Exit(code=report.exit_code)
        op.success(f"{verb} complete.", changed=changed, context=report.to_dict())


# ------------------------------------------------------------------
# discover / list
# ------------------------------------------------------------------


def _render_discovery(result: DiscoveryResult) -> None:
    console.print(
        f"[bold]{escape(result.provider.upper())}[/bold] resources in {escape(result.region)}",
        soft_wrap=True,
    )
    if result.note:
        console.print(f"Note: {escape(result.note)}", soft_wrap=True)
    for name, resources in result.services.items():
        table = Table(show_header=True, header_style="bold magenta", title=f"{name} ({len(resources)})")
        table.add_column("ID", style="bold")
        table.add_column("Name")
        table.add_column("Kind")
        table.add_column("State")
        table.add_column("Region")
        if not resources:
            table.add_row("(none)", "", "", "", "")
        for resource in resources:
            table.add_row(resource.id, resource.name, resource.kind, resource.state, resource.region)
        console.print(table)
    for name, message in sorted(result.errors.items()):
        _status("WARNING", f"{name}: {message}")
    _status("OK", f"Found {result.total} resource(s).")


def discover_command(
    ctx: typer.Context,
    provider: str = typer.Option("aws", "--provider", help="Provider to scan."),
    region: str | None = typer.Option(None, "--region", help="Region to scan."),
    service: list[str] | None = typer.Option(
        None,
        "--service",
        help="Only scan this service (compute, database, network, serverless, storage); repeatable.",
    ),
    output: str = typer.Option("human", "--output", "-o", help="Output format: human or json."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Enumerate existing resources across services in parallel."""
    runtime = _get_runtime(ctx)
    as_json = json_output or output.lower() == "json"
    with runtime.logger.operation(
        "discover",
        args={"provider": provider, "region": region, "service": service, "output": output},
        target={"kind": "discovery", "provider": provider},
    ) as op, _guard(op, runtime, json_output=as_json):
        if output.lower() not in ("human", "json"):
            raise ValidationError(f"--output must be 'human' or 'json'; got '{output}'.", field="output")
        selection = _open(runtime, provider, region=region, json_output=True)
        note = None
        if selection.fallback:
            note = f"showing offline mock data; {selection.fallback_reason}"
        result = discover(
            runtime.run,
            selection.provider,
            services=service,
            max_workers=runtime.config.discovery.max_workers,
            retry=runtime.config.retry,
            note=note,
        )
        if as_json:
            _emit_json(result.to_dict())
        else:
            _render_discovery(result)
        if result.errors:
            op.warning(
                "Discovery finished with errors.",
                warnings=[f"{name}: {message}" for name, message in sorted(result.errors.items())],
                context={"total": result.total},
            )
            return
        op.success("Discovery complete.", changed=0, context={"total": result.total})


app.command("discover")(discover_command)
app.command("list", help="Alias for discover.")(discover_command)


# ------------------------------------------------------------------
# state
# ------------------------------------------------------------------


def _record_row(record: ResourceRecord) -> tuple[str, ...]:
    return (record.name, record.kind, record.provider, record.region, record.id, record.created_at)


@state_app.command("list")
def state_list(
    ctx: typer.Context,
    kind: str | None = typer.Option(None, "--type", "--kind", help="Only show records of this kind."),
    provider: str | None = PROVIDER_FILTER_OPTION,
    region: str | None = REGION_FILTER_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List resources recorded in the ledger."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state list",
        args={"kind": kind, "provider": provider, "region": region, "json": json_output},
        target={"kind": "ledger"},
    ) as op, _guard(op, runtime, json_output=json_output):
        records = runtime.ledger.filter(kind=kind, provider=provider, region=region)
        if json_output:
            _emit_json({"resources": [record.to_dict() for record in records]})
            op.success("Listed ledger records as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        for column in ("Name", "Kind", "Provider", "Region", "ID", "Created"):
            table.add_column(column, style="bold" if column == "Name" else None)
        if not records:
            table.add_row("(none)", "", "", "", "", "")
        for record in records:
            table.add_row(*_record_row(record))
        console.print(table)
        console.print(f"Total: {len(records)}")
        op.success("Listed ledger records.", changed=0)


@state_app.command("show")
def state_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show ledger location, size and counts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state show",
        args={"json": json_output},
        target={"kind": "ledger"},
    ) as op, _guard(op, runtime, json_output=json_output):
        ledger = runtime.ledger
        path = ledger.path
        exists = path.exists()
        stat = path.stat() if exists else None
        modified = (
            datetime.fromtimestamp(stat.st_mtime, UTC).isoformat().replace("+00:00", "Z") if stat else None
        )
        payload: dict[str, object] = {
            "path": str(path),
            "exists": exists,
            "size": stat.st_size if stat else 0,
            "modified": modified,
            "total": len(ledger),
            **ledger.stats(),
        }
        if json_output:
            _emit_json(payload)
            op.success("Displayed ledger summary as JSON.", changed=0)
            return

        console.print(f"Path: {escape(str(path))}", soft_wrap=True)
        console.print(f"Size: {payload['size']} bytes")
        console.print(f"Modified: {modified or 'never'}")
        console.print(f"Total resources: {len(ledger)}")
        for title, key in (("Kind", "by_kind"), ("Provider", "by_provider"), ("Region", "by_region")):
            counts = payload[key]
            if not counts:
                continue
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column(title, style="bold")
            table.add_column("Count", justify="right")
            for value, count in counts.items():  # type: ignore[union-attr]
                table.add_row(value, str(count))
            console.print(table)
        op.success("Displayed ledger summary.", changed=0)


@state_app.command("path")
def state_path(ctx: typer.Context) -> None:
    """Print the ledger file path."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("state path", args={}, target={"kind": "ledger"}) as op:
        typer.echo(str(runtime.config.state_file))
        op.success("Reported ledger path.", changed=0)


def _check_record(runtime: RuntimeContext, selection: ProviderSelection, record: ResourceRecord) -> bool:
    provider = selection.provider
    kind = ResourceKind(record.kind)
    if kind is ResourceKind.ROLE:
        provider.identity.get_role(runtime.run, record.name)
    else:
        provider.service_for(kind).get(runtime.run, record.id)
    return True


@state_app.command("validate")
def state_validate(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check that every ledger record still exists at its provider."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state validate",
        args={"json": json_output},
        target={"kind": "ledger"},
    ) as op, _guard(op, runtime, json_output=json_output):
        selections: dict[tuple[str, str], ProviderSelection] = {}
        results: list[dict[str, object]] = []
        for record in runtime.ledger.resources:
            group = (record.provider, record.region)
            if group not in selections:
                selections[group] = open_provider(
                    record.provider,
                    ctx=runtime.run,
                    region=record.region,
                    store=runtime.credentials,
                )
            selection = selections[group]
            entry: dict[str, object] = {"id": record.id, "name": record.name, "kind": record.kind}
            if selection.fallback:
                entry["status"] = "skipped"
                entry["detail"] = f"provider unavailable: {selection.fallback_reason}"
            else:
                try:
                    _check_record(runtime, selection, record)
                except ValueError:
                    entry["status"] = "error"
                    entry["detail"] = f"unknown kind '{record.kind}'"
                except GenesysError as exc:
                    entry["status"] = "missing" if exc.kind is ErrorKind.NOT_FOUND else "error"
                    entry["detail"] = exc.message
                else:
                    entry["status"] = "ok"
            results.append(entry)

        missing = [entry for entry in results if entry["status"] != "ok"]
        if json_output:
            _emit_json({"resources": results, "problems": len(missing)})
        else:
            prefixes = {"ok": "OK", "missing": "MISSING", "skipped": "WARNING", "error": "ERROR"}
            for entry in results:
                detail = f" ({entry['detail']})" if entry.get("detail") else ""
                _status(
                    prefixes[str(entry["status"])],
                    f"{entry['kind']} '{entry['name']}' [{entry['id']}]{detail}",
                )
            if not results:
                _status("OK", "Ledger is empty.")
        if missing:
            op.warning(f"{len(missing)} record(s) could not be confirmed.", context={"resources": results})
            return
        op.success("All ledger records confirmed.", changed=0)


@state_app.command("clean")
def state_clean(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be removed without writing."),
) -> None:
    """Remove ledger records that lack an id, a name or a kind."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state clean",
        args={"dry_run": dry_run},
        target={"kind": "ledger"},
    ) as op, _guard(op, runtime):
        outcomes = runtime.ledger.clean(dry_run=dry_run)
        removed = 0
        for outcome in outcomes:
            label = outcome.record.name or outcome.record.id or "(unnamed)"
            if outcome.removed:
                removed += 1
                _status("WOULD REMOVE" if dry_run else "REMOVED", f"{label} ({outcome.reason})")
            else:
                _status("OK", label)
        if dry_run:
            _status("DRY RUN", f"{removed} record(s) would be removed.")
            op.success("Dry run complete.", changed=0, context={"would_remove": removed})
            return
        console.print(f"Removed {removed} record(s).")
        op.success("Cleaned ledger.", changed=removed)


@state_app.command("export")
def state_export(
    ctx: typer.Context,
    destination: Path = typer.Argument(..., dir_okay=False, help="File to write."),
) -> None:
    """Write a copy of the ledger to a file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state export",
        args={"destination": str(destination)},
        target={"kind": "ledger"},
    ) as op, _guard(op, runtime):
        path = runtime.ledger.export(destination)
        _status("OK", f"Exported {len(runtime.ledger)} resource(s) to {path}")
        op.success("Exported ledger.", changed=0, context={"path": str(path)})


@state_app.command("import")
def state_import(
    ctx: typer.Context,
    source: Path = typer.Argument(..., dir_okay=False, help="Ledger file to import."),
    merge: bool = typer.Option(False, "--merge", help="Merge with existing records instead of replacing them."),
) -> None:
    """Replace or merge the ledger from a file."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "state import",
        args={"source": str(source), "merge": merge},
        target={"kind": "ledger"},
    ) as op, _guard(op, runtime):
        if not source.exists():
            raise ValidationError(f"Import source {source} does not exist.", field="source")
        result = runtime.ledger.import_from(source, merge=merge)
        _status("OK", f"Imported {source}")
        console.print(f"Added resources: {result.added}")
        console.print(f"Total resources: {result.total}")
        op.success("Imported ledger.", changed=result.added, context={"merged": merge})


def main() -> None:
    """Console script entry point."""
    try:
        app()
    except KeyboardInterrupt:
        _status("ERROR", "Operation cancelled.")
        raise SystemExit(int(ExitCode.CANCELLED)) from None


__all__ = ["RuntimeContext", "app", "main"]
