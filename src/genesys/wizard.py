"""Interactive prompts behind ``configure setup`` and ``interact``.

Every question has a matching keyword argument. A value passed in is used
as-is; a missing one is prompted for, or is an error when prompting is
disabled.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path

import typer
import yaml

from .credentials import (
    DEFAULT_REGIONS,
    PROVIDER_TITLES,
    REQUIRED_KEYS,
    SUPPORTED_PROVIDERS,
    CredentialStore,
    ProviderCredentials,
    detect_local,
)
from .errors import ValidationError
from .naming import auto_generate_name, check_availability, suggest_unique_bucket_name, validate_and_format
from .specs import ResourceKind, ResourceSpec, build_spec, parse_kind, write_generated_config

Echo = Callable[[str], None]

# Questions asked per kind by ``interact``: (field, default, prompt).
WIZARD_FIELDS: dict[ResourceKind, tuple[tuple[str, object, str], ...]] = {
    ResourceKind.ROLE: (
        ("trust_policy", "lambda", "Service allowed to assume the role (lambda, ec2, s3, rds)"),
        ("description", "", "Description"),
    ),
    ResourceKind.NETWORK: (("cidr", "10.0.0.0/16", "CIDR block"),),
    ResourceKind.BUCKET: (
        ("versioning", False, "Enable versioning?"),
        ("encryption", True, "Enable server-side encryption?"),
        ("public_access", False, "Allow public access?"),
    ),
    ResourceKind.TABLE: (
        ("engine", "dynamodb", "Engine (dynamodb, postgres, mysql, mariadb)"),
        ("size", "small", "Size (small, medium, large)"),
    ),
    ResourceKind.INSTANCE: (
        ("size", "small", "Size (small, medium, large, xlarge)"),
        ("image", "ubuntu-lts", "Image"),
    ),
    ResourceKind.FUNCTION: (
        ("runtime", "python3.11", "Runtime"),
        ("handler", "main.handler", "Handler"),
        ("memory", 256, "Memory (MB)"),
        ("timeout", 60, "Timeout (seconds)"),
    ),
}


def _missing(option: str, interactive: bool) -> None:
    if not interactive:
        raise ValidationError(f"{option} is required when prompts are disabled.", field=option.lstrip("-"))


def parse_assignments(values: list[str] | None, *, option: str) -> dict[str, object]:
    """Parse ``KEY=VALUE`` strings; values are coerced with YAML rules."""
    parsed: dict[str, object] = {}
    for item in values or []:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"{option} expects KEY=VALUE; got '{item}'.", field=option.lstrip("-"))
        try:
            value = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            value = raw
        parsed[key.strip()] = "" if value is None else value
    return parsed


# ------------------------------------------------------------------
# configure setup
# ------------------------------------------------------------------


def run_setup(
    store: CredentialStore,
    *,
    provider: str | None = None,
    use_local: bool | None = None,
    credentials: Mapping[str, str] | None = None,
    region: str | None = None,
    make_default: bool | None = None,
    interactive: bool = True,
    echo: Echo = typer.echo,
) -> ProviderCredentials:
    """Collect a provider configuration and save it to *store*."""
    if provider is None:
        _missing("--provider", interactive)
        for name in SUPPORTED_PROVIDERS:
            echo(f"  {name:<8} {PROVIDER_TITLES[name]}")
        provider = typer.prompt("Provider", default="aws")
    provider = provider.strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        raise ValidationError(
            f"Unsupported provider '{provider}'. Choose one of: {', '.join(SUPPORTED_PROVIDERS)}.",
            field="provider",
        )

    sources = detect_local(provider, env=store.env, home=store.home)
    if use_local is None:
        if sources and interactive:
            echo("Found local credentials:")
            for source in sources:
                echo(f"  - {source}")
            use_local = typer.confirm("Use these local credentials?", default=True)
        else:
            use_local = False
    elif use_local and not sources:
        raise ValidationError(
            f"No local {provider.upper()} credentials were found; configure them manually instead.",
            field="local",
        )

    values: dict[str, str] = {key: str(value) for key, value in (credentials or {}).items()}
    if not use_local:
        for key in REQUIRED_KEYS[provider]:
            if values.get(key):
                continue
            _missing(f"--credential {key}=...", interactive)
            values[key] = typer.prompt(key.replace("_", " ").title(), hide_input="secret" in key)

    if region is None:
        default_region = DEFAULT_REGIONS[provider]
        region = typer.prompt("Default region", default=default_region) if interactive else default_region

    if make_default is None:
        has_default = store.default_provider() is not None
        if interactive:
            make_default = typer.confirm(f"Make {provider.upper()} the default provider?", default=not has_default)
        else:
            make_default = not has_default

    record = ProviderCredentials(
        provider=provider,
        region=region,
        credentials={} if use_local else values,
        use_local=use_local,
        default_config=make_default,
    )
    missing = record.missing_keys()
    if missing:
        raise ValidationError(
            f"{provider.upper()} credentials are missing: {', '.join(missing)}.",
            field="credential",
        )
    store.save(record)
    return record


# ------------------------------------------------------------------
# interact
# ------------------------------------------------------------------


def _choose_name(kind: ResourceKind, name: str | None, *, interactive: bool, echo: Echo) -> str:
    if name is None:
        _missing("--name", interactive)
        name = typer.prompt("Name", default=auto_generate_name(kind.value))
    while True:
        try:
            formatted = validate_and_format(kind.value, name)
        except ValidationError as exc:
            if not interactive:
                raise
            echo(f"[ERROR] {exc.message}")
            if exc.suggestion and typer.confirm(f"Use '{exc.suggestion}' instead?", default=True):
                name = exc.suggestion
            else:
                name = typer.prompt("Name")
            continue
        if formatted != name:
            echo(f"Name normalised to '{formatted}'.")
        break

    if kind is ResourceKind.BUCKET:
        hint = check_availability(formatted)
        if hint.likely_taken:
            alternative = suggest_unique_bucket_name(formatted)
            echo(f"[WARNING] '{formatted}' is probably taken ({hint.reason}).")
            if interactive and typer.confirm(f"Use '{alternative}' instead?", default=True):
                formatted = alternative
    return formatted


def _ask_field(default: object, question: str) -> object:
    if isinstance(default, bool):
        return typer.confirm(question, default=default)
    if isinstance(default, int):
        return typer.prompt(question, default=default, type=int)
    return typer.prompt(question, default=default, show_default=bool(default))


def run_interact(
    *,
    kind: str | None = None,
    name: str | None = None,
    region: str | None = None,
    provider: str | None = None,
    attributes: Mapping[str, object] | None = None,
    default_provider: str = "aws",
    default_region: str = "us-east-1",
    interactive: bool = True,
    echo: Echo = typer.echo,
) -> ResourceSpec:
    """Build a validated spec from answers and preset values."""
    if kind is None:
        _missing("--kind", interactive)
        kind = typer.prompt(
            f"Resource kind ({', '.join(item.value for item in ResourceKind)})",
            default=ResourceKind.BUCKET.value,
        )
    resource_kind = parse_kind(kind)
    chosen_name = _choose_name(resource_kind, name, interactive=interactive, echo=echo)

    if region is None:
        region = typer.prompt("Region", default=default_region) if interactive else default_region
    provider = (provider or default_provider).lower()

    entry: dict[str, object] = {"name": chosen_name}
    presets = dict(attributes or {})
    for field_name, default, question in WIZARD_FIELDS[resource_kind]:
        if field_name in presets:
            entry[field_name] = presets.pop(field_name)
        elif interactive:
            entry[field_name] = _ask_field(default, question)
    # Remaining presets are passed through; unknown ones are rejected below.
    entry.update(presets)
    return build_spec(resource_kind, entry, label=resource_kind.value, provider=provider, region=region)


def generate_config(spec: ResourceSpec, resources_dir: Path) -> Path:
    """Write the generated deployment for *spec* under *resources_dir*."""
    return write_generated_config(spec, resources_dir)


__all__ = ["WIZARD_FIELDS", "generate_config", "parse_assignments", "run_interact", "run_setup"]
