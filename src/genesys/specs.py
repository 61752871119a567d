"""Desired-state resource specs and the declarative TOML config format.

A deployment file looks like::

    provider = "aws"
    region = "us-east-1"
    project = "demo"

    [policies]
    no_public_buckets = true

    [[resources.bucket]]
    name = "assets"
    versioning = true

Each ``resources.<kind>`` array holds specs of one kind. Unknown keys are
rejected at every level and names are normalised on the way in.
"""
from __future__ import annotations

import difflib
import tomllib
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import ClassVar

import tomli_w

from .errors import ValidationError
from .naming import validate_and_format


class ResourceKind(str, Enum):
    """Resource kinds, listed in tie-break order."""

    ROLE = "role"
    NETWORK = "network"
    BUCKET = "bucket"
    TABLE = "table"
    INSTANCE = "instance"
    FUNCTION = "function"


KIND_ORDER: tuple[ResourceKind, ...] = tuple(ResourceKind)

# Roles precede everything, networks precede their dependents, functions
# follow their roles and layers.
DEPENDENCY_TIER: dict[ResourceKind, int] = {
    ResourceKind.ROLE: 0,
    ResourceKind.NETWORK: 1,
    ResourceKind.BUCKET: 2,
    ResourceKind.TABLE: 2,
    ResourceKind.INSTANCE: 2,
    ResourceKind.FUNCTION: 3,
}

INSTANCE_SIZES = ("small", "medium", "large", "xlarge")
TABLE_SIZES = ("small", "medium", "large")

# Friendly policy names accepted in ``required_policies``; full ARNs pass through.
POLICY_ARNS: dict[str, str] = {
    "Basic CloudWatch Logs access": "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole",
    "VPC access": "arn:aws:iam::aws:policy/service-role/AWSLambdaVPCAccessExecutionRole",
    "Lambda full access": "arn:aws:iam::aws:policy/AWSLambda_FullAccess",
    "Lambda read-only access": "arn:aws:iam::aws:policy/AWSLambda_ReadOnlyAccess",
    "DynamoDB read/write access": "arn:aws:iam::aws:policy/AmazonDynamoDBFullAccess",
    "DynamoDB read-only access": "arn:aws:iam::aws:policy/AmazonDynamoDBReadOnlyAccess",
    "S3 full access": "arn:aws:iam::aws:policy/AmazonS3FullAccess",
    "S3 read-only access": "arn:aws:iam::aws:policy/AmazonS3ReadOnlyAccess",
    "SQS full access": "arn:aws:iam::aws:policy/AmazonSQSFullAccess",
    "SNS full access": "arn:aws:iam::aws:policy/AmazonSNSFullAccess",
    "Secrets Manager read access": "arn:aws:iam::aws:policy/SecretsManagerReadWrite",
    "X-Ray tracing": "arn:aws:iam::aws:policy/AWSXRayDaemonWriteAccess",
    "CloudWatch full access": "arn:aws:iam::aws:policy/CloudWatchFullAccess",
    "Systems Manager Parameter access": "arn:aws:iam::aws:policy/AmazonSSMReadOnlyAccess",
}


def unknown_policy_error(reference: str, label: str) -> ValidationError:
    """Build the error for a policy reference that is neither an ARN nor a known name."""
    close = difflib.get_close_matches(reference, list(POLICY_ARNS), n=1, cutoff=0.4)
    return ValidationError(
        f"Unknown policy '{reference}' in {label}; use an ARN or one of: {', '.join(sorted(POLICY_ARNS))}.",
        field=label,
        suggestion=close[0] if close else None,
    )


KIND_ALIASES: dict[str, ResourceKind] = {
    "iam": ResourceKind.ROLE,
    "vpc": ResourceKind.NETWORK,
    "net": ResourceKind.NETWORK,
    "storage": ResourceKind.BUCKET,
    "s3": ResourceKind.BUCKET,
    "database": ResourceKind.TABLE,
    "db": ResourceKind.TABLE,
    "dynamodb": ResourceKind.TABLE,
    "postgres": ResourceKind.TABLE,
    "mysql": ResourceKind.TABLE,
    "vm": ResourceKind.INSTANCE,
    "ec2": ResourceKind.INSTANCE,
    "server": ResourceKind.INSTANCE,
    "lambda": ResourceKind.FUNCTION,
    "fn": ResourceKind.FUNCTION,
}


def parse_kind(value: str) -> ResourceKind:
    """Return the :class:`ResourceKind` for *value* or one of its aliases (case-insensitive)."""
    wanted = value.strip().lower()
    if wanted in KIND_ALIASES:
        return KIND_ALIASES[wanted]
    try:
        return ResourceKind(wanted)
    except ValueError as exc:
        known = ", ".join(kind.value for kind in ResourceKind)
        raise ValidationError(
            f"Unknown resource kind '{value}' (expected one of: {known}; aliases: {', '.join(sorted(KIND_ALIASES))}).",
            field="kind",
        ) from exc


def sort_key(kind: ResourceKind, name: str) -> tuple[int, int, str]:
    """Dependency ordering key: tier, then kind order, then name."""
    return (DEPENDENCY_TIER[kind], KIND_ORDER.index(kind), name)


# ------------------------------------------------------------------
# Nested value types
# ------------------------------------------------------------------


@dataclass
class IAMConfig:
    """IAM role settings attached to a resource."""

    role_name: str = ""
    role_arn: str = ""
    trust_policy: str = ""
    required_policies: list[str] = field(default_factory=list)
    managed_by: str = ""
    auto_manage: bool | None = None
    auto_cleanup: bool | None = None
    tags: dict[str, str] = field(default_factory=dict)
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without unset values."""
        payload: dict[str, object] = {
            "role_name": self.role_name,
            "role_arn": self.role_arn,
            "trust_policy": self.trust_policy,
            "required_policies": list(self.required_policies),
            "managed_by": self.managed_by,
            "auto_manage": self.auto_manage,
            "auto_cleanup": self.auto_cleanup,
            "tags": dict(sorted(self.tags.items())),
            "description": self.description,
        }
        return {key: value for key, value in payload.items() if value not in ("", None, [], {})}


@dataclass(frozen=True)
class LifecycleRule:
    """Object expiry and archival settings for a bucket."""

    delete_after_days: int = 0
    archive_after_days: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "delete_after_days": self.delete_after_days,
            "archive_after_days": self.archive_after_days,
        }


@dataclass(frozen=True)
class BackupPolicy:
    """Automated backup window for a table."""

    retention_days: int = 7
    window: str = "03:00-04:00"

    def to_dict(self) -> dict[str, object]:
        return {"retention_days": self.retention_days, "window": self.window}


@dataclass(frozen=True)
class SubnetSpec:
    """Subnet declared inside a network."""

    name: str
    cidr: str
    public: bool = False
    az: str = ""

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "cidr": self.cidr, "public": self.public, "az": self.az}


@dataclass(frozen=True)
class Policies:
    """Deployment guard rails; every default is declared here explicitly."""

    no_public_buckets: bool = True
    require_encryption: bool = True
    require_tags: tuple[str, ...] = ()
    max_cost_per_month: float | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "no_public_buckets": self.no_public_buckets,
            "require_encryption": self.require_encryption,
            "require_tags": list(self.require_tags),
            "max_cost_per_month": self.max_cost_per_month,
        }


def _plain(value: object) -> object:
    if hasattr(value, "to_dict"):
        return value.to_dict()  # type: ignore[no-any-return, union-attr]
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in sorted(value.items())}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


# ------------------------------------------------------------------
# Resource specs
# ------------------------------------------------------------------


@dataclass
class ResourceSpec:
    """Fields shared by every desired resource."""

    kind: ClassVar[ResourceKind]
    # Attributes compared against live state. Those outside MUTABLE force
    # a replacement when they differ.
    ATTRIBUTES: ClassVar[tuple[str, ...]] = ("tags",)
    MUTABLE: ClassVar[frozenset[str]] = frozenset({"tags"})

    name: str
    region: str = ""
    provider: str = ""
    tags: dict[str, str] = field(default_factory=dict)
    iam: IAMConfig | None = None

    @property
    def key(self) -> tuple[str, str, str, str]:
        """Uniqueness key: ``(provider, kind, region, name)``."""
        return (self.provider, self.kind.value, self.region, self.name)

    def attributes(self) -> dict[str, object]:
        """Return the compared attributes as plain values."""
        return {name: _plain(getattr(self, name)) for name in self.ATTRIBUTES}

    def same_value(self, attribute: str, desired: object, observed: object) -> bool:
        """Return True when *observed* satisfies *desired* for *attribute*."""
        if attribute == "tags":
            return _tags_subset(desired, observed)
        return desired == observed

    def dependencies(self) -> list[tuple[ResourceKind, str]]:
        """Return ``(kind, name)`` pairs this spec must be created after."""
        return []

    def bind_role(self, role_arn: str) -> None:
        """Record the ARN of the role ensured for this resource."""
        if self.iam is not None:
            self.iam.role_arn = role_arn

    def to_dict(self) -> dict[str, object]:
        """Return a deterministic JSON view of the spec."""
        payload: dict[str, object] = {
            "kind": self.kind.value,
            "name": self.name,
            "region": self.region,
            "provider": self.provider,
            "attributes": self.attributes(),
        }
        if self.iam is not None:
            payload["iam"] = self.iam.to_dict()
        return payload

    def to_config(self) -> dict[str, object]:
        """Return the TOML table for this spec, omitting unset values."""
        entry: dict[str, object] = {}
        for spec_field in fields(self):
            if spec_field.name == "provider":
                continue
            value = _plain(getattr(self, spec_field.name))
            if value in (None, "", [], {}):
                continue
            if isinstance(value, dict):
                value = {k: v for k, v in value.items() if v not in (None, "", [], {})}
            entry[spec_field.name] = value
        return entry


@dataclass
class RoleSpec(ResourceSpec):
    """A standalone IAM role."""

    kind: ClassVar[ResourceKind] = ResourceKind.ROLE
    ATTRIBUTES: ClassVar[tuple[str, ...]] = ("required_policies", "tags")
    MUTABLE: ClassVar[frozenset[str]] = frozenset({"required_policies", "tags"})

    trust_policy: str = "lambda"
    required_policies: list[str] = field(default_factory=list)
    description: str = ""
    auto_cleanup: bool = True

    def same_value(self, attribute: str, desired: object, observed: object) -> bool:
        if attribute == "required_policies":
            # Reconciliation is additive: extra attached policies are fine.
            return set(desired or []) <= set(observed or [])  # type: ignore[arg-type]
        return super().same_value(attribute, desired, observed)

    def to_iam_config(self) -> IAMConfig:
        """Return the IAM manager configuration for this role."""
        base = self.iam or IAMConfig()
        return IAMConfig(
            role_name=self.name,
            role_arn=base.role_arn,
            trust_policy=base.trust_policy or self.trust_policy,
            required_policies=list(self.required_policies or base.required_policies),
            managed_by=base.managed_by,
            auto_manage=True,
            auto_cleanup=self.auto_cleanup,
            tags={**base.tags, **self.tags},
            description=self.description or base.description,
        )


@dataclass
class NetworkSpec(ResourceSpec):
    """A virtual network with optional subnets."""

    kind: ClassVar[ResourceKind] = ResourceKind.NETWORK
    ATTRIBUTES: ClassVar[tuple[str, ...]] = ("cidr", "subnets", "tags")
    MUTABLE: ClassVar[frozenset[str]] = frozenset({"tags"})

    cidr: str = "10.0.0.0/16"
    subnets: list[SubnetSpec] = field(default_factory=list)

    def same_value(self, attribute: str, desired: object, observed: object) -> bool:
        if attribute == "subnets" and isinstance(desired, list) and isinstance(observed, list):
            # An unset availability zone matches whatever the provider picked.
            live = {item["name"]: item for item in observed}
            return len(desired) == len(observed) and all(
                item["name"] in live
                and item["cidr"] == live[item["name"]]["cidr"]
                and item["public"] == live[item["name"]]["public"]
                and (not item["az"] or item["az"] == live[item["name"]]["az"])
                for item in desired
            )
        return super().same_value(attribute, desired, observed)


@dataclass
class BucketSpec(ResourceSpec):
    """An object-store bucket."""

    kind: ClassVar[ResourceKind] = ResourceKind.BUCKET
    ATTRIBUTES: ClassVar[tuple[str, ...]] = (
        "versioning",
        "encryption",
        "public_access",
        "lifecycle",
        "tags",
    )
    MUTABLE: ClassVar[frozenset[str]] = frozenset(
        {"versioning", "encryption", "public_access", "lifecycle", "tags"}
    )

    versioning: bool = True
    encryption: bool = True
    public_access: bool = False
    lifecycle: LifecycleRule | None = None

    def same_value(self, attribute: str, desired: object, observed: object) -> bool:
        if attribute == "encryption" and desired is False:
            # Providers may encrypt by default; not requiring encryption is never drift.
            return True
        return super().same_value(attribute, desired, observed)


@dataclass
class TableSpec(ResourceSpec):
    """A key-value (``dynamodb``) or relational table."""

    kind: ClassVar[ResourceKind] = ResourceKind.TABLE
    ATTRIBUTES: ClassVar[tuple[str, ...]] = (
        "engine",
        "version",
        "size",
        "storage",
        "multi_az",
        "hash_key",
        "billing_mode",
        "backup",
        "tags",
    )
    MUTABLE: ClassVar[frozenset[str]] = frozenset(
        {"version", "size", "storage", "multi_az", "billing_mode", "backup", "tags"}
    )

    engine: str = "dynamodb"
    version: str = ""
    size: str = "small"
    storage: int = 20
    multi_az: bool = False
    hash_key: str = "id"
    billing_mode: str = "PAY_PER_REQUEST"
    backup: BackupPolicy | None = None
    network: str = ""

    def dependencies(self) -> list[tuple[ResourceKind, str]]:
        return [(ResourceKind.NETWORK, self.network)] if self.network else []


@dataclass
class InstanceSpec(ResourceSpec):
    """A virtual machine."""

    kind: ClassVar[ResourceKind] = ResourceKind.INSTANCE
    ATTRIBUTES: ClassVar[tuple[str, ...]] = (
        "size",
        "image",
        "network",
        "subnet",
        "security_groups",
        "key_pair",
        "public_ip",
        "tags",
    )
    MUTABLE: ClassVar[frozenset[str]] = frozenset({"size", "security_groups", "tags"})

    size: str = "small"
    image: str = "ubuntu-lts"
    network: str = ""
    subnet: str = ""
    security_groups: list[str] = field(default_factory=list)
    user_data: str = ""
    key_pair: str = ""
    public_ip: bool = False
    instance_profile: str = ""

    def same_value(self, attribute: str, desired: object, observed: object) -> bool:
        if attribute == "security_groups" and isinstance(desired, list) and isinstance(observed, list):
            return sorted(desired) == sorted(observed)
        return super().same_value(attribute, desired, observed)

    def dependencies(self) -> list[tuple[ResourceKind, str]]:
        return [(ResourceKind.NETWORK, self.network)] if self.network else []

    def bind_role(self, role_arn: str) -> None:
        super().bind_role(role_arn)
        self.instance_profile = role_arn.rsplit("/", 1)[-1]


@dataclass
class FunctionSpec(ResourceSpec):
    """A serverless function."""

    kind: ClassVar[ResourceKind] = ResourceKind.FUNCTION
    ATTRIBUTES: ClassVar[tuple[str, ...]] = (
        "runtime",
        "handler",
        "memory",
        "timeout",
        "environment",
        "layers",
        "tags",
    )
    MUTABLE: ClassVar[frozenset[str]] = frozenset(
        {"runtime", "handler", "memory", "timeout", "environment", "layers", "tags"}
    )

    runtime: str = "python3.11"
    handler: str = "main.handler"
    memory: int = 256
    timeout: int = 60
    environment: dict[str, str] = field(default_factory=dict)
    role: str = ""
    layers: list[str] = field(default_factory=list)
    code_path: str = ""

    def dependencies(self) -> list[tuple[ResourceKind, str]]:
        if self.role and not self.role.startswith("arn:"):
            return [(ResourceKind.ROLE, self.role)]
        return []

    def bind_role(self, role_arn: str) -> None:
        super().bind_role(role_arn)
        self.role = role_arn


SPEC_TYPES: dict[ResourceKind, type[ResourceSpec]] = {
    ResourceKind.ROLE: RoleSpec,
    ResourceKind.NETWORK: NetworkSpec,
    ResourceKind.BUCKET: BucketSpec,
    ResourceKind.TABLE: TableSpec,
    ResourceKind.INSTANCE: InstanceSpec,
    ResourceKind.FUNCTION: FunctionSpec,
}


def _tags_subset(desired: object, observed: object) -> bool:
    if not isinstance(desired, Mapping) or not isinstance(observed, Mapping):
        return desired == observed
    return all(observed.get(key) == value for key, value in desired.items())


# ------------------------------------------------------------------
# Deployments
# ------------------------------------------------------------------


@dataclass
class Deployment:
    """A parsed deployment file."""

    provider: str
    region: str
    project: str = ""
    policies: Policies = field(default_factory=Policies)
    resources: list[ResourceSpec] = field(default_factory=list)
    source: Path | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "region": self.region,
            "project": self.project,
            "policies": self.policies.to_dict(),
            "resources": [spec.to_dict() for spec in self.resources],
        }


_TOP_LEVEL_KEYS = frozenset({"provider", "region", "project", "policies", "resources"})
_POLICY_KEYS = frozenset({"no_public_buckets", "require_encryption", "require_tags", "max_cost_per_month"})
_IAM_KEYS = frozenset(
    {
        "role_name",
        "role_arn",
        "trust_policy",
        "required_policies",
        "auto_manage",
        "auto_cleanup",
        "tags",
        "description",
    }
)


def load_deployment(
    path: Path | str,
    *,
    default_provider: str = "aws",
    default_region: str = "us-east-1",
) -> Deployment:
    """Read and validate a TOML deployment file."""
    source = Path(path)
    try:
        raw = tomllib.loads(source.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(f"Config file {source} does not exist.", field="file") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"Config file {source} is not valid TOML: {exc}", field="file") from exc
    return parse_deployment(
        raw,
        source=source,
        default_provider=default_provider,
        default_region=default_region,
    )


def parse_deployment(
    raw: Mapping[str, object],
    *,
    source: Path | None = None,
    default_provider: str = "aws",
    default_region: str = "us-east-1",
) -> Deployment:
    """Validate *raw* and build a :class:`Deployment`."""
    _reject_unknown(raw, _TOP_LEVEL_KEYS, "")
    provider = _expect_str(raw.get("provider", default_provider), "provider").lower()
    region = _expect_str(raw.get("region", default_region), "region")
    if not provider:
        raise ValidationError("provider must not be empty.", field="provider")
    if not region:
        raise ValidationError("region must not be empty.", field="region")

    policies = _parse_policies(raw.get("policies"))
    resources_raw = raw.get("resources") or {}
    if not isinstance(resources_raw, Mapping):
        raise ValidationError("resources must be a table keyed by kind.", field="resources")

    specs: list[ResourceSpec] = []
    for kind_name, entries in resources_raw.items():
        kind = parse_kind(str(kind_name))
        label = f"resources.{kind.value}"
        if not isinstance(entries, Sequence) or isinstance(entries, (str, bytes)):
            raise ValidationError(f"{label} must be an array of tables.", field=label)
        for index, entry in enumerate(entries):
            specs.append(
                build_spec(kind, entry, label=f"{label}[{index}]", provider=provider, region=region)
            )

    return Deployment(
        provider=provider,
        region=region,
        project=_expect_str(raw.get("project", ""), "project"),
        policies=policies,
        resources=specs,
        source=source,
    )


def build_spec(
    kind: ResourceKind,
    entry: object,
    *,
    label: str,
    provider: str,
    region: str,
) -> ResourceSpec:
    """Build one spec of *kind* from its table, normalising the name."""
    if not isinstance(entry, Mapping):
        raise ValidationError(f"{label} must be a table.", field=label)
    spec_type = SPEC_TYPES[kind]
    allowed = {spec_field.name for spec_field in fields(spec_type)}
    _reject_unknown(entry, allowed, label)

    raw_name = entry.get("name")
    if not isinstance(raw_name, str):
        raise ValidationError(f"{label}.name is required.", field=f"{label}.name")
    try:
        name = validate_and_format(kind.value, raw_name)
    except ValidationError as exc:
        raise ValidationError(exc.message, field=f"{label}.name", suggestion=exc.suggestion) from exc

    values: dict[str, object] = {
        "name": name,
        "region": _expect_str(entry.get("region", region), f"{label}.region"),
        "provider": _expect_str(entry.get("provider", provider), f"{label}.provider").lower(),
        "tags": _expect_str_map(entry.get("tags"), f"{label}.tags"),
    }
    if "iam" in entry:
        values["iam"] = _parse_iam(entry["iam"], f"{label}.iam")

    for spec_field in fields(spec_type):
        key = spec_field.name
        if key in values or key not in entry:
            continue
        values[key] = _coerce_field(spec_type, key, entry[key], f"{label}.{key}")

    spec = spec_type(**values)  # type: ignore[arg-type]
    _validate_spec(spec, label)
    if isinstance(spec, FunctionSpec) and not spec.role and spec.iam is None:
        # Every function runs under a role; default to a managed one.
        spec.iam = IAMConfig()
    return spec


def _coerce_field(spec_type: type[ResourceSpec], key: str, value: object, label: str) -> object:
    if key == "lifecycle":
        mapping = _expect_mapping(value, label)
        _reject_unknown(mapping, {"delete_after_days", "archive_after_days"}, label)
        return LifecycleRule(
            delete_after_days=_expect_non_negative_int(mapping.get("delete_after_days", 0), f"{label}.delete_after_days"),
            archive_after_days=_expect_non_negative_int(mapping.get("archive_after_days", 0), f"{label}.archive_after_days"),
        )
    if key == "backup":
        mapping = _expect_mapping(value, label)
        _reject_unknown(mapping, {"retention_days", "window"}, label)
        return BackupPolicy(
            retention_days=_expect_non_negative_int(mapping.get("retention_days", 7), f"{label}.retention_days"),
            window=_expect_str(mapping.get("window", "03:00-04:00"), f"{label}.window"),
        )
    if key == "subnets":
        if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
            raise ValidationError(f"{label} must be an array of tables.", field=label)
        subnets = []
        for index, item in enumerate(value):
            item_label = f"{label}[{index}]"
            mapping = _expect_mapping(item, item_label)
            _reject_unknown(mapping, {"name", "cidr", "public", "az"}, item_label)
            subnets.append(
                SubnetSpec(
                    name=_expect_str(mapping.get("name", ""), f"{item_label}.name"),
                    cidr=_expect_str(mapping.get("cidr", ""), f"{item_label}.cidr"),
                    public=_expect_bool(mapping.get("public", False), f"{item_label}.public"),
                    az=_expect_str(mapping.get("az", ""), f"{item_label}.az"),
                )
            )
        return subnets
    default = next(f for f in fields(spec_type) if f.name == key)
    sample = default.default_factory() if callable(default.default_factory) else default.default  # type: ignore[misc]
    if isinstance(sample, bool):
        return _expect_bool(value, label)
    if isinstance(sample, int):
        return _expect_non_negative_int(value, label)
    if isinstance(sample, list):
        return _expect_str_list(value, label)
    if isinstance(sample, dict):
        return _expect_str_map(value, label)
    return _expect_str(value, label)


def _validate_spec(spec: ResourceSpec, label: str) -> None:
    if not spec.region:
        raise ValidationError(f"{label}.region must not be empty.", field=f"{label}.region")
    if not spec.provider:
        raise ValidationError(f"{label}.provider must not be empty.", field=f"{label}.provider")
    if isinstance(spec, InstanceSpec) and spec.size not in INSTANCE_SIZES:
        raise ValidationError(
            f"{label}.size must be one of {', '.join(INSTANCE_SIZES)}; got '{spec.size}'.",
            field=f"{label}.size",
        )
    if isinstance(spec, TableSpec) and spec.size not in TABLE_SIZES:
        raise ValidationError(
            f"{label}.size must be one of {', '.join(TABLE_SIZES)}; got '{spec.size}'.",
            field=f"{label}.size",
        )
    if isinstance(spec, FunctionSpec):
        if not 128 <= spec.memory <= 10240:
            raise ValidationError(f"{label}.memory must be between 128 and 10240 MB.", field=f"{label}.memory")
        if not 1 <= spec.timeout <= 900:
            raise ValidationError(f"{label}.timeout must be between 1 and 900 seconds.", field=f"{label}.timeout")
    if isinstance(spec, RoleSpec):
        _check_policy_references(spec.required_policies, f"{label}.required_policies")
    if spec.iam is not None:
        _check_policy_references(spec.iam.required_policies, f"{label}.iam.required_policies")


def _check_policy_references(references: Sequence[str], label: str) -> None:
    for reference in references:
        if not reference.startswith("arn:") and reference not in POLICY_ARNS:
            raise unknown_policy_error(reference, label)


def _parse_policies(value: object) -> Policies:
    if value is None:
        return Policies()
    mapping = _expect_mapping(value, "policies")
    _reject_unknown(mapping, _POLICY_KEYS, "policies")
    limit = mapping.get("max_cost_per_month")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, (int, float))):
        raise ValidationError("policies.max_cost_per_month must be a number.", field="policies.max_cost_per_month")
    return Policies(
        no_public_buckets=_expect_bool(mapping.get("no_public_buckets", True), "policies.no_public_buckets"),
        require_encryption=_expect_bool(mapping.get("require_encryption", True), "policies.require_encryption"),
        require_tags=tuple(_expect_str_list(mapping.get("require_tags", []), "policies.require_tags")),
        max_cost_per_month=float(limit) if limit is not None else None,
    )


def _parse_iam(value: object, label: str) -> IAMConfig:
    mapping = _expect_mapping(value, label)
    _reject_unknown(mapping, _IAM_KEYS, label)

    def _optional_bool(key: str) -> bool | None:
        return _expect_bool(mapping[key], f"{label}.{key}") if key in mapping else None

    return IAMConfig(
        role_name=_expect_str(mapping.get("role_name", ""), f"{label}.role_name"),
        role_arn=_expect_str(mapping.get("role_arn", ""), f"{label}.role_arn"),
        trust_policy=_expect_str(mapping.get("trust_policy", ""), f"{label}.trust_policy"),
        required_policies=_expect_str_list(mapping.get("required_policies", []), f"{label}.required_policies"),
        auto_manage=_optional_bool("auto_manage"),
        auto_cleanup=_optional_bool("auto_cleanup"),
        tags=_expect_str_map(mapping.get("tags"), f"{label}.tags"),
        description=_expect_str(mapping.get("description", ""), f"{label}.description"),
    )


def check_policies(specs: Sequence[ResourceSpec], policies: Policies) -> list[str]:
    """Return human-readable policy violations for *specs*."""
    violations: list[str] = []
    for spec in specs:
        label = f"{spec.kind.value} '{spec.name}'"
        if isinstance(spec, BucketSpec):
            if policies.no_public_buckets and spec.public_access:
                violations.append(f"{label} allows public access but policies.no_public_buckets is set.")
            if policies.require_encryption and not spec.encryption:
                violations.append(f"{label} disables encryption but policies.require_encryption is set.")
        missing = [tag for tag in policies.require_tags if tag not in spec.tags]
        if missing:
            violations.append(f"{label} is missing required tags: {', '.join(missing)}.")
    return violations


# ------------------------------------------------------------------
# Generated configs
# ------------------------------------------------------------------


def render_spec_config(spec: ResourceSpec) -> str:
    """Return the TOML document for a single-resource deployment."""
    document: dict[str, object] = {
        "provider": spec.provider,
        "region": spec.region,
        "resources": {spec.kind.value: [spec.to_config()]},
    }
    return tomli_w.dumps(document)


def write_generated_config(spec: ResourceSpec, root: Path | str = Path("resources")) -> Path:
    """Write ``<root>/<kind>/<name>.toml`` and return its path."""
    target = Path(root) / spec.kind.value / f"{spec.name}.toml"
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_spec_config(spec), encoding="utf-8")
    return target


# ------------------------------------------------------------------
# Coercion helpers
# ------------------------------------------------------------------


def _reject_unknown(mapping: Mapping[str, object], allowed: set[str] | frozenset[str], label: str) -> None:
    unknown = sorted(str(key) for key in mapping.keys() if key not in allowed)
    if unknown:
        where = f" in {label}" if label else ""
        first = f"{label}.{unknown[0]}" if label else unknown[0]
        raise ValidationError(f"Unknown field(s){where}: {', '.join(unknown)}.", field=first)


def _expect_mapping(value: object, label: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ValidationError(f"{label} must be a table.", field=label)
    return value


def _expect_str(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string.", field=label)
    return value.strip()


def _expect_bool(value: object, label: str) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{label} must be true or false.", field=label)
    return value


def _expect_non_negative_int(value: object, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be an integer.", field=label)
    if value < 0:
        raise ValidationError(f"{label} must not be negative.", field=label)
    return value


def _expect_str_list(value: object, label: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ValidationError(f"{label} must be an array of strings.", field=label)
    items = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"{label} must be an array of strings.", field=label)
        items.append(item)
    return items


def _expect_str_map(value: object, label: str) -> dict[str, str]:
    if value is None:
        return {}
    mapping = _expect_mapping(value, label)
    result: dict[str, str] = {}
    for key, item in mapping.items():
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise ValidationError(f"{label}.{key} must be a string.", field=f"{label}.{key}")
        result[str(key)] = str(item)
    return result


__all__ = [
    "BackupPolicy",
    "BucketSpec",
    "DEPENDENCY_TIER",
    "Deployment",
    "FunctionSpec",
    "IAMConfig",
    "INSTANCE_SIZES",
    "InstanceSpec",
    "KIND_ALIASES",
    "KIND_ORDER",
    "LifecycleRule",
    "NetworkSpec",
    "POLICY_ARNS",
    "Policies",
    "ResourceKind",
    "ResourceSpec",
    "RoleSpec",
    "SPEC_TYPES",
    "SubnetSpec",
    "TableSpec",
    "build_spec",
    "check_policies",
    "load_deployment",
    "parse_deployment",
    "parse_kind",
    "render_spec_config",
    "sort_key",
    "unknown_policy_error",
    "write_generated_config",
]
