"""Provider-neutral models for live resources."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field


def _serialise(model: object) -> dict[str, object]:
    payload = asdict(model)  # type: ignore[call-overload]
    tags = payload.get("tags")
    if isinstance(tags, dict):
        payload["tags"] = dict(sorted(tags.items()))
    return payload


@dataclass(frozen=True, slots=True)
class Instance:
    """A virtual machine as reported by the provider."""

    id: str
    name: str
    size: str = ""
    state: str = ""
    image: str = ""
    network: str = ""
    subnet: str = ""
    private_ip: str = ""
    public_ip_address: str = ""
    security_groups: tuple[str, ...] = ()
    key_pair: str = ""
    region: str = ""
    launched_at: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    def attributes(self) -> dict[str, object]:
        """Return the attributes comparable with an ``InstanceSpec``."""
        return {
            "size": self.size or None,
            "image": self.image or None,
            "network": self.network or None,
            "subnet": self.subnet or None,
            "security_groups": sorted(self.security_groups),
            "key_pair": self.key_pair,
            "public_ip": bool(self.public_ip_address),
            "tags": dict(self.tags),
        }

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class Bucket:
    """An object-store bucket; its id is its name."""

    name: str
    region: str = ""
    versioning: bool | None = None
    encryption: bool | None = None
    public_access: bool | None = None
    lifecycle: dict[str, int] | None = None
    created_at: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.name

    @property
    def state(self) -> str:
        return "available"

    def attributes(self) -> dict[str, object]:
        return {
            "versioning": self.versioning,
            "encryption": self.encryption,
            "public_access": self.public_access,
            "lifecycle": dict(self.lifecycle) if self.lifecycle else None,
            "tags": dict(self.tags),
        }

    def to_dict(self) -> dict[str, object]:
        payload = _serialise(self)
        payload["id"] = self.name
        return payload


@dataclass(frozen=True, slots=True)
class BucketObject:
    """One object stored in a bucket."""

    key: str
    size: int = 0
    etag: str = ""
    last_modified: str = ""

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class Subnet:
    id: str
    name: str
    cidr: str
    public: bool = False
    az: str = ""

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class Network:
    """A virtual network (VPC) and its subnets."""

    id: str
    name: str
    cidr: str = ""
    state: str = ""
    region: str = ""
    subnets: tuple[Subnet, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)

    def attributes(self) -> dict[str, object]:
        return {
            "cidr": self.cidr or None,
            "subnets": [
                {"name": subnet.name, "cidr": subnet.cidr, "public": subnet.public, "az": subnet.az}
                for subnet in self.subnets
            ],
            "tags": dict(self.tags),
        }

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class Table:
    """A key-value or relational table.

    Attributes that do not apply to the engine (``storage`` for a
    key-value table, ``hash_key`` for a relational one) are left as
    ``None`` so that they are never compared.
    """

    id: str
    name: str
    engine: str = ""
    version: str | None = None
    size: str | None = None
    storage: int | None = None
    multi_az: bool | None = None
    hash_key: str | None = None
    billing_mode: str | None = None
    backup: dict[str, object] | None = None
    state: str = ""
    endpoint: str = ""
    region: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    def attributes(self) -> dict[str, object]:
        return {
            "engine": self.engine or None,
            "version": self.version,
            "size": self.size,
            "storage": self.storage,
            "multi_az": self.multi_az,
            "hash_key": self.hash_key,
            "billing_mode": self.billing_mode,
            "backup": dict(self.backup) if self.backup else None,
            "tags": dict(self.tags),
        }

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class Function:
    """A serverless function."""

    id: str
    name: str
    runtime: str = ""
    handler: str = ""
    memory: int = 0
    timeout: int = 0
    environment: dict[str, str] = field(default_factory=dict)
    layers: tuple[str, ...] = ()
    role: str = ""
    state: str = "Active"
    last_modified: str = ""
    region: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    def attributes(self) -> dict[str, object]:
        return {
            "runtime": self.runtime or None,
            "handler": self.handler or None,
            "memory": self.memory or None,
            "timeout": self.timeout or None,
            "environment": dict(sorted(self.environment.items())),
            "layers": list(self.layers),
            "tags": dict(self.tags),
        }

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class Role:
    """An identity role and the managed policies attached to it."""

    name: str
    arn: str
    attached_policies: tuple[str, ...] = ()
    trust_policy: str = ""
    description: str = ""
    created_at: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.arn

    @property
    def state(self) -> str:
        return "available"

    @property
    def managed_by(self) -> str:
        return self.tags.get("ManagedBy", "")

    def attributes(self) -> dict[str, object]:
        return {
            "required_policies": sorted(self.attached_policies),
            "tags": dict(self.tags),
        }

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class MetricPoint:
    timestamp: str
    value: float
    unit: str = ""

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class LogEvent:
    timestamp: str
    message: str
    stream: str = ""

    def to_dict(self) -> dict[str, object]:
        return _serialise(self)


@dataclass(frozen=True, slots=True)
class DiscoveredResource:
    """A row in discovery output, common to every service."""

    service: str
    kind: str
    id: str
    name: str
    region: str = ""
    state: str = ""
    details: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_model(cls, service: str, kind: str, model: object, *, region: str = "") -> DiscoveredResource:
        """Summarise any provider model for discovery output."""
        details = model.to_dict()  # type: ignore[attr-defined]
        return cls(
            service=service,
            kind=kind,
            id=str(getattr(model, "id", "")),
            name=str(getattr(model, "name", "")),
            region=str(getattr(model, "region", "") or region),
            state=str(getattr(model, "state", "") or ""),
            details=details,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "service": self.service,
            "kind": self.kind,
            "id": self.id,
            "name": self.name,
            "region": self.region,
            "state": self.state,
            "details": self.details,
        }


__all__ = [
    "Bucket",
    "BucketObject",
    "DiscoveredResource",
    "Function",
    "Instance",
    "LogEvent",
    "MetricPoint",
    "Network",
    "Role",
    "Subnet",
    "Table",
]
