"""In-memory provider with canned data, call recording and fault injection.

The mock serves two purposes. Selected explicitly (``provider = "mock"``)
it is a complete provider that accepts apply, which is what the test-suite
and local demos use. Opened as an offline fallback because live
construction failed, it still answers discovery and planning but refuses
every mutating call.
"""
from __future__ import annotations

import hashlib
import itertools
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from ..context import RunContext
from ..errors import CREDENTIALS_HINT, ErrorKind, GenesysError, ProviderError
from ..specs import BucketSpec, FunctionSpec, InstanceSpec, NetworkSpec, ResourceSpec, TableSpec
from .base import (
    ComputeService,
    DatabaseService,
    IdentityService,
    LogsService,
    MonitoringService,
    NetworkService,
    Provider,
    ServerlessService,
    StorageService,
    not_found,
)
from .models import (
    Bucket,
    BucketObject,
    Function,
    Instance,
    LogEvent,
    MetricPoint,
    Network,
    Role,
    Subnet,
    Table,
)

LOGGER = logging.getLogger(__name__)

MOCK_ACCOUNT_ID = "000000000000"

MUTATING_OPERATIONS = frozenset(
    {
        "create",
        "update",
        "delete",
        "upload",
        "empty",
        "create_role",
        "delete_role",
        "attach_policy",
        "detach_policy",
    }
)


@dataclass(frozen=True, slots=True)
class MockCall:
    """One recorded call against the mock."""

    service: str
    operation: str
    target: str

    @property
    def mutating(self) -> bool:
        return self.operation in MUTATING_OPERATIONS


def _now_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class MockProvider(Provider):
    """Capability-complete in-memory provider."""

    name = "mock"

    def __init__(
        self,
        region: str = "us-east-1",
        *,
        offline: bool = False,
        requested: str = "mock",
        seed: bool = True,
    ) -> None:
        super().__init__(region, offline=offline)
        self.requested = requested
        self.calls: list[MockCall] = []
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._failures: dict[tuple[str, str], list[tuple[GenesysError, str | None]]] = {}
        self._compute = _MockCompute(self)
        self._storage = _MockStorage(self)
        self._network = _MockNetwork(self)
        self._database = _MockDatabase(self)
        self._serverless = _MockServerless(self)
        self._monitoring = _MockMonitoring(self)
        self._logs = _MockLogs(self)
        self._identity = _MockIdentity(self)
        if seed:
            self._seed()

    @property
    def is_mock(self) -> bool:
        return True

    @property
    def compute(self) -> ComputeService:
        return self._compute

    @property
    def storage(self) -> StorageService:
        return self._storage

    @property
    def network(self) -> NetworkService:
        return self._network

    @property
    def database(self) -> DatabaseService:
        return self._database

    @property
    def serverless(self) -> ServerlessService:
        return self._serverless

    @property
    def monitoring(self) -> MonitoringService:
        return self._monitoring

    @property
    def logs(self) -> LogsService:
        return self._logs

    @property
    def identity(self) -> IdentityService:
        return self._identity

    def authenticate(self, ctx: RunContext) -> dict[str, str]:
        self.record(ctx, "identity", "authenticate", "caller")
        return {
            "account": MOCK_ACCOUNT_ID,
            "arn": f"arn:aws:iam::{MOCK_ACCOUNT_ID}:user/genesys-mock",
            "user_id": "genesys-mock",
        }

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------
    def inject_failure(
        self,
        service: str,
        operation: str,
        error: GenesysError,
        *,
        times: int = 1,
        target: str | None = None,
    ) -> None:
        """Make the next *times* matching calls raise *error*.

        ``target`` restricts the failure to calls naming that resource.
        """
        with self._lock:
            queue = self._failures.setdefault((service, operation), [])
            queue.extend([(error, target)] * times)

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    def mutating_calls(self) -> list[MockCall]:
        """Return recorded create/update/delete style calls."""
        with self._lock:
            return [call for call in self.calls if call.mutating]

    def seed_role(
        self,
        name: str,
        *,
        tags: Mapping[str, str] | None = None,
        policies: tuple[str, ...] | list[str] = (),
        trust_policy: str = "",
    ) -> Role:
        """Insert a pre-existing role without recording a call."""
        role = Role(
            name=name,
            arn=f"arn:aws:iam::{MOCK_ACCOUNT_ID}:role/{name}",
            attached_policies=tuple(policies),
            trust_policy=trust_policy,
            created_at=_now_iso(),
            tags=dict(tags or {}),
        )
        with self._lock:
            self._identity.roles[name] = role
        return role

    # ------------------------------------------------------------------
    # Shared helpers for the services
    # ------------------------------------------------------------------
    def record(self, ctx: RunContext, service: str, operation: str, target: str) -> None:
        """Record a call, then raise any injected or offline failure."""
        ctx.check()
        call = MockCall(service, operation, target)
        with self._lock:
            self.calls.append(call)
            if call.mutating and self.offline:
                raise ProviderError(
                    f"Cannot {operation} {target}: the offline mock provider stands in for "
                    f"'{self.requested}' and does not accept changes.",
                    kind=ErrorKind.UNAUTHORIZED,
                    hint=CREDENTIALS_HINT,
                )
            queue = self._failures.get((service, operation))
            if queue:
                for index, (error, wanted) in enumerate(queue):
                    if wanted is None or wanted == target:
                        del queue[index]
                        LOGGER.debug("Injected failure for %s.%s(%s)", service, operation, target)
                        raise error

    def next_id(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}-mock-{next(self._ids):04d}"

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _seed(self) -> None:
        region = self.region
        self._compute.items["i-existing-1"] = Instance(
            id="i-existing-1",
            name="existing-instance",
            size="medium",
            state="running",
            image="ubuntu-lts",
            network="vpc-existing",
            private_ip="10.0.1.20",
            region=region,
            launched_at="2024-01-01T00:00:00Z",
            tags={"Name": "existing-instance"},
        )
        self._storage.items["existing-bucket"] = Bucket(
            name="existing-bucket",
            region=region,
            versioning=True,
            encryption=True,
            public_access=False,
            created_at="2024-01-01T00:00:00Z",
        )
        self._network.items["vpc-existing"] = Network(
            id="vpc-existing",
            name="default-vpc",
            cidr="172.16.0.0/16",
            state="available",
            region=region,
            tags={"Name": "default-vpc"},
        )
        self._database.items["db-existing"] = Table(
            id="db-existing",
            name="production-db",
            engine="postgres",
            version="13",
            size="large",
            storage=500,
            multi_az=False,
            backup={"retention_days": 7, "window": "03:00-04:00"},
            state="available",
            endpoint="production-db.mock.internal:5432",
            region=region,
        )
        self._serverless.items["fn-existing"] = Function(
            id="fn-existing",
            name="api-handler",
            runtime="python3.11",
            handler="main.handler",
            memory=512,
            timeout=30,
            last_modified="2024-01-01T00:00:00Z",
            region=region,
        )


# ------------------------------------------------------------------
# Resource services
# ------------------------------------------------------------------


class _InMemoryResources:
    """Dictionary-backed implementation of the resource service surface."""

    service: str
    label = "resource"
    id_prefix = "res"

    def __init__(self, provider: MockProvider) -> None:
        self._provider = provider
        self.items: dict[str, Any] = {}

    def discover(self, ctx: RunContext) -> list[Any]:
        self._provider.record(ctx, self.service, "discover", "*")
        with self._provider.lock:
            return sorted(self.items.values(), key=lambda item: (item.name, item.id))

    def get(self, ctx: RunContext, resource_id: str) -> Any:
        self._provider.record(ctx, self.service, "get", resource_id)
        with self._provider.lock:
            item = self.items.get(resource_id)
        if item is None:
            raise not_found(self.label, resource_id)
        return item

    def find_by_name(self, ctx: RunContext, name: str) -> Any | None:
        self._provider.record(ctx, self.service, "find", name)
        with self._provider.lock:
            return next((item for item in self.items.values() if item.name == name), None)

    def create(self, ctx: RunContext, spec: ResourceSpec) -> str:
        self._provider.record(ctx, self.service, "create", spec.name)
        with self._provider.lock:
            if any(item.name == spec.name for item in self.items.values()):
                raise ProviderError(
                    f"{self.label} '{spec.name}' already exists.",
                    kind=ErrorKind.ALREADY_EXISTS,
                )
            model = self._build(spec, self._new_id(spec), None)
            self.items[model.id] = model
        LOGGER.info("Mock created %s %s (%s)", self.label, spec.name, model.id)
        return str(model.id)

    def update(self, ctx: RunContext, resource_id: str, spec: ResourceSpec) -> None:
        self._provider.record(ctx, self.service, "update", resource_id)
        with self._provider.lock:
            current = self.items.get(resource_id)
            if current is None:
                raise not_found(self.label, resource_id)
            self.items[resource_id] = self._build(spec, resource_id, current)

    def delete(self, ctx: RunContext, resource_id: str) -> None:
        self._provider.record(ctx, self.service, "delete", resource_id)
        with self._provider.lock:
            if resource_id not in self.items:
                raise not_found(self.label, resource_id)
            del self.items[resource_id]

    def _new_id(self, spec: ResourceSpec) -> str:
        return self._provider.next_id(self.id_prefix)

    def _build(self, spec: Any, resource_id: str, current: Any | None) -> Any:
        raise NotImplementedError


class _MockCompute(_InMemoryResources, ComputeService):
    label = "instance"
    id_prefix = "i"

    def _build(self, spec: InstanceSpec, resource_id: str, current: Instance | None) -> Instance:
        serial = len(self.items) + 10
        return Instance(
            id=resource_id,
            name=spec.name,
            size=spec.size,
            state="running",
            image=spec.image,
            network=spec.network,
            subnet=spec.subnet,
            private_ip=current.private_ip if current else f"10.0.0.{serial}",
            public_ip_address=(
                (current.public_ip_address if current else "") or f"203.0.113.{serial}"
            )
            if spec.public_ip
            else "",
            security_groups=tuple(spec.security_groups),
            key_pair=spec.key_pair,
            region=spec.region,
            launched_at=current.launched_at if current else _now_iso(),
            tags={**spec.tags, "Name": spec.name},
        )


class _MockStorage(_InMemoryResources, StorageService):
    label = "bucket"

    def __init__(self, provider: MockProvider) -> None:
        super().__init__(provider)
        self.objects: dict[str, dict[str, bytes]] = {}

    def _new_id(self, spec: ResourceSpec) -> str:
        return spec.name

    def _build(self, spec: BucketSpec, resource_id: str, current: Bucket | None) -> Bucket:
        return Bucket(
            name=resource_id,
            region=spec.region,
            versioning=spec.versioning,
            encryption=spec.encryption,
            public_access=spec.public_access,
            lifecycle=dict(spec.lifecycle.to_dict()) if spec.lifecycle else None,  # type: ignore[arg-type]
            created_at=current.created_at if current else _now_iso(),
            tags=dict(spec.tags),
        )

    def delete(self, ctx: RunContext, resource_id: str) -> None:
        super().delete(ctx, resource_id)
        with self._provider.lock:
            self.objects.pop(resource_id, None)

    def _bucket_objects(self, bucket: str) -> dict[str, bytes]:
        if bucket not in self.items:
            raise not_found("bucket", bucket)
        return self.objects.setdefault(bucket, {})

    def list_objects(self, ctx: RunContext, bucket: str, prefix: str = "") -> list[BucketObject]:
        self._provider.record(ctx, self.service, "list_objects", bucket)
        with self._provider.lock:
            stored = self._bucket_objects(bucket)
            return [
                BucketObject(key=key, size=len(data), etag=hashlib.md5(data).hexdigest())
                for key, data in sorted(stored.items())
                if key.startswith(prefix)
            ]

    def upload(self, ctx: RunContext, bucket: str, key: str, data: bytes) -> None:
        self._provider.record(ctx, self.service, "upload", f"{bucket}/{key}")
        with self._provider.lock:
            self._bucket_objects(bucket)[key] = bytes(data)

    def download(self, ctx: RunContext, bucket: str, key: str) -> bytes:
        self._provider.record(ctx, self.service, "download", f"{bucket}/{key}")
        with self._provider.lock:
            stored = self._bucket_objects(bucket)
            if key not in stored:
                raise not_found("object", f"{bucket}/{key}")
            return stored[key]

    def empty(self, ctx: RunContext, bucket: str) -> int:
        self._provider.record(ctx, self.service, "empty", bucket)
        with self._provider.lock:
            stored = self._bucket_objects(bucket)
            count = len(stored)
            stored.clear()
            return count


class _MockNetwork(_InMemoryResources, NetworkService):
    label = "network"
    id_prefix = "vpc"

    def _build(self, spec: NetworkSpec, resource_id: str, current: Network | None) -> Network:
        existing = {subnet.name: subnet for subnet in current.subnets} if current else {}
        subnets = tuple(
            Subnet(
                id=existing[item.name].id if item.name in existing else self._provider.next_id("subnet"),
                name=item.name,
                cidr=item.cidr,
                public=item.public,
                az=item.az or f"{spec.region}a",
            )
            for item in spec.subnets
        )
        return Network(
            id=resource_id,
            name=spec.name,
            cidr=spec.cidr,
            state="available",
            region=spec.region,
            subnets=subnets,
            tags={**spec.tags, "Name": spec.name},
        )


class _MockDatabase(_InMemoryResources, DatabaseService):
    label = "table"

    def _new_id(self, spec: ResourceSpec) -> str:
        return spec.name

    def _build(self, spec: TableSpec, resource_id: str, current: Table | None) -> Table:
        relational = spec.engine != "dynamodb"
        return Table(
            id=resource_id,
            name=spec.name,
            engine=spec.engine,
            version=spec.version,
            size=spec.size,
            storage=spec.storage,
            multi_az=spec.multi_az,
            hash_key=spec.hash_key,
            billing_mode=spec.billing_mode,
            backup=spec.backup.to_dict() if spec.backup else None,
            state="available",
            endpoint=f"{spec.name}.mock.internal:5432" if relational else "",
            region=spec.region,
            tags=dict(spec.tags),
        )


class _MockServerless(_InMemoryResources, ServerlessService):
    label = "function"

    def _new_id(self, spec: ResourceSpec) -> str:
        return spec.name

    def _build(self, spec: FunctionSpec, resource_id: str, current: Function | None) -> Function:
        return Function(
            id=resource_id,
            name=spec.name,
            runtime=spec.runtime,
            handler=spec.handler,
            memory=spec.memory,
            timeout=spec.timeout,
            environment=dict(spec.environment),
            layers=tuple(spec.layers),
            role=spec.role,
            last_modified=_now_iso(),
            region=spec.region,
            tags=dict(spec.tags),
        )

    def invoke(self, ctx: RunContext, name: str, payload: bytes = b"{}") -> bytes:
        self._provider.record(ctx, self.service, "invoke", name)
        with self._provider.lock:
            if not any(item.name == name or item.id == name for item in self.items.values()):
                raise not_found("function", name)
        return payload


class _MockMonitoring(MonitoringService):
    def __init__(self, provider: MockProvider) -> None:
        self._provider = provider

    def query_metrics(
        self,
        ctx: RunContext,
        namespace: str,
        metric: str,
        *,
        dimensions: Mapping[str, str] | None = None,
        minutes: int = 60,
        period: int = 300,
    ) -> list[MetricPoint]:
        self._provider.record(ctx, "monitoring", "query_metrics", f"{namespace}/{metric}")
        end = datetime(2024, 1, 1, tzinfo=UTC)
        count = max(1, (minutes * 60) // max(period, 1))
        start = end - timedelta(seconds=period * count)
        return [
            MetricPoint(
                timestamp=(start + timedelta(seconds=period * index)).isoformat().replace("+00:00", "Z"),
                value=round(10.0 + (index % 6) * 2.5, 2),
                unit="Percent",
            )
            for index in range(count)
        ]


class _MockLogs(LogsService):
    def __init__(self, provider: MockProvider) -> None:
        self._provider = provider

    def tail(
        self,
        ctx: RunContext,
        group: str,
        *,
        minutes: int = 10,
        limit: int = 100,
    ) -> list[LogEvent]:
        self._provider.record(ctx, "logs", "tail", group)
        lines = (
            "START RequestId: 00000000-0000-0000-0000-000000000001",
            "Processing request",
            "END RequestId: 00000000-0000-0000-0000-000000000001",
            "REPORT Duration: 12.34 ms Billed Duration: 13 ms",
        )
        base = datetime(2024, 1, 1, tzinfo=UTC)
        events = [
            LogEvent(
                timestamp=(base + timedelta(seconds=index)).isoformat().replace("+00:00", "Z"),
                message=line,
                stream="2024/01/01/[$LATEST]mock",
            )
            for index, line in enumerate(lines)
        ]
        return events[-limit:] if limit > 0 else []


class _MockIdentity(IdentityService):
    def __init__(self, provider: MockProvider) -> None:
        self._provider = provider
        self.roles: dict[str, Role] = {}

    def _role(self, name: str) -> Role:
        role = self.roles.get(name)
        if role is None:
            raise not_found("role", name)
        return role

    def get_role(self, ctx: RunContext, name: str) -> Role:
        self._provider.record(ctx, "identity", "get_role", name)
        with self._provider.lock:
            return self._role(name)

    def create_role(
        self,
        ctx: RunContext,
        name: str,
        *,
        trust_policy: str,
        description: str = "",
        tags: Mapping[str, str] | None = None,
    ) -> Role:
        self._provider.record(ctx, "identity", "create_role", name)
        with self._provider.lock:
            if name in self.roles:
                raise ProviderError(f"role '{name}' already exists.", kind=ErrorKind.ALREADY_EXISTS)
            role = Role(
                name=name,
                arn=f"arn:aws:iam::{MOCK_ACCOUNT_ID}:role/{name}",
                trust_policy=trust_policy,
                description=description,
                created_at=_now_iso(),
                tags=dict(tags or {}),
            )
            self.roles[name] = role
            return role

    def delete_role(self, ctx: RunContext, name: str) -> None:
        self._provider.record(ctx, "identity", "delete_role", name)
        with self._provider.lock:
            role = self._role(name)
            if role.attached_policies:
                raise ProviderError(
                    f"role '{name}' still has attached policies.",
                    kind=ErrorKind.CONFLICT,
                )
            del self.roles[name]

    def list_attached_policies(self, ctx: RunContext, name: str) -> list[str]:
        self._provider.record(ctx, "identity", "list_attached_policies", name)
        with self._provider.lock:
            return list(self._role(name).attached_policies)

    def attach_policy(self, ctx: RunContext, name: str, policy_arn: str) -> None:
        self._provider.record(ctx, "identity", "attach_policy", f"{name}:{policy_arn}")
        with self._provider.lock:
            role = self._role(name)
            if policy_arn not in role.attached_policies:
                self.roles[name] = replace(role, attached_policies=(*role.attached_policies, policy_arn))

    def detach_policy(self, ctx: RunContext, name: str, policy_arn: str) -> None:
        self._provider.record(ctx, "identity", "detach_policy", f"{name}:{policy_arn}")
        with self._provider.lock:
            role = self._role(name)
            if policy_arn not in role.attached_policies:
                raise not_found("policy attachment", f"{name}:{policy_arn}")
            self.roles[name] = replace(
                role,
                attached_policies=tuple(arn for arn in role.attached_policies if arn != policy_arn),
            )


__all__ = ["MOCK_ACCOUNT_ID", "MUTATING_OPERATIONS", "MockCall", "MockProvider"]
