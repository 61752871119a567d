"""Capability-typed provider interface.

A :class:`Provider` exposes one sub-interface per capability. Resource
services share the ``discover``/``get``/``find_by_name``/``create``/
``update``/``delete`` surface; storage, serverless, monitoring and logs
add their kind-specific operations. Every method takes the
:class:`~genesys.context.RunContext` of the invocation and raises
:class:`~genesys.errors.ProviderError` classified into the shared kinds.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import ClassVar, Generic, TypeVar

from ..context import RunContext
from ..errors import ErrorKind, ProviderError
from ..specs import (
    BucketSpec,
    FunctionSpec,
    InstanceSpec,
    NetworkSpec,
    ResourceKind,
    ResourceSpec,
    TableSpec,
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
    Table,
)

ModelT = TypeVar("ModelT")
SpecT = TypeVar("SpecT", bound=ResourceSpec)


def not_found(kind: str, identifier: str) -> ProviderError:
    """Return the canonical not-found error for *kind* / *identifier*."""
    return ProviderError(f"{kind} '{identifier}' was not found.", kind=ErrorKind.NOT_FOUND)


class ResourceService(ABC, Generic[ModelT, SpecT]):
    """Lifecycle operations for one resource kind."""

    kind: ClassVar[ResourceKind]
    service: ClassVar[str]

    @abstractmethod
    def discover(self, ctx: RunContext) -> list[ModelT]:
        """Return every resource of this kind in the provider's region."""

    @abstractmethod
    def get(self, ctx: RunContext, resource_id: str) -> ModelT:
        """Return the resource with *resource_id* or raise a not-found error."""

    @abstractmethod
    def find_by_name(self, ctx: RunContext, name: str) -> ModelT | None:
        """Return the resource named *name*, or ``None`` when absent."""

    @abstractmethod
    def create(self, ctx: RunContext, spec: SpecT) -> str:
        """Create the resource described by *spec* and return its id."""

    @abstractmethod
    def update(self, ctx: RunContext, resource_id: str, spec: SpecT) -> None:
        """Bring the mutable attributes of *resource_id* in line with *spec*."""

    @abstractmethod
    def delete(self, ctx: RunContext, resource_id: str) -> None:
        """Delete *resource_id*."""


class ComputeService(ResourceService[Instance, InstanceSpec]):
    kind = ResourceKind.INSTANCE
    service = "compute"


class StorageService(ResourceService[Bucket, BucketSpec]):
    kind = ResourceKind.BUCKET
    service = "storage"

    @abstractmethod
    def list_objects(self, ctx: RunContext, bucket: str, prefix: str = "") -> list[BucketObject]:
        """Return the objects in *bucket* whose key starts with *prefix*."""

    @abstractmethod
    def upload(self, ctx: RunContext, bucket: str, key: str, data: bytes) -> None:
        """Store *data* under *key*."""

    @abstractmethod
    def download(self, ctx: RunContext, bucket: str, key: str) -> bytes:
        """Return the content stored under *key*."""

    @abstractmethod
    def empty(self, ctx: RunContext, bucket: str) -> int:
        """Delete every object in *bucket*; return how many were removed."""


class NetworkService(ResourceService[Network, NetworkSpec]):
    kind = ResourceKind.NETWORK
    service = "network"


class DatabaseService(ResourceService[Table, TableSpec]):
    kind = ResourceKind.TABLE
    service = "database"


class ServerlessService(ResourceService[Function, FunctionSpec]):
    kind = ResourceKind.FUNCTION
    service = "serverless"

    @abstractmethod
    def invoke(self, ctx: RunContext, name: str, payload: bytes = b"{}") -> bytes:
        """Invoke *name* synchronously and return its response body."""


class MonitoringService(ABC):
    @abstractmethod
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
        """Return datapoints for the last *minutes*, oldest first."""


class LogsService(ABC):
    @abstractmethod
    def tail(
        self,
        ctx: RunContext,
        group: str,
        *,
        minutes: int = 10,
        limit: int = 100,
    ) -> list[LogEvent]:
        """Return at most *limit* recent events from *group*, oldest first."""


class IdentityService(ABC):
    """Role and policy primitives used by the IAM role manager."""

    @abstractmethod
    def get_role(self, ctx: RunContext, name: str) -> Role:
        """Return the role called *name* or raise a not-found error."""

    @abstractmethod
    def create_role(
        self,
        ctx: RunContext,
        name: str,
        *,
        trust_policy: str,
        description: str = "",
        tags: Mapping[str, str] | None = None,
    ) -> Role:
        """Create a role and return it."""

    @abstractmethod
    def delete_role(self, ctx: RunContext, name: str) -> None:
        """Delete the role; attached policies must already be detached."""

    @abstractmethod
    def list_attached_policies(self, ctx: RunContext, name: str) -> list[str]:
        """Return the ARNs of policies attached to the role."""

    @abstractmethod
    def attach_policy(self, ctx: RunContext, name: str, policy_arn: str) -> None:
        """Attach *policy_arn* to the role."""

    @abstractmethod
    def detach_policy(self, ctx: RunContext, name: str, policy_arn: str) -> None:
        """Detach *policy_arn* from the role."""


class Provider(ABC):
    """A cloud provider bound to one region for one invocation."""

    name: str = ""

    def __init__(self, region: str, *, offline: bool = False) -> None:
        self.region = region
        self.offline = offline

    @property
    def is_mock(self) -> bool:
        return False

    @property
    def allows_apply(self) -> bool:
        """Whether mutating calls may be issued against this provider."""
        return not self.offline

    # Capability sub-interfaces -------------------------------------------------
    @property
    @abstractmethod
    def compute(self) -> ComputeService: ...

    @property
    @abstractmethod
    def storage(self) -> StorageService: ...

    @property
    @abstractmethod
    def network(self) -> NetworkService: ...

    @property
    @abstractmethod
    def database(self) -> DatabaseService: ...

    @property
    @abstractmethod
    def serverless(self) -> ServerlessService: ...

    @property
    @abstractmethod
    def monitoring(self) -> MonitoringService: ...

    @property
    @abstractmethod
    def logs(self) -> LogsService: ...

    @property
    @abstractmethod
    def identity(self) -> IdentityService: ...

    @abstractmethod
    def authenticate(self, ctx: RunContext) -> dict[str, str]:
        """Issue a cheap read-only identity call; return identity details."""

    def close(self) -> None:
        """Drop cached SDK clients."""

    def services(self) -> dict[str, ResourceService]:  # type: ignore[type-arg]
        """Return the resource services keyed by discovery service name."""
        return {
            service.service: service
            for service in (self.compute, self.database, self.network, self.serverless, self.storage)
        }

    def service_for(self, kind: ResourceKind) -> ResourceService:  # type: ignore[type-arg]
        """Return the resource service managing *kind*.

        Roles have no resource service; they go through :attr:`identity`.
        """
        for service in self.services().values():
            if service.kind is kind:
                return service
        raise ProviderError(
            f"Provider '{self.name}' has no resource service for {kind.value}.",
            kind=ErrorKind.FATAL,
        )


__all__ = [
    "ComputeService",
    "DatabaseService",
    "IdentityService",
    "LogsService",
    "MonitoringService",
    "NetworkService",
    "Provider",
    "ResourceService",
    "ServerlessService",
    "StorageService",
    "not_found",
]
