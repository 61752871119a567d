"""Cloud provider adapters behind one capability-typed interface."""
from __future__ import annotations

from .aws import AWSProvider
from .base import (
    ComputeService,
    DatabaseService,
    IdentityService,
    LogsService,
    MonitoringService,
    NetworkService,
    Provider,
    ResourceService,
    ServerlessService,
    StorageService,
)
from .mock import MockCall, MockProvider
from .models import (
    Bucket,
    BucketObject,
    DiscoveredResource,
    Function,
    Instance,
    LogEvent,
    MetricPoint,
    Network,
    Role,
    Subnet,
    Table,
)
from .registry import ProviderRegistry, ProviderSelection, default_registry, open_provider

__all__ = [
    "AWSProvider",
    "Bucket",
    "BucketObject",
    "ComputeService",
    "DatabaseService",
    "DiscoveredResource",
    "Function",
    "IdentityService",
    "Instance",
    "LogEvent",
    "LogsService",
    "MetricPoint",
    "MockCall",
    "MockProvider",
    "MonitoringService",
    "Network",
    "NetworkService",
    "Provider",
    "ProviderRegistry",
    "ProviderSelection",
    "ResourceService",
    "Role",
    "ServerlessService",
    "StorageService",
    "Subnet",
    "Table",
    "default_registry",
    "open_provider",
]
