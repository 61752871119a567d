"""Parallel enumeration of existing resources across service types."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from .context import RetryPolicy, RunContext, call_with_retry
from .errors import GenesysError, OperationCancelled, ValidationError
from .providers.base import Provider, ResourceService
from .providers.models import DiscoveredResource

LOGGER = logging.getLogger(__name__)

SERVICE_NAMES: tuple[str, ...] = ("compute", "database", "network", "serverless", "storage")


@dataclass(slots=True)
class DiscoveryResult:
    """Merged discovery output; services are kept in alphabetical order."""

    provider: str
    region: str
    services: dict[str, list[DiscoveredResource]] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    note: str | None = None

    @property
    def total(self) -> int:
        return sum(len(resources) for resources in self.services.values())

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "provider": self.provider,
            "region": self.region,
            "total": self.total,
            "services": {
                name: [resource.to_dict() for resource in resources]
                for name, resources in self.services.items()
            },
        }
        if self.errors:
            payload["errors"] = dict(sorted(self.errors.items()))
        if self.note:
            payload["note"] = self.note
        return payload


class _Collector:
    """Mutex-protected sink shared by the discovery workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.services: dict[str, list[DiscoveredResource]] = {}
        self.errors: dict[str, str] = {}

    def add(self, name: str, resources: list[DiscoveredResource]) -> None:
        with self._lock:
            self.services[name] = resources

    def fail(self, name: str, message: str) -> None:
        with self._lock:
            self.errors[name] = message


def select_services(provider: Provider, wanted: Iterable[str] | None = None) -> list[str]:
    """Return the sorted service names to scan, validating *wanted*."""
    available = sorted(provider.services())
    if not wanted:
        return available
    selected = sorted({name.strip().lower() for name in wanted if name.strip()})
    unknown = [name for name in selected if name not in available]
    if unknown:
        raise ValidationError(
            f"Unknown service(s): {', '.join(unknown)}. Choose from: {', '.join(available)}.",
            field="service",
        )
    return selected


def _scan(
    ctx: RunContext,
    provider: Provider,
    service: ResourceService,  # type: ignore[type-arg]
    retry: RetryPolicy,
    collector: _Collector,
) -> None:
    name = service.service
    try:
        models = call_with_retry(
            ctx,
            lambda: service.discover(ctx),
            policy=retry,
            description=f"discover {name}",
        )
    except GenesysError as exc:
        LOGGER.warning("Discovery of %s failed: %s", name, exc.message)
        collector.fail(name, exc.message)
        return
    resources = [
        DiscoveredResource.from_model(name, service.kind.value, model, region=provider.region)
        for model in models
    ]
    resources.sort(key=lambda resource: (resource.name, resource.id))
    LOGGER.debug("Discovered %d %s resource(s)", len(resources), name)
    collector.add(name, resources)


def discover(
    ctx: RunContext,
    provider: Provider,
    *,
    services: Iterable[str] | None = None,
    max_workers: int = 5,
    retry: RetryPolicy | None = None,
    note: str | None = None,
) -> DiscoveryResult:
    """Scan every requested service concurrently and merge the results.

    A failing service is reported in ``errors`` without affecting the
    others. Cancelling *ctx* stops pending scans and raises
    :class:`OperationCancelled`.
    """
    names = select_services(provider, services)
    available = provider.services()
    policy = retry or RetryPolicy()
    collector = _Collector()

    workers = max(1, min(max_workers, len(names) or 1))
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_name: dict[concurrent.futures.Future[None], str] = {}
        for name in names:
            future = executor.submit(_scan, ctx, provider, available[name], policy, collector)
            future_to_name[future] = name

        try:
            for future in concurrent.futures.as_completed(future_to_name):
                future.result()
        except OperationCancelled:
            ctx.cancel()
            for future in future_to_name:
                future.cancel()
            raise

    ctx.check()
    return DiscoveryResult(
        provider=getattr(provider, "requested", provider.name),
        region=provider.region,
        services={name: collector.services[name] for name in names if name in collector.services},
        errors=collector.errors,
        note=note,
    )


__all__ = ["DiscoveryResult", "SERVICE_NAMES", "discover", "select_services"]
