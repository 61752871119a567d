"""Provider registry and the live-or-offline selection used by every command."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..context import RunContext
from ..credentials import (
    DEFAULT_REGIONS,
    CredentialStore,
    CredentialStoreError,
    ProviderCredentials,
    detect_local,
)
from ..errors import ErrorKind, GenesysError, ProviderError
from .aws import AWSProvider
from .base import Provider
from .mock import MockProvider

LOGGER = logging.getLogger(__name__)

ProviderFactory = Callable[..., Provider]


@dataclass(frozen=True, slots=True)
class ProviderSelection:
    """The provider a command runs against and why."""

    provider: Provider
    requested: str
    fallback_reason: str | None = None
    identity: dict[str, str] = field(default_factory=dict)

    @property
    def fallback(self) -> bool:
        return self.fallback_reason is not None


class ProviderRegistry:
    """Maps provider names to factories."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register *factory* under *name* (case-insensitive)."""
        self._factories[name.lower()] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._factories

    def create(
        self,
        name: str,
        *,
        region: str,
        credentials: ProviderCredentials | None = None,
        call_timeout: float = 60.0,
        profile: str | None = None,
    ) -> Provider:
        """Construct the provider registered as *name*."""
        factory = self._factories.get(name.lower())
        if factory is None:
            raise ProviderError(
                f"Unknown provider '{name}'. Known providers: {', '.join(self.names())}.",
                kind=ErrorKind.VALIDATION,
            )
        return factory(region, credentials=credentials, call_timeout=call_timeout, profile=profile)


def _aws_factory(
    region: str,
    *,
    credentials: ProviderCredentials | None,
    call_timeout: float,
    profile: str | None,
) -> Provider:
    return AWSProvider(region, credentials=credentials, profile=profile, call_timeout=call_timeout)


def _mock_factory(region: str, **_: object) -> Provider:
    return MockProvider(region)


def _adapter_missing(name: str) -> ProviderFactory:
    def _factory(region: str, **_: object) -> Provider:
        raise ProviderError(
            f"No live adapter is available for '{name}' yet.",
            kind=ErrorKind.FATAL,
        )

    return _factory


def default_registry() -> ProviderRegistry:
    """Return a registry with every known provider name."""
    registry = ProviderRegistry()
    registry.register("aws", _aws_factory)
    for name in ("gcp", "azure", "tencent"):
        registry.register(name, _adapter_missing(name))
    registry.register("mock", _mock_factory)
    return registry


def open_provider(
    name: str,
    *,
    ctx: RunContext,
    region: str | None = None,
    store: CredentialStore | None = None,
    registry: ProviderRegistry | None = None,
    file_override: Path | None = None,
    profile: str | None = None,
    authenticate: bool = True,
) -> ProviderSelection:
    """Open *name* live, or fall back to an offline mock.

    The fallback happens when credentials cannot be loaded, the adapter
    cannot be constructed or the identity check fails. The returned
    selection names the reason so callers can tell the user.
    """
    registry = registry or default_registry()
    requested = name.lower()
    if requested not in registry:
        raise ProviderError(
            f"Unknown provider '{name}'. Known providers: {', '.join(registry.names())}.",
            kind=ErrorKind.VALIDATION,
        )
    if requested == "mock":
        return ProviderSelection(registry.create("mock", region=region or DEFAULT_REGIONS["aws"]), requested)

    credentials: ProviderCredentials | None = None
    try:
        if store is not None:
            try:
                credentials = store.resolve(requested, file_override=file_override, profile=profile)
            except CredentialStoreError:
                # Unconfigured, but the SDK may still find local credentials.
                if not detect_local(requested, env=store.env, home=store.home):
                    raise
        effective_region = region or (credentials.region if credentials else "") or DEFAULT_REGIONS.get(requested, "")
        if credentials is not None and credentials.missing_keys():
            raise CredentialStoreError(
                f"{requested.upper()} credentials are missing: {', '.join(credentials.missing_keys())}."
            )
        provider = registry.create(
            requested,
            region=effective_region,
            credentials=credentials,
            call_timeout=ctx.call_timeout,
            profile=profile,
        )
        identity = provider.authenticate(ctx) if authenticate else {}
        if store is not None:
            store.on_refresh(provider.close)
    except CredentialStoreError as exc:
        reason = str(exc)
    except GenesysError as exc:
        reason = exc.message
    else:
        LOGGER.info("Opened %s provider in %s", requested, provider.region)
        return ProviderSelection(provider, requested, identity=identity)

    fallback_region = region or (credentials.region if credentials else "") or DEFAULT_REGIONS.get(requested, "us-east-1")
    LOGGER.warning("Falling back to the offline mock provider for %s: %s", requested, reason)
    return ProviderSelection(
        MockProvider(fallback_region, offline=True, requested=requested),
        requested,
        fallback_reason=reason,
    )


__all__ = [
    "ProviderFactory",
    "ProviderRegistry",
    "ProviderSelection",
    "default_registry",
    "open_provider",
]
