"""Per-provider credential records stored under the genesys config directory.

Layout::

    ~/.genesys/
        config.json     {"default_provider": "aws"}
        aws.json        ProviderCredentials for AWS (mode 0600)
        gcp.json        ...

A record in *local* mode stores no secrets: the provider SDK picks up the
standard environment variables or CLI configuration files instead.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

CREDENTIAL_FILE_MODE = 0o600
DEFAULT_SELECTOR_FILE = "config.json"

SUPPORTED_PROVIDERS = ("aws", "gcp", "azure", "tencent")

PROVIDER_TITLES = {
    "aws": "Amazon Web Services",
    "gcp": "Google Cloud Platform",
    "azure": "Microsoft Azure",
    "tencent": "Tencent Cloud",
}

DEFAULT_REGIONS = {
    "aws": "us-east-1",
    "gcp": "us-central1",
    "azure": "eastus",
    "tencent": "ap-guangzhou",
}

REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "aws": ("access_key_id", "secret_access_key"),
    "gcp": ("project_id", "service_account_key"),
    "azure": ("client_id", "client_secret", "tenant_id", "subscription_id"),
    "tencent": ("secret_id", "secret_key"),
}

# credential key -> standard environment variable understood by the SDKs
ENV_VARIABLES: dict[str, dict[str, str]] = {
    "aws": {
        "access_key_id": "AWS_ACCESS_KEY_ID",
        "secret_access_key": "AWS_SECRET_ACCESS_KEY",
        "session_token": "AWS_SESSION_TOKEN",
        "profile": "AWS_PROFILE",
    },
    "gcp": {
        "service_account_key": "GOOGLE_APPLICATION_CREDENTIALS",
        "project_id": "GOOGLE_CLOUD_PROJECT",
    },
    "azure": {
        "client_id": "AZURE_CLIENT_ID",
        "client_secret": "AZURE_CLIENT_SECRET",
        "tenant_id": "AZURE_TENANT_ID",
        "subscription_id": "AZURE_SUBSCRIPTION_ID",
    },
    "tencent": {
        "secret_id": "TENCENTCLOUD_SECRET_ID",
        "secret_key": "TENCENTCLOUD_SECRET_KEY",
    },
}

REGION_VARIABLES = {
    "aws": "AWS_DEFAULT_REGION",
    "gcp": "GOOGLE_CLOUD_REGION",
    "azure": "AZURE_DEFAULTS_LOCATION",
    "tencent": "TENCENTCLOUD_REGION",
}

_LOCAL_PATHS: dict[str, tuple[tuple[str, str], ...]] = {
    "aws": (
        (".aws/credentials", "AWS credentials file (~/.aws/credentials)"),
        (".aws/config", "AWS config file (~/.aws/config)"),
    ),
    "gcp": ((".config/gcloud", "gcloud CLI authentication"),),
    "azure": ((".azure", "Azure CLI authentication"),),
    "tencent": ((".tccli", "Tencent CLI authentication"),),
}


class CredentialStoreError(RuntimeError):
    """Raised when credential files are missing or malformed."""


@dataclass
class ProviderCredentials:
    """Credentials and defaults for one provider."""

    provider: str
    region: str
    credentials: dict[str, str] = field(default_factory=dict)
    use_local: bool = False
    default_config: bool = False
    expires_at: str | None = None
    last_refreshed: str | None = None

    def missing_keys(self) -> list[str]:
        """Return required keys absent from a manual configuration."""
        if self.use_local:
            return []
        required = REQUIRED_KEYS.get(self.provider, ())
        return [key for key in required if not self.credentials.get(key)]

    def is_expired(self, now: datetime | None = None) -> bool:
        if not self.expires_at:
            return False
        try:
            expiry = datetime.fromisoformat(self.expires_at.replace("Z", "+00:00"))
        except ValueError:
            return False
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=UTC)
        return expiry <= (now or datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        """Return the on-disk representation."""
        payload: dict[str, object] = {
            "provider": self.provider,
            "region": self.region,
            "credentials": dict(sorted(self.credentials.items())),
            "use_local": self.use_local,
            "default_config": self.default_config,
        }
        if self.expires_at:
            payload["expires_at"] = self.expires_at
        if self.last_refreshed:
            payload["last_refreshed"] = self.last_refreshed
        return payload

    def describe(self) -> dict[str, object]:
        """Return a view safe to print: credential key names, never values."""
        return {
            "provider": self.provider,
            "region": self.region,
            "auth": "Local Credentials" if self.use_local else "Manual Configuration",
            "credential_keys": sorted(self.credentials),
            "default": self.default_config,
            "expires_at": self.expires_at,
            "last_refreshed": self.last_refreshed,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, object], *, source: Path | None = None) -> ProviderCredentials:
        """Build credentials from their JSON form."""
        label = str(source) if source else "credentials"
        provider = raw.get("provider")
        if not isinstance(provider, str) or not provider:
            raise CredentialStoreError(f"{label}: 'provider' must be a non-empty string.")
        creds_raw = raw.get("credentials") or {}
        if not isinstance(creds_raw, Mapping):
            raise CredentialStoreError(f"{label}: 'credentials' must be an object.")
        region = raw.get("region") or DEFAULT_REGIONS.get(provider, "")
        return cls(
            provider=provider.lower(),
            region=str(region),
            credentials={str(key): str(value) for key, value in creds_raw.items()},
            use_local=bool(raw.get("use_local", False)),
            default_config=bool(raw.get("default_config", False)),
            expires_at=_optional_text(raw.get("expires_at")),
            last_refreshed=_optional_text(raw.get("last_refreshed")),
        )


class CredentialStore:
    """Reads and writes provider credential files."""

    def __init__(
        self,
        config_dir: Path,
        *,
        env: Mapping[str, str] | None = None,
        home: Path | None = None,
    ) -> None:
        """Bind the store to *config_dir*; *env* and *home* aid testing."""
        self.config_dir = Path(config_dir).expanduser()
        self._env = env
        self._home = home
        self._refresh_listeners: list[Callable[[], None]] = []

    @property
    def env(self) -> Mapping[str, str]:
        return os.environ if self._env is None else self._env

    @property
    def home(self) -> Path | None:
        return self._home

    def path_for(self, provider: str) -> Path:
        """Return the credential file path for *provider*."""
        return self.config_dir / f"{provider.lower()}.json"

    @property
    def selector_path(self) -> Path:
        return self.config_dir / DEFAULT_SELECTOR_FILE

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------
    def list(self) -> list[ProviderCredentials]:
        """Return every stored provider configuration, sorted by provider."""
        if not self.config_dir.exists():
            return []
        records: list[ProviderCredentials] = []
        for path in sorted(self.config_dir.glob("*.json")):
            if path.name == DEFAULT_SELECTOR_FILE:
                continue
            records.append(self.load_file(path))
        return records

    def load_file(self, path: Path) -> ProviderCredentials:
        """Read credentials from an explicit file."""
        try:
            raw = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise CredentialStoreError(f"Credential file {path} does not exist.") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise CredentialStoreError(f"Failed to read credential file {path}: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise CredentialStoreError(f"Credential file {path} must contain a JSON object.")
        return ProviderCredentials.from_dict(raw, source=path)

    def load(self, provider: str) -> ProviderCredentials:
        """Return the stored configuration for *provider*."""
        path = self.path_for(provider)
        if not path.exists():
            raise CredentialStoreError(
                f"No credentials configured for {provider.upper()}. "
                "Run `genesys configure setup` first."
            )
        return self.load_file(path)

    def default_provider(self) -> str | None:
        """Return the provider named by ``config.json`` (or flagged default)."""
        if self.selector_path.exists():
            try:
                selector = json.loads(self.selector_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                raise CredentialStoreError(
                    f"Failed to read {self.selector_path}: {exc}"
                ) from exc
            if isinstance(selector, Mapping):
                value = selector.get("default_provider")
                if isinstance(value, str) and value:
                    return value.lower()
        for record in self.list():
            if record.default_config:
                return record.provider
        return None

    def resolve(
        self,
        provider: str | None = None,
        *,
        file_override: Path | None = None,
        profile: str | None = None,
    ) -> ProviderCredentials:
        """Return credentials for a live call.

        Precedence: explicit file override, then a named profile (a stored
        provider file), then *provider*, then the default provider.
        """
        if file_override is not None:
            return self.load_file(file_override)
        if profile:
            return self.load(profile)
        if provider:
            return self.load(provider)
        default = self.default_provider()
        if default is None:
            raise CredentialStoreError(
                "No default provider configured. Run `genesys configure setup`."
            )
        return self.load(default)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    def save(self, credentials: ProviderCredentials) -> Path:
        """Persist *credentials* (mode 0600) and update the default selector."""
        if credentials.provider not in SUPPORTED_PROVIDERS:
            raise CredentialStoreError(
                f"Unsupported provider '{credentials.provider}'. "
                f"Choose one of: {', '.join(SUPPORTED_PROVIDERS)}."
            )
        path = self.path_for(credentials.provider)
        _write_private_json(path, credentials.to_dict())
        if credentials.default_config:
            self.set_default(credentials.provider)
        return path

    def set_default(self, provider: str) -> None:
        """Make *provider* the default and clear the flag on all others."""
        provider = provider.lower()
        if not self.path_for(provider).exists():
            raise CredentialStoreError(
                f"Cannot make {provider.upper()} the default: it is not configured."
            )
        for record in self.list():
            wanted = record.provider == provider
            if record.default_config != wanted:
                record.default_config = wanted
                _write_private_json(self.path_for(record.provider), record.to_dict())
        _write_private_json(self.selector_path, {"default_provider": provider})

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    def on_refresh(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run after :meth:`refresh` (client caches)."""
        self._refresh_listeners.append(callback)

    def refresh(self, *, now: datetime | None = None) -> list[ProviderCredentials]:
        """Re-read every file, re-detect local sources and stamp the refresh time."""
        stamp = _iso(now or datetime.now(UTC))
        refreshed: list[ProviderCredentials] = []
        for record in self.list():
            if record.use_local and not detect_local(record.provider, env=self.env, home=self.home):
                record.use_local = False
            region_var = REGION_VARIABLES.get(record.provider)
            if record.use_local and region_var and self.env.get(region_var):
                record.region = self.env[region_var]
            record.last_refreshed = stamp
            _write_private_json(self.path_for(record.provider), record.to_dict())
            refreshed.append(record)
        for callback in self._refresh_listeners:
            callback()
        return refreshed


# ------------------------------------------------------------------
# Local sources and environment pass-through
# ------------------------------------------------------------------


def detect_local(
    provider: str,
    *,
    env: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> list[str]:
    """Describe local credential sources available for *provider*."""
    environ = os.environ if env is None else env
    base = home or Path.home()
    found: list[str] = []
    variables = ENV_VARIABLES.get(provider, {})
    if provider == "aws":
        if environ.get("AWS_ACCESS_KEY_ID") and environ.get("AWS_SECRET_ACCESS_KEY"):
            found.append("Environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)")
        if environ.get("AWS_PROFILE"):
            found.append(f"AWS Profile: {environ['AWS_PROFILE']}")
    else:
        for key, variable in sorted(variables.items()):
            if environ.get(variable):
                found.append(f"Environment variable {variable} ({key})")
    for relative, description in _LOCAL_PATHS.get(provider, ()):
        if (base / relative).exists():
            found.append(description)
    return found


def export_environment(
    credentials: ProviderCredentials,
    environ: MutableMapping[str, str],
) -> list[str]:
    """Write the standard SDK variables for *credentials*; return the names set."""
    written: list[str] = []
    if not credentials.use_local:
        for key, variable in ENV_VARIABLES.get(credentials.provider, {}).items():
            value = credentials.credentials.get(key)
            if value:
                environ[variable] = value
                written.append(variable)
    region_var = REGION_VARIABLES.get(credentials.provider)
    if region_var and credentials.region:
        environ[region_var] = credentials.region
        written.append(region_var)
    return written


def _write_private_json(path: Path, payload: Mapping[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        os.chmod(tmp_path, CREDENTIAL_FILE_MODE)
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_path, path)
        os.chmod(path, CREDENTIAL_FILE_MODE)
    finally:
        tmp_path.unlink(missing_ok=True)


def _optional_text(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


__all__ = [
    "CredentialStore",
    "CredentialStoreError",
    "DEFAULT_REGIONS",
    "ENV_VARIABLES",
    "PROVIDER_TITLES",
    "ProviderCredentials",
    "REQUIRED_KEYS",
    "SUPPORTED_PROVIDERS",
    "detect_local",
    "export_environment",
]
