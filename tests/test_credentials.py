"""Tests for provider credential storage."""
from __future__ import annotations

import json
import stat
from datetime import UTC, datetime
from pathlib import Path

import pytest

from genesys.credentials import (
    CredentialStore,
    CredentialStoreError,
    ProviderCredentials,
    detect_local,
    export_environment,
)


def _aws(**overrides: object) -> ProviderCredentials:
    values: dict[str, object] = {
        "provider": "aws",
        "region": "us-east-1",
        "credentials": {"access_key_id": "AKIAEXAMPLE", "secret_access_key": "s3cr3t"},
    }
    values.update(overrides)
    return ProviderCredentials(**values)  # type: ignore[arg-type]


def test_save_writes_private_file_and_selector(tmp_path: Path) -> None:
    """Credential files are mode 0600 and the default selector is updated."""
    store = CredentialStore(tmp_path, env={}, home=tmp_path)
    path = store.save(_aws(default_config=True))

    assert path == tmp_path / "aws.json"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert json.loads(store.selector_path.read_text(encoding="utf-8")) == {"default_provider": "aws"}
    assert store.default_provider() == "aws"
    assert store.load("aws").credentials["secret_access_key"] == "s3cr3t"


def test_describe_never_includes_secret_values(tmp_path: Path) -> None:
    """The printable view lists key names only."""
    info = _aws().describe()
    assert info["credential_keys"] == ["access_key_id", "secret_access_key"]
    assert "s3cr3t" not in json.dumps(info)
    assert info["auth"] == "Manual Configuration"


def test_set_default_moves_the_flag(tmp_path: Path) -> None:
    """Only one provider is flagged as the default."""
    store = CredentialStore(tmp_path, env={}, home=tmp_path)
    store.save(_aws(default_config=True))
    store.save(
        ProviderCredentials(
            provider="gcp",
            region="us-central1",
            credentials={"project_id": "demo", "service_account_key": "/keys/sa.json"},
        )
    )

    store.set_default("gcp")

    assert store.default_provider() == "gcp"
    flags = {record.provider: record.default_config for record in store.list()}
    assert flags == {"aws": False, "gcp": True}


def test_set_default_requires_configured_provider(tmp_path: Path) -> None:
    """An unconfigured provider cannot become the default."""
    store = CredentialStore(tmp_path, env={}, home=tmp_path)
    with pytest.raises(CredentialStoreError):
        store.set_default("azure")


def test_resolve_precedence(tmp_path: Path) -> None:
    """File override beats profile, profile beats provider, provider beats default."""
    store = CredentialStore(tmp_path / "config", env={}, home=tmp_path)
    store.save(_aws(default_config=True))
    store.save(ProviderCredentials(provider="tencent", region="ap-guangzhou", use_local=True))
    override = tmp_path / "override.json"
    override.write_text(json.dumps(_aws(region="eu-west-1").to_dict()), encoding="utf-8")

    assert store.resolve("aws", file_override=override).region == "eu-west-1"
    assert store.resolve("aws", profile="tencent").provider == "tencent"
    assert store.resolve("tencent").provider == "tencent"
    assert store.resolve().provider == "aws"


def test_resolve_without_any_configuration_fails(tmp_path: Path) -> None:
    """Missing configuration points the user at ``configure setup``."""
    store = CredentialStore(tmp_path, env={}, home=tmp_path)
    with pytest.raises(CredentialStoreError, match="configure setup"):
        store.resolve()
    with pytest.raises(CredentialStoreError):
        store.load("aws")


def test_unsupported_provider_is_rejected(tmp_path: Path) -> None:
    """Only known providers can be stored."""
    store = CredentialStore(tmp_path, env={}, home=tmp_path)
    with pytest.raises(CredentialStoreError):
        store.save(ProviderCredentials(provider="oracle", region="x"))


def test_missing_keys_ignore_local_mode() -> None:
    """Local mode needs no stored keys; manual mode needs all of them."""
    assert _aws(credentials={"access_key_id": "A"}).missing_keys() == ["secret_access_key"]
    assert _aws(credentials={}, use_local=True).missing_keys() == []


def test_is_expired() -> None:
    """Expiry is compared against the supplied clock."""
    now = datetime(2024, 6, 1, tzinfo=UTC)
    assert _aws(expires_at="2024-05-31T00:00:00Z").is_expired(now) is True
    assert _aws(expires_at="2024-06-02T00:00:00Z").is_expired(now) is False
    assert _aws().is_expired(now) is False


def test_detect_local_sources(tmp_path: Path) -> None:
    """Environment variables and CLI files are both reported."""
    (tmp_path / ".aws").mkdir()
    (tmp_path / ".aws" / "credentials").write_text("[default]\n", encoding="utf-8")
    env = {"AWS_ACCESS_KEY_ID": "A", "AWS_SECRET_ACCESS_KEY": "B", "AWS_PROFILE": "dev"}

    found = detect_local("aws", env=env, home=tmp_path)

    assert found == [
        "Environment variables (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)",
        "AWS Profile: dev",
        "AWS credentials file (~/.aws/credentials)",
    ]
    assert detect_local("azure", env={}, home=tmp_path) == []


def test_refresh_stamps_and_downgrades_missing_local(tmp_path: Path) -> None:
    """Refresh re-detects local sources and notifies listeners."""
    store = CredentialStore(tmp_path / "config", env={}, home=tmp_path)
    store.save(_aws(credentials={}, use_local=True))
    calls: list[str] = []
    store.on_refresh(lambda: calls.append("refreshed"))

    moment = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
    (record,) = store.refresh(now=moment)

    assert record.use_local is False
    assert record.last_refreshed == "2024-06-01T12:00:00Z"
    assert store.load("aws").last_refreshed == "2024-06-01T12:00:00Z"
    assert calls == ["refreshed"]


def test_export_environment_sets_sdk_variables() -> None:
    """Manual credentials are exported under the SDK variable names."""
    environ: dict[str, str] = {}
    written = export_environment(_aws(region="eu-west-1"), environ)

    assert environ["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE"
    assert environ["AWS_SECRET_ACCESS_KEY"] == "s3cr3t"
    assert environ["AWS_DEFAULT_REGION"] == "eu-west-1"
    assert set(written) == {"AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_DEFAULT_REGION"}

    local_env: dict[str, str] = {}
    export_environment(_aws(use_local=True), local_env)
    assert local_env == {"AWS_DEFAULT_REGION": "us-east-1"}
