"""Shared fixtures for appforge tests.

Network traffic goes through httpx.MockTransport (the real client code
path with a fake network). Clocks and sleeps are injected so no test
waits on wall-clock time.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from appforge.core.config import AppConfig, load_config
from appforge.core.models import BuildOutcome
from appforge.llm.credentials import CredentialVault, InMemorySecretStore

_ISOLATED_ENV_VARS = (
    "GEMINI_API_KEY",
    "GEMINI_BACKUP_API_KEY",
    "GEMINI_BASE_URL",
    "GEMINI_MODEL",
    "APPFORGE_VAULT_KEY",
)


class FakeClock:
    """Monotonic clock stand-in advanced explicitly by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer shell variables from leaking into config and vault seeding."""
    for name in _ISOLATED_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def vault_config_dir(tmp_path: Path) -> Path:
    """Config dir whose vault lives in an encrypted file under tmp_path."""
    d = tmp_path / "config"
    d.mkdir()
    (d / "default.yaml").write_text(
        "vault:\n"
        "  backend: encrypted_file\n"
        f"  path: \"{tmp_path / 'vault' / 'credentials.enc'}\"\n"
        f"  key_path: \"{tmp_path / 'vault' / 'vault.key'}\"\n"
        "logging:\n"
        "  level: WARNING\n"
    )
    return d


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(InMemorySecretStore())


@pytest.fixture
def primary_key() -> str:
    return "AIzaPrimaryKey0000000000000001"


@pytest.fixture
def backup_key() -> str:
    return "AIzaBackupKey00000000000000002"


@pytest.fixture
def ok_build() -> BuildOutcome:
    return BuildOutcome(success=True, artifact_location="/builds/app-debug.apk")
