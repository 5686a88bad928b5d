"""Component factory for appforge.

Creates and wires the resilience layer (vault, rate limiter, quota
tracker, backend client) and the recovery engine so callers and pipeline
collaborators receive fully-initialized dependencies.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from appforge.core.config import AppConfig, VaultConfig, load_config
from appforge.llm.client import BackendClient, ResilienceState
from appforge.llm.credentials import (
    CredentialVault,
    EncryptedFileSecretStore,
    InMemorySecretStore,
    SecretStore,
)
from appforge.llm.quota import QuotaTracker
from appforge.llm.rate_limiter import RateLimiter
from appforge.recovery import ErrorClassifier, FixAdvisor

logger = logging.getLogger("appforge.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    ``state`` is the shared admission/quota/credential state; every client
    built from this bundle must reuse it so limits hold process-wide.
    """

    config: AppConfig
    vault: CredentialVault
    rate_limiter: RateLimiter
    quota: QuotaTracker
    state: ResilienceState
    backend_client: BackendClient
    classifier: ErrorClassifier
    advisor: FixAdvisor


class ComponentFactory:
    """Factory for creating and wiring appforge infrastructure.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"))
        result = bundle.backend_client.generate_text("Plan a todo app")
        ComponentFactory.close(bundle)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        api_key: Optional[str] = None,
        backup_api_key: Optional[str] = None,
        config: Optional[AppConfig] = None,
        store: Optional[SecretStore] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            api_key: Primary backend key. Falls back to GEMINI_API_KEY.
                Only seeds a vault that has no primary credential yet.
            backup_api_key: Backup key. Falls back to GEMINI_BACKUP_API_KEY.
            config: Pre-built config; skips the YAML cascade when given.
            store: Secret store override; default comes from config.vault.

        Returns:
            ComponentBundle with all components ready to use.
        """
        logger.info("Initializing components...")

        # --- Config ---
        if config is None:
            config = load_config(config_dir=config_dir, env=env)

        # --- Credentials ---
        vault = CredentialVault(store or _build_store(config.vault))
        _seed_vault(
            vault,
            api_key or os.getenv("GEMINI_API_KEY"),
            backup_api_key or os.getenv("GEMINI_BACKUP_API_KEY"),
        )

        # --- Admission control and quota ---
        rate_limiter = RateLimiter(
            max_requests=config.rate_limit.max_requests,
            period_seconds=config.rate_limit.period_seconds,
        )
        quota = QuotaTracker(
            daily_limit=config.quota.daily_limit,
            minute_limit=config.quota.minute_limit,
            chars_per_unit=config.quota.chars_per_unit,
            usage_log_path=config.quota.usage_log_path,
        )
        state = ResilienceState(rate_limiter=rate_limiter, quota=quota, vault=vault)

        # --- Backend ---
        backend_client = BackendClient(state=state, config=config.backend)
        logger.info(
            "Backend client configured (base_url=%s, model=%s)",
            config.backend.base_url, config.backend.model,
        )

        # --- Recovery ---
        classifier = ErrorClassifier()
        advisor = FixAdvisor(max_auto_fix_attempts=config.orchestrator.max_auto_fix_attempts)

        logger.info("All components initialized")

        return ComponentBundle(
            config=config,
            vault=vault,
            rate_limiter=rate_limiter,
            quota=quota,
            state=state,
            backend_client=backend_client,
            classifier=classifier,
            advisor=advisor,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        bundle.backend_client.close()
        logger.info("All components shut down")


def _build_store(vault_config: VaultConfig) -> SecretStore:
    if vault_config.backend == "memory":
        return InMemorySecretStore()
    return EncryptedFileSecretStore(
        path=vault_config.path,
        key_path=vault_config.key_path,
        key_env_var=vault_config.key_env_var,
    )


def _seed_vault(
    vault: CredentialVault,
    primary: Optional[str],
    backup: Optional[str],
) -> None:
    """Populate an empty vault from explicit keys or the environment."""
    if vault.has_credentials() or not primary:
        return
    vault.set_primary(primary)
    if backup and backup.strip() == primary.strip():
        logger.warning("Backup credential matches the primary; not seeding backup")
    elif backup:
        vault.set_backup(backup)
    logger.info("Vault seeded from supplied credentials")
