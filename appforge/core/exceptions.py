"""Custom exception hierarchy for appforge.

All exceptions inherit from AppForgeError so callers can catch broadly
or narrowly as needed. Backend call failures are deliberately absent:
BackendClient reports those as ClientError results, not exceptions.
"""


class AppForgeError(Exception):
    """Base exception for all appforge errors."""


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class CredentialError(AppForgeError):
    """Invalid credential operation (empty secret, unknown role)."""


class SecretStoreError(CredentialError):
    """Secret store could not be read, decrypted, or written."""


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class PipelineError(AppForgeError):
    """Pipeline orchestration failure."""


class InvalidTransitionError(PipelineError):
    """Attempted a phase transition the state machine does not allow."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal pipeline transition {current} -> {target}")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(AppForgeError):
    """Invalid or missing configuration."""
