"""Tests for appforge/core/exceptions.py: exception hierarchy."""

import pytest

from appforge.core.exceptions import (
    AppForgeError,
    ConfigError,
    CredentialError,
    InvalidTransitionError,
    PipelineError,
    SecretStoreError,
)


class TestExceptionHierarchy:
    def test_base_exception(self):
        with pytest.raises(AppForgeError):
            raise AppForgeError("test")

    def test_credential_errors_inherit_from_base(self):
        assert issubclass(CredentialError, AppForgeError)
        assert issubclass(SecretStoreError, CredentialError)

    def test_pipeline_errors_inherit_from_base(self):
        assert issubclass(PipelineError, AppForgeError)
        assert issubclass(InvalidTransitionError, PipelineError)

    def test_config_error_inherits_from_base(self):
        assert issubclass(ConfigError, AppForgeError)

    def test_catch_broadly(self):
        with pytest.raises(AppForgeError):
            raise SecretStoreError("cannot decrypt")


class TestInvalidTransitionError:
    def test_message_names_both_phases(self):
        err = InvalidTransitionError("succeeded", "build")
        assert err.current == "succeeded"
        assert err.target == "build"
        assert str(err) == "Illegal pipeline transition succeeded -> build"
