"""Unit tests for the operator error hierarchy and its kopf mapping."""

import kopf
import pytest

from gitops_operator.errors import (
    ConfigurationError,
    FinalizerError,
    KubernetesAPIError,
    PermanentError,
    ReconciliationError,
    TemporaryError,
    ValidationError,
)


class TestKopfConversion:
    def test_temporary_error_keeps_delay(self):
        error = TemporaryError("API throttled", delay=10).as_kopf_error()

        assert isinstance(error, kopf.TemporaryError)
        assert error.delay == 10

    @pytest.mark.parametrize(
        "error",
        [
            PermanentError("broken"),
            ValidationError("bad value", field="spec.sourceNamespaces"),
            ConfigurationError("missing setting"),
        ],
    )
    def test_non_retryable_become_permanent(self, error):
        assert isinstance(error.as_kopf_error(), kopf.PermanentError)

    def test_finalizer_error_is_retried(self):
        error = FinalizerError("finalizer patch failed").as_kopf_error()

        assert isinstance(error, kopf.TemporaryError)
        assert error.delay == 10

    def test_reconciliation_error_retryability_is_configurable(self):
        assert ReconciliationError("x").retryable
        assert not ReconciliationError("x", retryable=False).retryable


class TestMessages:
    def test_user_action_is_appended(self):
        error = PermanentError("broken", user_action="Fix the resource")

        assert str(error) == "broken\nAction required: Fix the resource"

    def test_validation_error_names_field(self):
        error = ValidationError("must not be empty", field="spec.server")

        assert "Validation error in field 'spec.server'" in str(error)
        assert error.category == "validation"


class TestKubernetesAPIError:
    @pytest.mark.parametrize("reason", ["Forbidden", "Unauthorized", "Invalid"])
    def test_non_retryable_reasons(self, reason):
        error = KubernetesAPIError("denied", reason=reason, retryable=True)

        assert not error.retryable
        assert f"(reason: {reason})" in str(error)

    def test_conflict(self):
        error = KubernetesAPIError("stale write", reason="Conflict", status=409, delay=5)

        assert error.is_conflict
        assert error.retryable
        assert error.as_kopf_error().delay == 5

    def test_without_status_is_not_conflict(self):
        assert not KubernetesAPIError("timeout").is_conflict
