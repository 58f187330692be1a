"""Unit tests for the operator health checks."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException

from gitops_operator.observability.health import (
    REQUIRED_PERMISSIONS,
    HealthChecker,
    HealthCheckResult,
)


def _result(status: str) -> HealthCheckResult:
    return HealthCheckResult(name="check", status=status, message=status)


@pytest.fixture
def checker():
    return HealthChecker(k8s_client=MagicMock())


class TestOverallHealth:
    def test_empty_is_unknown(self, checker):
        assert checker.get_overall_health({}) == "unknown"

    def test_all_healthy(self, checker):
        assert checker.get_overall_health({"a": _result("healthy")}) == "healthy"

    def test_degraded_wins_over_healthy(self, checker):
        results = {"a": _result("healthy"), "b": _result("degraded")}

        assert checker.get_overall_health(results) == "degraded"

    def test_unhealthy_wins(self, checker):
        results = {"a": _result("degraded"), "b": _result("unhealthy")}

        assert checker.get_overall_health(results) == "unhealthy"

    def test_to_dict(self, checker):
        data = checker.to_dict({"kubernetes_api": _result("healthy")})

        assert data["status"] == "healthy"
        assert data["checks"]["kubernetes_api"]["message"] == "healthy"


class TestChecks:
    @pytest.mark.asyncio
    async def test_kubernetes_api_error(self, checker):
        with patch("gitops_operator.observability.health.client.CoreV1Api") as api:
            api.return_value.list_namespace.side_effect = ApiException(
                status=401, reason="Unauthorized"
            )
            result = await checker._check_kubernetes_api()

        assert result.status == "unhealthy"
        assert result.details["status_code"] == 401

    @pytest.mark.asyncio
    async def test_missing_crd(self, checker):
        with patch(
            "gitops_operator.observability.health.client.ApiextensionsV1Api"
        ) as api:
            api.return_value.read_custom_resource_definition.side_effect = ApiException(
                status=404
            )
            result = await checker._check_crds_installed()

        assert result.status == "unhealthy"
        assert result.details == {"missing": ["argocds.argoproj.io"]}

    @pytest.mark.asyncio
    async def test_partially_denied_permissions_are_degraded(self, checker):
        answers = iter(
            [False] + [True] * (len(REQUIRED_PERMISSIONS) - 1)
        )

        def review(body):
            return SimpleNamespace(status=SimpleNamespace(allowed=next(answers)))

        with patch(
            "gitops_operator.observability.health.client.AuthorizationV1Api"
        ) as api:
            api.return_value.create_self_subject_access_review.side_effect = review
            result = await checker._check_rbac_permissions()

        assert result.status == "degraded"
        assert result.details["denied"] == ["list /namespaces"]

    @pytest.mark.asyncio
    async def test_check_all_reports_crashing_check(self, checker):
        with (
            patch.object(checker, "_check_kubernetes_api", side_effect=RuntimeError("x")),
            patch.object(
                checker, "_check_crds_installed", return_value=_result("healthy")
            ),
            patch.object(
                checker, "_check_rbac_permissions", return_value=_result("healthy")
            ),
        ):
            results = await checker.check_all()

        assert results["kubernetes_api"].status == "unhealthy"
        assert "Health check failed" in results["kubernetes_api"].message
