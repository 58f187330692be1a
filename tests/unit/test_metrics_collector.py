"""
Unit tests for MetricsCollector methods in observability/metrics.py.

Tests the individual methods of MetricsCollector to verify they call the
correct Prometheus metric objects with the correct label values.
"""

from unittest.mock import MagicMock, patch

import pytest

from gitops_operator.errors import KubernetesAPIError
from gitops_operator.observability.metrics import MetricsCollector


@pytest.fixture
def collector():
    """Create a MetricsCollector with the registry init patched out."""
    with patch(
        "gitops_operator.observability.metrics.get_metrics_registry",
        return_value=MagicMock(),
    ):
        return MetricsCollector()


class TestMetricsCollectorReconciliation:
    @patch("gitops_operator.observability.metrics.ACTIVE_RESOURCES")
    def test_update_resource_status(self, mock_active, collector):
        collector.update_resource_status("argocd", "ns-b", "Ready", count=5)
        mock_active.labels.assert_called_with(
            resource_type="argocd",
            namespace="ns-b",
            phase="Ready",
        )
        mock_active.labels().set.assert_called_with(5)

    @patch("gitops_operator.observability.metrics.ACTIVE_RESOURCES")
    def test_update_resource_status_default_count(self, mock_active, collector):
        """Default count is 1."""
        collector.update_resource_status("argocd", "ns-a", "Degraded")
        mock_active.labels().set.assert_called_with(1)

    @pytest.mark.asyncio
    @patch("gitops_operator.observability.metrics.RECONCILIATION_DURATION")
    @patch("gitops_operator.observability.metrics.RECONCILIATION_TOTAL")
    async def test_track_reconciliation_success(
        self, mock_total, mock_duration, collector
    ):
        async with collector.track_reconciliation("argocd", "ns-a", "demo"):
            pass

        mock_total.labels.assert_called_with(
            resource_type="argocd",
            namespace="ns-a",
            name="demo",
            operation="reconcile",
            result="success",
        )
        mock_total.labels().inc.assert_called_once()
        mock_duration.labels.assert_called_with(
            resource_type="argocd", namespace="ns-a", operation="reconcile"
        )

    @pytest.mark.asyncio
    @patch("gitops_operator.observability.metrics.RECONCILIATION_ERRORS")
    @patch("gitops_operator.observability.metrics.RECONCILIATION_DURATION")
    @patch("gitops_operator.observability.metrics.RECONCILIATION_TOTAL")
    async def test_track_reconciliation_error(
        self, mock_total, mock_duration, mock_errors, collector
    ):
        """Errors are counted with their type and retryability and re-raised."""
        with pytest.raises(KubernetesAPIError):
            async with collector.track_reconciliation(
                "argocd", "ns-a", "demo", operation="delete"
            ):
                raise KubernetesAPIError("boom", reason="Conflict", status=409)

        mock_errors.labels.assert_called_with(
            resource_type="argocd",
            namespace="ns-a",
            error_type="KubernetesAPIError",
            retryable="true",
        )
        mock_total.labels.assert_called_with(
            resource_type="argocd",
            namespace="ns-a",
            name="demo",
            operation="delete",
            result="error",
        )


class TestMetricsCollectorNamespaces:
    @patch("gitops_operator.observability.metrics.MANAGED_NAMESPACES")
    def test_set_managed_namespaces(self, mock_gauge, collector):
        collector.set_managed_namespaces("ns1", "demo", 3)
        mock_gauge.labels.assert_called_with(namespace="ns1", name="demo")
        mock_gauge.labels().set.assert_called_with(3)

    @patch("gitops_operator.observability.metrics.MANAGED_NAMESPACES")
    def test_clear_managed_namespaces_tolerates_unknown_series(
        self, mock_gauge, collector
    ):
        mock_gauge.remove.side_effect = KeyError(("ns1", "demo"))

        collector.clear_managed_namespaces("ns1", "demo")

        mock_gauge.remove.assert_called_once_with("ns1", "demo")

    @patch("gitops_operator.observability.metrics.NAMESPACE_CLEANUPS")
    def test_record_namespace_cleanup(self, mock_counter, collector):
        collector.record_namespace_cleanup("ns1", "relabeled", success=False)
        mock_counter.labels.assert_called_with(
            owner_namespace="ns1", reason="relabeled", result="failure"
        )
        mock_counter.labels().inc.assert_called_once()


class TestMetricsCollectorPropagation:
    @patch("gitops_operator.observability.metrics.RBAC_OPERATIONS")
    def test_record_rbac_operation(self, mock_counter, collector):
        collector.record_rbac_operation("RoleBinding", "delete")
        mock_counter.labels.assert_called_with(kind="RoleBinding", action="delete")
        mock_counter.labels().inc.assert_called_once()

    @patch("gitops_operator.observability.metrics.CLUSTER_SECRET_UPDATES")
    def test_record_cluster_secret_update(self, mock_counter, collector):
        collector.record_cluster_secret_update("ns1", "demo-secret")
        mock_counter.labels.assert_called_with(namespace="ns1", name="demo-secret")

    @patch("gitops_operator.observability.metrics.CLUSTER_CAPABILITY")
    def test_update_capabilities(self, mock_gauge, collector):
        collector.update_capabilities({"route_api": True, "prometheus_api": False})

        mock_gauge.labels.assert_any_call(api="route_api")
        mock_gauge.labels.assert_any_call(api="prometheus_api")
        mock_gauge.labels().set.assert_any_call(1)
        mock_gauge.labels().set.assert_any_call(0)
