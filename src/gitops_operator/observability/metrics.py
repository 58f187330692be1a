"""
Prometheus metrics for the GitOps operator.

This module provides metrics collection for monitoring reconciliation,
namespace membership, RBAC propagation and cluster capability state.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from aiohttp.web import (
    Application,
    AppRunner,
    Request,
    Response,
    TCPSite,
    json_response,
)
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global metrics registry
_metrics_registry: CollectorRegistry | None = None

# Metrics definitions
RECONCILIATION_TOTAL = Counter(
    "gitops_operator_reconciliation_total",
    "Total number of reconciliation attempts",
    ["resource_type", "namespace", "name", "operation", "result"],
    registry=None,  # Will be set during initialization
)

RECONCILIATION_DURATION = Histogram(
    "gitops_operator_reconciliation_duration_seconds",
    "Time spent on reconciliation operations",
    ["resource_type", "namespace", "operation"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=None,
)

RECONCILIATION_ERRORS = Counter(
    "gitops_operator_reconciliation_errors_total",
    "Total number of reconciliation errors",
    ["resource_type", "namespace", "error_type", "retryable"],
    registry=None,
)

ACTIVE_RESOURCES = Gauge(
    "gitops_operator_active_resources",
    "Number of ArgoCD instances per phase",
    ["resource_type", "namespace", "phase"],
    registry=None,
)

MANAGED_NAMESPACES = Gauge(
    "gitops_operator_managed_namespaces",
    "Number of namespaces managed by an ArgoCD instance",
    ["namespace", "name"],
    registry=None,
)

RBAC_OPERATIONS = Counter(
    "gitops_operator_rbac_operations_total",
    "Role and RoleBinding writes issued in managed namespaces",
    ["kind", "action"],
    registry=None,
)

CLUSTER_SECRET_UPDATES = Counter(
    "gitops_operator_cluster_secret_updates_total",
    "Rewrites of the cluster secret namespace list",
    ["namespace", "name"],
    registry=None,
)

NAMESPACE_CLEANUPS = Counter(
    "gitops_operator_namespace_cleanups_total",
    "Fast-path cleanups triggered by namespace label changes or deletion",
    ["owner_namespace", "reason", "result"],
    registry=None,
)

CLUSTER_CAPABILITY = Gauge(
    "gitops_operator_cluster_capability",
    "Optional cluster API availability (1=available, 0=unavailable)",
    ["api"],
    registry=None,
)


def get_metrics_registry() -> CollectorRegistry:
    """Get or create the global metrics registry."""
    global _metrics_registry

    if _metrics_registry is None:
        _metrics_registry = CollectorRegistry()

        for metric in [
            RECONCILIATION_TOTAL,
            RECONCILIATION_DURATION,
            RECONCILIATION_ERRORS,
            ACTIVE_RESOURCES,
            MANAGED_NAMESPACES,
            RBAC_OPERATIONS,
            CLUSTER_SECRET_UPDATES,
            NAMESPACE_CLEANUPS,
            CLUSTER_CAPABILITY,
        ]:
            _metrics_registry.register(metric)

    return _metrics_registry


class MetricsCollector:
    """Collects and manages metrics for the GitOps operator."""

    def __init__(self):
        self.registry = get_metrics_registry()

    @asynccontextmanager
    async def track_reconciliation(
        self,
        resource_type: str,
        namespace: str,
        name: str,
        operation: str = "reconcile",
    ):
        """
        Context manager to track reconciliation operations.

        Args:
            resource_type: Type of resource being reconciled
            namespace: Namespace of the resource
            name: Name of the resource
            operation: Type of operation being performed
        """
        start_time = time.time()
        result = "unknown"

        try:
            yield
            result = "success"
        except Exception as e:
            result = "error"

            error_type = type(e).__name__
            retryable = "true" if getattr(e, "retryable", False) else "false"

            RECONCILIATION_ERRORS.labels(
                resource_type=resource_type,
                namespace=namespace,
                error_type=error_type,
                retryable=retryable,
            ).inc()

            raise
        finally:
            duration = time.time() - start_time

            RECONCILIATION_TOTAL.labels(
                resource_type=resource_type,
                namespace=namespace,
                name=name,
                operation=operation,
                result=result,
            ).inc()

            RECONCILIATION_DURATION.labels(
                resource_type=resource_type, namespace=namespace, operation=operation
            ).observe(duration)

    def update_resource_status(
        self, resource_type: str, namespace: str, phase: str, count: int = 1
    ):
        ACTIVE_RESOURCES.labels(
            resource_type=resource_type, namespace=namespace, phase=phase
        ).set(count)

    def set_managed_namespaces(self, namespace: str, name: str, count: int) -> None:
        MANAGED_NAMESPACES.labels(namespace=namespace, name=name).set(count)

    def clear_managed_namespaces(self, namespace: str, name: str) -> None:
        try:
            MANAGED_NAMESPACES.remove(namespace, name)
        except KeyError:
            pass

    def record_rbac_operation(self, kind: str, action: str) -> None:
        """
        Record a Role/RoleBinding write.

        Args:
            kind: "Role" or "RoleBinding"
            action: "create", "update" or "delete"
        """
        RBAC_OPERATIONS.labels(kind=kind, action=action).inc()

    def record_cluster_secret_update(self, namespace: str, name: str) -> None:
        CLUSTER_SECRET_UPDATES.labels(namespace=namespace, name=name).inc()

    def record_namespace_cleanup(
        self, owner_namespace: str, reason: str, success: bool
    ) -> None:
        NAMESPACE_CLEANUPS.labels(
            owner_namespace=owner_namespace,
            reason=reason,
            result="success" if success else "failure",
        ).inc()

    def update_capabilities(self, flags: dict[str, bool]) -> None:
        for api, available in flags.items():
            CLUSTER_CAPABILITY.labels(api=api).set(1 if available else 0)


class MetricsServer:
    """HTTP server for exposing Prometheus metrics."""

    def __init__(self, port: int = 8081, host: str = "0.0.0.0"):
        """
        Initialize metrics server.

        Args:
            port: Port to serve metrics on
            host: Host interface to bind to
        """
        self.port = port
        self.host = host
        self.app = Application()
        self.runner: AppRunner | None = None
        self.site: TCPSite | None = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        self.app.router.add_get("/metrics", self._metrics_handler)
        self.app.router.add_get("/health", self._health_handler)
        self.app.router.add_get("/ready", self._ready_handler)
        self.app.router.add_get("/healthz", self._healthz_handler)

    async def _metrics_handler(self, request: Request) -> Response:
        """Handle /metrics endpoint for Prometheus scraping."""
        try:
            metrics_data = generate_latest(get_metrics_registry())
            return Response(
                body=metrics_data,
                headers={"Content-Type": CONTENT_TYPE_LATEST},
            )
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            return Response(
                text=f"Error generating metrics: {type(e).__name__}. Check logs for details.",
                status=500,
            )

    async def _health_handler(self, request: Request) -> Response:
        """Handle /health endpoint for operator health checks."""
        try:
            from .health import HealthChecker

            health_checker = HealthChecker()
            health_results = await health_checker.check_all()
            health_dict = health_checker.to_dict(health_results)

            status_code = (
                200 if health_dict["status"] in ["healthy", "degraded"] else 503
            )
            return json_response(health_dict, status=status_code)
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return json_response(
                {
                    "status": "unhealthy",
                    "error": f"{type(e).__name__}. Check logs for details.",
                    "timestamp": time.time(),
                },
                status=500,
            )

    async def _ready_handler(self, request: Request) -> Response:
        """Handle /ready endpoint for readiness probes."""
        try:
            from .health import HealthChecker

            results: dict[str, Any] = await HealthChecker().check_all()
            checks = {name: result.status for name, result in results.items()}
            ready = all(status == "healthy" for status in checks.values())
            return json_response(
                {
                    "status": "ready" if ready else "not_ready",
                    "timestamp": time.time(),
                    "checks": checks,
                },
                status=200 if ready else 503,
            )
        except Exception as e:
            logger.error(f"Readiness check failed: {e}")
            return json_response(
                {
                    "status": "not_ready",
                    "error": f"{type(e).__name__}. Check logs for details.",
                    "timestamp": time.time(),
                },
                status=503,
            )

    async def _healthz_handler(self, request: Request) -> Response:
        return Response(text="ok")

    async def start(self) -> None:
        """Start the metrics server."""
        try:
            self.runner = AppRunner(self.app)
            await self.runner.setup()

            self.site = TCPSite(self.runner, self.host, self.port)
            await self.site.start()

            logger.info(f"Metrics server started on {self.host}:{self.port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")
            raise

    async def stop(self) -> None:
        """Stop the metrics server."""
        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        logger.info("Metrics server stopped")


# Global metrics collector instance
metrics_collector = MetricsCollector()
