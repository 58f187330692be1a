"""
Health check utilities for the GitOps operator.

Checks cover API server reachability, the ArgoCD CRD, and the permissions the
operator needs to propagate RBAC into managed namespaces.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..constants import ARGOCD_CRD_NAME

logger = logging.getLogger(__name__)

# (group, resource, verb) tuples the operator cannot work without
REQUIRED_PERMISSIONS = (
    ("", "namespaces", "list"),
    ("", "namespaces", "update"),
    ("", "secrets", "update"),
    ("rbac.authorization.k8s.io", "roles", "create"),
    ("rbac.authorization.k8s.io", "rolebindings", "create"),
    ("rbac.authorization.k8s.io", "rolebindings", "delete"),
    ("argoproj.io", "argocds", "patch"),
)


@dataclass
class HealthCheckResult:
    """Result of a health check operation."""

    name: str
    status: str  # "healthy", "unhealthy", "degraded", "unknown"
    message: str
    details: dict[str, Any] | None = None
    duration: float = 0.0
    timestamp: float = 0.0


class HealthChecker:
    """Performs health checks for the operator."""

    def __init__(self, k8s_client: client.ApiClient | None = None):
        self.k8s_client = k8s_client

    def _api_client(self) -> client.ApiClient:
        if not self.k8s_client:
            from ..utils.kubernetes import get_kubernetes_client

            self.k8s_client = get_kubernetes_client()
        return self.k8s_client

    async def check_all(self) -> dict[str, HealthCheckResult]:
        """
        Run all health checks.

        Returns:
            Dictionary of health check results keyed by check name
        """
        checks = {
            "kubernetes_api": self._check_kubernetes_api,
            "crds_installed": self._check_crds_installed,
            "rbac_permissions": self._check_rbac_permissions,
        }

        results = {}
        for name, check in checks.items():
            try:
                results[name] = await check()
            except Exception as e:
                results[name] = HealthCheckResult(
                    name=name,
                    status="unhealthy",
                    message=f"Health check failed: {str(e)}",
                    timestamp=time.time(),
                )

        return results

    async def _check_kubernetes_api(self) -> HealthCheckResult:
        """Check Kubernetes API connectivity."""
        start_time = time.time()

        try:
            core_api = client.CoreV1Api(self._api_client())
            await asyncio.to_thread(core_api.list_namespace, limit=1, timeout_seconds=5)

            duration = time.time() - start_time
            return HealthCheckResult(
                name="kubernetes_api",
                status="healthy",
                message="Kubernetes API is accessible",
                details={"response_time_ms": round(duration * 1000, 2)},
                duration=duration,
                timestamp=time.time(),
            )

        except ApiException as e:
            duration = time.time() - start_time
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Kubernetes API error: {e.reason}",
                details={
                    "status_code": e.status,
                    "response_time_ms": round(duration * 1000, 2),
                },
                duration=duration,
                timestamp=time.time(),
            )

        except Exception as e:
            duration = time.time() - start_time
            return HealthCheckResult(
                name="kubernetes_api",
                status="unhealthy",
                message=f"Failed to connect to Kubernetes API: {str(e)}",
                duration=duration,
                timestamp=time.time(),
            )

    async def _check_crds_installed(self) -> HealthCheckResult:
        """Check that the ArgoCD CRD is installed."""
        start_time = time.time()

        api_extensions = client.ApiextensionsV1Api(self._api_client())
        try:
            await asyncio.to_thread(
                api_extensions.read_custom_resource_definition, name=ARGOCD_CRD_NAME
            )
        except ApiException as e:
            if e.status != 404:
                raise
            return HealthCheckResult(
                name="crds_installed",
                status="unhealthy",
                message=f"Missing required CRD: {ARGOCD_CRD_NAME}",
                details={"missing": [ARGOCD_CRD_NAME]},
                duration=time.time() - start_time,
                timestamp=time.time(),
            )

        return HealthCheckResult(
            name="crds_installed",
            status="healthy",
            message="All required CRDs are installed",
            details={"installed": [ARGOCD_CRD_NAME]},
            duration=time.time() - start_time,
            timestamp=time.time(),
        )

    async def _check_rbac_permissions(self) -> HealthCheckResult:
        """Check the operator may write namespaces, secrets and RBAC objects."""
        start_time = time.time()
        auth_api = client.AuthorizationV1Api(self._api_client())

        allowed: list[str] = []
        denied: list[str] = []

        for group, resource, verb in REQUIRED_PERMISSIONS:
            label = f"{verb} {group}/{resource}"
            review = client.V1SelfSubjectAccessReview(
                spec=client.V1SelfSubjectAccessReviewSpec(
                    resource_attributes=client.V1ResourceAttributes(
                        group=group, resource=resource, verb=verb
                    )
                )
            )
            try:
                result = await asyncio.to_thread(
                    auth_api.create_self_subject_access_review, body=review
                )
            except ApiException as e:
                logger.warning(f"Failed to test permission {label}: {e.reason}")
                denied.append(f"{label} (test failed)")
                continue

            if result.status.allowed:
                allowed.append(label)
            else:
                denied.append(label)

        duration = time.time() - start_time
        if denied:
            return HealthCheckResult(
                name="rbac_permissions",
                status="degraded" if allowed else "unhealthy",
                message=f"Missing RBAC permissions: {', '.join(denied[:3])}"
                f"{'...' if len(denied) > 3 else ''}",
                details={"allowed": allowed, "denied": denied},
                duration=duration,
                timestamp=time.time(),
            )

        return HealthCheckResult(
            name="rbac_permissions",
            status="healthy",
            message="All required RBAC permissions are available",
            details={"allowed": allowed},
            duration=duration,
            timestamp=time.time(),
        )

    def get_overall_health(self, results: dict[str, HealthCheckResult]) -> str:
        """Collapse individual results into one status."""
        if not results:
            return "unknown"

        statuses = [result.status for result in results.values()]

        if "unhealthy" in statuses:
            return "unhealthy"
        elif "degraded" in statuses or "unknown" in statuses:
            return "degraded"
        else:
            return "healthy"

    def to_dict(self, results: dict[str, HealthCheckResult]) -> dict[str, Any]:
        return {
            "status": self.get_overall_health(results),
            "timestamp": time.time(),
            "checks": {
                name: {
                    "status": result.status,
                    "message": result.message,
                    "details": result.details,
                    "duration": result.duration,
                    "timestamp": result.timestamp,
                }
                for name, result in results.items()
            },
        }
