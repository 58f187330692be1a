#!/usr/bin/env python3
"""
GitOps Operator - Main entry point for the Kopf-based Argo CD operator.

This operator keeps ArgoCD instances and everything they need in place:
- Finalizer-guarded instance lifecycle with two-pass deletion
- Managed namespaces discovered from namespace labels
- Per-namespace RBAC and the cluster secret kept in step with membership
- Optional resources gated on probed cluster capabilities

Usage:
    python -m gitops_operator.operator
    # Or with kopf directly:
    kopf run -m gitops_operator.operator --all-namespaces

Environment Variables:
    WATCH_NAMESPACE: Comma-separated list of namespaces to watch
    ARGOCD_CLUSTER_CONFIG_NAMESPACES: Namespaces whose instances run cluster-scoped
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

import asyncio
import logging
import random
import sys

import kopf
from kubernetes import config

from gitops_operator.constants import DELETION_FINALIZER

# Import all handler modules to register them with kopf
from gitops_operator.handlers import argocd, namespace  # noqa: F401
from gitops_operator.observability.health import HealthChecker
from gitops_operator.observability.logging import setup_structured_logging
from gitops_operator.observability.metrics import MetricsServer
from gitops_operator.observability.tracing import setup_tracing, shutdown_tracing
from gitops_operator.services.capabilities import CapabilityProbe
from gitops_operator.services.lifecycle import InstanceLifecycle
from gitops_operator.services.namespace_events import NamespaceEventFilter
from gitops_operator.settings import settings as operator_settings
from gitops_operator.utils.kubernetes import KubernetesApis
from gitops_operator.utils.locks import InstanceLocks


def configure_logging() -> None:
    """Configure structured logging for the operator based on operator_settings."""
    setup_structured_logging(
        log_level=operator_settings.log_level.upper(),
        enable_json_formatting=operator_settings.json_logs,
        correlation_id_enabled=operator_settings.correlation_ids,
        log_health_probes=operator_settings.log_health_probes,
    )


def load_kubernetes_config() -> None:
    try:
        config.load_incluster_config()
        logging.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logging.info("Loaded kubeconfig configuration")
        except config.ConfigException:
            logging.error("Failed to load Kubernetes configuration")
            raise


@kopf.on.startup()
async def startup_handler(
    settings: kopf.OperatorSettings, memo: kopf.Memo, **_
) -> None:
    """
    Operator startup configuration.

    Configures kopf, builds the shared services kept in memo, probes cluster
    capabilities and starts the metrics endpoint.
    """
    logging.info("Starting GitOps Operator...")

    # kopf manages the same finalizer the lifecycle removes, so it never
    # re-adds one the second deletion pass already dropped
    settings.persistence.finalizer = DELETION_FINALIZER
    settings.watching.reconnect_backoff = 1.0
    settings.execution.max_workers = operator_settings.max_workers
    settings.posting.level = logging.WARNING

    settings.peering.name = operator_settings.operator_name
    settings.peering.priority = random.randint(0, 32767)
    logging.info(
        f"Peering priority set to {settings.peering.priority} for leader election"
    )

    watched_namespaces = operator_settings.watched_namespaces
    if watched_namespaces:
        logging.info(f"Watching namespaces: {', '.join(watched_namespaces)}")
    else:
        logging.info("Watching all namespaces (cluster-wide mode)")

    load_kubernetes_config()

    apis = KubernetesApis.from_client()
    memo.apis = apis
    memo.locks = InstanceLocks()
    memo.namespace_filter = NamespaceEventFilter()
    memo.lifecycle = InstanceLifecycle(apis)

    probe = CapabilityProbe(apis)
    capabilities = await probe.probe()
    logging.info(f"Cluster capabilities: {capabilities.as_dict()}")
    memo.capability_probe = probe
    memo.capability_task = None
    if operator_settings.capability_refresh_interval_seconds > 0:
        memo.capability_task = asyncio.create_task(
            probe.run_refresh_loop(operator_settings.capability_refresh_interval_seconds)
        )

    setup_tracing(
        enabled=operator_settings.tracing_enabled,
        endpoint=operator_settings.otel_endpoint,
        sample_rate=operator_settings.tracing_sample_rate,
    )

    memo.metrics_server = None
    try:
        metrics_server = MetricsServer(
            port=operator_settings.metrics_port, host=operator_settings.metrics_host
        )
        await metrics_server.start()
        memo.metrics_server = metrics_server
        logging.info(
            f"Metrics and health endpoints available on "
            f"{operator_settings.metrics_host}:{operator_settings.metrics_port}"
        )
    except OSError as e:
        logging.error(f"Failed to start metrics server: {e}")
        logging.warning("Continuing without metrics server")


@kopf.on.cleanup()
async def cleanup_handler(memo: kopf.Memo, **_) -> None:
    """Stop background work started at startup."""
    logging.info("Shutting down GitOps Operator...")

    task = memo.get("capability_task")
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    metrics_server = memo.get("metrics_server")
    if metrics_server is not None:
        await metrics_server.stop()
        logging.info("Metrics server stopped")

    shutdown_tracing()


@kopf.on.probe(id="healthz")
async def health_check(**_) -> dict[str, str]:
    """
    Health check probe for Kubernetes liveness checks.

    Returns:
        Dictionary indicating operator health status
    """
    try:
        health_checker = HealthChecker()
        health_results = await health_checker.check_all()
        return {
            "status": health_checker.get_overall_health(health_results),
            "operator": "gitops-operator",
        }
    except Exception as e:
        logging.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "operator": "gitops-operator", "error": str(e)}


@kopf.on.probe(id="ready")
async def readiness_check(**_) -> dict[str, str]:
    """Ready once the API server answers and the ArgoCD CRD is installed."""
    try:
        health_checker = HealthChecker()
        api = await health_checker._check_kubernetes_api()
        crds = await health_checker._check_crds_installed()
        if api.status == "healthy" and crds.status == "healthy":
            return {"status": "ready", "operator": "gitops-operator"}
        return {"status": "not_ready", "operator": "gitops-operator"}
    except Exception as e:
        logging.error(f"Readiness check failed: {e}")
        return {"status": "not_ready", "operator": "gitops-operator", "error": str(e)}


def main() -> None:
    """
    Main entry point for the operator.

    Configures logging, then runs kopf either cluster-wide or restricted to
    the namespaces in ``WATCH_NAMESPACE``.
    """
    configure_logging()

    watched_namespaces = operator_settings.watched_namespaces

    try:
        if watched_namespaces:
            kopf.run(
                namespaces=watched_namespaces,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
            )
        else:
            kopf.run(
                clusterwide=True,
                liveness_endpoint="http://0.0.0.0:8080/healthz",
            )
    except KeyboardInterrupt:
        logging.info("Received shutdown signal")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Operator failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
