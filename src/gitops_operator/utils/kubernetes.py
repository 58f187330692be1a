"""
Kubernetes utilities for the GitOps operator.

This module provides helper functions for interacting with the Kubernetes API:

- Kubernetes client management and configuration
- Running blocking client calls off the event loop with a request timeout
- Mapping ApiException statuses onto the operator error hierarchy
- Label selector construction and generic apply/delete helpers
"""

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..errors import KubernetesAPIError
from ..settings import settings

logger = logging.getLogger(__name__)

# Statuses the API server uses for transient conditions
RETRYABLE_STATUSES = frozenset({404, 409, 429})

STATUS_REASONS = {
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    409: "Conflict",
    422: "Invalid",
    429: "TooManyRequests",
}


def get_kubernetes_client() -> client.ApiClient:
    """
    Get configured Kubernetes API client.

    Tries in-cluster configuration first and falls back to the local
    kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        logger.debug("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            config.load_kube_config()
            logger.debug("Loaded kubeconfig from local environment")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes configuration: {e}")
            raise

    return client.ApiClient()


@dataclass
class KubernetesApis:
    """The typed API groups the reconcilers talk to."""

    core: client.CoreV1Api
    rbac: client.RbacAuthorizationV1Api
    custom: client.CustomObjectsApi
    apps: client.AppsV1Api
    networking: client.NetworkingV1Api

    @classmethod
    def from_client(cls, api_client: client.ApiClient | None = None) -> "KubernetesApis":
        api_client = api_client or get_kubernetes_client()
        return cls(
            core=client.CoreV1Api(api_client),
            rbac=client.RbacAuthorizationV1Api(api_client),
            custom=client.CustomObjectsApi(api_client),
            apps=client.AppsV1Api(api_client),
            networking=client.NetworkingV1Api(api_client),
        )


async def call_api(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """
    Run a blocking kubernetes client call in a worker thread.

    Every call carries ``_request_timeout`` so a cancelled reconcile pass
    never waits on a hung connection longer than the configured timeout.
    """
    kwargs.setdefault("_request_timeout", settings.api_request_timeout_seconds)
    return await asyncio.to_thread(func, *args, **kwargs)


def api_error(exc: ApiException, action: str) -> KubernetesAPIError:
    """
    Translate an ApiException into the operator error hierarchy.

    Conflicts, throttling, not-found races and server errors are retryable;
    authorization and validation failures are not.

    Args:
        exc: Exception raised by the kubernetes client
        action: Short description of what was being attempted

    Returns:
        KubernetesAPIError carrying the HTTP status
    """
    status = exc.status or 0
    reason = STATUS_REASONS.get(status, exc.reason)
    retryable = status in RETRYABLE_STATUSES or status >= 500 or status == 0

    delay = 15
    if status == 409:
        delay = 5
    elif status == 429:
        delay = 10

    return KubernetesAPIError(
        message=f"Failed to {action}",
        reason=reason,
        retryable=retryable,
        status=status or None,
        delay=delay,
    )


def label_selector(labels: dict[str, str]) -> str:
    """Render a label dict as an equality-based selector string."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


@functools.cache
def _serializer() -> client.ApiClient:
    return client.ApiClient()


def to_dict(obj: Any) -> Any:
    """Serialize a kubernetes model (or plain dict) to its API representation."""
    return _serializer().sanitize_for_serialization(obj)


async def apply_resource(
    read: Callable[..., Any],
    create: Callable[..., Any],
    patch: Callable[..., Any],
    name: str,
    body: Any,
    namespace: str | None = None,
) -> str:
    """
    Create a resource if absent, patch it otherwise.

    Args:
        read: Client method reading the resource by name
        create: Client method creating the resource
        patch: Client method patching the resource by name
        name: Resource name
        body: Desired object
        namespace: Namespace for namespaced resources, None for cluster scope

    Returns:
        "created" or "patched"
    """
    scope = {"namespace": namespace} if namespace else {}
    try:
        await call_api(read, name=name, **scope)
    except ApiException as e:
        if e.status != 404:
            raise
        await call_api(create, body=body, **scope)
        return "created"

    await call_api(patch, name=name, body=body, **scope)
    return "patched"


async def delete_resource(
    delete: Callable[..., Any],
    name: str,
    namespace: str | None = None,
) -> bool:
    """
    Delete a resource by name; a missing resource counts as deleted.

    Returns:
        True if the API server accepted a delete, False if it was already gone
    """
    scope = {"namespace": namespace} if namespace else {}
    try:
        await call_api(delete, name=name, **scope)
    except ApiException as e:
        if e.status == 404:
            return False
        raise
    return True
