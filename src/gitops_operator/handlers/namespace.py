"""
Namespace handlers - Fast-path cleanup when a namespace stops being managed.

When the managed-by label of a namespace is removed or changed, or a labeled
namespace is deleted, the previous owner's RBAC in that namespace is removed
and the namespace is dropped from the owner's cluster secret right away,
without waiting for the next instance reconcile. Afterwards both the old and
the new owner instances are nudged into a full reconcile.

Nothing here grants access; only the instance reconcile does that.
"""

import logging
from datetime import UTC, datetime
from typing import Any

import kopf
from kubernetes.client.rest import ApiException

from gitops_operator.constants import (
    ARGOCD_GROUP,
    ARGOCD_PLURAL,
    ARGOCD_VERSION,
    NAMESPACE_EVENT_ANNOTATION,
)
from gitops_operator.errors import OperatorError
from gitops_operator.observability.metrics import metrics_collector
from gitops_operator.observability.tracing import traced_handler
from gitops_operator.services.cluster_secret import ClusterSecretSynchronizer
from gitops_operator.services.namespace_events import NamespaceTransition
from gitops_operator.services.rbac import RBACPropagator
from gitops_operator.utils.handler_logging import log_handler_entry
from gitops_operator.utils.kubernetes import KubernetesApis, api_error, call_api

logger = logging.getLogger(__name__)


async def list_instance_names(apis: KubernetesApis, namespace: str) -> list[str]:
    """Names of the ArgoCD instances in a namespace."""
    try:
        result = await call_api(
            apis.custom.list_namespaced_custom_object,
            group=ARGOCD_GROUP,
            version=ARGOCD_VERSION,
            namespace=namespace,
            plural=ARGOCD_PLURAL,
        )
    except ApiException as e:
        if e.status == 404:
            return []
        raise api_error(e, f"list ArgoCD instances in {namespace}") from e
    return sorted(item["metadata"]["name"] for item in result.get("items", []))


async def request_reconcile(apis: KubernetesApis, namespace: str, name: str) -> None:
    """Touch an instance annotation so kopf runs its update handler."""
    body = {
        "metadata": {
            "annotations": {NAMESPACE_EVENT_ANNOTATION: datetime.now(UTC).isoformat()}
        }
    }
    try:
        await call_api(
            apis.custom.patch_namespaced_custom_object,
            group=ARGOCD_GROUP,
            version=ARGOCD_VERSION,
            namespace=namespace,
            plural=ARGOCD_PLURAL,
            name=name,
            body=body,
        )
    except ApiException as e:
        if e.status == 404:
            return
        raise api_error(e, f"annotate ArgoCD {namespace}/{name}") from e


async def cleanup_namespace(memo: kopf.Memo, transition: NamespaceTransition) -> int:
    """
    Revoke the previous owner's access to a namespace.

    Each instance of the previous owner namespace is cleaned under its lock.
    Failures are logged and counted; the next full reconcile converges.

    Returns:
        Number of instances cleaned successfully
    """
    apis: KubernetesApis = memo.apis
    owner = transition.previous_owner
    namespace = transition.namespace
    reason = "deleted" if transition.deleted else "relabeled"

    rbac = RBACPropagator(apis)
    secrets = ClusterSecretSynchronizer(apis)

    try:
        instances = await list_instance_names(apis, owner)
    except OperatorError as e:
        logger.warning(f"Cannot list instances of {owner} for namespace cleanup: {e}")
        metrics_collector.record_namespace_cleanup(owner, reason, success=False)
        return 0

    if not instances:
        # The owner instance is gone; remove whatever still points at it
        try:
            await rbac.delete_rbac_for_owner(owner, namespace)
        except OperatorError as e:
            logger.warning(f"Orphaned RBAC cleanup in {namespace} failed: {e}")
            metrics_collector.record_namespace_cleanup(owner, reason, success=False)
            return 0
        metrics_collector.record_namespace_cleanup(owner, reason, success=True)
        return 0

    cleaned = 0
    for instance_name in instances:
        try:
            async with memo.locks.hold((owner, instance_name)):
                await rbac.delete_rbac_for_owner(owner, namespace, instance_name)
                await secrets.remove_namespace(owner, instance_name, namespace)
        except OperatorError as e:
            logger.warning(
                f"Fast-path cleanup of {namespace} for {owner}/{instance_name} "
                f"failed, leaving it to the next reconcile: {e}"
            )
            metrics_collector.record_namespace_cleanup(owner, reason, success=False)
            continue
        metrics_collector.record_namespace_cleanup(owner, reason, success=True)
        cleaned += 1

    logger.info(
        f"Namespace {namespace} no longer managed by {owner}; "
        f"cleaned {cleaned}/{len(instances)} instances",
        extra={"namespace": namespace, "owner_namespace": owner},
    )
    return cleaned


async def enqueue_owners(memo: kopf.Memo, transition: NamespaceTransition) -> None:
    for owner in transition.affected_owners:
        try:
            for instance_name in await list_instance_names(memo.apis, owner):
                await request_reconcile(memo.apis, owner, instance_name)
        except OperatorError as e:
            logger.warning(f"Could not request reconcile of instances in {owner}: {e}")


@kopf.on.event("", "v1", "namespaces")
@traced_handler("namespace_event", resource_type="namespace")
async def namespace_event(
    event: dict[str, Any],
    name: str,
    labels: dict[str, Any],
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Watch predicate for namespace label changes and deletions.

    Raw watch events do not carry the previous object, so the event filter
    in memo remembers the last managed-by value of every namespace.
    """
    transition = memo.namespace_filter.observe(event.get("type"), name, labels)
    if transition is None:
        return

    log_handler_entry(
        "event",
        "namespace",
        name,
        None,
        {
            "previous_owner": transition.previous_owner,
            "current_owner": transition.current_owner,
            "deleted": transition.deleted,
        },
    )

    # The owner's own namespace is always managed; the next reconcile relabels it
    if transition.namespace != transition.previous_owner or transition.deleted:
        await cleanup_namespace(memo, transition)
    await enqueue_owners(memo, transition)
