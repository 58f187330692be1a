"""
ArgoCD instance handlers - Drives instances through their lifecycle.

This module wires kopf events for ``argocds.argoproj.io`` to the instance
lifecycle service:
- create/resume/update run a full steady-state pass
- a periodic timer re-runs the pass so label changes made while the operator
  was not watching still converge
- delete runs the two-pass cleanup and keeps the object until it finishes

Every pass runs under the instance's lock, shared with the namespace watch.
"""

import logging
from collections.abc import MutableMapping
from typing import Any

import kopf

from gitops_operator.constants import ARGOCD_GROUP, ARGOCD_PLURAL, ARGOCD_VERSION
from gitops_operator.observability.tracing import set_resource_context, traced_handler
from gitops_operator.settings import settings
from gitops_operator.utils.handler_logging import log_handler_entry

logger = logging.getLogger(__name__)


class StatusWrapper(MutableMapping[str, Any]):
    """Safe mutable wrapper around kopf patch.status for both item & attribute access."""

    def __init__(self, patch_status: Any):
        object.__setattr__(self, "_patch_status", patch_status)

    def __getitem__(self, key: str) -> Any:
        return self._patch_status[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._patch_status[key] = value

    def __delitem__(self, key: str) -> None:
        if key in self._patch_status:
            del self._patch_status[key]

    def __iter__(self):  # pragma: no cover - trivial
        return iter(self._patch_status)

    def __len__(self) -> int:  # pragma: no cover - trivial
        return len(self._patch_status)

    def __getattr__(self, item: str) -> Any:
        if item.startswith("_"):
            raise AttributeError(item)
        try:
            return self._patch_status[item]
        except KeyError:
            return None

    def __setattr__(self, key: str, value: Any) -> None:
        if key.startswith("_"):
            object.__setattr__(self, key, value)
        else:
            self._patch_status[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        return self._patch_status.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._patch_status)


async def _run_reconcile(
    handler_type: str,
    memo: kopf.Memo,
    spec: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    body: Any,
    meta: Any,
) -> None:
    log_handler_entry(handler_type, "argocd", name, namespace)
    set_resource_context(namespace=namespace, name=name, kind="ArgoCD")

    async with memo.locks.hold((namespace, name)):
        await memo.lifecycle.reconcile(
            spec=spec,
            name=name,
            namespace=namespace,
            status=StatusWrapper(patch.status),
            body=body,
            meta=meta,
            capabilities=memo.capability_probe.snapshot,
        )


@kopf.on.create(ARGOCD_GROUP, ARGOCD_VERSION, ARGOCD_PLURAL)
@kopf.on.resume(ARGOCD_GROUP, ARGOCD_VERSION, ARGOCD_PLURAL)
@traced_handler("ensure_argocd")
async def ensure_argocd(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    body: Any,
    meta: Any,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Ensure an ArgoCD instance is fully provisioned.

    The deletion finalizer is added before anything else is created, so a
    crash half way through creation still leaves a cleanup pass to run.

    Returns:
        None to avoid kopf creating status subpaths
    """
    await _run_reconcile("create", memo, spec, name, namespace, patch, body, meta)
    return None


@kopf.on.update(ARGOCD_GROUP, ARGOCD_VERSION, ARGOCD_PLURAL)
@traced_handler("update_argocd")
async def update_argocd(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    body: Any,
    meta: Any,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Handle spec, label and annotation changes of an ArgoCD instance.

    The namespace watch also lands here: it touches an annotation on every
    instance whose managed namespaces changed.
    """
    await _run_reconcile("update", memo, spec, name, namespace, patch, body, meta)
    return None


@kopf.on.delete(ARGOCD_GROUP, ARGOCD_VERSION, ARGOCD_PLURAL)
@traced_handler("delete_argocd")
async def delete_argocd(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    body: Any,
    meta: Any,
    memo: kopf.Memo,
    retry: int = 0,
    **kwargs: Any,
) -> None:
    """
    Handle ArgoCD instance deletion with proper finalizer management.

    Namespaced resources go in the first pass, cluster-scoped RBAC in the
    second. Between the passes the handler asks kopf for a short requeue. The
    finalizer is only dropped once everything is gone; any error keeps the
    object and kopf retries with the error's delay.
    """
    log_handler_entry("delete", "argocd", name, namespace, {"retry_count": retry})
    set_resource_context(namespace=namespace, name=name, kind="ArgoCD")

    key = (namespace, name)
    async with memo.locks.hold(key):
        finished = await memo.lifecycle.cleanup(
            spec=spec,
            name=name,
            namespace=namespace,
            status=StatusWrapper(patch.status),
            body=body,
            meta=meta,
            capabilities=memo.capability_probe.snapshot,
        )

    if not finished:
        raise kopf.TemporaryError(
            f"Namespaced resources of {namespace}/{name} removed, "
            f"cluster-scoped cleanup pending",
            delay=settings.deletion_requeue_delay_seconds,
        )

    memo.locks.discard(key)
    logger.info(f"Successfully deleted ArgoCD instance {namespace}/{name}")


@kopf.timer(
    ARGOCD_GROUP,
    ARGOCD_VERSION,
    ARGOCD_PLURAL,
    interval=settings.resync_interval_seconds,
    initial_delay=settings.resync_interval_seconds,
)
@traced_handler("resync_argocd")
async def resync_argocd(
    spec: dict[str, Any],
    name: str,
    namespace: str,
    patch: kopf.Patch,
    body: Any,
    meta: Any,
    memo: kopf.Memo,
    **kwargs: Any,
) -> None:
    """
    Periodic full reconcile of an ArgoCD instance.

    Skipped once the instance is being deleted; the delete handler owns it
    from then on.
    """
    if meta.get("deletionTimestamp"):
        return

    try:
        await _run_reconcile("timer", memo, spec, name, namespace, patch, body, meta)
    except kopf.TemporaryError as e:
        # The next tick retries; a timer must not spin on its own backoff
        logger.warning(f"Periodic reconcile of {namespace}/{name} failed: {e}")
