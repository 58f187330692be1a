"""
Namespace membership tracking for ArgoCD instances.

Two label back-references tie namespaces to an instance:

- ``argocd.argoproj.io/managed-by=<instance namespace>`` marks a namespace
  the instance deploys into. Users add it; the operator adds it to the
  instance's own namespace and strips it on instance deletion.
- ``argocd.argoproj.io/managed-by-cluster-argocd=<instance namespace>`` marks
  a namespace applications may be sourced from. The operator owns this label
  completely and keeps it equal to ``spec.sourceNamespaces``.

The labels on disk are the source of truth. Nothing here caches membership
across passes, so an operator restart recomputes the same sets.
"""

import logging

from kubernetes.client.rest import ApiException

from ..constants import MANAGED_BY_LABEL, SOURCE_NAMESPACE_LABEL
from ..models import ArgoCDInstance
from ..observability.logging import OperatorLogger
from ..settings import settings
from ..utils.kubernetes import KubernetesApis, api_error, call_api, label_selector

logger = logging.getLogger(__name__)


class NamespaceTracker:
    """Computes and persists the managed and source namespace sets."""

    def __init__(self, apis: KubernetesApis):
        self.apis = apis
        self.logger = OperatorLogger(self.__class__.__name__)

    async def _list_labeled(self, label: str, value: str) -> set[str]:
        try:
            result = await call_api(
                self.apis.core.list_namespace,
                label_selector=label_selector({label: value}),
            )
        except ApiException as e:
            raise api_error(e, f"list namespaces labeled {label}={value}") from e
        return {ns.metadata.name for ns in result.items}

    async def _write_label(
        self,
        namespace: str,
        label: str,
        value: str | None,
        only_if: str | None = None,
    ) -> bool:
        """
        Set or remove one label with read-modify-replace.

        The replace carries the resourceVersion that was read, so a concurrent
        writer makes this call fail with a conflict instead of being
        overwritten.

        Args:
            namespace: Namespace to label
            label: Label key
            value: New value, None removes the label
            only_if: Only write when the current value equals this

        Returns:
            True if the namespace was modified
        """
        try:
            ns = await call_api(self.apis.core.read_namespace, name=namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise api_error(e, f"read namespace {namespace}") from e

        labels = dict(ns.metadata.labels or {})
        current = labels.get(label)
        if only_if is not None and current != only_if:
            return False
        if current == value:
            return False

        if value is None:
            labels.pop(label, None)
        else:
            labels[label] = value
        ns.metadata.labels = labels

        try:
            await call_api(self.apis.core.replace_namespace, name=namespace, body=ns)
        except ApiException as e:
            if e.status == 404:
                return False
            raise api_error(e, f"update labels of namespace {namespace}") from e

        logger.debug(
            f"Namespace {namespace}: label {label} "
            f"{'removed' if value is None else f'set to {value}'}"
        )
        return True

    async def compute_managed_namespaces(self, instance: ArgoCDInstance) -> set[str]:
        """All namespaces labeled as managed by the instance, plus its own."""
        managed = await self._list_labeled(MANAGED_BY_LABEL, instance.namespace)
        managed.add(instance.namespace)
        return managed

    async def ensure_managed_label(self, instance: ArgoCDInstance) -> bool:
        """Label the instance's own namespace as managed by itself."""
        return await self._write_label(
            instance.namespace, MANAGED_BY_LABEL, instance.namespace
        )

    async def remove_managed_by_labels(
        self, instance: ArgoCDInstance, namespaces: set[str]
    ) -> list[str]:
        """
        Strip the managed-by label from namespaces that still point at the instance.

        Returns:
            Sorted names of the namespaces that were modified
        """
        removed = []
        for namespace in sorted(namespaces):
            if await self._write_label(
                namespace, MANAGED_BY_LABEL, None, only_if=instance.namespace
            ):
                removed.append(namespace)
        if removed:
            self.logger.info(
                f"Removed managed-by label from {len(removed)} namespaces",
                owner_namespace=instance.namespace,
                managed_namespaces=removed,
            )
        return removed

    async def _existing_namespace_labels(self, namespace: str) -> dict[str, str] | None:
        try:
            ns = await call_api(self.apis.core.read_namespace, name=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise api_error(e, f"read namespace {namespace}") from e
        return dict(ns.metadata.labels or {})

    async def compute_source_namespaces(
        self, instance: ArgoCDInstance, cluster_scoped: bool | None = None
    ) -> set[str]:
        """
        Resolve ``spec.sourceNamespaces`` and label the result on disk.

        Only cluster-scoped instances may source applications from other
        namespaces; a namespace-scoped instance resolves to the empty set and
        loses any labels it held. Declared namespaces that do not exist are
        dropped. A namespace already claimed by another instance is skipped.

        Args:
            instance: The instance being reconciled
            cluster_scoped: Override for the scoping mode (default: from settings)

        Returns:
            The namespaces now labeled as sources for the instance
        """
        if cluster_scoped is None:
            cluster_scoped = settings.is_cluster_config_namespace(instance.namespace)

        previous = await self._list_labeled(SOURCE_NAMESPACE_LABEL, instance.namespace)

        desired: set[str] = set()
        if cluster_scoped:
            for namespace in instance.spec.source_namespaces:
                labels = await self._existing_namespace_labels(namespace)
                if labels is None:
                    logger.debug(f"Source namespace {namespace} does not exist, skipping")
                    continue
                owner = labels.get(SOURCE_NAMESPACE_LABEL)
                if owner and owner != instance.namespace:
                    logger.warning(
                        f"Namespace {namespace} is already a source namespace of the "
                        f"instance in {owner}, skipping"
                    )
                    continue
                desired.add(namespace)
        elif instance.spec.source_namespaces:
            logger.warning(
                f"Instance {instance.namespace}/{instance.name} declares source "
                f"namespaces but is not cluster-scoped, ignoring them"
            )

        for namespace in sorted(desired - previous):
            await self._write_label(
                namespace, SOURCE_NAMESPACE_LABEL, instance.namespace
            )
        for namespace in sorted(previous - desired):
            await self._write_label(
                namespace, SOURCE_NAMESPACE_LABEL, None, only_if=instance.namespace
            )

        return desired

    async def remove_source_labels(self, instance: ArgoCDInstance) -> list[str]:
        """Strip the source label from every namespace pointing at the instance."""
        previous = await self._list_labeled(SOURCE_NAMESPACE_LABEL, instance.namespace)
        removed = []
        for namespace in sorted(previous):
            if await self._write_label(
                namespace, SOURCE_NAMESPACE_LABEL, None, only_if=instance.namespace
            ):
                removed.append(namespace)
        return removed
