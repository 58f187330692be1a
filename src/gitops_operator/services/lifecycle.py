"""
Finalizer-guarded lifecycle of ArgoCD instances.

An instance moves through Absent -> Creating -> Ready/Degraded -> Deleting.
Creation adds the deletion finalizer before anything else is written.
Every steady-state pass recomputes namespace membership from labels,
grants or revokes namespace RBAC for the difference, syncs the cluster
secret, then runs the static reconciler list.

Deletion takes two passes. The first removes everything namespaced (in
reverse reconciler order), empties the cluster secret and strips namespace
labels, then records ``status.deletionStage=ClusterResources`` and asks for a
requeue. The second removes cluster-scoped RBAC and only then drops the
finalizer. A failure anywhere leaves the finalizer in place.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import pydantic
from kubernetes.client.rest import ApiException

from ..constants import (
    ARGOCD_GROUP,
    ARGOCD_PLURAL,
    ARGOCD_VERSION,
    COMPONENT_RUNNING,
    COMPONENT_UNKNOWN,
    DELETION_FINALIZER,
    DELETION_STAGE_CLUSTER,
    ERROR_FINALIZER_REMOVAL,
    PHASE_DEGRADED,
    PHASE_READY,
)
from ..errors import FinalizerError, ValidationError
from ..models import ArgoCDInstance, ArgoCDSpec
from ..observability.metrics import metrics_collector
from ..observability.tracing import get_tracer
from ..settings import settings
from ..utils.kubernetes import KubernetesApis, api_error, call_api
from .base_reconciler import BaseReconciler, StatusProtocol
from .capabilities import ClusterCapabilities
from .cluster_secret import ClusterSecretSynchronizer
from .components import ResourceReconciler, default_steps
from .namespaces import NamespaceTracker
from .rbac import RBACPropagator

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass
class ReconcileContext:
    """Everything a per-resource reconciler may read during one pass."""

    instance: ArgoCDInstance
    apis: KubernetesApis
    capabilities: ClusterCapabilities
    cluster_scoped: bool = False
    managed_namespaces: set[str] = field(default_factory=set)
    source_namespaces: set[str] = field(default_factory=set)
    entered_namespaces: set[str] = field(default_factory=set)
    left_namespaces: set[str] = field(default_factory=set)
    component_status: dict[str, str] = field(default_factory=dict)

    def not_running(self) -> list[str]:
        """Enabled components that did not report Running."""
        return [
            component
            for component in self.instance.spec.enabled_components()
            if self.component_status.get(component, COMPONENT_UNKNOWN)
            != COMPONENT_RUNNING
        ]

    @property
    def phase(self) -> str:
        return PHASE_DEGRADED if self.not_running() else PHASE_READY


class InstanceLifecycle(BaseReconciler):
    """
    Drives ArgoCD instances through creation, steady state and deletion.

    The last committed managed and source namespace sets are kept per
    instance so collaborators can read them between passes.
    """

    resource_type = "argocd"

    def __init__(
        self,
        apis: KubernetesApis | None = None,
        steps: list[ResourceReconciler] | None = None,
    ):
        super().__init__(apis)
        self.steps = list(steps) if steps is not None else default_steps()
        self._managed: dict[tuple[str, str], set[str]] = {}
        self._source: dict[tuple[str, str], set[str]] = {}

    @property
    def tracker(self) -> NamespaceTracker:
        return NamespaceTracker(self.kubernetes_apis)

    @property
    def rbac(self) -> RBACPropagator:
        return RBACPropagator(self.kubernetes_apis)

    @property
    def secrets(self) -> ClusterSecretSynchronizer:
        return ClusterSecretSynchronizer(self.kubernetes_apis)

    def managed_namespaces(self, key: tuple[str, str]) -> set[str]:
        """Managed namespaces committed by the last successful pass."""
        return set(self._managed.get(key, set()))

    def source_namespaces(self, key: tuple[str, str]) -> set[str]:
        return set(self._source.get(key, set()))

    @staticmethod
    def has_finalizer(instance: ArgoCDInstance) -> bool:
        return instance.has_finalizer

    def forget(self, key: tuple[str, str]) -> None:
        self._managed.pop(key, None)
        self._source.pop(key, None)
        metrics_collector.clear_managed_namespaces(*key)

    # ------------------------------------------------------------------
    # Custom object access
    # ------------------------------------------------------------------

    def _object_scope(self, instance: ArgoCDInstance) -> dict[str, str]:
        return {
            "group": ARGOCD_GROUP,
            "version": ARGOCD_VERSION,
            "namespace": instance.namespace,
            "plural": ARGOCD_PLURAL,
            "name": instance.name,
        }

    async def _read_object(self, instance: ArgoCDInstance) -> dict[str, Any] | None:
        try:
            return await call_api(
                self.kubernetes_apis.custom.get_namespaced_custom_object,
                **self._object_scope(instance),
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise api_error(e, f"read ArgoCD {instance.namespace}/{instance.name}") from e

    @staticmethod
    def load_instance(body: dict[str, Any], lenient: bool = False) -> ArgoCDInstance:
        """
        Build the instance model from a kopf body.

        Args:
            body: Raw custom object
            lenient: Fall back to the default spec when validation fails,
                so deletion is never blocked by a spec that became invalid

        Raises:
            ValidationError: The instance spec does not validate (permanent)
            ValueError: The body has no spec at all
        """
        try:
            return ArgoCDInstance.from_body(body)
        except ValueError as e:
            # pydantic.ValidationError is a ValueError; a missing spec is too
            if not lenient:
                if isinstance(e, pydantic.ValidationError):
                    raise ValidationError(str(e), field="spec") from e
                raise
            metadata = body.get("metadata") or {}
            logger.warning(
                f"Unusable spec on {metadata.get('namespace')}/{metadata.get('name')}, "
                f"cleaning up with defaults: {e}"
            )
            return ArgoCDInstance.from_body({**body, "spec": ArgoCDSpec().model_dump()})

    async def ensure_finalizer(self, instance: ArgoCDInstance) -> bool:
        """
        Add the deletion finalizer through the API.

        The merge patch carries the observed resourceVersion, so it fails
        with a conflict instead of clobbering a concurrent finalizer change.

        Returns:
            True if the finalizer was added by this call
        """
        if instance.has_finalizer:
            return False

        finalizers = [*instance.finalizers, DELETION_FINALIZER]
        metadata: dict[str, Any] = {"finalizers": finalizers}
        if instance.resource_version:
            metadata["resourceVersion"] = instance.resource_version

        try:
            updated = await call_api(
                self.kubernetes_apis.custom.patch_namespaced_custom_object,
                body={"metadata": metadata},
                **self._object_scope(instance),
            )
        except ApiException as e:
            raise FinalizerError(
                f"Failed to add finalizer '{DELETION_FINALIZER}' to "
                f"'{instance.namespace}/{instance.name}': {e.reason}"
            ) from e

        instance.finalizers = finalizers
        instance.resource_version = (
            (updated or {}).get("metadata", {}).get("resourceVersion")
            or instance.resource_version
        )
        logger.info(
            f"Added finalizer {DELETION_FINALIZER} to {instance.namespace}/{instance.name}"
        )
        return True

    async def remove_finalizer(self, instance: ArgoCDInstance) -> bool:
        """
        Drop the deletion finalizer from a fresh copy of the object.

        Returns:
            True if the finalizer was removed by this call

        Raises:
            FinalizerError: The patch was rejected; the object stays
        """
        try:
            current = await self._read_object(instance)
        except Exception as e:
            raise FinalizerError(
                ERROR_FINALIZER_REMOVAL.format(
                    DELETION_FINALIZER, instance.namespace, instance.name
                )
                + f": {e}"
            ) from e
        if current is None:
            return False

        metadata = current.get("metadata", {})
        finalizers = list(metadata.get("finalizers") or [])
        if DELETION_FINALIZER not in finalizers:
            return False
        finalizers.remove(DELETION_FINALIZER)

        try:
            await call_api(
                self.kubernetes_apis.custom.patch_namespaced_custom_object,
                body={
                    "metadata": {
                        "finalizers": finalizers,
                        "resourceVersion": metadata.get("resourceVersion"),
                    }
                },
                **self._object_scope(instance),
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise FinalizerError(
                ERROR_FINALIZER_REMOVAL.format(
                    DELETION_FINALIZER, instance.namespace, instance.name
                )
                + f": {e.reason}"
            ) from e

        instance.finalizers = finalizers
        logger.info(
            f"Removed finalizer {DELETION_FINALIZER} from "
            f"{instance.namespace}/{instance.name}"
        )
        return True

    async def _record_deletion_stage(self, instance: ArgoCDInstance, stage: str) -> None:
        try:
            await call_api(
                self.kubernetes_apis.custom.patch_namespaced_custom_object_status,
                body={"status": {"deletionStage": stage}},
                **self._object_scope(instance),
            )
        except ApiException as e:
            raise api_error(
                e, f"record deletion stage of {instance.namespace}/{instance.name}"
            ) from e
        instance.status["deletionStage"] = stage

    # ------------------------------------------------------------------
    # Steady state
    # ------------------------------------------------------------------

    def new_context(
        self, instance: ArgoCDInstance, capabilities: ClusterCapabilities
    ) -> ReconcileContext:
        return ReconcileContext(
            instance=instance,
            apis=self.kubernetes_apis,
            capabilities=capabilities,
            cluster_scoped=settings.is_cluster_config_namespace(instance.namespace),
        )

    async def reconcile_instance(
        self, instance: ArgoCDInstance, capabilities: ClusterCapabilities
    ) -> ReconcileContext:
        """
        Run one steady-state pass.

        Any error aborts the pass; changes already applied stay in place and
        the next pass recomputes everything from the cluster.
        """
        ctx = self.new_context(instance, capabilities)
        tracker, rbac = self.tracker, self.rbac

        await tracker.ensure_managed_label(instance)
        ctx.managed_namespaces = await tracker.compute_managed_namespaces(instance)
        ctx.source_namespaces = await tracker.compute_source_namespaces(
            instance, ctx.cluster_scoped
        )

        complete = await rbac.list_rbac_namespaces(instance)
        partial = await rbac.list_partial_rbac_namespaces(instance)
        ctx.entered_namespaces = ctx.managed_namespaces - complete
        ctx.left_namespaces = partial - ctx.managed_namespaces

        # Complete pairs are re-synced too so hand-edited rules get repaired
        for namespace in sorted(ctx.managed_namespaces):
            await rbac.sync_rbac_for_namespace(instance, namespace, True)
        for namespace in sorted(ctx.left_namespaces):
            await rbac.sync_rbac_for_namespace(instance, namespace, False)

        await self.secrets.sync_cluster_secret(instance, ctx.managed_namespaces)

        for step in self.steps:
            with tracer.start_as_current_span(f"reconcile.{step.name}"):
                logger.debug(
                    f"Running step {step.name} for {instance.namespace}/{instance.name}",
                    extra={"step": step.name},
                )
                await step.reconcile(ctx)

        self._managed[instance.key] = set(ctx.managed_namespaces)
        self._source[instance.key] = set(ctx.source_namespaces)
        metrics_collector.set_managed_namespaces(
            instance.namespace, instance.name, len(ctx.managed_namespaces)
        )
        return ctx

    async def do_reconcile(
        self,
        spec: dict[str, Any],
        name: str,
        namespace: str,
        status: StatusProtocol,
        **kwargs,
    ) -> dict[str, Any]:
        body = kwargs.get("body") or {
            "metadata": kwargs.get("meta") or {"name": name, "namespace": namespace},
            "spec": spec,
        }
        capabilities = kwargs.get("capabilities") or ClusterCapabilities()

        instance = self.load_instance(body)
        await self.ensure_finalizer(instance)
        ctx = await self.reconcile_instance(instance, capabilities)

        result: dict[str, Any] = {
            "phase": ctx.phase,
            "managedNamespaces": sorted(ctx.managed_namespaces),
            "sourceNamespaces": sorted(ctx.source_namespaces),
            "components": {
                component: ctx.component_status.get(component, COMPONENT_UNKNOWN)
                for component in instance.spec.enabled_components()
            },
        }
        not_running = ctx.not_running()
        if not_running:
            result["message"] = f"Components not running: {', '.join(not_running)}"
        else:
            result["message"] = "All components are running"
        return result

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def delete_namespaced_resources(self, ctx: ReconcileContext) -> None:
        """First deletion pass: everything that is not cluster-scoped."""
        instance = ctx.instance
        tracker, rbac = self.tracker, self.rbac

        ctx.managed_namespaces = await tracker.compute_managed_namespaces(instance)
        rbac_namespaces = ctx.managed_namespaces | await rbac.list_partial_rbac_namespaces(
            instance
        )

        for step in reversed(self.steps):
            self.log_cleanup_step(
                f"Deleting {step.name}", self.resource_type, instance.name, instance.namespace
            )
            if step.cluster_scoped:
                # Namespace RBAC is torn down at the cluster RBAC slot; the
                # cluster-scoped objects themselves wait for the second pass
                await rbac.revoke_namespaces(instance, rbac_namespaces)
                continue
            await step.delete(ctx)

        await self.secrets.sync_cluster_secret(instance, set())
        await tracker.remove_managed_by_labels(instance, ctx.managed_namespaces)
        await tracker.remove_source_labels(instance)

    async def delete_cluster_resources(self, ctx: ReconcileContext) -> None:
        """Second deletion pass: cluster-scoped objects of every cluster-scoped step."""
        for step in self.steps:
            if step.cluster_scoped:
                self.log_cleanup_step(
                    f"Deleting {step.name}",
                    self.resource_type,
                    ctx.instance.name,
                    ctx.instance.namespace,
                )
                await step.delete(ctx)

    async def delete_instance(
        self, instance: ArgoCDInstance, capabilities: ClusterCapabilities
    ) -> bool:
        """
        Run the next deletion pass.

        Returns:
            True once the finalizer is gone, False when a requeue is needed
        """
        current = await self._read_object(instance)
        if current is None:
            self.forget(instance.key)
            return True
        finalizers = (current.get("metadata") or {}).get("finalizers") or []
        if DELETION_FINALIZER not in finalizers:
            self.forget(instance.key)
            return True

        ctx = self.new_context(instance, capabilities)
        stage = (current.get("status") or {}).get("deletionStage")

        if stage != DELETION_STAGE_CLUSTER:
            await self.delete_namespaced_resources(ctx)
            await self._record_deletion_stage(instance, DELETION_STAGE_CLUSTER)
            logger.info(
                f"Namespaced resources of {instance.namespace}/{instance.name} removed, "
                f"cluster-scoped cleanup requeued"
            )
            return False

        await self.delete_cluster_resources(ctx)
        await self.remove_finalizer(instance)
        self.forget(instance.key)
        return True

    async def do_cleanup(
        self,
        spec: dict[str, Any],
        name: str,
        namespace: str,
        status: StatusProtocol,
        **kwargs,
    ) -> bool:
        body = kwargs.get("body") or {
            "metadata": kwargs.get("meta") or {"name": name, "namespace": namespace},
            "spec": spec,
        }
        capabilities = kwargs.get("capabilities") or ClusterCapabilities()
        instance = self.load_instance(body, lenient=True)
        return await self.delete_instance(instance, capabilities)
