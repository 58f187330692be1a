"""
RBAC propagation into managed namespaces.

Every namespace managed by an instance receives one Role and one RoleBinding
per RBAC component, named ``<instance>-<component>`` and bound to the
component's ServiceAccount in the instance namespace. The objects live
outside the instance namespace, so they carry no owner reference. They are
found again through their labels, which also makes the set of namespaces
holding access recoverable after an operator restart.
"""

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..constants import (
    COMPONENT_APPLICATION_CONTROLLER,
    COMPONENT_LABEL,
    COMPONENT_SERVER,
    INSTANCE_NAME_LABEL,
    INSTANCE_NAMESPACE_LABEL,
    PART_OF_LABEL,
    PART_OF_VALUE,
    RBAC_COMPONENTS,
)
from ..models import ArgoCDInstance
from ..observability.logging import OperatorLogger
from ..observability.metrics import metrics_collector
from ..utils.kubernetes import (
    KubernetesApis,
    api_error,
    call_api,
    label_selector,
    to_dict,
)

logger = logging.getLogger(__name__)

RBAC_API_GROUP = "rbac.authorization.k8s.io"


def component_rules(component: str) -> list[client.V1PolicyRule]:
    """Namespace permissions granted to a component."""
    if component == COMPONENT_APPLICATION_CONTROLLER:
        return [client.V1PolicyRule(api_groups=["*"], resources=["*"], verbs=["*"])]
    if component == COMPONENT_SERVER:
        return [
            client.V1PolicyRule(
                api_groups=["*"], resources=["*"], verbs=["get", "delete", "patch"]
            ),
            client.V1PolicyRule(
                api_groups=[""], resources=["events"], verbs=["create", "list"]
            ),
        ]
    raise ValueError(f"No namespace RBAC defined for component {component}")


def rbac_name(instance_name: str, component: str) -> str:
    return f"{instance_name}-{component}"


def owner_labels(owner_namespace: str, instance_name: str | None = None) -> dict[str, str]:
    """Labels shared by every Role/RoleBinding written for an owner."""
    labels = {
        PART_OF_LABEL: PART_OF_VALUE,
        INSTANCE_NAMESPACE_LABEL: owner_namespace,
    }
    if instance_name:
        labels[INSTANCE_NAME_LABEL] = instance_name
    return labels


def rbac_labels(instance: ArgoCDInstance, component: str) -> dict[str, str]:
    labels = owner_labels(instance.namespace, instance.name)
    labels[COMPONENT_LABEL] = component
    return labels


def desired_role(
    instance: ArgoCDInstance, namespace: str, component: str
) -> client.V1Role:
    return client.V1Role(
        api_version=f"{RBAC_API_GROUP}/v1",
        kind="Role",
        metadata=client.V1ObjectMeta(
            name=rbac_name(instance.name, component),
            namespace=namespace,
            labels=rbac_labels(instance, component),
        ),
        rules=component_rules(component),
    )


def desired_role_binding(
    instance: ArgoCDInstance, namespace: str, component: str
) -> client.V1RoleBinding:
    name = rbac_name(instance.name, component)
    return client.V1RoleBinding(
        api_version=f"{RBAC_API_GROUP}/v1",
        kind="RoleBinding",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=rbac_labels(instance, component),
        ),
        role_ref=client.V1RoleRef(api_group=RBAC_API_GROUP, kind="Role", name=name),
        subjects=[
            client.RbacV1Subject(
                kind="ServiceAccount", name=name, namespace=instance.namespace
            )
        ],
    )


def _labels_drifted(existing, desired) -> bool:
    current = existing.metadata.labels or {}
    return any(current.get(k) != v for k, v in desired.metadata.labels.items())


class RBACPropagator:
    """Grants and revokes an instance's access to individual namespaces."""

    def __init__(self, apis: KubernetesApis):
        self.apis = apis
        self.logger = OperatorLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Single-object operations
    # ------------------------------------------------------------------

    async def _ensure_role(self, desired: client.V1Role) -> str | None:
        name = desired.metadata.name
        namespace = desired.metadata.namespace
        rbac = self.apis.rbac
        try:
            existing = await call_api(
                rbac.read_namespaced_role, name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status != 404:
                raise api_error(e, f"read Role {namespace}/{name}") from e
            existing = None

        try:
            if existing is None:
                await call_api(
                    rbac.create_namespaced_role, namespace=namespace, body=desired
                )
                action = "create"
            elif to_dict(existing.rules) != to_dict(desired.rules) or _labels_drifted(
                existing, desired
            ):
                desired.metadata.resource_version = existing.metadata.resource_version
                await call_api(
                    rbac.replace_namespaced_role,
                    name=name,
                    namespace=namespace,
                    body=desired,
                )
                action = "update"
            else:
                return None
        except ApiException as e:
            raise api_error(e, f"write Role {namespace}/{name}") from e

        metrics_collector.record_rbac_operation("Role", action)
        return action

    async def _ensure_role_binding(self, desired: client.V1RoleBinding) -> str | None:
        name = desired.metadata.name
        namespace = desired.metadata.namespace
        rbac = self.apis.rbac
        try:
            existing = await call_api(
                rbac.read_namespaced_role_binding, name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status != 404:
                raise api_error(e, f"read RoleBinding {namespace}/{name}") from e
            existing = None

        try:
            if existing is not None and to_dict(existing.role_ref) != to_dict(
                desired.role_ref
            ):
                # roleRef is immutable; the binding has to be recreated
                await call_api(
                    rbac.delete_namespaced_role_binding, name=name, namespace=namespace
                )
                metrics_collector.record_rbac_operation("RoleBinding", "delete")
                existing = None

            if existing is None:
                await call_api(
                    rbac.create_namespaced_role_binding,
                    namespace=namespace,
                    body=desired,
                )
                action = "create"
            elif to_dict(existing.subjects) != to_dict(
                desired.subjects
            ) or _labels_drifted(existing, desired):
                desired.metadata.resource_version = existing.metadata.resource_version
                await call_api(
                    rbac.replace_namespaced_role_binding,
                    name=name,
                    namespace=namespace,
                    body=desired,
                )
                action = "update"
            else:
                return None
        except ApiException as e:
            raise api_error(e, f"write RoleBinding {namespace}/{name}") from e

        metrics_collector.record_rbac_operation("RoleBinding", action)
        return action

    async def _delete(self, kind: str, name: str, namespace: str) -> bool:
        rbac = self.apis.rbac
        delete = (
            rbac.delete_namespaced_role_binding
            if kind == "RoleBinding"
            else rbac.delete_namespaced_role
        )
        try:
            await call_api(delete, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise api_error(e, f"delete {kind} {namespace}/{name}") from e
        metrics_collector.record_rbac_operation(kind, "delete")
        return True

    # ------------------------------------------------------------------
    # Namespace-level operations
    # ------------------------------------------------------------------

    async def sync_rbac_for_namespace(
        self, instance: ArgoCDInstance, namespace: str, should_exist: bool
    ) -> None:
        """
        Grant or revoke the instance's access to one namespace.

        Grants write each component's Role before its RoleBinding; revokes
        delete each RoleBinding before its Role, so a binding never points at
        a missing Role for longer than one call. Safe to repeat.

        Args:
            instance: Instance whose components get access
            namespace: Target namespace
            should_exist: True to grant, False to revoke
        """
        changes: list[str] = []
        try:
            for component in RBAC_COMPONENTS:
                name = rbac_name(instance.name, component)
                if should_exist:
                    role_action = await self._ensure_role(
                        desired_role(instance, namespace, component)
                    )
                    binding_action = await self._ensure_role_binding(
                        desired_role_binding(instance, namespace, component)
                    )
                    changes += [
                        f"{action} {kind} {name}"
                        for kind, action in (
                            ("Role", role_action),
                            ("RoleBinding", binding_action),
                        )
                        if action
                    ]
                else:
                    if await self._delete("RoleBinding", name, namespace):
                        changes.append(f"delete RoleBinding {name}")
                    if await self._delete("Role", name, namespace):
                        changes.append(f"delete Role {name}")
        except Exception as e:
            self.logger.log_rbac_audit(
                operation="grant" if should_exist else "revoke",
                owner_namespace=instance.namespace,
                target_namespace=namespace,
                resource_name=instance.name,
                success=False,
                details={"changes": changes, "error": str(e)},
            )
            raise

        if changes:
            self.logger.log_rbac_audit(
                operation="grant" if should_exist else "revoke",
                owner_namespace=instance.namespace,
                target_namespace=namespace,
                resource_name=instance.name,
                success=True,
                details={"changes": changes},
            )

    async def _namespaces_by_component(
        self, list_func, selector: str, what: str
    ) -> dict[str, set[str]]:
        try:
            result = await call_api(list_func, label_selector=selector)
        except ApiException as e:
            raise api_error(e, f"list {what}") from e

        found: dict[str, set[str]] = {}
        for item in result.items:
            component = (item.metadata.labels or {}).get(COMPONENT_LABEL)
            found.setdefault(item.metadata.namespace, set()).add(component)
        return found

    async def _rbac_inventory(
        self, instance: ArgoCDInstance
    ) -> tuple[dict[str, set[str]], dict[str, set[str]]]:
        selector = label_selector(owner_labels(instance.namespace, instance.name))
        roles = await self._namespaces_by_component(
            self.apis.rbac.list_role_for_all_namespaces, selector, "Roles"
        )
        bindings = await self._namespaces_by_component(
            self.apis.rbac.list_role_binding_for_all_namespaces,
            selector,
            "RoleBindings",
        )
        return roles, bindings

    async def list_rbac_namespaces(self, instance: ArgoCDInstance) -> set[str]:
        """Namespaces holding every Role and RoleBinding of the instance."""
        roles, bindings = await self._rbac_inventory(instance)
        required = set(RBAC_COMPONENTS)
        return {
            namespace
            for namespace, components in roles.items()
            if required <= components and required <= bindings.get(namespace, set())
        }

    async def list_partial_rbac_namespaces(self, instance: ArgoCDInstance) -> set[str]:
        """Namespaces holding any Role or RoleBinding of the instance."""
        roles, bindings = await self._rbac_inventory(instance)
        return set(roles) | set(bindings)

    async def delete_rbac_for_owner(
        self,
        owner_namespace: str,
        namespace: str,
        instance_name: str | None = None,
    ) -> int:
        """
        Remove every Role/RoleBinding an owner holds in one namespace.

        Used by the namespace watch when a namespace stops pointing at an
        owner, so it selects by labels instead of instance spec.

        Args:
            owner_namespace: Namespace of the owning instance(s)
            namespace: Namespace to clean
            instance_name: Restrict to one instance (default: all in owner_namespace)

        Returns:
            Number of objects deleted
        """
        selector = label_selector(owner_labels(owner_namespace, instance_name))
        rbac = self.apis.rbac
        try:
            bindings = await call_api(
                rbac.list_namespaced_role_binding,
                namespace=namespace,
                label_selector=selector,
            )
            roles = await call_api(
                rbac.list_namespaced_role, namespace=namespace, label_selector=selector
            )
        except ApiException as e:
            if e.status == 404:
                return 0
            raise api_error(e, f"list RBAC of {owner_namespace} in {namespace}") from e

        deleted = 0
        for item in bindings.items:
            if await self._delete("RoleBinding", item.metadata.name, namespace):
                deleted += 1
        for item in roles.items:
            if await self._delete("Role", item.metadata.name, namespace):
                deleted += 1

        if deleted:
            self.logger.log_rbac_audit(
                operation="revoke",
                owner_namespace=owner_namespace,
                target_namespace=namespace,
                resource_name=instance_name or "*",
                success=True,
                details={"deleted": deleted},
            )
        return deleted

    async def revoke_namespaces(
        self, instance: ArgoCDInstance, namespaces: set[str]
    ) -> None:
        """
        Remove the instance's access from many namespaces during deletion.

        All RoleBindings go first, then all Roles, so no subject is left
        bound to a half-removed permission set if the pass is interrupted.
        """
        for namespace in sorted(namespaces):
            for component in RBAC_COMPONENTS:
                await self._delete(
                    "RoleBinding", rbac_name(instance.name, component), namespace
                )
        for namespace in sorted(namespaces):
            for component in RBAC_COMPONENTS:
                await self._delete("Role", rbac_name(instance.name, component), namespace)

        if namespaces:
            self.logger.info(
                f"Revoked access of {instance.namespace}/{instance.name} "
                f"from {len(namespaces)} namespaces",
                owner_namespace=instance.namespace,
                managed_namespaces=sorted(namespaces),
            )
