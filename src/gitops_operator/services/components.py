"""
Per-resource reconcilers driven by the instance lifecycle.

Each reconciler owns one kind of object and exposes ``reconcile(ctx)`` and
``delete(ctx)``. The lifecycle runs them as a static ordered list (see
``default_steps``) and walks the list backwards on deletion. None of them
carries shared logic beyond that interface: create when absent, patch when
present, delete when disabled.
"""

import functools
import logging
from typing import TYPE_CHECKING, Protocol

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..constants import (
    CLUSTER_SECRET_NAMESPACES_KEY,
    COMPONENT_APPLICATION_CONTROLLER,
    COMPONENT_FAILED,
    COMPONENT_LABEL,
    COMPONENT_PENDING,
    COMPONENT_PORTS,
    COMPONENT_REDIS,
    COMPONENT_REPO_SERVER,
    COMPONENT_RUNNING,
    COMPONENT_SERVER,
    DEFAULT_CLUSTER_SERVER,
    INSTANCE_MANAGED_BY_LABEL,
    INSTANCE_NAMESPACE_LABEL,
    NAME_LABEL,
    PART_OF_LABEL,
    PART_OF_VALUE,
    PROMETHEUS_API,
    RBAC_COMPONENTS,
    ROUTE_API,
    SECRET_TYPE_CLUSTER,
    SECRET_TYPE_LABEL,
)
from ..models import ArgoCDInstance, ComponentSpec
from ..utils.kubernetes import (
    apply_resource,
    call_api,
    delete_resource,
    label_selector,
    to_dict,
)
from .cluster_secret import cluster_secret_name, encode_data, format_namespaces

if TYPE_CHECKING:
    from .lifecycle import ReconcileContext

logger = logging.getLogger(__name__)


class ResourceReconciler(Protocol):
    """Interface of one step in the lifecycle's reconciler list."""

    name: str
    cluster_scoped: bool

    async def reconcile(self, ctx: "ReconcileContext") -> None: ...

    async def delete(self, ctx: "ReconcileContext") -> None: ...


def component_resource_name(instance: ArgoCDInstance, component: str) -> str:
    return f"{instance.name}-{component}"


def common_labels(instance: ArgoCDInstance, component: str | None = None) -> dict[str, str]:
    labels = {
        PART_OF_LABEL: PART_OF_VALUE,
        INSTANCE_MANAGED_BY_LABEL: instance.name,
    }
    if component:
        labels[NAME_LABEL] = component_resource_name(instance, component)
        labels[COMPONENT_LABEL] = component
    return labels


def owned_metadata(
    instance: ArgoCDInstance, name: str, component: str | None = None
) -> client.V1ObjectMeta:
    """Metadata for a same-namespace object garbage-collected with the instance."""
    ref = instance.owner_reference()
    return client.V1ObjectMeta(
        name=name,
        namespace=instance.namespace,
        labels=common_labels(instance, component),
        owner_references=[
            client.V1OwnerReference(
                api_version=ref["apiVersion"],
                kind=ref["kind"],
                name=ref["name"],
                uid=ref["uid"],
                controller=ref["controller"],
                block_owner_deletion=ref["blockOwnerDeletion"],
            )
        ],
    )


# ----------------------------------------------------------------------
# Service accounts
# ----------------------------------------------------------------------


class ServiceAccountsReconciler:
    """One ServiceAccount per component; RBAC subjects point at these."""

    name = "service-accounts"
    cluster_scoped = False

    async def reconcile(self, ctx: "ReconcileContext") -> None:
        core = ctx.apis.core
        for component in ctx.instance.spec.components():
            name = component_resource_name(ctx.instance, component)
            body = client.V1ServiceAccount(
                metadata=owned_metadata(ctx.instance, name, component)
            )
            await apply_resource(
                core.read_namespaced_service_account,
                core.create_namespaced_service_account,
                core.patch_namespaced_service_account,
                name=name,
                body=body,
                namespace=ctx.instance.namespace,
            )

    async def delete(self, ctx: "ReconcileContext") -> None:
        for component in ctx.instance.spec.components():
            await delete_resource(
                ctx.apis.core.delete_namespaced_service_account,
                name=component_resource_name(ctx.instance, component),
                namespace=ctx.instance.namespace,
            )


# ----------------------------------------------------------------------
# Cluster secret
# ----------------------------------------------------------------------


class ClusterSecretReconciler:
    """
    Creates ``<instance>-secret`` when it does not exist.

    Updates of the namespace list are the synchronizer's job. Deletion is a
    no-op: the secret is left behind for the platform to clean up.
    """

    name = "cluster-secret"
    cluster_scoped = False

    async def reconcile(self, ctx: "ReconcileContext") -> None:
        core = ctx.apis.core
        name = cluster_secret_name(ctx.instance.name)
        try:
            await call_api(
                core.read_namespaced_secret, name=name, namespace=ctx.instance.namespace
            )
            return
        except ApiException as e:
            if e.status != 404:
                raise

        labels = common_labels(ctx.instance)
        labels[SECRET_TYPE_LABEL] = SECRET_TYPE_CLUSTER
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name, namespace=ctx.instance.namespace, labels=labels
            ),
            type="Opaque",
            data={
                "name": encode_data("in-cluster"),
                "server": encode_data(DEFAULT_CLUSTER_SERVER),
                CLUSTER_SECRET_NAMESPACES_KEY: encode_data(
                    format_namespaces(ctx.managed_namespaces)
                ),
            },
        )
        await call_api(
            core.create_namespaced_secret, namespace=ctx.instance.namespace, body=body
        )
        logger.info(f"Created cluster secret {ctx.instance.namespace}/{name}")

    async def delete(self, ctx: "ReconcileContext") -> None:
        return None


# ----------------------------------------------------------------------
# Cluster-scoped RBAC
# ----------------------------------------------------------------------


def cluster_rbac_labels(instance: ArgoCDInstance, component: str) -> dict[str, str]:
    labels = common_labels(instance, component)
    labels[INSTANCE_NAMESPACE_LABEL] = instance.namespace
    return labels


def cluster_rbac_selector(instance: ArgoCDInstance) -> str:
    return label_selector(
        {
            INSTANCE_MANAGED_BY_LABEL: instance.name,
            INSTANCE_NAMESPACE_LABEL: instance.namespace,
        }
    )


class ClusterRBACReconciler:
    """
    ClusterRoles and ClusterRoleBindings for cluster-scoped instances.

    Cluster-scoped objects cannot carry an owner reference to a namespaced
    instance, so they are found by label and deleted in the second deletion
    pass.
    """

    name = "cluster-rbac"
    cluster_scoped = True

    @staticmethod
    def _name(instance: ArgoCDInstance, component: str) -> str:
        return f"{instance.name}-{instance.namespace}-{component}"

    @staticmethod
    def _rules(component: str) -> list[client.V1PolicyRule]:
        if component == COMPONENT_APPLICATION_CONTROLLER:
            return [
                client.V1PolicyRule(api_groups=["*"], resources=["*"], verbs=["*"]),
                client.V1PolicyRule(non_resource_ur_ls=["*"], verbs=["*"]),
            ]
        return [
            client.V1PolicyRule(
                api_groups=["*"], resources=["*"], verbs=["get", "delete", "patch"]
            ),
            client.V1PolicyRule(
                api_groups=[""], resources=["events"], verbs=["list"]
            ),
        ]

    async def reconcile(self, ctx: "ReconcileContext") -> None:
        if not ctx.cluster_scoped:
            # Scoping may have changed since the last pass
            await self.delete(ctx)
            return

        rbac = ctx.apis.rbac
        for component in RBAC_COMPONENTS:
            name = self._name(ctx.instance, component)
            labels = cluster_rbac_labels(ctx.instance, component)
            role = client.V1ClusterRole(
                metadata=client.V1ObjectMeta(name=name, labels=labels),
                rules=self._rules(component),
            )
            await apply_resource(
                rbac.read_cluster_role,
                rbac.create_cluster_role,
                rbac.patch_cluster_role,
                name=name,
                body=role,
            )
            binding = client.V1ClusterRoleBinding(
                metadata=client.V1ObjectMeta(name=name, labels=labels),
                role_ref=client.V1RoleRef(
                    api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=name
                ),
                subjects=[
                    client.RbacV1Subject(
                        kind="ServiceAccount",
                        name=component_resource_name(ctx.instance, component),
                        namespace=ctx.instance.namespace,
                    )
                ],
            )
            await apply_resource(
                rbac.read_cluster_role_binding,
                rbac.create_cluster_role_binding,
                rbac.patch_cluster_role_binding,
                name=name,
                body=binding,
            )

    async def delete(self, ctx: "ReconcileContext") -> None:
        rbac = ctx.apis.rbac
        selector = cluster_rbac_selector(ctx.instance)

        bindings = await call_api(
            rbac.list_cluster_role_binding, label_selector=selector
        )
        for item in bindings.items:
            await delete_resource(rbac.delete_cluster_role_binding, name=item.metadata.name)

        roles = await call_api(rbac.list_cluster_role, label_selector=selector)
        for item in roles.items:
            await delete_resource(rbac.delete_cluster_role, name=item.metadata.name)


# ----------------------------------------------------------------------
# Workloads
# ----------------------------------------------------------------------


def _redis_address(instance: ArgoCDInstance) -> str:
    return (
        f"{component_resource_name(instance, COMPONENT_REDIS)}:"
        f"{COMPONENT_PORTS[COMPONENT_REDIS]}"
    )


def component_command(ctx: "ReconcileContext", component: str) -> list[str]:
    """Container command line for a component."""
    instance = ctx.instance
    if component == COMPONENT_REDIS:
        return ["redis-server", "--protected-mode", "no", "--save", "", "--appendonly", "no"]

    command = [component, "--redis", _redis_address(instance)]
    if component == COMPONENT_SERVER and instance.spec.server.insecure:
        command.append("--insecure")
    if component == COMPONENT_APPLICATION_CONTROLLER:
        command += ["--operation-processors", "10", "--status-processors", "20"]
    if component != COMPONENT_REPO_SERVER:
        command += [
            "--repo-server",
            f"{component_resource_name(instance, COMPONENT_REPO_SERVER)}:"
            f"{COMPONENT_PORTS[COMPONENT_REPO_SERVER]}",
        ]
    if component in RBAC_COMPONENTS and ctx.source_namespaces:
        command += ["--application-namespaces", ",".join(sorted(ctx.source_namespaces))]
    return command


def component_health(deployment: client.V1Deployment, desired_replicas: int) -> str:
    """Map a Deployment's status onto the component health enum."""
    status = deployment.status
    if status is None:
        return COMPONENT_PENDING
    for condition in status.conditions or []:
        if condition.type == "ReplicaFailure" and condition.status == "True":
            return COMPONENT_FAILED
        if (
            condition.type == "Progressing"
            and condition.status == "False"
            and condition.reason == "ProgressDeadlineExceeded"
        ):
            return COMPONENT_FAILED
    if (status.ready_replicas or 0) >= desired_replicas:
        return COMPONENT_RUNNING
    return COMPONENT_PENDING


class WorkloadsReconciler:
    """One Deployment per enabled component; disabled components are removed."""

    name = "workloads"
    cluster_scoped = False

    def _deployment(
        self, ctx: "ReconcileContext", component: str, spec: ComponentSpec
    ) -> client.V1Deployment:
        instance = ctx.instance
        name = component_resource_name(instance, component)
        selector = {NAME_LABEL: name}
        resources = None
        if spec.resources:
            resources = client.V1ResourceRequirements(
                requests=spec.resources.requests or None,
                limits=spec.resources.limits or None,
            )
        container = client.V1Container(
            name=component,
            image=instance.spec.image_for(component),
            command=component_command(ctx, component),
            ports=[client.V1ContainerPort(container_port=COMPONENT_PORTS[component])],
            env=[client.V1EnvVar(name=k, value=v) for k, v in sorted(spec.env.items())]
            or None,
            resources=resources,
        )
        return client.V1Deployment(
            metadata=owned_metadata(instance, name, component),
            spec=client.V1DeploymentSpec(
                replicas=spec.replicas,
                selector=client.V1LabelSelector(match_labels=selector),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=common_labels(instance, component)),
                    spec=client.V1PodSpec(
                        service_account_name=name,
                        containers=[container],
                    ),
                ),
            ),
        )

    async def reconcile(self, ctx: "ReconcileContext") -> None:
        apps = ctx.apis.apps
        namespace = ctx.instance.namespace
        for component, spec in ctx.instance.spec.components().items():
            name = component_resource_name(ctx.instance, component)
            if not spec.enabled:
                await delete_resource(
                    apps.delete_namespaced_deployment, name=name, namespace=namespace
                )
                continue

            await apply_resource(
                apps.read_namespaced_deployment,
                apps.create_namespaced_deployment,
                apps.patch_namespaced_deployment,
                name=name,
                body=self._deployment(ctx, component, spec),
                namespace=namespace,
            )
            deployment = await call_api(
                apps.read_namespaced_deployment, name=name, namespace=namespace
            )
            ctx.component_status[component] = component_health(
                deployment, spec.replicas
            )

    async def delete(self, ctx: "ReconcileContext") -> None:
        for component in ctx.instance.spec.components():
            await delete_resource(
                ctx.apis.apps.delete_namespaced_deployment,
                name=component_resource_name(ctx.instance, component),
                namespace=ctx.instance.namespace,
            )


# ----------------------------------------------------------------------
# Services
# ----------------------------------------------------------------------


# Port names are limited to 15 characters
SERVICE_PORT_NAMES = {
    COMPONENT_APPLICATION_CONTROLLER: "metrics",
    COMPONENT_REPO_SERVER: "server",
    COMPONENT_REDIS: "tcp-redis",
}


class ServicesReconciler:
    """One ClusterIP Service per enabled component."""

    name = "services"
    cluster_scoped = False

    def _service(self, instance: ArgoCDInstance, component: str) -> client.V1Service:
        name = component_resource_name(instance, component)
        port = COMPONENT_PORTS[component]
        if component == COMPONENT_SERVER:
            ports = [
                client.V1ServicePort(name="http", port=80, target_port=port, protocol="TCP"),
                client.V1ServicePort(
                    name="https", port=443, target_port=port, protocol="TCP"
                ),
            ]
        else:
            ports = [
                client.V1ServicePort(
                    name=SERVICE_PORT_NAMES[component],
                    port=port,
                    target_port=port,
                    protocol="TCP",
                )
            ]
        return client.V1Service(
            metadata=owned_metadata(instance, name, component),
            spec=client.V1ServiceSpec(
                selector={NAME_LABEL: name}, ports=ports, type="ClusterIP"
            ),
        )

    async def reconcile(self, ctx: "ReconcileContext") -> None:
        core = ctx.apis.core
        namespace = ctx.instance.namespace
        for component, spec in ctx.instance.spec.components().items():
            name = component_resource_name(ctx.instance, component)
            if not spec.enabled:
                await delete_resource(
                    core.delete_namespaced_service, name=name, namespace=namespace
                )
                continue
            await apply_resource(
                core.read_namespaced_service,
                core.create_namespaced_service,
                core.patch_namespaced_service,
                name=name,
                body=self._service(ctx.instance, component),
                namespace=namespace,
            )

    async def delete(self, ctx: "ReconcileContext") -> None:
        for component in ctx.instance.spec.components():
            await delete_resource(
                ctx.apis.core.delete_namespaced_service,
                name=component_resource_name(ctx.instance, component),
                namespace=ctx.instance.namespace,
            )


# ----------------------------------------------------------------------
# Ingress / Route
# ----------------------------------------------------------------------


def _custom_object_ops(custom: client.CustomObjectsApi, api: tuple[str, str], plural: str):
    group, version = api
    scope = {"group": group, "version": version, "plural": plural}
    return (
        functools.partial(custom.get_namespaced_custom_object, **scope),
        functools.partial(custom.create_namespaced_custom_object, **scope),
        functools.partial(custom.patch_namespaced_custom_object, **scope),
        functools.partial(custom.delete_namespaced_custom_object, **scope),
    )


class NetworkingReconciler:
    """
    Exposes the API server through an Ingress and/or an OpenShift Route.

    Routes are only touched when the cluster serves the Route API.
    """

    name = "networking"
    cluster_scoped = False

    def _ingress(self, instance: ArgoCDInstance) -> client.V1Ingress:
        ingress = instance.spec.server.ingress
        name = component_resource_name(instance, COMPONENT_SERVER)
        metadata = owned_metadata(instance, name, COMPONENT_SERVER)
        metadata.annotations = dict(ingress.annotations) or None
        tls = None
        if ingress.tls_secret_name:
            tls = [
                client.V1IngressTLS(
                    hosts=[ingress.host] if ingress.host else None,
                    secret_name=ingress.tls_secret_name,
                )
            ]
        backend = client.V1IngressBackend(
            service=client.V1IngressServiceBackend(
                name=name,
                port=client.V1ServiceBackendPort(
                    name="http" if instance.spec.server.insecure else "https"
                ),
            )
        )
        return client.V1Ingress(
            metadata=metadata,
            spec=client.V1IngressSpec(
                ingress_class_name=ingress.class_name,
                tls=tls,
                rules=[
                    client.V1IngressRule(
                        host=ingress.host,
                        http=client.V1HTTPIngressRuleValue(
                            paths=[
                                client.V1HTTPIngressPath(
                                    path=ingress.path,
                                    path_type="Prefix",
                                    backend=backend,
                                )
                            ]
                        ),
                    )
                ],
            ),
        )

    def _route(self, instance: ArgoCDInstance) -> dict:
        route = instance.spec.server.route
        name = component_resource_name(instance, COMPONENT_SERVER)
        body = {
            "apiVersion": "/".join(ROUTE_API),
            "kind": "Route",
            "metadata": to_dict(owned_metadata(instance, name, COMPONENT_SERVER)),
            "spec": {
                "to": {"kind": "Service", "name": name},
                "port": {
                    "targetPort": "http" if instance.spec.server.insecure else "https"
                },
                "tls": {
                    "termination": route.tls_termination,
                    "insecureEdgeTerminationPolicy": "Redirect",
                },
            },
        }
        if route.host:
            body["spec"]["host"] = route.host
        return body

    async def reconcile(self, ctx: "ReconcileContext") -> None:
        networking = ctx.apis.networking
        instance = ctx.instance
        namespace = instance.namespace
        name = component_resource_name(instance, COMPONENT_SERVER)
        server_enabled = instance.spec.server.enabled

        if server_enabled and instance.spec.server.ingress.enabled:
            await apply_resource(
                networking.read_namespaced_ingress,
                networking.create_namespaced_ingress,
                networking.patch_namespaced_ingress,
                name=name,
                body=self._ingress(instance),
                namespace=namespace,
            )
        else:
            await delete_resource(
                networking.delete_namespaced_ingress, name=name, namespace=namespace
            )

        if not ctx.capabilities.route_api_available():
            if instance.spec.server.route.enabled:
                logger.warning(
                    f"Route requested for {namespace}/{instance.name} but the "
                    f"cluster does not serve {'/'.join(ROUTE_API)}"
                )
            return

        read, create, patch, delete = _custom_object_ops(
            ctx.apis.custom, ROUTE_API, "routes"
        )
        if server_enabled and instance.spec.server.route.enabled:
            await apply_resource(
                read, create, patch, name=name, body=self._route(instance), namespace=namespace
            )
        else:
            await delete_resource(delete, name=name, namespace=namespace)

    async def delete(self, ctx: "ReconcileContext") -> None:
        namespace = ctx.instance.namespace
        name = component_resource_name(ctx.instance, COMPONENT_SERVER)
        await delete_resource(
            ctx.apis.networking.delete_namespaced_ingress, name=name, namespace=namespace
        )
        if ctx.capabilities.route_api_available():
            *_, delete = _custom_object_ops(ctx.apis.custom, ROUTE_API, "routes")
            await delete_resource(delete, name=name, namespace=namespace)


# ----------------------------------------------------------------------
# Capability-gated extras
# ----------------------------------------------------------------------


class MonitoringReconciler:
    """ServiceMonitors for component metrics, only when Prometheus Operator is present."""

    name = "monitoring"
    cluster_scoped = False

    MONITORED = (COMPONENT_APPLICATION_CONTROLLER, COMPONENT_SERVER, COMPONENT_REPO_SERVER)

    def _service_monitor(self, instance: ArgoCDInstance, component: str) -> dict:
        name = f"{component_resource_name(instance, component)}-metrics"
        return {
            "apiVersion": "/".join(PROMETHEUS_API),
            "kind": "ServiceMonitor",
            "metadata": to_dict(owned_metadata(instance, name, component)),
            "spec": {
                "selector": {
                    "matchLabels": {
                        NAME_LABEL: component_resource_name(instance, component)
                    }
                },
                "endpoints": [{"port": SERVICE_PORT_NAMES.get(component, "http")}],
            },
        }

    async def reconcile(self, ctx: "ReconcileContext") -> None:
        if not ctx.capabilities.prometheus_api_available():
            return

        read, create, patch, delete = _custom_object_ops(
            ctx.apis.custom, PROMETHEUS_API, "servicemonitors"
        )
        components = ctx.instance.spec.components()
        for component in self.MONITORED:
            name = f"{component_resource_name(ctx.instance, component)}-metrics"
            if ctx.instance.spec.prometheus.enabled and components[component].enabled:
                await apply_resource(
                    read,
                    create,
                    patch,
                    name=name,
                    body=self._service_monitor(ctx.instance, component),
                    namespace=ctx.instance.namespace,
                )
            else:
                await delete_resource(delete, name=name, namespace=ctx.instance.namespace)

    async def delete(self, ctx: "ReconcileContext") -> None:
        if not ctx.capabilities.prometheus_api_available():
            return
        *_, delete = _custom_object_ops(ctx.apis.custom, PROMETHEUS_API, "servicemonitors")
        for component in self.MONITORED:
            await delete_resource(
                delete,
                name=f"{component_resource_name(ctx.instance, component)}-metrics",
                namespace=ctx.instance.namespace,
            )


def default_steps() -> list[ResourceReconciler]:
    """The ordered reconciler list; deletion walks it in reverse."""
    return [
        ServiceAccountsReconciler(),
        ClusterSecretReconciler(),
        ClusterRBACReconciler(),
        WorkloadsReconciler(),
        ServicesReconciler(),
        NetworkingReconciler(),
        MonitoringReconciler(),
    ]
