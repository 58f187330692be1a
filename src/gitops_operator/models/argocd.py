"""
Pydantic models for ArgoCD instance resources.

This module defines type-safe data models for ArgoCD instance specifications
and the metadata the lifecycle state machine needs. Models accept the
camelCase field names used in the custom resource.
"""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..constants import (
    ARGOCD_GROUP,
    ARGOCD_KIND,
    ARGOCD_VERSION,
    COMPONENT_APPLICATION_CONTROLLER,
    COMPONENT_REDIS,
    COMPONENT_REPO_SERVER,
    COMPONENT_SERVER,
    DEFAULT_ARGOCD_IMAGE,
    DEFAULT_ARGOCD_VERSION,
    DEFAULT_REDIS_IMAGE,
    DELETION_FINALIZER,
    ERROR_MISSING_SPEC,
)


class ResourceRequirements(BaseModel):
    """Resource requests and limits for a component container."""

    requests: dict[str, str] = Field(
        default_factory=dict, description="Resource requests"
    )
    limits: dict[str, str] = Field(default_factory=dict, description="Resource limits")


class ComponentSpec(BaseModel):
    """Common settings for one platform component."""

    model_config = {"populate_by_name": True}

    enabled: bool = Field(True, description="Deploy this component")
    replicas: int = Field(1, ge=0, description="Number of replicas")
    image: str | None = Field(None, description="Container image override")
    version: str | None = Field(None, description="Container image tag override")
    resources: ResourceRequirements | None = Field(
        None, description="Container resource requirements"
    )
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment variables"
    )


class IngressSpec(BaseModel):
    """Ingress settings for the API server."""

    model_config = {"populate_by_name": True}

    enabled: bool = Field(False, description="Create an Ingress for the server")
    host: str | None = Field(None, description="Ingress hostname")
    class_name: str | None = Field(
        None, alias="ingressClassName", description="Ingress class name"
    )
    path: str = Field("/", description="Ingress path")
    annotations: dict[str, str] = Field(
        default_factory=dict, description="Ingress annotations"
    )
    tls_secret_name: str | None = Field(
        None, alias="tlsSecretName", description="Secret containing TLS certificate"
    )


class RouteSpec(BaseModel):
    """OpenShift Route settings for the API server."""

    model_config = {"populate_by_name": True}

    enabled: bool = Field(False, description="Create a Route for the server")
    host: str | None = Field(None, description="Route hostname")
    tls_termination: str = Field(
        "passthrough", alias="tlsTermination", description="Route TLS termination"
    )

    @field_validator("tls_termination")
    @classmethod
    def validate_termination(cls, v):
        if v not in ("edge", "passthrough", "reencrypt"):
            raise ValueError("tlsTermination must be edge, passthrough or reencrypt")
        return v


class ServerSpec(ComponentSpec):
    """Settings for the API server component."""

    insecure: bool = Field(False, description="Serve the API without TLS")
    ingress: IngressSpec = Field(default_factory=IngressSpec)
    route: RouteSpec = Field(default_factory=RouteSpec)


class PrometheusSpec(BaseModel):
    """Prometheus integration settings."""

    enabled: bool = Field(False, description="Create ServiceMonitors when available")


class ArgoCDSpec(BaseModel):
    """
    Desired state of an ArgoCD instance.

    Component toggles, images, resource limits and the source namespaces
    applications may be read from.
    """

    model_config = {"populate_by_name": True}

    image: str = Field(DEFAULT_ARGOCD_IMAGE, description="Argo CD container image")
    version: str = Field(DEFAULT_ARGOCD_VERSION, description="Argo CD image tag")
    controller: ComponentSpec = Field(default_factory=ComponentSpec)
    server: ServerSpec = Field(default_factory=ServerSpec)
    repo: ComponentSpec = Field(default_factory=ComponentSpec)
    redis: ComponentSpec = Field(
        default_factory=lambda: ComponentSpec(image=DEFAULT_REDIS_IMAGE)
    )
    prometheus: PrometheusSpec = Field(default_factory=PrometheusSpec)
    source_namespaces: list[str] = Field(
        default_factory=list,
        alias="sourceNamespaces",
        description="Namespaces applications may be read from (cluster-scoped only)",
    )

    @field_validator("source_namespaces")
    @classmethod
    def normalize_source_namespaces(cls, v):
        # Preserve declaration order, drop blanks and duplicates
        seen: dict[str, None] = {}
        for ns in v:
            ns = ns.strip()
            if ns:
                seen.setdefault(ns, None)
        return list(seen)

    def components(self) -> dict[str, ComponentSpec]:
        """Map component names to their settings."""
        return {
            COMPONENT_APPLICATION_CONTROLLER: self.controller,
            COMPONENT_SERVER: self.server,
            COMPONENT_REPO_SERVER: self.repo,
            COMPONENT_REDIS: self.redis,
        }

    def enabled_components(self) -> list[str]:
        return [name for name, comp in self.components().items() if comp.enabled]

    def image_for(self, component: str) -> str:
        """Resolve the container image reference for a component."""
        comp = self.components()[component]
        if comp.image:
            if comp.version:
                return f"{comp.image}:{comp.version}"
            return comp.image
        return f"{self.image}:{comp.version or self.version}"


class ArgoCDInstance(BaseModel):
    """
    An observed ArgoCD custom resource.

    Carries identity, spec, finalizers and deletion state so services never
    need to dig through raw kopf bodies.
    """

    name: str
    namespace: str
    uid: str = ""
    generation: int = 0
    resource_version: str | None = None
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: str | None = None
    spec: ArgoCDSpec
    status: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "ArgoCDInstance":
        """Build an instance from a kopf body or raw custom object dict."""
        metadata = body.get("metadata") or {}
        spec = body.get("spec")
        if spec is None:
            raise ValueError(
                ERROR_MISSING_SPEC.format(metadata.get("name"), metadata.get("namespace"))
            )
        return cls(
            name=metadata["name"],
            namespace=metadata["namespace"],
            uid=metadata.get("uid", ""),
            generation=metadata.get("generation") or 0,
            resource_version=metadata.get("resourceVersion"),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            spec=ArgoCDSpec.model_validate(dict(spec)),
            status=dict(body.get("status") or {}),
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    @property
    def has_finalizer(self) -> bool:
        return DELETION_FINALIZER in self.finalizers

    def owner_reference(self) -> dict[str, Any]:
        """Owner reference for same-namespace objects created for this instance."""
        return {
            "apiVersion": f"{ARGOCD_GROUP}/{ARGOCD_VERSION}",
            "kind": ARGOCD_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }
