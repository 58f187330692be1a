"""
Models package - Pydantic models for type-safe resource handling.

Defines data models for:
- ArgoCD instance specifications
- Observed instance metadata used by the lifecycle state machine
"""

from .argocd import (
    ArgoCDInstance,
    ArgoCDSpec,
    ComponentSpec,
    IngressSpec,
    PrometheusSpec,
    ResourceRequirements,
    RouteSpec,
    ServerSpec,
)

__all__ = [
    "ArgoCDInstance",
    "ArgoCDSpec",
    "ComponentSpec",
    "IngressSpec",
    "PrometheusSpec",
    "ResourceRequirements",
    "RouteSpec",
    "ServerSpec",
]
