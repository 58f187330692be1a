"""
Service layer for the GitOps operator.

This module provides the namespace, RBAC and cluster secret services and the
instance lifecycle that drives them, separated from the kopf handler layer.
"""

from .base_reconciler import BaseReconciler
from .capabilities import CapabilityProbe, ClusterCapabilities
from .cluster_secret import ClusterSecretSynchronizer
from .lifecycle import InstanceLifecycle, ReconcileContext
from .namespace_events import NamespaceEventFilter, NamespaceTransition
from .namespaces import NamespaceTracker
from .rbac import RBACPropagator

__all__ = [
    "BaseReconciler",
    "CapabilityProbe",
    "ClusterCapabilities",
    "ClusterSecretSynchronizer",
    "InstanceLifecycle",
    "NamespaceEventFilter",
    "NamespaceTracker",
    "NamespaceTransition",
    "RBACPropagator",
    "ReconcileContext",
]
