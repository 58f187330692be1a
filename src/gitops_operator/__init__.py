"""
GitOps Operator - A Kubernetes operator for Argo CD instances.

This operator reconciles ArgoCD custom resources into running platform
deployments with:
- Finalizer-guarded create, steady-state and delete lifecycle
- Label-driven managed namespace tracking
- Per-namespace RBAC propagation and cluster secret synchronization
"""

__version__ = "0.1.0"
