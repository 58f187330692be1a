"""
Utils package - Utility modules for GitOps operator functionality.

Contains helper modules for:
- Kubernetes client access, error mapping and label selectors
- Per-instance locking shared by handlers and the namespace watch
- Handler entry logging
"""

from gitops_operator.utils.kubernetes import (
    KubernetesApis,
    api_error,
    call_api,
    label_selector,
)
from gitops_operator.utils.locks import InstanceLocks

__all__ = [
    "InstanceLocks",
    "KubernetesApis",
    "api_error",
    "call_api",
    "label_selector",
]
