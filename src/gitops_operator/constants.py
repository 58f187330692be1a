"""
Constants used throughout the GitOps operator.

This module defines all constant values used by the operator including:
- Custom resource coordinates and finalizer names
- Namespace membership and RBAC discovery labels
- Component names and resource naming patterns
- Status phases, conditions and error message templates
"""

import logging

# Custom resource coordinates
ARGOCD_GROUP = "argoproj.io"
ARGOCD_VERSION = "v1beta1"
ARGOCD_PLURAL = "argocds"
ARGOCD_KIND = "ArgoCD"
ARGOCD_CRD_NAME = f"{ARGOCD_PLURAL}.{ARGOCD_GROUP}"

# Finalizer added before any resource is created so deletion always runs cleanup
DELETION_FINALIZER = "argoproj.io/finalizer"

# Namespace membership labels; the value is the managing instance's namespace
MANAGED_BY_LABEL = "argocd.argoproj.io/managed-by"
SOURCE_NAMESPACE_LABEL = "argocd.argoproj.io/managed-by-cluster-argocd"

# Labels used to discover operator-created objects without owner references
PART_OF_LABEL = "app.kubernetes.io/part-of"
PART_OF_VALUE = "argocd"
NAME_LABEL = "app.kubernetes.io/name"
COMPONENT_LABEL = "app.kubernetes.io/component"
INSTANCE_MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
INSTANCE_NAME_LABEL = "argocds.argoproj.io/name"
INSTANCE_NAMESPACE_LABEL = "argocds.argoproj.io/namespace"

# Cluster secret identification
SECRET_TYPE_LABEL = "argocd.argoproj.io/secret-type"
SECRET_TYPE_CLUSTER = "cluster"
CLUSTER_SECRET_SUFFIX = "-secret"
CLUSTER_SECRET_NAMESPACES_KEY = "namespaces"
DEFAULT_CLUSTER_SERVER = "https://kubernetes.default.svc"

# Annotation bumped by the namespace watch to enqueue a full reconcile
NAMESPACE_EVENT_ANNOTATION = "argocds.argoproj.io/namespace-event"

# Component names
COMPONENT_APPLICATION_CONTROLLER = "argocd-application-controller"
COMPONENT_SERVER = "argocd-server"
COMPONENT_REPO_SERVER = "argocd-repo-server"
COMPONENT_REDIS = "argocd-redis"

# Components that receive a Role/RoleBinding pair in every managed namespace
RBAC_COMPONENTS = (COMPONENT_APPLICATION_CONTROLLER, COMPONENT_SERVER)

# Default images and ports
DEFAULT_ARGOCD_IMAGE = "quay.io/argoproj/argocd"
DEFAULT_ARGOCD_VERSION = "v2.10.4"
DEFAULT_REDIS_IMAGE = "redis:7.0.15-alpine"
COMPONENT_PORTS = {
    COMPONENT_APPLICATION_CONTROLLER: 8082,
    COMPONENT_SERVER: 8080,
    COMPONENT_REPO_SERVER: 8081,
    COMPONENT_REDIS: 6379,
}

# Optional cluster APIs probed by the capability gate
ROUTE_API = ("route.openshift.io", "v1")
PROMETHEUS_API = ("monitoring.coreos.com", "v1")
TEMPLATE_API = ("template.openshift.io", "v1")
VERSION_API = ("config.openshift.io", "v1")

# Status phase constants
PHASE_PENDING = "Pending"
PHASE_RECONCILING = "Reconciling"
PHASE_READY = "Ready"
PHASE_DEGRADED = "Degraded"
PHASE_FAILED = "Failed"
PHASE_DELETING = "Deleting"

# Component health values reported in status
COMPONENT_UNKNOWN = "Unknown"
COMPONENT_PENDING = "Pending"
COMPONENT_RUNNING = "Running"
COMPONENT_FAILED = "Failed"

# Deletion stages recorded in status.deletionStage
DELETION_STAGE_NAMESPACED = "NamespacedResources"
DELETION_STAGE_CLUSTER = "ClusterResources"

# Condition status constants
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

# Timeout constants (in seconds)
DEFAULT_RECONCILIATION_TIMEOUT = 300
DEFAULT_API_REQUEST_TIMEOUT = 30
DEFAULT_DELETION_REQUEUE_DELAY = 1

# Handler entry logging level
HANDLER_ENTRY_LOG_LEVEL = logging.INFO

# Error message templates
ERROR_MISSING_SPEC = "ArgoCD instance '{}' in namespace '{}' has no spec"
ERROR_FINALIZER_REMOVAL = "Failed to remove finalizer '{}' from '{}/{}'"
ERROR_RBAC_CONFLICT = "Conflict while writing {} '{}' in namespace '{}'"
