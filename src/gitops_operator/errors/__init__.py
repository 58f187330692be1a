"""
Error handling module for the GitOps operator.

This module provides a comprehensive error hierarchy that integrates with kopf
and provides clear categorization for different types of failures.
"""

from .operator_errors import (
    ConfigurationError,
    FinalizerError,
    KubernetesAPIError,
    OperatorError,
    PermanentError,
    ReconciliationError,
    TemporaryError,
    ValidationError,
)

__all__ = [
    "OperatorError",
    "ValidationError",
    "TemporaryError",
    "PermanentError",
    "KubernetesAPIError",
    "ConfigurationError",
    "ReconciliationError",
    "FinalizerError",
]
