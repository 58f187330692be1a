"""
Structured logging utilities for the GitOps operator.

This module provides correlation ID tracking, structured log formatting,
and audit logging for RBAC grants and revocations across namespaces.
"""

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Context variable for tracking correlation IDs across async operations
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Paths that should be filtered from access logs (health probes)
HEALTH_PROBE_PATHS = frozenset({"/healthz", "/health", "/ready", "/metrics"})

# Extra record attributes copied into the JSON payload
STRUCTURED_FIELDS = (
    "resource_type",
    "resource_name",
    "namespace",
    "operation",
    "duration",
    "error_type",
    "audit",
    "target_namespace",
    "owner_namespace",
    "managed_namespaces",
    "step",
    "handler_type",
    "handler_phase",
    "http_status",
    "cleanup_phase",
    "cleanup_step",
    "retry_count",
    "duration_seconds",
)


class HealthProbeFilter(logging.Filter):
    """
    Logging filter that suppresses health probe and metrics endpoint logs.

    These endpoints are hit frequently by Kubernetes probes and monitoring
    systems, generating excessive noise in logs during debugging.
    """

    def __init__(self, suppress_health_logs: bool = True):
        super().__init__()
        self.suppress_health_logs = suppress_health_logs

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.suppress_health_logs:
            return True

        message = record.getMessage()
        return all(path not in message for path in HEALTH_PROBE_PATHS)


class CorrelationIDFilter(logging.Filter):
    """Logging filter that adds correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        current_correlation_id = get_correlation_id()
        if not current_correlation_id:
            current_correlation_id = set_correlation_id(generate_correlation_id())

        record.correlation_id = current_correlation_id
        return True


class StructuredFormatter(logging.Formatter):
    """
    Structured JSON formatter for logs with correlation ID support.

    Formats log records as structured JSON for better parsing and analysis
    in production monitoring systems.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", ""),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields are set as record attributes by logging's `extra=`
        for field in STRUCTURED_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        return json.dumps(log_data, default=str)


def generate_correlation_id() -> str:
    """Generate a short correlation ID."""
    return str(uuid.uuid4())[:8]


def set_correlation_id(corr_id: str) -> str:
    """Set the correlation ID for the current context."""
    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> str:
    """Get the current correlation ID, or empty string if none set."""
    return correlation_id.get("")


def setup_structured_logging(
    log_level: str = "INFO",
    enable_json_formatting: bool = True,
    correlation_id_enabled: bool = True,
    log_health_probes: bool = False,
) -> None:
    """
    Set up structured logging for the operator.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_json_formatting: Whether to use JSON formatting
        correlation_id_enabled: Whether to enable correlation ID tracking
        log_health_probes: Whether to log health probe requests (default: False)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()

    if enable_json_formatting:
        formatter = StructuredFormatter()
    elif correlation_id_enabled:
        formatter = logging.Formatter(
            "%(asctime)s - %(correlation_id)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)

    if correlation_id_enabled:
        handler.addFilter(CorrelationIDFilter())

    if not log_health_probes:
        handler.addFilter(HealthProbeFilter(suppress_health_logs=True))

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Third-party libraries are noisy at INFO
    logging.getLogger("kopf").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.server").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.web").setLevel(logging.WARNING)


class OperatorLogger:
    """
    Enhanced logger for operator operations with structured logging support.

    Provides convenient methods for logging common operator events
    with proper correlation ID tracking and structured data.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def log_reconciliation_start(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        correlation_id: str | None = None,
        operation: str = "reconcile",
    ) -> str:
        """
        Log the start of a reconciliation operation.

        Returns:
            The correlation ID used for this operation
        """
        if correlation_id is None:
            correlation_id = generate_correlation_id()

        set_correlation_id(correlation_id)

        self.logger.info(
            f"Starting {operation} for {resource_type} {resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": f"{operation}_start",
            },
        )

        return correlation_id

    def log_reconciliation_success(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        duration: float,
        operation: str = "reconcile",
    ) -> None:
        self.logger.info(
            f"{operation.capitalize()} completed successfully for {resource_type} {resource_name}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": f"{operation}_success",
                "duration": duration,
            },
        )

    def log_reconciliation_error(
        self,
        resource_type: str,
        resource_name: str,
        namespace: str,
        error: Exception,
        duration: float,
        operation: str = "reconcile",
    ) -> None:
        self.logger.error(
            f"{operation.capitalize()} failed for {resource_type} {resource_name}: {str(error)}",
            extra={
                "resource_type": resource_type,
                "resource_name": resource_name,
                "namespace": namespace,
                "operation": f"{operation}_error",
                "error_type": type(error).__name__,
                "duration": duration,
            },
            exc_info=True,
        )

    def log_rbac_audit(
        self,
        operation: str,
        owner_namespace: str,
        target_namespace: str,
        resource_name: str,
        success: bool,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log RBAC audit events for cross-namespace grants and revocations.

        Args:
            operation: RBAC operation (grant, revoke, update)
            owner_namespace: Namespace of the instance the access belongs to
            target_namespace: Namespace the Role/RoleBinding lives in
            resource_name: Name of the Role/RoleBinding
            success: Whether the operation completed
            details: Additional audit details
        """
        level = logging.INFO if success else logging.WARNING
        message = (
            f"RBAC {operation} {'completed' if success else 'failed'}: "
            f"{owner_namespace} -> {target_namespace}"
        )

        audit_data = {
            "audit_event": "rbac_propagation",
            "operation": operation,
            "owner_namespace": owner_namespace,
            "target_namespace": target_namespace,
            "resource_name": resource_name,
            "success": success,
            "timestamp": datetime.now(UTC).isoformat(),
        }

        if details:
            audit_data.update(details)

        self.logger.log(level, message, extra={"audit": audit_data})

    def _merge_extra(self, extra: dict[str, Any] | None, kwargs: dict) -> dict:
        merged = dict(extra or {})
        merged.update(kwargs)
        return merged

    def debug(self, message: str, extra: dict[str, Any] | None = None, **kwargs) -> None:
        """Log debug message with extra data."""
        self.logger.debug(message, extra=self._merge_extra(extra, kwargs))

    def info(self, message: str, extra: dict[str, Any] | None = None, **kwargs) -> None:
        """Log info message with extra data."""
        self.logger.info(message, extra=self._merge_extra(extra, kwargs))

    def warning(
        self, message: str, extra: dict[str, Any] | None = None, **kwargs
    ) -> None:
        """Log warning message with extra data."""
        self.logger.warning(message, extra=self._merge_extra(extra, kwargs))

    def error(
        self,
        message: str,
        exc_info: bool = False,
        extra: dict[str, Any] | None = None,
        **kwargs,
    ) -> None:
        """Log error message with extra data."""
        self.logger.error(
            message, exc_info=exc_info, extra=self._merge_extra(extra, kwargs)
        )
