"""
Base reconciler class providing common patterns for resource reconciliation.

This module defines the BaseReconciler class that implements standard
patterns for status management, error handling, timeouts and retry logic.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from kubernetes.client.rest import ApiException

from ..constants import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    PHASE_DEGRADED,
    PHASE_FAILED,
    PHASE_READY,
    PHASE_RECONCILING,
)
from ..errors import OperatorError, TemporaryError
from ..observability.logging import OperatorLogger
from ..settings import settings
from ..utils.kubernetes import KubernetesApis, api_error


class StatusProtocol(Protocol):
    """Protocol for kopf Status objects that allow dynamic attribute assignment."""

    def __setattr__(self, name: str, value: Any) -> None: ...
    def __getattr__(self, name: str) -> Any: ...


class BaseReconciler(ABC):
    """
    Base class for resource reconcilers.

    Provides common patterns for:
    - Status management with conditions
    - Error handling and conversion to kopf retry semantics
    - Pass timeouts and cleanup logging
    - Kubernetes client management
    """

    resource_type = "resource"

    def __init__(self, apis: KubernetesApis | None = None):
        """
        Initialize base reconciler.

        Args:
            apis: Kubernetes API bundle, created from the default client if not provided
        """
        self._apis = apis
        self.logger = OperatorLogger(self.__class__.__name__)

    @property
    def kubernetes_apis(self) -> KubernetesApis:
        """Get or create the Kubernetes API bundle."""
        if self._apis is None:
            self._apis = KubernetesApis.from_client()
        return self._apis

    def _to_operator_error(self, exc: Exception, action: str) -> OperatorError:
        if isinstance(exc, OperatorError):
            return exc
        if isinstance(exc, ApiException):
            return api_error(exc, action)
        if isinstance(exc, TimeoutError):
            return TemporaryError(
                f"{action.capitalize()} did not finish within "
                f"{settings.reconcile_timeout_seconds}s"
            )
        return TemporaryError(f"Unexpected error during {action}: {str(exc)}")

    async def reconcile(
        self,
        spec: dict[str, Any],
        name: str,
        namespace: str,
        status: StatusProtocol,
        **kwargs,
    ) -> dict[str, Any]:
        """
        Main reconciliation entry point with metrics tracking.

        The whole pass runs under ``RECONCILE_TIMEOUT_SECONDS``. Errors are
        recorded as status conditions and re-raised as kopf errors so kopf
        retries with the error's delay.

        Args:
            spec: Resource specification
            name: Resource name
            namespace: Resource namespace
            status: Resource status object
            **kwargs: Additional handler arguments

        Returns:
            Status fields written for the resource
        """
        from ..observability.metrics import metrics_collector

        resource_type = self.resource_type
        start_time = time.time()

        self.logger.log_reconciliation_start(
            resource_type=resource_type, resource_name=name, namespace=namespace
        )

        generation = (kwargs.get("meta") or {}).get("generation", 0)

        async with metrics_collector.track_reconciliation(
            resource_type=resource_type,
            namespace=namespace,
            name=name,
            operation="reconcile",
        ):
            try:
                self.update_status_reconciling(
                    status, "Starting reconciliation", generation
                )

                result = await asyncio.wait_for(
                    self.do_reconcile(spec, name, namespace, status, **kwargs),
                    timeout=settings.reconcile_timeout_seconds,
                )

                phase = result.pop("phase", PHASE_READY)
                message = result.pop("message", "Reconciliation completed successfully")
                for key, value in result.items():
                    setattr(status, key, value)

                if phase == PHASE_DEGRADED:
                    self.update_status_degraded(status, message, generation)
                else:
                    self.update_status_ready(status, message, generation)

                metrics_collector.update_resource_status(
                    resource_type=resource_type, namespace=namespace, phase=phase
                )

                self.logger.log_reconciliation_success(
                    resource_type=resource_type,
                    resource_name=name,
                    namespace=namespace,
                    duration=time.time() - start_time,
                )

                return result

            except Exception as e:
                error = self._to_operator_error(e, f"reconcile {namespace}/{name}")
                self.logger.log_reconciliation_error(
                    resource_type=resource_type,
                    resource_name=name,
                    namespace=namespace,
                    error=error,
                    duration=time.time() - start_time,
                )
                self.update_status_failed(status, str(error), generation)

                metrics_collector.update_resource_status(
                    resource_type=resource_type, namespace=namespace, phase=PHASE_FAILED
                )

                raise error.as_kopf_error() from e

    async def cleanup(
        self,
        spec: dict[str, Any],
        name: str,
        namespace: str,
        status: StatusProtocol,
        **kwargs,
    ) -> bool:
        """
        Deletion entry point with metrics tracking and a pass timeout.

        Returns:
            True when cleanup finished, False when another pass is needed
        """
        from ..observability.metrics import metrics_collector

        resource_type = self.resource_type
        start_time = time.time()
        self.logger.log_reconciliation_start(
            resource_type=resource_type,
            resource_name=name,
            namespace=namespace,
            operation="delete",
        )

        async with metrics_collector.track_reconciliation(
            resource_type=resource_type,
            namespace=namespace,
            name=name,
            operation="delete",
        ):
            try:
                finished = await self.cleanup_with_timeout(
                    cleanup_func=lambda: self.do_cleanup(
                        spec, name, namespace, status, **kwargs
                    ),
                    resource_type=resource_type,
                    name=name,
                    namespace=namespace,
                    timeout=settings.reconcile_timeout_seconds,
                )
            except Exception as e:
                error = self._to_operator_error(e, f"clean up {namespace}/{name}")
                self.logger.log_reconciliation_error(
                    resource_type=resource_type,
                    resource_name=name,
                    namespace=namespace,
                    error=error,
                    duration=time.time() - start_time,
                    operation="delete",
                )
                raise error.as_kopf_error() from e

        self.logger.log_reconciliation_success(
            resource_type=resource_type,
            resource_name=name,
            namespace=namespace,
            duration=time.time() - start_time,
            operation="delete",
        )
        return bool(finished)

    @abstractmethod
    async def do_reconcile(
        self,
        spec: dict[str, Any],
        name: str,
        namespace: str,
        status: StatusProtocol,
        **kwargs,
    ) -> dict[str, Any]:
        """
        Perform the actual reconciliation logic.

        Returns:
            Status fields to publish. The optional keys ``phase`` and
            ``message`` select between the Ready and Degraded status.
        """
        raise NotImplementedError("Subclasses must implement do_reconcile method")

    async def do_cleanup(
        self,
        spec: dict[str, Any],
        name: str,
        namespace: str,
        status: StatusProtocol,
        **kwargs,
    ) -> bool:
        """Perform deletion cleanup. The default has nothing to clean."""
        return True

    async def cleanup_with_timeout(
        self,
        cleanup_func: Callable[[], Awaitable[Any]],
        resource_type: str,
        name: str,
        namespace: str,
        timeout: float,
        retry_count: int = 0,
    ) -> Any:
        """
        Run a cleanup coroutine with a deadline and structured logging.

        Args:
            cleanup_func: Zero-argument coroutine function doing the cleanup
            resource_type: Resource type for logging
            name: Resource name
            namespace: Resource namespace
            timeout: Seconds before the attempt is abandoned
            retry_count: How many times kopf retried this deletion so far

        Raises:
            TemporaryError: If the cleanup did not finish in time
        """
        start_time = time.time()
        base_extra = {
            "resource_type": resource_type,
            "resource_name": name,
            "namespace": namespace,
            "retry_count": retry_count,
        }
        self.logger.info(
            f"Cleanup started for {resource_type} {namespace}/{name}",
            extra={**base_extra, "cleanup_phase": "started"},
        )

        try:
            result = await asyncio.wait_for(cleanup_func(), timeout=timeout)
        except TimeoutError as e:
            self.logger.warning(
                f"Cleanup of {resource_type} {namespace}/{name} timed out",
                extra={**base_extra, "cleanup_phase": "timeout"},
            )
            raise TemporaryError(
                f"Cleanup timeout for {resource_type} {namespace}/{name} "
                f"after {timeout}s",
                delay=30,
            ) from e

        self.logger.info(
            f"Cleanup completed for {resource_type} {namespace}/{name}",
            extra={
                **base_extra,
                "cleanup_phase": "completed",
                "duration_seconds": round(time.time() - start_time, 3),
            },
        )
        return result

    def log_cleanup_step(
        self,
        step: str,
        resource_type: str,
        name: str,
        namespace: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        extra = {
            "cleanup_step": step,
            "resource_type": resource_type,
            "resource_name": name,
            "namespace": namespace,
            "cleanup_phase": "in_progress",
        }
        if details:
            extra.update(details)
        self.logger.info(f"{step} for {resource_type} {namespace}/{name}", extra=extra)

    def update_status_reconciling(
        self, status: StatusProtocol, message: str, generation: int = 0
    ) -> None:
        """Update status to indicate reconciliation is in progress."""
        status.phase = PHASE_RECONCILING
        status.message = message
        status.lastUpdated = datetime.now(UTC).isoformat()
        status.observedGeneration = generation
        self._add_condition(
            status,
            "Reconciling",
            CONDITION_TRUE,
            "ReconciliationInProgress",
            message,
            generation,
        )
        self._add_condition(
            status,
            "Progressing",
            CONDITION_TRUE,
            "ReconciliationInProgress",
            f"Resource is progressing: {message}",
            generation,
        )

    def update_status_ready(
        self,
        status: StatusProtocol,
        message: str = "Resource is ready",
        generation: int = 0,
    ) -> None:
        """Update status to indicate resource is ready."""
        status.phase = PHASE_READY
        status.message = message
        status.lastUpdated = datetime.now(UTC).isoformat()
        status.observedGeneration = generation
        self._add_condition(
            status, "Ready", CONDITION_TRUE, "ReconciliationSucceeded", message, generation
        )
        self._add_condition(
            status,
            "Available",
            CONDITION_TRUE,
            "ReconciliationSucceeded",
            f"Resource is available: {message}",
            generation,
        )
        self._remove_condition(status, "Reconciling")
        self._remove_condition(status, "Progressing")
        self._remove_condition(status, "Degraded")

    def update_status_failed(
        self, status: StatusProtocol, message: str, generation: int = 0
    ) -> None:
        """Update status to indicate reconciliation failed."""
        status.phase = PHASE_FAILED
        status.message = message
        status.lastUpdated = datetime.now(UTC).isoformat()
        status.observedGeneration = generation
        self._add_condition(
            status, "Ready", CONDITION_FALSE, "ReconciliationFailed", message, generation
        )
        self._add_condition(
            status,
            "Available",
            CONDITION_FALSE,
            "ReconciliationFailed",
            f"Resource unavailable: {message}",
            generation,
        )
        self._add_condition(
            status,
            "Degraded",
            CONDITION_TRUE,
            "ReconciliationFailed",
            f"Resource degraded: {message}",
            generation,
        )
        self._remove_condition(status, "Reconciling")
        self._remove_condition(status, "Progressing")

    def update_status_degraded(
        self, status: StatusProtocol, message: str, generation: int = 0
    ) -> None:
        """Update status to indicate resource is degraded but partially functional."""
        status.phase = PHASE_DEGRADED
        status.message = message
        status.lastUpdated = datetime.now(UTC).isoformat()
        status.observedGeneration = generation
        self._add_condition(
            status, "Ready", CONDITION_FALSE, "PartialFunctionality", message, generation
        )
        self._add_condition(
            status,
            "Available",
            CONDITION_TRUE,
            "PartialFunctionality",
            f"Resource partially available: {message}",
            generation,
        )
        self._add_condition(
            status,
            "Degraded",
            CONDITION_TRUE,
            "PartialFunctionality",
            f"Resource degraded: {message}",
            generation,
        )
        self._remove_condition(status, "Reconciling")
        self._remove_condition(status, "Progressing")

    def _add_condition(
        self,
        status: StatusProtocol,
        condition_type: str,
        condition_status: str,
        reason: str,
        message: str,
        generation: int = 0,
    ) -> None:
        """Add or replace a status condition with observedGeneration tracking."""
        existing = getattr(status, "conditions", None)
        conditions = [
            c
            for c in (existing if isinstance(existing, list) else [])
            if isinstance(c, dict) and c.get("type") != condition_type
        ]

        previous = self.get_condition(status, condition_type)
        transition_time = datetime.now(UTC).isoformat()
        if previous and previous.get("status") == condition_status:
            transition_time = previous.get("lastTransitionTime", transition_time)

        conditions.append(
            {
                "type": condition_type,
                "status": condition_status,
                "reason": reason,
                "message": message,
                "lastTransitionTime": transition_time,
                "observedGeneration": generation,
            }
        )
        status.conditions = conditions

    def _remove_condition(self, status: StatusProtocol, condition_type: str) -> None:
        existing = getattr(status, "conditions", None)
        if not existing:
            return
        status.conditions = [
            c for c in existing if isinstance(c, dict) and c.get("type") != condition_type
        ]

    def get_condition(
        self, status: StatusProtocol, condition_type: str
    ) -> dict[str, Any] | None:
        existing = getattr(status, "conditions", None)
        for condition in existing if isinstance(existing, list) else []:
            if isinstance(condition, dict) and condition.get("type") == condition_type:
                return condition
        return None
