"""
OpenTelemetry tracing for the GitOps operator.

Spans are created around kopf handlers and around the individual steps of a
reconcile pass, so a slow namespace or a failing reconciler shows up as its
own span under the handler span.

Usage:
    from gitops_operator.observability.tracing import setup_tracing, traced_handler

    setup_tracing(enabled=True, endpoint="http://otel-collector:4317")

    @kopf.on.create("argoproj.io", "v1beta1", "argocds")
    @traced_handler("create_argocd")
    async def handle_create(spec, name, namespace, **kwargs):
        ...
"""

import asyncio
import functools
import logging
from collections.abc import Callable
from contextvars import ContextVar
from typing import ParamSpec, TypeVar

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import SpanKind, Status, StatusCode, Tracer

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None
_initialized: bool = False

_resource_context: ContextVar[dict[str, str] | None] = ContextVar(
    "resource_context", default=None
)

P = ParamSpec("P")
R = TypeVar("R")


def setup_tracing(
    enabled: bool = False,
    endpoint: str = "http://localhost:4317",
    service_name: str = "gitops-operator",
    sample_rate: float = 1.0,
    insecure: bool = True,
    use_simple_processor: bool = False,
) -> TracerProvider | None:
    """
    Initialize OpenTelemetry tracing for the operator.

    Args:
        enabled: Enable tracing (if False, returns None and does nothing)
        endpoint: OTLP collector endpoint (gRPC)
        service_name: Service name for traces
        sample_rate: Sampling rate for root spans (0.0-1.0)
        insecure: Use insecure connection (no TLS)
        use_simple_processor: Export spans immediately instead of batching

    Returns:
        TracerProvider if enabled, None otherwise
    """
    global _tracer_provider, _initialized

    if _initialized:
        logger.debug("Tracing already initialized, skipping")
        return _tracer_provider

    if not enabled:
        logger.info("OpenTelemetry tracing is disabled")
        _initialized = True
        return None

    logger.info(
        f"Initializing OpenTelemetry tracing: endpoint={endpoint}, "
        f"service={service_name}, sample_rate={sample_rate}"
    )

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "gitops-operator",
            "deployment.environment": "kubernetes",
        }
    )

    sampler = ParentBased(root=TraceIdRatioBased(sample_rate))
    _tracer_provider = TracerProvider(resource=resource, sampler=sampler)

    exporter = OTLPSpanExporter(endpoint=endpoint, insecure=insecure)
    if use_simple_processor:
        processor = SimpleSpanProcessor(exporter)
    else:
        processor = BatchSpanProcessor(exporter)
    _tracer_provider.add_span_processor(processor)

    trace.set_tracer_provider(_tracer_provider)

    _initialized = True
    logger.info("OpenTelemetry tracing initialized successfully")

    return _tracer_provider


def shutdown_tracing() -> None:
    """Shutdown tracing and flush any pending spans."""
    global _tracer_provider, _initialized

    if _tracer_provider is not None:
        logger.info("Shutting down OpenTelemetry tracing")
        _tracer_provider.shutdown()
        _tracer_provider = None

    _initialized = False


def get_tracer(name: str = __name__) -> Tracer:
    """Get a tracer instance (no-op if tracing is disabled)."""
    return trace.get_tracer(name)


def set_resource_context(
    namespace: str | None = None,
    name: str | None = None,
    **kwargs: str,
) -> None:
    """Attach resource attributes to spans created later in this context."""
    current = _resource_context.get()
    context = current.copy() if current is not None else {}
    if namespace:
        context["k8s.namespace"] = namespace
    if name:
        context["k8s.resource.name"] = name
    context.update(kwargs)
    _resource_context.set(context)


def get_resource_context() -> dict[str, str]:
    current = _resource_context.get()
    return current.copy() if current is not None else {}


def clear_resource_context() -> None:
    _resource_context.set({})


def _handler_attributes(
    func: Callable, resource_type: str, kwargs: dict
) -> dict[str, str]:
    attributes = {
        "k8s.namespace": kwargs.get("namespace") or "unknown",
        "k8s.resource.name": kwargs.get("name") or "unknown",
        "k8s.resource.type": resource_type,
        "kopf.handler": getattr(func, "__name__", "unknown"),
    }
    attributes.update(get_resource_context())
    return attributes


def traced_handler(
    operation_name: str,
    resource_type: str = "argocd",
    span_kind: SpanKind = SpanKind.INTERNAL,
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator for kopf handlers to automatically create spans.

    The span carries the namespace and name kopf passes to the handler,
    records exceptions and sets the span status from the outcome.

    Args:
        operation_name: Name of the span (e.g. "reconcile_argocd")
        resource_type: Value for the k8s.resource.type attribute
        span_kind: Kind of span
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @functools.wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            tracer = get_tracer(func.__module__ or __name__)
            with tracer.start_as_current_span(
                operation_name,
                kind=span_kind,
                attributes=_handler_attributes(func, resource_type, kwargs),
            ) as span:
                try:
                    result = await func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        @functools.wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            tracer = get_tracer(func.__module__ or __name__)
            with tracer.start_as_current_span(
                operation_name,
                kind=span_kind,
                attributes=_handler_attributes(func, resource_type, kwargs),
            ) as span:
                try:
                    result = func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def is_tracing_enabled() -> bool:
    """Check if tracing is currently enabled and initialized."""
    return _initialized and _tracer_provider is not None
