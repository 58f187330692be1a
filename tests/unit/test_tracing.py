"""
Unit tests for OpenTelemetry tracing module.

Tests the tracing setup, traced_handler decorator and resource context
management.

Note: OpenTelemetry has global state that can only be set once per process.
Tests that need to capture spans use a module-scoped tracer provider,
while tests that mock the setup use patches to avoid global state issues.
"""

from unittest.mock import MagicMock, patch

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from gitops_operator.observability.tracing import (
    clear_resource_context,
    get_resource_context,
    get_tracer,
    is_tracing_enabled,
    set_resource_context,
    setup_tracing,
    shutdown_tracing,
    traced_handler,
)


@pytest.fixture(scope="module")
def module_in_memory_exporter():
    return InMemorySpanExporter()


@pytest.fixture(scope="module")
def module_tracer_provider(module_in_memory_exporter):
    """Module-scoped tracer provider - set once for all tests in this module."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(module_in_memory_exporter))
    trace.set_tracer_provider(provider)
    return provider


@pytest.fixture(autouse=True)
def reset_tracing_state():
    """Reset tracing module state before and after each test."""
    import gitops_operator.observability.tracing as tracing_module

    tracing_module._initialized = False
    tracing_module._tracer_provider = None
    yield
    tracing_module._initialized = False
    tracing_module._tracer_provider = None
    clear_resource_context()


@pytest.fixture
def clear_spans(module_tracer_provider, module_in_memory_exporter):
    module_in_memory_exporter.clear()
    yield module_in_memory_exporter
    module_in_memory_exporter.clear()


class TestSetupTracing:
    def test_setup_tracing_disabled(self):
        assert setup_tracing(enabled=False) is None
        assert not is_tracing_enabled()

    @patch("gitops_operator.observability.tracing.OTLPSpanExporter")
    @patch("gitops_operator.observability.tracing.trace.set_tracer_provider")
    def test_setup_tracing_enabled(self, mock_set_provider, mock_exporter):
        mock_exporter.return_value = MagicMock()

        result = setup_tracing(
            enabled=True,
            endpoint="http://collector:4317",
            service_name="test-service",
            sample_rate=0.5,
        )

        assert isinstance(result, TracerProvider)
        assert is_tracing_enabled()
        mock_exporter.assert_called_once_with(
            endpoint="http://collector:4317", insecure=True
        )
        mock_set_provider.assert_called_once_with(result)

    @patch("gitops_operator.observability.tracing.OTLPSpanExporter")
    @patch("gitops_operator.observability.tracing.trace.set_tracer_provider")
    def test_setup_tracing_idempotent(self, mock_set_provider, mock_exporter):
        mock_exporter.return_value = MagicMock()

        first = setup_tracing(enabled=True)
        second = setup_tracing(enabled=True)

        assert first is second
        assert mock_set_provider.call_count == 1

    @patch("gitops_operator.observability.tracing.OTLPSpanExporter")
    @patch("gitops_operator.observability.tracing.trace.set_tracer_provider")
    def test_shutdown_resets_state(self, mock_set_provider, mock_exporter):
        mock_exporter.return_value = MagicMock()
        provider = setup_tracing(enabled=True)

        with patch.object(provider, "shutdown") as mock_shutdown:
            shutdown_tracing()

        mock_shutdown.assert_called_once()
        assert not is_tracing_enabled()


class TestResourceContext:
    def test_set_and_get(self):
        set_resource_context(namespace="ns1", name="demo", kind="ArgoCD")

        assert get_resource_context() == {
            "k8s.namespace": "ns1",
            "k8s.resource.name": "demo",
            "kind": "ArgoCD",
        }

    def test_updates_merge(self):
        set_resource_context(namespace="ns1")
        set_resource_context(name="demo")

        assert get_resource_context()["k8s.namespace"] == "ns1"
        assert get_resource_context()["k8s.resource.name"] == "demo"

    def test_clear(self):
        set_resource_context(namespace="ns1")
        clear_resource_context()

        assert get_resource_context() == {}


class TestTracedHandler:
    @pytest.mark.asyncio
    async def test_async_handler_span(self, clear_spans):
        @traced_handler("ensure_argocd")
        async def handler(spec, name, namespace, **kwargs):
            return "done"

        assert await handler(spec={}, name="demo", namespace="ns1") == "done"

        (span,) = clear_spans.get_finished_spans()
        assert span.name == "ensure_argocd"
        assert span.kind == SpanKind.INTERNAL
        assert span.attributes["k8s.namespace"] == "ns1"
        assert span.attributes["k8s.resource.name"] == "demo"
        assert span.attributes["k8s.resource.type"] == "argocd"
        assert span.attributes["kopf.handler"] == "handler"
        assert span.status.status_code == StatusCode.OK

    @pytest.mark.asyncio
    async def test_async_handler_error_recorded(self, clear_spans):
        @traced_handler("delete_argocd")
        async def handler(**kwargs):
            raise RuntimeError("cleanup failed")

        with pytest.raises(RuntimeError):
            await handler(name="demo", namespace="ns1")

        (span,) = clear_spans.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert any(event.name == "exception" for event in span.events)

    def test_sync_handler_span(self, clear_spans):
        @traced_handler("namespace_event", resource_type="namespace")
        def handler(name, **kwargs):
            return name

        assert handler(name="ns2") == "ns2"

        (span,) = clear_spans.get_finished_spans()
        assert span.attributes["k8s.resource.type"] == "namespace"
        assert span.attributes["k8s.namespace"] == "unknown"

    def test_get_tracer_returns_tracer(self):
        assert get_tracer("tests") is not None
