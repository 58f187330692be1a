"""Unit tests for environment-driven operator settings."""

import pytest
from pydantic import ValidationError

from gitops_operator.settings import Settings


@pytest.fixture
def make_settings(monkeypatch):
    def _make(**env: str) -> Settings:
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        return Settings()

    return _make


class TestWatchedNamespaces:
    def test_empty_means_all_namespaces(self, make_settings):
        assert make_settings(WATCH_NAMESPACE="").watched_namespaces is None

    def test_comma_separated_list(self, make_settings):
        settings = make_settings(WATCH_NAMESPACE="ns1, ns2,,")

        assert settings.watched_namespaces == ["ns1", "ns2"]


class TestClusterConfigNamespaces:
    def test_unset_means_namespace_scoped(self, make_settings):
        settings = make_settings(ARGOCD_CLUSTER_CONFIG_NAMESPACES="")

        assert not settings.is_cluster_config_namespace("ns1")

    def test_listed_namespace(self, make_settings):
        settings = make_settings(ARGOCD_CLUSTER_CONFIG_NAMESPACES="ns1, ops")

        assert settings.is_cluster_config_namespace("ops")
        assert not settings.is_cluster_config_namespace("ns2")

    def test_wildcard(self, make_settings):
        settings = make_settings(ARGOCD_CLUSTER_CONFIG_NAMESPACES="*")

        assert settings.is_cluster_config_namespace("anything")


class TestDefaultsAndValidation:
    def test_defaults(self, make_settings):
        settings = make_settings()

        assert settings.metrics_port == 8081
        assert settings.deletion_requeue_delay_seconds == 1
        assert settings.api_request_timeout_seconds == 30.0
        assert not settings.tracing_enabled

    def test_env_values_are_coerced(self, make_settings):
        settings = make_settings(
            METRICS_PORT="9090",
            JSON_LOGS="false",
            RESYNC_INTERVAL_SECONDS="60",
        )

        assert settings.metrics_port == 9090
        assert settings.json_logs is False
        assert settings.resync_interval_seconds == 60.0

    def test_sample_rate_bounds(self, make_settings):
        with pytest.raises(ValidationError):
            make_settings(OTEL_TRACES_SAMPLER_ARG="1.5")
