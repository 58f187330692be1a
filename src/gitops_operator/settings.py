"""Centralized operator settings using pydantic-settings.

This module provides a single source of truth for all operator configuration
loaded from environment variables. Uses pydantic for automatic validation,
type coercion, and documentation.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Operator configuration loaded from environment variables.

    All settings have sensible defaults for production use. Override via
    environment variables as documented per field.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Operator identification
    operator_namespace: str = Field(
        default="gitops-operator-system",
        description="Namespace where the operator is deployed",
        validation_alias="OPERATOR_NAMESPACE",
    )
    operator_name: str = Field(
        default="gitops-operator",
        description="Name of the operator deployment, used as peering name",
        validation_alias="OPERATOR_NAME",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        validation_alias="JSON_LOGS",
        description="Enable JSON formatted logging for structured log aggregation",
    )
    correlation_ids: bool = Field(
        default=True,
        validation_alias="CORRELATION_IDS",
        description="Enable correlation IDs in logs for request tracing",
    )
    log_health_probes: bool = Field(
        default=False,
        validation_alias="LOG_HEALTH_PROBES",
        description="Log requests to health probe and metrics endpoints",
    )

    # Namespace watching
    namespaces: str = Field(
        default="",
        validation_alias="WATCH_NAMESPACE",
        description="Comma-separated list of namespaces to watch (empty = all namespaces)",
    )
    cluster_config_namespaces: str = Field(
        default="",
        validation_alias="ARGOCD_CLUSTER_CONFIG_NAMESPACES",
        description=(
            "Comma-separated namespaces whose ArgoCD instances run cluster-scoped "
            "('*' = every namespace)"
        ),
    )

    # Metrics and observability
    metrics_port: int = Field(
        default=8081,
        validation_alias="METRICS_PORT",
        description="Port for Prometheus metrics endpoint",
    )
    metrics_host: str = Field(
        default="0.0.0.0",
        validation_alias="METRICS_HOST",
        description="Host address to bind metrics server",
    )
    tracing_enabled: bool = Field(
        default=False,
        validation_alias="OTEL_TRACING_ENABLED",
        description="Enable OpenTelemetry tracing",
    )
    otel_endpoint: str = Field(
        default="http://localhost:4317",
        validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT",
        description="OTLP gRPC collector endpoint",
    )
    tracing_sample_rate: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        validation_alias="OTEL_TRACES_SAMPLER_ARG",
        description="Fraction of root spans that are sampled",
    )

    # Reconciliation behavior
    resync_interval_seconds: float = Field(
        default=180.0,
        validation_alias="RESYNC_INTERVAL_SECONDS",
        description="Interval between periodic full reconciles of every instance",
    )
    reconcile_timeout_seconds: float = Field(
        default=300.0,
        validation_alias="RECONCILE_TIMEOUT_SECONDS",
        description="Upper bound for a single reconcile or delete pass",
    )
    api_request_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="API_REQUEST_TIMEOUT_SECONDS",
        description="Per-request timeout for Kubernetes API calls",
    )
    deletion_requeue_delay_seconds: int = Field(
        default=1,
        validation_alias="DELETION_REQUEUE_DELAY_SECONDS",
        description="Delay before the cluster-scoped deletion pass runs",
    )
    capability_refresh_interval_seconds: float = Field(
        default=300.0,
        validation_alias="CAPABILITY_REFRESH_INTERVAL_SECONDS",
        description="Interval between cluster capability probes (0 = startup only)",
    )
    max_workers: int = Field(
        default=20,
        validation_alias="MAX_WORKERS",
        description="Maximum number of concurrently processed handlers",
    )

    @property
    def watched_namespaces(self) -> list[str] | None:
        """Parse watched namespaces from comma-separated string.

        Returns:
            List of namespace names, or None to watch all namespaces
        """
        if self.namespaces:
            return [ns.strip() for ns in self.namespaces.split(",") if ns.strip()]
        return None

    def is_cluster_config_namespace(self, namespace: str) -> bool:
        """Return True when instances in ``namespace`` run cluster-scoped."""
        entries = [
            ns.strip() for ns in self.cluster_config_namespaces.split(",") if ns.strip()
        ]
        if not entries:
            return False
        if entries[0] == "*":
            return True
        return namespace in entries


# Global settings instance - initialized once at module import
settings = Settings()
