"""
Synchronization of the per-instance cluster access secret.

``<instance>-secret`` tells the GitOps platform which namespaces of the local
cluster it may deploy into. Its ``namespaces`` key holds the managed
namespace set as a sorted, comma-joined string. The secret is created by the
cluster secret reconciler step and is never deleted by the operator.
"""

import base64
import logging
from collections.abc import Iterable

from kubernetes.client.rest import ApiException

from ..constants import CLUSTER_SECRET_NAMESPACES_KEY, CLUSTER_SECRET_SUFFIX
from ..models import ArgoCDInstance
from ..observability.metrics import metrics_collector
from ..utils.kubernetes import KubernetesApis, api_error, call_api

logger = logging.getLogger(__name__)


def cluster_secret_name(instance_name: str) -> str:
    return f"{instance_name}{CLUSTER_SECRET_SUFFIX}"


def encode_data(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_data(value: str | None) -> str:
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")


def format_namespaces(namespaces: Iterable[str]) -> str:
    """Render a namespace set in the secret's canonical form."""
    return ",".join(sorted({ns.strip() for ns in namespaces if ns.strip()}))


def parse_namespaces(value: str | None) -> list[str]:
    """Parse a comma-joined namespace list; blanks and whitespace are dropped."""
    if not value:
        return []
    return sorted({ns.strip() for ns in value.split(",") if ns.strip()})


class ClusterSecretSynchronizer:
    """Keeps the secret's namespace list equal to the managed namespace set."""

    def __init__(self, apis: KubernetesApis):
        self.apis = apis

    async def _read(self, namespace: str, name: str):
        try:
            return await call_api(
                self.apis.core.read_namespaced_secret, name=name, namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise api_error(e, f"read secret {namespace}/{name}") from e

    async def _write_namespaces(self, secret, namespaces: Iterable[str]) -> None:
        name = secret.metadata.name
        namespace = secret.metadata.namespace
        data = dict(secret.data or {})
        data[CLUSTER_SECRET_NAMESPACES_KEY] = encode_data(format_namespaces(namespaces))
        secret.data = data
        try:
            # The body still carries the resourceVersion that was read
            await call_api(
                self.apis.core.replace_namespaced_secret,
                name=name,
                namespace=namespace,
                body=secret,
            )
        except ApiException as e:
            raise api_error(e, f"update secret {namespace}/{name}") from e
        metrics_collector.record_cluster_secret_update(namespace, name)

    async def current_namespaces(self, instance: ArgoCDInstance) -> list[str] | None:
        """The namespace list stored in the secret, None if it does not exist."""
        secret = await self._read(instance.namespace, cluster_secret_name(instance.name))
        if secret is None:
            return None
        return parse_namespaces(
            decode_data((secret.data or {}).get(CLUSTER_SECRET_NAMESPACES_KEY))
        )

    async def sync_cluster_secret(
        self, instance: ArgoCDInstance, managed_namespaces: set[str]
    ) -> bool:
        """
        Rewrite the secret's namespace list when it differs from the managed set.

        Returns:
            True if the secret was updated, False if it was missing or current
        """
        name = cluster_secret_name(instance.name)
        secret = await self._read(instance.namespace, name)
        if secret is None:
            logger.debug(f"Cluster secret {instance.namespace}/{name} not found")
            return False

        current = parse_namespaces(
            decode_data((secret.data or {}).get(CLUSTER_SECRET_NAMESPACES_KEY))
        )
        desired = parse_namespaces(format_namespaces(managed_namespaces))
        if current == desired:
            return False

        await self._write_namespaces(secret, desired)
        logger.info(
            f"Cluster secret {instance.namespace}/{name} now lists "
            f"{len(desired)} namespaces",
            extra={"managed_namespaces": desired, "namespace": instance.namespace},
        )
        return True

    async def remove_namespace(
        self, instance_namespace: str, instance_name: str, namespace: str
    ) -> bool:
        """
        Drop one namespace from an instance's secret.

        Returns:
            True if the secret was updated
        """
        name = cluster_secret_name(instance_name)
        secret = await self._read(instance_namespace, name)
        if secret is None:
            return False

        current = parse_namespaces(
            decode_data((secret.data or {}).get(CLUSTER_SECRET_NAMESPACES_KEY))
        )
        if namespace not in current:
            return False

        await self._write_namespaces(secret, [ns for ns in current if ns != namespace])
        logger.info(f"Removed namespace {namespace} from secret {instance_namespace}/{name}")
        return True
