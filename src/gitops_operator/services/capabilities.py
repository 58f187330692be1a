"""
Discovery of optional cluster APIs.

Some resources the operator manages only exist on certain distributions
(OpenShift Routes and Templates) or with certain add-ons installed
(Prometheus Operator ServiceMonitors). The probe asks the API server for each
group/version once per refresh and hands the reconcilers an immutable
snapshot. Reconcilers never query discovery themselves.
"""

import asyncio
import logging
from dataclasses import dataclass, fields, replace

from kubernetes.client.rest import ApiException

from ..constants import PROMETHEUS_API, ROUTE_API, TEMPLATE_API, VERSION_API
from ..observability.metrics import metrics_collector
from ..utils.kubernetes import KubernetesApis, call_api

logger = logging.getLogger(__name__)

# Snapshot field -> (group, version) probed for it
PROBED_APIS = {
    "route_api": ROUTE_API,
    "prometheus_api": PROMETHEUS_API,
    "template_api": TEMPLATE_API,
    "version_api": VERSION_API,
}


@dataclass(frozen=True)
class ClusterCapabilities:
    """Read-only availability flags for optional cluster APIs."""

    route_api: bool = False
    prometheus_api: bool = False
    template_api: bool = False
    version_api: bool = False

    def route_api_available(self) -> bool:
        return self.route_api

    def prometheus_api_available(self) -> bool:
        return self.prometheus_api

    def template_api_available(self) -> bool:
        return self.template_api

    def version_api_available(self) -> bool:
        return self.version_api

    def as_dict(self) -> dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class CapabilityProbe:
    """
    Probes optional API groups and keeps the last known snapshot.

    A 404 from discovery means the API is not served. Any other failure
    (timeouts, 5xx, permission hiccups) leaves that flag at its last known
    value so a flaky API server does not toggle reconcilers on and off.
    """

    def __init__(self, apis: KubernetesApis):
        self.apis = apis
        self._snapshot = ClusterCapabilities()

    @property
    def snapshot(self) -> ClusterCapabilities:
        return self._snapshot

    async def _is_served(self, group: str, version: str, previous: bool) -> bool:
        try:
            await call_api(
                self.apis.custom.get_api_resources, group=group, version=version
            )
        except ApiException as e:
            if e.status == 404:
                return False
            logger.warning(
                f"Discovery of {group}/{version} failed with {e.status}, "
                f"keeping last known value {previous}"
            )
            return previous
        except Exception as e:
            logger.warning(
                f"Discovery of {group}/{version} failed: {e}, "
                f"keeping last known value {previous}"
            )
            return previous
        return True

    async def probe(self) -> ClusterCapabilities:
        """Probe every optional API independently and publish a new snapshot."""
        current = self._snapshot
        updates = {}
        for field_name, (group, version) in PROBED_APIS.items():
            updates[field_name] = await self._is_served(
                group, version, getattr(current, field_name)
            )

        snapshot = replace(current, **updates)
        if snapshot != current:
            logger.info(f"Cluster capabilities changed: {snapshot.as_dict()}")
        self._snapshot = snapshot
        metrics_collector.update_capabilities(snapshot.as_dict())
        return snapshot

    async def run_refresh_loop(self, interval: float) -> None:
        """Re-probe forever; cancelled by the operator cleanup handler."""
        while True:
            await asyncio.sleep(interval)
            await self.probe()
