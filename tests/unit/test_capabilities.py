"""Unit tests for optional cluster API discovery."""

import asyncio
from dataclasses import FrozenInstanceError

import pytest
from kubernetes.client.rest import ApiException

from gitops_operator.constants import PROMETHEUS_API, ROUTE_API, TEMPLATE_API
from gitops_operator.services.capabilities import CapabilityProbe, ClusterCapabilities


class TestClusterCapabilities:
    def test_defaults_to_nothing_available(self):
        capabilities = ClusterCapabilities()

        assert capabilities.route_api_available() is False
        assert capabilities.prometheus_api_available() is False
        assert capabilities.template_api_available() is False
        assert capabilities.version_api_available() is False

    def test_snapshot_is_immutable(self):
        capabilities = ClusterCapabilities(route_api=True)

        with pytest.raises(FrozenInstanceError):
            capabilities.route_api = False

    def test_as_dict(self):
        assert ClusterCapabilities(prometheus_api=True).as_dict() == {
            "route_api": False,
            "prometheus_api": True,
            "template_api": False,
            "version_api": False,
        }


class TestCapabilityProbe:
    @pytest.mark.asyncio
    async def test_served_apis_are_available(self, fake):
        fake.served_apis = {ROUTE_API, PROMETHEUS_API}

        snapshot = await CapabilityProbe(fake).probe()

        assert snapshot.route_api_available() is True
        assert snapshot.prometheus_api_available() is True
        assert snapshot.template_api_available() is False

    @pytest.mark.asyncio
    async def test_each_api_probed_independently(self, fake):
        fake.discovery_errors[TEMPLATE_API] = ApiException(status=500)
        fake.served_apis = {ROUTE_API}

        snapshot = await CapabilityProbe(fake).probe()

        probed = [call["group"] for call in fake.calls_to("custom", "get_api_resources")]
        assert len(probed) == 4
        assert snapshot.route_api_available() is True

    @pytest.mark.asyncio
    async def test_not_found_turns_flag_off(self, fake):
        fake.served_apis = {ROUTE_API}
        probe = CapabilityProbe(fake)
        await probe.probe()

        fake.served_apis = set()
        snapshot = await probe.probe()

        assert snapshot.route_api_available() is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [ApiException(status=503), ApiException(status=403), asyncio.TimeoutError()],
    )
    async def test_other_failures_keep_last_known_value(self, fake, error):
        fake.served_apis = {ROUTE_API}
        probe = CapabilityProbe(fake)
        await probe.probe()

        fake.served_apis = set()
        fake.discovery_errors[ROUTE_API] = error
        snapshot = await probe.probe()

        assert snapshot.route_api_available() is True

    @pytest.mark.asyncio
    async def test_probe_publishes_new_snapshot(self, fake):
        probe = CapabilityProbe(fake)
        before = probe.snapshot

        fake.served_apis = {PROMETHEUS_API}
        after = await probe.probe()

        assert probe.snapshot is after
        assert before.prometheus_api_available() is False
        assert after.prometheus_api_available() is True

    @pytest.mark.asyncio
    async def test_refresh_loop_reprobes_until_cancelled(self, fake):
        probe = CapabilityProbe(fake)
        fake.served_apis = {ROUTE_API}

        task = asyncio.create_task(probe.run_refresh_loop(0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert probe.snapshot.route_api_available() is True
