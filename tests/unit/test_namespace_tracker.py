"""
Unit tests for namespace membership tracking.

Runs the tracker against the in-memory API so label writes, selectors and
resourceVersion conflicts behave like the real API server.
"""

import pytest
from kubernetes.client.rest import ApiException

from gitops_operator.constants import MANAGED_BY_LABEL, SOURCE_NAMESPACE_LABEL
from gitops_operator.errors import KubernetesAPIError
from gitops_operator.models import ArgoCDInstance
from gitops_operator.services.namespaces import NamespaceTracker
from tests.fixtures.argocd import argocd_body


def instance_with_sources(*sources: str) -> ArgoCDInstance:
    return ArgoCDInstance.from_body(
        argocd_body(spec={"sourceNamespaces": list(sources)})
    )


class TestManagedNamespaces:
    @pytest.mark.asyncio
    async def test_includes_labeled_namespaces_and_own(self, demo_cluster, demo_instance):
        tracker = NamespaceTracker(demo_cluster)

        managed = await tracker.compute_managed_namespaces(demo_instance)

        assert managed == {"ns1", "ns2"}

    @pytest.mark.asyncio
    async def test_ignores_namespaces_of_other_owners(self, fake, demo_instance):
        fake.add_namespace("ns1")
        fake.add_namespace("team-a", {MANAGED_BY_LABEL: "other"})
        fake.add_namespace("team-b", {MANAGED_BY_LABEL: "ns1"})

        managed = await NamespaceTracker(fake).compute_managed_namespaces(demo_instance)

        assert managed == {"ns1", "team-b"}

    @pytest.mark.asyncio
    async def test_list_failure_propagates(self, demo_cluster, demo_instance):
        demo_cluster.fail("core", "list_namespace", ApiException(status=500))

        with pytest.raises(KubernetesAPIError) as exc_info:
            await NamespaceTracker(demo_cluster).compute_managed_namespaces(demo_instance)

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_ensure_managed_label_is_idempotent(self, demo_cluster, demo_instance):
        tracker = NamespaceTracker(demo_cluster)

        assert await tracker.ensure_managed_label(demo_instance) is True
        assert await tracker.ensure_managed_label(demo_instance) is False
        assert demo_cluster.namespace_labels("ns1")[MANAGED_BY_LABEL] == "ns1"
        assert len(demo_cluster.calls_to("core", "replace_namespace")) == 1

    @pytest.mark.asyncio
    async def test_label_write_conflict_is_retryable(self, demo_cluster, demo_instance):
        demo_cluster.fail("core", "replace_namespace", ApiException(status=409))

        with pytest.raises(KubernetesAPIError) as exc_info:
            await NamespaceTracker(demo_cluster).ensure_managed_label(demo_instance)

        assert exc_info.value.is_conflict
        assert exc_info.value.retryable is True
        assert MANAGED_BY_LABEL not in demo_cluster.namespace_labels("ns1")

    @pytest.mark.asyncio
    async def test_remove_managed_by_labels_only_touches_own_labels(
        self, demo_cluster, demo_instance
    ):
        demo_cluster.add_namespace("foreign", {MANAGED_BY_LABEL: "elsewhere"})
        tracker = NamespaceTracker(demo_cluster)

        removed = await tracker.remove_managed_by_labels(
            demo_instance, {"ns2", "foreign", "missing"}
        )

        assert removed == ["ns2"]
        assert MANAGED_BY_LABEL not in demo_cluster.namespace_labels("ns2")
        assert demo_cluster.namespace_labels("foreign")[MANAGED_BY_LABEL] == "elsewhere"


class TestSourceNamespaces:
    @pytest.mark.asyncio
    async def test_namespace_scoped_instance_has_no_sources(self, demo_cluster):
        instance = instance_with_sources("ns3")

        sources = await NamespaceTracker(demo_cluster).compute_source_namespaces(
            instance, cluster_scoped=False
        )

        assert sources == set()
        assert SOURCE_NAMESPACE_LABEL not in demo_cluster.namespace_labels("ns3")

    @pytest.mark.asyncio
    async def test_labels_existing_declared_namespaces(self, demo_cluster):
        instance = instance_with_sources("ns3", "does-not-exist")

        sources = await NamespaceTracker(demo_cluster).compute_source_namespaces(
            instance, cluster_scoped=True
        )

        assert sources == {"ns3"}
        assert demo_cluster.namespace_labels("ns3")[SOURCE_NAMESPACE_LABEL] == "ns1"

    @pytest.mark.asyncio
    async def test_removes_labels_no_longer_declared(self, demo_cluster):
        tracker = NamespaceTracker(demo_cluster)
        await tracker.compute_source_namespaces(
            instance_with_sources("ns2", "ns3"), cluster_scoped=True
        )

        sources = await tracker.compute_source_namespaces(
            instance_with_sources("ns3"), cluster_scoped=True
        )

        assert sources == {"ns3"}
        assert SOURCE_NAMESPACE_LABEL not in demo_cluster.namespace_labels("ns2")

    @pytest.mark.asyncio
    async def test_relabels_after_manual_removal(self, demo_cluster):
        tracker = NamespaceTracker(demo_cluster)
        instance = instance_with_sources("ns3")
        await tracker.compute_source_namespaces(instance, cluster_scoped=True)

        demo_cluster.set_namespace_labels("ns3", {})
        await tracker.compute_source_namespaces(instance, cluster_scoped=True)

        assert demo_cluster.namespace_labels("ns3")[SOURCE_NAMESPACE_LABEL] == "ns1"

    @pytest.mark.asyncio
    async def test_skips_namespace_claimed_by_other_instance(self, demo_cluster):
        demo_cluster.set_namespace_labels("ns3", {SOURCE_NAMESPACE_LABEL: "other"})

        sources = await NamespaceTracker(demo_cluster).compute_source_namespaces(
            instance_with_sources("ns3"), cluster_scoped=True
        )

        assert sources == set()
        assert demo_cluster.namespace_labels("ns3")[SOURCE_NAMESPACE_LABEL] == "other"

    @pytest.mark.asyncio
    async def test_scoping_follows_settings(self, demo_cluster, monkeypatch):
        from gitops_operator.settings import settings

        monkeypatch.setattr(settings, "cluster_config_namespaces", "ns1")

        sources = await NamespaceTracker(demo_cluster).compute_source_namespaces(
            instance_with_sources("ns3")
        )

        assert sources == {"ns3"}

    @pytest.mark.asyncio
    async def test_remove_source_labels(self, demo_cluster):
        tracker = NamespaceTracker(demo_cluster)
        await tracker.compute_source_namespaces(
            instance_with_sources("ns2", "ns3"), cluster_scoped=True
        )

        removed = await tracker.remove_source_labels(instance_with_sources())

        assert removed == ["ns2", "ns3"]
        assert SOURCE_NAMESPACE_LABEL not in demo_cluster.namespace_labels("ns3")
