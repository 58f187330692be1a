"""
Unit tests for the kopf handlers.

Handlers are called directly with a memo wired the way the startup handler
wires it, backed by the in-memory API.
"""

from unittest.mock import MagicMock

import kopf
import pytest
from kubernetes.client.rest import ApiException

from gitops_operator.constants import (
    DELETION_FINALIZER,
    MANAGED_BY_LABEL,
    NAMESPACE_EVENT_ANNOTATION,
    RBAC_COMPONENTS,
)
from gitops_operator.handlers.argocd import (
    StatusWrapper,
    delete_argocd,
    ensure_argocd,
    resync_argocd,
    update_argocd,
)
from gitops_operator.handlers.namespace import (
    cleanup_namespace,
    list_instance_names,
    namespace_event,
)
from gitops_operator.models import ArgoCDInstance
from gitops_operator.services import (
    CapabilityProbe,
    InstanceLifecycle,
    NamespaceEventFilter,
    NamespaceTransition,
    RBACPropagator,
)
from gitops_operator.utils.locks import InstanceLocks
from tests.fixtures.argocd import argocd_body, stored_argocd
from tests.fixtures.fake_kubernetes import secret_namespaces

PAIR_NAMES = sorted(f"demo-{component}" for component in RBAC_COMPONENTS)


def _make_patch():
    """Return a kopf-like Patch object with a nested status dict."""
    p = MagicMock()
    p.status = {}
    return p


def _make_memo(fake) -> kopf.Memo:
    memo = kopf.Memo()
    memo.apis = fake
    memo.locks = InstanceLocks()
    memo.namespace_filter = NamespaceEventFilter()
    memo.lifecycle = InstanceLifecycle(fake)
    memo.capability_probe = CapabilityProbe(fake)
    return memo


def _handler_kwargs(fake, memo, patch=None):
    body = stored_argocd(fake)
    return {
        "spec": body["spec"],
        "name": body["metadata"]["name"],
        "namespace": body["metadata"]["namespace"],
        "patch": patch if patch is not None else _make_patch(),
        "body": body,
        "meta": body["metadata"],
        "memo": memo,
    }


async def _seed_namespaces(fake, memo):
    for name in fake.names("Namespace"):
        await namespace_event(
            event={"type": None}, name=name, labels=fake.namespace_labels(name), memo=memo
        )


class TestStatusWrapper:
    def test_attribute_and_item_access(self):
        raw = {}
        status = StatusWrapper(raw)

        status.phase = "Ready"
        status["message"] = "ok"

        assert raw == {"phase": "Ready", "message": "ok"}
        assert status.message == "ok"
        assert status.missing is None

    def test_delete_missing_key_is_silent(self):
        status = StatusWrapper({"phase": "Ready"})

        del status["phase"]
        del status["phase"]

        assert status.to_dict() == {}


class TestArgoCDHandlers:
    @pytest.mark.asyncio
    async def test_create_reconciles_and_writes_status(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        patch = _make_patch()

        result = await ensure_argocd(**_handler_kwargs(demo_cluster, memo, patch))

        assert result is None
        assert patch.status["managedNamespaces"] == ["ns1", "ns2"]
        assert patch.status["phase"] == "Degraded"
        assert {c["type"] for c in patch.status["conditions"]} >= {"Ready", "Degraded"}
        assert demo_cluster.names("RoleBinding", "ns2") == PAIR_NAMES
        assert secret_namespaces(demo_cluster, "ns1", "demo-secret") == "ns1,ns2"

    @pytest.mark.asyncio
    async def test_update_picks_up_new_namespace(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        await ensure_argocd(**_handler_kwargs(demo_cluster, memo))

        demo_cluster.set_namespace_labels("ns3", {MANAGED_BY_LABEL: "ns1"})
        await update_argocd(**_handler_kwargs(demo_cluster, memo))

        assert demo_cluster.names("Role", "ns3") == PAIR_NAMES
        assert secret_namespaces(demo_cluster, "ns1", "demo-secret") == "ns1,ns2,ns3"

    @pytest.mark.asyncio
    async def test_api_failure_becomes_temporary_error(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        demo_cluster.fail("core", "list_namespace", ApiException(status=503))

        with pytest.raises(kopf.TemporaryError):
            await ensure_argocd(**_handler_kwargs(demo_cluster, memo))

    @pytest.mark.asyncio
    async def test_delete_requeues_between_passes(self, demo_cluster, monkeypatch):
        from gitops_operator.settings import settings

        monkeypatch.setattr(settings, "deletion_requeue_delay_seconds", 2)
        memo = _make_memo(demo_cluster)
        await ensure_argocd(**_handler_kwargs(demo_cluster, memo))
        demo_cluster.mark_deleting("argoproj.io", "v1beta1", "argocds", "ns1", "demo")

        with pytest.raises(kopf.TemporaryError) as exc_info:
            await delete_argocd(**_handler_kwargs(demo_cluster, memo))
        assert exc_info.value.delay == 2
        assert DELETION_FINALIZER in stored_argocd(demo_cluster)["metadata"]["finalizers"]

        await delete_argocd(**_handler_kwargs(demo_cluster, memo), retry=1)

        assert stored_argocd(demo_cluster) is None
        assert len(memo.locks) == 0

    @pytest.mark.asyncio
    async def test_resync_skips_deleting_instance(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        kwargs = _handler_kwargs(demo_cluster, memo)
        kwargs["meta"] = {**kwargs["meta"], "deletionTimestamp": "2024-01-01T00:00:00Z"}

        await resync_argocd(**kwargs)

        assert demo_cluster.names("Role") == []

    @pytest.mark.asyncio
    async def test_resync_swallows_retryable_failure(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        demo_cluster.fail("core", "list_namespace", ApiException(status=500))

        await resync_argocd(**_handler_kwargs(demo_cluster, memo))

        assert demo_cluster.names("Role") == []


class TestNamespaceHandler:
    @pytest.mark.asyncio
    async def test_label_removal_revokes_access_immediately(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        await ensure_argocd(**_handler_kwargs(demo_cluster, memo))
        await _seed_namespaces(demo_cluster, memo)

        demo_cluster.set_namespace_labels("ns2", {})
        await namespace_event(
            event={"type": "MODIFIED"}, name="ns2", labels={}, memo=memo
        )

        assert demo_cluster.names("Role", "ns2") == []
        assert demo_cluster.names("RoleBinding", "ns2") == []
        assert secret_namespaces(demo_cluster, "ns1", "demo-secret") == "ns1"
        annotations = stored_argocd(demo_cluster)["metadata"]["annotations"]
        assert NAMESPACE_EVENT_ANNOTATION in annotations

    @pytest.mark.asyncio
    async def test_unrelated_change_does_nothing(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        await _seed_namespaces(demo_cluster, memo)
        demo_cluster.calls.clear()

        await namespace_event(
            event={"type": "MODIFIED"},
            name="ns2",
            labels={MANAGED_BY_LABEL: "ns1", "team": "a"},
            memo=memo,
        )

        assert demo_cluster.calls == []

    @pytest.mark.asyncio
    async def test_namespace_deletion_cleans_up(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        await ensure_argocd(**_handler_kwargs(demo_cluster, memo))
        await _seed_namespaces(demo_cluster, memo)

        await namespace_event(
            event={"type": "DELETED"},
            name="ns2",
            labels={MANAGED_BY_LABEL: "ns1"},
            memo=memo,
        )

        assert secret_namespaces(demo_cluster, "ns1", "demo-secret") == "ns1"
        assert demo_cluster.names("RoleBinding", "ns2") == []

    @pytest.mark.asyncio
    async def test_owner_namespace_relabel_only_requests_reconcile(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        await ensure_argocd(**_handler_kwargs(demo_cluster, memo))
        await _seed_namespaces(demo_cluster, memo)

        await namespace_event(event={"type": "MODIFIED"}, name="ns1", labels={}, memo=memo)

        assert demo_cluster.names("Role", "ns1") == PAIR_NAMES
        assert NAMESPACE_EVENT_ANNOTATION in (
            stored_argocd(demo_cluster)["metadata"]["annotations"]
        )

    @pytest.mark.asyncio
    async def test_orphaned_rbac_removed_when_owner_has_no_instances(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        orphan = ArgoCDInstance.from_body(argocd_body(name="gone", namespace="ns9"))
        await RBACPropagator(demo_cluster).sync_rbac_for_namespace(orphan, "ns3", True)

        cleaned = await cleanup_namespace(memo, NamespaceTransition("ns3", "ns9", None))

        assert cleaned == 0
        assert demo_cluster.names("Role", "ns3") == []

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_left_to_reconcile(self, demo_cluster):
        memo = _make_memo(demo_cluster)
        await ensure_argocd(**_handler_kwargs(demo_cluster, memo))
        demo_cluster.fail(
            "rbac", "list_namespaced_role_binding", ApiException(status=500)
        )

        cleaned = await cleanup_namespace(memo, NamespaceTransition("ns2", "ns1", None))

        assert cleaned == 0
        assert demo_cluster.names("Role", "ns2") == PAIR_NAMES

    @pytest.mark.asyncio
    async def test_list_instance_names(self, demo_cluster):
        assert await list_instance_names(demo_cluster, "ns1") == ["demo"]
        assert await list_instance_names(demo_cluster, "ns3") == []
