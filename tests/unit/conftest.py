"""Shared fixtures for unit tests."""

import pytest

from gitops_operator.constants import (
    ARGOCD_GROUP,
    ARGOCD_PLURAL,
    ARGOCD_VERSION,
    MANAGED_BY_LABEL,
)
from gitops_operator.models import ArgoCDInstance
from tests.fixtures.argocd import MockStatus, argocd_body
from tests.fixtures.fake_kubernetes import FakeKubernetes


@pytest.fixture
def fake() -> FakeKubernetes:
    """Empty in-memory cluster."""
    return FakeKubernetes()


@pytest.fixture
def demo_cluster(fake: FakeKubernetes) -> FakeKubernetes:
    """
    ``demo`` in ``ns1`` with ``ns2`` labeled as managed by ``ns1``.

    The ArgoCD object is stored in the fake so finalizer patches land.
    """
    fake.add_namespace("ns1")
    fake.add_namespace("ns2", {MANAGED_BY_LABEL: "ns1"})
    fake.add_namespace("ns3")
    fake.add_custom_object(ARGOCD_GROUP, ARGOCD_VERSION, ARGOCD_PLURAL, argocd_body())
    return fake


@pytest.fixture
def demo_instance() -> ArgoCDInstance:
    return ArgoCDInstance.from_body(argocd_body())


@pytest.fixture
def status() -> MockStatus:
    return MockStatus()
