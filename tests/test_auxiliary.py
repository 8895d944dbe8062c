"""Tests for ConfigMap and Service reconciliation."""

from __future__ import annotations

import pytest
from k8s_mock import MockKubeState, create_mock_clients, make_config_map, make_service
from kubernetes_asyncio.client import ApiException

from chi_operator.auxiliary import AuxiliaryReconciler

NAMESPACE = "clickhouse"


@pytest.fixture
def state() -> MockKubeState:
    return MockKubeState()


@pytest.fixture
def reconciler(state: MockKubeState) -> AuxiliaryReconciler:
    return AuxiliaryReconciler(create_mock_clients(state))


class TestConfigMaps:
    """Tests for reconcile_config_map."""

    @pytest.mark.asyncio
    async def test_creates_when_absent(
        self, state: MockKubeState, reconciler: AuxiliaryReconciler
    ) -> None:
        await reconciler.reconcile_config_map(make_config_map("chi-demo-common", {"a": "1"}))

        assert len(state.calls_for("create_config_map")) == 1
        assert state.calls_for("replace_config_map") == []
        assert state.config_maps[(NAMESPACE, "chi-demo-common")].data == {"a": "1"}

    @pytest.mark.asyncio
    async def test_replaces_when_present(
        self, state: MockKubeState, reconciler: AuxiliaryReconciler
    ) -> None:
        state.add_config_map(make_config_map("chi-demo-common", {"a": "1"}))

        await reconciler.reconcile_config_map(make_config_map("chi-demo-common", {"a": "2"}))

        assert state.calls_for("create_config_map") == []
        assert len(state.calls_for("replace_config_map")) == 1
        assert state.config_maps[(NAMESPACE, "chi-demo-common")].data == {"a": "2"}

    @pytest.mark.asyncio
    async def test_read_error_propagates(
        self, state: MockKubeState, reconciler: AuxiliaryReconciler
    ) -> None:
        state.fail("read_config_map", status=403, reason="Forbidden")

        with pytest.raises(ApiException) as exc_info:
            await reconciler.reconcile_config_map(make_config_map("chi-demo-common", {}))

        assert exc_info.value.status == 403
        assert state.calls_for("create_config_map") == []


class TestServices:
    """Tests for reconcile_service."""

    @pytest.mark.asyncio
    async def test_creates_when_absent(
        self, state: MockKubeState, reconciler: AuxiliaryReconciler
    ) -> None:
        await reconciler.reconcile_service(make_service("chi-demo-0-0"))

        assert len(state.calls_for("create_service")) == 1
        assert state.services[(NAMESPACE, "chi-demo-0-0")].spec.cluster_ip == "10.96.0.10"

    @pytest.mark.asyncio
    async def test_update_preserves_cluster_ip(
        self, state: MockKubeState, reconciler: AuxiliaryReconciler
    ) -> None:
        """Test the assigned cluster IP and resourceVersion are carried over."""
        state.add_service(make_service("chi-demo-0-0"), cluster_ip="10.96.0.42")

        await reconciler.reconcile_service(make_service("chi-demo-0-0", port=9000))

        replaces = state.calls_for("replace_service")
        assert len(replaces) == 1
        assert replaces[0].body.spec.cluster_ip == "10.96.0.42"
        stored = state.services[(NAMESPACE, "chi-demo-0-0")]
        assert stored.spec.cluster_ip == "10.96.0.42"
        assert stored.spec.ports[0].port == 9000

    @pytest.mark.asyncio
    async def test_reapplying_is_idempotent(
        self, state: MockKubeState, reconciler: AuxiliaryReconciler
    ) -> None:
        await reconciler.reconcile_service(make_service("chi-demo-0-0"))
        await reconciler.reconcile_service(make_service("chi-demo-0-0"))
        await reconciler.reconcile_service(make_service("chi-demo-0-0"))

        assert len(state.calls_for("create_service")) == 1
        assert len(state.calls_for("replace_service")) == 2
        assert state.services[(NAMESPACE, "chi-demo-0-0")].spec.cluster_ip == "10.96.0.10"

    @pytest.mark.asyncio
    async def test_replace_rejection_propagates(
        self, state: MockKubeState, reconciler: AuxiliaryReconciler
    ) -> None:
        state.add_service(make_service("chi-demo-0-0"), cluster_ip="10.96.0.42")
        state.fail("replace_service", status=500)

        with pytest.raises(ApiException):
            await reconciler.reconcile_service(make_service("chi-demo-0-0"))
