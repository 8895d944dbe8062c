"""Tests for the StatefulSet cache and read helpers."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest
from k8s_mock import MockKubeState, create_mock_clients, make_statefulset
from kubernetes_asyncio.client import ApiException

from chi_operator.kube import (
    StatefulSetCache,
    is_conflict,
    is_not_found,
    not_found_error,
    read_statefulset,
)

NAMESPACE = "clickhouse"


class TestErrorHelpers:
    """Tests for API error classification."""

    def test_is_not_found(self) -> None:
        assert is_not_found(ApiException(status=404)) is True
        assert is_not_found(ApiException(status=500)) is False
        assert is_not_found(ValueError("404")) is False

    def test_is_conflict(self) -> None:
        assert is_conflict(ApiException(status=409)) is True
        assert is_conflict(ApiException(status=404)) is False

    def test_not_found_error(self) -> None:
        error = not_found_error(NAMESPACE, "chi-demo-0-0")
        assert is_not_found(error)
        assert "clickhouse/chi-demo-0-0" in error.reason


class TestStatefulSetCache:
    """Tests for StatefulSetCache."""

    def test_not_synced_until_listed(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        assert cache.synced is False

        cache.replace_all([make_statefulset("chi-demo-0-0")])

        assert cache.synced is True
        assert len(cache) == 1

    def test_get_returns_copy(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        cache.replace_all([make_statefulset("chi-demo-0-0")])

        first = cache.get(NAMESPACE, "chi-demo-0-0")
        first.spec.replicas = 5

        assert cache.get(NAMESPACE, "chi-demo-0-0").spec.replicas == 1

    def test_get_missing_raises_not_found(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        cache.replace_all([make_statefulset("chi-demo-0-0")])

        with pytest.raises(ApiException) as exc_info:
            cache.get(NAMESPACE, "chi-demo-9-9")
        assert exc_info.value.status == 404

        with pytest.raises(ApiException):
            cache.get("other", "chi-demo-0-0")

    def test_apply_events(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        cache.replace_all([])

        cache.apply_event({"type": "ADDED", "object": make_statefulset("chi-demo-0-0")})
        modified = make_statefulset("chi-demo-0-0", image="clickhouse/clickhouse-server:24.3")
        cache.apply_event({"type": "MODIFIED", "object": modified})

        image = cache.get(NAMESPACE, "chi-demo-0-0").spec.template.spec.containers[0].image
        assert image == "clickhouse/clickhouse-server:24.3"

        cache.apply_event({"type": "DELETED", "object": modified})
        assert len(cache) == 0

    def test_apply_event_ignores_unknown(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        cache.replace_all([])

        cache.apply_event({"type": "BOOKMARK", "object": make_statefulset("chi-demo-0-0")})
        cache.apply_event({"type": "ADDED", "object": None})

        assert len(cache) == 0


class TestReadStatefulSet:
    """Tests for read_statefulset."""

    @pytest.mark.asyncio
    async def test_direct_read_without_lister(self) -> None:
        state = MockKubeState()
        state.add_statefulset(make_statefulset("chi-demo-0-0"))

        sts = await read_statefulset(create_mock_clients(state), NAMESPACE, "chi-demo-0-0")

        assert sts.metadata.name == "chi-demo-0-0"
        assert len(state.calls_for("read_statefulset")) == 1

    @pytest.mark.asyncio
    async def test_falls_back_while_cache_unsynced(self) -> None:
        state = MockKubeState()
        clients = create_mock_clients(state)
        state.add_statefulset(make_statefulset("chi-demo-0-0"))
        cache = StatefulSetCache(clients.apps_api, NAMESPACE)

        await read_statefulset(clients, NAMESPACE, "chi-demo-0-0", cache)

        assert len(state.calls_for("read_statefulset")) == 1

    @pytest.mark.asyncio
    async def test_falls_back_for_other_namespace(self) -> None:
        state = MockKubeState()
        clients = create_mock_clients(state)
        state.add_statefulset(make_statefulset("chi-demo-0-0", namespace="other"))
        cache = StatefulSetCache(clients.apps_api, NAMESPACE)
        cache.replace_all([])

        sts = await read_statefulset(clients, "other", "chi-demo-0-0", cache)

        assert sts.metadata.namespace == "other"
        assert len(state.calls_for("read_statefulset")) == 1

    @pytest.mark.asyncio
    async def test_synced_cache_serves_reads(self) -> None:
        state = MockKubeState()
        clients = create_mock_clients(state)
        cache = StatefulSetCache(clients.apps_api, NAMESPACE)
        cache.replace_all([make_statefulset("chi-demo-0-0")])

        await read_statefulset(clients, NAMESPACE, "chi-demo-0-0", cache)

        assert state.calls_for("read_statefulset") == []

    @pytest.mark.asyncio
    async def test_list_populates_cache(self) -> None:
        """Test the initial list used by run() fills and syncs the cache."""
        state = MockKubeState()
        clients = create_mock_clients(state)
        state.add_statefulset(make_statefulset("chi-demo-0-0"))
        state.add_statefulset(make_statefulset("chi-demo-0-1"))
        state.add_statefulset(make_statefulset("elsewhere", namespace="other"))
        cache = StatefulSetCache(clients.apps_api, NAMESPACE)

        listing = await clients.apps_api.list_namespaced_stateful_set(NAMESPACE)
        cache.replace_all(list(listing.items))

        assert cache.synced
        assert len(cache) == 2


class TestStatefulSetCacheRun:
    """Tests for StatefulSetCache.run() recovering from broken watches."""

    @staticmethod
    def _scripted(cache: StatefulSetCache, steps: list) -> list[bool]:
        """Replace one list-and-watch cycle with scripted steps.

        Each step is an exception to raise after syncing, or None to stop the
        cache. Returns the synced flag observed at the start of each cycle.
        """
        observed: list[bool] = []

        async def list_and_watch() -> None:
            observed.append(cache.synced)
            step = steps.pop(0)
            if step is None:
                cache.replace_all([make_statefulset("chi-demo-0-0")])
                cache.stop()
                return
            cache.replace_all([make_statefulset("chi-demo-0-0")])
            raise step

        cache._list_and_watch = list_and_watch  # type: ignore[method-assign]
        return observed

    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("chi_operator.kube.WATCH_RETRY_BACKOFF_SECONDS", 0)

    @pytest.mark.asyncio
    async def test_survives_dropped_connection(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        observed = self._scripted(cache, [aiohttp.ServerDisconnectedError(), None])

        await cache.run()

        assert observed == [False, False]
        assert cache.synced

    @pytest.mark.asyncio
    async def test_survives_request_timeout(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        observed = self._scripted(cache, [TimeoutError(), None])

        await cache.run()

        assert observed == [False, False]

    @pytest.mark.asyncio
    async def test_expired_watch_relists_unsynced(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        observed = self._scripted(cache, [ApiException(status=410), None])

        await cache.run()

        assert observed == [False, False]
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_api_error_retries(self) -> None:
        cache = StatefulSetCache(None, NAMESPACE)
        observed = self._scripted(
            cache, [ApiException(status=500), ApiException(status=503), None]
        )

        await cache.run()

        assert observed == [False, False, False]

    @pytest.mark.asyncio
    async def test_reads_fall_back_after_break(self) -> None:
        state = MockKubeState()
        clients = create_mock_clients(state)
        state.add_statefulset(make_statefulset("chi-demo-0-0"))
        cache = StatefulSetCache(clients.apps_api, NAMESPACE)
        cache.replace_all([make_statefulset("chi-demo-0-0")])

        async def broken() -> None:
            raise aiohttp.ClientConnectionError("connection reset")

        cache._list_and_watch = broken  # type: ignore[method-assign]
        task = asyncio.create_task(cache.run())
        while cache.synced:
            await asyncio.sleep(0)
        cache.stop()
        await task

        await read_statefulset(clients, NAMESPACE, "chi-demo-0-0", cache)

        assert len(state.calls_for("read_statefulset")) == 1
