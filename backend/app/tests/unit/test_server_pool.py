############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# test_server_pool.py: Unit tests for backend health and selection
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for ServerPool."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from backend.app.core.backends.client import ComfyUIClient
from backend.app.core.backends.models import (
    BackendDescriptor,
    BackendHealth,
    BackendKind,
    BackendState,
)
from backend.app.core.backends.pool import ServerPool, rank_backends
from backend.app.core.errors import BackendClientError


def _healthy(depth):
    return BackendState(health=BackendHealth.HEALTHY, queue_depth=depth)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRanking:

    def test_shortest_queue_wins(self, local_backend, remote_backend):
        ranked = rank_backends([(local_backend, _healthy(3)), (remote_backend, _healthy(1))])
        assert ranked == [remote_backend, local_backend]

    def test_equal_depth_uses_priority(self, local_backend, remote_backend):
        # remote_backend has the lower priority value
        ranked = rank_backends([(local_backend, _healthy(2)), (remote_backend, _healthy(2))])
        assert ranked == [remote_backend, local_backend]

    def test_equal_depth_and_priority_prefers_local(self):
        local = BackendDescriptor("local", BackendKind.LOCAL, "http://l:8188", priority=1)
        remote = BackendDescriptor("remote-1", BackendKind.REMOTE, "http://r:8188", priority=1)

        ranked = rank_backends([(remote, _healthy(0)), (local, _healthy(0))])
        assert ranked == [local, remote]

    def test_unknown_depth_sorts_last(self, local_backend, remote_backend):
        ranked = rank_backends([(remote_backend, _healthy(None)), (local_backend, _healthy(10))])
        assert ranked == [local_backend, remote_backend]

    def test_unhealthy_excluded(self, local_backend, remote_backend):
        down = BackendState(health=BackendHealth.UNHEALTHY, queue_depth=0)
        unknown = BackendState()

        assert rank_backends([(local_backend, down), (remote_backend, unknown)]) == []


class TestConstruction:

    def test_rejects_two_local_backends(self, local_backend):
        other = BackendDescriptor("local-2", BackendKind.LOCAL, "http://other:8188")
        with pytest.raises(ValueError):
            ServerPool([local_backend, other], clients={})

    def test_rejects_duplicate_ids(self, local_backend):
        dup = BackendDescriptor("local", BackendKind.REMOTE, "http://other:8188")
        with pytest.raises(ValueError):
            ServerPool([local_backend, dup], clients={})

    def test_from_settings(self, mock_settings):
        pool = ServerPool.from_settings(mock_settings)

        ids = [d.id for d in pool.descriptors]
        assert ids == ["local", "remote-1", "remote-2"]
        assert pool.get_descriptor("local").kind == BackendKind.LOCAL
        assert pool.get_descriptor("local").priority == 2
        assert pool.get_descriptor("remote-2").base_url == "http://remote-b:8188"
        assert pool.get_descriptor("remote-2").priority == 1

        client = pool.client_for("remote-1")
        assert isinstance(client, ComfyUIClient)
        assert client.max_retries == 2
        assert pool.probe_timeout == 5.0

    def test_from_settings_without_local(self, mock_settings):
        mock_settings.comfyui_api_url = ""
        pool = ServerPool.from_settings(mock_settings)
        assert [d.kind for d in pool.descriptors] == [BackendKind.REMOTE, BackendKind.REMOTE]

    def test_initial_state_unknown(self, pool_factory, backend_client_factory):
        pool = pool_factory({"local": backend_client_factory()})
        assert pool.get_state("local").health == BackendHealth.UNKNOWN
        assert pool.is_stale()


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_probe_records_depth(self, pool_factory, backend_client_factory):
        pool = pool_factory({"local": backend_client_factory(depth=4)})
        await pool.check_health()

        state = pool.get_state("local")
        assert state.is_healthy
        assert state.queue_depth == 4
        assert state.last_checked_at is not None

    @pytest.mark.asyncio
    async def test_failed_ping_is_unhealthy(self, pool_factory, backend_client_factory):
        client = backend_client_factory(healthy=False)
        pool = pool_factory({"local": client})
        await pool.check_health()

        state = pool.get_state("local")
        assert state.health == BackendHealth.UNHEALTHY
        assert state.last_error == "ping failed"
        client.query_queue_depth.assert_not_called()

    @pytest.mark.asyncio
    async def test_depth_failure_keeps_backend_healthy(self, pool_factory, backend_client_factory):
        client = backend_client_factory()
        client.query_queue_depth = AsyncMock(side_effect=BackendClientError("boom"))
        pool = pool_factory({"local": client})
        await pool.check_health()

        state = pool.get_state("local")
        assert state.is_healthy
        assert state.queue_depth is None

    @pytest.mark.asyncio
    async def test_raising_probe_is_unhealthy(self, pool_factory, backend_client_factory):
        client = backend_client_factory()
        client.ping = AsyncMock(side_effect=RuntimeError("unexpected"))
        pool = pool_factory({"local": client, "remote-1": backend_client_factory()})
        await pool.check_health()

        assert pool.get_state("local").health == BackendHealth.UNHEALTHY
        assert pool.get_state("local").last_error == "unexpected"
        assert pool.get_state("remote-1").is_healthy

    @pytest.mark.asyncio
    async def test_hanging_probe_times_out_alone(self, pool_factory, backend_client_factory):
        async def hang():
            await asyncio.sleep(10)
            return True

        slow = backend_client_factory()
        slow.ping = AsyncMock(side_effect=hang)
        pool = pool_factory(
            {"local": slow, "remote-1": backend_client_factory()},
            probe_timeout=0.05,
        )

        await asyncio.wait_for(pool.check_health(), timeout=2)

        assert pool.get_state("local").health == BackendHealth.UNHEALTHY
        assert "timed out" in pool.get_state("local").last_error
        assert pool.get_state("remote-1").is_healthy


class TestSelectBest:

    @pytest.mark.asyncio
    async def test_picks_least_loaded(self, pool_factory, backend_client_factory, remote_backend):
        pool = pool_factory(
            {
                "local": backend_client_factory(depth=5),
                "remote-1": backend_client_factory(depth=0),
            }
        )
        assert await pool.select_best() == remote_backend

    @pytest.mark.asyncio
    async def test_none_when_all_unhealthy(self, pool_factory, backend_client_factory):
        pool = pool_factory(
            {
                "local": backend_client_factory(healthy=False),
                "remote-1": backend_client_factory(healthy=False),
            }
        )
        assert await pool.select_best() is None

    @pytest.mark.asyncio
    async def test_fresh_cache_is_not_reprobed(self, pool_factory, backend_client_factory):
        client = backend_client_factory()
        pool = pool_factory({"local": client}, stale_after=5.0, clock=FakeClock())

        await pool.select_best()
        await pool.select_best()
        assert client.ping.await_count == 1

    @pytest.mark.asyncio
    async def test_stale_cache_is_reprobed(
        self, pool_factory, backend_client_factory, local_backend
    ):
        client = backend_client_factory()
        clock = FakeClock()
        pool = pool_factory({"local": client}, stale_after=5.0, clock=clock)

        assert await pool.select_best() == local_backend
        client.ping.return_value = False
        clock.now += 6

        assert pool.is_stale()
        assert await pool.select_best() is None
        assert client.ping.await_count == 2

    @pytest.mark.asyncio
    async def test_never_raises(self, pool_factory, backend_client_factory, monkeypatch):
        pool = pool_factory({"local": backend_client_factory()})
        monkeypatch.setattr(pool, "check_health", AsyncMock(side_effect=RuntimeError("db")))

        assert await pool.select_best() is None

    @pytest.mark.asyncio
    async def test_reserve_shifts_selection(
        self, pool_factory, backend_client_factory, local_backend, remote_backend
    ):
        pool = pool_factory(
            {
                "local": backend_client_factory(depth=0),
                "remote-1": backend_client_factory(depth=0),
            },
            clock=FakeClock(),
        )

        first = await pool.select_best()
        assert first == remote_backend
        pool.reserve(first.id)
        assert pool.get_state("remote-1").queue_depth == 1
        assert await pool.select_best() == local_backend

    def test_reserve_ignores_unknown_depth(self, pool_factory, backend_client_factory):
        pool = pool_factory({"local": backend_client_factory()})
        pool.reserve("local")
        pool.reserve("missing")
        assert pool.get_state("local").queue_depth is None


class TestCancelPrompt:

    @pytest.mark.asyncio
    async def test_delegates_to_client(self, pool_factory, backend_client_factory):
        client = backend_client_factory()
        pool = pool_factory({"local": client})

        assert await pool.cancel_prompt("local", "p1") is True
        client.cancel_prompt.assert_awaited_once_with("p1")

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self, pool_factory, backend_client_factory):
        client = backend_client_factory()
        client.cancel_prompt = AsyncMock(side_effect=BackendClientError("down"))
        pool = pool_factory({"local": client})

        assert await pool.cancel_prompt("local", "p1") is False

    @pytest.mark.asyncio
    async def test_unknown_backend(self, pool_factory, backend_client_factory):
        pool = pool_factory({"local": backend_client_factory()})
        assert await pool.cancel_prompt("nope", "p1") is False


class TestLifecycleAndStats:

    @pytest.mark.asyncio
    async def test_start_probes_then_close(self, pool_factory, backend_client_factory):
        client = backend_client_factory()
        pool = pool_factory({"local": client}, health_check_interval=60)

        await pool.start()
        assert client.ping.await_count == 1
        assert pool.get_state("local").is_healthy

        await pool.close()
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stats(self, pool_factory, backend_client_factory):
        pool = pool_factory(
            {
                "local": backend_client_factory(depth=2),
                "remote-1": backend_client_factory(healthy=False),
            }
        )
        await pool.check_health()

        stats = pool.stats()
        assert stats["total"] == 2
        assert stats["healthy"] == 1
        assert stats["local"] == {"total": 1, "healthy": 1}
        assert stats["remote"] == {"total": 1, "healthy": 0}

        by_id = {b["id"]: b for b in stats["backends"]}
        assert by_id["local"]["queue_depth"] == 2
        assert by_id["local"]["health"] == "healthy"
        assert by_id["remote-1"]["health"] == "unhealthy"
