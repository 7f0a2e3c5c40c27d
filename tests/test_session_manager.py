"""
Unit tests for session bookkeeping, rotation and shutdown.

Tests apps/services/extractor/session_manager.py
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeBackend

from apps.services.extractor.config import ExtractorConfig
from apps.services.extractor.errors import ShutdownInProgress
from apps.services.extractor.session_manager import PagePolicy, SessionManager


@pytest.fixture
def sessions(backend, config):
    return SessionManager(backend, config, recreate_delay=0)


async def make_worker(sessions, flush_fn=None):
    workers = await sessions.create_worker_sessions(1, flush_fn or AsyncMock())
    return workers[0]


class TestPagePolicy:
    def test_fonts_media_and_trackers_always_blocked(self):
        policy = PagePolicy()
        assert policy.blocks("font", "https://a.example.com/f.woff2")
        assert policy.blocks("media", "https://a.example.com/v.mp4")
        assert policy.blocks("script", "https://www.googletagmanager.com/gtm.js")
        assert not policy.blocks("script", "https://a.example.com/app.js")

    def test_configurable_types(self):
        policy = PagePolicy(block_images=True, block_styles=True)
        assert policy.blocks("image", "https://a.example.com/x.jpg")
        assert policy.blocks("stylesheet", "https://a.example.com/x.css")
        assert not policy.blocks("document", "https://a.example.com/")


class TestWorkers:
    @pytest.mark.asyncio
    async def test_workers_get_their_own_sessions(self, sessions, backend):
        workers = await sessions.create_worker_sessions(3, AsyncMock())

        assert [worker.worker_id for worker in workers] == [1, 2, 3]
        assert len({worker.session.id for worker in workers}) == 3
        assert all(worker.session.initialized for worker in workers)
        assert sessions.get_pool_stats() == {"pool_size": 3, "used_sessions": 3, "available_sessions": 0}

    @pytest.mark.asyncio
    async def test_safe_page_installs_route_once(self, sessions):
        worker = await make_worker(sessions)

        page = await sessions.get_safe_page(worker)
        await sessions.get_safe_page(worker)

        assert len(page.routes) == 1
        assert sessions.page_policy(page) == PagePolicy(block_images=False)

    @pytest.mark.asyncio
    async def test_policy_override_replaces_route(self, data_dir, backend):
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, RES_BLOCK_STYLES=True)
        sessions = SessionManager(backend, config, recreate_delay=0)
        worker = await make_worker(sessions)
        page = await sessions.get_safe_page(worker)
        assert sessions.page_policy(page).block_styles

        await sessions.configure_page_performance(worker, page, block_styles=False)

        assert len(page.routes) == 1
        assert not sessions.page_policy(page).block_styles


class TestRotation:
    """Test session rotation, pooling and eviction."""

    @pytest.mark.asyncio
    async def test_concurrent_rotations_coalesce(self, sessions, backend):
        worker = await make_worker(sessions)
        original = worker.session

        await asyncio.gather(worker.rotate("session_error"), worker.rotate("session_error"))

        assert len(backend.created) == 2
        assert worker.generation == 1
        assert worker.session is not original
        assert original.closed

    @pytest.mark.asyncio
    async def test_error_rotation_evicts_outgoing_session(self, sessions, backend):
        worker = await make_worker(sessions)
        outgoing = worker.session.id

        await worker.rotate("extract_error")

        assert backend.discarded == [outgoing]
        assert worker.session.id != outgoing
        assert worker.rotation_count == 1
        assert sessions.get_pool_stats()["pool_size"] == 1

    @pytest.mark.asyncio
    async def test_clean_rotation_reuses_pooled_session(self, sessions, backend):
        worker = await make_worker(sessions)
        outgoing = worker.session.id

        await worker.rotate("scheduled")

        assert backend.discarded == []
        assert backend.created[-1]["resume_session_id"] == outgoing
        assert worker.rotation_count == 0

    @pytest.mark.asyncio
    async def test_reuse_disabled(self, data_dir):
        backend = FakeBackend()
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, BROWSER_SESSION_REUSE=False)
        sessions = SessionManager(backend, config, recreate_delay=0)
        worker = await make_worker(sessions)

        await worker.rotate("scheduled")

        assert backend.created[-1]["resume_session_id"] is None
        assert worker.rotation_count == 1

    @pytest.mark.asyncio
    async def test_rotation_during_shutdown(self, sessions):
        worker = await make_worker(sessions)
        sessions.is_shutting_down = True
        with pytest.raises(ShutdownInProgress):
            await worker.rotate("session_error")


class TestProxyFallback:
    @pytest.mark.asyncio
    async def test_rejected_proxy_falls_back_to_direct(self, data_dir):
        backend = FakeBackend(create_errors=[RuntimeError("400 Bad Request: body/proxies is invalid")])
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, PS_USER="user", PS_PASS="secret")
        sessions = SessionManager(backend, config, recreate_delay=0)

        session = await sessions.create_session(enable_proxy=True)

        assert session.initialized
        assert backend.created[0]["proxy"]["username"] == "user"
        assert backend.created[1]["proxy"] is None

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, data_dir):
        backend = FakeBackend(create_errors=[RuntimeError("browser crashed")])
        config = ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, PS_USER="user", PS_PASS="secret")
        sessions = SessionManager(backend, config, recreate_delay=0)
        with pytest.raises(RuntimeError):
            await sessions.create_session(enable_proxy=True)

    @pytest.mark.asyncio
    async def test_proxies_round_robin(self, data_dir):
        config = ExtractorConfig(
            EXTRACTOR_DATA_DIR=data_dir, PS_USER="ps", PS_PASS="x", OXY_USER="oxy", OXY_PASS="y",
        )
        backend = FakeBackend()
        sessions = SessionManager(backend, config, recreate_delay=0)
        for _ in range(3):
            await sessions.create_session(enable_proxy=True)
        assert [call["proxy"]["username"] for call in backend.created] == ["ps", "oxy", "ps"]


class TestBufferAndShutdown:
    @pytest.mark.asyncio
    async def test_flush_hands_items_to_callback(self, sessions, data_dir):
        flush_fn = AsyncMock()
        worker = await make_worker(sessions, flush_fn)
        worker.register_buffer(data_dir / "out.json", "ledger.json", data_dir / "ledger.json")
        worker.add_item_to_buffer({"source_url": "https://a.example.com/1"})

        await worker.flush_buffer()

        flush_fn.assert_awaited_once_with(
            data_dir / "out.json",
            {"source_file": "ledger.json"},
            [{"source_url": "https://a.example.com/1"}],
            data_dir / "ledger.json",
        )
        assert worker.buffer.items == []

    @pytest.mark.asyncio
    async def test_failed_flush_restores_items(self, sessions):
        worker = await make_worker(sessions, AsyncMock(side_effect=OSError("disk full")))
        worker.add_item_to_buffer({"source_url": "https://a.example.com/1"})

        with pytest.raises(OSError):
            await worker.flush_buffer()

        assert worker.buffer.items == [{"source_url": "https://a.example.com/1"}]

    @pytest.mark.asyncio
    async def test_unflushed_items_survive_next_batch(self, sessions, data_dir):
        flush_fn = AsyncMock(side_effect=[OSError("disk full"), None])
        worker = await make_worker(sessions, flush_fn)
        worker.register_buffer(data_dir / "out.json", "ledger.json", data_dir / "ledger.json")
        worker.add_item_to_buffer({"source_url": "https://a.example.com/1"})
        with pytest.raises(OSError):
            await worker.flush_buffer()

        worker.register_buffer(data_dir / "out.json", "ledger.json", data_dir / "ledger.json")
        worker.add_item_to_buffer({"source_url": "https://a.example.com/2"})
        await worker.flush_buffer()

        assert flush_fn.await_args.args[2] == [
            {"source_url": "https://a.example.com/1"},
            {"source_url": "https://a.example.com/2"},
        ]
        assert worker.buffer.items == []

    @pytest.mark.asyncio
    async def test_unflushed_items_keep_their_target(self, sessions, data_dir):
        flush_fn = AsyncMock(side_effect=[OSError("disk full"), None, None])
        worker = await make_worker(sessions, flush_fn)
        worker.register_buffer(data_dir / "a.json", "a-ledger.json", data_dir / "a-ledger.json")
        worker.add_item_to_buffer({"source_url": "https://a.example.com/1"})
        with pytest.raises(OSError):
            await worker.flush_buffer()

        worker.register_buffer(data_dir / "b.json", "b-ledger.json", data_dir / "b-ledger.json")
        worker.add_item_to_buffer({"source_url": "https://b.example.com/1"})
        await worker.flush_buffer()

        flushed = [(call.args[0], call.args[2]) for call in flush_fn.await_args_list[1:]]
        assert flushed == [
            (data_dir / "a.json", [{"source_url": "https://a.example.com/1"}]),
            (data_dir / "b.json", [{"source_url": "https://b.example.com/1"}]),
        ]

    @pytest.mark.asyncio
    async def test_clear_buffer_drops_items(self, sessions):
        flush_fn = AsyncMock()
        worker = await make_worker(sessions, flush_fn)
        worker.add_item_to_buffer({"source_url": "https://a.example.com/1"})

        worker.clear_buffer()
        await worker.flush_buffer()

        assert worker.buffer.items == []
        flush_fn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_graceful_shutdown_flushes_and_closes(self, sessions):
        flush_fn = AsyncMock()
        workers = await sessions.create_worker_sessions(2, flush_fn)
        workers[0].add_item_to_buffer({"source_url": "https://a.example.com/1"})

        await sessions.graceful_shutdown("SIGINT")

        assert flush_fn.await_count == 1
        assert all(worker.session.closed for worker in workers)
        assert sessions.workers == {}
        with pytest.raises(ShutdownInProgress):
            sessions.check_shutdown()
