"""
extractor/session_manager.py

Session/Resilience Manager.

SessionManager (process scope):
- Shutdown flag checked at every suspension point
- Session-id pool for keep-alive reuse (BROWSER_SESSION_REUSE)
- Per-page resource-blocking policy, one route handler per page
- Worker registry used by graceful shutdown

WorkerSession (one per worker task):
- Owns exactly one browser session at a time
- Output buffer bound to (output_path, source_file, ledger_path)
- Coalesced rotation: concurrent rotate() calls share one in-flight task
"""

import asyncio
import logging
import re
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from apps.services.extractor.config import ExtractorConfig
from apps.services.extractor.error_log import get_event_log
from apps.services.extractor.errors import (
    ShutdownInProgress,
    error_message,
    is_harmless_close_error,
    is_not_initialized_error,
    is_proxy_error,
)

logger = logging.getLogger(__name__)

ROUTE_PATTERN = "**/*"
TRACKING_PATTERN = re.compile(r"analytics|tracking|telemetry|pixel\.|doubleclick|googletagmanager", re.IGNORECASE)

# Rotations caused by a broken or blocked session; the outgoing id must not be reused
EVICT_REASONS = frozenset({"session_error", "extract_error", "navigation_terminated", "blocked_after_extract"})

FlushFn = Callable[[Optional[Path], Dict[str, Any], List[Dict[str, Any]], Optional[Path]], Awaitable[Any]]


@dataclass
class PagePolicy:
    """Resource types a page refuses to load."""
    block_images: bool = False
    block_styles: bool = False
    block_scripts: bool = False

    def blocks(self, resource_type: str, url: str) -> bool:
        if resource_type in ("font", "media"):
            return True
        if self.block_images and resource_type == "image":
            return True
        if self.block_styles and resource_type == "stylesheet":
            return True
        if self.block_scripts and resource_type == "script":
            return True
        return bool(TRACKING_PATTERN.search(url or ""))


@dataclass
class OutputBuffer:
    output_path: Optional[Path] = None
    source_file: Optional[str] = None
    ledger_path: Optional[Path] = None
    items: List[Dict[str, Any]] = field(default_factory=list)


class SessionManager:
    """
    Process-wide session bookkeeping.

    The backend only needs `create_session(proxy, resume_session_id)` and
    `discard(session_id)`; sessions need `id`, `init()`, `close()` and `page`.
    """

    def __init__(
        self,
        backend,
        config: ExtractorConfig,
        recreate_delay: float = 1.0,
        shutdown_timeout: float = 30.0,
    ):
        self.backend = backend
        self.config = config
        self.recreate_delay = recreate_delay
        self.shutdown_timeout = shutdown_timeout
        self.is_shutting_down = False

        self._session_pool: Dict[str, None] = {}
        self._used_session_ids: Set[str] = set()
        self._proxy_cursor = 0
        self.workers: Dict[int, "WorkerSession"] = {}

        self._page_policies: "weakref.WeakKeyDictionary[Any, PagePolicy]" = weakref.WeakKeyDictionary()
        self._route_handlers: "weakref.WeakKeyDictionary[Any, Callable]" = weakref.WeakKeyDictionary()

    # Shutdown flag

    def check_shutdown(self):
        if self.is_shutting_down:
            raise ShutdownInProgress()

    # Session creation

    def _next_proxy(self) -> Optional[Dict[str, str]]:
        proxies = self.config.proxy_settings()
        if not proxies:
            return None
        proxy = proxies[self._proxy_cursor % len(proxies)]
        self._proxy_cursor += 1
        return proxy

    async def create_session(self, enable_proxy: bool = False, reuse_id: Optional[str] = None):
        """
        Create and initialize a session, falling back to no proxy when the
        proxy configuration is rejected.
        """
        proxy = self._next_proxy() if enable_proxy else None
        try:
            session = await self.backend.create_session(proxy=proxy, resume_session_id=reuse_id)
            await session.init()
            return session
        except Exception as e:
            logger.warning(f"[SessionManager] Primary configuration failed: {error_message(e)}")
            if proxy is None or not is_proxy_error(e):
                raise
        logger.info("[SessionManager] Retrying without proxy as fallback...")
        session = await self.backend.create_session(proxy=None, resume_session_id=reuse_id)
        await session.init()
        logger.info("[SessionManager] Fallback session created successfully without proxy")
        return session

    async def safe_close_session(self, session, worker_id: Any = None):
        """Close a session, ignoring the errors a dead session raises on close."""
        if session is None:
            return
        try:
            await session.close()
        except Exception as e:
            if not is_harmless_close_error(e):
                raise
            logger.info(f"[SessionManager {worker_id}] Ignoring harmless cleanup error: {error_message(e)}")

    # Session-id pool

    def add_session_id_to_pool(self, session_id: Optional[str]):
        if session_id and isinstance(session_id, str):
            self._session_pool[session_id] = None
            logger.debug(f"[SessionManager] Added session ID to pool: {session_id[:8]}... (pool size: {len(self._session_pool)})")

    def get_available_session_id(self) -> Optional[str]:
        """First pooled id not currently bound to a worker (None when reuse is off)."""
        if not self.config.session_reuse:
            return None
        for session_id in self._session_pool:
            if session_id not in self._used_session_ids:
                return session_id
        return None

    def mark_used(self, session_id: Optional[str]):
        if session_id:
            self._used_session_ids.add(session_id)

    def mark_completed(self, session_id: Optional[str]):
        """Release an id so another worker may resume it."""
        if session_id:
            self._used_session_ids.discard(session_id)
            logger.debug(f"[SessionManager] Marked session as available for reuse: {session_id[:8]}...")

    async def evict(self, session_id: Optional[str]):
        if not session_id:
            return
        self._session_pool.pop(session_id, None)
        self._used_session_ids.discard(session_id)
        await self.backend.discard(session_id)

    def get_pool_stats(self) -> Dict[str, int]:
        return {
            "pool_size": len(self._session_pool),
            "used_sessions": len(self._used_session_ids),
            "available_sessions": len(self._session_pool) - len(self._used_session_ids),
        }

    # Workers

    async def _create_worker(self, worker_id: int, flush_fn: FlushFn) -> "WorkerSession":
        logger.info(f"[SessionManager {worker_id}] Initializing browser session...")
        session = await self.create_session(enable_proxy=False)
        self.add_session_id_to_pool(session.id)
        self.mark_used(session.id)
        worker = WorkerSession(self, session, worker_id, flush_fn)
        self.workers[worker_id] = worker
        logger.info(f"[SessionManager {worker_id}] Browser session initialized successfully")
        return worker

    async def create_worker_sessions(self, count: int, flush_fn: FlushFn) -> List["WorkerSession"]:
        logger.info(f"[SessionManager] Creating {count} concurrent browser sessions...")
        workers = await asyncio.gather(*(self._create_worker(index + 1, flush_fn) for index in range(count)))
        logger.info(f"[SessionManager] All {count} sessions initialized and ready")
        return list(workers)

    def remove_worker(self, worker_id: int):
        if self.workers.pop(worker_id, None) is not None:
            logger.debug(f"[SessionManager {worker_id}] Removed from active workers")

    # Pages

    def _resolve_policy(self, worker: "WorkerSession", overrides: Dict[str, bool]) -> PagePolicy:
        block_images = self.config.res_block_images
        if block_images is None:
            # Proxied sessions pay per byte
            block_images = worker.rotation_count > 0
        policy = PagePolicy(
            block_images=block_images,
            block_styles=self.config.res_block_styles,
            block_scripts=self.config.res_block_scripts,
        )
        for key, value in overrides.items():
            if hasattr(policy, key) and value is not None:
                setattr(policy, key, bool(value))
        return policy

    def page_policy(self, page) -> Optional[PagePolicy]:
        return self._page_policies.get(page)

    async def configure_page_performance(self, worker: "WorkerSession", page=None, **overrides: bool):
        """Install the page's request-blocking route handler (replaced only when the policy changes)."""
        if page is None:
            page = worker.session.page
        desired = self._resolve_policy(worker, overrides)
        if self._page_policies.get(page) == desired:
            return

        previous = self._route_handlers.get(page)
        if previous is not None:
            try:
                await page.unroute(ROUTE_PATTERN, previous)
            except Exception as e:
                logger.debug(f"[SessionManager] unroute failed: {e}")

        async def handler(route):
            request = route.request
            if desired.blocks(request.resource_type, request.url):
                await route.abort()
            else:
                await route.continue_()

        await page.route(ROUTE_PATTERN, handler)
        self._route_handlers[page] = handler
        self._page_policies[page] = desired

    async def get_safe_page(self, worker: "WorkerSession", **overrides: bool):
        """Current page of the worker's session, re-initializing a session that lost its page."""
        try:
            page = worker.session.page
        except Exception as e:
            if not is_not_initialized_error(e):
                raise
            logger.info(f"[SessionManager {worker.worker_id}] Session not initialized, re-initializing")
            await worker.session.init()
            page = worker.session.page
        await self.configure_page_performance(worker, page, **overrides)
        return page

    # Shutdown

    async def graceful_shutdown(self, signal_name: str = "SIGTERM") -> Dict[str, int]:
        """Flush every buffer, then close every session within shutdown_timeout."""
        self.is_shutting_down = True
        workers = list(self.workers.values())
        logger.info(f"[SessionManager] Received {signal_name}, gracefully closing {len(workers)} active sessions...")

        flushes = await asyncio.gather(*(worker.flush_buffer() for worker in workers), return_exceptions=True)
        for worker, outcome in zip(workers, flushes):
            if isinstance(outcome, Exception):
                logger.error(f"[SessionManager {worker.worker_id}] Flush during shutdown failed: {outcome}")

        async def close_worker(worker: "WorkerSession"):
            try:
                await self.safe_close_session(worker.session, worker.worker_id)
                logger.info(f"[SessionManager] Session {worker.worker_id} closed successfully")
            except Exception as e:
                logger.warning(f"[SessionManager] Error closing session {worker.worker_id}: {e}")
            finally:
                self.remove_worker(worker.worker_id)

        try:
            await asyncio.wait_for(
                asyncio.gather(*(close_worker(worker) for worker in workers)),
                timeout=self.shutdown_timeout,
            )
            logger.info("[SessionManager] All sessions closed")
        except asyncio.TimeoutError:
            logger.warning(f"[SessionManager] Session close timed out after {self.shutdown_timeout}s")

        stats = self.get_pool_stats()
        logger.info(f"[SessionManager] Session pool: {stats}")
        return stats


class WorkerSession:
    """One worker's browser session, output buffer and rotation state."""

    def __init__(self, manager: SessionManager, session, worker_id: int, flush_fn: FlushFn):
        self.manager = manager
        self.session = session
        self.worker_id = worker_id
        self.flush_fn = flush_fn
        self.generation = 0
        self.rotation_count = 0
        self.buffer = OutputBuffer()
        self._stranded: List[OutputBuffer] = []
        self._rotating: Optional[asyncio.Future] = None

    # Buffer

    def register_buffer(self, output_path: Optional[Path], source_file: Optional[str], ledger_path: Optional[Path]):
        """Bind the buffer to a target; items left by a failed flush are carried over."""
        current = self.buffer
        if current.items and (current.output_path, current.source_file, current.ledger_path) != (
            output_path, source_file, ledger_path
        ):
            self._stranded.append(current)
            self.buffer = OutputBuffer(output_path, source_file, ledger_path)
        else:
            self.buffer = OutputBuffer(output_path, source_file, ledger_path, current.items)

    def add_item_to_buffer(self, item: Dict[str, Any]):
        self.buffer.items.append(item)

    def clear_buffer(self):
        self.buffer.items = []
        self._stranded = []

    async def flush_buffer(self):
        """Hand buffered items to the flush callback; they are restored if it fails."""
        while self._stranded:
            await self._flush(self._stranded[0])
            self._stranded.pop(0)
        await self._flush(self.buffer)

    async def _flush(self, buffer: OutputBuffer):
        items, buffer.items = buffer.items, []
        if not items:
            return
        try:
            await self.flush_fn(
                buffer.output_path,
                {"source_file": buffer.source_file},
                items,
                buffer.ledger_path,
            )
        except Exception:
            buffer.items = items + buffer.items
            raise
        logger.info(f"[SessionManager {self.worker_id}] Flushed {len(items)} in-progress items to output")

    # Rotation

    async def rotate(self, reason: str):
        """Replace the session; concurrent callers share the same rotation."""
        if self._rotating is None:
            logger.info(f"[SessionManager {self.worker_id}] Rotating session due to: {reason}")
            task = asyncio.ensure_future(self._rotate(reason))
            self._rotating = task

            def _clear(done: asyncio.Future):
                if self._rotating is done:
                    self._rotating = None

            task.add_done_callback(_clear)
        else:
            logger.info(f"[SessionManager {self.worker_id}] Already rotating, waiting...")
        return await asyncio.shield(self._rotating)

    async def _rotate(self, reason: str):
        manager = self.manager
        outgoing = self.session
        outgoing_id = getattr(outgoing, "id", None)
        try:
            manager.add_session_id_to_pool(outgoing_id)
            logger.info(f"[SessionManager {self.worker_id}] Closing old session...")
            await manager.safe_close_session(outgoing, self.worker_id)
        except Exception as e:
            logger.warning(f"[SessionManager {self.worker_id}] Error closing old session: {e}")

        if reason in EVICT_REASONS:
            await manager.evict(outgoing_id)
        else:
            manager.mark_completed(outgoing_id)

        if manager.is_shutting_down:
            logger.info(f"[SessionManager {self.worker_id}] Skipping session rotation; shutdown in progress")
            raise ShutdownInProgress()

        reuse_id = manager.get_available_session_id()
        if reuse_id:
            logger.info(f"[SessionManager {self.worker_id}] Attempting to reuse session {reuse_id[:8]}...")
            manager.mark_used(reuse_id)
            try:
                self.session = await manager.create_session(self.rotation_count > 0, reuse_id)
                self.generation += 1
                logger.info(f"[SessionManager {self.worker_id}] Session reused successfully (gen {self.generation})")
                get_event_log().info(
                    "session_reused", reason=reason, generation=self.generation,
                    worker_id=self.worker_id, session_id=reuse_id[:8],
                )
                return self.session
            except Exception as e:
                logger.info(f"[SessionManager {self.worker_id}] Session reuse failed: {e}, creating new session...")
                await manager.evict(reuse_id)

        self.rotation_count += 1
        logger.info(f"[SessionManager {self.worker_id}] Creating new session with proxy...")
        await asyncio.sleep(manager.recreate_delay)
        self.session = await manager.create_session(enable_proxy=True)
        manager.add_session_id_to_pool(self.session.id)
        manager.mark_used(self.session.id)
        self.generation += 1
        logger.info(f"[SessionManager {self.worker_id}] New session created successfully (gen {self.generation})")
        get_event_log().info("session_rotated", reason=reason, generation=self.generation, worker_id=self.worker_id)
        return self.session

    async def close(self):
        session_id = getattr(self.session, "id", None)
        try:
            self.manager.add_session_id_to_pool(session_id)
            await self.manager.safe_close_session(self.session, self.worker_id)
            self.manager.mark_completed(session_id)
        except Exception as e:
            logger.warning(f"[SessionManager {self.worker_id}] Error during close: {e}")
        finally:
            self.manager.remove_worker(self.worker_id)
