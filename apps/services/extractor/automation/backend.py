"""
extractor/automation/backend.py

Playwright browser backend.

Features:
- One shared browser per process: launched locally, or attached over CDP
  when BROWSER_CDP_URL is set
- One BrowserContext per session, optionally behind an HTTP proxy
- Keep-alive: a closed session's context is parked for BROWSER_SESSION_TIMEOUT
  seconds so a later session can resume it by id
- Sessions expose `page` only after `init()`; touching it earlier raises a
  "not initialized" error that callers recover from by calling `init()`
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Dict, Optional

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

from apps.services.extractor.automation.llm_client import LLMClient
from apps.services.extractor.automation.page import AutomationPage
from apps.services.extractor.config import ExtractorConfig
from apps.services.extractor.errors import ExtractorError

logger = logging.getLogger(__name__)

VIEWPORT = {"width": 1280, "height": 800}
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-blink-features=AutomationControlled",
]


class BrowserSession:
    """One browser context plus its automation page."""

    def __init__(self, session_id: str, context: BrowserContext, backend: "PlaywrightBackend"):
        self.id = session_id
        self.context = context
        self.backend = backend
        self._page: Optional[AutomationPage] = None
        self._closed = False
        self.created_at = time.time()

    @property
    def page(self) -> AutomationPage:
        if self._page is None:
            raise ExtractorError(f"BrowserSession {self.id[:8]} not initialized")
        return self._page

    @property
    def initialized(self) -> bool:
        return self._page is not None

    async def init(self):
        """Open the working page (no-op when it is still open)."""
        if self._page is not None and not self._page.is_closed():
            return
        raw_page = await self.context.new_page()
        raw_page.set_default_navigation_timeout(30000)
        self._page = AutomationPage(raw_page, self.backend.llm_client)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        page, self._page = self._page, None
        if page is not None and not page.is_closed():
            await page.page.close()
        await self.backend.release(self)


class PlaywrightBackend:
    """Creates BrowserSessions on a shared Playwright browser."""

    def __init__(self, config: ExtractorConfig, llm_client: Optional[LLMClient] = None):
        self.config = config
        self.llm_client = llm_client or LLMClient(
            llm_url=config.llm_url,
            llm_model=config.llm_model,
            api_key=config.llm_api_key,
            timeout_seconds=config.llm_timeout,
        )
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        # session id -> (context, parked_at)
        self._parked: Dict[str, Any] = {}

    async def _ensure_browser(self) -> Browser:
        if self.browser is None:
            async with self._lock:
                if self.browser is None:
                    self.playwright = await async_playwright().start()
                    if self.config.cdp_url:
                        logger.info(f"[Backend] Connecting to browser over CDP: {self.config.cdp_url}")
                        self.browser = await self.playwright.chromium.connect_over_cdp(self.config.cdp_url)
                    else:
                        logger.info(f"[Backend] Launching chromium: headless={self.config.headless}")
                        self.browser = await self.playwright.chromium.launch(
                            headless=self.config.headless,
                            args=LAUNCH_ARGS,
                        )
        return self.browser

    async def _expire_parked(self):
        now = time.time()
        for session_id, (context, parked_at) in list(self._parked.items()):
            if now - parked_at >= self.config.session_timeout:
                self._parked.pop(session_id, None)
                await self._close_context(context)

    async def _close_context(self, context: BrowserContext):
        try:
            await context.close()
        except Exception as e:
            logger.debug(f"[Backend] Context close failed: {e}")

    async def create_session(
        self,
        proxy: Optional[Dict[str, str]] = None,
        resume_session_id: Optional[str] = None,
    ) -> BrowserSession:
        """
        Create a session, or resume a parked one by id.

        Raises:
            ExtractorError: the requested session is no longer available
        """
        await self._expire_parked()

        if resume_session_id:
            parked = self._parked.pop(resume_session_id, None)
            if parked is None:
                raise ExtractorError(f"Session {resume_session_id[:8]} is not available for reuse")
            logger.info(f"[Backend] Resuming session {resume_session_id[:8]}")
            return BrowserSession(resume_session_id, parked[0], self)

        browser = await self._ensure_browser()
        context_options: Dict[str, Any] = {"viewport": VIEWPORT}
        if proxy:
            context_options["proxy"] = {
                key: proxy[key] for key in ("server", "username", "password") if proxy.get(key)
            }
        context = await browser.new_context(**context_options)
        session = BrowserSession(uuid.uuid4().hex, context, self)
        logger.info(f"[Backend] Created session {session.id[:8]} (proxy={'yes' if proxy else 'no'})")
        return session

    async def release(self, session: BrowserSession):
        """Park the session's context for reuse, or close it when reuse is off."""
        if self.config.session_reuse and self.browser is not None and self.browser.is_connected():
            self._parked[session.id] = (session.context, time.time())
            return
        await self._close_context(session.context)

    async def discard(self, session_id: str):
        """Drop a parked context so its id can never be resumed."""
        parked = self._parked.pop(session_id, None)
        if parked is not None:
            await self._close_context(parked[0])

    async def shutdown(self):
        for context, _ in list(self._parked.values()):
            await self._close_context(context)
        self._parked.clear()
        if self.browser is not None:
            try:
                await self.browser.close()
            except Exception as e:
                logger.debug(f"[Backend] Browser close failed: {e}")
            self.browser = None
        if self.playwright is not None:
            await self.playwright.stop()
            self.playwright = None
        await self.llm_client.close()
