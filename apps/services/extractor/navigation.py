"""
extractor/navigation.py

Page navigation with retry, and anti-bot block detection.
"""

import asyncio
import logging
import re
import time
from typing import Any, Dict, Optional

from apps.services.extractor.errors import SessionTerminated, ShutdownInProgress, error_message, is_termination_error
from apps.services.extractor.extraction_engine import has_core_data

logger = logging.getLogger(__name__)

BLOCK_PATTERN = re.compile(
    r"access denied|forbidden|verify you are a human|unusual traffic|captcha|blocked|attention required",
    re.IGNORECASE,
)
BODY_TEXT_SCRIPT = "() => (document.body && document.body.innerText || '').slice(0, 4000)"


async def navigate_with_retry(
    page,
    url: str,
    worker_id: Any,
    session_manager=None,
    max_attempts: int = 3,
    timeout_ms: int = 30000,
    retry_delay: float = 2.0,
):
    """
    Navigate to url, retrying transient failures.

    Raises:
        ShutdownInProgress: a shutdown began while navigating
        SessionTerminated: the browser session died (caller should rotate)
        Exception: the last navigation error once all attempts are used
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, max_attempts + 1):
        if session_manager is not None:
            session_manager.check_shutdown()
        try:
            logger.info(f"[Navigate {worker_id}] Navigating to page (attempt {attempt}/{max_attempts})")
            start = time.monotonic()
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            logger.info(f"[Navigate {worker_id}] Navigated to page in {int((time.monotonic() - start) * 1000)}ms")
            return
        except Exception as e:
            if session_manager is not None and session_manager.is_shutting_down:
                raise ShutdownInProgress() from e
            last_error = e
            message = error_message(e)
            if is_termination_error(e):
                logger.warning(f"[Navigate {worker_id}] Session terminated during navigation: {message}")
                raise SessionTerminated(message, original=e) from e
            if attempt < max_attempts:
                logger.info(f"[Navigate {worker_id}] Attempt {attempt}/{max_attempts} failed, retrying: {message}")
                await asyncio.sleep(retry_delay)
            else:
                logger.warning(f"[Navigate {worker_id}] Attempt {attempt}/{max_attempts} failed: {message}")
    raise last_error


async def is_blocked(page, result: Optional[Dict[str, Any]]) -> bool:
    """
    True when the page looks like an anti-bot wall.

    Triggers (any one is enough):
    1. page text or URL matches BLOCK_PATTERN
    2. the result is incomplete, imageless and has neither name nor price
    """
    try:
        text = await page.evaluate(BODY_TEXT_SCRIPT) or ""
        current_url = page.url or ""
    except Exception as e:
        logger.debug(f"[Navigate] Block check failed: {e}")
        return False

    if BLOCK_PATTERN.search(text) or BLOCK_PATTERN.search(current_url):
        return True

    result = result or {}
    incomplete = not has_core_data(result)
    no_images = not result.get("main_image") and not result.get("images")
    if incomplete and no_images and not result.get("name") and not result.get("price"):
        logger.info("[Navigate] Detected severely incomplete extraction, likely blocked")
        return True
    return False
