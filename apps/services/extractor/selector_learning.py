"""
extractor/selector_learning.py

Selector Learning Engine - turns model-extracted values into reusable selectors.

Features:
- Pending fields tracked per vendor (reported by the extraction engine)
- Single-flight: at most one learning task runs in the whole process
- Fire-and-forget task handle plus wait_for_completion() for callers that
  must not touch the page while learning still uses it
- Pending fields are cleared once their selector has been committed, or
  when the value gives nothing to locate (e.g. "In stock");
  anything that failed is retried on a later item
- Every observed selector is validated against the extracted value before
  it is saved
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Set

from apps.services.extractor.error_log import log_error, log_error_with_details
from apps.services.extractor.schema_builder import FieldDefinition
from apps.services.extractor.selector_store import SelectorStore
from apps.services.extractor.strategies import StrategyRegistry

logger = logging.getLogger(__name__)

BASE_LEARNABLE_FIELDS = ["name", "price", "main_image", "weight", "description", "category", "discount", "stock_status"]

OBSERVE_TIMEOUT_MS = 10000
VALIDATION_TIMEOUT_MS = 5000

OUT_OF_STOCK_PATTERN = re.compile(r"out of stock|sold out|unavailable|not available", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

MAIN_IMAGE_PROMPT = (
    "Find the main product image element on this page. "
    "I need to locate the primary product image for data extraction."
)
OUT_OF_STOCK_PROMPT = (
    'Find the "out of stock" button, text, or element on this page that indicates the product is '
    'unavailable. Look for elements with text like "out of stock", "sold out", "unavailable", or '
    "disabled purchase buttons."
)


def normalize_text(value: str) -> str:
    return _WHITESPACE.sub(" ", value or "").strip().casefold()


def image_filename(url: str) -> str:
    return (url or "").split("/")[-1].split("?")[0]


def images_match(expected: str, found: str) -> bool:
    """Match image URLs on their filename, in either direction."""
    expected_name, found_name = image_filename(expected), image_filename(found)
    if not expected_name or not found_name:
        return False
    return expected_name in found or found_name in expected or expected_name == found_name


def texts_match(expected: str, found: str) -> bool:
    expected_norm, found_norm = normalize_text(expected), normalize_text(found)
    if not expected_norm or not found_norm:
        return False
    return expected_norm in found_norm or found_norm in expected_norm


class SelectorLearningEngine:
    """
    Process-wide selector learning service.

    One instance is shared by all workers; tests construct their own.
    """

    def __init__(self, selector_store: SelectorStore, strategies: Optional[StrategyRegistry] = None):
        self.selector_store = selector_store
        self.strategies = strategies or StrategyRegistry()
        self._pending: Dict[str, Set[str]] = {}
        self._active_task: Optional[asyncio.Task] = None

    def mark_pending(self, vendor: str, fields: List[str]):
        """Report fields the model had to supply, so a selector can be learned for them."""
        if not fields:
            return
        self._pending.setdefault(vendor, set()).update(fields)
        logger.info(f"[SelectorLearning] Reported {len(fields)} fields needing learning for {vendor}: {', '.join(fields)}")

    def pending_fields(self, vendor: str) -> Set[str]:
        return set(self._pending.get(vendor, set()))

    @property
    def is_active(self) -> bool:
        return self._active_task is not None and not self._active_task.done()

    async def wait_for_completion(self):
        """Block until the active learning task (if any) has finished."""
        task = self._active_task
        if task is None or task.done():
            return
        logger.info("[SelectorLearning] Waiting for active learning task to complete...")
        try:
            await task
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[SelectorLearning] Active learning task failed: {e}")
            log_error_with_details("selector_learning_wait_completion_failed", e)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_active,
            "pending_vendors": len(self._pending),
            "total_pending_fields": sum(len(fields) for fields in self._pending.values()),
        }

    def process_pending(self, page, vendor: str, item: Dict[str, Any]) -> Optional[asyncio.Task]:
        """
        Start learning for the vendor's pending fields in the background.

        Returns:
            The learning task, or None when one is already running or
            nothing is pending
        """
        if self.is_active:
            logger.debug("[SelectorLearning] Learning already in progress, skipping...")
            return None

        pending = self._pending.get(vendor)
        if not pending:
            return None

        # Fields learned since they were reported, or whose value gives nothing
        # to locate, need no further work until they are reported again
        candidates = self.learnable_fields(vendor)
        settled = {
            field_name
            for field_name in pending
            if self.selector_store.has_selectors(vendor, field_name)
            or not self._locatable(field_name, item, candidates)
        }
        pending -= settled
        if not pending:
            del self._pending[vendor]
            return None

        fields = sorted(pending)
        self._active_task = asyncio.create_task(self._run(page, vendor, item, fields))
        return self._active_task

    async def _run(self, page, vendor: str, item: Dict[str, Any], fields: List[str]):
        try:
            learned = await self.learn(page, vendor, item, fields)
        except Exception as e:
            logger.warning(f"[SelectorLearning] Learning task failed for {vendor}: {e}")
            log_error_with_details("selector_learning_task_failed", e, vendor=vendor, fields_to_learn=fields)
            return {}
        pending = self._pending.get(vendor)
        if pending is not None:
            pending -= set(learned)
            if not pending:
                del self._pending[vendor]
        return learned

    def learnable_fields(self, vendor: str) -> Dict[str, Optional[FieldDefinition]]:
        fields: Dict[str, Optional[FieldDefinition]] = {name: None for name in BASE_LEARNABLE_FIELDS}
        fields.update(self.strategies.get(vendor).learnable_custom_fields())
        return fields

    def _prompt_for(self, field_name: str, value: Any, definition: Optional[FieldDefinition]) -> Optional[str]:
        """Observe prompt for one field, or None when the value gives nothing to locate."""
        if field_name == "main_image":
            return MAIN_IMAGE_PROMPT
        if field_name == "stock_status":
            # In stock is usually shown by the absence of an out-of-stock element
            return OUT_OF_STOCK_PROMPT if "out of stock" in str(value).lower() else None
        if definition is not None and definition.is_boolean:
            if value is not True and value != "true":
                return None
            description = definition.description or field_name.replace("_", " ")
            return f'Find the element on this page that indicates "{description}". Look for relevant text, badges, or indicators.'
        return (
            f'Find the specific element on this page that contains the text "{value}". '
            "I need to locate this element for data extraction."
        )

    def _locatable(self, field_name: str, item: Dict[str, Any], candidates: Dict[str, Optional[FieldDefinition]]) -> bool:
        if field_name not in candidates:
            return False
        value = item.get(field_name)
        if value is None or (not isinstance(value, bool) and not str(value).strip()):
            return False
        return self._prompt_for(field_name, value, candidates[field_name]) is not None

    async def _validate(self, page, field_name: str, selector: str, value: Any, definition: Optional[FieldDefinition]) -> bool:
        locator = page.locator(selector).first
        if field_name == "main_image":
            src = await locator.get_attribute("src", timeout=VALIDATION_TIMEOUT_MS)
            return bool(src) and images_match(str(value), src)
        if field_name == "stock_status":
            text = await locator.inner_text(timeout=VALIDATION_TIMEOUT_MS)
            return bool(OUT_OF_STOCK_PATTERN.search(text or ""))
        if definition is not None and definition.is_boolean:
            if "input" in selector and "hidden" in selector:
                return await locator.get_attribute("value", timeout=VALIDATION_TIMEOUT_MS) == "true"
            return bool(await locator.is_visible(timeout=VALIDATION_TIMEOUT_MS))
        text = await locator.inner_text(timeout=VALIDATION_TIMEOUT_MS)
        return texts_match(str(value), text or "")

    async def learn(self, page, vendor: str, item: Dict[str, Any], fields: List[str]) -> Dict[str, str]:
        """
        Observe, validate and commit selectors for the given fields, one at a time.

        Returns:
            {field: selector} for every committed selector
        """
        candidates = self.learnable_fields(vendor)
        to_process = [
            field_name
            for field_name in fields
            if self._locatable(field_name, item, candidates)
            and not self.selector_store.has_selectors(vendor, field_name)
        ]

        if not to_process:
            return {}
        logger.info(f"[SelectorLearning] Fields to learn selectors for: {', '.join(to_process)}")

        learned: Dict[str, str] = {}
        for field_name in to_process:
            value = item[field_name]
            definition = candidates[field_name]
            prompt = self._prompt_for(field_name, value, definition)

            try:
                observations = await page.observe(prompt, timeout=OBSERVE_TIMEOUT_MS)
            except Exception as e:
                logger.info(f"[SelectorLearning] Observe error for {field_name}: {e}")
                log_error_with_details(
                    "selector_observe_failed", e,
                    vendor=vendor, field=field_name, value=str(value)[:100], observe_prompt=prompt[:200],
                )
                continue

            selector = (observations[0].get("selector") if observations else None) or None
            if not selector:
                logger.info(f"[SelectorLearning] Failed to learn selector for {field_name}")
                continue

            try:
                valid = await self._validate(page, field_name, selector, value, definition)
            except Exception as e:
                logger.info(f"[SelectorLearning] Validation error for {field_name}: {e}")
                log_error_with_details(
                    "selector_validation_failed", e,
                    vendor=vendor, field=field_name, selector=selector, value=str(value)[:100],
                )
                continue

            if valid:
                learned[field_name] = selector
            else:
                logger.info(f"[SelectorLearning] Observed selector for {field_name} did not match the extracted value")

        if learned:
            logger.info(f"[SelectorLearning] Saving selectors for fields: {', '.join(learned)}")
            await self.selector_store.save_selectors(vendor, learned)
        else:
            log_error(
                "selector_learning_no_success",
                vendor=vendor,
                fields_attempted=to_process,
                item_fields=list(item),
            )
        return learned
