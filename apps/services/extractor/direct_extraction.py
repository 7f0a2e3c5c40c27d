"""
extractor/direct_extraction.py

Direct (model-free) field extraction.

Features:
- Vendor strategy and learned selectors run concurrently; strategy values win
- Candidates tried in Selector Store priority order, first valid value wins
- Comma-separated selectors split into individual candidates
- Shadow-DOM fallback via the `pierce=` prefix
- Field-specific read semantics (image src, numeric price, stock heuristic, booleans)
- Success/failure bookkeeping back into the Selector Store
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from apps.services.extractor.errors import is_page_closed_error
from apps.services.extractor.pricing import format_number, to_number
from apps.services.extractor.schema_builder import FieldDefinition
from apps.services.extractor.selector_store import SelectorEntry, SelectorStore
from apps.services.extractor.strategies import StrategyContext, StrategyRegistry
from apps.services.extractor.url_utils import clean_and_validate_url

logger = logging.getLogger(__name__)

DEFAULT_DIRECT_FIELDS = ["name", "price", "weight", "description", "category", "main_image", "stock_status", "discount"]
STRATEGY_FIELDS = ["images", "main_image", "name", "price", "description", "stock_status"]

OUT_OF_STOCK_PATTERN = re.compile(r"out of stock|sold out|unavailable|not available", re.IGNORECASE)

LOCATOR_TIMEOUT_MS = 15000
MAX_LOCATOR_TIMEOUT_MS = 5000
STOCK_TEXT_TIMEOUT_MS = 3000


class PageClosed(Exception):
    """The page went away in the middle of direct extraction."""


@dataclass
class FieldResult:
    field: str
    value: Any = None
    selector: Optional[str] = None


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, dict)):
        return len(value) > 0
    return True


def split_selector(selector: str) -> List[str]:
    if "," not in selector:
        return [selector]
    return [option.strip() for option in selector.split(",") if option.strip()]


async def _with_pierce(page, selector: str, read):
    """Run `read(locator)` on the selector, falling back to a shadow-piercing locator."""
    try:
        return await read(page.locator(selector).first)
    except Exception as e:
        if is_page_closed_error(e):
            raise PageClosed(str(e)) from e
    try:
        return await read(page.locator(f"pierce={selector}").first)
    except Exception as e:
        if is_page_closed_error(e):
            raise PageClosed(str(e)) from e
    return None


async def read_field(
    page,
    field_name: str,
    selector: str,
    custom_fields: Dict[str, FieldDefinition],
    timeout_ms: int = LOCATOR_TIMEOUT_MS,
) -> Any:
    """Read one field through one selector; None means "not found"."""
    timeout = min(timeout_ms, MAX_LOCATOR_TIMEOUT_MS)

    if field_name == "main_image":
        src = await _with_pierce(page, selector, lambda loc: loc.get_attribute("src", timeout=timeout))
        return clean_and_validate_url(src.strip()) if src else None

    if field_name == "price":
        text = await _with_pierce(page, selector, lambda loc: loc.inner_text(timeout=timeout))
        if not text:
            return None
        number = to_number(text.strip())
        return format_number(number) if number is not None and number > 0 else None

    if field_name == "stock_status":
        visible = await _with_pierce(page, selector, lambda loc: loc.is_visible(timeout=timeout))
        if not visible:
            return "In stock"
        text = await _with_pierce(page, selector, lambda loc: loc.inner_text(timeout=STOCK_TEXT_TIMEOUT_MS))
        return "Out of stock" if OUT_OF_STOCK_PATTERN.search(text or "") else "In stock"

    definition = custom_fields.get(field_name)
    if definition is not None and definition.is_boolean:
        if "input" in selector and "hidden" in selector:
            value = await _with_pierce(page, selector, lambda loc: loc.get_attribute("value", timeout=timeout))
            return value == "true"
        return bool(await _with_pierce(page, selector, lambda loc: loc.is_visible(timeout=timeout)))

    text = await _with_pierce(page, selector, lambda loc: loc.inner_text(timeout=timeout))
    return text.strip() if text else None


class DirectExtractor:
    """Selector-store + vendor-strategy extraction for one page."""

    def __init__(self, selector_store: SelectorStore, strategies: StrategyRegistry):
        self.selector_store = selector_store
        self.strategies = strategies

    async def try_selectors_for_field(
        self,
        page,
        vendor: str,
        field_name: str,
        entries: List[SelectorEntry],
        custom_fields: Dict[str, FieldDefinition],
        timeout_ms: int = LOCATOR_TIMEOUT_MS,
    ) -> FieldResult:
        for entry in entries:
            for option in split_selector(entry.selector):
                try:
                    value = await read_field(page, field_name, option, custom_fields, timeout_ms)
                except PageClosed:
                    logger.warning(f"[DirectExtract] Page closed during {field_name} extraction ({option})")
                    raise
                except Exception as e:
                    logger.debug(f"[DirectExtract] Selector {option} failed for {field_name}: {e}")
                    continue
                if value is not None and value != "":
                    return FieldResult(field_name, value, option)
            await self.selector_store.record_failure(vendor, field_name, entry.selector)
        return FieldResult(field_name)

    async def _run_strategy(self, page, vendor: str, context: StrategyContext) -> Optional[Dict[str, Any]]:
        strategy = self.strategies.get(vendor)
        try:
            return await strategy.extract(page, context)
        except Exception as e:
            logger.warning(f"[DirectExtract] Vendor strategy {strategy.name} failed: {e}")
            return None

    async def extract(
        self,
        page,
        work_item: Dict[str, Any],
        fields: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Read every field that a strategy or a learned selector can supply.

        Returns:
            Partial field dict (empty when nothing was found)
        """
        vendor = work_item.get("vendor", "")
        custom_fields = self.strategies.custom_fields(vendor)
        vendor_entry = self.selector_store.get_vendor_entry(vendor)
        learned = vendor_entry.get("selectors") or {}

        base_fields = list(fields or DEFAULT_DIRECT_FIELDS)
        learnable_custom = [
            name for name, definition in custom_fields.items() if definition.type in (str, bool)
        ]
        wanted = base_fields + [name for name in learnable_custom if name not in base_fields]

        result: Dict[str, Any] = {}
        try:
            product_name = None
            if self.strategies.has_strategy(vendor) and learned.get("name"):
                name_result = await self.try_selectors_for_field(
                    page, vendor, "name", self.selector_store.get_selectors(vendor, "name"),
                    custom_fields, timeout_ms=MAX_LOCATOR_TIMEOUT_MS,
                )
                product_name = name_result.value
                if name_result.value:
                    result["name"] = name_result.value
                    await self._record_success(vendor, {"name": name_result.selector})

            context = StrategyContext.from_work_item(work_item, product_name)
            selector_fields = [
                name for name in wanted
                if name not in result and learned.get(name)
            ]
            strategy_task = self._run_strategy(page, vendor, context)
            selector_tasks = [
                self.try_selectors_for_field(
                    page, vendor, name, self.selector_store.get_selectors(vendor, name), custom_fields
                )
                for name in selector_fields
            ]
            strategy_result, *field_results = await asyncio.gather(strategy_task, *selector_tasks)
        except PageClosed:
            return result

        provided: Set[str] = set()
        if strategy_result:
            for name in STRATEGY_FIELDS + list(custom_fields):
                value = strategy_result.get(name)
                if name in custom_fields and custom_fields[name].is_boolean:
                    if value is not None:
                        result[name] = value
                        provided.add(name)
                elif has_value(value):
                    result[name] = value
                    provided.add(name)

        successes = {}
        for field_result in field_results:
            if field_result.field in provided:
                continue
            if field_result.value is not None and field_result.value != "":
                result[field_result.field] = field_result.value
                if field_result.selector:
                    successes[field_result.field] = field_result.selector

        await self._record_success(vendor, successes)
        return result

    async def _record_success(self, vendor: str, successes: Dict[str, str]):
        needed = {
            name: selector
            for name, selector in successes.items()
            if selector and self.selector_store.needs_success_update(vendor, name, selector)
        }
        if needed:
            await self.selector_store.save_selectors(vendor, needed)
