"""
extractor/extraction_engine.py

Field Extraction Engine - one product page in, one merged product record out.

Pipeline:
1. URL result cache (vendor:url) - fresh hits skip the page entirely
2. Direct extraction (vendor strategy + learned selectors, no model call)
3. Core check: name AND (price OR explicit "out of stock")
4. One model-driven extract() call for whatever is still missing, with a
   schema built for exactly those fields
5. Merge - direct values always win over model values
6. Bookkeeping - extraction snapshot, pending selector learning, result cache

Errors raised by the model call propagate to the caller, which owns the
rotation/retry policy.
"""

import copy
import hashlib
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from apps.services.extractor.cache_manager import CacheManager, get_cache_manager
from apps.services.extractor.direct_extraction import DirectExtractor, has_value
from apps.services.extractor.persistence import coerce_datetime, utc_now, utc_now_iso
from apps.services.extractor.schema_builder import DYNAMIC_FIELDS, SchemaBuilder
from apps.services.extractor.selector_store import SelectorStore
from apps.services.extractor.strategies import StrategyRegistry
from apps.services.extractor.url_utils import clean_and_validate_url, extract_sku_from_url, process_image_list

logger = logging.getLogger(__name__)

URL_CACHE = "url_results"
DOM_SETTLE_TIMEOUT_MS = 10000


def make_uuid(vendor: str, url: str) -> str:
    """Stable record id: <vendor>_<sha1(vendor|url)>."""
    digest = hashlib.sha1(f"{vendor}|{url}".encode("utf-8")).hexdigest()
    return f"{vendor}_{digest}"


def has_core_data(data: Optional[Dict[str, Any]]) -> bool:
    """Name plus either a price or an explicit out-of-stock status."""
    if not data or not data.get("name"):
        return False
    if data.get("price"):
        return True
    stock = data.get("stock_status")
    return isinstance(stock, str) and "out of stock" in stock.lower()


class ExtractionEngine:
    """
    Direct-first product extraction with a single model fallback call.

    All collaborators are injected so tests can run against fresh
    instances; `learning` may be None to disable selector learning.
    """

    def __init__(
        self,
        selector_store: SelectorStore,
        strategies: Optional[StrategyRegistry] = None,
        learning=None,
        schema_builder: Optional[SchemaBuilder] = None,
        cache_manager: Optional[CacheManager] = None,
        url_cache_max_age_hours: float = 24,
        disable_url_cache: bool = False,
        smart_cache_freshness_days: float = 7,
    ):
        self.selector_store = selector_store
        self.strategies = strategies or StrategyRegistry()
        self.learning = learning
        self.schema_builder = schema_builder or SchemaBuilder()
        self.cache_manager = cache_manager or get_cache_manager()
        self.url_cache_max_age = timedelta(hours=url_cache_max_age_hours)
        self.disable_url_cache = disable_url_cache
        self.smart_cache_freshness_days = smart_cache_freshness_days
        self.direct = DirectExtractor(selector_store, self.strategies)

    # URL cache

    def _cached_result(self, cache_key: str) -> Optional[Dict[str, Any]]:
        cached = self.cache_manager.get(URL_CACHE, cache_key)
        if not cached:
            return None
        extracted_at = coerce_datetime(cached.get("extracted_at"))
        if extracted_at is None:
            return None
        age = utc_now() - extracted_at
        if age >= self.url_cache_max_age:
            return None
        logger.info(f"[Extractor] Using cached result for {cached.get('source_url')} (age: {int(age.total_seconds() // 60)}min)")
        result = copy.deepcopy(cached)
        result["extracted_at"] = utc_now_iso()
        result["stock_status"] = ""
        return result

    # Missing-field selection

    def _missing_fields(self, vendor: str, direct: Dict[str, Any], all_fields: List[str]) -> List[str]:
        absent = self.selector_store.fields_confirmed_absent(vendor, self.smart_cache_freshness_days)
        missing = []
        for field_name in all_fields:
            if has_value(direct.get(field_name)):
                continue
            if field_name in DYNAMIC_FIELDS:
                missing.append(field_name)
            elif field_name in absent:
                logger.debug(f"[Extractor] Skipping {field_name} - recently confirmed unavailable for {vendor}")
            else:
                missing.append(field_name)
        return missing

    @staticmethod
    def _apply_image_fallback(item: Dict[str, Any], work_item: Dict[str, Any]) -> Dict[str, Any]:
        fallback = clean_and_validate_url(work_item.get("image_url")) if work_item.get("image_url") else None
        if not fallback:
            return item
        if not item.get("main_image"):
            item["main_image"] = fallback
        if not item.get("images"):
            item["images"] = [fallback]
        return item

    async def extract(
        self,
        page,
        work_item: Dict[str, Any],
        update_ctx: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """
        Extract one product.

        Args:
            page: Automation page already navigated to work_item["url"]
            work_item: {url, vendor, sku?, image_url?}
            update_ctx: Update-mode context; when set the URL cache is bypassed
                so price and stock are always read fresh

        Returns:
            ExtractedProduct dict
        """
        url = work_item["url"]
        vendor = work_item.get("vendor") or "vendor"
        sku = work_item.get("sku") or work_item.get("sku_id")
        metadata = {
            "uuid": make_uuid(vendor, url),
            "vendor": vendor,
            "source_url": url,
            "extracted_at": utc_now_iso(),
        }

        cache_key = f"{vendor}:{url}"
        use_cache = not self.disable_url_cache and update_ctx is None
        if use_cache:
            cached = self._cached_result(cache_key)
            if cached is not None:
                return cached

        direct = await self.direct.extract(page, work_item)

        custom_fields = self.strategies.custom_fields(vendor)
        all_fields = list(self.schema_builder.definitions_for(custom_fields))
        has_core = has_core_data(direct)
        missing = self._missing_fields(vendor, direct, all_fields) if has_core else list(all_fields)
        product_id = sku or extract_sku_from_url(url)

        if has_core and not missing:
            images = process_image_list(direct.get("images"), direct.get("main_image"))
            result = {**metadata, "product_id": product_id, **direct, "images": images, "product_url": url}
            result = self._apply_image_fallback(result, work_item)
            self._cache_result(cache_key, result, use_cache)
            return result

        if has_core:
            logger.info(f"[Extractor] Extracting {len(missing)}/{len(all_fields)} missing fields via model: {', '.join(missing)}")

        schema = self.schema_builder.build(missing, custom_fields)
        instruction = self.schema_builder.instruction(missing, partial=has_core)
        extracted = await page.extract(
            instruction=instruction,
            schema=schema,
            dom_settle_timeout_ms=DOM_SETTLE_TIMEOUT_MS,
        )
        model_data = {**self.schema_builder.defaults(custom_fields), **(extracted or {})}

        model_images = process_image_list(model_data.get("images"))
        main_image = clean_and_validate_url(model_data.get("main_image")) or ""
        if not main_image and model_images:
            main_image = model_images[0]

        model_product = {
            "product_id": product_id,
            **{field_name: model_data.get(field_name) for field_name in all_fields},
            "main_image": main_image,
            "images": process_image_list(model_images, main_image),
            "product_url": url,
        }

        final_main = direct.get("main_image") or main_image
        image_source = direct.get("images") if has_value(direct.get("images")) else model_product["images"]
        merged = {
            **model_product,
            **{name: value for name, value in direct.items() if has_value(value)},
            "main_image": final_main,
            "images": process_image_list(image_source, final_main),
            "product_url": url,
        }
        result = self._apply_image_fallback({**metadata, **merged}, work_item)

        await self.selector_store.update_snapshot(vendor, missing, model_product)
        self._queue_learning(vendor, result, missing if has_core else all_fields, direct)
        self._cache_result(cache_key, result, use_cache)
        return result

    def _queue_learning(self, vendor: str, result: Dict[str, Any], candidates: List[str], direct: Dict[str, Any]):
        if self.learning is None:
            return
        fields = [
            field_name for field_name in candidates
            if field_name not in DYNAMIC_FIELDS
            and not has_value(direct.get(field_name))
            and has_value(result.get(field_name))
        ]
        if fields:
            self.learning.mark_pending(vendor, fields)

    def _cache_result(self, cache_key: str, result: Dict[str, Any], use_cache: bool):
        if use_cache and has_core_data(result):
            self.cache_manager.set(URL_CACHE, cache_key, copy.deepcopy(result))
            logger.debug(f"[Extractor] Cached extraction result for {cache_key}")
