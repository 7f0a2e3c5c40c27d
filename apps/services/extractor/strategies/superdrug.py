"""
extractor/strategies/superdrug.py

Superdrug product strategy.

Features:
- Zoom-gallery images (e2core-media[format="zoom"] img), main image first
- Gallery fallback: <img> elements whose alt text equals the product name
- `marketplace` custom field: SKU prefix "mp-" first, then DOM indicators
"""

import logging
import re
from typing import Any, Dict, Optional

from apps.services.extractor.schema_builder import FieldDefinition
from apps.services.extractor.strategies.base import StrategyContext, VendorStrategy

logger = logging.getLogger(__name__)

ZOOM_IMAGE_SELECTOR = 'e2core-media[format="zoom"] img'
MARKETPLACE_SKU_IN_URL = re.compile(r"/p/(mp-[^/?]+)")

# Runs in the page; returns images plus DOM-only marketplace evidence
SUPERDRUG_DOM_SCRIPT = """(payload) => {
    const { productName, zoomSelector } = payload;
    const srcOf = (img) => img.src || img.getAttribute('src');

    const mainEl = document.querySelector(zoomSelector);
    const mainImage = mainEl ? srcOf(mainEl) : null;

    const gallery = [];
    document.querySelectorAll(zoomSelector).forEach((img) => {
        const src = srcOf(img);
        if (src && src !== mainImage) gallery.push(src);
    });

    const altImages = [];
    if (!mainImage && gallery.length === 0 && productName) {
        const wanted = productName.trim().toLowerCase();
        document.querySelectorAll('img[alt]').forEach((img) => {
            const alt = (img.alt || '').trim().toLowerCase();
            const src = srcOf(img);
            if (alt && src && alt === wanted) altImages.push(src);
        });
    }

    let marketplace = null;
    const input = document.querySelector('input#marketplaceProduct[type="hidden"]');
    if (input) {
        marketplace = input.value === 'true';
    } else {
        const textSelectors = [
            '.mp-product-add-to-cart__header-mp-icon',
            'mp-insider-wrapper',
            '[class*="mp-product"]',
            '[class*="marketplace"]'
        ];
        for (const selector of textSelectors) {
            const el = document.querySelector(selector);
            if (!el) continue;
            const text = (el.textContent || '').toLowerCase();
            if (text.includes('marketplace seller') || text.includes('sold and shipped by') || text.includes('marketplace')) {
                marketplace = true;
                break;
            }
        }
        if (marketplace === null) {
            marketplace = !!document.querySelector('mp-insider-wrapper');
        }
    }

    return { main_image: mainImage, gallery, alt_images: altImages, marketplace };
}"""


def marketplace_from_sku(context: StrategyContext) -> bool:
    """Marketplace products always carry an mp- SKU."""
    if context.sku and str(context.sku).startswith("mp-"):
        return True
    return bool(context.url and MARKETPLACE_SKU_IN_URL.search(context.url))


class SuperdrugStrategy(VendorStrategy):
    name = "superdrug"
    custom_fields = {
        "marketplace": FieldDefinition(
            bool,
            'Marketplace information where the product is sold '
            '(e.g., "Sold and shipped by a Marketplace seller")',
        ),
    }

    def __init__(self, wait_timeout_ms: int = 15000):
        self.wait_timeout_ms = wait_timeout_ms

    async def extract(self, page, context: StrategyContext) -> Optional[Dict[str, Any]]:
        try:
            await page.wait_for_selector(ZOOM_IMAGE_SELECTOR, timeout=self.wait_timeout_ms, state="attached")
            dom = await page.evaluate(
                SUPERDRUG_DOM_SCRIPT,
                {"productName": context.product_name, "zoomSelector": ZOOM_IMAGE_SELECTOR},
            )
        except Exception as e:
            logger.warning(f"[Superdrug] Extraction error for {context.url}: {e}")
            return None

        dom = dom or {}
        main_image = dom.get("main_image")
        images = [src for src in (dom.get("gallery") or []) if src and src != main_image]
        for src in dom.get("alt_images") or []:
            if src and src not in images:
                images.append(src)

        result: Dict[str, Any] = {
            "main_image": main_image,
            "images": images,
            "marketplace": True if marketplace_from_sku(context) else bool(dom.get("marketplace")),
        }
        if context.product_name:
            result["name"] = context.product_name
        return result
