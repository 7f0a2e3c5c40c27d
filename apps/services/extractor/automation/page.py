"""
extractor/automation/page.py

AutomationPage - the page capability the extraction pipeline drives.

Wraps a Playwright page and adds two model-backed operations:
- observe(prompt): sample candidate DOM elements (with a concrete CSS path for
  each) and let the LLM pick the ones matching a natural-language request
- extract(instruction, schema): send visible page text + image candidates and
  a JSON schema, validate the answer against the pydantic schema model

Everything else (goto, locator, evaluate, route, ...) is delegated to
Playwright unchanged.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from apps.services.extractor.automation.llm_client import LLMClient
from apps.services.extractor.errors import ModelExtractionError

if TYPE_CHECKING:
    from playwright.async_api import Page

logger = logging.getLogger(__name__)

MAX_PAGE_TEXT_CHARS = 12000
MAX_OBSERVE_CANDIDATES = 250

# Collects visible, leaf-ish elements with a unique CSS path for each
CANDIDATE_SCRIPT = """(maxCandidates) => {
    const cssPath = (el) => {
        if (el.id) return '#' + CSS.escape(el.id);
        const parts = [];
        let node = el;
        while (node && node.nodeType === 1 && node !== document.body) {
            if (node.id) { parts.unshift('#' + CSS.escape(node.id)); break; }
            let part = node.tagName.toLowerCase();
            const parent = node.parentElement;
            if (parent) {
                const same = Array.from(parent.children).filter(c => c.tagName === node.tagName);
                if (same.length > 1) part += ':nth-of-type(' + (same.indexOf(node) + 1) + ')';
            }
            parts.unshift(part);
            node = parent;
        }
        if (!parts.length || !parts[0].startsWith('#')) parts.unshift('body');
        return parts.join(' > ');
    };
    const visible = (el) => {
        const rect = el.getBoundingClientRect();
        const style = window.getComputedStyle(el);
        return rect.width > 0 && rect.height > 0 && style.visibility !== 'hidden' && style.display !== 'none';
    };
    const out = [];
    const nodes = document.querySelectorAll('h1,h2,h3,h4,p,span,div,a,button,li,strong,b,img,input[type="hidden"],nav,ol,ul,dd,td');
    for (const el of nodes) {
        if (out.length >= maxCandidates) break;
        const tag = el.tagName.toLowerCase();
        if (tag === 'input') {
            out.push({ selector: cssPath(el), tag, text: '', attrs: { id: el.id, name: el.name, value: (el.value || '').slice(0, 40) } });
            continue;
        }
        if (!visible(el)) continue;
        if (tag === 'img') {
            const src = el.currentSrc || el.src || el.getAttribute('src') || '';
            if (!src) continue;
            out.push({ selector: cssPath(el), tag, text: (el.alt || '').slice(0, 120), attrs: { src: src.slice(0, 200), width: el.naturalWidth } });
            continue;
        }
        const text = (el.innerText || '').trim();
        if (!text || text.length > 300) continue;
        if (el.children.length > 3) continue;
        out.push({ selector: cssPath(el), tag, text: text.slice(0, 120), attrs: { class: (el.className || '').toString().slice(0, 80) } });
    }
    return out;
}"""

IMAGE_SCRIPT = """() => Array.from(document.querySelectorAll('img'))
    .map(img => ({ src: img.currentSrc || img.src || '', alt: img.alt || '', width: img.naturalWidth || 0 }))
    .filter(img => img.src && img.width >= 100)
    .slice(0, 40)"""

OBSERVE_SYSTEM = (
    "You locate elements on web pages. You are given a numbered list of page elements "
    "(tag, text, attributes). Answer with JSON: {\"matches\": [{\"index\": <number>, "
    "\"description\": <short text>}]} listing the best matching elements first. "
    "Return an empty list if nothing matches."
)

EXTRACT_SYSTEM = (
    "You extract structured product data from e-commerce pages. Answer with a single JSON "
    "object that follows the given JSON schema. Use empty strings (or empty arrays) for "
    "information that is not present on the page. Never invent values."
)


class AutomationPage:
    """Playwright page plus model-backed observe/extract."""

    def __init__(self, page: "Page", llm_client: LLMClient):
        self.page = page
        self.llm_client = llm_client

    # Delegated Playwright operations

    @property
    def url(self) -> str:
        return self.page.url

    async def goto(self, url: str, wait_until: str = "domcontentloaded", timeout: int = 30000):
        return await self.page.goto(url, wait_until=wait_until, timeout=timeout)

    def locator(self, selector: str):
        return self.page.locator(selector)

    async def wait_for_selector(self, selector: str, timeout: int = 15000, state: str = "attached"):
        return await self.page.wait_for_selector(selector, timeout=timeout, state=state)

    async def evaluate(self, expression: str, arg: Any = None):
        return await self.page.evaluate(expression, arg)

    async def route(self, pattern: str, handler):
        await self.page.route(pattern, handler)

    async def unroute(self, pattern: str, handler=None):
        await self.page.unroute(pattern, handler)

    def is_closed(self) -> bool:
        return self.page.is_closed()

    async def inner_text(self, selector: str, timeout: int = 5000) -> str:
        return await self.page.locator(selector).first.inner_text(timeout=timeout)

    async def body_text(self, limit: int = 4000) -> str:
        text = await self.page.evaluate(
            "(limit) => (document.body && document.body.innerText || '').slice(0, limit)", limit
        )
        return text or ""

    # Model-backed operations

    async def observe(self, prompt: str, timeout: int = 10000) -> List[Dict[str, Any]]:
        """Resolve a natural-language element request to concrete selectors."""
        candidates = await self.page.evaluate(CANDIDATE_SCRIPT, MAX_OBSERVE_CANDIDATES) or []
        if not candidates:
            return []

        listing = "\n".join(
            f"[{index}] <{candidate['tag']}> {json.dumps(candidate.get('text', ''))} "
            f"{json.dumps(candidate.get('attrs', {}))}"
            for index, candidate in enumerate(candidates)
        )
        result = await self.llm_client.call(
            f"Request: {prompt}\n\nElements:\n{listing}", system=OBSERVE_SYSTEM, max_tokens=500
        )
        if "error" in result:
            raise ModelExtractionError(f"observe failed: {result['error']}")

        observations = []
        for match in result.get("matches") or []:
            index = match.get("index") if isinstance(match, dict) else None
            if isinstance(index, int) and 0 <= index < len(candidates):
                observations.append({
                    "selector": candidates[index]["selector"],
                    "description": match.get("description", ""),
                })
        return observations

    async def extract(
        self,
        instruction: str,
        schema: Type[BaseModel],
        dom_settle_timeout_ms: int = 10000,
    ) -> Dict[str, Any]:
        """Model-driven extraction of the schema's fields from the current page."""
        try:
            await self.page.wait_for_load_state("networkidle", timeout=dom_settle_timeout_ms)
        except Exception as e:
            logger.debug(f"[AutomationPage] DOM did not settle within {dom_settle_timeout_ms}ms: {e}")

        page_text = await self.body_text(MAX_PAGE_TEXT_CHARS)
        images = await self.page.evaluate(IMAGE_SCRIPT) or []
        prompt = (
            f"Instruction: {instruction}\n\n"
            f"JSON schema:\n{json.dumps(schema.model_json_schema(), indent=2)}\n\n"
            f"Page URL: {self.url}\n\n"
            f"Image candidates:\n{json.dumps(images)}\n\n"
            f"Page text:\n{page_text}"
        )
        result = await self.llm_client.call(prompt, system=EXTRACT_SYSTEM, max_tokens=2000)
        if "error" in result:
            raise ModelExtractionError(f"extract failed: {result['error']}")

        try:
            return schema.model_validate(result).model_dump()
        except ValidationError as e:
            raise ModelExtractionError(f"extract returned data not matching schema: {e}") from e
