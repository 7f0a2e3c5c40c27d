"""
extractor/automation/llm_client.py

LLM client used by the automation page for observe/extract.

Features:
- Reuses one aiohttp session across requests (connection pooling)
- OpenAI-compatible chat completions with JSON response mode
- Tolerant JSON parsing (code fences, embedded objects)
- Errors come back as {"error": ...} dicts; callers decide whether to raise
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class LLMClient:
    """
    Shared LLM client with session reuse and JSON parsing.
    """

    def __init__(
        self,
        llm_url: str,
        llm_model: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 60,
    ):
        self.llm_url = llm_url
        self.llm_model = llm_model
        self.api_key = api_key or ""
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        async with self._session_lock:
            if self._session is None or self._session.closed:
                headers = {"Content-Type": "application/json"}
                if self.api_key:
                    headers["Authorization"] = f"Bearer {self.api_key}"
                self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
            return self._session

    async def close(self):
        """Close the aiohttp session."""
        async with self._session_lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def call(
        self,
        prompt: str,
        system: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 2000,
    ) -> Dict[str, Any]:
        """
        Call the LLM and parse its JSON answer.

        Returns:
            Parsed JSON object or {"error": ...}
        """
        session = await self._get_session()

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        request_data = {
            "model": self.llm_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }

        try:
            async with session.post(self.llm_url, json=request_data) as response:
                if response.status == 200:
                    data = await response.json()
                    content = data["choices"][0]["message"]["content"]
                    return self.parse_json_response(content)
                body = await response.text()
                logger.error(f"[LLMClient] API error {response.status}: {body[:200]}")
                return {"error": f"LLM API error: {response.status}", "status_code": response.status}

        except asyncio.TimeoutError:
            logger.error(f"[LLMClient] Request timeout after {self.timeout.total}s")
            return {"error": "LLM request timeout"}
        except (json.JSONDecodeError, aiohttp.ContentTypeError) as e:
            logger.error(f"[LLMClient] Failed to parse server response: {e}")
            return {"error": f"Failed to parse server response: {e}"}
        except aiohttp.ClientError as e:
            logger.error(f"[LLMClient] Client error: {e}")
            return {"error": f"Client error: {e}"}
        except (KeyError, IndexError) as e:
            logger.error(f"[LLMClient] Unexpected API response structure: {e}")
            return {"error": f"Unexpected response structure: {e}"}

    def parse_json_response(self, content: str) -> Dict[str, Any]:
        """
        Extract and parse JSON from an LLM response.

        Handles:
        - JSON in code blocks (```json ... ```)
        - Raw JSON
        - JSON object embedded in text
        """
        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", content)
        if json_match:
            try:
                return self._as_object(json.loads(json_match.group(1).strip()))
            except json.JSONDecodeError as e:
                logger.debug(f"[LLMClient] Code block JSON parse failed: {e}")

        try:
            return self._as_object(json.loads(content.strip()))
        except json.JSONDecodeError as e:
            logger.debug(f"[LLMClient] Full content JSON parse failed: {e}")

        obj_start = content.find("{")
        obj_end = content.rfind("}")
        if 0 <= obj_start < obj_end:
            try:
                return self._as_object(json.loads(content[obj_start:obj_end + 1]))
            except json.JSONDecodeError as e:
                logger.debug(f"[LLMClient] Object extraction failed: {e}")

        logger.warning(f"[LLMClient] Could not parse JSON from response: {content[:200]}...")
        return {"error": "Could not parse JSON from LLM response", "raw_preview": content[:500]}

    @staticmethod
    def _as_object(parsed: Any) -> Dict[str, Any]:
        if isinstance(parsed, list):
            return {"items": parsed}
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}
