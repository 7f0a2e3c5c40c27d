"""
Automation capability: Playwright pages with model-backed observe/extract.
"""

from apps.services.extractor.automation.backend import BrowserSession, PlaywrightBackend
from apps.services.extractor.automation.llm_client import LLMClient
from apps.services.extractor.automation.page import AutomationPage

__all__ = ["AutomationPage", "BrowserSession", "LLMClient", "PlaywrightBackend"]
