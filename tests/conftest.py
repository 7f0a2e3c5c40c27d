# conftest.py
# Ensure the repository root is on sys.path so pytest can import the
# apps.services.extractor package without an editable install, and provide
# in-memory stand-ins for the browser automation layer.

import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# conftest is at: tests/conftest.py
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)

if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from apps.services.extractor.config import ExtractorConfig  # noqa: E402
from apps.services.extractor.error_log import configure_event_log  # noqa: E402


class FakeLocator:
    """Locator over a canned element; a missing element times out on every read."""

    def __init__(self, element=None):
        self.element = element

    @property
    def first(self):
        return self

    def _require(self):
        if self.element is None:
            raise TimeoutError("Timeout 5000ms exceeded waiting for locator")
        return self.element

    async def inner_text(self, timeout=None):
        return self._require().get("text", "")

    async def get_attribute(self, name, timeout=None):
        return self._require().get("attrs", {}).get(name)

    async def is_visible(self, timeout=None):
        if self.element is None:
            return False
        return self.element.get("visible", True)


class FakePage:
    """
    Just enough of the automation page for extraction, learning and navigation.

    elements:     {selector: {"text": ..., "attrs": {...}, "visible": bool}}
    extractions:  queued results (dicts or exceptions) for extract()
    observations: {prompt substring: [{"selector": ...}]} for observe()
    evaluate_result: returned by evaluate() instead of body_text when set
    """

    def __init__(self, elements=None, extractions=None, observations=None, body_text="", goto_errors=None,
                 evaluate_result=None):
        self.elements = dict(elements or {})
        self.extractions = list(extractions or [])
        self.observations = dict(observations or {})
        self.body_text = body_text
        self.evaluate_result = evaluate_result
        self.goto_errors = list(goto_errors or [])
        self.url = "about:blank"
        self.visited = []
        self.extract_calls = []
        self.observe_calls = []
        self.routes = []
        self.closed = False

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        if self.goto_errors:
            error = self.goto_errors.pop(0)
            if error is not None:
                raise error
        self.url = url

    def locator(self, selector):
        if selector.startswith("pierce="):
            selector = selector[len("pierce="):]
        return FakeLocator(self.elements.get(selector))

    async def wait_for_selector(self, selector, timeout=None, state=None):
        if selector not in self.elements:
            raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def evaluate(self, expression, arg=None):
        if self.evaluate_result is not None:
            return self.evaluate_result
        return self.body_text

    async def route(self, pattern, handler):
        self.routes.append((pattern, handler))

    async def unroute(self, pattern, handler=None):
        self.routes = [(p, h) for p, h in self.routes if h is not handler]

    def is_closed(self):
        return self.closed

    async def extract(self, instruction, schema, dom_settle_timeout_ms=None):
        self.extract_calls.append({"instruction": instruction, "fields": list(schema.model_fields)})
        if not self.extractions:
            return {}
        result = self.extractions.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def observe(self, prompt, timeout=None):
        self.observe_calls.append(prompt)
        for needle, observations in self.observations.items():
            if needle in prompt:
                return observations
        return []


class FakeSession:
    def __init__(self, session_id, backend):
        self.id = session_id
        self.backend = backend
        self.page = FakePage()
        self.initialized = False
        self.closed = False

    async def init(self):
        self.initialized = True

    async def close(self):
        self.closed = True


class FakeBackend:
    """Records every session request; create_errors are raised in order."""

    def __init__(self, create_errors=None):
        self.created = []
        self.discarded = []
        self.create_errors = list(create_errors or [])
        self.shut_down = False
        self._counter = 0

    async def create_session(self, proxy=None, resume_session_id=None):
        self.created.append({"proxy": proxy, "resume_session_id": resume_session_id})
        if self.create_errors:
            error = self.create_errors.pop(0)
            if error is not None:
                raise error
        self._counter += 1
        return FakeSession(resume_session_id or f"session-{self._counter:04d}-abcdef", self)

    async def discard(self, session_id):
        self.discarded.append(session_id)

    async def shutdown(self):
        self.shut_down = True


@pytest.fixture
def data_dir():
    """Create a temporary data directory for testing."""
    path = Path(tempfile.mkdtemp())
    yield path
    # Cleanup
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(autouse=True)
def event_log(data_dir):
    """Keep event log writes inside the temp directory."""
    return configure_event_log(data_dir / "logs")


@pytest.fixture
def config(data_dir):
    return ExtractorConfig(EXTRACTOR_DATA_DIR=data_dir, LLM_API_KEY="test-key")


@pytest.fixture
def backend():
    return FakeBackend()
