"""
extractor/errors.py

Exception hierarchy and error-message classifiers.

The automation engine reports most session failures as plain exceptions
whose only distinguishing feature is the message text, so recovery
decisions are made by matching message patterns.
"""

import re
from typing import Optional


class ExtractorError(Exception):
    """Base class for extractor errors."""


class ShutdownInProgress(ExtractorError):
    """Raised at suspension points once a shutdown signal has been received."""

    def __init__(self, message: str = "Shutdown in progress"):
        super().__init__(message)


class SessionTerminated(ExtractorError):
    """The browser session died while navigating."""

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(f"Session terminated: {message}")
        self.original = original


class LedgerError(ExtractorError):
    """A processing ledger is missing, unreadable or malformed."""


class NoInputFiles(ExtractorError):
    """The input directory has nothing to ingest."""


class VendorMismatch(ExtractorError):
    """Input files for one batch declare different vendors."""


class ModelExtractionError(ExtractorError):
    """The model-driven extraction call failed or returned unusable output."""


# Navigation-time failures that mean the session itself is gone
TERMINATION_PATTERN = re.compile(
    r"terminated|session.*closed|browser.*closed|connection.*closed|target.*closed",
    re.IGNORECASE,
)

# Extraction-time failures that are worth a rotation + retry
SESSION_ERROR_PATTERN = re.compile(
    r"uninitialized|createTarget|closed|Target\.createTarget|terminated"
    r"|session.*closed|browser.*closed|connection.*closed",
    re.IGNORECASE,
)

# Same as above plus transport-level garbage seen at the batch level
BUCKET_ERROR_PATTERN = re.compile(
    r"uninitialized|createTarget|closed|Target\.createTarget|Failed to parse server response"
    r"|terminated|session.*closed|browser.*closed|connection.*closed",
    re.IGNORECASE,
)

# Errors raised while closing a session that are safe to ignore
HARMLESS_CLOSE_PATTERNS = [
    re.compile(r"not\s*initialized", re.IGNORECASE),
    re.compile(r"DOM agent hasn't been enabled", re.IGNORECASE),
    re.compile(r"Protocol error.*DOM\.disable", re.IGNORECASE),
    re.compile(r"Session closed", re.IGNORECASE),
    re.compile(r"Target closed", re.IGNORECASE),
    re.compile(r"Connection closed", re.IGNORECASE),
    re.compile(r"Browser has been closed", re.IGNORECASE),
    re.compile(r"terminated", re.IGNORECASE),
]

PROXY_ERROR_PATTERN = re.compile(r"proxies|400|body/proxies", re.IGNORECASE)

PAGE_CLOSED_PATTERNS = [
    "target page, context or browser has been closed",
    "page has been closed",
    "page closed",
]


def error_message(error: BaseException) -> str:
    """Get a printable message for any exception."""
    return str(error) or error.__class__.__name__


def is_termination_error(error: BaseException) -> bool:
    return bool(TERMINATION_PATTERN.search(error_message(error)))


def is_session_error(error: BaseException) -> bool:
    if isinstance(error, ShutdownInProgress):
        return False
    return bool(SESSION_ERROR_PATTERN.search(error_message(error)))


def is_recoverable_bucket_error(error: BaseException) -> bool:
    if isinstance(error, ShutdownInProgress):
        return False
    return bool(BUCKET_ERROR_PATTERN.search(error_message(error)))


def is_harmless_close_error(error: BaseException) -> bool:
    message = error_message(error)
    return any(pattern.search(message) for pattern in HARMLESS_CLOSE_PATTERNS)


def is_proxy_error(error: BaseException) -> bool:
    return bool(PROXY_ERROR_PATTERN.search(error_message(error)))


def is_page_closed_error(error: BaseException) -> bool:
    message = error_message(error).lower()
    return any(pattern in message for pattern in PAGE_CLOSED_PATTERNS)


def is_not_initialized_error(error: BaseException) -> bool:
    message = error_message(error)
    return "NotInitialized" in message or "not initialized" in message.lower()
