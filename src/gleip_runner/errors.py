"""
Runner Exceptions

Every failure the runner detects is raised as one of these and converted
into a protocol-visible outcome (Result, Ack, or a dropped frame) at the
component boundary that catches it.
"""

from typing import Optional


class RunnerError(Exception):
    """Base class for all runner errors."""


class MessageDecodeError(RunnerError):
    """An inbound frame could not be decoded into a known message."""


class HttpExecutionError(RunnerError):
    """An HTTP job failed (connection error, TLS failure, bad URL...)."""


class RedirectLimitExceeded(HttpExecutionError):
    """The redirect chain would exceed the configured maximum."""

    def __init__(self, max_redirects: int):
        super().__init__(f"Max redirects ({max_redirects}) exceeded")
        self.max_redirects = max_redirects


class RequestTimeout(HttpExecutionError):
    """The job deadline expired before the final response arrived."""

    def __init__(self, timeout_ms: Optional[int] = None):
        super().__init__("Request timeout")
        self.timeout_ms = timeout_ms


class BrowserSessionError(RunnerError):
    """Base class for browser session failures."""


class NoActivePageError(BrowserSessionError):
    """Operation requires an active page."""

    def __init__(self, message: str = "No active page"):
        super().__init__(message)


class SessionStateError(BrowserSessionError):
    """Lifecycle operation is not valid from the current state."""


class BrowserStartError(BrowserSessionError):
    """The browser engine could not be launched."""


class ChannelClosedError(RunnerError):
    """The browser channel closed before a session could be attached."""

    def __init__(self, message: str = "Browser channel closed"):
        super().__init__(message)
