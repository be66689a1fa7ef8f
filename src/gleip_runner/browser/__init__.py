"""
Browser Session Module

Remotely steered browser sessions: engine binding, session lifecycle,
capture strategies and the session-scoped browser channel.
"""

from .capture import CaptureStrategy, FrameCapture, TrafficCapture, create_capture_strategy
from .channel import BrowserChannel, browser_channel_url
from .engine import (
    BrowserEngine,
    LaunchProfile,
    NetworkObserver,
    PatchrightEngine,
    PlaywrightEngine,
    create_engine,
)
from .session import BrowserSession, SessionStatus

__all__ = [
    "BrowserChannel",
    "BrowserEngine",
    "BrowserSession",
    "CaptureStrategy",
    "FrameCapture",
    "LaunchProfile",
    "NetworkObserver",
    "PatchrightEngine",
    "PlaywrightEngine",
    "SessionStatus",
    "TrafficCapture",
    "browser_channel_url",
    "create_capture_strategy",
    "create_engine",
]
