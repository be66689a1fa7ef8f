"""
Configuration and Logging Setup

Provides the runner's deployment configuration and centralized logging.
Reads settings from environment variables (and a local .env file).

Usage:
    from gleip_runner.config import RunnerConfig, configure_logging

    # Configure at application startup
    configure_logging()
    config = RunnerConfig.from_env()
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Literal, Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

CaptureMode = Literal["frames", "traffic"]

DEFAULT_SERVER = "wss://app.gleip.io/ws/runner"
CAPTURE_MODES = ("frames", "traffic")
BROWSER_ENGINES = ("patchright", "playwright")

# Default configuration
DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_FORMAT_SIMPLE = "%(levelname)s: %(message)s"

# Valid log levels
VALID_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Loggers that are chatty at INFO/DEBUG
NOISY_LOGGERS = ("playwright", "patchright", "asyncio", "httpx", "httpcore", "hpack", "websockets")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class RunnerConfig:
    """
    Deployment configuration for the runner.

    Reads from environment variables with sensible defaults. CLI flags
    override individual fields.
    """

    # Control-plane WebSocket URL
    server_url: str = DEFAULT_SERVER

    # Capture strategy for browser sessions
    capture_mode: CaptureMode = "frames"

    # Frame capture interval (200ms ~ 5 FPS) and JPEG quality
    frame_interval_ms: int = 200
    jpeg_quality: int = 60

    # Default job deadline when an Execute carries no timeoutMs
    http_timeout_ms: int = 30000

    # Timeout for navigate/refresh input actions
    navigation_timeout_ms: int = 30000

    # Automation driver: stealth-patched patchright or stock playwright
    browser_engine: str = "patchright"

    # Playwright browser channel ("chrome", "msedge"); None = bundled Chromium
    browser_channel: Optional[str] = None

    # Force headless sessions regardless of per-session options
    force_headless: bool = False

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        """
        Create RunnerConfig from environment variables.

        Environment variables:
            RUNNER_SERVER: control-plane URL (default: wss://app.gleip.io/ws/runner)
            RUNNER_CAPTURE_MODE: frames or traffic (default: frames)
            RUNNER_FRAME_INTERVAL_MS: int (default: 200)
            RUNNER_JPEG_QUALITY: int 1-100 (default: 60)
            RUNNER_HTTP_TIMEOUT_MS: int (default: 30000)
            RUNNER_NAVIGATION_TIMEOUT_MS: int (default: 30000)
            RUNNER_BROWSER_ENGINE: patchright or playwright (default: patchright)
            RUNNER_BROWSER_CHANNEL: chrome, msedge, ... (default: bundled chromium)
            RUNNER_FORCE_HEADLESS: true/false (default: false)
        """
        capture_mode = os.getenv("RUNNER_CAPTURE_MODE", "frames").lower()
        if capture_mode not in CAPTURE_MODES:
            print(
                f"Warning: Invalid RUNNER_CAPTURE_MODE '{capture_mode}'. "
                f"Valid values: {', '.join(CAPTURE_MODES)}. Using frames.",
                file=sys.stderr,
            )
            capture_mode = "frames"

        browser_engine = os.getenv("RUNNER_BROWSER_ENGINE", "patchright").lower()
        if browser_engine not in BROWSER_ENGINES:
            print(
                f"Warning: Invalid RUNNER_BROWSER_ENGINE '{browser_engine}'. "
                f"Valid values: {', '.join(BROWSER_ENGINES)}. Using patchright.",
                file=sys.stderr,
            )
            browser_engine = "patchright"

        return cls(
            server_url=os.getenv("RUNNER_SERVER", DEFAULT_SERVER),
            capture_mode=capture_mode,
            frame_interval_ms=int(os.getenv("RUNNER_FRAME_INTERVAL_MS", "200")),
            jpeg_quality=int(os.getenv("RUNNER_JPEG_QUALITY", "60")),
            http_timeout_ms=int(os.getenv("RUNNER_HTTP_TIMEOUT_MS", "30000")),
            navigation_timeout_ms=int(os.getenv("RUNNER_NAVIGATION_TIMEOUT_MS", "30000")),
            browser_engine=browser_engine,
            browser_channel=os.getenv("RUNNER_BROWSER_CHANNEL") or None,
            force_headless=_env_bool("RUNNER_FORCE_HEADLESS"),
        )


def get_log_level() -> int:
    """
    Get the log level from LOG_LEVEL environment variable.

    Returns:
        Logging level constant (e.g., logging.INFO)

    Supported values:
        DEBUG, INFO, WARNING, ERROR, CRITICAL
    """
    level_str = os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()

    if level_str not in VALID_LEVELS:
        # Warn about invalid level and use default
        print(
            f"Warning: Invalid LOG_LEVEL '{level_str}'. "
            f"Valid values: {', '.join(VALID_LEVELS.keys())}. "
            f"Using {DEFAULT_LOG_LEVEL}.",
            file=sys.stderr,
        )
        return VALID_LEVELS[DEFAULT_LOG_LEVEL]

    return VALID_LEVELS[level_str]


def configure_logging(
    level: Optional[int] = None,
    verbose: bool = False,
) -> None:
    """
    Configure logging for the runner.

    Should be called once at process startup, before connecting.

    Args:
        level: Override log level (default: from LOG_LEVEL env var)
        verbose: Use detailed format with timestamps (default: simple format)
    """
    if level is None:
        level = get_log_level()

    log_format = LOG_FORMAT if verbose else LOG_FORMAT_SIMPLE

    logging.basicConfig(
        level=level,
        format=log_format,
        stream=sys.stderr,
        force=True,
    )

    logging.getLogger("gleip_runner").setLevel(level)

    # Quiet noisy third-party loggers in non-debug mode
    if level > logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
