"""
Rich TUI Interface Module

Terminal output for the runner CLI: startup banner and error blocks.
"""

from gleip_runner.tui.console import RunnerConsole, TUIConfig, create_theme, get_console

__all__ = [
    "RunnerConsole",
    "TUIConfig",
    "create_theme",
    "get_console",
]
