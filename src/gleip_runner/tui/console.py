"""
Rich TUI Console Setup

Startup banner and fatal-error output for the runner CLI.
Configured via environment variables for customizable appearance.
"""

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.style import Style
from rich.table import Table
from rich.text import Text
from rich.theme import Theme


@dataclass
class TUIConfig:
    """
    TUI configuration loaded from environment variables.

    Attributes:
        color_info: Border color for the startup banner
        color_error: Border color for error blocks
        show_timestamps: Whether to display timestamps
    """

    color_info: str = "cyan"
    color_error: str = "red"
    show_timestamps: bool = True

    @classmethod
    def from_env(cls) -> "TUIConfig":
        """Load configuration from environment variables."""
        return cls(
            color_info=os.getenv("COLOR_INFO", "cyan"),
            color_error=os.getenv("COLOR_ERROR", "red"),
            show_timestamps=os.getenv("SHOW_TIMESTAMPS", "true").lower() == "true",
        )


def create_theme(config: TUIConfig) -> Theme:
    """Create a Rich theme from TUI configuration."""
    return Theme(
        {
            "info": Style(color=config.color_info, bold=True),
            "error": Style(color=config.color_error, bold=True),
            "timestamp": Style(dim=True),
            "label": Style(bold=True),
        }
    )


class RunnerConsole:
    """Rich console wrapper for runner CLI output."""

    def __init__(self, config: Optional[TUIConfig] = None, console: Optional[Console] = None):
        """
        Initialize the runner console.

        Args:
            config: TUI configuration. If None, loads from environment.
            console: Underlying Rich console (stderr by default)
        """
        self.config = config or TUIConfig.from_env()
        self.console = console or Console(theme=create_theme(self.config), stderr=True)

    def _get_timestamp(self) -> str:
        if self.config.show_timestamps:
            return datetime.now().strftime("%H:%M:%S")
        return ""

    def _title(self, label: str) -> str:
        timestamp = self._get_timestamp()
        return f"{timestamp} {label}" if timestamp else label

    def print_banner(
        self,
        runner_id: str,
        server_url: str,
        capture_mode: str,
        version: str,
    ) -> None:
        """
        Print the startup banner.

        Args:
            runner_id: Generated runner id
            server_url: Control-plane URL
            capture_mode: Active capture strategy
            version: Runner version
        """
        table = Table.grid(padding=(0, 2))
        table.add_column(style="label")
        table.add_column()
        table.add_row("Runner ID", runner_id)
        table.add_row("Server", server_url)
        table.add_row("Capture", capture_mode)
        table.add_row("Version", version)

        self.console.print(
            Panel(
                table,
                title=self._title("[Gleip Runner]"),
                title_align="left",
                border_style=self.config.color_info,
                padding=(0, 1),
            )
        )

    def print_error(self, message: str, error_type: Optional[str] = None) -> None:
        """
        Print an error block.

        Args:
            message: The error message
            error_type: Type/category of error
        """
        content = Text()
        content.append("Error", style="bold red")
        if error_type:
            content.append(f" ({error_type})", style="dim red")
        content.append("\n\n")
        content.append(message)

        self.console.print(
            Panel(
                content,
                title=self._title("[ERROR]"),
                title_align="left",
                border_style=self.config.color_error,
                padding=(0, 1),
            )
        )


# Global console instance
_console: Optional[RunnerConsole] = None


def get_console() -> RunnerConsole:
    """Get or create the global console instance."""
    global _console
    if _console is None:
        _console = RunnerConsole()
    return _console
