"""
Runner identity.

The identity is computed once at startup and handed to every component
that needs it; nothing reads it from module state.
"""

import secrets
import socket
from dataclasses import dataclass, field

from . import __version__

DEFAULT_CAPABILITIES = ("http/s", "browser")


def generate_runner_id(hostname: str, entropy: bytes) -> str:
    """Build a runner id from the host name and a few random bytes."""
    return f"{hostname}-{entropy.hex()}"


@dataclass(frozen=True)
class RunnerIdentity:
    """Immutable identity presented to the control plane."""

    runner_id: str
    token: str
    version: str = __version__
    capabilities: tuple[str, ...] = field(default=DEFAULT_CAPABILITIES)

    @classmethod
    def create(cls, token: str) -> "RunnerIdentity":
        """Create the process identity from the local host name."""
        runner_id = generate_runner_id(socket.gethostname(), secrets.token_bytes(4))
        return cls(runner_id=runner_id, token=token)
