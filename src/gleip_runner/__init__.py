"""
Gleip Runner

Remote execution agent. Keeps a WebSocket connection to the control plane,
executes HTTP jobs and drives remotely steered browser sessions.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
