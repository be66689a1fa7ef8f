"""
Job Execution Module

Executes HTTP jobs received on the control channel.
"""

from .executor import HttpExecutor, NormalizedResponse

__all__ = [
    "HttpExecutor",
    "NormalizedResponse",
]
