"""Process harness for the sandbox console.

Usage:
    # Start the interactive console
    python -m sandterm

    # Evaluate once and exit
    python -m sandterm --exec "2 ** 10"

    # Or drive the sandbox directly
    from sandterm.harness import Orchestrator
"""

from sandterm.harness.history import History
from sandterm.harness.instance import ChannelError, SandboxInstance
from sandterm.harness.orchestrator import Display, Orchestrator
from sandterm.harness.terminal import main

__all__ = [
    "ChannelError",
    "Display",
    "History",
    "Orchestrator",
    "SandboxInstance",
    "main",
]
