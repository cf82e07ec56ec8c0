"""sandterm: an interactive console that runs Python code in a sandboxed worker.

This package provides:
- A value formatter that renders any runtime value as bounded, cycle-safe text
- A console/table encoder that turns diagnostics into structured events
- A module loader for URLs, paths and short CDN names
- An execution context that evaluates expressions or blocks, with top-level await
- A host orchestrator that drives the worker process over a JSON-lines channel

Example:
    import asyncio
    from sandterm import Orchestrator

    async def run(display):
        orchestrator = Orchestrator(display)
        await orchestrator.start()
        orchestrator.submit("2 ** 10")
        await orchestrator.drain()
        await orchestrator.close()
"""

from sandterm.console import Console, DiagnosticsSink, build_table
from sandterm.context import ContextState, ExecutionContext
from sandterm.formatting import ValueKind, classify, format_value
from sandterm.harness.history import History
from sandterm.harness.orchestrator import Display, Orchestrator
from sandterm.loader import ALIASES, LoadError, ModuleLoader, resolve
from sandterm.protocol import (
    DiagnosticEvent,
    FaultEvent,
    ResultEvent,
    Submission,
    TableEvent,
)

__version__ = "0.1.0"

__all__ = [
    # Formatter
    "format_value",
    "classify",
    "ValueKind",
    # Encoder
    "Console",
    "DiagnosticsSink",
    "build_table",
    # Loader
    "ALIASES",
    "LoadError",
    "ModuleLoader",
    "resolve",
    # Execution context
    "ContextState",
    "ExecutionContext",
    # Host
    "Display",
    "History",
    "Orchestrator",
    # Events
    "Submission",
    "DiagnosticEvent",
    "TableEvent",
    "ResultEvent",
    "FaultEvent",
]
