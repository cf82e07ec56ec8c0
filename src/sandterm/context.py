"""Sandbox execution context.

Owns the user namespace and decides how a submission is evaluated:

1. Compile the text as a single expression. If that compiles, evaluate it
   (awaiting it when it uses top-level ``await``) and use its value.
2. If, and only if, compiling as an expression raises ``SyntaxError``,
   run the text as a block. When the block ends in an expression
   statement, that expression's value is the result; otherwise ``None``.

Runtime faults from either path are real faults and are reported against
the submission. Every submission ends in exactly one result or fault event.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import enum
import inspect
import logging
import threading
from types import CodeType, TracebackType
from typing import Any, Callable

from sandterm.console import Console, DiagnosticsSink, SinkStream, make_print
from sandterm.formatting import format_value
from sandterm.loader import LoadError, ModuleLoader, resolve
from sandterm.protocol import (
    FaultEvent,
    LoadModule,
    Message,
    ReadyEvent,
    ResultEvent,
    StatusEvent,
    SubmitEval,
    TerminalEvent,
)

logger = logging.getLogger(__name__)

CONSOLE_FILENAME = "<console>"

_COMPILE_FLAGS = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT


class ContextState(enum.Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    TERMINATED = "terminated"


def _trim_traceback(exc: BaseException, filename: str) -> BaseException:
    """Drop leading frames that belong to the harness rather than user code."""
    tb: TracebackType | None = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename != filename:
        tb = tb.tb_next
    return exc.with_traceback(tb)


def _clear_cancellation() -> None:
    """Undo a cancel request user code made against the serving task."""
    task = asyncio.current_task()
    if task is not None and hasattr(task, "uncancel"):
        while task.cancelling():
            task.uncancel()


class ExecutionContext:
    """Evaluates submissions in a persistent namespace.

    Args:
        emit: Callback receiving every outgoing message in emission order.
        loader: Module loader used for ``load-module`` requests.
    """

    def __init__(self, emit: Callable[[Message], None], loader: ModuleLoader | None = None):
        self.emit = emit
        self.loader = loader or ModuleLoader()
        self.sink = DiagnosticsSink(emit)
        self.stdout = SinkStream(self.sink, "log")
        self.stderr = SinkStream(self.sink, "error")
        self.console = Console(self.sink)
        self.namespace: dict[str, Any] = {
            "__name__": "__console__",
            "__doc__": None,
            "__builtins__": builtins,
            "console": self.console,
            "print": make_print(self.stdout),
        }
        self.state = ContextState.INITIALIZING
        self.active_id: str | None = None

    def mark_ready(self) -> None:
        if self.state is not ContextState.INITIALIZING:
            raise RuntimeError(f"Cannot become ready from {self.state.value}")
        self.state = ContextState.READY
        self.emit(ReadyEvent())

    def terminate(self) -> None:
        self.state = ContextState.TERMINATED
        self.loader.close()

    async def handle(self, message: Message) -> None:
        """Dispatch one inbound channel message."""
        if isinstance(message, SubmitEval):
            await self.submit(message.id, message.code)
        elif isinstance(message, LoadModule):
            self.load_module(message.spec)
        else:
            logger.warning("ignoring unexpected message type=%s", message.type)

    async def submit(self, submission_id: str, code: str) -> TerminalEvent:
        """Evaluate one submission and emit its terminal event."""
        if self.state is not ContextState.READY:
            raise RuntimeError(f"Cannot accept a submission while {self.state.value}")

        self.state = ContextState.BUSY
        self.active_id = submission_id
        event: TerminalEvent
        try:
            value = await self.evaluate(code)
            event = ResultEvent(id=submission_id, formatted=format_value(value))
        except GeneratorExit:
            raise
        except BaseException as exc:
            logger.debug("submission id=%s raised %s", submission_id, type(exc).__name__)
            if isinstance(exc, asyncio.CancelledError):
                _clear_cancellation()
            exc = _trim_traceback(exc, CONSOLE_FILENAME)
            event = FaultEvent(id=submission_id, formatted=format_value(exc))
        finally:
            self.stdout.flush()
            self.stderr.flush()
            self.active_id = None
            if self.state is ContextState.BUSY:
                self.state = ContextState.READY

        self.emit(event)
        return event

    async def evaluate(self, code: str) -> Any:
        """Run ``code`` and return its candidate result value."""
        try:
            expression = compile(
                code, CONSOLE_FILENAME, "eval", flags=_COMPILE_FLAGS, dont_inherit=True
            )
        except SyntaxError:
            return await self._run_block(code)
        return await self._run(expression)

    async def _run_block(self, code: str) -> Any:
        tree = compile(
            code,
            CONSOLE_FILENAME,
            "exec",
            flags=ast.PyCF_ONLY_AST | _COMPILE_FLAGS,
            dont_inherit=True,
        )
        tail = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            tail = ast.Expression(body=tree.body.pop().value)

        body = compile(tree, CONSOLE_FILENAME, "exec", flags=_COMPILE_FLAGS, dont_inherit=True)
        await self._run(body)
        if tail is None:
            return None
        ast.fix_missing_locations(tail)
        last = compile(tail, CONSOLE_FILENAME, "eval", flags=_COMPILE_FLAGS, dont_inherit=True)
        return await self._run(last)

    async def _run(self, code: CodeType) -> Any:
        result = eval(code, self.namespace)
        if code.co_flags & inspect.CO_COROUTINE:
            result = await result
        return result

    def load_module(self, spec: str) -> str | None:
        """Load a module into the namespace, reporting the outcome as events."""
        locator = resolve(spec)
        self.emit(StatusEvent(text=f"fetching {locator} ..."))
        try:
            self.loader.load(spec, self.namespace)
        except LoadError as exc:
            cause = _trim_traceback(exc.cause, exc.locator)
            self.emit(
                FaultEvent(
                    id=None,
                    formatted=f"load failed: {exc.locator}: {format_value(cause)}",
                    kind="load",
                )
            )
            return None
        finally:
            self.stdout.flush()
            self.stderr.flush()
        self.sink.text("info", f"loaded: {locator}")
        return locator

    def report_detached(self, exc: BaseException | None, message: str = "") -> FaultEvent:
        """Report a fault raised outside any submission's lifetime."""
        detail = format_value(exc) if exc is not None else message
        event = FaultEvent(id=None, formatted=f"Unhandled exception: {detail}", kind="detached")
        self.emit(event)
        return event

    def handle_loop_exception(self, loop, context: dict[str, Any]) -> None:
        """``loop.set_exception_handler`` callback for detached async work."""
        self.report_detached(context.get("exception"), context.get("message", ""))

    def handle_thread_exception(self, args: threading.ExceptHookArgs) -> None:
        """``threading.excepthook`` callback for user-started threads."""
        if args.exc_type is SystemExit:
            return
        self.report_detached(args.exc_value)
