"""Host-side orchestration of the sandbox.

The orchestrator owns the current ``SandboxInstance`` and the table of
pending submissions. It never blocks on the worker: ``submit`` returns as
soon as the message is queued, and results are matched back to their
submission by id when they arrive.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time

from sandterm.harness.instance import ChannelError, SandboxInstance
from sandterm.harness.logging_utils import abbreviate
from sandterm.protocol import (
    DiagnosticEvent,
    FaultEvent,
    LoadModule,
    Message,
    PendingEntry,
    ReadyEvent,
    ResultEvent,
    StatusEvent,
    Submission,
    SubmitEval,
    TableEvent,
    TerminalEvent,
)

logger = logging.getLogger(__name__)


class Display(abc.ABC):
    """Surface that renders sandbox output."""

    @abc.abstractmethod
    def diagnostic(self, event: DiagnosticEvent) -> None: ...

    @abc.abstractmethod
    def table(self, event: TableEvent) -> None: ...

    @abc.abstractmethod
    def result(self, event: ResultEvent, elapsed_ms: float | None) -> None: ...

    @abc.abstractmethod
    def fault(self, event: FaultEvent, elapsed_ms: float | None) -> None: ...

    @abc.abstractmethod
    def status(self, text: str) -> None: ...

    @abc.abstractmethod
    def clear(self) -> None: ...


class Orchestrator:
    """Correlates submissions with terminal events and manages the sandbox.

    Args:
        display: Where events are rendered.
        command: Optional worker command line override.
        env: Optional worker environment override.
    """

    def __init__(
        self,
        display: Display,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
    ):
        self.display = display
        self.command = command
        self.env = env
        self.pending: dict[str, PendingEntry] = {}
        self.instance: SandboxInstance | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    async def start(self) -> bool:
        """Spawn the first sandbox and wait until it is ready."""
        return await self._spawn()

    async def _spawn(self) -> bool:
        instance = SandboxInstance(self._on_message, self._on_exit, self.command, self.env)
        self.instance = instance
        try:
            await instance.start()
        except OSError as exc:
            logger.exception("failed to spawn sandbox worker")
            instance.destroy()
            self._show_fault(
                FaultEvent(id=None, formatted=f"ChannelError: {exc}", kind="channel")
            )
            return False
        ready = await instance.wait_ready()
        logger.info("sandbox spawned pid=%s ready=%s", instance.pid, ready)
        return ready

    def submit(self, code: str) -> str:
        """Send code to the sandbox and return its submission id immediately."""
        submission = Submission.create(code)
        self.pending[submission.id] = PendingEntry(
            id=submission.id,
            started_at=time.perf_counter(),
        )
        self._idle.clear()
        logger.debug("submit id=%s code=%s", submission.id, abbreviate(code))
        try:
            self._send(SubmitEval(id=submission.id, code=submission.code))
        except ChannelError as exc:
            self.on_terminal_event(
                FaultEvent(id=submission.id, formatted=f"ChannelError: {exc}", kind="channel")
            )
            return submission.id
        self.display.status("running ...")
        return submission.id

    def load_module(self, spec: str) -> None:
        """Ask the sandbox to load a module; the outcome arrives as events."""
        logger.debug("load spec=%s", spec)
        try:
            self._send(LoadModule(spec=spec))
        except ChannelError as exc:
            self._show_fault(FaultEvent(id=None, formatted=f"ChannelError: {exc}", kind="channel"))
            return
        self.display.status(f"loading {spec} ...")

    def on_terminal_event(self, event: TerminalEvent) -> float | None:
        """Close out the pending entry for ``event`` and render it.

        Returns:
            Elapsed milliseconds, or None when the event matches no pending
            submission (untargeted faults, leftovers from before a reset).
        """
        entry = self.pending.pop(event.id, None) if event.id is not None else None
        elapsed_ms = None
        if entry is not None:
            elapsed_ms = max(0.0, (time.perf_counter() - entry.started_at) * 1000)
        if not self.pending:
            self._idle.set()

        if isinstance(event, ResultEvent):
            self.display.result(event, elapsed_ms)
            if elapsed_ms is not None:
                self.display.status(f"done in {elapsed_ms:.1f} ms")
        else:
            self._show_fault(event, elapsed_ms)
        return elapsed_ms

    async def reset(self) -> bool:
        """Destroy the current sandbox and start a fresh one.

        In-flight submissions are dropped without notice; anything the old
        worker still produces is discarded.
        """
        old, self.instance = self.instance, None
        dropped = len(self.pending)
        self.pending.clear()
        self._idle.set()
        if old is not None:
            old.destroy()
            await old.wait_closed()
        logger.info("sandbox reset dropped=%s", dropped)
        self.display.status("sandbox reset")
        return await self._spawn()

    async def drain(self) -> None:
        """Wait until every pending submission has completed."""
        await self._idle.wait()

    async def close(self) -> None:
        instance, self.instance = self.instance, None
        if instance is not None:
            await instance.close()

    def _send(self, message: Message) -> None:
        if self.instance is None:
            raise ChannelError("no sandbox instance")
        self.instance.send(message)

    def _show_fault(self, event: FaultEvent, elapsed_ms: float | None = None) -> None:
        self.display.fault(event, elapsed_ms)
        self.display.status("error")

    def _on_message(self, instance: SandboxInstance, message: Message) -> None:
        if instance is not self.instance:
            logger.debug("discard type=%s from stale pid=%s", message.type, instance.pid)
            return
        try:
            self._dispatch(message)
        except Exception:
            logger.exception("failed to display type=%s", message.type)

    def _dispatch(self, message: Message) -> None:
        if isinstance(message, ReadyEvent):
            self.display.status("sandbox ready")
        elif isinstance(message, DiagnosticEvent):
            self.display.diagnostic(message)
        elif isinstance(message, TableEvent):
            self.display.table(message)
        elif isinstance(message, (ResultEvent, FaultEvent)):
            self.on_terminal_event(message)
        elif isinstance(message, StatusEvent):
            self.display.status(message.text)
        else:
            logger.warning("unexpected message type=%s", message.type)

    def _on_exit(self, instance: SandboxInstance, returncode: int | None) -> None:
        if instance is not self.instance:
            return
        logger.warning("sandbox exited pid=%s returncode=%s", instance.pid, returncode)
        self.pending.clear()
        self._idle.set()
        text = f"ChannelError: sandbox worker exited with code {returncode}"
        if instance.stderr_tail:
            text = f"{text}\n" + "\n".join(instance.stderr_tail)
        try:
            self._show_fault(FaultEvent(id=None, formatted=text, kind="channel"))
            self.display.status("sandbox terminated; use .reset")
        except Exception:
            logger.exception("failed to display channel fault")
