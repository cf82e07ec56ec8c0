"""One sandbox worker process and the channel to it.

The host never waits on the worker synchronously: outgoing messages are
written to the stdin transport, and a reader task delivers incoming events
to a callback as they arrive.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import os
import sys
from typing import Callable

from sandterm.harness.paths import package_root
from sandterm.protocol import Message, ProtocolError, ReadyEvent, decode_message, encode_message

logger = logging.getLogger(__name__)

WORKER_MODULE = "sandterm.harness.worker"
STDERR_TAIL_LINES = 20
STREAM_LIMIT = 16 * 1024 * 1024

MessageHandler = Callable[["SandboxInstance", Message], None]
ExitHandler = Callable[["SandboxInstance", "int | None"], None]


class ChannelError(RuntimeError):
    """The worker process is gone or its channel is unusable."""


def worker_command() -> list[str]:
    return [sys.executable, "-u", "-m", WORKER_MODULE]


def worker_env() -> dict[str, str]:
    """Environment for the worker, with the package importable."""
    env = os.environ.copy()
    root = str(package_root())
    existing = env.get("PYTHONPATH", "")
    env["PYTHONPATH"] = f"{root}{os.pathsep}{existing}" if existing else root
    return env


class SandboxInstance:
    """A live worker process.

    Args:
        on_message: Called for every decoded message, in arrival order.
        on_exit: Called with the return code if the worker exits without
            having been destroyed.
        command: Worker command line; defaults to ``worker_command()``.
        env: Worker environment; defaults to ``worker_env()``.
    """

    def __init__(
        self,
        on_message: MessageHandler,
        on_exit: ExitHandler,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
    ):
        self.on_message = on_message
        self.on_exit = on_exit
        self.command = command or worker_command()
        self.env = env or worker_env()
        self.process: asyncio.subprocess.Process | None = None
        self.ready = asyncio.Event()
        self.destroyed = False
        self.stderr_tail: collections.deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._reader: asyncio.Task | None = None
        self._stderr_reader: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def alive(self) -> bool:
        return (
            not self.destroyed
            and self.process is not None
            and self.process.returncode is None
        )

    async def start(self) -> None:
        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env,
            limit=STREAM_LIMIT,
            start_new_session=os.name != "nt",
        )
        logger.debug("worker started pid=%s", self.process.pid)
        self._reader = asyncio.create_task(self._read_events())
        self._stderr_reader = asyncio.create_task(self._read_stderr())

    async def wait_ready(self) -> bool:
        """Wait for the ``ready`` message or for the worker to exit.

        Returns:
            True if the worker reported ready.
        """
        if self._reader is None:
            raise ChannelError("worker was never started")
        waiter = asyncio.create_task(self.ready.wait())
        await asyncio.wait({waiter, self._reader}, return_when=asyncio.FIRST_COMPLETED)
        if not waiter.done():
            waiter.cancel()
        return self.ready.is_set()

    def send(self, message: Message) -> None:
        """Queue a message for the worker without waiting."""
        if not self.alive or self.process.stdin is None:
            raise ChannelError("sandbox worker is not running")
        self.process.stdin.write(encode_message(message).encode("utf-8"))

    def destroy(self) -> None:
        """Kill the worker unconditionally. Later output is never delivered."""
        if self.destroyed:
            return
        self.destroyed = True
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            logger.debug("worker killed pid=%s", self.process.pid)
        for task in (self._reader, self._stderr_reader):
            if task is not None:
                task.cancel()

    async def wait_closed(self) -> None:
        if self.process is not None:
            await self.process.wait()

    async def close(self) -> None:
        self.destroy()
        await self.wait_closed()

    async def _read_events(self) -> None:
        assert self.process is not None and self.process.stdout is not None
        stdout = self.process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError as exc:
                logger.error("dropping oversized message pid=%s error=%s", self.pid, exc)
                continue
            if not line:
                break
            try:
                message = decode_message(line)
            except ProtocolError as exc:
                logger.warning("dropping malformed message pid=%s error=%s", self.pid, exc)
                continue
            if isinstance(message, ReadyEvent):
                self.ready.set()
            if self.destroyed:
                continue
            try:
                self.on_message(self, message)
            except Exception:
                logger.exception("message handler failed type=%s", message.type)

        returncode = await self.process.wait()
        if self._stderr_reader is not None:
            await asyncio.wait({self._stderr_reader}, timeout=1.0)
        logger.debug("worker exited pid=%s returncode=%s", self.pid, returncode)
        if not self.destroyed:
            self.on_exit(self, returncode)

    async def _read_stderr(self) -> None:
        assert self.process is not None and self.process.stderr is not None
        try:
            async for raw in self.process.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                self.stderr_tail.append(line)
                logger.debug("worker stderr pid=%s: %s", self.pid, line)
        except ValueError as exc:
            logger.warning("worker stderr unreadable pid=%s error=%s", self.pid, exc)
