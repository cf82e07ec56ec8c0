"""Sandbox worker process.

Usage:
    python -u -m sandterm.harness.worker

Reads one JSON message per line on stdin and writes events as JSON lines to
stdout. User code never touches either stream: ``sys.stdin`` is replaced by
an empty stream and ``sys.stdout``/``sys.stderr`` by sink streams, so stray
writes become diagnostics instead of corrupting the channel.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from typing import BinaryIO

from sandterm.context import ExecutionContext
from sandterm.harness.logging_utils import abbreviate, configure_worker_logging
from sandterm.protocol import Message, ProtocolError, decode_message, encode_bounded

logger = logging.getLogger(__name__)


class Channel:
    """Thread-safe writer for outgoing messages."""

    def __init__(self, stream: BinaryIO):
        self._stream = stream
        self._lock = threading.Lock()

    def send(self, message: Message) -> None:
        payload = encode_bounded(message)
        with self._lock:
            self._stream.write(payload)
            self._stream.flush()


def _pump(stream: BinaryIO, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
    """Forward stdin lines to the event loop until EOF."""
    try:
        for line in stream:
            loop.call_soon_threadsafe(queue.put_nowait, line)
        loop.call_soon_threadsafe(queue.put_nowait, None)
    except RuntimeError:
        # Loop already closed during shutdown.
        pass


async def _handle(context: ExecutionContext, message: Message) -> None:
    """Run one message in its own task so user code cannot cancel the loop."""
    try:
        await asyncio.ensure_future(context.handle(message))
    except asyncio.CancelledError:
        if _serving_cancelled():
            raise
        logger.warning("handler task cancelled type=%s", message.type)
    except Exception:
        logger.exception("failed to handle type=%s", message.type)


def _serving_cancelled() -> bool:
    task = asyncio.current_task()
    cancelling = getattr(task, "cancelling", None)
    return bool(cancelling and cancelling())


async def serve(channel_in: BinaryIO, channel: Channel) -> None:
    """Run the message loop until the host closes stdin."""
    loop = asyncio.get_running_loop()
    context = ExecutionContext(channel.send)
    loop.set_exception_handler(context.handle_loop_exception)
    threading.excepthook = context.handle_thread_exception
    sys.stdout, sys.stderr = context.stdout, context.stderr

    queue: asyncio.Queue[bytes | None] = asyncio.Queue()
    threading.Thread(
        target=_pump,
        args=(channel_in, loop, queue),
        name="sandterm-channel",
        daemon=True,
    ).start()

    context.mark_ready()
    try:
        while True:
            line = await queue.get()
            if line is None:
                logger.debug("channel closed")
                break
            try:
                message = decode_message(line)
            except ProtocolError as exc:
                logger.warning("invalid message error=%s", exc)
                continue
            logger.debug("handle type=%s %s", message.type, abbreviate(str(message)))
            await _handle(context, message)
    finally:
        context.terminate()


def main() -> None:
    configure_worker_logging(sys.stderr)
    channel_in = sys.stdin.buffer
    channel = Channel(sys.stdout.buffer)
    sys.stdin = open(os.devnull, encoding="utf-8")
    asyncio.run(serve(channel_in, channel))


if __name__ == "__main__":
    main()
