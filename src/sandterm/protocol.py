"""Messages exchanged between the host and a sandbox worker.

Every message is a JSON object on its own line with a ``type`` field.
The host sends ``submit-eval`` and ``load-module``; the worker answers with
``ready``, ``diagnostic``, ``table``, ``result``, ``fault`` and ``status``.
"""

from __future__ import annotations

import json
import time
import uuid
import dataclasses
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Union

DIAGNOSTIC_METHODS = ("log", "info", "warn", "error", "debug")

FAULT_KINDS = ("evaluation", "detached", "load", "channel", "command")

# Outgoing worker lines stay well under the host reader limit.
MAX_LINE_BYTES = 8 * 1024 * 1024
TRUNCATED_MARKER = "… [truncated]"


class ProtocolError(ValueError):
    """Raised when a channel line is not a well-formed message."""


def now() -> float:
    """Wall-clock timestamp used for ``ts`` fields."""
    return time.time()


@dataclass(frozen=True)
class Submission:
    """A piece of user code handed to the sandbox."""

    id: str
    code: str
    submitted_at: float = field(default_factory=now)

    @classmethod
    def create(cls, code: str) -> "Submission":
        return cls(id=uuid.uuid4().hex, code=code)


@dataclass
class PendingEntry:
    """Host-side bookkeeping for a submission awaiting its terminal event."""

    id: str
    started_at: float


@dataclass
class Message:
    """Base for all channel messages."""

    type: ClassVar[str] = ""

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, **asdict(self)}


@dataclass
class SubmitEval(Message):
    type: ClassVar[str] = "submit-eval"

    id: str
    code: str


@dataclass
class LoadModule(Message):
    type: ClassVar[str] = "load-module"

    spec: str


@dataclass
class ReadyEvent(Message):
    type: ClassVar[str] = "ready"


@dataclass
class StatusEvent(Message):
    type: ClassVar[str] = "status"

    text: str


@dataclass
class DiagnosticEvent(Message):
    type: ClassVar[str] = "diagnostic"

    method: str
    formatted: str
    ts: float = field(default_factory=now)


@dataclass
class TableEvent(Message):
    type: ClassVar[str] = "table"

    headers: list[str]
    rows: list[list[str]]
    ts: float = field(default_factory=now)


@dataclass
class ResultEvent(Message):
    type: ClassVar[str] = "result"

    id: str
    formatted: str
    ts: float = field(default_factory=now)


@dataclass
class FaultEvent(Message):
    """A fault; ``id`` is None when it cannot be tied to a submission."""

    type: ClassVar[str] = "fault"

    id: str | None
    formatted: str
    ts: float = field(default_factory=now)
    kind: str = "evaluation"


TerminalEvent = Union[ResultEvent, FaultEvent]

_MESSAGE_TYPES: dict[str, type[Message]] = {
    cls.type: cls
    for cls in (
        SubmitEval,
        LoadModule,
        ReadyEvent,
        StatusEvent,
        DiagnosticEvent,
        TableEvent,
        ResultEvent,
        FaultEvent,
    )
}


def encode_message(message: Message) -> str:
    """Serialize a message to a single newline-terminated line."""
    return json.dumps(message.to_message(), ensure_ascii=False) + "\n"


def decode_message(line: str | bytes) -> Message:
    """Parse one channel line back into a message object.

    Raises:
        ProtocolError: If the line is not JSON, has an unknown type, or is
            missing fields.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected an object, got {type(data).__name__}")

    msg_type = data.pop("type", None)
    cls = _MESSAGE_TYPES.get(msg_type)
    if cls is None:
        raise ProtocolError(f"Unknown message type: {msg_type}")
    try:
        return cls(**data)
    except TypeError as exc:
        raise ProtocolError(f"Malformed {msg_type} message: {exc}") from exc


def encode_bounded(message: Message, limit: int = MAX_LINE_BYTES) -> bytes:
    """Encode ``message`` as UTF-8, shrinking it to fit in ``limit`` bytes.

    Oversized text fields are cut and marked with ``TRUNCATED_MARKER``.
    Oversized tables are replaced by a ``warn`` diagnostic.
    """
    payload = encode_message(message).encode("utf-8")
    if len(payload) <= limit:
        return payload
    return encode_message(_shrink(message, limit)).encode("utf-8")


def _shrink(message: Message, limit: int) -> Message:
    if isinstance(message, TableEvent):
        return DiagnosticEvent(
            method="warn",
            formatted=f"table too large to display ({len(message.rows)} rows)",
            ts=message.ts,
        )
    names = {f.name for f in dataclasses.fields(message)}
    name = "formatted" if "formatted" in names else "text" if "text" in names else None
    if name is None:
        return message
    empty = dataclasses.replace(message, **{name: TRUNCATED_MARKER})
    overhead = len(encode_message(empty).encode("utf-8"))
    # JSON may spend up to six bytes on one character ("\u001f").
    budget = max(0, (limit - overhead) // 6)
    text = getattr(message, name)
    return dataclasses.replace(message, **{name: text[:budget] + TRUNCATED_MARKER})
