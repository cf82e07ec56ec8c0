"""Diagnostic and tabular output for code running in the sandbox.

The execution context owns one ``DiagnosticsSink``. User code reaches it
through the ``console`` object and ``print`` bound into its namespace, so
nothing here patches process-wide state.
"""

from __future__ import annotations

import builtins
import dataclasses
import io
import threading
from collections.abc import Mapping
from typing import Any, Callable, Iterable, Sequence

from sandterm.formatting import format_args, format_value
from sandterm.protocol import DIAGNOSTIC_METHODS, DiagnosticEvent, Message, TableEvent

INDEX_COLUMN = "(index)"
VALUES_COLUMN = "Values"

Emit = Callable[[Message], None]


class DiagnosticsSink:
    """Turns diagnostic and table calls into channel events."""

    def __init__(self, emit: Emit):
        self.emit = emit

    def diagnostic(self, method: str, *args: Any) -> DiagnosticEvent:
        if method not in DIAGNOSTIC_METHODS:
            raise ValueError(f"Unknown diagnostic method: {method}")
        event = DiagnosticEvent(method=method, formatted=format_args(args))
        self.emit(event)
        return event

    def text(self, method: str, text: str) -> DiagnosticEvent:
        """Emit already-rendered text, as written to a stream."""
        event = DiagnosticEvent(method=method, formatted=text)
        self.emit(event)
        return event

    def table(self, data: Any, columns: Sequence[Any] | None = None) -> TableEvent:
        headers, rows = build_table(data, columns)
        event = TableEvent(headers=headers, rows=rows)
        self.emit(event)
        return event


class SinkStream(io.TextIOBase):
    """Writable text stream that forwards complete lines to a sink.

    Text up to the last newline of each write is emitted as one diagnostic;
    the remainder waits for a later newline or ``flush``.
    """

    encoding = "utf-8"

    def __init__(self, sink: DiagnosticsSink, method: str = "log"):
        self.sink = sink
        self.method = method
        self._buffer = ""
        self._lock = threading.Lock()

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        with self._lock:
            self._buffer += text
            head, sep, tail = self._buffer.rpartition("\n")
            if not sep:
                return len(text)
            self._buffer = tail
        self.sink.text(self.method, head)
        return len(text)

    def flush(self) -> None:
        with self._lock:
            pending, self._buffer = self._buffer, ""
        if pending:
            self.sink.text(self.method, pending)


class Console:
    """The ``console`` object visible to sandboxed code."""

    def __init__(self, sink: DiagnosticsSink):
        self._sink = sink

    def log(self, *args: Any) -> None:
        self._sink.diagnostic("log", *args)

    def info(self, *args: Any) -> None:
        self._sink.diagnostic("info", *args)

    def warn(self, *args: Any) -> None:
        self._sink.diagnostic("warn", *args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._sink.diagnostic("error", *args)

    def debug(self, *args: Any) -> None:
        self._sink.diagnostic("debug", *args)

    def table(self, data: Any, columns: Sequence[Any] | None = None) -> None:
        self._sink.table(data, columns)

    def __repr__(self) -> str:
        return "<console log|info|warn|error|debug|table>"


def make_print(stream: SinkStream) -> Callable[..., None]:
    """Build a ``print`` that writes to ``stream`` unless ``file`` is given."""

    def print(
        *args: Any,
        sep: str | None = " ",
        end: str | None = "\n",
        file=None,
        flush: bool = False,
    ) -> None:
        if file is not None:
            builtins.print(*args, sep=sep, end=end, file=file, flush=flush)
            return
        sep = " " if sep is None else sep
        end = "\n" if end is None else end
        stream.write(sep.join(str(arg) for arg in args) + end)
        if flush:
            stream.flush()

    return print


def _row_items(row: Any) -> Iterable[tuple[Any, Any]]:
    if isinstance(row, Mapping):
        return row.items()
    if dataclasses.is_dataclass(row) and not isinstance(row, type):
        return ((f.name, getattr(row, f.name)) for f in dataclasses.fields(row))
    if isinstance(row, (list, tuple)):
        return enumerate(row)
    if hasattr(row, "__dict__") and not callable(row):
        return ((k, v) for k, v in vars(row).items() if not k.startswith("_"))
    return [(VALUES_COLUMN, row)]


def _normalize_rows(data: Any) -> list[dict[Any, Any]]:
    if isinstance(data, Mapping):
        rows = []
        for key, value in data.items():
            row: dict[Any, Any] = {INDEX_COLUMN: key}
            row.update(_row_items(value))
            rows.append(row)
        return rows
    if isinstance(data, (list, tuple)):
        return [dict(_row_items(row)) for row in data]
    return [{"value": data}]


def build_table(data: Any, columns: Sequence[Any] | None = None) -> tuple[list[str], list[list[str]]]:
    """Resolve headers and formatted cells for a tabular request.

    Args:
        data: A list/tuple of row-like values, or a mapping whose entries
            become rows keyed by ``(index)``.
        columns: Explicit column keys, used verbatim when given.

    Returns:
        ``(headers, rows)`` where every cell is formatter output and missing
        cells are empty strings.
    """
    rows = _normalize_rows(data)
    if columns:
        keys = list(columns)
    else:
        keys = []
        for row in rows:
            for key in row:
                if key not in keys:
                    keys.append(key)

    headers = [key if isinstance(key, str) else format_value(key) for key in keys]
    table = [
        [format_value(row[key]) if key in row else "" for key in keys]
        for row in rows
    ]
    return headers, table
