"""Bounded, cycle-safe rendering of runtime values to text.

Values produced inside the sandbox never cross the channel as live objects.
Everything the host sees is a string built here. Rendering is:

- total: an exception while rendering any value yields ``[Unserializable]``
- depth bounded: composites nested more than ``MAX_DEPTH`` levels collapse
- width bounded: at most ``MAX_ITEMS`` members of a composite are rendered
- cycle safe: a composite already on the recursion path renders as circular
"""

from __future__ import annotations

import array
import collections
import concurrent.futures
import dataclasses
import datetime
import enum
import inspect
import itertools
import json
import re
import traceback
import types
from collections.abc import Mapping, Set
from decimal import Decimal
from fractions import Fraction
from typing import Any, Callable, Iterable

MAX_DEPTH = 2
MAX_ITEMS = 50

ELLIPSIS = "…"
UNSERIALIZABLE = "[Unserializable]"
PENDING = "[Pending]"


class ValueKind(enum.Enum):
    """Closed set of value categories the formatter knows how to render."""

    ABSENT = "absent"
    TEXT = "text"
    NUMBER = "number"
    SYMBOL = "symbol"
    CLASS = "class"
    MODULE = "module"
    PENDING = "pending"
    CALLABLE = "callable"
    TEMPORAL = "temporal"
    PATTERN = "pattern"
    FAULT = "fault"
    BUFFER = "buffer"
    INDEXED = "indexed"
    KEYED = "keyed"
    SET = "set"
    STRUCTURED = "structured"
    OPAQUE = "opaque"


_ABSENT = (None, Ellipsis, NotImplemented)
_NUMBERS = (bool, int, float, complex, Decimal, Fraction)
_BUFFERS = (bytes, bytearray, memoryview)
_INDEXED = (list, tuple, collections.deque, array.array, range)
_TEMPORAL = (datetime.date, datetime.time)


def classify(value: Any) -> ValueKind:
    """Map a value onto exactly one ``ValueKind``.

    The order of checks matters: enum members that are also ints are symbols,
    classes are callable but render as classes, and plain dicts are
    structured rather than keyed.
    """
    if any(value is marker for marker in _ABSENT):
        return ValueKind.ABSENT
    if isinstance(value, str):
        return ValueKind.TEXT
    if isinstance(value, enum.Enum):
        return ValueKind.SYMBOL
    if isinstance(value, _NUMBERS):
        return ValueKind.NUMBER
    if isinstance(value, _BUFFERS):
        return ValueKind.BUFFER
    if isinstance(value, type):
        return ValueKind.CLASS
    if isinstance(value, types.ModuleType):
        return ValueKind.MODULE
    if isinstance(value, BaseException):
        return ValueKind.FAULT
    if inspect.isawaitable(value) or isinstance(value, concurrent.futures.Future):
        return ValueKind.PENDING
    if isinstance(value, _TEMPORAL):
        return ValueKind.TEMPORAL
    if isinstance(value, re.Pattern):
        return ValueKind.PATTERN
    if isinstance(value, _INDEXED):
        return ValueKind.INDEXED
    if isinstance(value, Set):
        return ValueKind.SET
    if type(value) is dict:
        return ValueKind.STRUCTURED
    if isinstance(value, Mapping):
        return ValueKind.KEYED
    if callable(value):
        return ValueKind.CALLABLE
    if _is_plain_object(value):
        return ValueKind.STRUCTURED
    return ValueKind.OPAQUE


def _is_plain_object(value: Any) -> bool:
    if dataclasses.is_dataclass(value):
        return True
    return hasattr(value, "__dict__") and type(value).__repr__ is object.__repr__


def format_value(value: Any, depth: int = 0, seen: set[int] | None = None) -> str:
    """Render ``value`` as display text.

    Args:
        value: Any runtime value.
        depth: Current composite nesting level; callers start at 0.
        seen: Ids of composites on the current recursion path.

    Returns:
        The rendered text. Never raises.
    """
    if seen is None:
        seen = set()
    try:
        kind = classify(value)
        return _RENDERERS[kind](value, depth, seen)
    except Exception:
        return UNSERIALIZABLE


def format_args(args: Iterable[Any]) -> str:
    """Space-join the rendering of each argument."""
    return " ".join(format_value(arg) for arg in args)


def _kind_name(value: Any) -> str:
    return type(value).__name__


def _render_absent(value: Any, depth: int, seen: set[int]) -> str:
    return repr(value)


def _render_text(value: str, depth: int, seen: set[int]) -> str:
    return json.dumps(value, ensure_ascii=False)


def _render_number(value: Any, depth: int, seen: set[int]) -> str:
    return str(value)


def _render_symbol(value: enum.Enum, depth: int, seen: set[int]) -> str:
    return f"{_kind_name(value)}.{value.name}"


def _render_class(value: type, depth: int, seen: set[int]) -> str:
    return f"[Class {value.__name__}]"


def _render_module(value: types.ModuleType, depth: int, seen: set[int]) -> str:
    return f"[Module {value.__name__}]"


def _render_pending(value: Any, depth: int, seen: set[int]) -> str:
    return PENDING


def _render_callable(value: Any, depth: int, seen: set[int]) -> str:
    name = getattr(value, "__name__", None)
    if not name or name.endswith("<lambda>"):
        name = "anonymous"
    return f"[Function {name}]"


def _render_temporal(value: Any, depth: int, seen: set[int]) -> str:
    try:
        text = value.isoformat()
    except (ValueError, OverflowError):
        text = "Invalid"
    return f"{_kind_name(value)}({text})"


def _render_pattern(value: re.Pattern, depth: int, seen: set[int]) -> str:
    return repr(value)


def _render_fault(value: BaseException, depth: int, seen: set[int]) -> str:
    message = str(value)
    text = f"{_kind_name(value)}: {message}" if message else _kind_name(value)
    if value.__traceback__ is not None:
        frames = "".join(traceback.format_tb(value.__traceback__))
        text = f"{text}\nTraceback (most recent call last):\n{frames}".rstrip("\n")
    return text


def _render_buffer(value: Any, depth: int, seen: set[int]) -> str:
    size = value.nbytes if isinstance(value, memoryview) else len(value)
    return f"{_kind_name(value)}({size})"


def _take(items: Iterable[Any]) -> tuple[list[Any], bool]:
    """Return up to MAX_ITEMS items and whether more were available."""
    head = list(itertools.islice(items, MAX_ITEMS + 1))
    return head[:MAX_ITEMS], len(head) > MAX_ITEMS


def _composite(placeholder: Callable[[Any], str], circular: str):
    """Wrap a member renderer with the cycle and depth checks.

    ``seen`` holds only the composites on the current recursion path; ids are
    dropped on the way out. A value shared by two siblings is therefore
    rendered in full both times, and only a real back-reference is marked
    circular.
    """

    def decorate(render):
        def wrapper(value: Any, depth: int, seen: set[int]) -> str:
            key = id(value)
            if key in seen:
                return circular.format(kind=_kind_name(value))
            if depth > MAX_DEPTH:
                return placeholder(value)
            seen.add(key)
            try:
                return render(value, depth, seen)
            finally:
                seen.discard(key)

        return wrapper

    return decorate


def _join(parts: list[str], truncated: bool) -> str:
    if truncated:
        parts.append(ELLIPSIS)
    return ", ".join(parts)


@_composite(lambda v: f"{_kind_name(v)}({len(v)}) [{ELLIPSIS}]", "[Circular {kind}]")
def _render_indexed(value: Any, depth: int, seen: set[int]) -> str:
    items, truncated = _take(value)
    parts = [format_value(item, depth + 1, seen) for item in items]
    return f"{_kind_name(value)}({len(value)}) [{_join(parts, truncated)}]"


@_composite(lambda v: f"{_kind_name(v)}({ELLIPSIS})", "[Circular {kind}]")
def _render_keyed(value: Mapping, depth: int, seen: set[int]) -> str:
    items, truncated = _take(value.items())
    parts = [
        f"{format_value(k, depth + 1, seen)} => {format_value(v, depth + 1, seen)}"
        for k, v in items
    ]
    return f"{_kind_name(value)}({len(value)}) {{ {_join(parts, truncated)} }}"


@_composite(lambda v: f"{_kind_name(v)}({ELLIPSIS})", "[Circular {kind}]")
def _render_set(value: Set, depth: int, seen: set[int]) -> str:
    items, truncated = _take(value)
    parts = [format_value(item, depth + 1, seen) for item in items]
    return f"{_kind_name(value)}({len(value)}) {{ {_join(parts, truncated)} }}"


def _members(value: Any) -> Iterable[tuple[Any, Any]]:
    if isinstance(value, dict):
        return value.items()
    if dataclasses.is_dataclass(value):
        return ((f.name, getattr(value, f.name)) for f in dataclasses.fields(value))
    return (
        (name, member)
        for name, member in vars(value).items()
        if not (name.startswith("__") and name.endswith("__"))
    )


def _member_key(key: Any, depth: int, seen: set[int]) -> str:
    if isinstance(key, str):
        return json.dumps(key, ensure_ascii=False)
    return format_value(key, depth + 1, seen)


@_composite(lambda v: f"{{{ELLIPSIS}}}", "[Circular]")
def _render_structured(value: Any, depth: int, seen: set[int]) -> str:
    items, truncated = _take(_members(value))
    if not items:
        return "{}"
    parts = [
        f"{_member_key(k, depth, seen)}: {format_value(v, depth + 1, seen)}"
        for k, v in items
    ]
    return f"{{ {_join(parts, truncated)} }}"


def _render_opaque(value: Any, depth: int, seen: set[int]) -> str:
    return repr(value)


_RENDERERS: dict[ValueKind, Callable[[Any, int, set[int]], str]] = {
    ValueKind.ABSENT: _render_absent,
    ValueKind.TEXT: _render_text,
    ValueKind.NUMBER: _render_number,
    ValueKind.SYMBOL: _render_symbol,
    ValueKind.CLASS: _render_class,
    ValueKind.MODULE: _render_module,
    ValueKind.PENDING: _render_pending,
    ValueKind.CALLABLE: _render_callable,
    ValueKind.TEMPORAL: _render_temporal,
    ValueKind.PATTERN: _render_pattern,
    ValueKind.FAULT: _render_fault,
    ValueKind.BUFFER: _render_buffer,
    ValueKind.INDEXED: _render_indexed,
    ValueKind.KEYED: _render_keyed,
    ValueKind.SET: _render_set,
    ValueKind.STRUCTURED: _render_structured,
    ValueKind.OPAQUE: _render_opaque,
}
