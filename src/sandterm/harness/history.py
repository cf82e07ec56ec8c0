"""Bounded, persisted history of submitted code."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

HISTORY_KEY = "sandterm-history-v1"
HISTORY_LIMIT = 300


class History:
    """Ordered submission texts, oldest first, capped at ``limit``.

    When ``path`` is None the history lives only in memory.
    """

    def __init__(self, path: Path | None = None, limit: int = HISTORY_LIMIT):
        self.path = path
        self.limit = limit
        self.entries: list[str] = self._load()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def append(self, code: str) -> None:
        self.entries.append(code)
        if len(self.entries) > self.limit:
            del self.entries[: len(self.entries) - self.limit]
        self.save()

    def render(self) -> str:
        """Numbered listing, one entry per line."""
        return "\n".join(f"{i:>3}  {code}" for i, code in enumerate(self.entries, 1))

    def _load(self) -> list[str]:
        if self.path is None or not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("ignoring unreadable history path=%s error=%s", self.path, exc)
            return []
        entries = data.get(HISTORY_KEY, []) if isinstance(data, dict) else []
        entries = [entry for entry in entries if isinstance(entry, str)]
        return entries[-self.limit :]

    def save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(
                json.dumps({HISTORY_KEY: self.entries}, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("failed to save history path=%s error=%s", self.path, exc)
