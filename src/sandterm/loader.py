"""Resolve and load external modules into a sandbox namespace.

A spec is either a locator (URL or filesystem path) used as-is, or a short
name resolved against a fixed alias table on the package CDN.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import httpx

logger = logging.getLogger(__name__)

CDN_ROOT = "https://cdn.jsdelivr.net/npm/"

ALIASES: dict[str, str] = {
    "lodash": "lodash@latest/lodash.min.js",
    "dayjs": "dayjs@latest/dayjs.min.js",
    "rxjs": "rxjs@7/dist/bundles/rxjs.umd.min.js",
    "ramda": "ramda@latest/dist/ramda.min.js",
    "underscore": "underscore@latest/underscore-min.js",
    "decimal.js": "decimal.js@latest/decimal.min.js",
    "papaparse": "papaparse@latest/papaparse.min.js",
}

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
_PATH_PREFIXES = ("/", "./", "../")


class LoadError(RuntimeError):
    """Raised when a module cannot be fetched, compiled or executed."""

    def __init__(self, locator: str, cause: BaseException):
        super().__init__(f"{locator}: {type(cause).__name__}: {cause}")
        self.locator = locator
        self.cause = cause


def is_url(locator: str) -> bool:
    return bool(_URL_RE.match(locator))


def resolve(spec: str) -> str:
    """Turn a load spec into a locator.

    URLs and absolute or relative paths are returned unchanged. Anything
    else is a short name: known aliases map to their pinned CDN path, and
    unknown names fall back to ``<name>@latest``.
    """
    spec = str(spec).strip()
    if is_url(spec) or spec.startswith(_PATH_PREFIXES):
        return spec
    path = ALIASES.get(spec, f"{spec}@latest")
    return f"{CDN_ROOT}{path}"


class ModuleLoader:
    """Fetches module source and executes it into a namespace."""

    def __init__(self, client: httpx.Client | None = None, timeout: float = 30.0):
        self._client = client
        self.timeout = timeout

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout, follow_redirects=True)
        return self._client

    def fetch(self, locator: str) -> str:
        """Return the source text behind a locator."""
        if is_url(locator):
            response = self.client.get(locator)
            response.raise_for_status()
            return response.text
        return Path(locator).expanduser().read_text(encoding="utf-8")

    def load(self, spec: str, namespace: dict[str, Any]) -> str:
        """Resolve, fetch and execute a module in ``namespace``.

        Returns:
            The resolved locator.

        Raises:
            LoadError: If any step fails. The namespace may hold partial
                effects of a module that raised part way through.
        """
        locator = resolve(spec)
        logger.debug("load spec=%s locator=%s", spec, locator)
        try:
            source = self.fetch(locator)
            code = compile(source, locator, "exec")
            exec(code, namespace)
        except GeneratorExit:
            raise
        except BaseException as exc:
            logger.debug("load failed locator=%s error=%s", locator, exc)
            raise LoadError(locator, exc) from exc
        return locator

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
