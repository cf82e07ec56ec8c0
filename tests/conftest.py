"""Shared fixtures for sandterm tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from sandterm.harness.orchestrator import Display, Orchestrator
from sandterm.protocol import DiagnosticEvent, FaultEvent, ResultEvent, TableEvent


class RecordingDisplay(Display):
    """Display that records every call in order."""

    def __init__(self):
        self.events: list[tuple[str, object, float | None]] = []
        self.statuses: list[str] = []
        self.cleared = 0

    def of(self, kind: str) -> list:
        return [event for name, event, _ in self.events if name == kind]

    @property
    def results(self) -> list[ResultEvent]:
        return self.of("result")

    @property
    def fault_events(self) -> list[FaultEvent]:
        return self.of("fault")

    @property
    def faults(self) -> int:
        return len(self.fault_events)

    def info(self, text: str) -> None:
        self.diagnostic(DiagnosticEvent(method="info", formatted=text))

    def diagnostic(self, event: DiagnosticEvent) -> None:
        self.events.append(("diagnostic", event, None))

    def table(self, event: TableEvent) -> None:
        self.events.append(("table", event, None))

    def result(self, event: ResultEvent, elapsed_ms: float | None) -> None:
        self.events.append(("result", event, elapsed_ms))

    def fault(self, event: FaultEvent, elapsed_ms: float | None) -> None:
        self.events.append(("fault", event, elapsed_ms))

    def status(self, text: str) -> None:
        self.statuses.append(text)

    def clear(self) -> None:
        self.cleared += 1


@pytest.fixture
def display():
    return RecordingDisplay()


@pytest_asyncio.fixture
async def orchestrator(display):
    """An orchestrator with a live, ready sandbox worker."""
    orch = Orchestrator(display)
    assert await orch.start()
    yield orch
    await orch.close()
