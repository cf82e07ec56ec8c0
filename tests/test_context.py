"""Tests for the in-worker execution context."""

import pytest

from sandterm.context import ContextState, ExecutionContext
from sandterm.protocol import (
    DiagnosticEvent,
    FaultEvent,
    ReadyEvent,
    ResultEvent,
    StatusEvent,
    SubmitEval,
    TableEvent,
)


@pytest.fixture
def events():
    return []


@pytest.fixture
def context(events):
    ctx = ExecutionContext(events.append)
    ctx.mark_ready()
    yield ctx
    ctx.terminate()


def terminal_events(events):
    return [e for e in events if isinstance(e, (ResultEvent, FaultEvent))]


class TestEvaluation:
    """Tests for expression and block evaluation."""

    @pytest.mark.asyncio
    async def test_ready_is_first(self, context, events):
        assert isinstance(events[0], ReadyEvent)
        assert context.state is ContextState.READY

    @pytest.mark.asyncio
    async def test_expression(self, context):
        event = await context.submit("1", "2 ** 10")

        assert event == ResultEvent(id="1", formatted="1024", ts=event.ts)

    @pytest.mark.asyncio
    async def test_block_with_trailing_expression(self, context, events):
        event = await context.submit("1", "x = 1; x + 1")

        assert event.formatted == "2"
        assert not any(isinstance(e, FaultEvent) for e in events)

    @pytest.mark.asyncio
    async def test_statement_only_block(self, context):
        event = await context.submit("1", "y = 5")

        assert isinstance(event, ResultEvent)
        assert event.formatted == "None"

    @pytest.mark.asyncio
    async def test_namespace_persists(self, context):
        await context.submit("1", "def double(n):\n    return n * 2")
        event = await context.submit("2", "double(21)")

        assert event.formatted == "42"

    @pytest.mark.asyncio
    async def test_top_level_await(self, context):
        await context.submit("1", "import asyncio")
        expression = await context.submit("2", "await asyncio.sleep(0, 7)")
        block = await context.submit("3", "value = await asyncio.sleep(0, 'done')\nvalue")

        assert expression.formatted == "7"
        assert block.formatted == '"done"'

    @pytest.mark.asyncio
    async def test_handle_dispatches_submission(self, context, events):
        await context.handle(SubmitEval(id="9", code="1 + 1"))

        assert terminal_events(events)[0].id == "9"


class TestFaults:
    """Tests for fault reporting."""

    @pytest.mark.asyncio
    async def test_runtime_fault_is_correlated(self, context, events):
        event = await context.submit("7", "1 / 0")

        assert isinstance(event, FaultEvent)
        assert event.id == "7"
        assert event.kind == "evaluation"
        assert event.formatted.startswith("ZeroDivisionError: division by zero")
        assert terminal_events(events) == [event]

    @pytest.mark.asyncio
    async def test_runtime_fault_is_not_retried(self, context):
        await context.submit("1", "calls = []")
        await context.submit("2", "calls.append(1) or 1 / 0")
        event = await context.submit("3", "len(calls)")

        assert event.formatted == "1"

    @pytest.mark.asyncio
    async def test_syntax_error(self, context):
        event = await context.submit("1", "if True")

        assert isinstance(event, FaultEvent)
        assert event.formatted.startswith("SyntaxError")

    @pytest.mark.asyncio
    async def test_system_exit_is_a_fault(self, context):
        event = await context.submit("1", "raise SystemExit(3)")

        assert event.formatted == "SystemExit: 3" or event.formatted.startswith("SystemExit: 3\n")
        assert context.state is ContextState.READY

    @pytest.mark.asyncio
    async def test_keyboard_interrupt_is_a_fault(self, context, events):
        event = await context.submit("1", "raise KeyboardInterrupt")

        assert isinstance(event, FaultEvent)
        assert event.id == "1"
        assert event.formatted.startswith("KeyboardInterrupt")
        assert terminal_events(events) == [event]
        assert context.state is ContextState.READY

    @pytest.mark.asyncio
    async def test_cancelled_error_is_a_fault(self, context):
        event = await context.submit("1", "import asyncio\nraise asyncio.CancelledError()")
        after = await context.submit("2", "1 + 1")

        assert isinstance(event, FaultEvent)
        assert event.formatted.startswith("CancelledError")
        assert after.formatted == "2"

    @pytest.mark.asyncio
    async def test_detached_fault(self, context, events):
        context.handle_loop_exception(None, {"message": "boom", "exception": ValueError("late")})

        fault = events[-1]
        assert fault == FaultEvent(
            id=None, formatted="Unhandled exception: ValueError: late", ts=fault.ts, kind="detached"
        )
        assert context.state is ContextState.READY

    @pytest.mark.asyncio
    async def test_submit_before_ready_rejected(self, events):
        ctx = ExecutionContext(events.append)

        with pytest.raises(RuntimeError):
            await ctx.submit("1", "1")


class TestDiagnostics:
    """Tests for output produced during a submission."""

    @pytest.mark.asyncio
    async def test_output_precedes_result(self, context, events):
        await context.submit("1", "console.log('a'); print('b'); 42")

        produced = events[1:]
        assert [type(e) for e in produced] == [DiagnosticEvent, DiagnosticEvent, ResultEvent]
        assert [e.formatted for e in produced] == ['"a"', "b", "42"]

    @pytest.mark.asyncio
    async def test_partial_print_flushed_before_result(self, context, events):
        await context.submit("1", "print('x', end='')")

        assert [e.formatted for e in events[1:]] == ["x", "None"]

    @pytest.mark.asyncio
    async def test_table(self, context, events):
        await context.submit("1", "console.table([{'a': 1}])")

        assert isinstance(events[1], TableEvent)
        assert events[1].rows == [["1"]]


class TestLoadModule:
    """Tests for loading modules into the namespace."""

    @pytest.mark.asyncio
    async def test_load_file(self, context, events, tmp_path):
        module = tmp_path / "mod.py"
        module.write_text("answer = 42\n")

        locator = context.load_module(str(module))
        event = await context.submit("1", "answer")

        assert locator == str(module)
        assert events[1] == StatusEvent(text=f"fetching {module} ...")
        assert events[2].formatted == f"loaded: {module}"
        assert event.formatted == "42"

    @pytest.mark.asyncio
    async def test_load_failure(self, context, events, tmp_path):
        missing = tmp_path / "missing.py"

        assert context.load_module(str(missing)) is None

        fault = events[-1]
        assert isinstance(fault, FaultEvent)
        assert fault.id is None
        assert fault.kind == "load"
        assert fault.formatted.startswith(f"load failed: {missing}: FileNotFoundError")
        assert context.state is ContextState.READY

    @pytest.mark.asyncio
    async def test_module_exit_is_not_fatal(self, context, events, tmp_path):
        module = tmp_path / "quits.py"
        module.write_text("import sys\nsys.exit(0)\n")

        assert context.load_module(str(module)) is None
        event = await context.submit("1", "1 + 1")

        fault = [e for e in events if isinstance(e, FaultEvent)][0]
        assert fault.kind == "load"
        assert "SystemExit: 0" in fault.formatted
        assert event.formatted == "2"
