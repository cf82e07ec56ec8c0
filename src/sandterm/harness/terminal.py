"""Interactive terminal front end for the sandbox console."""

from __future__ import annotations

import argparse
import asyncio
import codeop
import logging
import queue
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Sequence

from prompt_toolkit import PromptSession, print_formatted_text
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import History as PromptToolkitHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.shortcuts import clear as clear_screen
from prompt_toolkit.styles import Style

from sandterm.harness.history import History
from sandterm.harness.logging_utils import configure_logging
from sandterm.harness.orchestrator import Display, Orchestrator
from sandterm.harness.paths import history_default
from sandterm.protocol import DiagnosticEvent, FaultEvent, ResultEvent, TableEvent

logger = logging.getLogger(__name__)

PROMPT = "sandterm> "

HELP_TEXT = "\n".join(
    [
        ".help                      show this help",
        ".clear                     clear output",
        ".reset                     reset sandbox",
        ".load <url|name>           load a module into the sandbox namespace",
        ".history                   print input history",
        ".exit                      leave the console",
    ]
)

STYLE = Style.from_dict(
    {
        "ts": "#888888",
        "log": "",
        "info": "ansicyan",
        "warn": "ansiyellow",
        "error": "ansired",
        "debug": "#888888",
        "table": "",
        "result": "ansigreen",
        "muted": "#888888",
    }
)


def _clock(ts: float | None) -> str:
    moment = datetime.fromtimestamp(ts) if ts else datetime.now()
    return moment.strftime("%H:%M:%S")


def render_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """Lay out a table event as an aligned text grid."""
    if not headers:
        return "(empty table)"
    grid = [[_flatten(h) for h in headers]]
    grid.extend([_flatten(cell) for cell in row] for row in rows)
    widths = [max(len(row[i]) for row in grid if i < len(row)) for i in range(len(headers))]

    def line(values: Sequence[str]) -> str:
        padded = [value.ljust(width) for value, width in zip(values, widths)]
        return "| " + " | ".join(padded) + " |"

    rule = "+-" + "-+-".join("-" * width for width in widths) + "-+"
    body = [line(row) for row in grid[1:]]
    return "\n".join([rule, line(grid[0]), rule, *body, rule])


def _flatten(text: str) -> str:
    return text.replace("\n", "\\n")


class TerminalDisplay(Display):
    """Renders events to the terminal using prompt_toolkit formatting."""

    def __init__(self, on_change: Callable[[], None] | None = None):
        self.on_change = on_change
        self.status_text = ""
        self.faults = 0

    def _emit(self, ts: float | None, label: str, style: str, text: str, suffix: str = "") -> None:
        fragments = [
            ("class:ts", f"[{_clock(ts)}] "),
            (f"class:{style}", f"{label:<6} "),
            ("", text),
        ]
        if suffix:
            fragments.append(("class:muted", suffix))
        print_formatted_text(FormattedText(fragments), style=STYLE)

    def info(self, text: str) -> None:
        self.diagnostic(DiagnosticEvent(method="info", formatted=text))

    def diagnostic(self, event: DiagnosticEvent) -> None:
        self._emit(event.ts, event.method.upper(), event.method, event.formatted)

    def table(self, event: TableEvent) -> None:
        grid = render_table(event.headers, event.rows)
        self._emit(event.ts, "TABLE", "table", f"\n{grid}")

    def result(self, event: ResultEvent, elapsed_ms: float | None) -> None:
        suffix = f" ({elapsed_ms:.1f} ms)" if elapsed_ms is not None else ""
        self._emit(event.ts, "RESULT", "result", event.formatted, suffix)

    def fault(self, event: FaultEvent, elapsed_ms: float | None) -> None:
        self.faults += 1
        self._emit(event.ts, "ERROR", "error", event.formatted)

    def status(self, text: str) -> None:
        self.status_text = text
        if self.on_change is not None:
            self.on_change()

    def clear(self) -> None:
        clear_screen()


class PromptHistory(PromptToolkitHistory):
    """Feeds persisted submissions to prompt_toolkit's history navigation.

    Storing is left to the terminal so commands are never persisted.
    """

    def __init__(self, history: History):
        super().__init__()
        self.history = history

    def load_history_strings(self) -> Iterable[str]:
        return list(reversed(self.history.entries))

    def store_string(self, string: str) -> None:
        pass


class Terminal:
    """Routes typed lines to commands or to the sandbox.

    Args:
        orchestrator: Sandbox orchestrator.
        history: Submission history.
        display: Output surface.
        wait: Block after each submission until its terminal event arrives.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        history: History,
        display: TerminalDisplay,
        wait: bool = False,
    ):
        self.orchestrator = orchestrator
        self.history = history
        self.display = display
        self.wait = wait

    async def handle_line(self, line: str) -> bool:
        """Process one line of input. Returns False when the user quits."""
        stripped = line.strip()
        if not stripped:
            return True
        if stripped.startswith("."):
            return await self.handle_command(stripped)

        self.history.append(line)
        self.orchestrator.submit(line)
        if self.wait:
            await self.orchestrator.drain()
        return True

    async def handle_command(self, cmdline: str) -> bool:
        cmd, _, rest = cmdline.partition(" ")
        rest = rest.strip()
        logger.debug("command cmd=%s", cmd)

        if cmd in {".exit", ".quit"}:
            return False
        if cmd == ".help":
            self.display.info(HELP_TEXT)
        elif cmd == ".clear":
            self.display.clear()
        elif cmd == ".reset":
            await self.orchestrator.reset()
        elif cmd == ".load":
            if rest:
                self.orchestrator.load_module(rest)
            else:
                self._command_error("usage: .load <url|name>")
        elif cmd == ".history":
            self.display.info(self.history.render())
        else:
            self._command_error(f"unknown command: {cmd}")
        return True

    def _command_error(self, text: str) -> None:
        self.display.fault(FaultEvent(id=None, formatted=text, kind="command"), None)

    async def run_once(self, code: str) -> int:
        """Evaluate one submission and return a process exit status."""
        faults_before = self.display.faults
        self.orchestrator.submit(code)
        await self.orchestrator.drain()
        return 1 if self.display.faults > faults_before else 0


def _input_complete(text: str) -> bool:
    if text.strip().startswith("."):
        return True
    try:
        return codeop.compile_command(text, symbol="exec") is not None
    except (SyntaxError, ValueError, OverflowError):
        return True


def _key_bindings() -> KeyBindings:
    key_bindings = KeyBindings()

    @key_bindings.add("enter")
    def _(event) -> None:
        buffer = event.current_buffer
        if buffer.cursor_position != len(buffer.text):
            buffer.insert_text("\n")
        elif _input_complete(buffer.text):
            buffer.validate_and_handle()
        else:
            buffer.insert_text("\n")

    @key_bindings.add("escape", "enter")
    def _(event) -> None:
        event.current_buffer.insert_text("\n")

    return key_bindings


async def _interactive_prompt_toolkit(terminal: Terminal) -> None:
    session: PromptSession[str] = PromptSession(
        PROMPT,
        multiline=True,
        key_bindings=_key_bindings(),
        history=PromptHistory(terminal.history),
        bottom_toolbar=lambda: terminal.display.status_text,
    )
    terminal.display.on_change = session.app.invalidate

    print("sandterm. Type .help for commands.")
    print("Tip: Enter submits when complete; Esc+Enter inserts a newline.")
    with patch_stdout():
        while True:
            try:
                line = await session.prompt_async()
            except (EOFError, KeyboardInterrupt):
                break
            if not await terminal.handle_line(line):
                break


class _LineReader:
    """Reads stdin on a daemon thread, one line per request."""

    def __init__(self, prompt: str):
        self.prompt = prompt
        self._requests: queue.Queue = queue.Queue()
        threading.Thread(target=self._run, name="sandterm-input", daemon=True).start()

    async def readline(self) -> str | None:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str | None] = loop.create_future()
        self._requests.put((loop, future))
        return await future

    def _run(self) -> None:
        while True:
            loop, future = self._requests.get()
            try:
                line: str | None = input(self.prompt)
            except EOFError:
                line = None
            loop.call_soon_threadsafe(_resolve, future, line)


def _resolve(future: asyncio.Future, value: str | None) -> None:
    if not future.done():
        future.set_result(value)


async def _interactive_plain(terminal: Terminal) -> None:
    reader = _LineReader(PROMPT)
    print("sandterm. Type .help for commands.")
    while True:
        line = await reader.readline()
        if line is None:
            print()
            break
        if not await terminal.handle_line(line):
            break


async def _run(args: argparse.Namespace, history: History) -> int:
    display = TerminalDisplay()
    orchestrator = Orchestrator(display)
    interactive = not args.exec_code
    terminal = Terminal(orchestrator, history, display, wait=args.plain or not interactive)
    try:
        if not await orchestrator.start():
            return 1
        if args.exec_code:
            code = sys.stdin.read() if args.exec_code == "-" else args.exec_code
            return await terminal.run_once(code)
        if args.plain:
            await _interactive_plain(terminal)
        else:
            await _interactive_prompt_toolkit(terminal)
        return 0
    finally:
        await orchestrator.close()


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Interactive console that runs Python code in a sandboxed worker process.",
    )
    parser.add_argument("--exec", dest="exec_code", help="Evaluate code (or '-' for stdin) and exit")
    parser.add_argument(
        "--plain",
        action="store_true",
        help="Use plain line input instead of prompt_toolkit.",
    )
    parser.add_argument("--history-file", help="History file (default: $SANDTERM_HOME/history.json)")
    parser.add_argument("--no-history", action="store_true", help="Do not read or write history")
    parser.add_argument("--log-level", help="Log level for sandterm loggers (e.g. DEBUG)")
    parser.add_argument("--log-file", help="Write logs to this file instead of stderr")
    args = parser.parse_args(argv)

    configure_logging(args.log_level, args.log_file)

    if args.no_history:
        history_path = None
    elif args.history_file:
        history_path = Path(args.history_file).expanduser()
    else:
        history_path = history_default()
    history = History(history_path)

    try:
        status = asyncio.run(_run(args, history))
    except KeyboardInterrupt:
        status = 130
    sys.exit(status)


if __name__ == "__main__":
    main()
