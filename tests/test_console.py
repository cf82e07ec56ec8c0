"""Tests for the sandbox console and diagnostics sink."""

import io

import pytest

from sandterm.console import Console, DiagnosticsSink, SinkStream, build_table, make_print
from sandterm.protocol import DiagnosticEvent, TableEvent


@pytest.fixture
def events():
    return []


@pytest.fixture
def sink(events):
    return DiagnosticsSink(events.append)


class TestBuildTable:
    """Tests for table header and cell resolution."""

    def test_list_of_mappings(self):
        headers, rows = build_table([{"a": 1, "b": 2}, {"a": 3, "b": 4}])

        assert headers == ["a", "b"]
        assert rows == [["1", "2"], ["3", "4"]]

    def test_missing_cells_are_empty(self):
        headers, rows = build_table([{"a": 1}, {"b": 2}])

        assert headers == ["a", "b"]
        assert rows == [["1", ""], ["", "2"]]

    def test_mapping_rows_get_index_column(self):
        headers, rows = build_table({"x": {"a": 1}, "y": {"b": 2}})

        assert headers == ["(index)", "a", "b"]
        assert rows == [['"x"', "1", ""], ['"y"', "", "2"]]

    def test_explicit_columns(self):
        headers, rows = build_table([{"a": 1, "b": 2}], ["b"])

        assert headers == ["b"]
        assert rows == [["2"]]

    def test_scalar_rows_use_values_column(self):
        headers, rows = build_table([1, 2])

        assert headers == ["Values"]
        assert rows == [["1"], ["2"]]

    def test_nested_cells_are_formatted(self):
        _, rows = build_table([{"a": [1, 2]}])

        assert rows == [["list(2) [1, 2]"]]

    def test_non_collection(self):
        assert build_table(5) == (["value"], [["5"]])


class TestConsole:
    """Tests for the console object bound into the namespace."""

    def test_log_emits_formatted_diagnostic(self, sink, events):
        Console(sink).log("hi", 1)

        assert events == [DiagnosticEvent(method="log", formatted='"hi" 1', ts=events[0].ts)]

    def test_each_call_emits_immediately(self, sink, events):
        console = Console(sink)
        console.info("a")
        assert len(events) == 1
        console.warn("b")
        console.error("c")
        console.debug("d")

        assert [e.method for e in events] == ["info", "warn", "error", "debug"]

    def test_table(self, sink, events):
        Console(sink).table([{"a": 1}])

        assert isinstance(events[0], TableEvent)
        assert events[0].headers == ["a"]

    def test_unknown_method_rejected(self, sink):
        with pytest.raises(ValueError):
            sink.diagnostic("trace", "x")


class TestSinkStream:
    """Tests for line-buffered stream capture."""

    def test_partial_line_waits_for_newline(self, sink, events):
        stream = SinkStream(sink)
        stream.write("a")
        assert events == []

        stream.write("b\nc")
        assert [e.formatted for e in events] == ["ab"]

        stream.flush()
        assert [e.formatted for e in events] == ["ab", "c"]

    def test_method_is_kept(self, sink, events):
        SinkStream(sink, "error").write("oops\n")

        assert events[0].method == "error"

    def test_print_writes_to_stream(self, sink, events):
        print_ = make_print(SinkStream(sink))
        print_("x", 1)

        assert [e.formatted for e in events] == ["x 1"]

    def test_print_with_file_bypasses_stream(self, sink, events):
        target = io.StringIO()
        make_print(SinkStream(sink))("x", file=target)

        assert target.getvalue() == "x\n"
        assert events == []
