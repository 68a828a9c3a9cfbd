"""Unit tests for sfils_etl.shell.  The store is a stub; output via capsys."""

from __future__ import annotations

import io

import pytest

from sfils_etl.shared import QueryError
from sfils_etl.shell import BENCHMARK_QUERIES, QueryShell, format_value, prompt_lines


class StubStore:
    def __init__(self, columns=None, rows=None, error=None):
        self.columns = columns or ["code", "name"]
        self.rows = rows if rows is not None else [("M", "Main Library"), ("X", None)]
        self.error = error
        self.find_calls = []
        self.sql_calls = []

    def find(self, table, where, params, limit):
        self.find_calls.append((table, where.as_string(None), params, limit))
        if self.error:
            raise self.error
        return self.columns, self.rows[:limit]

    def fetch_sql(self, statement, limit=None):
        self.sql_calls.append((statement, limit))
        if self.error:
            raise self.error
        return self.columns, self.rows if limit is None else self.rows[:limit]


@pytest.fixture
def stub():
    return StubStore()


class TestCommands:
    @pytest.mark.parametrize("command", ["exit", "quit", "  quit  "])
    def test_exit_commands_stop(self, stub, command, capsys):
        assert QueryShell(stub).handle(command) is False
        assert "bye" in capsys.readouterr().out

    def test_commands_are_case_sensitive(self, stub, capsys):
        assert QueryShell(stub).handle("EXIT") is True
        assert "format error" in capsys.readouterr().out

    def test_blank_line_ignored(self, stub, capsys):
        assert QueryShell(stub).handle("   ") is True
        assert capsys.readouterr().out == ""

    def test_help(self, stub, capsys):
        assert QueryShell(stub).handle("help") is True
        assert "patrons|{}" in capsys.readouterr().out

    def test_benchmark_runs_every_query(self, stub, capsys):
        QueryShell(stub).handle("benchmark")
        assert len(stub.sql_calls) == len(BENCHMARK_QUERIES)
        out = capsys.readouterr().out
        assert "count all patrons:" in out
        assert "benchmark done" in out

    def test_benchmark_continues_after_error(self, capsys):
        store = StubStore(error=QueryError("relation does not exist"))
        QueryShell(store).handle("benchmark")
        out = capsys.readouterr().out
        assert out.count("error - relation does not exist") == len(BENCHMARK_QUERIES)


class TestQueries:
    def test_table_filter(self, stub, capsys):
        assert QueryShell(stub).handle('libraries | {"code": "M"}') is True
        table, where, params, limit = stub.find_calls[0]
        assert table == "libraries"
        assert where == '"code" = %s'
        assert params == ["M"]
        assert limit == 100
        out = capsys.readouterr().out
        assert "code | name" in out
        assert "X | NULL" in out
        assert "2 rows returned" in out

    def test_row_limit(self, capsys):
        store = StubStore(rows=[(str(i), "n") for i in range(5)])
        QueryShell(store, row_limit=3).handle("libraries|{}")
        assert "3 rows returned" in capsys.readouterr().out

    def test_raw_select(self, stub):
        QueryShell(stub).handle("select count(*) from patrons where a || b = 'x'")
        assert stub.sql_calls == [("select count(*) from patrons where a || b = 'x'", 100)]
        assert stub.find_calls == []

    def test_no_selector(self, stub, capsys):
        assert QueryShell(stub).handle("DELETE FROM patrons") is True
        assert "format error" in capsys.readouterr().out
        assert stub.sql_calls == []

    def test_bad_json_continues(self, stub, capsys):
        assert QueryShell(stub).handle("patrons|{nope") is True
        assert "query error: filter parse error" in capsys.readouterr().out
        assert stub.find_calls == []

    def test_unknown_table_continues(self, stub, capsys):
        assert QueryShell(stub).handle("books|{}") is True
        assert "unknown table" in capsys.readouterr().out

    def test_deeply_nested_filter_continues(self, stub, capsys):
        assert QueryShell(stub).handle("patrons|" + '{"a":' * 100000) is True
        assert "query error: filter parse error" in capsys.readouterr().out
        assert stub.find_calls == []

    def test_store_error_continues(self, capsys):
        store = StubStore(error=QueryError("canceling statement"))
        assert QueryShell(store).handle("patrons|{}") is True
        assert "query error: canceling statement" in capsys.readouterr().out


class TestRun:
    def test_stops_at_exit(self, stub, capsys):
        lines = iter(["libraries|{}\n", "exit\n", "libraries|{}\n"])
        QueryShell(stub).run(lines)
        assert len(stub.find_calls) == 1
        assert next(lines) == "libraries|{}\n"

    def test_prompt_lines_until_eof(self, capsys):
        assert list(prompt_lines(io.StringIO("help\nquit\n"))) == ["help\n", "quit\n"]
        assert capsys.readouterr().out.count("> ") == 3


def test_format_value():
    assert format_value(None) == "NULL"
    assert format_value(b"abc") == "abc"
    assert format_value(True) == "True"
