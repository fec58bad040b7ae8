"""Tests for the ematrm command line entry point."""

import io
from pathlib import Path

import pytest

from ematrm import run_cli

WATCHDOG = Path(__file__).parent.parent / "ext" / "watchdog.py"


@pytest.fixture
def program(tmp_path):
    def _write(source, name="prog.em"):
        path = tmp_path / name
        path.write_text(source, encoding="utf-8")
        return str(path)

    return _write


class TestRunCli:
    """Exit status and console output."""

    def test_runs_file(self, program, capsys):
        assert run_cli([program("0$42$>w")]) == 0
        assert capsys.readouterr().out == "42"

    def test_runs_literal_source(self, capsys):
        assert run_cli(["--source", "0$1$>W"]) == 0
        assert capsys.readouterr().out == "1\n"

    def test_missing_file(self, tmp_path, capsys):
        assert run_cli([str(tmp_path / "nope.em")]) == 1
        assert "Failed to read" in capsys.readouterr().err

    def test_lex_error(self, program, capsys):
        assert run_cli([program('0\n"abc')]) == 1
        err = capsys.readouterr().err
        assert err.startswith("[2] LexError:")
        assert "Unterminated string literal" in err

    def test_lex_error_runs_nothing(self, program, capsys):
        assert run_cli([program("0$1$>w o")]) == 1
        assert capsys.readouterr().out == ""

    def test_no_program(self, capsys):
        assert run_cli([]) == 1
        assert "a program is required" in capsys.readouterr().err

    def test_too_many_arguments(self, capsys):
        with pytest.raises(SystemExit) as info:
            run_cli(["a.em", "b.em"])
        assert info.value.code == 1

    def test_reads_stdin(self, program, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("  41\n"))
        assert run_cli([program("0r#$1$+w")]) == 0
        assert capsys.readouterr().out == ">: 42"

    def test_tokens_listing(self, capsys):
        assert run_cli(["--tokens", "--source", '0"hi"j?']) == 0
        out = capsys.readouterr().out.splitlines()
        assert out[0].split() == ["0", "[1]", "TOGGLE_BIT_0"]
        assert out[1].split() == ["1", "[1]", "LIT_STR", "'hi'"]
        assert out[2].split() == ["2", "[1]", "POP_JMP_COND"]

    def test_trace(self, capsys):
        assert run_cli(["--trace", "--source", "0w"]) == 0
        err = capsys.readouterr().err
        assert "Trace (most recent step last):" in err
        assert "WRITE" in err

    def test_watchdog_extension(self, capsys, monkeypatch):
        monkeypatch.setenv("EMATRM_MAX_STEPS", "10")
        assert run_cli(["--ext", str(WATCHDOG), "--source", ".j>"]) == 3
        assert "watchdog: stopped after 10 steps" in capsys.readouterr().err

    def test_bad_extension(self, tmp_path, capsys):
        assert run_cli(["--ext", str(tmp_path / "missing.py"), "--source", "0"]) == 1
        assert "ExtensionError" in capsys.readouterr().err


class TestRepl:
    """Interactive session keeps one machine across lines."""

    def test_state_persists_between_lines(self, capsys, monkeypatch):
        lines = iter(["0$5$>", "$2$*w", ""])

        def _input(prompt=""):
            try:
                return next(lines)
            except StopIteration:
                raise EOFError

        monkeypatch.setattr("builtins.input", _input)
        assert run_cli(["--repl"]) == 0
        assert "10" in capsys.readouterr().out

    def test_lex_error_keeps_session(self, capsys, monkeypatch):
        lines = iter(["0$7$>", '"oops', "w"])

        def _input(prompt=""):
            try:
                return next(lines)
            except StopIteration:
                raise EOFError

        monkeypatch.setattr("builtins.input", _input)
        assert run_cli(["--repl"]) == 0
        captured = capsys.readouterr()
        assert "LexError" in captured.err
        assert "7" in captured.out
