"""ematrm entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, NoReturn, Optional

from extensions import EmatrmExtensionError, RuntimeServices, load_runtime_services
from interpreter import EmatrmRuntimeError, ExitSignal, Interpreter, TraceFormatter
from lexer import EmatrmLexError


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _print_tokens(interpreter: Interpreter) -> None:
    for index, token in enumerate(interpreter.lex()):
        payload = f" {token.value!r}" if token.value else ""
        print(f"{index:5d}  [{token.line}] {token.type}{payload}")


def run_repl(verbose: bool, services: Optional[RuntimeServices] = None) -> int:
    print("ematrm REPL. Each line runs against the same machine; Ctrl-D to quit.")
    had_output = False

    def _output_sink(text: str) -> None:
        nonlocal had_output
        had_output = True
        print(text, end="", flush=True)

    interpreter = Interpreter(source="", filename="<repl>", verbose=verbose, services=services, output_sink=_output_sink)
    while True:
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input("em> ")
        except EOFError:
            print()
            break
        if not line.strip():
            continue
        interpreter.source = line
        try:
            interpreter.execute(interpreter.lex())
        except ExitSignal as sig:
            return sig.code
        except EmatrmLexError as error:
            print(f"LexError: {error}", file=sys.stderr)
        except EmatrmRuntimeError as error:
            print(TraceFormatter(interpreter).format_text(error), file=sys.stderr)
    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = _ArgumentParser(prog="ematrm", description="ematrm register-matrix interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with --source")
    parser.add_argument("--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("--verbose", action="store_true", help="Record machine snapshots in the step log")
    parser.add_argument("--trace", action="store_true", help="Print the tail of the step log to stderr after the run")
    parser.add_argument("--trace-json", action="store_true", help="Also emit failure traces as JSON")
    parser.add_argument("--tokens", action="store_true", help="Print the lexed instruction stream and exit")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module or .emx pointer file")
    parser.add_argument("--repl", action="store_true", help="Start an interactive session")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.ext)
    except EmatrmExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.repl:
        return run_repl(verbose=args.verbose, services=services)

    if args.program is None:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: a program is required", file=sys.stderr)
        return 1

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except (OSError, UnicodeDecodeError) as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(source=source_text, filename=filename, verbose=args.verbose, services=services)
    formatter = TraceFormatter(interpreter)
    try:
        if args.tokens:
            _print_tokens(interpreter)
            return 0
        interpreter.run()
    except EmatrmLexError as error:
        print(f"[{error.line}] LexError: {error}", file=sys.stderr)
        return 1
    except ExitSignal as sig:
        return sig.code
    except EmatrmRuntimeError as error:
        print(formatter.format_text(error), file=sys.stderr)
        if args.trace_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    finally:
        sys.stdout.flush()
    if args.trace:
        print(formatter.format_text(), file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
