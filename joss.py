"""JOSS entry point, REPL and session-fixture runner."""

from __future__ import annotations
import argparse
import sys
from dataclasses import dataclass
from typing import List, Optional, Tuple

from extensions import JossExtensionError, RuntimeServices, load_runtime_services
from interpreter import Interpreter, JossRuntimeError, TracebackFormatter
from lexer import JossParseError


PROMPT = "\x1b[38;2;153;221;255m>\033[0m "  # light blue


def _report(interpreter: Interpreter, error: Exception, *, traceback_json: bool = False) -> None:
    if isinstance(error, JossParseError):
        print(f"ParseError: {error}", file=sys.stderr)
        return
    if not isinstance(error, JossRuntimeError):
        raise error
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
    if traceback_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(*, verbose: bool, services: RuntimeServices, sparse_arrays: bool = False) -> int:
    print("\x1b[38;2;153;221;255mJOSS\033[0m REPL. One command per line, end-of-file to quit.")
    try:
        interpreter = Interpreter(filename="<repl>", verbose=verbose, services=services, sparse_arrays=sparse_arrays)
    except JossExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1
    while True:
        try:
            line = input(PROMPT)
        except EOFError:
            print()
            break
        try:
            interpreter.evaluate_line(line)
        except (JossParseError, JossRuntimeError) as error:
            _report(interpreter, error)
    return 0


# ---- .session fixtures ----


@dataclass
class SessionMismatch:
    lineno: int
    command: str
    expected: List[str]
    actual: List[str]

    def describe(self) -> str:
        return (
            f"line {self.lineno}: > {self.command}\n"
            f"  expected: {self.expected!r}\n"
            f"  actual:   {self.actual!r}"
        )


def parse_session(text: str) -> List[Tuple[int, str, List[str]]]:
    """Split session text into ``(lineno, command, expected_lines)`` triples."""
    entries: List[Tuple[int, str, List[str]]] = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        if raw.startswith("#"):
            continue
        if raw.startswith(">"):
            entries.append((lineno, raw[1:].strip(), []))
        elif entries:
            entries[-1][2].append(raw)
        elif raw.strip():
            raise ValueError(f"line {lineno}: expected output before any '>' command")
    return entries


def _trim(lines: List[str]) -> List[str]:
    trimmed = list(lines)
    while trimmed and not trimmed[-1].strip():
        trimmed.pop()
    return trimmed


def run_session_text(text: str, *, services: Optional[RuntimeServices] = None, sparse_arrays: bool = False) -> List[SessionMismatch]:
    captured: List[str] = []
    interpreter = Interpreter(
        filename="<session>",
        output_sink=captured.append,
        services=services,
        sparse_arrays=sparse_arrays,
    )
    mismatches: List[SessionMismatch] = []
    for lineno, command, expected in parse_session(text):
        captured.clear()
        try:
            interpreter.evaluate_line(command)
        except JossParseError as error:
            captured.append(f"Error: {error}\n")
        except JossRuntimeError as error:
            captured.append(f"Error: {error.message}\n")
        actual = _trim("".join(captured).split("\n"))
        if actual != _trim(expected):
            mismatches.append(SessionMismatch(lineno=lineno, command=command, expected=_trim(expected), actual=actual))
    return mismatches


def run_session(path: str, *, services: Optional[RuntimeServices] = None, sparse_arrays: bool = False) -> List[SessionMismatch]:
    with open(path, "r", encoding="utf-8") as handle:
        return run_session_text(handle.read(), services=services, sparse_arrays=sparse_arrays)


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="JOSS interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--sparse-arrays", action="store_true", help="Unset array elements read as 0")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    parser.add_argument("--session", metavar="FILE", help="Run a .session fixture and report mismatches")
    parser.add_argument("--list-functions", action="store_true", help="List built-in and extension functions, then exit")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.ext)
    except JossExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.session:
        try:
            mismatches = run_session(args.session, services=services, sparse_arrays=args.sparse_arrays)
        except (OSError, ValueError, JossExtensionError) as exc:
            print(f"Failed to run session {args.session}: {exc}", file=sys.stderr)
            return 1
        for mismatch in mismatches:
            print(mismatch.describe(), file=sys.stderr)
        return 1 if mismatches else 0

    if args.list_functions:
        try:
            interpreter = Interpreter(services=services)
        except JossExtensionError as exc:
            print(f"ExtensionError: {exc}", file=sys.stderr)
            return 1
        for name in sorted(interpreter.builtins.table):
            print(interpreter.builtins.table[name].describe())
        return 0

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services, sparse_arrays=args.sparse_arrays)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        interpreter = Interpreter(
            filename=filename,
            verbose=args.verbose,
            services=services,
            sparse_arrays=args.sparse_arrays,
        )
    except JossExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    status = 0
    # Errors are reported per line; the rest of the program still runs.
    for line in source_text.split("\n"):
        try:
            interpreter.evaluate_line(line)
        except (JossParseError, JossRuntimeError) as error:
            _report(interpreter, error, traceback_json=args.traceback_json)
            status = 1
    return status


if __name__ == "__main__":
    raise SystemExit(run_cli())
