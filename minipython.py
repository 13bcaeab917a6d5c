"""MiniPython entry point and REPL wiring."""

from __future__ import annotations
import argparse
import logging
import sys
from typing import List, Optional

from interpreter import (
    UNBOUND,
    VM,
    Environment,
    MiniPyRuntimeError,
    TracebackFormatter,
    VMOptions,
    compile_source,
)
from lexer import MiniPySyntaxError
from parser import Program
from natives import ExtensionError, RuntimeServices, load_runtime_services
from values import render


def _format_watches(vm: VM) -> str:
    parts = []
    for name, value in vm.get_watched_values().items():
        parts.append(f"{name}={'unbound' if value is UNBOUND else render(value)}")
    return ", ".join(parts)


def _report_runtime_error(vm: VM, error: MiniPyRuntimeError, filename: str, verbose: bool, as_json: bool) -> None:
    formatter = TracebackFormatter(vm, filename)
    print(formatter.format_text(error, verbose=verbose), file=sys.stderr)
    if as_json:
        print(formatter.to_json(error), file=sys.stderr)


def run_repl(options: VMOptions, services: RuntimeServices) -> int:
    print("\x1b[38;2;153;221;255mMiniPython\033[0m REPL. Enter statements, blank line to run buffer.")  # light blue
    vm = VM(output_sink=print, options=options, services=services)
    global_env = Environment()
    buffer: List[str] = []

    def _run(program: Program) -> None:
        vm.load(program, global_env)
        try:
            vm.run()
        except MiniPyRuntimeError as error:
            _report_runtime_error(vm, error, "<repl>", options.verbose, False)

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if not buffer else "\x1b[38;2;153;221;255m..>\033[0m "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()
        if not buffer and stripped != "" and not stripped.endswith(":"):
            try:
                program = compile_source(line, "<repl>")
            except MiniPySyntaxError:
                # An incomplete line (an open bracket, say) starts a multi-line buffer.
                buffer.append(line)
                continue
            _run(program)
            continue

        if stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
            try:
                program = compile_source(source_text, "<repl>")
            except MiniPySyntaxError as error:
                print(f"SyntaxError: {error}", file=sys.stderr)
                continue
            _run(program)
            continue

        if stripped != "":
            buffer.append(line)

    return 0


def _drive(vm: VM, args: argparse.Namespace) -> None:
    if args.trace:
        while True:
            line = vm.get_current_line()
            result = vm.step()
            print(f"[step {vm.step_count}] line {line} -> {result.current_line}", file=sys.stderr)
            if vm.watches:
                print(f"    {_format_watches(vm)}", file=sys.stderr)
            if result.done:
                return
    if not vm.breakpoints:
        vm.run()
        return
    outcome = vm.run_until_breakpoint()
    while outcome.hit_breakpoint:
        print(f"Breakpoint at line {outcome.result.current_line}", file=sys.stderr)
        if vm.watches:
            print(f"    {_format_watches(vm)}", file=sys.stderr)
        outcome = vm.continue_execution()


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="MiniPython stepping interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--trace", action="store_true", help="Report every step on stderr")
    parser.add_argument("--break", dest="breakpoints", type=int, action="append", default=[], metavar="LINE", help="Pause and report at LINE (repeatable)")
    parser.add_argument("--watch", dest="watches", action="append", default=[], metavar="NAME", help="Report NAME at every pause (repeatable)")
    parser.add_argument("--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load a native function extension (repeatable)")
    parser.add_argument("--seed", type=int, default=None, help="Seed for random() and randint()")
    parser.add_argument("--max-steps", type=int, default=VMOptions.max_steps, help="Abort after this many steps")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")
    options = VMOptions(max_steps=args.max_steps, seed=args.seed, verbose=args.verbose)

    try:
        services = load_runtime_services(args.extensions)
    except ExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(options, services)

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
        program = compile_source(source_text, filename)
    except MiniPySyntaxError as error:
        print(f"SyntaxError: {error}", file=sys.stderr)
        if error.suggestion:
            print(f"    Hint: {error.suggestion}", file=sys.stderr)
        return 1

    vm = VM(output_sink=print, options=options, services=services)
    for line in args.breakpoints:
        vm.add_breakpoint(line)
    for name in args.watches:
        vm.add_watch(name)
    vm.load(program)
    try:
        _drive(vm, args)
    except MiniPyRuntimeError as error:
        _report_runtime_error(vm, error, filename, args.verbose, args.traceback_json)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
