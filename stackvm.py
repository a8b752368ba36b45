"""stackvm entry point: assemble, optionally persist, and run a program."""

from __future__ import annotations
import argparse
import sys
from typing import Callable, List, Optional

from assembler import AssembledProgram, assemble_program
from codec import CodecError, read_bytecode, write_bytecode
from interpreter import ExecutionError, Interpreter, TracebackFormatter
from lexer import AssemblyError


def _load_program(interpreter: Interpreter, args: argparse.Namespace) -> None:
    if args.bytecode:
        interpreter.load(read_bytecode(args.program))
        return

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        with open(filename, "r", encoding="utf-8") as handle:
            source_text = handle.read()

    assembled: AssembledProgram = assemble_program(source_text, filename)
    if args.output:
        # Persist, then execute what was actually written to disk.
        write_bytecode(args.output, assembled.words)
        assembled.words = read_bytecode(args.output)
    interpreter.load_assembled(assembled)


def run_cli(argv: Optional[List[str]] = None, output_sink: Optional[Callable[[str], None]] = None) -> int:
    parser = argparse.ArgumentParser(description="Stack machine assembler and interpreter")
    parser.add_argument("program", help="Source file path, bytecode path with -bytecode, or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-bytecode", "--bytecode", dest="bytecode", action="store_true", help="Treat program argument as an assembled bytecode file")
    parser.add_argument("-o", "--output", dest="output", help="Write assembled bytecode to this path and run the reloaded copy")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record stack and frame snapshots for tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    args = parser.parse_args(argv)

    if args.source_mode and args.bytecode:
        print("-source and -bytecode cannot be combined", file=sys.stderr)
        return 1

    sink = output_sink or (lambda text: print(text))
    interpreter = Interpreter(verbose=args.verbose, output_sink=sink)
    try:
        _load_program(interpreter, args)
    except OSError as exc:
        print(f"Failed to read {args.program}: {exc}", file=sys.stderr)
        return 1
    except AssemblyError as error:
        print(f"AssemblyError: {error}", file=sys.stderr)
        return 1
    except CodecError as error:
        print(f"CodecError: {error}", file=sys.stderr)
        return 1
    except ExecutionError as error:
        print(f"{error.__class__.__name__}: {error.message}", file=sys.stderr)
        return 1

    try:
        interpreter.run()
    except ExecutionError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1

    if interpreter.stack:
        sink(f"Result: {interpreter.pop_result()}")
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
