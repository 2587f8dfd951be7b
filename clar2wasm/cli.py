"""clar2wasm CLI — command-line interface for the Clarity to wasm compiler.

Commands:
  clar2wasm compile <file.clar> [-o out.wasm] [--debug]   — Run all passes, write a module
  clar2wasm check <file.clar>                             — Parse and type check only
  clar2wasm cost <file.clar>                              — Static cost estimate per function
  clar2wasm batch <dir> [--parallel] [--workers N]        — Compile every contract under a directory
  clar2wasm inspect <file.wasm>                           — Summarise a produced module
  clar2wasm verify-stdlib                                 — Prove the 128-bit helpers with Z3
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Optional

from clar2wasm import __version__
from clar2wasm.config import Clar2WasmConfig, load_config
from clar2wasm.driver import (
    CompileMode, CompileResult, CompileState, check_source, compile_source, read_source,
)
from clar2wasm.errors import CompileError, ConfigError
from clar2wasm.formatters import format_batch, format_costs, format_result, ICON_ERROR, ICON_OK


def _load(path: str, config: Clar2WasmConfig) -> Optional[str]:
    if not os.path.exists(path):
        print(json.dumps({"error": f"File not found: {path}"}))
        return None
    try:
        return read_source(path)
    except CompileError as e:
        failed = CompileResult(None, list(e.diagnostics), CompileState.FAILED, None, path)
        print(format_result(failed.to_dict(), failed.diagnostics, config.format))
        return None


def _config(args: argparse.Namespace, start: str) -> Clar2WasmConfig:
    config = load_config(getattr(args, "config", None), start_dir=start)
    if getattr(args, "format", None):
        config.format = args.format
    return config


def _start_dir(path: str) -> str:
    return path if os.path.isdir(path) else os.path.dirname(os.path.abspath(path))


def _compile(args: argparse.Namespace, source: str, config: Clar2WasmConfig, mode: CompileMode):
    return compile_source(
        source, filename=args.file, mode=mode,
        deployer=config.deployer, contract_name=config.contract_name or None,
        cost_limits=config.limits(), memory_pages=config.stack_size_pages,
    )


def cmd_compile(args: argparse.Namespace) -> int:
    """Compile a Clarity contract through all passes and write the module."""
    config = _config(args, _start_dir(args.file))
    source = _load(args.file, config)
    if source is None:
        return 1
    mode = CompileMode.DEBUG if args.debug else config.compile_mode()

    result = _compile(args, source, config, mode)
    summary = result.to_dict()
    if result.artifact is not None:
        output = args.output or config.output_path(args.file)
        out_dir = os.path.dirname(output)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        result.artifact.write(output)
        summary["output"] = output

    print(format_result(summary, result.diagnostics, config.format, source))
    return 0 if result.state == CompileState.DONE else 1


def cmd_check(args: argparse.Namespace) -> int:
    """Run parsing and Pass 1 only — fast type check."""
    config = _config(args, _start_dir(args.file))
    source = _load(args.file, config)
    if source is None:
        return 1
    result = check_source(source, filename=args.file, deployer=config.deployer,
                          contract_name=config.contract_name or None)
    print(format_result(result.to_dict(), result.diagnostics, config.format, source))
    return 0 if result.ok else 1


def cmd_cost(args: argparse.Namespace) -> int:
    """Print the static cost estimate of every function."""
    config = _config(args, _start_dir(args.file))
    source = _load(args.file, config)
    if source is None:
        return 1
    result = _compile(args, source, config, CompileMode.MODULE)
    report = result.cost_report
    if config.format == "json":
        print(json.dumps({"file": args.file, "costs": report.to_dict(),
                          "warnings": [w.to_dict() for w in result.warnings],
                          "errors": [e.to_dict() for e in result.errors]}, indent=2))
    else:
        print(format_costs(report.to_dict()))
        for d in result.diagnostics:
            print(f"  {d}")
    return 1 if result.errors else 0


def cmd_batch(args: argparse.Namespace) -> int:
    """Compile every contract under a directory."""
    target = args.directory
    if not os.path.isdir(target):
        print(json.dumps({"error": f"Not a directory: {target}"}))
        return 1
    config = _config(args, target)
    use_parallel = args.parallel or config.parallel
    workers = args.workers or config.parallel_workers

    from clar2wasm.parallel import compile_many, discover_contracts
    paths = discover_contracts(target)
    results = compile_many(paths, workers=workers if use_parallel else 1, config=config, write=True)

    if config.format == "json":
        print(json.dumps(results, indent=2))
    else:
        print(format_batch(results))
    return 0 if all(r["state"] == "done" for r in results) else 1


def cmd_inspect(args: argparse.Namespace) -> int:
    """Summarise the sections of a produced module."""
    from clar2wasm.tools import ModuleFormatError, inspect_module
    if not os.path.exists(args.file):
        print(json.dumps({"error": f"File not found: {args.file}"}))
        return 1
    with open(args.file, "rb") as f:
        data = f.read()
    try:
        summary = inspect_module(data)
    except ModuleFormatError as e:
        print(json.dumps({"error": str(e)}))
        return 1
    out = summary.to_dict()
    debug = summary.debug_info()
    if debug is not None:
        out["debug"] = debug
    print(json.dumps(out, indent=2))
    return 0


def cmd_verify_stdlib(args: argparse.Namespace) -> int:
    """Prove the integer helpers against 128-bit arithmetic."""
    from clar2wasm.verify import verify_stdlib
    results = verify_stdlib(args.helpers or None)
    if args.format == "json":
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        for r in results:
            icon = ICON_OK if r.proven else ICON_ERROR
            print(f" {icon}  {r.helper}" + (f"  {r.message}" if r.message else ""))
            if r.counterexample:
                print(f"      {r.counterexample}")
    return 0 if all(r.proven for r in results) else 1


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="clar2wasm",
        description="clar2wasm — compile Clarity smart contracts to WebAssembly",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log stage transitions (-vv for debug detail)")
    parser.add_argument("--config", default=None, help="Configuration file (default: search upward)")
    parser.add_argument("--format", choices=["pretty", "json"], default=None, help="Output format")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # compile
    p_compile = subparsers.add_parser("compile", help="Compile a Clarity contract to wasm")
    p_compile.add_argument("file", help="Clarity source file (.clar)")
    p_compile.add_argument("-o", "--output", help="Output module path")
    p_compile.add_argument("--debug", action="store_true",
                           help="Add name and clarity.debug custom sections")
    p_compile.set_defaults(func=cmd_compile)

    # check
    p_check = subparsers.add_parser("check", help="Parse and type check a contract")
    p_check.add_argument("file", help="Clarity source file (.clar)")
    p_check.set_defaults(func=cmd_check)

    # cost
    p_cost = subparsers.add_parser("cost", help="Static execution cost per function")
    p_cost.add_argument("file", help="Clarity source file (.clar)")
    p_cost.set_defaults(func=cmd_cost)

    # batch
    p_batch = subparsers.add_parser("batch", help="Compile every contract under a directory")
    p_batch.add_argument("directory", help="Directory to search recursively for .clar files")
    p_batch.add_argument("--parallel", action="store_true", help="Use multiprocess compilation")
    p_batch.add_argument("--workers", type=int, default=0, help="Number of parallel workers (0=auto)")
    p_batch.set_defaults(func=cmd_batch)

    # inspect
    p_inspect = subparsers.add_parser("inspect", help="Summarise a compiled module")
    p_inspect.add_argument("file", help="Module file (.wasm)")
    p_inspect.set_defaults(func=cmd_inspect)

    # verify-stdlib
    p_verify = subparsers.add_parser("verify-stdlib", help="Prove the integer helpers with Z3")
    p_verify.add_argument("helpers", nargs="*", help="Helpers to verify (default: all)")
    p_verify.set_defaults(func=cmd_verify_stdlib)

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG if args.verbose > 1 else logging.INFO,
                            format="%(levelname)s %(name)s: %(message)s")

    if not args.command:
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except ConfigError as e:
        print(json.dumps({"error": str(e)}))
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
