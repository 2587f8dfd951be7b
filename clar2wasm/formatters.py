"""clar2wasm output formatters — human-friendly terminal output.

Two modes:
    pretty   colored, one block per diagnostic with the offending source
             line underlined (default)
    json     machine-readable, the ``CompileResult.to_dict()`` shape
"""

from __future__ import annotations

import json
import os
import sys
from typing import Any, Optional

from clar2wasm.errors import Diagnostic


# ── ANSI color helpers ───────────────────────────────────────────────────

_NO_COLOR = os.environ.get("NO_COLOR") is not None or not sys.stdout.isatty()


def _c(code: str, text: str) -> str:
    if _NO_COLOR:
        return text
    return f"\033[{code}m{text}\033[0m"


def red(t: str) -> str:
    return _c("31", t)


def yellow(t: str) -> str:
    return _c("33", t)


def green(t: str) -> str:
    return _c("32", t)


def bold(t: str) -> str:
    return _c("1", t)


def dim(t: str) -> str:
    return _c("2", t)


ICON_ERROR = red("✖")
ICON_WARNING = yellow("▲")
ICON_OK = green("✔")


# ── Source excerpts ──────────────────────────────────────────────────────

def underline(source: str, diagnostic: Diagnostic) -> list[str]:
    """The source line a diagnostic starts on, with its span marked by carets."""
    span = diagnostic.span
    if span is None:
        return []
    lines = source.splitlines()
    if not 1 <= span.start_line <= len(lines):
        return []
    text = lines[span.start_line - 1]
    start = max(span.start_column - 1, 0)
    if span.end_line == span.start_line:
        end = max(span.end_column - 1, start + 1)
    else:
        end = len(text)
    gutter = f"{span.start_line:>4} | "
    marker = " " * (len(gutter) + start) + "^" * max(min(end, len(text)) - start, 1)
    return [dim(gutter) + text, red(marker) if diagnostic.is_error else yellow(marker)]


# ── Pretty formatter (default) ──────────────────────────────────────────

def format_diagnostic(diagnostic: Diagnostic, source: Optional[str] = None) -> str:
    icon = ICON_ERROR if diagnostic.is_error else ICON_WARNING
    color = red if diagnostic.is_error else yellow
    loc = dim(f"{diagnostic.span}  ") if diagnostic.span else ""
    lines = [f"   {icon}  {loc}{color(diagnostic.message)}"]
    if source is not None:
        lines.extend("      " + line for line in underline(source, diagnostic))
    return "\n".join(lines)


def format_pretty(result: dict[str, Any], diagnostics: list[Diagnostic],
                  source: Optional[str] = None) -> str:
    """Format one compilation result with colors, icons and source excerpts."""
    errors = [d for d in diagnostics if d.is_error]
    warnings = [d for d in diagnostics if not d.is_error]
    status_icon = ICON_OK if not errors else ICON_ERROR
    lines = [f"\n {status_icon}  {bold(result.get('file', '<stdin>'))}"]

    for diagnostic in errors + warnings:
        lines.append(format_diagnostic(diagnostic, source))

    module = result.get("module")
    if module:
        lines.append(f"   {dim('module:')} {module['size']} bytes, "
                     f"{len(module['exports'])} export(s), {len(module['imports'])} import(s)")

    if not errors and not warnings:
        lines.append(f"\n   {green('No issues found.')}\n")
    else:
        parts = []
        if errors:
            parts.append(red(f"{len(errors)} error{'s' if len(errors) != 1 else ''}"))
        if warnings:
            parts.append(yellow(f"{len(warnings)} warning{'s' if len(warnings) != 1 else ''}"))
        lines.append(f"\n   {' · '.join(parts)}\n")
    return "\n".join(lines)


def format_costs(report: dict[str, Any]) -> str:
    """Table of per-function cost estimates."""
    dims = list(report["limits"])
    rows = [("function", *dims)]
    for name, cost in report["functions"].items():
        rows.append((name, *(str(cost[d]) for d in dims)))
    rows.append((".top-level", *(str(report["top_level"][d]) for d in dims)))
    rows.append(("limit", *(str(report["limits"][d]) for d in dims)))
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    out = []
    for n, row in enumerate(rows):
        text = "  ".join(cell.ljust(w) for cell, w in zip(row, widths))
        out.append(bold(text) if n == 0 else text)
    return "\n".join(out)


def format_batch(results: list[dict[str, Any]]) -> str:
    lines = []
    failed = 0
    for r in results:
        ok = r.get("state") == "done"
        failed += not ok
        icon = ICON_OK if ok else ICON_ERROR
        detail = r.get("output") or f"{len(r.get('errors', []))} error(s)"
        lines.append(f" {icon}  {r['file']}  {dim(str(detail))}")
    summary = (green(f"{len(results)} compiled") if not failed
               else red(f"{failed} of {len(results)} failed"))
    lines.append(f"\n   {summary}\n")
    return "\n".join(lines)


# ── Dispatcher ──────────────────────────────────────────────────────────

def format_result(
    result: dict[str, Any],
    diagnostics: list[Diagnostic],
    fmt: str = "pretty",
    source: Optional[str] = None,
) -> str:
    """Dispatch to the appropriate formatter.

    Args:
        result: ``CompileResult.to_dict()``.
        diagnostics: The result's diagnostics, for the pretty formatter.
        fmt: "pretty" or "json".
        source: Source text, used to underline spans.
    """
    if fmt == "json":
        return json.dumps(result, indent=2)
    return format_pretty(result, diagnostics, source)
