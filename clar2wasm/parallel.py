"""clar2wasm parallel compilation — multi-process batch builds.

Compiles independent contracts in parallel using Python's multiprocessing.
Each unit is compiled in isolation; the cost and ABI tables are module-level
constants, so workers share nothing.

Usage:
    from clar2wasm.parallel import compile_many
    results = compile_many(["a.clar", "b.clar"], workers=4)
"""

from __future__ import annotations

import logging
import os
import time
from multiprocessing import Pool, cpu_count
from typing import Any, Optional

from clar2wasm.config import Clar2WasmConfig
from clar2wasm.driver import compile_file

logger = logging.getLogger(__name__)


def discover_contracts(root: str) -> list[str]:
    """Every ``.clar`` file under ``root``, sorted."""
    found = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for fname in filenames:
            if fname.endswith(".clar"):
                found.append(os.path.join(dirpath, fname))
    return sorted(found)


# ---------------------------------------------------------------------------
# Worker function (must be top-level for pickling)
# ---------------------------------------------------------------------------

def _compile_single_file(args: tuple[str, Clar2WasmConfig, bool]) -> dict[str, Any]:
    """Compile one file and write its module (worker function for multiprocessing)."""
    path, config, write = args
    try:
        result = compile_file(path, config)
    except OSError as e:
        return {"file": path, "state": "failed", "errors": [{"message": str(e)}], "warnings": []}
    summary = result.to_dict()
    if result.artifact is not None and write:
        output = config.output_path(path)
        out_dir = os.path.dirname(output)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        result.artifact.write(output)
        summary["output"] = output
    return summary


def compile_many(paths: list[str], workers: int = 0,
                 config: Optional[Clar2WasmConfig] = None,
                 write: bool = False) -> list[dict[str, Any]]:
    """Compile several contracts, in parallel when it pays off.

    Args:
        paths: Contract source files.
        workers: Number of worker processes (0 = auto = cpu_count).
        config: Configuration shared by every unit.
        write: Write each module next to its source (or to output_dir).

    Returns:
        One ``CompileResult.to_dict()`` per path, in the order given.
    """
    start = time.time()
    config = config or Clar2WasmConfig()
    if not paths:
        return []

    if workers <= 0:
        workers = min(cpu_count(), len(paths), 8)
    workers = max(1, workers)

    work_items = [(p, config, write) for p in paths]
    if workers == 1 or len(paths) <= 2:
        # Sequential for small sets (avoid multiprocessing overhead)
        results = [_compile_single_file(item) for item in work_items]
    else:
        with Pool(processes=workers) as pool:
            results = pool.map(_compile_single_file, work_items)

    elapsed = (time.time() - start) * 1000
    failed = sum(1 for r in results if r["state"] != "done")
    logger.info("compiled %d contract(s), %d failed, in %.1fms [%d worker(s)]",
                len(paths), failed, elapsed, workers)
    return results
