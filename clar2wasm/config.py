"""clar2wasm configuration — project-level .clar2wasm.yml support.

Loads configuration from .clar2wasm.yml (or .clar2wasm.yaml,
.clar2wasm.json, clar2wasm.config.json) found in the start directory or any
parent. Lets a project fix:
  - The deployer address used for ``.name`` contract literals
  - Block cost limits the cost analysis warns against
  - Batch compilation parallelism and output location

Example .clar2wasm.yml:
    mode: debug
    deployer: ST1PQHQKV0RJXZFY1DGX8MNSNYVE3VGZJSRTPGZGM
    cost_limits:
      runtime: 1000000
      write_count: 50
    parallel: true
    parallel_workers: 4
    output_dir: build/
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from typing import Any, Optional

import yaml

from clar2wasm.costs import BLOCK_LIMITS, ExecutionCost
from clar2wasm.errors import ConfigError
from clar2wasm.pass3_emit import CompileMode, DEFAULT_MEMORY_PAGES
from clar2wasm.principal import DEFAULT_DEPLOYER, PrincipalError, decode_address


@dataclass
class Clar2WasmConfig:
    """Project-level clar2wasm configuration."""
    # "module" or "debug"
    mode: str = "module"
    deployer: str = DEFAULT_DEPLOYER
    # Contract identity; defaults to the file name without extension
    contract_name: str = ""
    # Overrides of individual block limits; missing dimensions keep the default
    cost_limits: dict[str, int] = field(default_factory=dict)
    parallel: bool = False
    parallel_workers: int = 0  # 0 = auto (cpu_count)
    format: str = "pretty"  # "pretty" or "json"
    output_dir: str = ""
    stack_size_pages: int = DEFAULT_MEMORY_PAGES
    path: Optional[str] = None

    def compile_mode(self) -> CompileMode:
        return CompileMode(self.mode)

    def limits(self) -> ExecutionCost:
        base = {f.name: getattr(BLOCK_LIMITS, f.name) for f in fields(ExecutionCost)}
        base.update(self.cost_limits)
        return ExecutionCost(**base)

    def output_path(self, source_path: str) -> str:
        stem = os.path.splitext(os.path.basename(source_path))[0] + ".wasm"
        if self.output_dir:
            return os.path.join(self.output_dir, stem)
        return os.path.join(os.path.dirname(source_path), stem)


# ---------------------------------------------------------------------------
# Config file names (in priority order)
# ---------------------------------------------------------------------------

_CONFIG_FILES = [
    ".clar2wasm.yml",
    ".clar2wasm.yaml",
    ".clar2wasm.json",
    "clar2wasm.config.json",
]

_MODES = {m.value for m in CompileMode}
_FORMATS = {"pretty", "json"}


def find_config(start_dir: str = ".") -> Optional[str]:
    """Find the nearest config file by walking up from start_dir."""
    current = os.path.abspath(start_dir)
    while True:
        for name in _CONFIG_FILES:
            path = os.path.join(current, name)
            if os.path.isfile(path):
                return path
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def load_config(path: Optional[str] = None, start_dir: str = ".") -> Clar2WasmConfig:
    """Load configuration from a file.

    If no path is given, searches for a config file starting from start_dir.
    If no config file is found, returns defaults. A file that exists but
    cannot be read or parsed raises ConfigError.
    """
    if path is None:
        path = find_config(start_dir)

    if path is None:
        return Clar2WasmConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e

    try:
        if path.endswith(".json"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    config = _dict_to_config(data, path)
    config.path = path
    return config


def _dict_to_config(data: dict[str, Any], path: str = "<config>") -> Clar2WasmConfig:
    """Convert a parsed dict to Clar2WasmConfig."""
    config = Clar2WasmConfig()

    unknown = set(data) - {f.name for f in fields(Clar2WasmConfig)} - {"path"}
    if unknown:
        raise ConfigError(f"{path}: unknown key(s) {', '.join(sorted(unknown))}")

    if "mode" in data:
        config.mode = str(data["mode"])
        if config.mode not in _MODES:
            raise ConfigError(f"{path}: mode must be one of {', '.join(sorted(_MODES))}")
    if "deployer" in data:
        config.deployer = str(data["deployer"])
        try:
            decode_address(config.deployer)
        except PrincipalError as e:
            raise ConfigError(f"{path}: invalid deployer address: {e}") from e
    if "contract_name" in data:
        config.contract_name = str(data["contract_name"])
    if "cost_limits" in data:
        limits = data["cost_limits"]
        if not isinstance(limits, dict):
            raise ConfigError(f"{path}: cost_limits must be a mapping")
        dimensions = {f.name for f in fields(ExecutionCost)}
        for name, value in limits.items():
            if name not in dimensions:
                raise ConfigError(f"{path}: unknown cost dimension '{name}'")
            config.cost_limits[name] = _non_negative(value, f"cost_limits.{name}", path)
    if "parallel" in data:
        config.parallel = bool(data["parallel"])
    if "parallel_workers" in data:
        config.parallel_workers = _non_negative(data["parallel_workers"], "parallel_workers", path)
    if "format" in data:
        config.format = str(data["format"])
        if config.format not in _FORMATS:
            raise ConfigError(f"{path}: format must be one of {', '.join(sorted(_FORMATS))}")
    if "output_dir" in data:
        config.output_dir = str(data["output_dir"] or "")
    if "stack_size_pages" in data:
        pages = _non_negative(data["stack_size_pages"], "stack_size_pages", path)
        if pages == 0:
            raise ConfigError(f"{path}: stack_size_pages must be at least 1")
        config.stack_size_pages = pages

    return config


def _non_negative(value: Any, key: str, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"{path}: {key} must be a non-negative integer")
    return value
