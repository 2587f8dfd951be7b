"""Configuration Tests — CFG-001 through CFG-003."""

import json
import os

import pytest

from clar2wasm.config import Clar2WasmConfig, find_config, load_config
from clar2wasm.costs import BLOCK_LIMITS
from clar2wasm.driver import CompileMode
from clar2wasm.errors import ConfigError
from clar2wasm.principal import DEFAULT_DEPLOYER


class TestCFG001:
    """CFG-001: Loading.
    Priority: P0
    """

    def test_defaults(self):
        """priority_p0: The defaults compile module output under the devnet deployer."""
        config = Clar2WasmConfig()
        assert config.compile_mode() == CompileMode.MODULE
        assert config.deployer == DEFAULT_DEPLOYER
        assert config.limits() == BLOCK_LIMITS

    def test_yaml(self, tmp_path):
        """priority_p0: A YAML file overrides individual fields."""
        path = tmp_path / ".clar2wasm.yml"
        path.write_text(
            "mode: debug\n"
            "deployer: SP000000000000000000002Q6VF78\n"
            "cost_limits:\n"
            "  runtime: 1000\n"
            "parallel: true\n"
            "parallel_workers: 4\n"
            "output_dir: build\n"
            "stack_size_pages: 4\n"
        )
        config = load_config(str(path))
        assert config.compile_mode() == CompileMode.DEBUG
        assert config.deployer == "SP000000000000000000002Q6VF78"
        assert config.parallel and config.parallel_workers == 4
        assert config.stack_size_pages == 4
        assert config.path == str(path)

    def test_json(self, tmp_path):
        """priority_p1: JSON files are read by extension."""
        path = tmp_path / ".clar2wasm.json"
        path.write_text(json.dumps({"format": "json", "contract_name": "token"}))
        config = load_config(str(path))
        assert config.format == "json"
        assert config.contract_name == "token"

    def test_empty_file(self, tmp_path):
        """priority_p2: An empty YAML file means all defaults."""
        path = tmp_path / ".clar2wasm.yml"
        path.write_text("")
        assert load_config(str(path)).mode == "module"

    def test_find_walks_up(self, tmp_path):
        """priority_p1: The nearest config file in a parent directory is used."""
        (tmp_path / ".clar2wasm.yaml").write_text("format: json\n")
        nested = tmp_path / "contracts" / "tokens"
        nested.mkdir(parents=True)
        assert find_config(str(nested)) == str(tmp_path / ".clar2wasm.yaml")
        assert load_config(start_dir=str(nested)).format == "json"

    def test_priority_order(self, tmp_path):
        """priority_p2: .clar2wasm.yml wins over the JSON names."""
        (tmp_path / "clar2wasm.config.json").write_text("{}")
        (tmp_path / ".clar2wasm.yml").write_text("{}")
        assert os.path.basename(find_config(str(tmp_path))) == ".clar2wasm.yml"


class TestCFG002:
    """CFG-002: Malformed files are errors, not silent defaults.
    Priority: P0
    """

    @pytest.mark.parametrize("content", [
        "mode: release\n",
        "format: xml\n",
        "deployer: not-an-address\n",
        "cost_limits: 5\n",
        "cost_limits:\n  gas: 1\n",
        "cost_limits:\n  runtime: -1\n",
        "parallel_workers: many\n",
        "stack_size_pages: 0\n",
        "colour: blue\n",
        "- just\n- a list\n",
        "mode: [unclosed\n",
    ])
    def test_rejected(self, tmp_path, content):
        """priority_p0: Each malformed setting raises ConfigError."""
        path = tmp_path / ".clar2wasm.yml"
        path.write_text(content)
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_missing_explicit_file(self, tmp_path):
        """priority_p1: A named file that does not exist is an error."""
        with pytest.raises(ConfigError):
            load_config(str(tmp_path / "absent.yml"))

    def test_bad_json(self, tmp_path):
        """priority_p1: Invalid JSON is reported with the file name."""
        path = tmp_path / ".clar2wasm.json"
        path.write_text("{mode: debug")
        with pytest.raises(ConfigError, match="cannot parse"):
            load_config(str(path))


class TestCFG003:
    """CFG-003: Derived settings.
    Priority: P1
    """

    def test_partial_limits(self):
        """priority_p1: Unset dimensions keep the block limit."""
        limits = Clar2WasmConfig(cost_limits={"runtime": 10}).limits()
        assert limits.runtime == 10
        assert limits.write_count == BLOCK_LIMITS.write_count

    def test_output_next_to_source(self):
        """priority_p1: Without output_dir the module lands beside its source."""
        config = Clar2WasmConfig()
        assert config.output_path(os.path.join("contracts", "token.clar")) == \
            os.path.join("contracts", "token.wasm")

    def test_output_dir(self):
        """priority_p1: output_dir collects every module in one place."""
        config = Clar2WasmConfig(output_dir="build")
        assert config.output_path(os.path.join("contracts", "token.clar")) == \
            os.path.join("build", "token.wasm")
