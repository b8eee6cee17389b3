"""
Tests for the command-line interface

The service runtime is replaced by the in-memory FakeRuntime; everything
else (loading, rendering, sequencing, validation) runs for real.
"""

import json

import pytest
from click.testing import CliRunner

from indexer_toolkit import cli
from indexer_toolkit.cli import EXIT_ERROR, EXIT_EXHAUSTED, EXIT_OK, EXIT_STRUCTURAL, main
from indexer_toolkit.core.exceptions import RuntimeCommandError

STACK_YAML = """
name: cli-stack
variables:
  db_name: graph
templates:
  - target: node/config.toml
    text: |
      db = "{{ db_name }}"
      rpc = "http://{{ host_address }}:8545"
payloads:
  - target: store/init.sql
    content: "CREATE EXTENSION IF NOT EXISTS pg_trgm;"
services:
  store:
    image: postgres:14
    probe: {kind: running}
    state: ["volume:cli-store-data"]
    attributes: {kind: exec, command: "show {query}"}
  node:
    image: graphprotocol/graph-node:v0.35.1
    depends_on: [store]
    probe: {kind: running}
rules:
  - target: store
    query: server_encoding
    expected: UTF8
"""

CYCLE_YAML = """
name: cycle
services:
  a: {image: a, depends_on: [b], probe: {kind: running}}
  b: {image: b, depends_on: [a], probe: {kind: running}}
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def stack_dir(tmp_path):
    directory = tmp_path / "stack"
    directory.mkdir()
    (directory / "stack.yaml").write_text(STACK_YAML)
    return directory


@pytest.fixture
def runtime(monkeypatch, fake_runtime, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "create_runtime", lambda settings: fake_runtime)
    fake_runtime.exec_handler = lambda name, argv: "UTF8\n"
    return fake_runtime


def _up(runner, stack_dir, tmp_path, *extra):
    return runner.invoke(
        main,
        [
            "--log-level",
            "CRITICAL",
            "up",
            "--config-dir",
            str(stack_dir),
            "--workdir",
            str(tmp_path / "work"),
            "--host-address",
            "127.0.0.1",
            *extra,
        ],
    )


class TestUp:
    """Tests for the up command"""

    def test_healthy_stack(self, runner, stack_dir, runtime, tmp_path):
        """Test that a healthy, valid stack exits 0"""
        result = _up(runner, stack_dir, tmp_path)

        assert result.exit_code == EXIT_OK, result.output
        assert runtime.started == ["store", "node"]
        assert "cli-stack" in result.output
        config = tmp_path / "work" / "artifacts" / "node" / "config.toml"
        assert 'rpc = "http://127.0.0.1:8545"' in config.read_text()

    def test_json_output(self, runner, stack_dir, runtime, tmp_path):
        """Test the machine readable result"""
        result = _up(runner, stack_dir, tmp_path, "--json")

        assert result.exit_code == EXIT_OK, result.output
        payload = json.loads(result.stdout)
        assert payload["success"] is True
        assert payload["attempts"] == 1
        assert payload["start_order"] == ["store", "node"]
        assert payload["services"]["node"]["state"] == "healthy"

    def test_exhausted(self, runner, stack_dir, runtime, tmp_path):
        """Test that a rule that never holds exits with the exhausted code"""
        runtime.exec_handler = lambda name, argv: "SQL_ASCII"

        result = _up(runner, stack_dir, tmp_path, "--max-attempts", "2", "--json")

        assert result.exit_code == EXIT_EXHAUSTED
        payload = json.loads(result.stdout)
        assert payload["success"] is False
        assert payload["attempts"] == 2
        assert len(payload["failures"]) == 2
        assert runtime.removed_volumes == ["cli-store-data"]

    def test_recovery_error_reported(self, runner, stack_dir, runtime, tmp_path):
        """Test that a state reset that fails exits with the error code and prints the cause"""
        runtime.exec_handler = lambda name, argv: "SQL_ASCII"

        def busy_volume(name):
            raise RuntimeCommandError(f"volume {name} is in use")

        runtime.remove_volume = busy_volume

        result = _up(runner, stack_dir, tmp_path, "--max-attempts", "3")

        assert result.exit_code == EXIT_ERROR
        assert "volume cli-store-data is in use" in result.output
        assert runtime.started.count("store") == 1

    def test_cycle_is_structural(self, runner, runtime, tmp_path):
        """Test that a dependency cycle exits with the structural code and starts nothing"""
        stack_dir = tmp_path / "cycle"
        stack_dir.mkdir()
        (stack_dir / "stack.yaml").write_text(CYCLE_YAML)

        result = _up(runner, stack_dir, tmp_path)

        assert result.exit_code == EXIT_STRUCTURAL
        assert "Dependency cycle" in result.output
        assert runtime.started == []

    def test_missing_stack_file(self, runner, runtime, tmp_path):
        """Test that a missing stack.yaml is structural"""
        result = _up(runner, tmp_path / "nowhere", tmp_path)

        assert result.exit_code == EXIT_STRUCTURAL

    def test_invalid_max_attempts(self, runner, stack_dir, runtime, tmp_path):
        """Test that click rejects a zero attempt cap"""
        result = _up(runner, stack_dir, tmp_path, "--max-attempts", "0")

        assert result.exit_code != EXIT_OK
        assert runtime.started == []


class TestOtherCommands:
    """Tests for render, plan, down and init"""

    def test_render(self, runner, stack_dir, runtime, tmp_path):
        """Test rendering without starting services"""
        out = tmp_path / "rendered"

        result = runner.invoke(
            main,
            ["render", "--config-dir", str(stack_dir), "--out", str(out), "--host-address", "10.9.8.7"],
        )

        assert result.exit_code == EXIT_OK, result.output
        assert "10.9.8.7" in (out / "node" / "config.toml").read_text()
        assert (out / "store" / "init.sql").exists()
        assert runtime.started == []

    def test_plan(self, runner, stack_dir, runtime):
        """Test the wave table"""
        result = runner.invoke(main, ["plan", "--config-dir", str(stack_dir)])

        assert result.exit_code == EXIT_OK, result.output
        assert "store" in result.output
        assert "node" in result.output

    def test_down(self, runner, stack_dir, runtime, tmp_path):
        """Test that down stops in reverse order and can drop volumes"""
        result = runner.invoke(
            main,
            ["down", "--config-dir", str(stack_dir), "--workdir", str(tmp_path / "work"), "--volumes"],
        )

        assert result.exit_code == EXIT_OK, result.output
        assert runtime.stopped == ["node", "store"]
        assert runtime.removed_volumes == ["cli-store-data"]

    def test_init(self, runner, tmp_path, monkeypatch):
        """Test that init writes a loadable default stack and refuses to overwrite it"""
        monkeypatch.chdir(tmp_path)
        target = tmp_path / "new-stack"

        first = runner.invoke(main, ["init", str(target), "--stack-name", "demo"])
        second = runner.invoke(main, ["init", str(target)])
        plan = runner.invoke(main, ["plan", "--config-dir", str(target)])

        assert first.exit_code == EXIT_OK, first.output
        assert (target / "stack.yaml").exists()
        assert second.exit_code == EXIT_STRUCTURAL
        assert plan.exit_code == EXIT_OK, plan.output
        assert "graph-node" in plan.output

    def test_version(self, runner):
        """Test --version"""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.3.0" in result.output
