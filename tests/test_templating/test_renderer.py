"""
Tests for the configuration templater
"""

import logging
import stat

import pytest

from indexer_toolkit.core.exceptions import ConfigRenderError
from indexer_toolkit.stack.catalog import generate_graph_node_config
from indexer_toolkit.stack.models import ConfigTemplate, StackDefinition
from indexer_toolkit.templating.renderer import (
    PLACEHOLDER,
    ConfigTemplater,
    find_unused_variables,
    placeholder_tokens,
    render,
)
from indexer_toolkit.templating.resolver import StaticHostResolver

NODE_VARIABLES = {
    "postgres_user": "graph-node",
    "postgres_password": "let-me-in",
    "postgres_db": "graph-node",
    "chain_name": "anvil",
    "host_address": "172.17.0.1",
    "chain_rpc_port": 8545,
}


@pytest.fixture
def node_template():
    return ConfigTemplate(name="graph-node", target="graph-node/config.toml", text=generate_graph_node_config())


class TestRender:
    """Tests for render()"""

    def test_chain_endpoint_substituted(self, node_template):
        """Test that the host address lands in the provider URL"""
        content = render(node_template, NODE_VARIABLES).decode("utf-8")

        assert 'url = "http://172.17.0.1:8545"' in content
        assert PLACEHOLDER.search(content) is None

    def test_deterministic(self, node_template):
        """Test that identical inputs give identical bytes"""
        assert render(node_template, NODE_VARIABLES) == render(node_template, dict(NODE_VARIABLES))

    def test_missing_variable(self, node_template):
        """Test that a missing variable names every gap"""
        variables = {k: v for k, v in NODE_VARIABLES.items() if k not in ("host_address", "chain_name")}

        with pytest.raises(ConfigRenderError) as exc_info:
            render(node_template, variables)

        assert exc_info.value.missing == ["chain_name", "host_address"]
        assert exc_info.value.template == "graph-node"

    def test_none_counts_as_missing(self):
        """Test that a None value is not rendered as the string None"""
        template = ConfigTemplate(name="t", target="t", text="host={{ host_address }}")

        with pytest.raises(ConfigRenderError):
            render(template, {"host_address": None})

    def test_unused_variable_warns(self, caplog):
        """Test that extra variables are accepted with a warning"""
        template = ConfigTemplate(name="t", target="t", text="port={{port}}")

        with caplog.at_level(logging.WARNING, logger="indexer_toolkit.templating.renderer"):
            assert render(template, {"port": 5432, "verbose": True}) == b"port=5432"

        assert "verbose" in caplog.text

    def test_placeholder_mapping(self):
        """Test that tokens can be mapped to differently named variables"""
        template = ConfigTemplate(
            name="t",
            target="t",
            text="rpc={{ rpc_host }}:{{port}} again={{rpc_host}}",
            placeholders={"rpc_host": "host_address"},
        )

        assert placeholder_tokens(template) == ["rpc_host", "port"]
        assert render(template, {"host_address": "10.0.0.5", "port": 8545}) == b"rpc=10.0.0.5:8545 again=10.0.0.5"
        assert find_unused_variables(template, {"host_address": "x", "port": 1, "extra": 2}) == ["extra"]

    def test_non_placeholder_braces_untouched(self):
        """Test that single braces and empty double braces are left alone"""
        template = ConfigTemplate(name="t", target="t", text="{a} {{ }} {{x}}")
        assert render(template, {"x": 1}) == b"{a} {{ }} 1"


class TestConfigTemplater:
    """Tests for ConfigTemplater"""

    def _definition(self, node_template, **variables):
        return StackDefinition(
            name="dev",
            services=[],
            templates=[node_template],
            variables={**{k: v for k, v in NODE_VARIABLES.items() if k != "host_address"}, **variables},
            payloads={"postgres/init.sql": b"CREATE EXTENSION pg_trgm;\n"},
        )

    def test_render_all(self, node_template, tmp_path):
        """Test that templates and payloads are written read-only"""
        templater = ConfigTemplater(StaticHostResolver("192.168.1.20"))

        artifacts = templater.render_all(self._definition(node_template), tmp_path / "artifacts")

        config = artifacts.files["graph-node/config.toml"]
        payload = artifacts.files["postgres/init.sql"]
        assert "http://192.168.1.20:8545" in config.read_text()
        assert payload.read_bytes() == b"CREATE EXTENSION pg_trgm;\n"
        assert artifacts.host_address == "192.168.1.20"
        assert stat.S_IMODE(config.stat().st_mode) == 0o444

    def test_explicit_host_wins(self, node_template, tmp_path):
        """Test that a host_address variable overrides the resolver"""
        templater = ConfigTemplater(StaticHostResolver("192.168.1.20"))

        artifacts = templater.render_all(self._definition(node_template, host_address="10.1.1.1"), tmp_path)

        assert artifacts.host_address == "10.1.1.1"

    def test_rerender_replaces_read_only_files(self, node_template, tmp_path):
        """Test that a later attempt can overwrite the previous artifacts"""
        definition = self._definition(node_template)
        first = ConfigTemplater(StaticHostResolver("10.0.0.1")).render_all(definition, tmp_path)
        second = ConfigTemplater(StaticHostResolver("10.0.0.2")).render_all(definition, tmp_path)

        assert first.files == second.files
        assert "10.0.0.2" in second.files["graph-node/config.toml"].read_text()

    def test_same_inputs_same_bytes(self, node_template, tmp_path):
        """Test that rendering twice gives byte-identical artifacts"""
        templater = ConfigTemplater(StaticHostResolver("10.0.0.1"))
        definition = self._definition(node_template)

        first = templater.render_all(definition, tmp_path / "a").files["graph-node/config.toml"].read_bytes()
        second = templater.render_all(definition, tmp_path / "b").files["graph-node/config.toml"].read_bytes()

        assert first == second

    def test_path_escape_rejected(self, tmp_path):
        """Test that targets cannot leave the artifact directory"""
        definition = StackDefinition(name="dev", services=[], payloads={"../outside.sql": b"x"})

        with pytest.raises(ConfigRenderError, match="escapes"):
            ConfigTemplater(StaticHostResolver("10.0.0.1")).render_all(definition, tmp_path / "artifacts")

        assert not (tmp_path / "outside.sql").exists()

    def test_unreferenced_variables_reported(self, node_template, tmp_path, caplog):
        """Test that stack variables no template uses are reported"""
        templater = ConfigTemplater(StaticHostResolver("10.0.0.1"))

        with caplog.at_level(logging.WARNING):
            artifacts = templater.render_all(self._definition(node_template, ethereum_network="mainnet"), tmp_path)

        assert artifacts.unused_variables == ["ethereum_network"]
        assert "ethereum_network" in caplog.text

    def test_missing_variable_writes_nothing(self, node_template, tmp_path):
        """Test that a render failure leaves no partial artifacts"""
        definition = self._definition(node_template)
        del definition.variables["postgres_password"]

        with pytest.raises(ConfigRenderError):
            ConfigTemplater(StaticHostResolver("10.0.0.1")).render_all(definition, tmp_path / "artifacts")

        assert not (tmp_path / "artifacts").exists()
