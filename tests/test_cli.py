"""
Tests for CLI commands.
"""

from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest
from click.testing import CliRunner
from conftest import FakeApplier

from kraan.controller import __version__
from kraan.controller.cli import CLIDependencies, build_controller, cli, serve
from kraan.controller.controllers.manager import LayerController
from kraan.controller.exceptions import ClusterAPIError, StartupError
from kraan.controller.settings import Settings

LAYERS_YAML = """\
apiVersion: kraan.io/v1alpha1
kind: AddonsLayer
metadata:
  name: bootstrap
spec:
  source:
    nameSpace: gitops-system
    name: addons-config
    path: ./addons/bootstrap
  version: 0.1.01
---
apiVersion: kraan.io/v1alpha1
kind: AddonsLayer
metadata:
  name: apps
spec:
  source:
    nameSpace: gitops-system
    name: addons-config
    path: ./addons/apps
  version: 0.1.01
  dependsOn:
    - bootstrap
    - mgmt
---
apiVersion: v1
kind: Namespace
metadata:
  name: gitops-system
"""

CYCLE_YAML = """\
apiVersion: kraan.io/v1alpha1
kind: AddonsLayer
metadata:
  name: a
spec:
  source: {nameSpace: ns, name: repo, path: ./a}
  dependsOn: [b]
---
apiVersion: kraan.io/v1alpha1
kind: AddonsLayer
metadata:
  name: b
spec:
  source: {nameSpace: ns, name: repo, path: ./b}
  dependsOn: [a]
"""


def _close_coroutine(coro) -> None:
    coro.close()


def build_cli_dependencies(**overrides) -> CLIDependencies:
    """Construct a CLI dependency bundle for testing."""
    config = Settings(executor={"entrypoint": "example.applier:Applier"})
    defaults = {
        "settings_factory": lambda: config,
        "client_factory": Mock(return_value=MagicMock()),
        "applier_loader": Mock(return_value=FakeApplier()),
        "runner": Mock(side_effect=_close_coroutine),
    }
    defaults.update(overrides)
    return CLIDependencies(**defaults)


@pytest.mark.unit
class TestCLICommands:
    @pytest.fixture
    def runner(self):
        return CliRunner()

    def test_cli_group_help(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "Kraan layer controller CLI" in result.output
        for command in ("run", "check-dependencies", "version"):
            assert command in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["version"])

        assert result.exit_code == 0
        assert result.output.strip() == __version__

    @patch("kraan.controller.cli.setup_logging")
    @patch("kraan.controller.cli._get_cli_dependencies")
    def test_run_wires_controller(self, mock_get_deps, mock_logging, runner):
        deps = build_cli_dependencies()
        mock_get_deps.return_value = deps

        result = runner.invoke(cli, ["run", "--workers", "8", "--repos-path", "/data/repos"])

        assert result.exit_code == 0, result.output
        config = deps.settings_factory()
        assert config.controller.max_concurrent_reconciles == 8
        assert config.repos_path == "/data/repos"
        client = deps.client_factory.return_value
        deps.applier_loader.assert_called_once_with(
            "example.applier:Applier", client=client, settings=config
        )
        deps.runner.assert_called_once()
        mock_logging.assert_called_once_with(config)

    @patch("kraan.controller.cli.setup_logging")
    @patch("kraan.controller.cli._get_cli_dependencies")
    def test_run_startup_error_exits_nonzero(self, mock_get_deps, mock_logging, runner):
        deps = build_cli_dependencies(
            applier_loader=Mock(side_effect=StartupError("no executor configured"))
        )
        mock_get_deps.return_value = deps

        result = runner.invoke(cli, ["run"])

        assert result.exit_code == 1
        assert "no executor configured" in result.output
        deps.runner.assert_not_called()

    def test_check_dependencies_ok(self, runner, tmp_path):
        manifest = tmp_path / "layers.yaml"
        manifest.write_text(LAYERS_YAML)

        result = runner.invoke(cli, ["check-dependencies", str(manifest)])

        assert result.exit_code == 0
        assert "2 layers checked" in result.output
        assert "unknown layer mgmt" in result.output

    def test_check_dependencies_cycle(self, runner, tmp_path):
        manifest = tmp_path / "layers.yaml"
        manifest.write_text(CYCLE_YAML)

        result = runner.invoke(cli, ["check-dependencies", str(manifest)])

        assert result.exit_code == 1
        assert "dependency cycle: a -> b -> a" in result.output

    def test_check_dependencies_invalid_yaml(self, runner, tmp_path):
        manifest = tmp_path / "layers.yaml"
        manifest.write_text("kind: [unterminated\n")

        result = runner.invoke(cli, ["check-dependencies", str(manifest)])

        assert result.exit_code == 1
        assert "invalid YAML" in result.output


@pytest.mark.unit
def test_build_controller_uses_settings():
    config = Settings(
        repos_path="/data/repos/",
        controller={
            "max_concurrent_reconciles": 2,
            "resync_period": 120,
            "layer_poll_interval": 5,
        },
    )

    controller = build_controller(config, MagicMock(), FakeApplier())

    assert isinstance(controller, LayerController)
    assert controller.workers == 2
    assert controller.resync_period == 120
    assert controller.layer_poll_interval == 5
    assert controller.owned_resource_paths == [
        "/apis/helm.toolkit.fluxcd.io/v2beta1/helmreleases"
    ]
    assert controller.reconciler.root_path == "/data/repos"
    assert controller.mapper.source_tree.root.as_posix() == "/data/repos"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_serve_requires_reachable_cluster():
    client = MagicMock()
    client.server_version = AsyncMock(side_effect=ClusterAPIError("connection refused"))
    client.close = AsyncMock()
    controller = MagicMock()
    controller.run = AsyncMock()

    with pytest.raises(StartupError, match="cannot reach cluster"):
        await serve(controller, client)

    client.close.assert_awaited_once()
    controller.run.assert_not_awaited()
