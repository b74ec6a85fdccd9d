#!/usr/bin/env python
"""
CLI for the Kraan layer controller.
"""

import asyncio
import signal
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
import structlog
import yaml
from pydantic import ValidationError

from kraan.controller import __version__
from kraan.controller.api.models import ADDONS_LAYER_KIND, AddonsLayer
from kraan.controller.apply.interfaces import LayerApplier
from kraan.controller.apply.loader import load_applier
from kraan.controller.controllers.manager import LayerController
from kraan.controller.controllers.reconciler import AddonsLayerReconciler
from kraan.controller.controllers.workqueue import RateLimitingQueue
from kraan.controller.exceptions import ClusterAPIError, DependencyCycleError, StartupError
from kraan.controller.k8s.client import KubeClient
from kraan.controller.layers.dependencies import validate_dependencies
from kraan.controller.logging import setup_logging
from kraan.controller.repos.fetch import ArtifactFetcher
from kraan.controller.repos.mapper import RepositoryMapper
from kraan.controller.repos.source_tree import SourceTree
from kraan.controller.settings import Settings, get_settings

logger = structlog.get_logger(__name__)


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    settings_factory: Callable[[], Settings]
    client_factory: Callable[[Settings], KubeClient]
    applier_loader: Callable[..., LayerApplier]
    runner: Callable[[Coroutine[Any, Any, None]], Any]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        settings_factory=get_settings,
        client_factory=KubeClient.from_settings,
        applier_loader=load_applier,
        runner=asyncio.run,
    )


def build_controller(config: Settings, client: Any, applier: LayerApplier) -> LayerController:
    """Wire the reconciler, artifact sync and work queue from settings."""
    controller_cfg = config.controller
    reconciler = AddonsLayerReconciler(
        client,
        applier,
        max_conditions=controller_cfg.max_conditions,
        root_path=config.repos_path,
    )
    mapper = RepositoryMapper(
        client,
        ArtifactFetcher(timeout=config.sync.fetch_timeout, source_host=config.source_host),
        SourceTree(config.repos_path, retain=config.sync.snapshot_retention),
    )
    return LayerController(
        client,
        reconciler,
        mapper=mapper,
        queue=RateLimitingQueue(controller_cfg.base_backoff, controller_cfg.max_backoff),
        workers=controller_cfg.max_concurrent_reconciles,
        reconcile_timeout=controller_cfg.reconcile_timeout,
        resync_period=controller_cfg.resync_period,
        repository_poll_interval=controller_cfg.repository_poll_interval,
        layer_poll_interval=controller_cfg.layer_poll_interval,
        owned_resource_paths=config.kube.owned_resources,
    )


async def serve(controller: LayerController, client: KubeClient) -> None:
    """Check cluster connectivity, then run the controller until signalled."""
    try:
        version = await client.server_version()
    except ClusterAPIError as e:
        await client.close()
        raise StartupError(f"cannot reach cluster api server: {e}") from e
    logger.info("connected to cluster", version=version)

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    if task is not None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, task.cancel)

    try:
        await controller.run()
    except asyncio.CancelledError:
        logger.info("shutdown requested")
    finally:
        await client.close()


@click.group()
def cli() -> None:
    """Kraan layer controller CLI."""
    pass


@cli.command()
@click.option("--repos-path", default=None, help="Root of the shared source tree")
@click.option("--workers", type=int, default=None, help="Concurrent reconciles")
@click.option("--executor", default=None, help="Executor entrypoint (module:attribute)")
def run(repos_path: str | None, workers: int | None, executor: str | None) -> None:
    """Run the controller."""
    deps = _get_cli_dependencies()
    config = deps.settings_factory()
    if repos_path:
        config.repos_path = repos_path
    if workers:
        config.controller.max_concurrent_reconciles = workers
    if executor:
        config.executor.entrypoint = executor

    setup_logging(config)

    try:
        client = deps.client_factory(config)
        applier = deps.applier_loader(config.executor.entrypoint, client=client, settings=config)
        controller = build_controller(config, client, applier)
        deps.runner(serve(controller, client))
    except StartupError as e:
        raise click.ClickException(str(e)) from e


def _load_layers(files: tuple[Path, ...]) -> list[AddonsLayer]:
    layers = []
    for path in files:
        try:
            documents = list(yaml.safe_load_all(path.read_text()))
        except yaml.YAMLError as e:
            raise click.ClickException(f"{path}: invalid YAML: {e}") from e
        for doc in documents:
            if not isinstance(doc, dict) or doc.get("kind") != ADDONS_LAYER_KIND:
                continue
            try:
                layers.append(AddonsLayer.model_validate(doc))
            except ValidationError as e:
                raise click.ClickException(f"{path}: invalid AddonsLayer: {e}") from e
    return layers


@cli.command("check-dependencies")
@click.argument(
    "files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
def check_dependencies(files: tuple[Path, ...]) -> None:
    """Check AddonsLayer manifests for dependency cycles and unknown dependencies."""
    layers = _load_layers(files)
    names = {layer.name for layer in layers}
    failed = False

    for layer in layers:
        try:
            validate_dependencies(layer, layers)
        except DependencyCycleError as e:
            click.echo(f"error: {layer.name}: {e}", err=True)
            failed = True
        for dep in layer.spec.depends_on:
            if dep not in names:
                click.echo(f"warning: {layer.name}: depends on unknown layer {dep}", err=True)

    if failed:
        raise SystemExit(1)
    click.echo(f"{len(layers)} layers checked, no dependency cycles found")


@cli.command()
def version() -> None:
    """Show the controller version."""
    click.echo(__version__)


if __name__ == "__main__":
    cli()
