"""
Command line interface for the content sync bridge.
"""

import asyncio
import importlib
import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import click

from . import __version__
from .service import SyncService
from .store.base import ContentStore
from .utils.config import load_config
from .utils.errors import ConfigurationError, ContentSyncError
from .utils.logging import get_logger, setup_logging


logger = get_logger("content-sync.cli")


def load_store(spec: str) -> ContentStore:
    """Build a content store from a ``module:attr`` factory reference."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Store must be given as module:attr, got {spec!r}")

    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load content store {spec}: {e}") from e

    store = factory() if callable(factory) and not isinstance(factory, ContentStore) else factory
    if not isinstance(store, ContentStore):
        raise ConfigurationError(f"{spec} did not produce a ContentStore")
    return store


@click.group()
@click.version_option(__version__, prog_name="content-sync")
def main():
    """Content sync bridge between the content store and the message broker."""


@main.command()
@click.option("--config", "config_paths", multiple=True, type=click.Path(path_type=Path),
              help="Configuration file (JSON, YAML, TOML or .env); repeatable")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.option("--store", "store_spec", default=None,
              help="Content store factory as module:attr (default: in-memory store)")
def run(config_paths: Tuple[Path, ...], log_level: Optional[str], store_spec: Optional[str]):
    """Start the sync service and serve until interrupted."""
    try:
        extra = {"logging": {"level": log_level}} if log_level else None
        config = load_config(list(config_paths), extra_config=extra)
        setup_logging(
            config.app_name,
            log_level=config.logging.level,
            log_dir=config.logging.directory,
            enable_json=config.logging.json_output,
            enable_sentry=config.logging.enable_sentry,
            sentry_dsn=config.logging.sentry_dsn,
        )
        store = load_store(store_spec) if store_spec else None
        service = SyncService(config, store=store)
    except ContentSyncError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("received_interrupt_signal")
    except ContentSyncError as e:
        logger.error("sync_service_failed", error=e.to_dict())
        sys.exit(1)


@main.command("config")
@click.option("--config", "config_paths", multiple=True, type=click.Path(path_type=Path),
              help="Configuration file (JSON, YAML, TOML or .env); repeatable")
@click.option("--show-secrets", is_flag=True, help="Do not mask the broker password")
def show_config(config_paths: Tuple[Path, ...], show_secrets: bool):
    """Print the resolved configuration as JSON."""
    # Keep stdout clean for the JSON document
    setup_logging(log_level="WARNING")
    try:
        config = load_config(list(config_paths))
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    data = config.model_dump(mode="json")
    if not show_secrets:
        data["broker"]["password"] = "****"
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    main()
