"""Shared wiring for CLI commands: config, store and embedding pool."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from starrecall.cli.errors import err_config
from starrecall.config import ConfigError, StarRecallConfig, load_config
from starrecall.db.checkpoint import CheckpointPolicy
from starrecall.db.repository import IndexRepository
from starrecall.embeddings.pool import EmbeddingWorkerPool

console = Console()


def load_config_or_exit() -> StarRecallConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def open_store(cfg: StarRecallConfig, db: Path | None = None) -> IndexRepository:
    """Open the store at *db* (or the configured path) with lifecycle hooks installed."""
    store = IndexRepository.open(
        db if db is not None else cfg.storage.path,
        policy=CheckpointPolicy(
            every_embeddings=cfg.checkpoint.every_embeddings,
            every_ms=cfg.checkpoint.every_ms,
        ),
    )
    store.install_lifecycle_hooks()
    return store


def build_pool(cfg: StarRecallConfig) -> EmbeddingWorkerPool:
    e = cfg.embedding
    return EmbeddingWorkerPool(
        pool_size=e.pool_size,
        micro_batch_size=e.micro_batch_size,
        max_queue_size=e.max_queue_size,
        downshift_error_threshold=e.downshift_error_threshold,
        preferred_backend=e.preferred_backend,
        model_name=e.model,
        request_timeout_s=e.request_timeout_s,
    )
