"""starrecall configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (STARRECALL_*)
  3. Per-project starrecall.yaml  (current directory)
  4. Global ~/.starrecall/config.yaml  (no API keys or tokens)
  5. Hardcoded defaults

Credentials (GITHUB_TOKEN, provider API keys) come from the environment only.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from starrecall.db.checkpoint import DEFAULT_EVERY_EMBEDDINGS, DEFAULT_EVERY_MS
from starrecall.embeddings.backend import Backend
from starrecall.embeddings.embedder import DEFAULT_MODEL, DEFAULT_REQUEST_TIMEOUT_S
from starrecall.embeddings.pool import (
    DEFAULT_DOWNSHIFT_ERROR_THRESHOLD,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_MICRO_BATCH_SIZE,
    DEFAULT_POOL_SIZE,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".starrecall"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "starrecall.yaml"
DEFAULT_DB_PATH: Path = _GLOBAL_CONFIG_DIR / "starrecall.db"

# Fields that suggest a credential, forbidden in global config.
# Does NOT match legitimate keys like max_tokens or api_base.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["storage", "embedding", "checkpoint", "github", "generation", "logging"]
)

_LOG_LEVELS: frozenset[str] = frozenset(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StorageCfg:
    """Where the stable database file lives (starrecall.yaml: storage:)."""

    path: Path = DEFAULT_DB_PATH


@dataclass
class EmbeddingCfg:
    """Embedding pool configuration (starrecall.yaml: embedding:)."""

    model: str = DEFAULT_MODEL
    pool_size: int = DEFAULT_POOL_SIZE
    micro_batch_size: int = DEFAULT_MICRO_BATCH_SIZE
    max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE
    downshift_error_threshold: int = DEFAULT_DOWNSHIFT_ERROR_THRESHOLD
    preferred_backend: Backend = Backend.ACCELERATED
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S


@dataclass
class CheckpointCfg:
    """Embedding write checkpoint thresholds (starrecall.yaml: checkpoint:)."""

    every_embeddings: int = DEFAULT_EVERY_EMBEDDINGS
    every_ms: int = DEFAULT_EVERY_MS


@dataclass
class GitHubCfg:
    """GitHub API client settings (starrecall.yaml: github:)."""

    per_page: int = 100
    max_pages: int | None = None
    max_retries: int = 5
    readme_concurrency: int = 6


@dataclass
class GenerationCfg:
    """Answer generation configuration (starrecall.yaml: generation:)."""

    model: str = "openai/gpt-4o-mini"
    api_base: str | None = None
    max_context_snippets: int = 8
    temperature: float = 0.2


@dataclass
class LoggingCfg:
    """Local diagnostics (starrecall.yaml: logging:)."""

    level: str = "WARNING"
    file: bool = True


@dataclass
class StarRecallConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    storage: StorageCfg = field(default_factory=StorageCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    checkpoint: CheckpointCfg = field(default_factory=CheckpointCfg)
    github: GitHubCfg = field(default_factory=GitHubCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any credential-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  Credentials must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer >= 1, got {value!r}") from None
    if number < 1 or (isinstance(value, float) and not value.is_integer()):
        raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")
    return number


def _positive_float(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number > 0, got {value!r}") from None
    if number <= 0:
        raise ConfigError(f"{name} must be a number > 0, got {value!r}")
    return number


def _backend(value: Any, name: str) -> Backend:
    try:
        return Backend(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(b.value for b in Backend)
        raise ConfigError(f"{name} must be one of: {allowed}; got {value!r}") from None


def _log_level(value: Any, name: str) -> str:
    level = str(value).strip().upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"{name} must be one of: {', '.join(sorted(_LOG_LEVELS))}; got {value!r}")
    return level


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping, got {type(raw).__name__}")
    return raw


def _cfg_from_dict(data: dict[str, Any]) -> StarRecallConfig:
    """Build a *StarRecallConfig* from a merged raw YAML dict."""
    cfg = StarRecallConfig()

    if "storage" in data:
        s = _section(data, "storage")
        if s.get("path"):
            cfg.storage = StorageCfg(path=Path(str(s["path"])).expanduser())

    if "embedding" in data:
        e = _section(data, "embedding")
        d = cfg.embedding
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", d.model)),
            pool_size=_positive_int(e.get("pool_size", d.pool_size), "embedding.pool_size"),
            micro_batch_size=_positive_int(
                e.get("micro_batch_size", d.micro_batch_size), "embedding.micro_batch_size"
            ),
            max_queue_size=_positive_int(e.get("max_queue_size", d.max_queue_size), "embedding.max_queue_size"),
            downshift_error_threshold=_positive_int(
                e.get("downshift_error_threshold", d.downshift_error_threshold),
                "embedding.downshift_error_threshold",
            ),
            preferred_backend=_backend(
                e.get("preferred_backend", d.preferred_backend.value), "embedding.preferred_backend"
            ),
            request_timeout_s=_positive_float(
                e.get("request_timeout_s", d.request_timeout_s), "embedding.request_timeout_s"
            ),
        )

    if "checkpoint" in data:
        c = _section(data, "checkpoint")
        cfg.checkpoint = CheckpointCfg(
            every_embeddings=_positive_int(
                c.get("every_embeddings", cfg.checkpoint.every_embeddings), "checkpoint.every_embeddings"
            ),
            every_ms=_positive_int(c.get("every_ms", cfg.checkpoint.every_ms), "checkpoint.every_ms"),
        )

    if "github" in data:
        g = _section(data, "github")
        max_pages = g.get("max_pages", cfg.github.max_pages)
        cfg.github = GitHubCfg(
            per_page=_positive_int(g.get("per_page", cfg.github.per_page), "github.per_page"),
            max_pages=None if max_pages is None else _positive_int(max_pages, "github.max_pages"),
            max_retries=_positive_int(g.get("max_retries", cfg.github.max_retries), "github.max_retries"),
            readme_concurrency=_positive_int(
                g.get("readme_concurrency", cfg.github.readme_concurrency), "github.readme_concurrency"
            ),
        )
        if cfg.github.per_page > 100:
            raise ConfigError(f"github.per_page must be <= 100, got {cfg.github.per_page}")

    if "generation" in data:
        g = _section(data, "generation")
        cfg.generation = GenerationCfg(
            model=str(g.get("model", cfg.generation.model)),
            api_base=g.get("api_base") or cfg.generation.api_base,
            max_context_snippets=_positive_int(
                g.get("max_context_snippets", cfg.generation.max_context_snippets),
                "generation.max_context_snippets",
            ),
            temperature=float(g.get("temperature", cfg.generation.temperature)),
        )

    if "logging" in data:
        lg = _section(data, "logging")
        cfg.logging = LoggingCfg(
            level=_log_level(lg.get("level", cfg.logging.level), "logging.level"),
            file=bool(lg.get("file", cfg.logging.file)),
        )

    return cfg


def _apply_env_overrides(cfg: StarRecallConfig) -> StarRecallConfig:
    """Apply STARRECALL_* environment variable overrides."""
    env = os.environ
    if model := env.get("STARRECALL_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := env.get("STARRECALL_GENERATION_MODEL"):
        cfg.generation.model = model
    if value := env.get("STARRECALL_POOL_SIZE"):
        cfg.embedding.pool_size = _positive_int(value, "STARRECALL_POOL_SIZE")
    if value := env.get("STARRECALL_PREFERRED_BACKEND"):
        cfg.embedding.preferred_backend = _backend(value, "STARRECALL_PREFERRED_BACKEND")
    if value := env.get("STARRECALL_CHECKPOINT_EVERY_EMBEDDINGS"):
        cfg.checkpoint.every_embeddings = _positive_int(value, "STARRECALL_CHECKPOINT_EVERY_EMBEDDINGS")
    if value := env.get("STARRECALL_CHECKPOINT_EVERY_MS"):
        cfg.checkpoint.every_ms = _positive_int(value, "STARRECALL_CHECKPOINT_EVERY_MS")
    if value := env.get("STARRECALL_LOG_LEVEL"):
        cfg.logging.level = _log_level(value, "STARRECALL_LOG_LEVEL")
    if value := env.get("STARRECALL_DB_PATH"):
        cfg.storage.path = Path(value).expanduser()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> StarRecallConfig:
    """Load and return a merged *StarRecallConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *starrecall.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *StarRecallConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains credential-like fields, or a
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    return _apply_env_overrides(cfg)


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.starrecall/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# starrecall global configuration.\n"
            "# NEVER store tokens or API keys here — use environment variables:\n"
            "#   export GITHUB_TOKEN=ghp_...\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            f"  model: {DEFAULT_MODEL}\n"
            "  preferred_backend: accelerated\n"
            "\n"
            "generation:\n"
            "  model: openai/gpt-4o-mini\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
