"""starrecall chunking: README normalization and adaptive windows."""

from starrecall.chunking.chunker import (
    RepoChunker,
    WindowConfig,
    chunk_repos,
    normalize_text,
    split_fixed_window,
)

__all__ = [
    "RepoChunker",
    "WindowConfig",
    "chunk_repos",
    "normalize_text",
    "split_fixed_window",
]
