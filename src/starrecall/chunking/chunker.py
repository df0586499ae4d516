"""Repo chunker: metadata header + normalized README, adaptive overlapping windows.

Window size and overlap are measured in characters and chosen by the length
of the combined text: shorter documents get larger windows.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from starrecall.db.checkpoint import now_ms
from starrecall.db.models import SOURCE_METADATA, SOURCE_METADATA_README, Chunk, Repo

MAX_README_LENGTH = 100_000


@dataclass(frozen=True)
class WindowConfig:
    size: int
    overlap: int

    def validate(self) -> None:
        if self.size <= 0 or self.overlap < 0 or self.overlap >= self.size:
            raise ValueError(
                f"Invalid chunk window configuration: size={self.size}, overlap={self.overlap}"
            )


# (max combined length, window); the last tier has no upper bound.
WINDOW_TIERS: tuple[tuple[int | None, WindowConfig], ...] = (
    (3_000, WindowConfig(size=900, overlap=140)),
    (15_000, WindowConfig(size=760, overlap=110)),
    (None, WindowConfig(size=640, overlap=90)),
)

_SUBSTITUTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"<[^>]*>"), " "),                       # html tags
    (re.compile(r"&[a-zA-Z0-9#]+;"), " "),               # html entities
    (re.compile(r"!\[[^\]]*\]\([^)]*\)"), ""),           # images
    (re.compile(r"\[([^\]]*)\]\([^)]*\)"), r"\1"),       # links -> text
    (re.compile(r"^#{1,6}\s+", re.M), ""),               # heading markers
    (re.compile(r"(\*{1,3}|_{1,3})(.*?)\1"), r"\2"),     # emphasis
    (re.compile(r"```[\s\S]*?```"), " "),                # code fences
    (re.compile(r"`([^`]*)`"), r"\1"),                   # inline code
    (re.compile(r"^[-*_]{3,}\s*$", re.M), ""),           # horizontal rules
    (re.compile(r"^>\s?", re.M), ""),                    # blockquotes
    (re.compile(r"^\s*[-*+]\s+", re.M), ""),             # bullet markers
    (re.compile(r"^\s*\d+\.\s+", re.M), ""),             # numbered markers
    (re.compile(r"\s+"), " "),
)


def normalize_text(raw: str) -> str:
    """Reduce markdown/HTML to plain prose for embedding.

    Removes tags, entities, images, code fences, heading/list/quote/rule
    markers, emphasis and inline-code backticks; keeps link text; collapses
    whitespace and trims.
    """
    text = raw
    for pattern, replacement in _SUBSTITUTIONS:
        text = pattern.sub(replacement, text)
    return text.strip()


def resolve_window(text_length: int) -> WindowConfig:
    for limit, window in WINDOW_TIERS:
        if limit is None or text_length <= limit:
            return window
    return WINDOW_TIERS[-1][1]


def split_fixed_window(text: str, window: WindowConfig) -> list[str]:
    """Split *text* into windows of ``window.size`` sharing ``window.overlap`` chars.

    Always returns at least one window; empty text yields ``[""]``.

    Raises:
        ValueError: If the window configuration is invalid.
    """
    window.validate()
    if not text:
        return [""]
    step = window.size - window.overlap
    return [text[pos : pos + window.size] for pos in range(0, len(text), step)]


def make_chunk_id(repo_id: int, index: int) -> str:
    return f"{repo_id}:{index}"


class RepoChunker:
    """Turn a :class:`Repo` into ordered, overlapping :class:`Chunk` windows.

    Args:
        max_readme_length: Normalized README text beyond this many characters
            is dropped.
        clock: Millisecond clock used for ``created_at``.
    """

    def __init__(
        self,
        max_readme_length: int = MAX_README_LENGTH,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if max_readme_length < 0:
            raise ValueError("max_readme_length must be >= 0")
        self.max_readme_length = max_readme_length
        self._clock = clock

    @staticmethod
    def build_header(repo: Repo) -> str:
        parts = [f"Repository: {repo.full_name}"]
        if repo.description:
            parts.append(f"Description: {repo.description}")
        if repo.language:
            parts.append(f"Language: {repo.language}")
        if repo.topics:
            parts.append(f"Topics: {', '.join(repo.topics)}")
        return "\n".join(parts)

    def combined_text(self, repo: Repo) -> str:
        header = self.build_header(repo)
        body = normalize_text(repo.readme_text)[: self.max_readme_length] if repo.readme_text else ""
        return f"{header}\n\n{body}" if body else header

    def chunk(self, repo: Repo) -> list[Chunk]:
        """Chunk one repo. Ids are ``{repo_id}:{index}``, so re-chunking is idempotent."""
        combined = self.combined_text(repo)
        windows = split_fixed_window(combined, resolve_window(len(combined)))
        source = SOURCE_METADATA_README if repo.readme_text else SOURCE_METADATA
        created_at = self._clock()
        return [
            Chunk(
                id=make_chunk_id(repo.id, index),
                repo_id=repo.id,
                text=text,
                source=source,
                created_at=created_at,
            )
            for index, text in enumerate(windows)
        ]


def chunk_repos(repos: Iterable[Repo], chunker: RepoChunker | None = None) -> list[Chunk]:
    """Chunk every repo and return one flat list, repo order preserved."""
    chunker = chunker or RepoChunker()
    return [chunk for repo in repos for chunk in chunker.chunk(repo)]
