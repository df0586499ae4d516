"""Domain models for the starrecall persistence layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Literal

import numpy as np

ChatRole = Literal["user", "assistant", "system"]

CHAT_ROLES: tuple[str, ...] = ("user", "assistant", "system")

SOURCE_METADATA = "metadata"
SOURCE_METADATA_README = "metadata+readme"


@dataclass
class Repo:
    id: int
    full_name: str
    name: str
    html_url: str
    updated_at: str
    description: str | None = None
    topics: list[str] = field(default_factory=list)
    language: str | None = None
    stars: int = 0
    forks: int = 0
    readme_url: str | None = None
    readme_text: str | None = None
    checksum: str | None = None
    last_synced_at: int = 0

    @property
    def topics_json(self) -> str:
        return json.dumps(self.topics)


@dataclass
class RepoSyncState:
    """The checksum-relevant slice of a stored repo, as seen by the sync planner."""

    id: int
    full_name: str
    updated_at: str
    description: str | None = None
    topics: list[str] = field(default_factory=list)
    language: str | None = None
    checksum: str | None = None


@dataclass
class Chunk:
    id: str
    repo_id: int
    text: str
    source: str = SOURCE_METADATA
    created_at: int = 0

    @property
    def chunk_id(self) -> str:
        return self.id


@dataclass
class Embedding:
    chunk_id: str
    model: str
    vector: np.ndarray | list[float]
    created_at: int = 0
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"emb:{self.chunk_id}"

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass
class ChatSession:
    id: str
    query: str = ""
    created_at: int = 0
    updated_at: int = 0


@dataclass
class ChatMessage:
    id: str
    session_id: str
    role: ChatRole
    content: str
    sequence: int | None = None  # allocated as max + 1 when None
    created_at: int = 0


@dataclass
class SearchResult:
    """A chunk hydrated with its repo fields, ranked by cosine score."""

    chunk_id: str
    repo_id: int
    score: float
    text: str
    repo_name: str
    repo_full_name: str
    repo_description: str | None
    repo_url: str
    language: str | None
    topics: list[str]
    updated_at: str
