"""Remote snapshot of a starred repository as returned by the GitHub API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from starrecall.db.models import Repo


@dataclass
class StarredRepo:
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

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StarredRepo:
        """Build from one element of ``GET /user/starred``.

        Raises:
            ValueError: If a required field is missing.
        """
        try:
            return cls(
                id=int(payload["id"]),
                full_name=str(payload["full_name"]),
                name=str(payload.get("name") or payload["full_name"].split("/")[-1]),
                html_url=str(payload.get("html_url") or f"https://github.com/{payload['full_name']}"),
                updated_at=str(payload.get("updated_at") or ""),
                description=payload.get("description"),
                topics=[str(t) for t in payload.get("topics") or []],
                language=payload.get("language"),
                stars=int(payload.get("stargazers_count") or 0),
                forks=int(payload.get("forks_count") or 0),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"malformed starred repo payload: {exc}") from exc

    def to_repo(
        self,
        readme_url: str | None,
        readme_text: str | None,
        checksum: str,
    ) -> Repo:
        return Repo(
            id=self.id,
            full_name=self.full_name,
            name=self.name,
            html_url=self.html_url,
            updated_at=self.updated_at,
            description=self.description,
            topics=list(self.topics),
            language=self.language,
            stars=self.stars,
            forks=self.forks,
            readme_url=readme_url,
            readme_text=readme_text,
            checksum=checksum,
        )


@dataclass
class Readme:
    """README fetch outcome. ``text`` is None when the repo has no README."""

    repo_id: int
    url: str | None = None
    text: str | None = None

    @property
    def missing(self) -> bool:
        return self.text is None
