"""Content checksum over the checksum-relevant fields of a repo."""

from __future__ import annotations

import hashlib

from starrecall.github.models import StarredRepo


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_checksum_input(repo: StarredRepo, readme_sha256: str) -> str:
    """Newline-joined ``key:value`` lines; topics sorted and comma-joined."""
    return "\n".join(
        [
            f"id:{repo.id}",
            f"full_name:{repo.full_name}",
            f"description:{repo.description or ''}",
            f"language:{repo.language or ''}",
            f"topics:{','.join(sorted(repo.topics))}",
            f"updated_at:{repo.updated_at}",
            f"readme_sha256:{readme_sha256}",
        ]
    )


def repo_checksum(repo: StarredRepo, readme_text: str | None) -> str:
    """SHA-256 hex of the canonical input; a missing README hashes as ``""``."""
    return sha256_hex(canonical_checksum_input(repo, sha256_hex(readme_text or "")))
