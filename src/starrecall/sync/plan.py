"""Sync planner: decide which repos to remove and which to (re)process.

Pure functions over two snapshots; nothing here touches the network or
the database.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from starrecall.db.models import RepoSyncState
from starrecall.github.models import StarredRepo


@dataclass
class SyncPlan:
    removed_ids: list[int] = field(default_factory=list)
    candidate_ids: list[int] = field(default_factory=list)


def topics_equal(a: Sequence[str], b: Sequence[str]) -> bool:
    """Order-independent multiset comparison of topic lists."""
    return len(a) == len(b) and sorted(a) == sorted(b)


def metadata_changed(local: RepoSyncState, remote: StarredRepo) -> bool:
    return (
        local.full_name != remote.full_name
        or local.description != remote.description
        or local.language != remote.language
        or local.updated_at != remote.updated_at
        or not topics_equal(local.topics, remote.topics)
    )


def build_sync_plan(local: Sequence[RepoSyncState], remote: Sequence[StarredRepo]) -> SyncPlan:
    """Compare the stored snapshot with the remote one.

    ``removed_ids`` keeps local order; ``candidate_ids`` keeps remote order and
    lists repos that are new, have no stored checksum, or whose metadata
    changed. Callers must de-duplicate ids first.
    """
    local_by_id = {repo.id: repo for repo in local}
    remote_ids = {repo.id for repo in remote}

    removed = [repo.id for repo in local if repo.id not in remote_ids]
    candidates = []
    for repo in remote:
        state = local_by_id.get(repo.id)
        if state is None or not state.checksum or metadata_changed(state, repo):
            candidates.append(repo.id)
    return SyncPlan(removed_ids=removed, candidate_ids=candidates)
