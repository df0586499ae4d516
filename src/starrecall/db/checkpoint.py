"""Deferred export policy for embedding writes.

Embedding rows are committed to the working store immediately; exporting the
store to its stable file is batched. A flush is due once ``every_embeddings``
rows are pending or ``every_ms`` milliseconds have passed since the first
unflushed write.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

DEFAULT_EVERY_EMBEDDINGS = 256
DEFAULT_EVERY_MS = 3_000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CheckpointPolicy:
    every_embeddings: int = DEFAULT_EVERY_EMBEDDINGS
    every_ms: int = DEFAULT_EVERY_MS

    def __post_init__(self) -> None:
        if self.every_embeddings < 1:
            raise ValueError(f"every_embeddings must be >= 1, got {self.every_embeddings}")
        if self.every_ms < 1:
            raise ValueError(f"every_ms must be >= 1, got {self.every_ms}")


@dataclass(frozen=True)
class CheckpointStatus:
    last_checkpoint_at: int | None
    pending_embeddings: int
    every_embeddings: int
    every_ms: int


class CheckpointTracker:
    """Counts unflushed embedding writes and decides when to export.

    Args:
        policy: Flush thresholds.
        clock: Millisecond clock, injectable for tests.
    """

    def __init__(
        self,
        policy: CheckpointPolicy | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.policy = policy or CheckpointPolicy()
        self._clock = clock
        self._pending = 0
        self._first_pending_at: int | None = None
        self._last_checkpoint_at: int | None = None

    @property
    def pending(self) -> int:
        return self._pending

    def note_writes(self, count: int) -> None:
        if count <= 0:
            return
        if self._pending == 0:
            self._first_pending_at = self._clock()
        self._pending += count

    def should_flush(self) -> bool:
        if self._pending <= 0:
            return False
        if self._pending >= self.policy.every_embeddings:
            return True
        started = self._first_pending_at if self._first_pending_at is not None else self._clock()
        return self._clock() - started >= self.policy.every_ms

    def mark_flushed(self) -> None:
        self._pending = 0
        self._first_pending_at = None
        self._last_checkpoint_at = self._clock()

    def reset(self) -> None:
        self._pending = 0
        self._first_pending_at = None
        self._last_checkpoint_at = None

    def status(self) -> CheckpointStatus:
        return CheckpointStatus(
            last_checkpoint_at=self._last_checkpoint_at,
            pending_embeddings=self._pending,
            every_embeddings=self.policy.every_embeddings,
            every_ms=self.policy.every_ms,
        )
