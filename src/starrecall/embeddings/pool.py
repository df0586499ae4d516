"""Bounded embedding worker pool.

Input texts are split into micro-batches ("jobs"). Up to ``active_pool_size``
threads, each bound to one embedder, claim jobs from a shared cursor until
none remain, and write results into pre-sized slots so output order always
matches input order.

Repeated errors or any memory-pressure error downshift the pool to a single
worker for the rest of its life.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import numpy as np

from starrecall.embeddings.backend import Backend, RuntimeInfo
from starrecall.embeddings.embedder import (
    DEFAULT_MODEL,
    DEFAULT_REQUEST_TIMEOUT_S,
    BatchItem,
    Embedder,
    EmbeddingError,
    ProcessEmbedder,
    is_memory_pressure_error,
)
from starrecall.logging import get_logger

log = get_logger(__name__)

DEFAULT_POOL_SIZE = 2
DEFAULT_MICRO_BATCH_SIZE = 8
DEFAULT_MAX_QUEUE_SIZE = 1024
DEFAULT_DOWNSHIFT_ERROR_THRESHOLD = 3

_NOT_EXECUTED = "embedding job was not executed"


class QueueOverflowError(RuntimeError):
    """More texts were submitted than the pool accepts in one call."""


@dataclass(frozen=True)
class PoolStatus:
    configured_pool_size: int
    active_pool_size: int
    max_queue_size: int
    downshifted: bool
    downshift_reason: str | None
    error_count: int
    preferred_backend: Backend
    selected_backend: Backend | None
    fallback_reason: str | None


@dataclass(frozen=True)
class _Job:
    offset: int
    texts: list[str]


def _positive(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{name} must be an integer >= 1, got {value!r}")
    return value


class EmbeddingWorkerPool:
    """Fan micro-batches out to a bounded set of embedders.

    Args:
        pool_size: Number of embedders (and coordinator threads) to use.
        micro_batch_size: Texts per job sent to one embedder.
        max_queue_size: Largest accepted ``embed_batch`` input.
        downshift_error_threshold: Cumulative item errors that trigger the
            downshift to one worker.
        preferred_backend: Backend requested from each embedder.
        create_embedder: Factory for embedders; defaults to one
            :class:`ProcessEmbedder` per slot.

    Raises:
        ValueError: If any size option is not a positive integer.
    """

    def __init__(
        self,
        pool_size: int = DEFAULT_POOL_SIZE,
        micro_batch_size: int = DEFAULT_MICRO_BATCH_SIZE,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        downshift_error_threshold: int = DEFAULT_DOWNSHIFT_ERROR_THRESHOLD,
        preferred_backend: Backend = Backend.ACCELERATED,
        create_embedder: Callable[[], Embedder] | None = None,
        *,
        model_name: str = DEFAULT_MODEL,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> None:
        self.configured_pool_size = _positive("pool_size", pool_size)
        self.micro_batch_size = _positive("micro_batch_size", micro_batch_size)
        self.max_queue_size = _positive("max_queue_size", max_queue_size)
        self.downshift_error_threshold = _positive("downshift_error_threshold", downshift_error_threshold)
        self.preferred_backend = Backend(preferred_backend)
        self._create_embedder = create_embedder or (
            lambda: ProcessEmbedder(
                preferred_backend=self.preferred_backend,
                model_name=model_name,
                request_timeout_s=request_timeout_s,
            )
        )
        self._active_pool_size = self.configured_pool_size
        self._embedders: list[Embedder] = []
        self._error_count = 0
        self._downshift_reason: str | None = None
        self._state_lock = threading.Lock()
        self._call_lock = threading.Lock()

    @property
    def active_pool_size(self) -> int:
        return self._active_pool_size

    def _ensure_workers(self) -> None:
        while len(self._embedders) < self._active_pool_size:
            self._embedders.append(self._create_embedder())

    def _release_idle_workers(self) -> None:
        idle = self._embedders[self._active_pool_size :]
        if not idle:
            return
        del self._embedders[self._active_pool_size :]
        for embedder in idle:
            embedder.terminate()
        log.info("embeddings.workers_released", count=len(idle), active_pool_size=self._active_pool_size)

    def _record_errors(self, count: int, message: str) -> None:
        """Count *count* failed items; downshift on memory pressure or threshold."""
        with self._state_lock:
            self._error_count += count
            if not (is_memory_pressure_error(message) or self._error_count >= self.downshift_error_threshold):
                return
            if self._active_pool_size == 1 and self._downshift_reason is not None:
                return
            self._active_pool_size = 1
            if self._downshift_reason is None:
                self._downshift_reason = message
                log.warning(
                    "embeddings.pool_downshift",
                    reason=message,
                    error_count=self._error_count,
                    configured_pool_size=self.configured_pool_size,
                )

    def embed_batch(self, texts: Sequence[str]) -> list[BatchItem]:
        """Embed *texts*, returning exactly one :class:`BatchItem` per input, in order.

        Raises:
            QueueOverflowError: If more than ``max_queue_size`` texts are given.
                No work is started in that case.
        """
        if not texts:
            return []
        if len(texts) > self.max_queue_size:
            log.warning("embeddings.queue_overflow", size=len(texts), max_queue_size=self.max_queue_size)
            raise QueueOverflowError(f"embedding queue overflow: {len(texts)} > {self.max_queue_size}")

        with self._call_lock:
            self._ensure_workers()
            results: list[BatchItem] = [BatchItem(vector=None, error=_NOT_EXECUTED) for _ in texts]
            jobs = [
                _Job(offset=offset, texts=list(texts[offset : offset + self.micro_batch_size]))
                for offset in range(0, len(texts), self.micro_batch_size)
            ]
            cursor = 0
            cursor_lock = threading.Lock()

            def claim() -> _Job | None:
                nonlocal cursor
                with cursor_lock:
                    if cursor >= len(jobs):
                        return None
                    job = jobs[cursor]
                    cursor += 1
                    return job

            def run_worker(worker_index: int) -> None:
                embedder = self._embedders[worker_index]
                while True:
                    job = claim()
                    if job is None:
                        return
                    self._run_job(embedder, job, results)
                    if worker_index > 0 and self._active_pool_size == 1:
                        return

            worker_count = min(self._active_pool_size, len(jobs))
            if worker_count == 1:
                run_worker(0)
            else:
                threads = [
                    threading.Thread(target=run_worker, args=(i,), name=f"starrecall-embed-{i}", daemon=True)
                    for i in range(worker_count)
                ]
                for thread in threads:
                    thread.start()
                for thread in threads:
                    thread.join()
            self._release_idle_workers()
            return results

    def _run_job(self, embedder: Embedder, job: _Job, results: list[BatchItem]) -> None:
        try:
            items = embedder.embed_batch(job.texts)
            if len(items) != len(job.texts):
                raise EmbeddingError(
                    f"embedding batch length mismatch: expected {len(job.texts)}, got {len(items)}"
                )
        except Exception as exc:  # noqa: BLE001 - a failed job fails each of its items
            message = str(exc) or type(exc).__name__
            for i in range(len(job.texts)):
                results[job.offset + i] = BatchItem(vector=None, error=message)
            self._record_errors(len(job.texts), message)
            return

        for i, item in enumerate(items):
            if item.error is None and item.vector is None:
                item = BatchItem(vector=None, error="missing batch item result")
            results[job.offset + i] = item
            if item.error is not None:
                self._record_errors(1, item.error)

    def embed(self, text: str) -> np.ndarray:
        """Embed one text.

        Raises:
            EmbeddingError: If the item failed or produced no vector.
        """
        item = self.embed_batch([text])[0]
        if item.error or item.vector is None:
            raise EmbeddingError(item.error or "Embedding worker returned empty vector")
        return item.vector

    def status(self) -> PoolStatus:
        infos: list[RuntimeInfo] = [
            info for info in (embedder.runtime_info() for embedder in self._embedders) if info is not None
        ]
        selected = next((i.selected_backend for i in infos if i.selected_backend is not None), None)
        fallback = next((i.fallback_reason for i in infos if i.fallback_reason is not None), None)
        with self._state_lock:
            return PoolStatus(
                configured_pool_size=self.configured_pool_size,
                active_pool_size=self._active_pool_size,
                max_queue_size=self.max_queue_size,
                downshifted=self._active_pool_size < self.configured_pool_size,
                downshift_reason=self._downshift_reason,
                error_count=self._error_count,
                preferred_backend=self.preferred_backend,
                selected_backend=selected,
                fallback_reason=fallback,
            )

    def terminate(self) -> None:
        for embedder in self._embedders:
            embedder.terminate()
        self._embedders = []

    def __enter__(self) -> EmbeddingWorkerPool:
        return self

    def __exit__(self, *args: object) -> None:
        self.terminate()
