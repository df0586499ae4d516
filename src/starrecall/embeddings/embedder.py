"""Embedding model host and the process-isolated embedder.

The model runs in a child process (``multiprocessing`` spawn context) so a
crash or memory blow-up inside onnxruntime cannot take down the caller.
Requests and responses travel over a ``Pipe`` as plain dicts correlated by
request id; a response whose id does not match the in-flight request is a
leftover from a timed-out request and is discarded.
"""

from __future__ import annotations

import multiprocessing
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import numpy as np

from starrecall.db.vectors import l2_normalize
from starrecall.embeddings.backend import (
    CPU_PROVIDER,
    Backend,
    ProbeResult,
    RuntimeInfo,
    probe_accelerated,
    providers_for,
    resolve_backend,
)
from starrecall.logging import get_logger

log = get_logger(__name__)

DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_REQUEST_TIMEOUT_S = 120.0

_MEMORY_SIGNATURES = ("out of memory", "memory", "oom", "allocation failed")


class EmbeddingError(RuntimeError):
    """An embedding request failed as a whole, or a single-item embed failed."""


def is_memory_pressure_error(message: str | None) -> bool:
    if not message:
        return False
    lowered = message.lower()
    return any(signature in lowered for signature in _MEMORY_SIGNATURES)


@dataclass(frozen=True)
class BatchItem:
    """Per-text result: exactly one of ``vector`` / ``error`` is set."""

    vector: np.ndarray | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.vector is not None


class Embedder(Protocol):
    def embed_batch(self, texts: Sequence[str]) -> list[BatchItem]:
        """Return one item per text, in order. Per-text failures go in ``error``."""
        ...

    def terminate(self) -> None: ...

    def runtime_info(self) -> RuntimeInfo | None: ...


class TextModel(Protocol):
    def embed(self, documents: Iterable[str]) -> Iterable[Any]: ...


ModelFactory = Callable[[str, list[str]], TextModel]


def fastembed_factory(model_name: str, providers: list[str]) -> TextModel:
    from fastembed import TextEmbedding

    return TextEmbedding(model_name=model_name, providers=providers)


class ModelHolder:
    """Lazily loads the model inside the worker and runs batch inference.

    An accelerated load that fails is retried on the portable backend and the
    failure is kept as the fallback reason.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_MODEL,
        factory: ModelFactory = fastembed_factory,
        probe: Callable[[], ProbeResult] = probe_accelerated,
    ) -> None:
        self.model_name = model_name
        self._factory = factory
        self._probe = probe
        self._model: TextModel | None = None
        self.preferred_backend: Backend | None = None
        self.selected_backend: Backend | None = None
        self.fallback_reason: str | None = None

    def load(self, preferred: Backend) -> TextModel:
        if self._model is not None and self.preferred_backend is preferred:
            return self._model

        self.preferred_backend = preferred
        self.selected_backend = None
        self.fallback_reason = None
        try:
            self._model = self._load(preferred)
        except Exception as exc:
            self._model = None
            self.selected_backend = None
            if self.fallback_reason is None:
                self.fallback_reason = str(exc)
            raise
        return self._model

    def _load(self, preferred: Backend) -> TextModel:
        if preferred is Backend.PORTABLE:
            self.selected_backend = Backend.PORTABLE
            return self._factory(self.model_name, [CPU_PROVIDER])

        probe = self._probe()
        backend, reason = resolve_backend(preferred, probe)
        if backend is Backend.PORTABLE:
            self.selected_backend = Backend.PORTABLE
            self.fallback_reason = reason
            log.info("embeddings.backend_fallback", reason=reason)
            return self._factory(self.model_name, [CPU_PROVIDER])

        self.selected_backend = Backend.ACCELERATED
        try:
            return self._factory(self.model_name, providers_for(backend, probe))
        except Exception as exc:
            self.selected_backend = Backend.PORTABLE
            self.fallback_reason = f"accelerated init failed: {exc}"
            log.warning("embeddings.backend_fallback", reason=self.fallback_reason)
            return self._factory(self.model_name, [CPU_PROVIDER])

    def embed_texts(self, texts: Sequence[str]) -> list[BatchItem]:
        """Embed *texts* in order.

        A failing batch is retried item by item, except on memory pressure,
        where every item carries the batch error.
        """
        model = self._model
        if model is None:
            raise EmbeddingError("model is not loaded")
        try:
            vectors = [l2_normalize(v) for v in model.embed(list(texts))]
            if len(vectors) == len(texts):
                return [BatchItem(vector=v) for v in vectors]
        except Exception as exc:  # noqa: BLE001 - isolate the failing item below
            message = str(exc) or type(exc).__name__
            log.debug("embeddings.batch_failed", error=message, size=len(texts))
            if is_memory_pressure_error(message):
                return [BatchItem(vector=None, error=message) for _ in texts]

        items: list[BatchItem] = []
        for text in texts:
            try:
                vector = next(iter(model.embed([text])))
                items.append(BatchItem(vector=l2_normalize(vector)))
            except Exception as exc:  # noqa: BLE001 - per-item errors are reported, not raised
                items.append(BatchItem(vector=None, error=str(exc) or type(exc).__name__))
        return items

    def runtime_fields(self) -> dict[str, Any]:
        return {
            "selected_backend": self.selected_backend.value if self.selected_backend else None,
            "fallback_reason": self.fallback_reason,
        }


def handle_request(holder: ModelHolder, request: dict[str, Any]) -> dict[str, Any]:
    """Serve one worker request. Never raises: failures become an error response."""
    request_id = request.get("id")
    texts = request.get("texts")
    if texts is None:
        texts = [request["text"]] if request.get("text") is not None else []
    try:
        preferred = Backend(request.get("preferred_backend") or Backend.ACCELERATED.value)
    except ValueError:
        preferred = Backend.ACCELERATED

    try:
        holder.load(preferred)
        items = holder.embed_texts(texts)
    except Exception as exc:  # noqa: BLE001 - reported to the parent process
        return {"id": request_id, "status": "error", "error": str(exc) or type(exc).__name__, **holder.runtime_fields()}
    return {
        "id": request_id,
        "status": "complete",
        "vectors": [item.vector for item in items],
        "errors": [item.error for item in items],
        **holder.runtime_fields(),
    }


def _worker_main(conn: Any, model_name: str) -> None:
    holder = ModelHolder(model_name)
    while True:
        try:
            request = conn.recv()
        except (EOFError, OSError):
            break
        if request is None:
            break
        conn.send(handle_request(holder, request))
    conn.close()


def _coerce_vector(value: Any) -> np.ndarray | None:
    if value is None:
        return None
    return np.asarray(value, dtype=np.float32).reshape(-1)


class ProcessEmbedder:
    """An :class:`Embedder` backed by one dedicated worker process.

    Args:
        preferred_backend: Backend requested from the worker.
        model_name: fastembed model name loaded in the worker.
        request_timeout_s: How long to wait for a response before failing.
        channel: Pre-built duplex connection (``send``/``recv``/``poll``);
            when given, no process is spawned.
    """

    def __init__(
        self,
        preferred_backend: Backend = Backend.ACCELERATED,
        model_name: str = DEFAULT_MODEL,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        *,
        channel: Any | None = None,
    ) -> None:
        if request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be > 0")
        self.preferred_backend = preferred_backend
        self.model_name = model_name
        self.request_timeout_s = request_timeout_s
        self._lock = threading.Lock()
        self._selected_backend: Backend | None = None
        self._fallback_reason: str | None = None
        self._process: multiprocessing.process.BaseProcess | None = None
        if channel is None:
            ctx = multiprocessing.get_context("spawn")
            parent, child = ctx.Pipe(duplex=True)
            self._process = ctx.Process(
                target=_worker_main, args=(child, model_name), name="starrecall-embedder", daemon=True
            )
            self._process.start()
            child.close()
            channel = parent
        self._conn = channel

    def _note_runtime(self, response: dict[str, Any]) -> None:
        selected = response.get("selected_backend")
        if selected in (Backend.ACCELERATED.value, Backend.PORTABLE.value):
            self._selected_backend = Backend(selected)
        reason = response.get("fallback_reason")
        self._fallback_reason = None if reason is None else str(reason)

    def _request(self, texts: list[str]) -> dict[str, Any]:
        request_id = uuid.uuid4().hex
        with self._lock:
            if self._conn is None:
                raise EmbeddingError("embedder has been terminated")
            self._conn.send(
                {"id": request_id, "texts": texts, "preferred_backend": self.preferred_backend.value}
            )
            deadline = time.monotonic() + self.request_timeout_s
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0 or not self._conn.poll(remaining):
                    raise EmbeddingError(f"embedding request timed out after {self.request_timeout_s:g}s")
                try:
                    response = self._conn.recv()
                except (EOFError, OSError) as exc:
                    raise EmbeddingError(f"embedding worker exited: {exc}") from exc
                self._note_runtime(response)
                if response.get("id") == request_id:
                    return response
                log.debug("embeddings.stale_response", request_id=response.get("id"))

    def embed_batch(self, texts: Sequence[str]) -> list[BatchItem]:
        """Embed *texts*; raises EmbeddingError only when the whole request fails."""
        if not texts:
            return []
        response = self._request(list(texts))
        if response.get("status") != "complete":
            raise EmbeddingError(response.get("error") or "Embedding worker failed")
        vectors = list(response.get("vectors") or [])
        errors = list(response.get("errors") or [])
        items = []
        for i in range(max(len(vectors), len(errors))):
            vector = _coerce_vector(vectors[i]) if i < len(vectors) else None
            error = errors[i] if i < len(errors) else None
            items.append(BatchItem(vector=vector, error=None if error is None else str(error)))
        return items

    def embed(self, text: str) -> np.ndarray:
        items = self.embed_batch([text])
        first = items[0] if items else None
        if first is None or first.error or first.vector is None:
            raise EmbeddingError(first.error if first and first.error else "Embedding worker returned empty vector")
        return first.vector

    def runtime_info(self) -> RuntimeInfo:
        return RuntimeInfo(
            preferred_backend=self.preferred_backend,
            selected_backend=self._selected_backend,
            fallback_reason=self._fallback_reason,
        )

    def terminate(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            try:
                conn.send(None)
            except (OSError, ValueError) as exc:
                log.debug("embeddings.terminate_send_failed", error=str(exc))
            conn.close()
        if self._process is not None:
            self._process.join(timeout=5)
            if self._process.is_alive():
                self._process.terminate()
                self._process.join(timeout=5)
            self._process = None
