"""starrecall embedding orchestrator: worker processes, pool and backend selection."""

from starrecall.embeddings.backend import Backend, RuntimeInfo
from starrecall.embeddings.embedder import BatchItem, Embedder, EmbeddingError, ProcessEmbedder
from starrecall.embeddings.pool import EmbeddingWorkerPool, PoolStatus, QueueOverflowError

__all__ = [
    "Backend",
    "BatchItem",
    "Embedder",
    "EmbeddingError",
    "EmbeddingWorkerPool",
    "PoolStatus",
    "ProcessEmbedder",
    "QueueOverflowError",
    "RuntimeInfo",
]
