"""Vector encoding for the embeddings table.

Vectors are stored as little-endian float32 blobs and are always
L2-normalized before encoding, so cosine similarity is a dot product.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

_BLOB_DTYPE = np.dtype("<f4")


def l2_normalize(vector: np.ndarray | Sequence[float]) -> np.ndarray:
    """Return a float32 copy of *vector* scaled to unit length.

    A zero vector is returned unchanged (as a copy) rather than divided by zero.
    """
    arr = np.asarray(vector, dtype=np.float32).reshape(-1).copy()
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr
    return (arr / norm).astype(np.float32)


def vector_to_blob(vector: np.ndarray | Sequence[float]) -> bytes:
    """Normalize *vector* and encode it as a little-endian float32 blob."""
    return l2_normalize(vector).astype(_BLOB_DTYPE).tobytes()


def blob_to_vector(blob: bytes | memoryview) -> np.ndarray:
    """Decode a blob written by :func:`vector_to_blob`.

    Raises:
        ValueError: If the blob length is not a multiple of 4 bytes.
    """
    raw = bytes(blob)
    if len(raw) % _BLOB_DTYPE.itemsize:
        raise ValueError(f"vector blob length {len(raw)} is not a multiple of 4")
    return np.frombuffer(raw, dtype=_BLOB_DTYPE).astype(np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0.0 when dimensions differ or either vector is zero."""
    if a.shape != b.shape:
        return 0.0
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)
