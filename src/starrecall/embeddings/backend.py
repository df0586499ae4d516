"""ONNX execution-backend selection for the embedding model.

``accelerated`` means a GPU execution provider is used; ``portable`` is the
CPU provider, which is always available.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence
from dataclasses import dataclass


class Backend(str, enum.Enum):
    ACCELERATED = "accelerated"
    PORTABLE = "portable"


# In preference order.
GPU_PROVIDERS: tuple[str, ...] = (
    "CUDAExecutionProvider",
    "ROCMExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
)
CPU_PROVIDER = "CPUExecutionProvider"


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    reason: str | None = None
    provider: str | None = None


@dataclass(frozen=True)
class RuntimeInfo:
    preferred_backend: Backend
    selected_backend: Backend | None = None
    fallback_reason: str | None = None


def _available_providers() -> list[str]:
    import onnxruntime

    return list(onnxruntime.get_available_providers())


def probe_accelerated(
    list_providers: Callable[[], Sequence[str]] = _available_providers,
) -> ProbeResult:
    """Ask onnxruntime for a GPU execution provider. Never raises."""
    try:
        providers = list(list_providers())
    except Exception as exc:  # noqa: BLE001 - a broken runtime is a probe failure
        return ProbeResult(ok=False, reason=f"accelerated probe error: {exc}")
    for provider in GPU_PROVIDERS:
        if provider in providers:
            return ProbeResult(ok=True, provider=provider)
    return ProbeResult(ok=False, reason="no GPU execution provider available")


def resolve_backend(preferred: Backend, probe: ProbeResult) -> tuple[Backend, str | None]:
    """Return ``(backend, fallback_reason)``; the reason is set only on fallback."""
    if preferred is Backend.PORTABLE:
        return Backend.PORTABLE, None
    if probe.ok:
        return Backend.ACCELERATED, None
    return Backend.PORTABLE, probe.reason


def providers_for(backend: Backend, probe: ProbeResult) -> list[str]:
    if backend is Backend.ACCELERATED and probe.provider:
        return [probe.provider, CPU_PROVIDER]
    return [CPU_PROVIDER]
