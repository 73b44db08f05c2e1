"""
Data contracts and engine ports for the gguflab kernel.

These are pure data types with no I/O. The kernel and runtime interact with
the inference engine ONLY through the protocols defined at the bottom.
"""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Protocol


# ---------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ModelDescriptor:
    """
    An immutable catalog entry. The registry swaps the whole record when the
    enablement flag changes; nothing else mutates it.
    """
    id: str
    display_name: str
    filename: str
    primary_url: str
    declared_size_bytes: Optional[int] = None
    fallback_urls: tuple[str, ...] = ()
    enabled: bool = True
    size_label: str = ""
    description: str = ""
    architecture: str = ""
    release_date: str = ""
    capabilities: tuple[str, ...] = ()
    best_for: str = ""
    local_path: Optional[Path] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("id cannot be empty")
        if not self.filename:
            raise ValueError("filename cannot be empty")
        if self.declared_size_bytes is not None and self.declared_size_bytes <= 0:
            raise ValueError("declared_size_bytes must be positive when given")

    @property
    def urls(self) -> tuple[str, ...]:
        return (self.primary_url, *self.fallback_urls) if self.primary_url else self.fallback_urls


# ---------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------

class PresenceState(str, enum.Enum):
    ABSENT = "absent"
    PARTIAL = "partial"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ArtifactHandle:
    """
    A snapshot of one artifact on disk. Derived on demand, never cached.
    """
    descriptor_id: str
    path: Path
    size_bytes: int
    state: PresenceState

    @property
    def is_complete(self) -> bool:
        return self.state is PresenceState.COMPLETE


@dataclass
class AcquisitionResult:
    descriptor_id: str
    success: bool
    path: Optional[Path] = None
    attempts: int = 0
    source_url: Optional[str] = None
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    size_mismatch: bool = False
    skipped: bool = False


# ---------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------

@dataclass
class LoadedResource:
    """
    A live (model, context) pair. Owned by the ResourceManager; callers never
    keep the handles past the call that returned them.
    """
    descriptor_id: str
    model: Any
    context: Any
    context_size: int
    created_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class InferenceRequest:
    descriptor_id: str
    prompt: str
    streaming: bool = False

    def __post_init__(self):
        if not self.descriptor_id:
            raise ValueError("descriptor_id cannot be empty")


@dataclass
class InferenceResult:
    """
    One result per request. A failed call is still a result: its duration is
    zero, its response starts with "Error: " and error_kind names the failure.
    """
    descriptor_id: str
    response: str
    duration_ms: float
    tokens_per_second: Optional[float] = None
    error_kind: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error_kind is not None


# ---------------------------------------------------------------------
# Engine ports
# ---------------------------------------------------------------------

class ChatSession(Protocol):
    def prompt(self, text: str) -> AsyncIterator[str]:
        """
        Lazily yield text chunks for one exchange. The iterator is finite and
        cannot be restarted.
        """
        ...


class SequenceHandle(Protocol):
    def new_session(self, system_prompt: Optional[str] = None) -> ChatSession:
        ...

    def clear_history(self) -> None:
        ...


class ContextHandle(Protocol):
    def get_sequence(self) -> SequenceHandle:
        ...

    def dispose(self) -> None:
        """Release the context. Must tolerate being called twice."""
        ...


class ModelHandle(Protocol):
    async def create_context(self, context_size: int) -> ContextHandle:
        ...

    def dispose(self) -> None:
        """Release the model. Must tolerate being called twice."""
        ...


class InferenceEngine(Protocol):
    """
    The opaque inference capability. Raises on a malformed or unsupported file.
    """

    async def load_model(self, path: Path, gpu_layers: int = 0) -> ModelHandle:
        ...
