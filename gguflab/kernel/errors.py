"""
Error taxonomy for gguflab.

Every error carries a stable ``kind`` string so logs and tests can assert on
the failure class instead of on message text.
"""
from __future__ import annotations

from typing import Optional


class GgufLabError(Exception):
    """Base exception for all gguflab errors."""

    kind = "GgufLabError"


# ---------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------

class NotInitialized(GgufLabError):
    """The inference engine handle was never established."""

    kind = "NotInitialized"


class UnknownModel(GgufLabError):
    """No catalog entry exists for the requested descriptor id."""

    kind = "UnknownModel"

    def __init__(self, descriptor_id: str) -> None:
        self.descriptor_id = descriptor_id
        super().__init__(f"Unknown model: {descriptor_id}")


class ArtifactMissing(GgufLabError):
    """The model file is not complete on disk."""

    kind = "ArtifactMissing"

    def __init__(self, descriptor_id: str, path, state) -> None:
        self.descriptor_id = descriptor_id
        self.path = path
        self.state = state
        super().__init__(f"Model file not found or incomplete ({state.value}): {path}")


# ---------------------------------------------------------------------
# Acquisition
# ---------------------------------------------------------------------

class DownloadError(GgufLabError):
    """A single transfer attempt failed."""

    kind = "DownloadError"

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        exit_code: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.url = url
        self.exit_code = exit_code
        self.status_code = status_code
        super().__init__(message)


class DownloadAuthRequired(DownloadError):
    """The source answered 401/403 (or the tool's equivalent exit code)."""

    kind = "DownloadAuthRequired"


class DownloadTransportFailure(DownloadError):
    """Any other transfer failure: network, HTTP error, tool crash, empty file."""

    kind = "DownloadTransportFailure"


class DownloadSizeMismatch(GgufLabError):
    """Downloaded size is outside tolerance. Reported as a warning only."""

    kind = "DownloadSizeMismatch"

    def __init__(self, path, expected: int, actual: int) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"File size differs from expected. Expected: {expected} bytes, Got: {actual} bytes"
        )


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------

class LoadError(GgufLabError):
    """The engine could not load the model or create its context."""

    kind = "LoadError"


class DisposeFailure(GgufLabError):
    """Releasing a context or model failed. Logged, never raised to callers."""

    kind = "DisposeFailure"


class InferenceFailure(GgufLabError):
    """A prompt exchange failed or timed out."""

    kind = "InferenceFailure"

    def __init__(self, descriptor_id: str, message: str) -> None:
        self.descriptor_id = descriptor_id
        super().__init__(message)


def kind_of(exc: BaseException) -> str:
    return getattr(exc, "kind", type(exc).__name__)
