"""
A filesystem-backed ArtifactStore: one directory, one file per model, named
by the catalog filename.

Every call reads the filesystem directly. Downloads and manual file placement
happen outside this object, so nothing is cached.
"""
from pathlib import Path
from typing import Iterable, List, Optional, Set

from gguflab.internal import paths
from gguflab.internal.constants import SIZE_TOLERANCE, TEMP_SUFFIX
from gguflab.internal.logging import get_logger
from gguflab.kernel.contracts import ArtifactHandle, ModelDescriptor, PresenceState

logger = get_logger(__name__)


def size_within_tolerance(observed: int, declared: Optional[int], tolerance: float = SIZE_TOLERANCE) -> bool:
    """True when no size is declared or observed is within +/- tolerance of it."""
    if declared is None:
        return True
    return abs(observed - declared) <= declared * tolerance


class FileSystemArtifactStore:
    """
    Observes model files on the local filesystem.
    This is an 'adapter' in the hexagonal architecture.
    """

    def __init__(self, models_dir: Path, size_tolerance: float = SIZE_TOLERANCE):
        self._models_dir = Path(models_dir)
        self._tolerance = size_tolerance

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    @property
    def tolerance(self) -> float:
        return self._tolerance

    def ensure_dir(self) -> Path:
        self._models_dir.mkdir(parents=True, exist_ok=True)
        return self._models_dir

    def path_for(self, descriptor: ModelDescriptor) -> Path:
        if descriptor.local_path is not None:
            return Path(descriptor.local_path)
        return self._models_dir / descriptor.filename

    def temp_path_for(self, descriptor: ModelDescriptor) -> Path:
        return paths.temp_path_for(self.path_for(descriptor))

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def _observe(self, path: Path) -> Optional[int]:
        try:
            return path.stat().st_size if path.is_file() else None
        except FileNotFoundError:
            return None

    def _classify(self, size: Optional[int], declared: Optional[int]) -> PresenceState:
        if size is None:
            return PresenceState.ABSENT
        if size == 0:
            return PresenceState.PARTIAL
        if declared is not None and size < declared * (1 - self._tolerance):
            return PresenceState.PARTIAL
        return PresenceState.COMPLETE

    def status(self, descriptor: ModelDescriptor) -> PresenceState:
        size = self._observe(self.path_for(descriptor))
        return self._classify(size, descriptor.declared_size_bytes)

    def handle(self, descriptor: ModelDescriptor) -> ArtifactHandle:
        path = self.path_for(descriptor).absolute()
        size = self._observe(path)
        return ArtifactHandle(
            descriptor_id=descriptor.id,
            path=path,
            size_bytes=size or 0,
            state=self._classify(size, descriptor.declared_size_bytes),
        )

    def list_complete(self, descriptors: Iterable[ModelDescriptor]) -> Set[str]:
        return {d.id for d in descriptors if self.status(d) is PresenceState.COMPLETE}

    # ------------------------------------------------------------------
    # Incomplete downloads
    # ------------------------------------------------------------------

    def find_incomplete(self, descriptors: Iterable[ModelDescriptor]) -> List[Path]:
        """
        Abandoned ``.tmp`` files plus zero-length catalog files in the models
        directory.
        """
        if not self._models_dir.is_dir():
            return []

        found: List[Path] = sorted(
            p for p in self._models_dir.iterdir()
            if p.is_file() and p.name.endswith(TEMP_SUFFIX)
        )
        for descriptor in descriptors:
            if descriptor.local_path is not None:
                continue
            path = self._models_dir / descriptor.filename
            if self._observe(path) == 0 and path not in found:
                found.append(path)
        return found

    def cleanup_incomplete(self, descriptors: Iterable[ModelDescriptor]) -> List[Path]:
        removed: List[Path] = []
        for path in self.find_incomplete(descriptors):
            try:
                path.unlink()
                removed.append(path)
                logger.info("Removed incomplete download", path=str(path))
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Could not remove incomplete download", path=str(path), error=str(e))
        return removed
