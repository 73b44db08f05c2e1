"""
The static model catalog, loaded from ``registry/models.json``.
"""
import dataclasses
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from gguflab.internal import paths
from gguflab.internal.logging import get_logger
from gguflab.kernel.contracts import ModelDescriptor
from gguflab.kernel.errors import UnknownModel

logger = get_logger(__name__)

CUSTOM_PREFIX = "custom_"


def descriptor_from_dict(data: Dict[str, Any]) -> ModelDescriptor:
    return ModelDescriptor(
        id=data["id"],
        display_name=data.get("display_name", data["id"]),
        filename=data["filename"],
        primary_url=data.get("primary_url", ""),
        declared_size_bytes=data.get("declared_size_bytes"),
        fallback_urls=tuple(data.get("fallback_urls", ())),
        enabled=bool(data.get("enabled", False)),
        size_label=data.get("size_label", ""),
        description=data.get("description", ""),
        architecture=data.get("architecture", ""),
        release_date=data.get("release_date", ""),
        capabilities=tuple(data.get("capabilities", ())),
        best_for=data.get("best_for", ""),
    )


class ModelRegistry:
    """
    Ordered catalog of known models. Order is the catalog order, which is also
    the order sequential runs report results in.
    """

    def __init__(self, descriptors: List[ModelDescriptor]):
        self._order: List[str] = []
        self._descriptors: Dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._descriptors:
                raise ValueError(f"Duplicate model id in catalog: {descriptor.id}")
            self._order.append(descriptor.id)
            self._descriptors[descriptor.id] = descriptor

    @classmethod
    def from_file(cls, registry_path: Path) -> "ModelRegistry":
        if not registry_path.exists():
            raise RuntimeError(f"Model registry not found: {registry_path}")
        with open(registry_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        models = data.get("models", [])
        logger.debug("Loaded model registry", path=str(registry_path), count=len(models))
        return cls([descriptor_from_dict(m) for m in models])

    @classmethod
    def load_default(cls) -> "ModelRegistry":
        return cls.from_file(paths.get_catalog_path())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, descriptor_id: str) -> Optional[ModelDescriptor]:
        return self._descriptors.get(descriptor_id)

    def get(self, descriptor_id: str) -> ModelDescriptor:
        descriptor = self.find(descriptor_id)
        if descriptor is None:
            raise UnknownModel(descriptor_id)
        return descriptor

    def all(self) -> List[ModelDescriptor]:
        return [self._descriptors[i] for i in self._order]

    def enabled(self) -> List[ModelDescriptor]:
        return [d for d in self.all() if d.enabled]

    def ids(self) -> List[str]:
        return list(self._order)

    def __contains__(self, descriptor_id: str) -> bool:
        return descriptor_id in self._descriptors

    def __len__(self) -> int:
        return len(self._order)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_enabled(self, descriptor_id: str, enabled: bool) -> ModelDescriptor:
        current = self.get(descriptor_id)
        updated = dataclasses.replace(current, enabled=enabled)
        self._descriptors[descriptor_id] = updated
        return updated

    def register_custom(self, model_path: Path, enabled: bool = True) -> ModelDescriptor:
        """
        Add a descriptor for an arbitrary GGUF file outside the models
        directory. Registering the same file again returns the existing entry.
        """
        model_path = Path(model_path).expanduser().resolve()
        if model_path.suffix.lower() != ".gguf":
            raise ValueError(f"Not a GGUF file: {model_path}")

        descriptor_id = f"{CUSTOM_PREFIX}{model_path.name}"
        existing = self._descriptors.get(descriptor_id)
        if existing is not None:
            return existing
        descriptor = ModelDescriptor(
            id=descriptor_id,
            display_name=model_path.stem,
            filename=model_path.name,
            primary_url="",
            enabled=enabled,
            description="Custom GGUF model",
            architecture="Unknown",
            local_path=model_path,
        )
        self._order.append(descriptor_id)
        self._descriptors[descriptor_id] = descriptor
        logger.info("Registered custom model", model=descriptor_id, path=str(model_path))
        return descriptor
