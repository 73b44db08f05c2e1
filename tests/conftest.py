import pytest
from pathlib import Path

from gguflab.adapters.storage_fs import FileSystemArtifactStore
from gguflab.internal.config import Settings
from gguflab.kernel.contracts import ModelDescriptor
from gguflab.kernel.execution import KernelExecutionService
from gguflab.registry.catalog import ModelRegistry
from tests.kernel.mocks import MockDownloader, MockInferenceEngine

MODEL_SIZE = 100


def make_descriptor(model_id: str, **overrides) -> ModelDescriptor:
    fields = dict(
        id=model_id,
        display_name=model_id.capitalize(),
        filename=f"{model_id}.gguf",
        primary_url=f"https://primary.example.com/{model_id}.gguf",
        declared_size_bytes=MODEL_SIZE,
        size_label="100B",
        enabled=True,
    )
    fields.update(overrides)
    return ModelDescriptor(**fields)


def install_file(models_dir: Path, descriptor: ModelDescriptor, size: int = MODEL_SIZE) -> Path:
    models_dir.mkdir(parents=True, exist_ok=True)
    path = models_dir / descriptor.filename
    path.write_bytes(b"g" * size)
    return path


# --- Catalog and storage ---

@pytest.fixture
def models_dir(tmp_path):
    """Creates a temporary directory for local models."""
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def registry():
    """Three enabled test models, in catalog order alpha, beta, gamma."""
    return ModelRegistry([make_descriptor("alpha"), make_descriptor("beta"), make_descriptor("gamma")])


@pytest.fixture
def store(models_dir):
    return FileSystemArtifactStore(models_dir)


@pytest.fixture
def installed(models_dir, registry):
    """Writes a complete file for every catalog entry."""
    for descriptor in registry.all():
        install_file(models_dir, descriptor)
    return registry.ids()


# --- Engine and service ---

@pytest.fixture
def engine():
    return MockInferenceEngine()


@pytest.fixture
def downloader():
    return MockDownloader()


@pytest.fixture
def settings(models_dir):
    return Settings(models_dir=models_dir, backoff_seconds=0)


@pytest.fixture
def service(settings, registry, engine, downloader):
    return KernelExecutionService.from_settings(
        settings,
        engine_factory=lambda: engine,
        registry=registry,
        downloader=downloader,
    )
