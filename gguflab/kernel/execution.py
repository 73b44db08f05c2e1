"""
This module defines the public execution service of the gguflab kernel.
It wires the catalog, the artifact store, the acquisition pipeline, the
resource manager and the inference coordinator behind one surface used by
the CLI.
"""
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Set

from gguflab.adapters.download.downloader import Downloader
from gguflab.adapters.storage_fs import FileSystemArtifactStore
from gguflab.internal import paths
from gguflab.internal.config import Settings, get_settings
from gguflab.internal.constants import BENCHMARK_PROMPTS, DEFAULT_SYSTEM_PROMPT
from gguflab.internal.logging import get_logger
from gguflab.kernel.contracts import (
    AcquisitionResult,
    InferenceResult,
    ModelDescriptor,
    PresenceState,
)
from gguflab.kernel.errors import ArtifactMissing
from gguflab.registry.catalog import CUSTOM_PREFIX, ModelRegistry
from gguflab.runtime.acquisition import AcquisitionPipeline
from gguflab.runtime.coordinator import (
    BenchmarkRound,
    ChatConversation,
    ChunkCallback,
    InferenceCoordinator,
    ModelChunkCallback,
    ResultCallback,
)
from gguflab.runtime.model_manager import EngineFactory, ResourceManager


def llama_cpp_engine_factory(settings: Settings) -> EngineFactory:
    def _factory():
        from gguflab.adapters.llama_cpp.engine import LlamaCppEngine

        return LlamaCppEngine(max_tokens=settings.max_tokens, temperature=settings.temperature)

    return _factory


class KernelExecutionService:
    """
    Orchestrates acquisition and inference for the catalog models.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        store: FileSystemArtifactStore,
        pipeline: AcquisitionPipeline,
        manager: ResourceManager,
        coordinator: InferenceCoordinator,
    ):
        self.logger = get_logger(self.__class__.__name__)
        self.registry = registry
        self.store = store
        self.pipeline = pipeline
        self.manager = manager
        self.coordinator = coordinator

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        engine_factory: Optional[EngineFactory] = None,
        registry: Optional[ModelRegistry] = None,
        downloader: Optional[Downloader] = None,
        quiet_downloads: bool = False,
    ) -> "KernelExecutionService":
        settings = settings or get_settings()
        registry = registry or ModelRegistry.load_default()
        store = FileSystemArtifactStore(
            paths.resolve_models_dir(settings.models_dir),
            size_tolerance=settings.size_tolerance,
        )
        pipeline = AcquisitionPipeline(
            registry,
            store,
            downloader or Downloader.from_settings(settings, quiet=quiet_downloads),
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
        )
        manager = ResourceManager(
            registry,
            store,
            engine_factory or llama_cpp_engine_factory(settings),
            gpu_layers=settings.gpu_layers,
            default_context_size=settings.context_size,
        )
        coordinator = InferenceCoordinator(
            registry,
            manager,
            context_size=settings.context_size,
            parallel_context_size=settings.parallel_context_size,
            inference_timeout_seconds=settings.inference_timeout_seconds,
        )
        return cls(registry, store, pipeline, manager, coordinator)

    async def initialize(self) -> None:
        await self.manager.initialize()

    async def __aenter__(self) -> "KernelExecutionService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.coordinator.drain()
        self.dispose()

    # ------------------------------------------------------------------
    # Acquisition and catalog
    # ------------------------------------------------------------------

    async def acquire(self, descriptor_id: str, overwrite: bool = False) -> AcquisitionResult:
        return await self.pipeline.acquire(descriptor_id, overwrite=overwrite)

    async def acquire_many(self, descriptor_ids: Iterable[str], overwrite: bool = False) -> List[AcquisitionResult]:
        return await self.pipeline.acquire_many(descriptor_ids, overwrite=overwrite)

    def list_available(self) -> Set[str]:
        """Ids whose artifact is COMPLETE on disk right now."""
        return self.store.list_complete(self.registry.all())

    def list_incomplete(self) -> List[Path]:
        return self.store.find_incomplete(self.registry.all())

    def cleanup_incomplete(self) -> List[Path]:
        return self.store.cleanup_incomplete(self.registry.all())

    def set_enabled(self, descriptor_id: str, enabled: bool) -> ModelDescriptor:
        return self.manager.set_enabled(descriptor_id, enabled)

    def enable_available(self) -> List[str]:
        available = self.list_available()
        enabled = []
        for descriptor in self.registry.all():
            if descriptor.id in available:
                self.set_enabled(descriptor.id, True)
                enabled.append(descriptor.id)
        self.logger.info("Enabled available models", models=enabled)
        return enabled

    def load_custom(self, model_path: Path) -> ModelDescriptor:
        model_path = Path(model_path).expanduser().resolve()
        if not model_path.is_file():
            raise ArtifactMissing(f"{CUSTOM_PREFIX}{model_path.name}", model_path, PresenceState.ABSENT)
        return self.registry.register_custom(model_path)

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def run_single(
        self,
        descriptor_id: str,
        prompt: str,
        streaming: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> InferenceResult:
        return await self.coordinator.run_single(descriptor_id, prompt, streaming=streaming, on_chunk=on_chunk)

    async def run_parallel(self, prompt: str) -> List[InferenceResult]:
        return await self.coordinator.run_parallel(prompt)

    async def run_sequential(
        self,
        prompt: str,
        on_chunk: Optional[ModelChunkCallback] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> List[InferenceResult]:
        return await self.coordinator.run_sequential(prompt, on_chunk=on_chunk, on_result=on_result)

    async def benchmark(self, prompts: Sequence[str] = BENCHMARK_PROMPTS) -> List[BenchmarkRound]:
        return await self.coordinator.benchmark(prompts)

    async def open_chat(self, descriptor_id: str, system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT) -> ChatConversation:
        return await self.coordinator.open_chat(descriptor_id, system_prompt=system_prompt)

    def dispose(self) -> None:
        """Release every loaded model. Safe to call more than once."""
        self.manager.dispose_all()
