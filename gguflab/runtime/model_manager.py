import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union

from gguflab.adapters.storage_fs import FileSystemArtifactStore
from gguflab.internal.constants import DEFAULT_CONTEXT_SIZE
from gguflab.internal.logging import get_logger
from gguflab.kernel.contracts import InferenceEngine, LoadedResource, ModelDescriptor
from gguflab.kernel.errors import ArtifactMissing, DisposeFailure, LoadError, NotInitialized
from gguflab.registry.catalog import ModelRegistry

EngineFactory = Callable[[], Union[InferenceEngine, Awaitable[InferenceEngine]]]


class ResourceManager:
    """
    Owns every live (model, context) pair, at most one per descriptor id.

    All mutations of the resource map go through this class. A per-id lock is
    held while a model loads and for the whole of every exchange checked out
    with ``checkout``; different ids proceed concurrently. Evicting an id
    whose lock is held only marks it: the pair is disposed when the holder
    checks it back in, never while an engine call is running on it.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        store: FileSystemArtifactStore,
        engine_factory: EngineFactory,
        gpu_layers: int = 0,
        default_context_size: int = DEFAULT_CONTEXT_SIZE,
    ):
        self.logger = get_logger(self.__class__.__name__)
        self.registry = registry
        self.store = store
        self._engine_factory = engine_factory
        self._engine: Optional[InferenceEngine] = None
        self.gpu_layers = gpu_layers
        self.default_context_size = default_context_size
        self._resources: Dict[str, LoadedResource] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Evicted while their lock was held; disposed on checkin.
        self._retiring: Dict[str, LoadedResource] = {}
        self._evicted_while_held: Set[str] = set()

    @property
    def initialized(self) -> bool:
        return self._engine is not None

    async def initialize(self) -> None:
        if self._engine is not None:
            return
        engine = self._engine_factory()
        if inspect.isawaitable(engine):
            engine = await engine
        self._engine = engine
        self.logger.info("Inference engine initialized", engine=type(engine).__name__)

    def _lock_for(self, descriptor_id: str) -> asyncio.Lock:
        return self._locks.setdefault(descriptor_id, asyncio.Lock())

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_or_reuse(self, descriptor_id: str, context_size: Optional[int] = None) -> LoadedResource:
        resource = await self.checkout(descriptor_id, context_size)
        self.checkin(descriptor_id)
        return resource

    async def checkout(self, descriptor_id: str, context_size: Optional[int] = None) -> LoadedResource:
        """
        Load or reuse the pair for ``descriptor_id`` and keep its lock until
        ``checkin``. Callers must check in exactly once, also on failure.
        """
        if self._engine is None:
            raise NotInitialized("Inference engine not initialized. Call initialize() first.")

        descriptor = self.registry.get(descriptor_id)
        handle = self.store.handle(descriptor)
        if not handle.is_complete:
            raise ArtifactMissing(descriptor.id, handle.path, handle.state)

        await self._lock_for(descriptor.id).acquire()
        try:
            existing = self._resources.get(descriptor.id)
            if existing is not None:
                return existing

            resource = await self._construct(descriptor, handle.path, context_size or self.default_context_size)
            if descriptor.id in self._evicted_while_held:
                self._dispose(resource)
                self.logger.warning("Model unloaded while loading", model=descriptor.id, kind=LoadError.kind)
                raise LoadError(f"{descriptor.id} was unloaded while it was loading")
            self._resources[descriptor.id] = resource
            return resource
        except BaseException:
            self.checkin(descriptor.id)
            raise

    def checkin(self, descriptor_id: str) -> None:
        """Release the lock taken by ``checkout``, disposing the pair first if it was evicted meanwhile."""
        self._evicted_while_held.discard(descriptor_id)
        retired = self._retiring.pop(descriptor_id, None)
        if retired is not None:
            self._dispose(retired)
            self.logger.info("Model evicted", model=descriptor_id, deferred=True)
        self._locks[descriptor_id].release()

    @asynccontextmanager
    async def holding(self, descriptor_id: str) -> AsyncIterator[Optional[LoadedResource]]:
        """Hold the id's lock without loading anything. Yields the live pair, if any."""
        await self._lock_for(descriptor_id).acquire()
        try:
            yield self._resources.get(descriptor_id)
        finally:
            self.checkin(descriptor_id)

    async def _construct(self, descriptor: ModelDescriptor, path, context_size: int) -> LoadedResource:
        self.logger.info("Loading model", model=descriptor.id, path=str(path), context_size=context_size)
        try:
            model = await self._engine.load_model(path, self.gpu_layers)
        except Exception as e:
            self.logger.error("Model load failed", model=descriptor.id, kind=LoadError.kind, error=str(e))
            if isinstance(e, LoadError):
                raise
            raise LoadError(f"Failed to load {descriptor.id}: {e}") from e

        try:
            context = await model.create_context(context_size)
        except Exception as e:
            # A model whose context could not be created is never registered.
            self._dispose_quietly(descriptor.id, "model", model)
            self.logger.error("Context creation failed", model=descriptor.id, kind=LoadError.kind, error=str(e))
            if isinstance(e, LoadError):
                raise
            raise LoadError(f"Failed to create context for {descriptor.id}: {e}") from e

        self.logger.info("Model loaded", model=descriptor.id)
        return LoadedResource(
            descriptor_id=descriptor.id,
            model=model,
            context=context,
            context_size=context_size,
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def get(self, descriptor_id: str) -> Optional[LoadedResource]:
        return self._resources.get(descriptor_id)

    def loaded_ids(self) -> List[str]:
        return list(self._resources)

    def in_use(self, descriptor_id: str) -> bool:
        lock = self._locks.get(descriptor_id)
        return lock is not None and lock.locked()

    # ------------------------------------------------------------------
    # Disposal
    # ------------------------------------------------------------------

    def _dispose_quietly(self, descriptor_id: str, what: str, handle: Any) -> None:
        try:
            handle.dispose()
        except Exception as e:
            self.logger.warning(
                "Dispose failed",
                model=descriptor_id,
                handle=what,
                kind=DisposeFailure.kind,
                error=str(e),
            )

    def _dispose(self, resource: LoadedResource) -> None:
        self._dispose_quietly(resource.descriptor_id, "context", resource.context)
        self._dispose_quietly(resource.descriptor_id, "model", resource.model)

    def evict(self, descriptor_id: str) -> None:
        """
        Forget the entry and dispose the context, then the model. While the
        id is loading or checked out, disposal waits for ``checkin``.
        """
        resource = self._resources.pop(descriptor_id, None)
        if self.in_use(descriptor_id):
            self._evicted_while_held.add(descriptor_id)
            if resource is not None:
                self._retiring[descriptor_id] = resource
                self.logger.info("Model eviction deferred until idle", model=descriptor_id)
            return
        if resource is None:
            return
        self._dispose(resource)
        self.logger.info("Model evicted", model=descriptor_id)

    def dispose_all(self) -> None:
        busy = [descriptor_id for descriptor_id in self._locks if self.in_use(descriptor_id)]
        for descriptor_id in dict.fromkeys(list(self._resources) + busy):
            self.evict(descriptor_id)

    def set_enabled(self, descriptor_id: str, enabled: bool) -> ModelDescriptor:
        descriptor = self.registry.set_enabled(descriptor_id, enabled)
        if not enabled:
            self.evict(descriptor_id)
        return descriptor
