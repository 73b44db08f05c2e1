import asyncio

import pytest
import pytest_asyncio

from gguflab.kernel.contracts import PresenceState
from gguflab.kernel.errors import ArtifactMissing, LoadError, NotInitialized, UnknownModel
from gguflab.runtime.model_manager import ResourceManager
from tests.conftest import install_file
from tests.kernel.mocks import MockInferenceEngine


@pytest.fixture
def make_manager(registry, store):
    def _make(engine):
        return ResourceManager(registry, store, lambda: engine, default_context_size=2048)

    return _make


@pytest_asyncio.fixture
async def manager(make_manager, engine):
    manager = make_manager(engine)
    await manager.initialize()
    return manager


@pytest.mark.asyncio
async def test_load_requires_initialize(make_manager, engine, installed):
    manager = make_manager(engine)
    assert not manager.initialized
    with pytest.raises(NotInitialized):
        await manager.load_or_reuse("alpha")


@pytest.mark.asyncio
async def test_initialize_accepts_async_factory(registry, store, engine):
    async def factory():
        return engine

    manager = ResourceManager(registry, store, factory)
    await manager.initialize()
    assert manager.initialized


@pytest.mark.asyncio
async def test_unknown_model(manager):
    with pytest.raises(UnknownModel):
        await manager.load_or_reuse("missing")


@pytest.mark.asyncio
async def test_missing_file_never_reaches_engine(manager, engine):
    with pytest.raises(ArtifactMissing) as exc_info:
        await manager.load_or_reuse("alpha")
    assert exc_info.value.state is PresenceState.ABSENT
    assert engine.load_calls == []


@pytest.mark.asyncio
async def test_partial_file_never_reaches_engine(manager, engine, models_dir, registry):
    install_file(models_dir, registry.get("alpha"), size=10)
    with pytest.raises(ArtifactMissing) as exc_info:
        await manager.load_or_reuse("alpha")
    assert exc_info.value.state is PresenceState.PARTIAL
    assert engine.load_calls == []


@pytest.mark.asyncio
async def test_load_then_reuse(manager, engine, installed):
    first = await manager.load_or_reuse("alpha")
    second = await manager.load_or_reuse("alpha")

    assert first is second
    assert len(engine.load_calls) == 1
    assert engine.load_calls[0].is_absolute()
    assert first.context_size == 2048
    assert manager.loaded_ids() == ["alpha"]


@pytest.mark.asyncio
async def test_concurrent_loads_construct_once(make_manager, installed):
    engine = MockInferenceEngine(load_delay=0.05)
    manager = make_manager(engine)
    await manager.initialize()

    resources = await asyncio.gather(*(manager.load_or_reuse("alpha") for _ in range(5)))

    assert len(engine.load_calls) == 1
    assert all(r is resources[0] for r in resources)


@pytest.mark.asyncio
async def test_different_models_load_concurrently(make_manager, installed):
    engine = MockInferenceEngine(load_delay=0.05)
    manager = make_manager(engine)
    await manager.initialize()

    await asyncio.gather(manager.load_or_reuse("alpha"), manager.load_or_reuse("beta"))

    assert engine.peak_loads == 2
    assert sorted(manager.loaded_ids()) == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_evict_disposes_context_before_model(manager, engine, installed):
    first = await manager.load_or_reuse("alpha")
    manager.evict("alpha")

    assert engine.events == [("dispose_context", "alpha.gguf"), ("dispose_model", "alpha.gguf")]
    assert manager.get("alpha") is None

    second = await manager.load_or_reuse("alpha")
    assert second is not first
    assert len(engine.load_calls) == 2


@pytest.mark.asyncio
async def test_evict_twice_is_silent(manager, engine, installed):
    resource = await manager.load_or_reuse("alpha")
    manager.evict("alpha")
    manager.evict("alpha")
    manager.evict("never-loaded")
    assert resource.context.dispose_calls == 1
    assert resource.model.dispose_calls == 1


@pytest.mark.asyncio
async def test_dispose_failure_is_logged_not_raised(make_manager, installed):
    engine = MockInferenceEngine(fail_dispose=["alpha.gguf"])
    manager = make_manager(engine)
    await manager.initialize()
    resource = await manager.load_or_reuse("alpha")

    manager.evict("alpha")

    assert resource.model.dispose_calls == 1
    assert manager.loaded_ids() == []


@pytest.mark.asyncio
async def test_load_failure_registers_nothing(make_manager, installed):
    engine = MockInferenceEngine(fail_load=["alpha.gguf"])
    manager = make_manager(engine)
    await manager.initialize()

    with pytest.raises(LoadError, match="Unsupported model file"):
        await manager.load_or_reuse("alpha")
    assert manager.loaded_ids() == []


@pytest.mark.asyncio
async def test_context_failure_disposes_model(make_manager, installed):
    engine = MockInferenceEngine(fail_context=["alpha.gguf"])
    manager = make_manager(engine)
    await manager.initialize()

    with pytest.raises(LoadError, match="Failed to create context"):
        await manager.load_or_reuse("alpha")

    assert engine.models[0].dispose_calls == 1
    assert manager.loaded_ids() == []


@pytest.mark.asyncio
async def test_explicit_context_size(manager, engine, installed):
    resource = await manager.load_or_reuse("beta", context_size=1024)
    assert resource.context_size == 1024
    assert engine.context_sizes == [("beta.gguf", 1024)]


@pytest.mark.asyncio
async def test_disabling_evicts(manager, registry, installed):
    await manager.load_or_reuse("alpha")
    manager.set_enabled("alpha", False)
    assert manager.get("alpha") is None
    assert not registry.get("alpha").enabled


@pytest.mark.asyncio
async def test_dispose_all(manager, engine, installed):
    await manager.load_or_reuse("alpha")
    await manager.load_or_reuse("beta")
    manager.dispose_all()
    manager.dispose_all()
    assert manager.loaded_ids() == []
    assert all(m.dispose_calls == 1 for m in engine.models)


@pytest.mark.asyncio
async def test_disabling_during_load_discards_the_new_pair(make_manager, registry, installed):
    engine = MockInferenceEngine(load_delay=0.1)
    manager = make_manager(engine)
    await manager.initialize()

    task = asyncio.create_task(manager.load_or_reuse("alpha"))
    await asyncio.sleep(0.02)
    manager.set_enabled("alpha", False)

    with pytest.raises(LoadError, match="unloaded while it was loading"):
        await task

    assert manager.loaded_ids() == []
    assert engine.models[0].dispose_calls == 1
    assert engine.models[0].contexts[0].dispose_calls == 1
    assert not manager.in_use("alpha")

    registry.set_enabled("alpha", True)
    assert (await manager.load_or_reuse("alpha")).model is not engine.models[0]


@pytest.mark.asyncio
async def test_evict_while_checked_out_waits_for_checkin(manager, engine, installed):
    resource = await manager.checkout("alpha")
    manager.evict("alpha")

    assert manager.get("alpha") is None
    assert resource.context.dispose_calls == 0

    manager.checkin("alpha")

    assert engine.events == [("dispose_context", "alpha.gguf"), ("dispose_model", "alpha.gguf")]
    assert not manager.in_use("alpha")


@pytest.mark.asyncio
async def test_checkout_serializes_holders(manager, installed):
    await manager.checkout("alpha")
    waiter = asyncio.create_task(manager.checkout("alpha"))
    await asyncio.sleep(0.01)
    assert not waiter.done()

    manager.checkin("alpha")
    await waiter
    manager.checkin("alpha")
    assert not manager.in_use("alpha")


@pytest.mark.asyncio
async def test_dispose_all_defers_busy_models(manager, engine, installed):
    busy = await manager.checkout("alpha")
    await manager.load_or_reuse("beta")

    manager.dispose_all()

    assert manager.loaded_ids() == []
    assert busy.model.dispose_calls == 0
    manager.checkin("alpha")
    assert all(m.dispose_calls == 1 for m in engine.models)
