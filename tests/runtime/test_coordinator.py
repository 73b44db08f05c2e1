import asyncio

import pytest

from gguflab.kernel.contracts import InferenceResult
from gguflab.kernel.errors import ArtifactMissing, InferenceFailure, LoadError, NotInitialized
from gguflab.runtime.coordinator import InferenceCoordinator, compare_results, sort_by_duration
from gguflab.runtime.model_manager import ResourceManager
from tests.conftest import install_file
from tests.kernel.mocks import MockInferenceEngine


@pytest.fixture
def make_coordinator(registry, store):
    async def _make(engine=None, initialize=True, **kwargs):
        engine = engine or MockInferenceEngine()
        manager = ResourceManager(registry, store, lambda: engine)
        if initialize:
            await manager.initialize()
        return InferenceCoordinator(registry, manager, context_size=2048, parallel_context_size=1024, **kwargs)

    return _make


# --- Single ---

@pytest.mark.asyncio
async def test_run_single(make_coordinator, installed):
    coordinator = await make_coordinator()

    result = await coordinator.run_single("alpha", "Say hello")

    assert result.response == "Hello world"
    assert result.duration_ms > 0
    assert result.tokens_per_second > 0
    assert not result.is_error


@pytest.mark.asyncio
async def test_run_single_clears_history_after_exchange(make_coordinator, installed):
    coordinator = await make_coordinator()

    await coordinator.run_single("alpha", "first")
    await coordinator.run_single("alpha", "second")

    sequence = coordinator.manager.get("alpha").context.get_sequence()
    assert sequence.history == []
    assert sequence.clear_calls == 2


@pytest.mark.asyncio
async def test_run_single_streams_chunks(make_coordinator, installed):
    engine = MockInferenceEngine(replies={"alpha.gguf": ["The", " answer", " is", " 4"]})
    coordinator = await make_coordinator(engine)
    chunks = []

    result = await coordinator.run_single("alpha", "2+2?", streaming=True, on_chunk=chunks.append)

    assert chunks == ["The", " answer", " is", " 4"]
    assert result.response == "The answer is 4"


@pytest.mark.asyncio
async def test_run_single_without_streaming_ignores_callback(make_coordinator, installed):
    coordinator = await make_coordinator()
    chunks = []
    await coordinator.run_single("alpha", "hi", streaming=False, on_chunk=chunks.append)
    assert chunks == []


@pytest.mark.asyncio
async def test_run_single_propagates_missing_artifact(make_coordinator):
    coordinator = await make_coordinator()
    with pytest.raises(ArtifactMissing):
        await coordinator.run_single("alpha", "hi")


@pytest.mark.asyncio
async def test_run_single_generation_error(make_coordinator, installed):
    coordinator = await make_coordinator(MockInferenceEngine(fail_prompt=["alpha.gguf"]))
    with pytest.raises(InferenceFailure, match="Mock generation error"):
        await coordinator.run_single("alpha", "hi")


@pytest.mark.asyncio
async def test_run_single_serializes_exchanges_per_model(make_coordinator, installed):
    engine = MockInferenceEngine(latency={"alpha.gguf": 0.02})
    coordinator = await make_coordinator(engine)

    await asyncio.gather(*(coordinator.run_single("alpha", f"q{i}") for i in range(3)))

    assert engine.peak_prompts == 1
    assert len(engine.load_calls) == 1


@pytest.mark.asyncio
async def test_timeout(make_coordinator, installed):
    engine = MockInferenceEngine(latency={"alpha.gguf": 0.3})
    coordinator = await make_coordinator(engine, inference_timeout_seconds=0.05)

    with pytest.raises(InferenceFailure, match="timed out"):
        await coordinator.run_single("alpha", "hi")

    await coordinator.drain()
    assert not coordinator.manager.in_use("alpha")


@pytest.mark.asyncio
async def test_timeout_keeps_model_busy_until_worker_returns(make_coordinator, registry, installed):
    engine = MockInferenceEngine(replies={"alpha.gguf": ["a", "b", "c"]}, blocking={"alpha.gguf": 0.2})
    coordinator = await make_coordinator(engine, inference_timeout_seconds=0.1)
    patient = InferenceCoordinator(registry, coordinator.manager)

    with pytest.raises(InferenceFailure, match="timed out"):
        await coordinator.run_single("alpha", "first")
    assert coordinator.manager.in_use("alpha")
    assert engine.generating == ["alpha.gguf"]

    result = await patient.run_single("alpha", "second")

    assert result.response == "abc"
    assert engine.overlaps == []
    assert engine.peak_generating == 1
    assert [text for _, text in engine.prompt_calls] == ["first", "second"]
    assert coordinator.manager.get("alpha").context.get_sequence().history == []


@pytest.mark.asyncio
async def test_disabling_during_exchange_defers_dispose(make_coordinator, installed):
    engine = MockInferenceEngine(replies={"alpha.gguf": ["t0", "t1", "t2"]}, blocking={"alpha.gguf": 0.1})
    coordinator = await make_coordinator(engine)
    manager = coordinator.manager

    task = asyncio.create_task(coordinator.run_single("alpha", "hi"))
    await asyncio.sleep(0.05)
    manager.set_enabled("alpha", False)

    assert manager.get("alpha") is None
    assert engine.events == []

    result = await task

    assert result.response == "t0t1t2"
    assert engine.overlaps == []
    assert engine.events == [("dispose_context", "alpha.gguf"), ("dispose_model", "alpha.gguf")]
    assert not manager.in_use("alpha")


# --- Parallel ---

@pytest.mark.asyncio
async def test_parallel_isolates_failures(make_coordinator, models_dir, registry):
    install_file(models_dir, registry.get("alpha"))
    install_file(models_dir, registry.get("gamma"))
    coordinator = await make_coordinator()

    results = await coordinator.run_parallel("hi")

    assert [r.descriptor_id for r in results] == ["alpha", "beta", "gamma"]
    failed = results[1]
    assert failed.duration_ms == 0
    assert failed.response.startswith("Error: ")
    assert failed.error_kind == "ArtifactMissing"
    assert results[0].response == "Hello world"
    assert results[2].response == "Hello world"


@pytest.mark.asyncio
async def test_parallel_load_failure_becomes_result(make_coordinator, installed):
    coordinator = await make_coordinator(MockInferenceEngine(fail_load=["beta.gguf"]))

    results = await coordinator.run_parallel("hi")

    assert len(results) == 3
    assert results[1].error_kind == LoadError.kind
    assert not results[0].is_error and not results[2].is_error


@pytest.mark.asyncio
async def test_parallel_preloads_with_small_context(make_coordinator, installed):
    engine = MockInferenceEngine()
    coordinator = await make_coordinator(engine)

    await coordinator.run_parallel("hi")

    assert sorted(engine.context_sizes) == [("alpha.gguf", 1024), ("beta.gguf", 1024), ("gamma.gguf", 1024)]


@pytest.mark.asyncio
async def test_parallel_runs_models_concurrently(make_coordinator, installed):
    engine = MockInferenceEngine(latency={"alpha.gguf": 0.05, "beta.gguf": 0.05, "gamma.gguf": 0.05})
    coordinator = await make_coordinator(engine)

    await coordinator.run_parallel("hi")

    assert engine.peak_prompts == 3


@pytest.mark.asyncio
async def test_parallel_skips_disabled(make_coordinator, registry, installed):
    registry.set_enabled("beta", False)
    coordinator = await make_coordinator()
    results = await coordinator.run_parallel("hi")
    assert [r.descriptor_id for r in results] == ["alpha", "gamma"]


@pytest.mark.asyncio
async def test_parallel_timeout_becomes_result(make_coordinator, installed):
    engine = MockInferenceEngine(latency={"gamma.gguf": 0.5})
    coordinator = await make_coordinator(engine, inference_timeout_seconds=0.2)

    results = await coordinator.run_parallel("hi")

    assert results[2].error_kind == InferenceFailure.kind
    assert not results[0].is_error
    await coordinator.drain()


@pytest.mark.asyncio
async def test_batches_require_initialize(make_coordinator, installed):
    coordinator = await make_coordinator(initialize=False)
    with pytest.raises(NotInitialized):
        await coordinator.run_parallel("hi")
    with pytest.raises(NotInitialized):
        await coordinator.run_sequential("hi")


# --- Sequential ---

@pytest.mark.asyncio
async def test_sequential_keeps_catalog_order(make_coordinator, installed):
    engine = MockInferenceEngine(
        latency={"alpha.gguf": 0.05},
        replies={"alpha.gguf": ["A"], "beta.gguf": ["B"], "gamma.gguf": ["C"]},
    )
    coordinator = await make_coordinator(engine)
    chunks = []
    reported = []

    results = await coordinator.run_sequential(
        "hi",
        on_chunk=lambda descriptor_id, chunk: chunks.append((descriptor_id, chunk)),
        on_result=lambda result: reported.append(result.descriptor_id),
    )

    assert [r.descriptor_id for r in results] == ["alpha", "beta", "gamma"]
    assert chunks == [("alpha", "A"), ("beta", "B"), ("gamma", "C")]
    assert reported == ["alpha", "beta", "gamma"]
    assert engine.peak_prompts == 1


@pytest.mark.asyncio
async def test_sequential_continues_after_failure(make_coordinator, installed):
    coordinator = await make_coordinator(MockInferenceEngine(fail_prompt=["alpha.gguf"]))

    results = await coordinator.run_sequential("hi")

    assert results[0].is_error
    assert results[0].response.startswith("Error: ")
    assert [r.is_error for r in results[1:]] == [False, False]


# --- Benchmark and formatting ---

@pytest.mark.asyncio
async def test_benchmark_rounds_are_sorted(make_coordinator, installed):
    engine = MockInferenceEngine(latency={"alpha.gguf": 0.05}, fail_prompt=["gamma.gguf"])
    coordinator = await make_coordinator(engine)

    rounds = await coordinator.benchmark(["one", "two"])

    assert [r.prompt for r in rounds] == ["one", "two"]
    for bench_round in rounds:
        assert [r.descriptor_id for r in bench_round.results] == ["beta", "alpha", "gamma"]


def test_sort_by_duration_puts_errors_last():
    results = [
        InferenceResult("err", "Error: x", 0, error_kind="LoadError"),
        InferenceResult("slow", "ok", 300.0),
        InferenceResult("fast", "ok", 20.0),
    ]
    assert [r.descriptor_id for r in sort_by_duration(results)] == ["fast", "slow", "err"]


def test_compare_results_compact():
    results = [
        InferenceResult("alpha", "Four.\nDefinitely four.", 120.0),
        InferenceResult("beta", "Error: boom", 0, error_kind="InferenceFailure"),
        InferenceResult("gamma", "4", 40.0),
    ]

    text = compare_results(results, compact=True, display_names={"alpha": "Alpha", "gamma": "Gamma"})

    lines = [line for line in text.splitlines() if line.startswith("[")]
    assert lines[0].startswith("[   40ms] [Gamma]: 4")
    assert lines[1].startswith("[  120ms] [Alpha]: Four.")
    assert lines[2].startswith("[  ERROR] [beta ]: Error: boom")
    assert "Definitely four." in text


def test_compare_results_verbose_keeps_order():
    results = [
        InferenceResult("beta", "second", 90.0, tokens_per_second=12.0),
        InferenceResult("alpha", "first", 10.0),
    ]

    text = compare_results(results)

    assert text.index("beta") < text.index("alpha")
    assert "Duration: 90ms" in text
    assert "Speed: 12.0 tokens/sec" in text


# --- Chat ---

@pytest.mark.asyncio
async def test_chat_keeps_history_until_cleared(make_coordinator, installed):
    coordinator = await make_coordinator()
    chat = await coordinator.open_chat("alpha", system_prompt="Be brief.")
    sequence = coordinator.manager.get("alpha").context.get_sequence()
    chunks = []

    await chat.send("hello", on_chunk=chunks.append)
    result = await chat.send("again")

    assert sequence.history == ["hello", "again"]
    assert chunks == ["Hello", " world"]
    assert result.response == "Hello world"

    await chat.clear()
    assert sequence.history == []


@pytest.mark.asyncio
async def test_chat_closed(make_coordinator, installed):
    coordinator = await make_coordinator()
    chat = await coordinator.open_chat("alpha")
    await chat.close()
    await chat.close()
    with pytest.raises(InferenceFailure, match="closed"):
        await chat.send("hello")


@pytest.mark.asyncio
async def test_chat_generation_error(make_coordinator, installed):
    coordinator = await make_coordinator(MockInferenceEngine(fail_prompt=["alpha.gguf"]))
    chat = await coordinator.open_chat("alpha")
    with pytest.raises(InferenceFailure):
        await chat.send("hello")


@pytest.mark.asyncio
async def test_chat_starts_over_after_model_reload(make_coordinator, installed):
    engine = MockInferenceEngine()
    coordinator = await make_coordinator(engine)
    chat = await coordinator.open_chat("alpha")
    await chat.send("hello")

    coordinator.manager.evict("alpha")
    await chat.send("again")

    sequence = coordinator.manager.get("alpha").context.get_sequence()
    assert sequence.history == ["again"]
    assert len(engine.load_calls) == 2


@pytest.mark.asyncio
async def test_chat_turn_timeout(make_coordinator, installed):
    engine = MockInferenceEngine(replies={"alpha.gguf": ["a", "b"]}, blocking={"alpha.gguf": 0.2})
    coordinator = await make_coordinator(engine, inference_timeout_seconds=0.1)
    chat = await coordinator.open_chat("alpha")

    with pytest.raises(InferenceFailure, match="timed out"):
        await chat.send("hello")
    await chat.close()

    assert engine.overlaps == []
    assert not coordinator.manager.in_use("alpha")
