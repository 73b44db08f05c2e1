"""
Runs prompts against loaded models: one model, all enabled models at once, or
all enabled models one after another with streamed output.

Per-model failures inside a batch become error results; the batch itself
never raises for them.

Every exchange runs as its own task that holds the model checked out from
the ResourceManager until the engine has really finished. A timed-out
exchange is told to stop and left to finish in the background; it is never
cancelled while an engine worker thread may still be generating.
"""
import asyncio
import functools
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, TypeVar

from gguflab.internal.constants import (
    BENCHMARK_PROMPTS,
    DEFAULT_CONTEXT_SIZE,
    DEFAULT_SYSTEM_PROMPT,
    ERROR_PREFIX,
    PARALLEL_CONTEXT_SIZE,
)
from gguflab.internal.logging import get_logger
from gguflab.kernel.contracts import InferenceRequest, InferenceResult, LoadedResource
from gguflab.kernel.errors import GgufLabError, InferenceFailure, NotInitialized, kind_of
from gguflab.registry.catalog import ModelRegistry
from gguflab.runtime.model_manager import ResourceManager

logger = get_logger(__name__)

T = TypeVar("T")

ChunkCallback = Callable[[str], None]
ModelChunkCallback = Callable[[str, str], None]
ResultCallback = Callable[[InferenceResult], None]
Exchange = Callable[[LoadedResource, asyncio.Event], Awaitable[T]]


@dataclass
class BenchmarkRound:
    prompt: str
    results: List[InferenceResult]


def error_result(descriptor_id: str, exc: BaseException) -> InferenceResult:
    return InferenceResult(
        descriptor_id=descriptor_id,
        response=f"{ERROR_PREFIX}{exc}",
        duration_ms=0,
        error_kind=kind_of(exc),
    )


def sort_by_duration(results: Iterable[InferenceResult]) -> List[InferenceResult]:
    """Fastest first. Zero-duration entries are errors and always go last."""
    return sorted(results, key=lambda r: (r.duration_ms == 0, r.duration_ms))


def compare_results(
    results: Sequence[InferenceResult],
    compact: bool = False,
    display_names: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Render results side by side as plain text.

    Compact mode sorts by duration and prints one timing-prefixed block per
    model; verbose mode keeps the input order and prints full responses.
    """
    names = display_names or {}
    lines: List[str] = ["Model Comparison:", "=" * 80]

    if compact:
        ordered = sort_by_duration(results)
        width = max((len(names.get(r.descriptor_id, r.descriptor_id)) for r in ordered), default=0)
        lines.append("")
        for result in ordered:
            name = names.get(result.descriptor_id, result.descriptor_id).ljust(width)
            timing = f"[{int(result.duration_ms):>5}ms]" if result.duration_ms > 0 else "[  ERROR]"
            response_lines = result.response.strip().split("\n")
            lines.append(f"{timing} [{name}]: {response_lines[0]}")
            indent = " " * (len(timing) + 3 + len(name) + 3)
            lines.extend(f"{indent}{line}" for line in response_lines[1:] if line.strip())
            lines.append("")
    else:
        for result in results:
            lines.append("")
            lines.append(names.get(result.descriptor_id, result.descriptor_id))
            lines.append(f"Duration: {int(result.duration_ms)}ms")
            if result.tokens_per_second:
                lines.append(f"Speed: {result.tokens_per_second:.1f} tokens/sec")
            lines.append("-" * 40)
            lines.append(result.response.strip())

    lines.append("")
    lines.append("=" * 80)
    return "\n".join(lines)


class ChatConversation:
    """
    A multi-turn chat on one model. History is kept across ``send`` calls
    until ``clear`` or ``close``. If the model was unloaded between turns it
    is loaded again and the conversation starts over.
    """

    def __init__(self, coordinator: "InferenceCoordinator", descriptor_id: str, system_prompt: Optional[str]):
        self._coordinator = coordinator
        self.descriptor_id = descriptor_id
        self.system_prompt = system_prompt
        self._resource: Optional[LoadedResource] = None
        self._sequence = None
        self._session = None
        self.closed = False

    def _bind(self, resource: LoadedResource) -> None:
        self._resource = resource
        self._sequence = resource.context.get_sequence()
        self._sequence.clear_history()
        self._session = self._sequence.new_session(system_prompt=self.system_prompt)

    async def send(self, text: str, on_chunk: Optional[ChunkCallback] = None) -> InferenceResult:
        if self.closed:
            raise InferenceFailure(self.descriptor_id, "Chat session is closed")

        async def turn(resource: LoadedResource, stop: asyncio.Event) -> InferenceResult:
            if resource is not self._resource:
                if self._resource is not None:
                    logger.warning("Chat model was reloaded, history starts over", model=self.descriptor_id)
                self._bind(resource)
            started = time.perf_counter()
            response, chunks = await _consume(self._session.prompt(text), on_chunk, stop)
            return _timed_result(self.descriptor_id, response, chunks, started)

        try:
            return await self._coordinator.exchange(self.descriptor_id, turn)
        except GgufLabError:
            raise
        except Exception as e:
            logger.error("Chat turn failed", model=self.descriptor_id, kind=InferenceFailure.kind, error=str(e))
            raise InferenceFailure(self.descriptor_id, f"Inference failed: {e}") from e

    async def clear(self) -> None:
        async with self._coordinator.manager.holding(self.descriptor_id) as resource:
            if resource is not None:
                self._bind(resource)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        async with self._coordinator.manager.holding(self.descriptor_id) as resource:
            if resource is not None and resource is self._resource:
                self._sequence.clear_history()


async def _consume(stream, on_chunk: Optional[ChunkCallback], stop: Optional[asyncio.Event] = None) -> Tuple[str, int]:
    parts: List[str] = []
    try:
        async for chunk in stream:
            if stop is not None and stop.is_set():
                break
            parts.append(chunk)
            if on_chunk is not None:
                on_chunk(chunk)
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
    return "".join(parts), len(parts)


def _timed_result(descriptor_id: str, response: str, chunks: int, started: float) -> InferenceResult:
    elapsed = time.perf_counter() - started
    duration_ms = elapsed * 1000
    return InferenceResult(
        descriptor_id=descriptor_id,
        response=response,
        # An exchange that finished is never reported as zero, the error sentinel.
        duration_ms=max(duration_ms, 0.001),
        tokens_per_second=(chunks / elapsed) if chunks and elapsed > 0 else None,
    )


class InferenceCoordinator:
    def __init__(
        self,
        registry: ModelRegistry,
        manager: ResourceManager,
        context_size: int = DEFAULT_CONTEXT_SIZE,
        parallel_context_size: int = PARALLEL_CONTEXT_SIZE,
        inference_timeout_seconds: Optional[float] = None,
    ):
        self.registry = registry
        self.manager = manager
        self.context_size = context_size
        self.parallel_context_size = parallel_context_size
        self.inference_timeout_seconds = inference_timeout_seconds
        self._abandoned: Set[asyncio.Task] = set()

    async def exchange(self, descriptor_id: str, work: Exchange, context_size: Optional[int] = None) -> T:
        """
        Check the model out, run ``work(resource, stop)`` as a task and check
        the model back in when that task ends. On timeout ``stop`` is set and
        the caller gets ``InferenceFailure`` while the task winds down.
        """
        resource = await self.manager.checkout(descriptor_id, context_size or self.context_size)
        stop = asyncio.Event()
        task = asyncio.ensure_future(work(resource, stop))
        task.add_done_callback(lambda _: self.manager.checkin(descriptor_id))

        try:
            done, _ = await asyncio.wait({task}, timeout=self.inference_timeout_seconds)
        except asyncio.CancelledError:
            self._abandon(descriptor_id, task, stop)
            raise
        if task in done:
            return task.result()

        self._abandon(descriptor_id, task, stop)
        logger.error(
            "Inference timed out",
            model=descriptor_id,
            kind=InferenceFailure.kind,
            timeout_seconds=self.inference_timeout_seconds,
        )
        raise InferenceFailure(descriptor_id, f"Inference timed out after {self.inference_timeout_seconds}s")

    def _abandon(self, descriptor_id: str, task: asyncio.Task, stop: asyncio.Event) -> None:
        stop.set()
        self._abandoned.add(task)
        task.add_done_callback(functools.partial(self._abandoned_done, descriptor_id))

    def _abandoned_done(self, descriptor_id: str, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Abandoned exchange failed", model=descriptor_id, kind=kind_of(exc), error=str(exc))
        else:
            logger.info("Abandoned exchange finished", model=descriptor_id)

    async def drain(self) -> None:
        """Wait for timed-out exchanges still finishing in the background."""
        while self._abandoned:
            await asyncio.gather(*list(self._abandoned), return_exceptions=True)

    # ------------------------------------------------------------------
    # Single
    # ------------------------------------------------------------------

    async def run_single(
        self,
        descriptor_id: str,
        prompt: str,
        streaming: bool = False,
        on_chunk: Optional[ChunkCallback] = None,
        context_size: Optional[int] = None,
    ) -> InferenceResult:
        request = InferenceRequest(descriptor_id=descriptor_id, prompt=prompt, streaming=streaming)
        forward = on_chunk if request.streaming else None

        async def single(resource: LoadedResource, stop: asyncio.Event) -> InferenceResult:
            started = time.perf_counter()
            response, chunks = await self._exchange(resource, request, forward, stop)
            return _timed_result(request.descriptor_id, response, chunks, started)

        try:
            return await self.exchange(request.descriptor_id, single, context_size)
        except GgufLabError:
            raise
        except Exception as e:
            logger.error("Inference failed", model=request.descriptor_id, kind=InferenceFailure.kind, error=str(e))
            raise InferenceFailure(request.descriptor_id, f"Inference failed: {e}") from e

    async def _exchange(
        self,
        resource: LoadedResource,
        request: InferenceRequest,
        on_chunk: Optional[ChunkCallback],
        stop: asyncio.Event,
    ) -> Tuple[str, int]:
        sequence = resource.context.get_sequence()
        try:
            session = sequence.new_session()
            return await _consume(session.prompt(request.prompt), on_chunk, stop)
        finally:
            # The context is shared by later unrelated calls.
            sequence.clear_history()

    async def _isolated(
        self,
        descriptor_id: str,
        prompt: str,
        streaming: bool,
        on_chunk: Optional[ChunkCallback],
        context_size: int,
    ) -> InferenceResult:
        try:
            return await self.run_single(
                descriptor_id, prompt, streaming=streaming, on_chunk=on_chunk, context_size=context_size
            )
        except Exception as e:
            logger.error("Model run failed", model=descriptor_id, kind=kind_of(e), error=str(e))
            return error_result(descriptor_id, e)

    def _require_initialized(self) -> None:
        if not self.manager.initialized:
            raise NotInitialized("Inference engine not initialized. Call initialize() first.")

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def run_parallel(self, prompt: str) -> List[InferenceResult]:
        """
        Load every enabled model first so first-load latency does not skew the
        timings, then run all of them concurrently.
        """
        self._require_initialized()
        descriptors = self.registry.enabled()
        logger.info("Running parallel inference", models=len(descriptors))

        async def preload(descriptor_id: str) -> None:
            try:
                await self.manager.load_or_reuse(descriptor_id, self.parallel_context_size)
            except Exception as e:
                logger.warning("Failed to preload model", model=descriptor_id, kind=kind_of(e), error=str(e))

        await asyncio.gather(*(preload(d.id) for d in descriptors))
        results = await asyncio.gather(
            *(self._isolated(d.id, prompt, False, None, self.parallel_context_size) for d in descriptors)
        )
        return list(results)

    async def run_sequential(
        self,
        prompt: str,
        on_chunk: Optional[ModelChunkCallback] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> List[InferenceResult]:
        """Enabled models in catalog order, streaming; results in that order."""
        self._require_initialized()
        results: List[InferenceResult] = []
        for descriptor in self.registry.enabled():
            forward = functools.partial(on_chunk, descriptor.id) if on_chunk is not None else None
            result = await self._isolated(descriptor.id, prompt, True, forward, self.context_size)
            results.append(result)
            if on_result is not None:
                on_result(result)
        return results

    async def benchmark(self, prompts: Sequence[str] = BENCHMARK_PROMPTS) -> List[BenchmarkRound]:
        rounds = []
        for prompt in prompts:
            logger.info("Benchmark prompt", prompt=prompt)
            results = await self.run_parallel(prompt)
            rounds.append(BenchmarkRound(prompt=prompt, results=sort_by_duration(results)))
        return rounds

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def open_chat(self, descriptor_id: str, system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT) -> ChatConversation:
        await self.manager.load_or_reuse(descriptor_id, self.context_size)
        conversation = ChatConversation(self, descriptor_id, system_prompt)
        await conversation.clear()
        logger.info("Chat session opened", model=descriptor_id)
        return conversation
