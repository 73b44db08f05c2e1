"""
Inference engine adapter over llama-cpp-python.

Every blocking llama.cpp call runs in a worker thread so the event loop keeps
serving other models while one is loading or generating.
"""
import asyncio
import os
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from llama_cpp import Llama

from gguflab.internal.logging import get_logger
from gguflab.kernel.errors import LoadError

logger = get_logger(__name__)


def _default_threads() -> int:
    count = os.cpu_count() or 1
    return count - 1 if count > 1 else 1


class LlamaCppChatSession:
    def __init__(self, sequence: "LlamaCppSequence", system_prompt: Optional[str] = None):
        self._sequence = sequence
        self._system_prompt = system_prompt

    async def prompt(self, text: str) -> AsyncIterator[str]:
        llm = self._sequence.context.llm
        if llm is None:
            raise RuntimeError("Context has been disposed")

        history = self._sequence.history
        if not history and self._system_prompt:
            history.append({"role": "system", "content": self._system_prompt})
        history.append({"role": "user", "content": text})

        stream = await asyncio.to_thread(
            llm.create_chat_completion,
            messages=list(history),
            stream=True,
            max_tokens=self._sequence.context.max_tokens,
            temperature=self._sequence.context.temperature,
        )

        parts: List[str] = []
        try:
            while True:
                chunk = await asyncio.to_thread(next, stream, None)
                if chunk is None:
                    break
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                content = choices[0].get("delta", {}).get("content")
                if content:
                    parts.append(content)
                    yield content
        except GeneratorExit:
            # Only thrown at the yield, so no worker thread is inside the stream.
            close = getattr(stream, "close", None)
            if close is not None:
                close()
            raise
        finally:
            history.append({"role": "assistant", "content": "".join(parts)})


class LlamaCppSequence:
    """Conversation state on one context: the chat message history."""

    def __init__(self, context: "LlamaCppContext"):
        self.context = context
        self.history: List[Dict[str, str]] = []

    def new_session(self, system_prompt: Optional[str] = None) -> LlamaCppChatSession:
        return LlamaCppChatSession(self, system_prompt)

    def clear_history(self) -> None:
        self.history.clear()
        if self.context.llm is not None:
            self.context.llm.reset()


class LlamaCppContext:
    def __init__(self, llm: Llama, context_size: int, max_tokens: int, temperature: float):
        self.llm: Optional[Llama] = llm
        self.context_size = context_size
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._sequence = LlamaCppSequence(self)

    def get_sequence(self) -> LlamaCppSequence:
        return self._sequence

    def dispose(self) -> None:
        if self.llm is None:
            return
        llm, self.llm = self.llm, None
        llm.close()


class LlamaCppModel:
    def __init__(self, path: Path, gpu_layers: int, vocab: Llama, engine: "LlamaCppEngine"):
        self.path = path
        self.gpu_layers = gpu_layers
        self._vocab: Optional[Llama] = vocab
        self._engine = engine

    async def create_context(self, context_size: int) -> LlamaCppContext:
        if self._vocab is None:
            raise LoadError(f"Model has been disposed: {self.path}")

        def _build() -> Llama:
            return Llama(
                model_path=str(self.path),
                n_ctx=context_size,
                n_gpu_layers=self.gpu_layers,
                n_threads=self._engine.n_threads,
                verbose=self._engine.verbose,
            )

        try:
            llm = await asyncio.to_thread(_build)
        except Exception as e:
            raise LoadError(f"Failed to create context for {self.path.name}: {e}") from e

        logger.debug("Created llama.cpp context", model=self.path.name, context_size=context_size)
        return LlamaCppContext(
            llm,
            context_size=context_size,
            max_tokens=self._engine.max_tokens,
            temperature=self._engine.temperature,
        )

    def dispose(self) -> None:
        if self._vocab is None:
            return
        vocab, self._vocab = self._vocab, None
        vocab.close()


class LlamaCppEngine:
    """
    Loading a model reads its vocabulary only, which validates the GGUF file
    cheaply. Weights are mapped when a context is created.
    """

    def __init__(
        self,
        max_tokens: int = 512,
        temperature: float = 0.7,
        n_threads: Optional[int] = None,
        verbose: bool = False,
    ):
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.n_threads = n_threads or _default_threads()
        self.verbose = verbose

    async def load_model(self, path: Path, gpu_layers: int = 0) -> LlamaCppModel:
        path = Path(path)
        logger.info("Loading llama.cpp model", path=str(path), gpu_layers=gpu_layers)
        try:
            vocab = await asyncio.to_thread(
                Llama, model_path=str(path), vocab_only=True, verbose=self.verbose
            )
        except Exception as e:
            raise LoadError(f"Failed to load model {path.name}: {e}") from e
        return LlamaCppModel(path, gpu_layers, vocab, self)
