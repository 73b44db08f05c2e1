"""
Core, reusable logic for CLI commands, decoupled from Typer.
"""
import asyncio
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from gguflab.internal.config import get_settings
from gguflab.kernel.execution import KernelExecutionService

T = TypeVar("T")


def _default_service() -> KernelExecutionService:
    return KernelExecutionService.from_settings(get_settings())


# Tests swap this to inject a service with a fake engine.
_service_factory: Callable[[], KernelExecutionService] = _default_service


def build_service() -> KernelExecutionService:
    return _service_factory()


def set_service_factory(factory: Optional[Callable[[], KernelExecutionService]]) -> None:
    global _service_factory
    _service_factory = factory or _default_service


def run_async(coro: Awaitable[T]) -> T:
    return asyncio.run(coro)


def display_names(service: KernelExecutionService) -> Dict[str, str]:
    return {d.id: d.display_name for d in service.registry.all()}


def format_bytes(size: int) -> str:
    if size >= 1024**3:
        return f"{size / 1024**3:.2f} GB"
    return f"{size / 1024**2:.1f} MB"
