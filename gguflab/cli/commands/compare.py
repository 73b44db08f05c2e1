from typing import List, Optional

import typer
from rich.console import Console

from gguflab.cli import core
from gguflab.kernel.errors import GgufLabError
from gguflab.runtime.coordinator import compare_results

console = Console()


def select_models(service, model_ids: Optional[List[str]]) -> List[str]:
    """Enable exactly the given ids, or every installed model when none are given."""
    if not model_ids:
        return service.enable_available()
    unknown = [m for m in model_ids if m not in service.registry]
    if unknown:
        raise typer.BadParameter(f"Unknown model(s): {', '.join(unknown)}")
    for descriptor in service.registry.all():
        service.set_enabled(descriptor.id, descriptor.id in model_ids)
    return [d.id for d in service.registry.enabled()]


def compare(
    prompt: str = typer.Argument(..., help="Prompt sent to every model."),
    model_ids: Optional[List[str]] = typer.Option(None, "--model", "-m", help="Model id to include. Repeatable."),
    sequential: bool = typer.Option(False, "--sequential", help="Run one model at a time, streaming output."),
    compact: bool = typer.Option(False, "--compact", help="One line per model, fastest first."),
):
    """
    Run one prompt against several models and compare the answers.
    """
    service = core.build_service()
    enabled = select_models(service, model_ids)
    if not enabled:
        console.print("[red]No installed models to compare. Run `gguflab install` first.[/red]")
        raise typer.Exit(1)

    names = core.display_names(service)

    current = None

    def on_chunk(descriptor_id: str, chunk: str) -> None:
        nonlocal current
        if current != descriptor_id:
            current = descriptor_id
            typer.echo(f"\n{names.get(descriptor_id, descriptor_id)}:\n" + "-" * 50)
        typer.echo(chunk, nl=False)

    def on_result(result) -> None:
        if result.is_error:
            typer.echo(f"\n{result.response}")
        else:
            typer.echo(f"\nTime: {int(result.duration_ms)}ms")

    async def run_batch():
        async with service:
            if sequential:
                return await service.run_sequential(prompt, on_chunk=on_chunk, on_result=on_result)
            console.print(f"Running inference on {len(enabled)} models in parallel...")
            return await service.run_parallel(prompt)

    try:
        results = core.run_async(run_batch())
    except GgufLabError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    typer.echo(compare_results(results, compact=compact, display_names=names))
