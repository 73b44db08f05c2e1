from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from gguflab.cli import core
from gguflab.cli.commands.compare import select_models
from gguflab.internal.constants import BENCHMARK_PROMPTS
from gguflab.kernel.errors import GgufLabError

console = Console()


def benchmark(
    model_ids: Optional[List[str]] = typer.Option(None, "--model", "-m", help="Model id to include. Repeatable."),
    prompts: Optional[List[str]] = typer.Option(None, "--prompt", "-p", help="Custom prompt. Repeatable."),
):
    """
    Rank installed models by response time over a few short prompts.
    """
    service = core.build_service()
    if not select_models(service, model_ids):
        console.print("[red]No installed models to benchmark. Run `gguflab install` first.[/red]")
        raise typer.Exit(1)

    names = core.display_names(service)

    async def run_rounds():
        async with service:
            return await service.benchmark(prompts or BENCHMARK_PROMPTS)

    try:
        rounds = core.run_async(run_rounds())
    except GgufLabError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    for bench_round in rounds:
        table = Table(title=f'Speed Ranking: "{bench_round.prompt}"')
        table.add_column("#", justify="right")
        table.add_column("Model", style="cyan")
        table.add_column("Time", justify="right", style="green")
        table.add_column("Tokens/s", justify="right")
        for index, result in enumerate(bench_round.results, start=1):
            table.add_row(
                str(index),
                names.get(result.descriptor_id, result.descriptor_id),
                "ERROR" if result.is_error else f"{int(result.duration_ms)}ms",
                f"{result.tokens_per_second:.1f}" if result.tokens_per_second else "-",
            )
        console.print(table)
