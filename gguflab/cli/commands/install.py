from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from gguflab.cli import core
from gguflab.kernel.errors import UnknownModel

console = Console()


def install(
    model_ids: Optional[List[str]] = typer.Argument(None, help="Catalog ids to download, e.g. qwen2.5:0.5b"),
    overwrite: bool = typer.Option(False, "--overwrite", help="Download again even if the file is complete."),
):
    """
    Download one or more models from the catalog.
    """
    service = core.build_service()

    if not model_ids:
        # ------------------------------------------------------------------
        # Models Table
        # ------------------------------------------------------------------
        available = service.list_available()
        table = Table(title="Available Models")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Description")
        table.add_column("Size", justify="right", style="green")
        for descriptor in service.registry.all():
            marker = " [green](installed)[/green]" if descriptor.id in available else ""
            table.add_row(descriptor.id, descriptor.description + marker, descriptor.size_label or "?")
        console.print(table)
        model_ids = [typer.prompt("Enter the ID of the model to install").strip()]

    for model_id in model_ids:
        if model_id not in service.registry:
            console.print(f"[red]Model '{model_id}' not found.[/red]")
            raise typer.Exit(1)

    incomplete = service.list_incomplete()
    if incomplete:
        console.print(f"[yellow]Found {len(incomplete)} incomplete download(s). Run `gguflab clean` to remove them.[/yellow]")

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    try:
        results = core.run_async(service.acquire_many(model_ids, overwrite=overwrite))
    except UnknownModel as exc:
        console.print(f"[red]Installation failed:[/red] {exc}")
        raise typer.Exit(1)

    failed = False
    for result in results:
        if result.skipped:
            console.print(f"[green]Model '{result.descriptor_id}' already exists.[/green]")
        elif result.success:
            console.print(f"[green]Model '{result.descriptor_id}' installed successfully.[/green]")
            if result.size_mismatch:
                console.print("[yellow]File size differs from expected. This might be due to model updates.[/yellow]")
        else:
            failed = True
            console.print(f"[red]Installation of '{result.descriptor_id}' failed:[/red] {result.reason}")
            continue
        console.print(f"[dim]Model path:[/dim] {result.path} ({core.format_bytes(result.path.stat().st_size)})")

    if failed:
        raise typer.Exit(1)
