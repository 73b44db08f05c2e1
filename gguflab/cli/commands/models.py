import typer
from rich.console import Console
from rich.table import Table

from gguflab.cli import core

console = Console()


def models(
    installed: bool = typer.Option(False, "--installed", help="Only show models present on disk."),
):
    """
    List the models in the catalog and whether they are installed.
    """
    service = core.build_service()
    available = service.list_available()

    table = Table(title="Available Models")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Size", justify="right", style="green")
    table.add_column("Architecture")
    table.add_column("Best for")
    table.add_column("Installed", justify="center")

    shown = 0
    for descriptor in service.registry.all():
        is_installed = descriptor.id in available
        if installed and not is_installed:
            continue
        table.add_row(
            descriptor.id,
            descriptor.display_name,
            descriptor.size_label or "?",
            descriptor.architecture,
            descriptor.best_for,
            "[green]yes[/green]" if is_installed else "",
        )
        shown += 1

    if not shown:
        console.print("[yellow]No models installed. Run `gguflab install`.[/yellow]")
        return
    console.print(table)
    console.print(f"[dim]Models directory:[/dim] {service.store.models_dir}")
