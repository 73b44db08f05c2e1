import typer
from rich.console import Console

from gguflab.cli import core

console = Console()


def clean(
    yes: bool = typer.Option(False, "--yes", "-y", help="Delete without asking."),
):
    """
    Remove abandoned .tmp downloads and empty model files.
    """
    service = core.build_service()
    incomplete = service.list_incomplete()
    if not incomplete:
        console.print("[green]No incomplete downloads found.[/green]")
        return

    console.print("[yellow]Incomplete downloads:[/yellow]")
    for path in incomplete:
        console.print(f"  - {path.name}")

    if not yes and not typer.confirm("Clean up incomplete downloads?"):
        raise typer.Exit(0)

    removed = service.cleanup_incomplete()
    console.print(f"[green]Removed {len(removed)} file(s).[/green]")
