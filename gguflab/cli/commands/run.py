import typer

from gguflab.cli import core
from gguflab.internal.logging import get_logger
from gguflab.kernel.errors import ArtifactMissing, GgufLabError

logger = get_logger(__name__)


def resolve_model(service, model: str) -> str:
    """A catalog id, or a path to a .gguf file registered on the fly."""
    if model.lower().endswith(".gguf"):
        return service.load_custom(model).id
    return model


def run(
    model: str = typer.Argument(..., help="Catalog id or path to a .gguf file."),
    prompt: str = typer.Argument(..., help="Prompt to send."),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Print text as it is generated."),
):
    """
    Run one prompt against one model.
    """
    service = core.build_service()

    async def run_once():
        async with service:
            descriptor_id = resolve_model(service, model)
            return await service.run_single(
                descriptor_id,
                prompt,
                streaming=stream,
                on_chunk=lambda chunk: typer.echo(chunk, nl=False),
            )

    try:
        result = core.run_async(run_once())
    except ArtifactMissing as e:
        typer.echo(f"{e}\nRun `gguflab install {model}` first.", err=True)
        raise typer.Exit(1)
    except GgufLabError as e:
        logger.error("Run failed", model=model, kind=e.kind, error=str(e))
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    if stream:
        typer.echo("")
    else:
        typer.echo(result.response.strip())
    typer.echo(typer.style(f"\nTime: {int(result.duration_ms)}ms", fg=typer.colors.BRIGHT_BLACK), err=True)
