import asyncio

import typer

from gguflab.cli import core
from gguflab.cli.commands.run import resolve_model
from gguflab.internal.constants import DEFAULT_SYSTEM_PROMPT
from gguflab.internal.logging import get_logger
from gguflab.kernel.errors import ArtifactMissing, GgufLabError, InferenceFailure

logger = get_logger(__name__)

EXIT_COMMANDS = {"/exit", "exit", "quit"}


def chat(
    model: str = typer.Argument(..., help="Catalog id or path to a .gguf file."),
    system_prompt: str = typer.Option(DEFAULT_SYSTEM_PROMPT, "--system", help="System prompt for the conversation."),
):
    """
    Chat with one model. Commands: /clear, /exit.
    """
    service = core.build_service()

    async def chat_loop():
        async with service:
            descriptor_id = resolve_model(service, model)
            descriptor = service.registry.get(descriptor_id)
            conversation = await service.open_chat(descriptor_id, system_prompt=system_prompt)

            typer.echo(f"\nModel: {descriptor.display_name} ({descriptor.size_label or 'custom'})")
            if descriptor.capabilities:
                typer.echo(f"Capabilities: {', '.join(descriptor.capabilities)}")
            if descriptor.best_for:
                typer.echo(f"Best for: {descriptor.best_for}")
            typer.echo("\ngguflab chat started. Commands: /clear (new conversation), /exit (quit)\n")

            try:
                while True:
                    try:
                        user_input = (await asyncio.to_thread(input, "You: ")).strip()
                    except EOFError:
                        break

                    if not user_input:
                        continue
                    if user_input.lower() in EXIT_COMMANDS:
                        typer.echo("Goodbye.")
                        break
                    if user_input.lower() == "/clear":
                        await conversation.clear()
                        typer.echo("Conversation cleared!")
                        continue
                    if user_input.startswith("/"):
                        typer.echo("Unknown command. Available: /clear, /exit")
                        continue

                    typer.echo("Assistant: ", nl=False)
                    try:
                        await conversation.send(user_input, on_chunk=lambda chunk: typer.echo(chunk, nl=False))
                    except InferenceFailure as e:
                        logger.error("Chat turn failed", model=descriptor_id, kind=e.kind, error=str(e))
                        typer.echo(f"\n[Error: {e}] Try /clear to start a new conversation.", nl=False)
                    typer.echo("")
            finally:
                await conversation.close()

    try:
        core.run_async(chat_loop())
    except ArtifactMissing as e:
        typer.echo(f"{e}\nRun `gguflab install {model}` first.", err=True)
        raise typer.Exit(1)
    except GgufLabError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
