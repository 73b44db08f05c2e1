import typer

from gguflab.cli.commands import (
    benchmark,
    chat,
    clean,
    compare,
    doctor,
    install,
    models,
    run,
    version,
)
from gguflab.internal import paths
from gguflab.internal.config import get_settings
from gguflab.internal.logging import setup_logging

app = typer.Typer(
    name="gguflab",
    help="Download GGUF models and compare them side by side on your own machine.",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Also log to stderr."),
):
    settings = get_settings()
    setup_logging(
        log_level_name="DEBUG" if verbose else settings.log_level,
        log_file_path=paths.get_log_file(),
        console_output=verbose,
    )


app.command("models")(models.models)
app.command("install")(install.install)
app.command("clean")(clean.clean)
app.command("run")(run.run)
app.command("compare")(compare.compare)
app.command("benchmark")(benchmark.benchmark)
app.command("chat")(chat.chat)
app.command("doctor")(doctor.doctor)
app.command("version")(version.version)

if __name__ == "__main__":
    app()
