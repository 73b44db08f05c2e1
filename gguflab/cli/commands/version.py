import importlib.metadata

import typer

from gguflab.internal.logging import get_logger

logger = get_logger(__name__)


def version():
    """
    Show the gguflab version.
    """
    try:
        # Read version from pyproject.toml via installed package metadata
        package_version = importlib.metadata.version("gguflab")
        typer.echo(f"gguflab version: {package_version}")
    except importlib.metadata.PackageNotFoundError:
        typer.echo("gguflab is not installed or version metadata not found.")
        typer.echo("Please install the package first (e.g., pip install . or pip install -e .)")
        logger.warning("gguflab package version not found.")
        raise typer.Exit(1)
