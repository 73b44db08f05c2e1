from typing import Callable, List, Tuple

import typer
from rich.console import Console
from rich.table import Table

from gguflab.adapters.download.transports import default_transports
from gguflab.cli import core
from gguflab.internal import paths
from gguflab.internal.logging import get_logger
from gguflab.runtime import system

logger = get_logger(__name__)
console = Console()

CheckResult = Tuple[bool, str]


def _llama_cpp_importable() -> CheckResult:
    try:
        import llama_cpp
    except ImportError:
        return False, "llama-cpp-python is not installed. Run `pip install llama-cpp-python`."
    return True, f"llama-cpp-python {getattr(llama_cpp, '__version__', 'unknown')}"


def _any_transport() -> CheckResult:
    found = [t.name for t in default_transports() if t.is_available()]
    return bool(found), f"using {found[0]} (available: {', '.join(found)})" if found else "none"


def doctor():
    """
    Check the gguflab installation and system health.
    """
    service = core.build_service()
    models_dir = service.store.models_dir

    console.print("[bold blue]System[/bold blue]")
    console.print(f"  Python {system.get_python_version()} on {system.get_os_info()} ({system.get_cpu_arch()})")
    console.print(f"  {system.get_cpu_count()} CPUs, "
                  f"{system.get_available_ram_gb()} of {system.get_total_ram_gb()} GB RAM available")
    console.print(f"  App data: {paths.get_app_data_dir()}")
    console.print(f"  Models:   {models_dir}\n")

    def installed_models() -> CheckResult:
        installed = service.list_available()
        available = [d.id for d in service.registry.all() if d.id in installed]
        if not available:
            return False, "No models found. Run `gguflab install`."
        return True, ", ".join(available)

    def no_incomplete() -> CheckResult:
        incomplete = service.list_incomplete()
        if incomplete:
            return False, f"{len(incomplete)} incomplete download(s). Run `gguflab clean`."
        return True, "none"

    def models_dir_exists() -> CheckResult:
        return models_dir.is_dir(), "exists" if models_dir.is_dir() else "created on first install"

    checks: List[Tuple[str, Callable[[], CheckResult]]] = [
        ("Models directory", models_dir_exists),
        ("llama-cpp-python", _llama_cpp_importable),
        ("Download transport", _any_transport),
        ("Installed models", installed_models),
        ("Incomplete downloads", no_incomplete),
    ]

    table = Table(title="gguflab doctor")
    table.add_column("Check", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Details")

    failed = []
    for name, check in checks:
        ok, detail = check()
        if not ok:
            failed.append(name)
        table.add_row(name, "[green]PASSED[/green]" if ok else "[red]FAILED[/red]", detail)
    console.print(table)

    if failed:
        logger.warning("Doctor checks failed", checks=failed)
        console.print("[bold red]Some checks FAILED. Please review the output above.[/bold red]")
        raise typer.Exit(1)
    console.print("[bold green]All checks PASSED![/bold green]")
