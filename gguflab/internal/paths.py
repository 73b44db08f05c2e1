import os
from pathlib import Path
from typing import Optional

from gguflab.internal.constants import CATALOG_FILE_NAME, TEMP_SUFFIX


# ---------------------------------------------------------------------
# Base directories
# ---------------------------------------------------------------------

def get_app_data_dir() -> Path:
    """
    Returns the application data directory.

    - Windows: %APPDATA%\\gguflab
    - Linux/macOS: ~/.gguflab
    """
    if os.name == "nt":  # Windows
        base = os.environ.get("APPDATA", str(Path.home()))
        path = Path(base) / "gguflab"
    else:  # Linux / macOS
        path = Path.home() / ".gguflab"

    path.mkdir(parents=True, exist_ok=True)
    return path


def get_log_dir() -> Path:
    path = get_app_data_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_log_file() -> Path:
    return get_log_dir() / "gguflab.log.json"


# ---------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------

def resolve_models_dir(configured: Optional[Path] = None) -> Path:
    """
    Absolute models directory. Relative settings resolve against the
    current working directory, the same place the catalog files are
    expected by the manual wget/curl commands.
    """
    base = Path(configured) if configured is not None else Path("models")
    if not base.is_absolute():
        base = Path.cwd() / base
    return base.resolve()


def get_catalog_path() -> Path:
    """
    The catalog shipped with the package.
    """
    return Path(__file__).resolve().parent.parent / "registry" / CATALOG_FILE_NAME


def temp_path_for(destination: Path) -> Path:
    return destination.with_name(destination.name + TEMP_SUFFIX)
