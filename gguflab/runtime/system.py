# System detection used by `gguflab doctor`
import platform
import sys

import psutil


def get_os_info() -> str:
    return f"{platform.system()} {platform.release()}"


def get_cpu_arch() -> str:
    return platform.machine()


def get_python_version() -> str:
    return sys.version.split()[0]


def get_cpu_count() -> int:
    return psutil.cpu_count(logical=True) or 1


def get_total_ram_gb() -> float:
    return round(psutil.virtual_memory().total / (1024**3), 2)


def get_available_ram_gb() -> float:
    return round(psutil.virtual_memory().available / (1024**3), 2)
