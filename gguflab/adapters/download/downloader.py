"""
Single resumable transfer of one artifact: temp file, verification, atomic
rename.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from gguflab.adapters.download.transports import Transport, default_transports
from gguflab.adapters.storage_fs import size_within_tolerance
from gguflab.internal import paths
from gguflab.internal.config import Settings
from gguflab.internal.constants import SIZE_TOLERANCE
from gguflab.internal.logging import get_logger
from gguflab.kernel.errors import DownloadSizeMismatch, DownloadTransportFailure

logger = get_logger(__name__)


@dataclass
class DownloadOutcome:
    url: str
    path: Path
    size_bytes: int
    transport: str
    size_mismatch: bool = False


class Downloader:
    def __init__(self, transports: Optional[Sequence[Transport]] = None, size_tolerance: float = SIZE_TOLERANCE):
        self.transports = list(transports) if transports is not None else default_transports()
        self.size_tolerance = size_tolerance

    @classmethod
    def from_settings(cls, settings: Settings, quiet: bool = False) -> "Downloader":
        transports = default_transports(
            connect_timeout=settings.http_connect_timeout,
            read_timeout=settings.http_read_timeout,
            user_agent=settings.user_agent,
            quiet=quiet,
        )
        return cls(transports=transports, size_tolerance=settings.size_tolerance)

    def select_transport(self) -> Transport:
        for transport in self.transports:
            if transport.is_available():
                return transport
        raise DownloadTransportFailure("No download transport available")

    def download(self, url: str, destination: Path, declared_size: Optional[int] = None) -> DownloadOutcome:
        """
        Fetch ``url`` into ``destination``. The destination is only touched by
        the final rename, so an existing file survives every failure.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_path = paths.temp_path_for(destination)
        if temp_path.exists():
            temp_path.unlink()

        transport = self.select_transport()
        logger.info("Starting download", url=url, destination=str(destination), transport=transport.name)

        try:
            transport.fetch(url, temp_path)

            if not temp_path.exists():
                raise DownloadTransportFailure("Download file not found after completion", url=url)
            size = temp_path.stat().st_size
            if size == 0:
                raise DownloadTransportFailure("Downloaded file is empty", url=url)

            size_mismatch = not size_within_tolerance(size, declared_size, self.size_tolerance)
            if size_mismatch:
                warning = DownloadSizeMismatch(destination, declared_size, size)
                logger.warning(
                    str(warning),
                    kind=warning.kind,
                    url=url,
                    expected=declared_size,
                    actual=size,
                )

            os.replace(temp_path, destination)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

        logger.info("Download complete", url=url, path=str(destination), size_bytes=size)
        return DownloadOutcome(
            url=url,
            path=destination,
            size_bytes=size,
            transport=transport.name,
            size_mismatch=size_mismatch,
        )
