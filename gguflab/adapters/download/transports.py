"""
Transfer strategies for a single URL -> file copy.

Each transport raises ``DownloadAuthRequired`` for 401/403-style failures and
``DownloadTransportFailure`` for everything else. The pipeline treats the
first as eligible for source fallback and the second only for retry.
"""
import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Protocol
from urllib.parse import urljoin

import requests

from gguflab.internal.constants import (
    DOWNLOAD_CHUNK_SIZE,
    MAX_REDIRECTS,
    PROGRESS_STEP_PERCENT,
    USER_AGENT,
)
from gguflab.internal.logging import get_logger
from gguflab.kernel.errors import DownloadAuthRequired, DownloadTransportFailure

logger = get_logger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}
AUTH_STATUSES = {401, 403}

ProgressCallback = Callable[[int, int, Optional[int]], None]


class Transport(Protocol):
    name: str

    def is_available(self) -> bool:
        ...

    def fetch(self, url: str, destination: Path) -> None:
        ...


# ---------------------------------------------------------------------
# External tools
# ---------------------------------------------------------------------

class _ExternalToolTransport:
    name = ""
    executable = ""
    auth_exit_codes: frozenset = frozenset()

    def __init__(self, read_timeout: float = 60.0, user_agent: str = USER_AGENT, quiet: bool = False):
        self.read_timeout = read_timeout
        self.user_agent = user_agent
        self.quiet = quiet

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def build_command(self, url: str, destination: Path) -> List[str]:
        raise NotImplementedError

    def describe_exit(self, code: int) -> str:
        return f"{self.executable} exited with code {code}"

    def fetch(self, url: str, destination: Path) -> None:
        command = self.build_command(url, destination)
        logger.debug("Running download tool", tool=self.name, url=url)
        output = subprocess.DEVNULL if self.quiet else None
        try:
            completed = subprocess.run(command, stdout=output, stderr=output, check=False)
        except OSError as e:
            raise DownloadTransportFailure(f"Failed to start {self.executable}: {e}", url=url) from e

        code = completed.returncode
        if code == 0:
            return
        if code in self.auth_exit_codes:
            raise DownloadAuthRequired(
                "401 Unauthorized - Authentication required", url=url, exit_code=code
            )
        raise DownloadTransportFailure(self.describe_exit(code), url=url, exit_code=code)


class WgetTransport(_ExternalToolTransport):
    """wget with resume, connection-refused retry and a read timeout."""

    name = "wget"
    executable = "wget"
    auth_exit_codes = frozenset({6})

    def build_command(self, url: str, destination: Path) -> List[str]:
        command = [
            self.executable,
            "--continue",
            "--retry-connrefused",
            "--tries=3",
            f"--read-timeout={int(self.read_timeout)}",
            f"--user-agent={self.user_agent}",
        ]
        if self.quiet:
            command.append("--quiet")
        command += ["-O", str(destination), url]
        return command

    def describe_exit(self, code: int) -> str:
        if code == 8:
            return "404 Not Found - File not available"
        return super().describe_exit(code)


class CurlTransport(_ExternalToolTransport):
    """curl following redirects, failing on HTTP errors, resuming partial files."""

    name = "curl"
    executable = "curl"
    auth_exit_codes = frozenset({22})

    def build_command(self, url: str, destination: Path) -> List[str]:
        command = [
            self.executable,
            "-L",
            "--fail",
            "--retry", "3",
            "--retry-delay", "2",
            "--retry-max-time", "120",
            "-C", "-",
            # Abort when the stream stalls below 1 byte/s for read_timeout seconds.
            "--speed-limit", "1",
            "--speed-time", str(int(self.read_timeout)),
            "-A", self.user_agent,
        ]
        command.append("-sS" if self.quiet else "--progress-bar")
        command += ["-o", str(destination), url]
        return command


# ---------------------------------------------------------------------
# In-process client
# ---------------------------------------------------------------------

class RequestsTransport:
    """
    Streams the body to disk with ``requests``. Redirects are followed by hand
    so that each hop is checked for auth failures.
    """

    name = "requests"

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        user_agent: str = USER_AGENT,
        max_redirects: int = MAX_REDIRECTS,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.session = session or requests.Session()
        self.timeout = (connect_timeout, read_timeout)
        self.user_agent = user_agent
        self.max_redirects = max_redirects
        self.on_progress = on_progress

    def is_available(self) -> bool:
        return True

    def _open(self, url: str) -> requests.Response:
        current = url
        for _ in range(self.max_redirects + 1):
            try:
                response = self.session.get(
                    current,
                    stream=True,
                    allow_redirects=False,
                    timeout=self.timeout,
                    headers={"User-Agent": self.user_agent},
                )
            except requests.exceptions.RequestException as e:
                raise DownloadTransportFailure(f"Request failed: {e}", url=url) from e

            status = response.status_code
            if status in REDIRECT_STATUSES:
                location = response.headers.get("Location")
                response.close()
                if not location:
                    raise DownloadTransportFailure(
                        f"HTTP {status} without Location header", url=url, status_code=status
                    )
                current = urljoin(current, location)
                logger.debug("Following redirect", url=url, location=current)
                continue
            if status in AUTH_STATUSES:
                response.close()
                raise DownloadAuthRequired(
                    f"{status} - Authentication required", url=url, status_code=status
                )
            if status != 200:
                response.close()
                raise DownloadTransportFailure(f"HTTP {status}", url=url, status_code=status)
            return response

        raise DownloadTransportFailure(f"Too many redirects (>{self.max_redirects})", url=url)

    def fetch(self, url: str, destination: Path) -> None:
        response = self._open(url)
        total = int(response.headers.get("Content-Length") or 0) or None
        downloaded = 0
        last_step = 0
        try:
            with open(destination, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
                    if total:
                        percent = min(100, downloaded * 100 // total)
                        step = percent // PROGRESS_STEP_PERCENT
                        if step != last_step:
                            last_step = step
                            self._report(url, step * PROGRESS_STEP_PERCENT, downloaded, total)
        except requests.exceptions.RequestException as e:
            raise DownloadTransportFailure(f"Stream interrupted: {e}", url=url) from e
        finally:
            response.close()

    def _report(self, url: str, percent: int, downloaded: int, total: int) -> None:
        logger.info("Download progress", url=url, percent=percent)
        if self.on_progress is not None:
            self.on_progress(percent, downloaded, total)


def default_transports(
    connect_timeout: float = 10.0,
    read_timeout: float = 60.0,
    user_agent: str = USER_AGENT,
    quiet: bool = False,
) -> List[Transport]:
    """wget, then curl, then the in-process client."""
    return [
        WgetTransport(read_timeout=read_timeout, user_agent=user_agent, quiet=quiet),
        CurlTransport(read_timeout=read_timeout, user_agent=user_agent, quiet=quiet),
        RequestsTransport(connect_timeout=connect_timeout, read_timeout=read_timeout, user_agent=user_agent),
    ]
