import asyncio
from typing import Awaitable, Callable, Iterable, List, Optional

from gguflab.adapters.download.downloader import DownloadOutcome, Downloader
from gguflab.adapters.storage_fs import FileSystemArtifactStore
from gguflab.internal.constants import DEFAULT_BACKOFF_SECONDS, DEFAULT_MAX_ATTEMPTS
from gguflab.internal.logging import get_logger
from gguflab.kernel.acquisition import (
    AcquisitionPlan,
    AttemptFailed,
    AttemptSucceeded,
    Attempting,
    Done,
    Idle,
    Start,
    State,
    Verified,
    Verifying,
    is_terminal,
    transition,
)
from gguflab.kernel.contracts import AcquisitionResult, ModelDescriptor, PresenceState
from gguflab.kernel.errors import DownloadAuthRequired, DownloadError, DownloadTransportFailure
from gguflab.registry.catalog import ModelRegistry

Sleeper = Callable[[float], Awaitable[None]]


class AcquisitionPipeline:
    """
    Drives the acquisition state machine: runs the blocking downloader in a
    worker thread, backs off between plain failures and switches to a fallback
    source on auth failures.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        store: FileSystemArtifactStore,
        downloader: Downloader,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Optional[Sleeper] = None,
    ):
        self.logger = get_logger(self.__class__.__name__)
        self.registry = registry
        self.store = store
        self.downloader = downloader
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep or asyncio.sleep

    async def acquire(self, descriptor_id: str, overwrite: bool = False) -> AcquisitionResult:
        descriptor = self.registry.get(descriptor_id)
        destination = self.store.path_for(descriptor)

        if self.store.status(descriptor) is PresenceState.COMPLETE and not overwrite:
            self.logger.info("Model already present", model=descriptor.id, path=str(destination))
            return AcquisitionResult(
                descriptor_id=descriptor.id,
                success=True,
                path=destination,
                skipped=True,
            )

        self.store.ensure_dir()
        plan = AcquisitionPlan(urls=descriptor.urls, max_attempts=self.max_attempts)
        state: State = transition(Idle(), Start(), plan)
        transfers = 0
        outcome: Optional[DownloadOutcome] = None

        while not is_terminal(state):
            if isinstance(state, Attempting):
                if state.backoff:
                    self.logger.info(
                        "Retrying download",
                        model=descriptor.id,
                        attempt=state.attempt,
                        max_attempts=self.max_attempts,
                        backoff_seconds=self.backoff_seconds,
                    )
                    await self._sleep(self.backoff_seconds)
                transfers += 1
                outcome, event = await self._attempt(descriptor, state)
                state = transition(state, event, plan)
            elif isinstance(state, Verifying):
                state = transition(state, Verified(size_mismatch=bool(outcome and outcome.size_mismatch)), plan)

        if isinstance(state, Done):
            self.logger.info(
                "Model acquired",
                model=descriptor.id,
                path=str(destination),
                source=state.url,
                attempts=transfers,
            )
            return AcquisitionResult(
                descriptor_id=descriptor.id,
                success=True,
                path=destination,
                attempts=transfers,
                source_url=state.url,
                size_mismatch=state.size_mismatch,
            )

        self.logger.error(
            "Download failed after all attempts",
            model=descriptor.id,
            kind=state.error_kind,
            reason=state.reason,
            attempts=transfers,
        )
        return AcquisitionResult(
            descriptor_id=descriptor.id,
            success=False,
            attempts=transfers,
            source_url=state.url,
            reason=state.reason,
            error_kind=state.error_kind,
        )

    async def _attempt(self, descriptor: ModelDescriptor, state: Attempting):
        destination = self.store.path_for(descriptor)
        try:
            outcome = await asyncio.to_thread(
                self.downloader.download, state.url, destination, descriptor.declared_size_bytes
            )
        except DownloadAuthRequired as e:
            self.logger.warning(
                "Source requires authentication",
                model=descriptor.id,
                url=state.url,
                attempt=state.attempt,
                kind=e.kind,
            )
            return None, AttemptFailed(reason=str(e), auth_required=True, error_kind=e.kind)
        except DownloadError as e:
            self.logger.warning(
                "Download attempt failed",
                model=descriptor.id,
                url=state.url,
                attempt=state.attempt,
                kind=e.kind,
                error=str(e),
            )
            return None, AttemptFailed(reason=str(e), error_kind=e.kind)
        except OSError as e:
            kind = DownloadTransportFailure.kind
            self.logger.warning(
                "Download attempt failed",
                model=descriptor.id,
                url=state.url,
                attempt=state.attempt,
                kind=kind,
                error=str(e),
            )
            return None, AttemptFailed(reason=str(e), error_kind=kind)
        return outcome, AttemptSucceeded()

    async def acquire_many(self, descriptor_ids: Iterable[str], overwrite: bool = False) -> List[AcquisitionResult]:
        """Acquire each id in turn; one result per id, in input order."""
        results = []
        for descriptor_id in descriptor_ids:
            results.append(await self.acquire(descriptor_id, overwrite=overwrite))
        return results
