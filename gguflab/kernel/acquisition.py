"""
Pure state machine for acquiring one artifact.

    Idle -> Attempting(url, attempt) -> Verifying -> Done
                     |
                     +-> Attempting(fallback, same attempt)   auth failure, untried fallback
                     +-> Attempting(same url, attempt + 1)    any other failure, budget left
                     +-> Failed                                budget exhausted

The runtime pipeline performs the I/O and feeds events into ``transition``;
nothing here touches the network or the filesystem.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class AcquisitionPlan:
    urls: tuple[str, ...]
    max_attempts: int = 3

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


# ---------------------------------------------------------------------
# States
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Attempting:
    url: str
    attempt: int
    tried: frozenset = frozenset()
    # True when this attempt follows a plain failure and must wait first.
    backoff: bool = False


@dataclass(frozen=True)
class Verifying:
    url: str
    attempt: int


@dataclass(frozen=True)
class Done:
    url: str
    attempt: int
    size_mismatch: bool = False


@dataclass(frozen=True)
class Failed:
    attempt: int
    reason: str
    error_kind: Optional[str] = None
    url: Optional[str] = None


State = Union[Idle, Attempting, Verifying, Done, Failed]


# ---------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class AttemptSucceeded:
    pass


@dataclass(frozen=True)
class AttemptFailed:
    reason: str
    auth_required: bool = False
    error_kind: Optional[str] = None


@dataclass(frozen=True)
class Verified:
    size_mismatch: bool = False


Event = Union[Start, AttemptSucceeded, AttemptFailed, Verified]


class InvalidTransition(Exception):
    def __init__(self, state: State, event: Event):
        self.state = state
        self.event = event
        super().__init__(f"No transition from {type(state).__name__} on {type(event).__name__}")


def is_terminal(state: State) -> bool:
    return isinstance(state, (Done, Failed))


def _next_untried(plan: AcquisitionPlan, tried: frozenset) -> Optional[str]:
    for url in plan.urls[1:]:
        if url not in tried:
            return url
    return None


def transition(state: State, event: Event, plan: AcquisitionPlan) -> State:
    """
    Compute the next state. Raises InvalidTransition for an event the
    current state does not accept.
    """
    if isinstance(state, Idle) and isinstance(event, Start):
        if not plan.urls:
            return Failed(attempt=0, reason="No source URL configured", error_kind="DownloadTransportFailure")
        first = plan.urls[0]
        return Attempting(url=first, attempt=1, tried=frozenset({first}))

    if isinstance(state, Attempting):
        if isinstance(event, AttemptSucceeded):
            return Verifying(url=state.url, attempt=state.attempt)

        if isinstance(event, AttemptFailed):
            if event.auth_required:
                fallback = _next_untried(plan, state.tried)
                if fallback is not None:
                    # Switching source does not spend budget and does not wait.
                    return Attempting(
                        url=fallback,
                        attempt=state.attempt,
                        tried=state.tried | {fallback},
                    )

            next_attempt = state.attempt + 1
            if next_attempt > plan.max_attempts:
                return Failed(
                    attempt=state.attempt,
                    reason=event.reason,
                    error_kind=event.error_kind,
                    url=state.url,
                )
            return Attempting(url=state.url, attempt=next_attempt, tried=state.tried, backoff=True)

    if isinstance(state, Verifying) and isinstance(event, Verified):
        # A size mismatch is reported, never fatal.
        return Done(url=state.url, attempt=state.attempt, size_mismatch=event.size_mismatch)

    raise InvalidTransition(state, event)
