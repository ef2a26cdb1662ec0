"""Value types shared by the supervisor and the streaming inserter."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ModelIdentifier:
    """A ``name:tag`` pair naming a model the backend must have pulled."""

    name: str
    tag: str = DEFAULT_TAG

    def __post_init__(self) -> None:
        name = self.name.strip().lower()
        tag = self.tag.strip().lower()
        if not name:
            raise ValueError("model name must not be empty")
        if not tag:
            raise ValueError(f"model tag must not be empty for {name!r}")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "tag", tag)

    @classmethod
    def parse(cls, raw: str) -> ModelIdentifier:
        text = raw.strip()
        # A registry host may carry a port (host:5000/name:tag), so only a
        # colon after the last slash separates the tag.
        slash = text.rfind("/")
        colon = text.rfind(":")
        if colon > slash:
            return cls(text[:colon], text[colon + 1 :])
        return cls(text)

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


class ServiceState(Enum):
    NOT_INSTALLED = "not_installed"
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"


@dataclass(frozen=True)
class PullProgress:
    """One progress record from the backend's pull stream."""

    status: str
    completed: int = 0
    total: int = 0

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        pct = self.completed * 100 // self.total
        return max(0, min(100, pct))


@dataclass(frozen=True)
class ProgressUpdate:
    """Normalized progress forwarded to callers; ``increment`` never goes negative."""

    message: str
    increment: int
    percent: int


@dataclass(frozen=True)
class ReadySignal:
    state: ServiceState
    pid: int | None = None
    restarts: int = 0
    spawned: bool = False


@dataclass(frozen=True, order=True)
class Position:
    line: int
    column: int


@dataclass(frozen=True)
class Range:
    start: Position
    end: Position

    @property
    def is_empty(self) -> bool:
        return self.start == self.end


class SuggestionState(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DISCARDED = "discarded"


class InserterState(Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ACCEPTED = "accepted"
    DISCARDED = "discarded"


@dataclass
class Suggestion:
    """AI-generated text inserted into a document but not yet confirmed.

    ``anchor`` is where generation began and never moves. ``span`` only grows
    while the suggestion is pending.
    """

    anchor: Position
    span: Range = field(init=False)
    text: str = ""
    state: SuggestionState = SuggestionState.PENDING

    def __post_init__(self) -> None:
        self.span = Range(self.anchor, self.anchor)

    @property
    def pending(self) -> bool:
        return self.state is SuggestionState.PENDING
