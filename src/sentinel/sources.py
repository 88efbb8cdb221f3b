"""Source families, per-family poll results and the collector contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable


class SourceFamily(Enum):
    """A class of data origin polled on its own cadence."""

    SYSTEM = "system"
    GPU = "gpu"
    CONTAINERS = "containers"
    THERMAL = "thermal"


@dataclass(slots=True, frozen=True)
class Fresh:
    """Data produced by the most recent poll."""

    data: Any
    as_of: float

    is_fresh = True

    @property
    def last_good(self) -> Any:
        return self.data


@dataclass(slots=True, frozen=True)
class Stale:
    """The latest poll failed; ``last_good`` is the newest Fresh data."""

    last_good: Any
    as_of: float
    reason: str = ""

    is_fresh = False

    @property
    def data(self) -> Any:
        return self.last_good


@dataclass(slots=True, frozen=True)
class Unavailable:
    """The family has no usable data this cycle."""

    reason: str

    is_fresh = False
    data = None
    as_of = None
    last_good = None


SourceResult = Fresh | Stale | Unavailable


@runtime_checkable
class Collector(Protocol):
    """
    One source family's data origin.

    ``poll()`` is a single blocking call returning :class:`Fresh` or
    :class:`Unavailable`; it may also raise. It must not retry internally,
    retry and backoff policy belong to the orchestrator.
    """

    family: SourceFamily

    def is_available(self) -> bool: ...

    def poll(self) -> SourceResult: ...
