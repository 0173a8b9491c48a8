"""Error taxonomy for benchmark runs.

Every error here is fatal to the instance's workflow: it bubbles up to
``run_instance``, gets recorded as the run's failure reason, and the process
exits non-zero. Retries are not attempted at this layer.
"""

from __future__ import annotations

from typing import Any


class BenchError(Exception):
    """Base class for all benchmark run failures."""


class ConfigurationError(BenchError):
    """Unknown role, unknown test case, or malformed parameter."""


class CoordinationError(BenchError):
    """A publish, subscribe or barrier call against the sync service failed."""


class ConnectError(BenchError):
    """The requestor could not dial the provider."""


class ExchangeError(BenchError):
    """A store, announce or fetch against the exchange service failed.

    Carries the identifier and the phase (``put``, ``announce``, ``get``)
    so failures can be told apart in the results.
    """

    def __init__(self, message: str, *, cid: Any = None, phase: str = "") -> None:
        super().__init__(message)
        self.cid = cid
        self.phase = phase

    def __str__(self) -> str:
        base = super().__str__()
        if self.cid is not None:
            return f"{base} (phase={self.phase or '?'}, cid={self.cid})"
        return base


class FetchError(BenchError):
    """A per-item fetch failure that aborts a strict-mode requestor."""

    def __init__(self, record: Any) -> None:
        super().__init__(
            f"fetch #{record.position} {record.outcome.value}: "
            f"{record.cid or '<none>'} ({record.error})"
        )
        self.record = record
