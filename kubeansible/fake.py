"""A stand-in runner that replays prepared events without running Ansible."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import timedelta

from .events import JobEvent


class FakeRunResult:
    """Result of a fake run: the prepared events and stdout."""

    def __init__(self, events: list[JobEvent], stdout: str) -> None:
        self._events = list(events)
        self._stdout = stdout

    def events(self) -> Iterator[JobEvent]:
        """Yield the prepared events in order."""
        yield from self._events

    def stdout(self) -> str:
        """Return the prepared stdout; raise FileNotFoundError if there is none."""
        if self._stdout:
            return self._stdout
        raise FileNotFoundError("unable to find standard out")


@dataclass
class FakeRunner:
    """Runner double whose runs fail with `error` or replay `job_events`."""

    finalizer: str = ""
    reconcile_period: timedelta = timedelta(0)
    manage_status: bool = False
    watch_dependent_resources: bool = False
    watch_cluster_scoped_resources: bool = False
    error: Exception | None = None
    job_events: list[JobEvent] = field(default_factory=list)
    stdout: str = ""

    def run(self, ident: str, obj: dict, kubeconfig: str) -> FakeRunResult:
        """Raise the configured error, or return a result replaying the events."""
        if self.error is not None:
            raise self.error
        return FakeRunResult(self.job_events, self.stdout)

    def get_reconcile_period(self) -> timedelta | None:
        """Return the reconcile period, or None when it is zero."""
        return self.reconcile_period if self.reconcile_period != timedelta(0) else None

    def get_finalizer(self) -> str | None:
        """Return the finalizer name, or None when it is empty."""
        return self.finalizer or None