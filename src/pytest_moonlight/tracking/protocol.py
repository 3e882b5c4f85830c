"""Capability interface shared by the execution trackers.

The coverage store and the analyzer know nothing about how execution is
observed. A tracker is anything that can be started, optionally for one
more execution context, and stopped again without losing recorded hits.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ExecutionTracker(Protocol):
    """Observes execution and reports it to the coverage store."""

    @property
    def is_active(self) -> bool:
        """Return True between start() and stop()."""
        ...

    def start(self, context: Any = None) -> None:
        """Begin tracking, optionally for one additional execution context."""
        ...

    def stop(self) -> None:
        """Stop tracking. Hits recorded so far are kept."""
        ...
