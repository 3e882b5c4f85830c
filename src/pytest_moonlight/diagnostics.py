"""Diagnostics attached to a coverage snapshot.

Every failure inside the coverage engine degrades fidelity instead of
aborting the test run. The failure itself is kept here so users can see
which files were measured with reduced precision and why.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import threading


class DiagnosticKind(Enum):
    """Category of a recorded failure.

    Attributes:
        ANALYSIS: Source could not be analyzed; the file is unanalyzable.
        INSTRUMENTATION: Rewriting failed; the file fell back to the hook tracker.
        HOOK_INSTALL: The runtime refused the hook; tracking is off for a context.
        MERGE_CONFLICT: A worker snapshot could not be merged.
        SOURCE_UNAVAILABLE: The source of a hit file could not be read.
    """

    ANALYSIS = 'analysis'
    INSTRUMENTATION = 'instrumentation'
    HOOK_INSTALL = 'hook_install'
    MERGE_CONFLICT = 'merge_conflict'
    SOURCE_UNAVAILABLE = 'source_unavailable'


@dataclass(frozen=True)
class Diagnostic:
    """One recorded failure.

    Attributes:
        kind: Category of the failure.
        message: Human-readable description.
        path: File the failure applies to, if any.
        line: Offending line, if known.
    """

    kind: DiagnosticKind
    message: str
    path: str | None = None
    line: int | None = None

    def sort_key(self) -> tuple[str, str, int, str]:
        """Return a key that orders diagnostics deterministically."""
        return (self.kind.value, self.path or '', self.line or 0, self.message)


class DiagnosticLog:
    """Thread-safe, de-duplicating collection of diagnostics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[Diagnostic, None] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def add(self, diagnostic: Diagnostic) -> None:
        """Record a diagnostic; duplicates are ignored."""
        with self._lock:
            self._items[diagnostic] = None

    def extend(self, diagnostics: tuple[Diagnostic, ...] | list[Diagnostic]) -> None:
        """Record several diagnostics."""
        with self._lock:
            for diagnostic in diagnostics:
                self._items[diagnostic] = None

    def items(self) -> tuple[Diagnostic, ...]:
        """Return all diagnostics in deterministic order."""
        with self._lock:
            return tuple(sorted(self._items, key=Diagnostic.sort_key))

    def clear(self) -> None:
        """Forget all diagnostics."""
        with self._lock:
            self._items.clear()
