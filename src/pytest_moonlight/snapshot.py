"""Immutable coverage snapshots for report formatters.

A snapshot is a point-in-time copy of the coverage store. Formatters receive
nothing else, and nothing in a snapshot can be mutated, so it is safe to
hand the same snapshot to several formatters running concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from pytest_moonlight.diagnostics import Diagnostic
from pytest_moonlight.model.merge import merge_record_sets
from pytest_moonlight.model.store import normalize_path
from pytest_moonlight.model.summary import ProjectSummary


if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from pytest_moonlight.model.records import FileRecord
    from pytest_moonlight.model.store import CoverageStore


@dataclass(frozen=True)
class CoverageSnapshot:
    """Frozen view of every file record plus the project summary.

    Attributes:
        files: Read-only mapping of normalized path to file record.
        summary: Totals over ``files``.
        diagnostics: Failures that reduced coverage fidelity, in stable order.
    """

    files: Mapping[str, FileRecord] = field(default_factory=lambda: MappingProxyType({}))
    summary: ProjectSummary = field(default_factory=ProjectSummary)
    diagnostics: tuple[Diagnostic, ...] = ()

    @classmethod
    def build(cls, files: Mapping[str, FileRecord], diagnostics: Iterable[Diagnostic] = ()) -> CoverageSnapshot:
        """Freeze records and diagnostics into a snapshot with a fresh summary."""
        ordered = dict(sorted(files.items()))
        return cls(
            files=MappingProxyType(ordered),
            summary=ProjectSummary.from_records(ordered.values()),
            diagnostics=tuple(sorted(set(diagnostics), key=Diagnostic.sort_key)),
        )

    def file(self, path: str) -> FileRecord | None:
        """Return the record for a path, accepting relative paths."""
        return self.files.get(path) or self.files.get(normalize_path(path))

    def merge(self, other: CoverageSnapshot) -> CoverageSnapshot:
        """Return the union of this snapshot and another.

        Raises:
            MergeConflictError: If the snapshots disagree about a file's structure.
        """
        return CoverageSnapshot.build(
            merge_record_sets(self.files, other.files),
            self.diagnostics + other.diagnostics,
        )


def export(store: CoverageStore, diagnostics: Iterable[Diagnostic] = ()) -> CoverageSnapshot:
    """Freeze the store into a snapshot.

    Args:
        store: The coverage store of the run.
        diagnostics: Diagnostics collected outside the store.

    Returns:
        A snapshot holding deep copies of every record.
    """
    return CoverageSnapshot.build(store.snapshot(), (*store.diagnostics.items(), *diagnostics))
