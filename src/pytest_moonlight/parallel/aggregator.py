"""Snapshot aggregation for parallel test runs.

Each worker process of a parallel run (pytest-xdist) accumulates its own
coverage and writes it to ``snapshot-<worker>.json`` when it finishes. The
controller merges those files with SnapshotAggregator once every worker is
done. Merging is a pure union, so the order in which files are read never
changes the result.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from pytest_moonlight.diagnostics import Diagnostic, DiagnosticKind
from pytest_moonlight.errors import MergeConflictError
from pytest_moonlight.model.serialization import read_snapshot
from pytest_moonlight.snapshot import CoverageSnapshot


if TYPE_CHECKING:
    from pathlib import Path


logger = logging.getLogger(__name__)

SNAPSHOT_PATTERN = 'snapshot-*.json'


def snapshot_file_name(worker: str) -> str:
    """Return the snapshot file name for a worker id such as ``'gw0'``."""
    return f'snapshot-{worker}.json'


class SnapshotAggregator:
    """Merges snapshots from parallel workers.

    Thread-safe. A snapshot that conflicts with what has been merged so far
    is skipped as a whole and reported as a diagnostic; it never aborts the
    merge of the others.

    Attributes:
        merged_count: Number of snapshots merged successfully.

    Example:
        >>> aggregator = SnapshotAggregator()
        >>> aggregator.add(worker_snapshot)
        >>> report = aggregator.result()
    """

    def __init__(self) -> None:
        """Initialize an empty aggregator."""
        self._lock = threading.Lock()
        self._merged = CoverageSnapshot()
        self._diagnostics: list[Diagnostic] = []
        self._count = 0

    @property
    def merged_count(self) -> int:
        """Return the number of snapshots merged so far."""
        with self._lock:
            return self._count

    def add(self, snapshot: CoverageSnapshot, origin: str | None = None) -> bool:
        """Merge one snapshot.

        Args:
            snapshot: The snapshot to merge.
            origin: Where the snapshot came from, for diagnostics.

        Returns:
            True if the snapshot was merged, False if it conflicted.
        """
        with self._lock:
            try:
                self._merged = self._merged.merge(snapshot)
            except MergeConflictError as error:
                self._conflict(str(error), origin)
                return False
            self._count += 1
            return True

    def add_file(self, path: Path) -> bool:
        """Read and merge one snapshot file.

        Unreadable and invalid files are reported as diagnostics.

        Returns:
            True if the file was merged.
        """
        try:
            snapshot = read_snapshot(path)
        except MergeConflictError as error:
            with self._lock:
                self._conflict(str(error), str(path))
            return False
        except OSError as error:
            with self._lock:
                self._conflict(f'cannot read snapshot: {error}', str(path))
            return False
        return self.add(snapshot, origin=str(path))

    def add_directory(self, directory: Path) -> int:
        """Merge every worker snapshot in a directory.

        Files are read in name order; the result does not depend on it.

        Returns:
            The number of files merged.
        """
        if not directory.is_dir():
            return 0
        return sum(1 for path in sorted(directory.glob(SNAPSHOT_PATTERN)) if self.add_file(path))

    def result(self) -> CoverageSnapshot:
        """Return the merged snapshot including merge diagnostics."""
        with self._lock:
            if not self._diagnostics:
                return self._merged
            return CoverageSnapshot.build(self._merged.files, (*self._merged.diagnostics, *self._diagnostics))

    def _conflict(self, message: str, origin: str | None) -> None:
        """Record a rejected snapshot. Must be called with lock held."""
        logger.warning('Skipping coverage snapshot %s: %s', origin or '<memory>', message)
        self._diagnostics.append(Diagnostic(DiagnosticKind.MERGE_CONFLICT, message, path=origin))
