"""Project-wide coverage totals."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from pytest_moonlight.model.records import percentage


if TYPE_CHECKING:
    from collections.abc import Iterable

    from pytest_moonlight.model.records import FileRecord


@dataclass(frozen=True)
class ProjectSummary:
    """Additive totals over every file record.

    Percentages are computed from the summed counts, never by averaging
    per-file percentages.

    Attributes:
        files: Number of file records.
        unanalyzable_files: Files whose analysis failed.
        total_lines: Executable lines across all files.
        covered_lines: Executed lines across all files.
        total_functions: Functions across all files.
        covered_functions: Functions entered at least once.
        total_blocks: Blocks across all files.
        covered_blocks: Blocks with an executed line.
    """

    files: int = 0
    unanalyzable_files: int = 0
    total_lines: int = 0
    covered_lines: int = 0
    total_functions: int = 0
    covered_functions: int = 0
    total_blocks: int = 0
    covered_blocks: int = 0

    @classmethod
    def from_records(cls, records: Iterable[FileRecord]) -> ProjectSummary:
        """Reduce file records to project totals.

        Args:
            records: File records to total.

        Returns:
            A new ProjectSummary.
        """
        totals = dict.fromkeys(
            (
                'files',
                'unanalyzable_files',
                'total_lines',
                'covered_lines',
                'total_functions',
                'covered_functions',
                'total_blocks',
                'covered_blocks',
            ),
            0,
        )
        for record in records:
            totals['files'] += 1
            totals['unanalyzable_files'] += 0 if record.analyzable else 1
            totals['total_lines'] += len(record.executable)
            totals['covered_lines'] += len(record.executed)
            totals['total_functions'] += len(record.functions)
            totals['covered_functions'] += sum(1 for f in record.functions if f.executed)
            totals['total_blocks'] += len(record.blocks)
            totals['covered_blocks'] += sum(1 for b in record.blocks if b.executed)
        return cls(**totals)

    @property
    def line_coverage_pct(self) -> float:
        """Return project line coverage as a percentage."""
        return percentage(self.covered_lines, self.total_lines)

    @property
    def function_coverage_pct(self) -> float:
        """Return project function coverage as a percentage."""
        return percentage(self.covered_functions, self.total_functions)

    @property
    def block_coverage_pct(self) -> float:
        """Return project block coverage as a percentage."""
        return percentage(self.covered_blocks, self.total_blocks)
