"""Console reporter for Lua coverage results.

Produces human-readable output for terminal display with one row per file
and the project totals.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO


if TYPE_CHECKING:
    from pytest_moonlight.model.records import FileRecord
    from pytest_moonlight.snapshot import CoverageSnapshot


def format_ranges(lines: tuple[int, ...]) -> str:
    """Collapse sorted line numbers into ranges.

    Example:
        >>> format_ranges((1, 2, 3, 7, 9, 10))
        '1-3, 7, 9-10'
    """
    parts: list[str] = []
    start = previous = None
    for line in lines:
        if previous is not None and line == previous + 1:
            previous = line
            continue
        if start is not None:
            parts.append(str(start) if start == previous else f'{start}-{previous}')
        start = previous = line
    if start is not None:
        parts.append(str(start) if start == previous else f'{start}-{previous}')
    return ', '.join(parts)


class ConsoleReporter:
    """Reporter that writes coverage results to the console.

    Produces output in the following format:

        ================= pytest-moonlight coverage report =================

        File                     Lines   Funcs  Blocks  Missing
        src/calc.lua             66.7%   50.0%   50.0%  8-9
        ---------------------------------------------------------------------
        TOTAL                    66.7%   50.0%   50.0%

        =====================================================================

    Attributes:
        output: The file-like object to write to.
        root: Paths are shown relative to this directory when possible.
    """

    BORDER_CHAR = '='
    BORDER_WIDTH = 70

    def __init__(self, output: TextIO | None = None, root: str | None = None) -> None:
        """Initialize the console reporter.

        Args:
            output: File-like object to write to. Defaults to sys.stdout.
            root: Directory file paths are shown relative to.
        """
        self.output = output or sys.stdout
        self.root = root

    def write_report(self, snapshot: CoverageSnapshot) -> None:
        """Write the coverage report to the output.

        Args:
            snapshot: The merged snapshot of the run.
        """
        self._write_header()
        self._write_blank_line()

        if not snapshot.files:
            self._write_line('No Lua files were loaded.')
        else:
            self._write_table(snapshot)

        if snapshot.diagnostics:
            self._write_blank_line()
            self._write_diagnostics(snapshot)

        self._write_blank_line()
        self._write_footer()

    def _display_path(self, path: str) -> str:
        if self.root is None:
            return path
        relative = os.path.relpath(path, self.root)
        return path if relative.startswith(os.pardir) else relative

    def _write_header(self) -> None:
        """Write the report header."""
        title = ' pytest-moonlight coverage report '
        border_len = (self.BORDER_WIDTH - len(title)) // 2
        header = f'{self.BORDER_CHAR * border_len}{title}{self.BORDER_CHAR * border_len}'
        self._write_line(header)

    def _write_footer(self) -> None:
        """Write the report footer."""
        self._write_line(self.BORDER_CHAR * self.BORDER_WIDTH)

    def _write_table(self, snapshot: CoverageSnapshot) -> None:
        """Write one row per file followed by the totals."""
        names = {path: self._display_path(path) for path in snapshot.files}
        width = max(24, *(len(name) for name in names.values()))

        self._write_line(f'{"File":<{width}} {"Lines":>7} {"Funcs":>7} {"Blocks":>7}  Missing')
        for path, record in snapshot.files.items():
            self._write_line(f'{names[path]:<{width}} {self._row(record)}')

        summary = snapshot.summary
        self._write_line('-' * self.BORDER_WIDTH)
        totals = (
            f'{summary.line_coverage_pct:>6.1f}% '
            f'{summary.function_coverage_pct:>6.1f}% '
            f'{summary.block_coverage_pct:>6.1f}%'
        )
        self._write_line(f'{"TOTAL":<{width}} {totals}')
        if summary.unanalyzable_files:
            self._write_line(f'{summary.unanalyzable_files} file(s) could not be analyzed.')

    def _row(self, record: FileRecord) -> str:
        """Format the percentages and missing lines of one file."""
        if not record.analyzable:
            line, message = record.analysis_error or (0, 'unknown error')
            return f'{record.line_coverage_pct:>6.1f}%       -       -  (not analyzed: line {line}: {message})'
        return (
            f'{record.line_coverage_pct:>6.1f}% '
            f'{record.function_coverage_pct:>6.1f}% '
            f'{record.block_coverage_pct:>6.1f}%  '
            f'{format_ranges(record.missing)}'
        )

    def _write_diagnostics(self, snapshot: CoverageSnapshot) -> None:
        """Write the failures that reduced coverage fidelity."""
        self._write_line('Diagnostics:')
        for diagnostic in snapshot.diagnostics:
            location = ''
            if diagnostic.path is not None:
                location = self._display_path(diagnostic.path)
                if diagnostic.line is not None:
                    location += f':{diagnostic.line}'
                location += ': '
            self._write_line(f'  [{diagnostic.kind.value}] {location}{diagnostic.message}')

    def _write_blank_line(self) -> None:
        """Write a blank line."""
        self.output.write('\n')

    def _write_line(self, text: str) -> None:
        """Write a line of text followed by newline."""
        self.output.write(text + '\n')
