"""Tests for frozen coverage records and project totals."""

from dataclasses import FrozenInstanceError

import pytest

from pytest_moonlight.analysis.profile import BlockKind
from pytest_moonlight.model import BlockInfo, FileRecord, FunctionInfo, ProjectSummary, percentage


def make_record(path='/src/m.lua', executable=(1, 2, 4, 5), executed=(1, 2), **overrides):
    values = {
        'path': path,
        'source_lines': ('a', 'b', 'c', 'd', 'e'),
        'source_hash': 'h',
        'executable': frozenset(executable),
        'executed': frozenset(executed),
    }
    values.update(overrides)
    return FileRecord(**values)


@pytest.mark.small
class TestPercentage:
    """Tests for percentage."""

    def test_zero_total_is_fully_covered(self):
        """Nothing to cover reports 100%."""
        assert percentage(0, 0) == 100.0

    def test_ratio(self):
        """Percentages are plain ratios."""
        assert percentage(1, 4) == 25.0


@pytest.mark.small
class TestFileRecord:
    """Tests for FileRecord."""

    def test_is_frozen(self):
        """Records cannot be mutated."""
        record = make_record()

        with pytest.raises(FrozenInstanceError):
            record.executed = frozenset()  # type: ignore[misc]

    def test_missing_lines_are_sorted(self):
        """missing lists executable lines that never ran."""
        record = make_record(executed=(2,))

        assert record.missing == (1, 4, 5)

    def test_line_coverage(self):
        """Line coverage divides executed by executable."""
        record = make_record()

        assert record.line_coverage_pct == 50.0
        assert record.executable_count == 4
        assert record.executed_count == 2

    def test_function_and_block_coverage(self):
        """Function and block coverage count executed entries."""
        record = make_record(
            functions=(
                FunctionInfo('f@1', 'f', 1, 3, executed=True),
                FunctionInfo('g@4', 'g', 4, 5),
            ),
            blocks=(BlockInfo('if@2', BlockKind.IF, 2, 3, 'function@1'),),
        )

        assert record.function_coverage_pct == 50.0
        assert record.block_coverage_pct == 0.0

    def test_empty_file_reports_full_coverage(self):
        """A file without executable lines is 100% on every axis."""
        record = make_record(executable=(), executed=())

        assert record.line_coverage_pct == 100.0
        assert record.function_coverage_pct == 100.0
        assert record.block_coverage_pct == 100.0

    def test_function_lookup_by_name_or_id(self):
        """function() accepts the declared name and the id."""
        func = FunctionInfo('M.f@1', 'M.f', 1, 2)
        record = make_record(functions=(func,))

        assert record.function('M.f') is func
        assert record.function('M.f@1') is func
        assert record.function('nope') is None


@pytest.mark.small
class TestProjectSummary:
    """Tests for ProjectSummary."""

    def test_totals_are_summed_not_averaged(self):
        """Percentages come from summed counts."""
        big = make_record('/a.lua', executable=range(1, 11), executed=range(1, 11))
        small = make_record('/b.lua', executable=(1, 2), executed=())

        summary = ProjectSummary.from_records([big, small])

        assert summary.files == 2
        assert summary.total_lines == 12
        assert summary.covered_lines == 10
        assert summary.line_coverage_pct == pytest.approx(83.333, rel=1e-3)

    def test_counts_unanalyzable_files(self):
        """Files whose analysis failed are counted separately."""
        record = make_record(analyzable=False, analysis_error=(3, 'boom'))

        assert ProjectSummary.from_records([record]).unanalyzable_files == 1

    def test_empty_project(self):
        """No files means nothing missing."""
        summary = ProjectSummary.from_records([])

        assert summary.files == 0
        assert summary.line_coverage_pct == 100.0
