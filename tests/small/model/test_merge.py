"""Tests for merging records from independent runs."""

import pytest

from pytest_moonlight.errors import MergeConflictError
from pytest_moonlight.model import CoverageStore, merge_record_sets, merge_records


PATH = '/project/src/calc.lua'

SOURCE = """local M = {}

function M.add(a, b)
  return a + b
end

function M.sub(a, b)
  if a > b then
    return a - b
  end
  return 0
end

return M
"""


def run(*events):
    """Build a record from a fresh store fed with the given events."""
    store = CoverageStore()
    store.ensure_record(PATH, source=SOURCE)
    for event in events:
        if isinstance(event, int):
            store.record_hit(PATH, event)
        else:
            store.record_function_entry(PATH, event[1])
    return store.get(PATH)


@pytest.mark.small
class TestMergeRecords:
    """Tests for merge_records."""

    def test_union_of_executed_lines(self):
        """Executed lines are unioned and counts summed."""
        left = run(1, 14, ('enter', 3), 4)
        right = run(1, ('enter', 7), 8, 11)

        merged = merge_records(left, right)

        assert merged.executed == left.executed | right.executed
        assert merged.hit_counts[1] == 2
        assert merged.function('M.add').executed
        assert merged.function('M.sub').executed

    def test_is_commutative(self):
        """merge(a, b) == merge(b, a)."""
        left = run(1, ('enter', 3), 4)
        right = run(14, ('enter', 7), 8, 9)

        assert merge_records(left, right) == merge_records(right, left)

    def test_is_associative(self):
        """merge(merge(a, b), c) == merge(a, merge(b, c))."""
        a = run(1, ('enter', 3))
        b = run(4, ('enter', 7), 8)
        c = run(9, 11, 14, ('enter', 3))

        assert merge_records(merge_records(a, b), c) == merge_records(a, merge_records(b, c))

    def test_call_counts_are_summed(self):
        """Function call counts add up."""
        left = run(('enter', 3), ('enter', 3))
        right = run(('enter', 3))

        assert merge_records(left, right).function('M.add').call_count == 3

    def test_different_sources_conflict(self):
        """Records of different file versions cannot be merged."""
        other = CoverageStore()
        other.ensure_record(PATH, source=SOURCE.replace('0', '1'))

        with pytest.raises(MergeConflictError, match='source hashes'):
            merge_records(run(1), other.get(PATH))

    def test_different_paths_conflict(self):
        """Records of different files cannot be merged."""
        other = CoverageStore()
        other.ensure_record('/elsewhere.lua', source=SOURCE)

        with pytest.raises(MergeConflictError):
            merge_records(run(1), other.get('/elsewhere.lua'))


@pytest.mark.small
class TestMergeRecordSets:
    """Tests for merge_record_sets."""

    def test_disjoint_paths_are_carried_over(self):
        """Files present on one side only keep their record."""
        other = CoverageStore()
        other.ensure_record('/project/other.lua', source='return 1\n')

        merged = merge_record_sets({PATH: run(1)}, other.snapshot())

        assert list(merged) == ['/project/other.lua', PATH]

    def test_empty_side_is_identity(self):
        """Merging with nothing returns the same records."""
        records = {PATH: run(1, 4)}

        assert merge_record_sets(records, {}) == records
