"""Tests for the shared coverage store."""

import threading

import pytest

from pytest_moonlight.diagnostics import DiagnosticKind, DiagnosticLog
from pytest_moonlight.errors import MergeConflictError
from pytest_moonlight.model import CoverageStore, normalize_path
from pytest_moonlight.snapshot import export


PATH = '/project/src/calc.lua'

SCENARIO = """M = {}
local counter = 0

function M.func1()
  return counter + 1
end

function M.func2()
  return counter + 2
end
"""

BRANCHY = """local function pick(x)
  if x then
    return 1
  else
    return 2
  end
end
return pick
"""

MULTILINE = """local acc = 0
acc = acc
  + 1
return acc
"""


@pytest.fixture
def store():
    """A store that already knows the scenario file."""
    store = CoverageStore()
    store.ensure_record(PATH, source=SCENARIO)
    return store


@pytest.mark.small
class TestEnsureRecord:
    """Tests for record creation."""

    def test_returns_profile_once(self):
        """The profile is returned only when the record is created."""
        store = CoverageStore()

        first = store.ensure_record(PATH, source=SCENARIO)
        second = store.ensure_record(PATH, source=SCENARIO)

        assert first is not None
        assert second is None
        assert len(store) == 1

    def test_paths_are_normalized(self):
        """Equivalent spellings of a path share one record."""
        store = CoverageStore()
        store.ensure_record('/project/src/../src/calc.lua', source=SCENARIO)

        assert PATH in store
        assert store.paths() == [normalize_path(PATH)]

    def test_unanalyzable_file_is_flagged(self):
        """An analysis failure becomes a degraded record plus a diagnostic."""
        diagnostics = DiagnosticLog()
        store = CoverageStore(diagnostics)

        store.ensure_record(PATH, source='if x then\n')
        record = store.get(PATH)

        assert record is not None
        assert not record.analyzable
        assert record.analysis_error == (1, "'end' expected to close 'if'")
        assert [d.kind for d in diagnostics.items()] == [DiagnosticKind.ANALYSIS]

    def test_unreadable_file_is_reported(self, tmp_path):
        """A missing source becomes a SOURCE_UNAVAILABLE diagnostic."""
        store = CoverageStore()

        store.ensure_record(tmp_path / 'missing.lua')

        assert [d.kind for d in store.diagnostics.items()] == [DiagnosticKind.SOURCE_UNAVAILABLE]


@pytest.mark.small
class TestRecordHit:
    """Tests for line hits."""

    def test_executed_is_subset_of_executable(self, store):
        """Hits on non-executable lines never reach executed."""
        for line in range(1, 12):
            store.record_hit(PATH, line)

        record = store.get(PATH)
        assert record.executed <= record.executable
        assert record.ignored_hits == 5

    def test_executed_is_monotonic(self, store):
        """A line stays executed and only its count grows."""
        store.record_hit(PATH, 1)
        before = store.get(PATH)
        store.record_hit(PATH, 1)
        store.record_hit(PATH, 2)
        after = store.get(PATH)

        assert before.executed <= after.executed
        assert after.hit_counts[1] == 2

    def test_degraded_record_accepts_any_positive_line(self):
        """Unanalyzable files treat every hit line as executable."""
        store = CoverageStore()
        store.ensure_record(PATH, source='if x then\n')

        store.record_hits(PATH, [3, 7])

        record = store.get(PATH)
        assert record.executable == frozenset({3, 7})
        assert record.executed == frozenset({3, 7})

    def test_continuation_hit_credits_statement_start(self):
        """A line event inside a multi-line statement marks its first line."""
        store = CoverageStore()
        store.ensure_record(PATH, source=MULTILINE)

        store.record_hit(PATH, 3)

        record = store.get(PATH)
        assert record.executed == frozenset({2})
        assert record.ignored_hits == 0

    def test_continuation_survives_merge(self):
        """Records merged from another run keep the statement starts."""
        source_store = CoverageStore()
        source_store.ensure_record(PATH, source=MULTILINE)
        store = CoverageStore()
        store.merge(export(source_store))

        store.record_hit(PATH, 3)

        assert store.get(PATH).executed == frozenset({2})

    def test_concurrent_hits_are_all_counted(self, store):
        """Hits from several threads are neither lost nor duplicated."""

        def worker():
            for _ in range(500):
                store.record_hit(PATH, 5)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get(PATH).hit_counts[5] == 2000


@pytest.mark.small
class TestFunctionEntry:
    """Tests for function and block entry."""

    def test_entry_marks_header_line_and_function(self, store):
        """Entering a function executes its header line."""
        store.record_hits(PATH, [1, 2])
        store.record_function_entry(PATH, 4)
        store.record_hit(PATH, 5)

        record = store.get(PATH)
        assert record.executed == frozenset({1, 2, 4, 5})
        assert record.line_coverage_pct == pytest.approx(66.7, abs=0.05)
        assert record.function_coverage_pct == 50.0
        assert record.function('M.func1').executed
        assert record.function('M.func1').call_count == 1
        assert not record.function('M.func2').executed

    def test_entry_by_id(self, store):
        """An explicit id selects the function even without a line match."""
        store.record_function_entry(PATH, 8, 'M.func2@8')

        assert store.get(PATH).function('M.func2').call_count == 1

    def test_entry_lines_are_exposed(self, store):
        """Definition lines are reported for the hook tracker to skip."""
        assert store.entry_lines(PATH) == frozenset({4, 8})

    def test_block_executed_from_owned_lines(self):
        """A block is executed once a line it owns runs."""
        store = CoverageStore()
        store.ensure_record(PATH, source=BRANCHY)

        store.record_function_entry(PATH, 1)
        store.record_hits(PATH, [2, 3, 8])

        record = store.get(PATH)
        assert record.block('if@2').executed
        assert not record.block('else@4').executed
        assert record.block('function@1').executed

    def test_block_entry_counts(self):
        """Explicit block entries are counted; unknown ids are ignored."""
        store = CoverageStore()
        store.ensure_record(PATH, source=BRANCHY)

        store.record_block_entry(PATH, 'if@2')
        store.record_block_entry(PATH, 'if@2')
        store.record_block_entry(PATH, 'while@99')

        assert store.get(PATH).block('if@2').entry_count == 2


@pytest.mark.small
class TestStoreMerge:
    """Tests for merging snapshots into a store."""

    def test_merge_unions_executed(self, store):
        """Merging adds lines executed elsewhere."""
        other = CoverageStore()
        other.ensure_record(PATH, source=SCENARIO)
        other.record_hit(PATH, 2)
        store.record_hit(PATH, 1)

        store.merge(other.snapshot())

        assert store.get(PATH).executed == frozenset({1, 2})

    def test_merge_adds_new_files(self, store):
        """Files unknown to the store are adopted as they are."""
        other = CoverageStore()
        other.ensure_record('/project/other.lua', source='return 1\n')
        other.record_hit('/project/other.lua', 1)

        store.merge(other.snapshot())

        assert store.get('/project/other.lua').executed == frozenset({1})

    def test_conflicting_merge_changes_nothing(self, store):
        """A conflict on any file leaves the whole store untouched."""
        other = CoverageStore()
        other.ensure_record('/project/new.lua', source='return 1\n')
        other.ensure_record(PATH, source=SCENARIO + 'print(1)\n')

        with pytest.raises(MergeConflictError):
            store.merge(other.snapshot())

        assert '/project/new.lua' not in store

    def test_reset_forgets_records(self, store):
        """reset empties the store."""
        store.reset()

        assert len(store) == 0
