"""Shared, thread-safe coverage store.

The CoverageStore is the single place where both trackers report execution.
Records live in an arena (a list) indexed by normalized path, behind one
lock. The lock only ever guards in-memory updates: reading and analyzing a
file that has not been seen before happens before the lock is taken, and the
finished entry is installed under it.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping
import logging
import os
import threading
from types import MappingProxyType
from typing import TYPE_CHECKING

from pytest_moonlight.analysis.analyzer import analyze
from pytest_moonlight.analysis.lexer import split_lines
from pytest_moonlight.analysis.profile import FileProfile, LineKind
from pytest_moonlight.cache.hasher import ContentHasher, read_source
from pytest_moonlight.diagnostics import Diagnostic, DiagnosticKind, DiagnosticLog
from pytest_moonlight.errors import AnalysisError
from pytest_moonlight.model.merge import merge_records, resolve_blocks, resolve_functions
from pytest_moonlight.model.records import BlockInfo, FileRecord, FunctionInfo


if TYPE_CHECKING:
    from collections.abc import Iterable

    from pytest_moonlight.snapshot import CoverageSnapshot


logger = logging.getLogger(__name__)


def normalize_path(path: str | os.PathLike[str]) -> str:
    """Return the absolute, normalized form of a path used as record key."""
    return os.path.normpath(os.path.abspath(os.fspath(path)))


class _Entry:
    """Mutable state of one file. Only touched with the store lock held."""

    __slots__ = (
        'analysis_error',
        'analyzable',
        'blocks',
        'call_counts',
        'entry_counts',
        'entry_lines',
        'executable',
        'executed',
        'functions',
        'hit_counts',
        'ignored_hits',
        'line_kinds',
        'path',
        'source_hash',
        'source_lines',
        'statement_starts',
    )

    def __init__(
        self,
        path: str,
        source_lines: tuple[str, ...],
        source_hash: str,
        *,
        executable: Iterable[int] = (),
        entry_lines: Iterable[int] = (),
        line_kinds: Mapping[int, LineKind] | None = None,
        statement_starts: Mapping[int, int] | None = None,
        functions: tuple[FunctionInfo, ...] = (),
        blocks: tuple[BlockInfo, ...] = (),
        analyzable: bool = True,
        analysis_error: tuple[int, str] | None = None,
    ) -> None:
        self.path = path
        self.source_lines = source_lines
        self.source_hash = source_hash
        self.executable = set(executable)
        self.entry_lines = frozenset(entry_lines)
        self.line_kinds = MappingProxyType(dict(line_kinds or {}))
        self.statement_starts = MappingProxyType(dict(statement_starts or {}))
        self.functions = functions
        self.blocks = blocks
        self.analyzable = analyzable
        self.analysis_error = analysis_error
        self.executed: set[int] = set()
        self.hit_counts: Counter[int] = Counter()
        self.call_counts: Counter[str] = Counter()
        self.entry_counts: Counter[str] = Counter()
        self.ignored_hits = 0

    @classmethod
    def from_profile(cls, path: str, source: str, source_hash: str, profile: FileProfile) -> _Entry:
        functions = tuple(
            FunctionInfo(span.function_id, span.name, span.start_line, span.end_line) for span in profile.functions
        )
        blocks = tuple(
            BlockInfo(span.block_id, span.kind, span.start_line, span.end_line, span.parent_id)
            for span in profile.blocks
        )
        return cls(
            path,
            tuple(split_lines(source)),
            source_hash,
            executable=profile.executable,
            entry_lines=profile.entry_lines,
            line_kinds={line: kind for line, kind in enumerate(profile.line_kinds, start=1)},
            statement_starts=profile.statement_starts,
            functions=functions,
            blocks=blocks,
        )

    @classmethod
    def from_record(cls, record: FileRecord) -> _Entry:
        entry = cls(
            record.path,
            record.source_lines,
            record.source_hash,
            executable=record.executable,
            entry_lines=record.entry_lines,
            line_kinds=record.line_kinds,
            statement_starts=record.statement_starts,
            functions=tuple(FunctionInfo(f.function_id, f.name, f.start_line, f.end_line) for f in record.functions),
            blocks=tuple(
                BlockInfo(b.block_id, b.kind, b.start_line, b.end_line, b.parent_id) for b in record.blocks
            ),
            analyzable=record.analyzable,
            analysis_error=record.analysis_error,
        )
        entry.absorb(record)
        return entry

    def absorb(self, record: FileRecord) -> None:
        """Replace the counters with those of a merged record."""
        self.executable = set(record.executable)
        self.executed = set(record.executed)
        self.hit_counts = Counter(record.hit_counts)
        self.call_counts = Counter({f.function_id: f.call_count for f in record.functions if f.call_count})
        self.entry_counts = Counter({b.block_id: b.entry_count for b in record.blocks if b.entry_count})
        self.ignored_hits = record.ignored_hits

    def hit(self, line: int) -> None:
        if not self.analyzable:
            if line >= 1:
                # Unknown structure: assume any reported line can execute.
                self.executable.add(line)
                self.executed.add(line)
                self.hit_counts[line] += 1
            return
        if line not in self.executable:
            # Multi-line statements may report a later line; credit the first.
            start = self.statement_starts.get(line)
            if start is not None and start not in self.entry_lines:
                line = start
        if line in self.executable:
            self.executed.add(line)
            self.hit_counts[line] += 1
        else:
            self.ignored_hits += 1

    def enter(self, line: int, function_id: str | None, last_line: int | None) -> None:
        if not self.analyzable:
            return
        if line in self.executable:
            self.executed.add(line)
            if line in self.entry_lines:
                self.hit_counts[line] += 1
        target = self._find_function(line, function_id, last_line)
        if target is not None:
            self.call_counts[target] += 1

    def _find_function(self, line: int, function_id: str | None, last_line: int | None) -> str | None:
        if function_id is not None:
            return function_id if any(f.function_id == function_id for f in self.functions) else None
        candidates = [f for f in self.functions if f.start_line == line]
        if last_line is not None and len(candidates) > 1:
            exact = [f for f in candidates if f.end_line == last_line]
            candidates = exact or candidates
        return candidates[0].function_id if candidates else None

    def freeze(self) -> FileRecord:
        executed = frozenset(self.executed)
        functions = tuple(
            FunctionInfo(f.function_id, f.name, f.start_line, f.end_line, call_count=self.call_counts[f.function_id])
            for f in self.functions
        )
        blocks = tuple(
            BlockInfo(
                b.block_id,
                b.kind,
                b.start_line,
                b.end_line,
                b.parent_id,
                entry_count=self.entry_counts[b.block_id],
            )
            for b in self.blocks
        )
        return FileRecord(
            path=self.path,
            source_lines=self.source_lines,
            source_hash=self.source_hash,
            executable=frozenset(self.executable),
            executed=executed,
            entry_lines=self.entry_lines,
            hit_counts=MappingProxyType(dict(sorted(self.hit_counts.items()))),
            line_kinds=self.line_kinds,
            statement_starts=self.statement_starts,
            functions=resolve_functions(functions, executed),
            blocks=resolve_blocks(blocks, executed),
            analyzable=self.analyzable,
            analysis_error=self.analysis_error,
            ignored_hits=self.ignored_hits,
        )


class CoverageStore:
    """Holds one coverage record per file for the duration of a run.

    Every public method is safe to call from any thread. ``record_hit`` never
    performs I/O once the file it reports on is known to the store.

    Example:
        >>> store = CoverageStore()
        >>> _ = store.ensure_record('/tmp/m.lua', source='local x = 1\\nreturn x\\n')
        >>> store.record_hit('/tmp/m.lua', 2)
        >>> sorted(store.snapshot()['/tmp/m.lua'].executed)
        [2]
    """

    def __init__(self, diagnostics: DiagnosticLog | None = None) -> None:
        """Initialize an empty store.

        Args:
            diagnostics: Where analysis failures are reported. A private log
                is created if omitted.
        """
        self._lock = threading.Lock()
        self._records: list[_Entry] = []
        self._index: dict[str, int] = {}
        self._hasher = ContentHasher()
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, os.PathLike)):
            return False
        key = normalize_path(path)
        with self._lock:
            return key in self._index

    def paths(self) -> list[str]:
        """Return every tracked path, sorted."""
        with self._lock:
            return sorted(self._index)

    def ensure_record(self, path: str | os.PathLike[str], source: str | None = None) -> FileProfile | None:
        """Create the record for a file if it does not exist yet.

        Args:
            path: File path; normalized before use.
            source: Source text. Read from disk if omitted.

        Returns:
            The analyzer profile when a new record was created from a
            successful analysis, otherwise None.
        """
        key = normalize_path(path)
        with self._lock:
            if key in self._index:
                return None
        entry, profile = self._build_entry(key, source)
        with self._lock:
            if key in self._index:
                return None
            self._index[key] = len(self._records)
            self._records.append(entry)
        logger.debug('Tracking %s (analyzable=%s)', key, entry.analyzable)
        return profile

    def _build_entry(self, path: str, source: str | None) -> tuple[_Entry, FileProfile | None]:
        if source is None:
            try:
                source = read_source(path)
            except OSError as error:
                logger.warning('Cannot read %s for coverage analysis: %s', path, error)
                self.diagnostics.add(Diagnostic(DiagnosticKind.SOURCE_UNAVAILABLE, str(error), path=path))
                return _Entry(path, (), '', analyzable=False), None

        source_hash = self._hasher.hash_string(source)
        profile = analyze(source)
        if isinstance(profile, AnalysisError):
            logger.warning('Cannot analyze %s: %s', path, profile)
            self.diagnostics.add(Diagnostic(DiagnosticKind.ANALYSIS, profile.message, path=path, line=profile.line))
            entry = _Entry(
                path,
                tuple(split_lines(source)),
                source_hash,
                analyzable=False,
                analysis_error=(profile.line, profile.message),
            )
            return entry, None
        return _Entry.from_profile(path, source, source_hash, profile), profile

    def _entry_for(self, path: str | os.PathLike[str]) -> int:
        """Return the arena index for a path, analyzing the file if needed."""
        index = self._index.get(path) if isinstance(path, str) else None
        if index is not None:
            return index
        key = normalize_path(path)
        index = self._index.get(key)
        if index is None:
            self.ensure_record(key)
            index = self._index[key]
        return index

    def entry_lines(self, path: str | os.PathLike[str]) -> frozenset[int]:
        """Return the lines of a file that are marked on function entry.

        Analyzes the file first if the store has not seen it.
        """
        index = self._entry_for(path)
        with self._lock:
            return self._records[index].entry_lines

    def record_hit(self, path: str | os.PathLike[str], line: int) -> None:
        """Record one execution of a line.

        Repeated hits never change ``executed`` after the first; they only
        raise the line's hit count. Hits on lines that cannot execute are
        counted in ``ignored_hits`` and otherwise dropped.

        Args:
            path: File the line belongs to.
            line: 1-indexed line number.
        """
        index = self._entry_for(path)
        with self._lock:
            self._records[index].hit(line)

    def record_hits(self, path: str | os.PathLike[str], lines: Iterable[int]) -> None:
        """Record one execution of each of several lines of the same file."""
        index = self._entry_for(path)
        with self._lock:
            entry = self._records[index]
            for line in lines:
                entry.hit(line)

    def record_function_entry(
        self,
        path: str | os.PathLike[str],
        line: int,
        function_id: str | None = None,
        last_line: int | None = None,
    ) -> None:
        """Record that a function was entered.

        Marks the header line executed and counts one call.

        Args:
            path: File defining the function.
            line: Line of the function header.
            function_id: Exact function id, when the caller knows it.
            last_line: Line of the closing ``end``, used to tell apart
                functions defined on the same line.
        """
        index = self._entry_for(path)
        with self._lock:
            self._records[index].enter(line, function_id, last_line)

    def record_block_entry(self, path: str | os.PathLike[str], block_id: str) -> None:
        """Count one entry into a block body. Unknown block ids are ignored."""
        index = self._entry_for(path)
        with self._lock:
            entry = self._records[index]
            if any(block.block_id == block_id for block in entry.blocks):
                entry.entry_counts[block_id] += 1

    def merge(self, other: CoverageSnapshot | Mapping[str, FileRecord]) -> None:
        """Merge another snapshot into this store.

        The merge is all or nothing: if any file conflicts, nothing changes.

        Args:
            other: A snapshot, or a path-keyed mapping of file records.

        Raises:
            MergeConflictError: If a file is structurally different in ``other``.
        """
        records = other if isinstance(other, Mapping) else other.files
        with self._lock:
            merged: dict[str, FileRecord] = {}
            for path, record in records.items():
                index = self._index.get(path)
                merged[path] = record if index is None else merge_records(self._records[index].freeze(), record)
            for path, record in merged.items():
                index = self._index.get(path)
                if index is None:
                    self._index[path] = len(self._records)
                    self._records.append(_Entry.from_record(record))
                else:
                    self._records[index].absorb(record)

    def snapshot(self) -> dict[str, FileRecord]:
        """Return frozen copies of every record, keyed by path and sorted."""
        with self._lock:
            return {path: self._records[index].freeze() for path, index in sorted(self._index.items())}

    def get(self, path: str | os.PathLike[str]) -> FileRecord | None:
        """Return a frozen copy of one record, or None if it is unknown."""
        key = normalize_path(path)
        with self._lock:
            index = self._index.get(key)
            return None if index is None else self._records[index].freeze()

    def reset(self) -> None:
        """Forget every record, e.g. between independent suite invocations."""
        with self._lock:
            self._records.clear()
            self._index.clear()
