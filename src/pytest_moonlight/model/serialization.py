"""JSON serialization of coverage snapshots.

Parallel workers write their snapshot to disk at exit and the controller
reads them back. Reading validates every field: a payload that is malformed
or violates ``executed <= executable`` is rejected with MergeConflictError,
since merging it would corrupt the combined report.
"""

from __future__ import annotations

import json
import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from pytest_moonlight.analysis.profile import BlockKind, LineKind
from pytest_moonlight.diagnostics import Diagnostic, DiagnosticKind
from pytest_moonlight.errors import MergeConflictError
from pytest_moonlight.model.merge import resolve_blocks, resolve_functions
from pytest_moonlight.model.records import BlockInfo, FileRecord, FunctionInfo
from pytest_moonlight.snapshot import CoverageSnapshot


if TYPE_CHECKING:
    from pathlib import Path


logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def record_to_dict(record: FileRecord) -> dict[str, Any]:
    """Convert a file record to a JSON-compatible dictionary."""
    return {
        'source_lines': list(record.source_lines),
        'source_hash': record.source_hash,
        'executable': sorted(record.executable),
        'executed': sorted(record.executed),
        'entry_lines': sorted(record.entry_lines),
        'hit_counts': {str(line): count for line, count in sorted(record.hit_counts.items())},
        'line_kinds': {str(line): kind.value for line, kind in sorted(record.line_kinds.items())},
        'statement_starts': {str(line): start for line, start in sorted(record.statement_starts.items())},
        'functions': [
            {
                'id': function.function_id,
                'name': function.name,
                'start_line': function.start_line,
                'end_line': function.end_line,
                'executed': function.executed,
                'call_count': function.call_count,
            }
            for function in record.functions
        ],
        'blocks': [
            {
                'id': block.block_id,
                'kind': block.kind.value,
                'start_line': block.start_line,
                'end_line': block.end_line,
                'parent_id': block.parent_id,
                'executed': block.executed,
                'entry_count': block.entry_count,
            }
            for block in record.blocks
        ],
        'analyzable': record.analyzable,
        'analysis_error': list(record.analysis_error) if record.analysis_error else None,
        'ignored_hits': record.ignored_hits,
    }


def snapshot_to_dict(snapshot: CoverageSnapshot) -> dict[str, Any]:
    """Convert a snapshot to a JSON-compatible dictionary.

    The summary is not stored; it is recomputed when the snapshot is read.
    """
    return {
        'format': FORMAT_VERSION,
        'files': {path: record_to_dict(record) for path, record in snapshot.files.items()},
        'diagnostics': [
            {
                'kind': diagnostic.kind.value,
                'message': diagnostic.message,
                'path': diagnostic.path,
                'line': diagnostic.line,
            }
            for diagnostic in snapshot.diagnostics
        ],
    }


class _Reader:
    """Validating reader for one serialized snapshot."""

    def __init__(self, origin: str) -> None:
        self._origin = origin

    def fail(self, message: str) -> MergeConflictError:
        return MergeConflictError(f'{self._origin}: invalid snapshot: {message}')

    def mapping(self, value: object, what: str) -> dict[str, Any]:
        if not isinstance(value, dict):
            raise self.fail(f'{what} must be an object')
        return value

    def sequence(self, value: object, what: str) -> list[Any]:
        if not isinstance(value, list):
            raise self.fail(f'{what} must be a list')
        return value

    def count(self, value: object, what: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise self.fail(f'{what} must be a non-negative integer')
        return value

    def line(self, value: object, what: str) -> int:
        number = self.count(value, what)
        if number < 1:
            raise self.fail(f'{what} must be a positive line number')
        return number

    def text(self, value: object, what: str) -> str:
        if not isinstance(value, str):
            raise self.fail(f'{what} must be a string')
        return value

    def lines(self, value: object, what: str) -> frozenset[int]:
        return frozenset(self.line(item, what) for item in self.sequence(value, what))

    def line_map(self, value: object, what: str) -> dict[int, Any]:
        result = {}
        for key, item in self.mapping(value, what).items():
            if not (key.isascii() and key.isdigit()):
                raise self.fail(f'{what} keys must be line numbers')
            result[self.line(int(key), what)] = item
        return result

    def enum(self, enum_type: type[LineKind] | type[BlockKind] | type[DiagnosticKind], value: object, what: str) -> Any:
        try:
            return enum_type(value)
        except ValueError:
            raise self.fail(f'unknown {what} {value!r}') from None

    def record(self, path: str, payload: object) -> FileRecord:
        data = self.mapping(payload, f'record for {path}')
        try:
            executable = self.lines(data['executable'], 'executable')
            executed = self.lines(data['executed'], 'executed')
            if not executed <= executable:
                raise self.fail(f'{path}: executed lines outside executable lines')
            functions = tuple(self._function(item) for item in self.sequence(data['functions'], 'functions'))
            blocks = tuple(self._block(item) for item in self.sequence(data['blocks'], 'blocks'))
            error = data.get('analysis_error')
            analysis_error = None
            if error is not None:
                error = self.sequence(error, 'analysis_error')
                if len(error) != 2:  # noqa: PLR2004
                    raise self.fail('analysis_error must be [line, message]')
                analysis_error = (self.count(error[0], 'analysis_error line'), self.text(error[1], 'analysis_error'))
            analyzable = data['analyzable']
            if not isinstance(analyzable, bool):
                raise self.fail('analyzable must be a boolean')
            return FileRecord(
                path=path,
                source_lines=tuple(
                    self.text(line, 'source line') for line in self.sequence(data['source_lines'], 'source_lines')
                ),
                source_hash=self.text(data['source_hash'], 'source_hash'),
                executable=executable,
                executed=executed,
                entry_lines=self.lines(data.get('entry_lines', []), 'entry_lines'),
                hit_counts=MappingProxyType({
                    line: self.count(count, 'hit count')
                    for line, count in sorted(self.line_map(data['hit_counts'], 'hit_counts').items())
                }),
                line_kinds=MappingProxyType({
                    line: self.enum(LineKind, kind, 'line kind')
                    for line, kind in sorted(self.line_map(data['line_kinds'], 'line_kinds').items())
                }),
                statement_starts=MappingProxyType({
                    line: self.line(start, 'statement start')
                    for line, start in sorted(self.line_map(data.get('statement_starts', {}), 'starts').items())
                }),
                functions=resolve_functions(functions, executed),
                blocks=resolve_blocks(blocks, executed),
                analyzable=analyzable,
                analysis_error=analysis_error,
                ignored_hits=self.count(data['ignored_hits'], 'ignored_hits'),
            )
        except KeyError as missing:
            raise self.fail(f'{path}: missing field {missing}') from None

    def _function(self, payload: object) -> FunctionInfo:
        item = self.mapping(payload, 'function')
        return FunctionInfo(
            function_id=self.text(item['id'], 'function id'),
            name=self.text(item['name'], 'function name'),
            start_line=self.line(item['start_line'], 'start_line'),
            end_line=self.line(item['end_line'], 'end_line'),
            call_count=self.count(item['call_count'], 'call_count'),
        )

    def _block(self, payload: object) -> BlockInfo:
        item = self.mapping(payload, 'block')
        start = self.line(item['start_line'], 'start_line')
        end = self.line(item['end_line'], 'end_line')
        if start > end:
            raise self.fail(f'block {item["id"]} ends before it starts')
        parent = item['parent_id']
        return BlockInfo(
            block_id=self.text(item['id'], 'block id'),
            kind=self.enum(BlockKind, item['kind'], 'block kind'),
            start_line=start,
            end_line=end,
            parent_id=None if parent is None else self.text(parent, 'parent_id'),
            entry_count=self.count(item['entry_count'], 'entry_count'),
        )

    def diagnostic(self, payload: object) -> Diagnostic:
        item = self.mapping(payload, 'diagnostic')
        line = item.get('line')
        path = item.get('path')
        return Diagnostic(
            kind=self.enum(DiagnosticKind, item.get('kind'), 'diagnostic kind'),
            message=self.text(item.get('message'), 'diagnostic message'),
            path=None if path is None else self.text(path, 'diagnostic path'),
            line=None if line is None else self.count(line, 'diagnostic line'),
        )


def snapshot_from_dict(payload: object, origin: str = '<memory>') -> CoverageSnapshot:
    """Rebuild and validate a snapshot from its dictionary form.

    Args:
        payload: Output of snapshot_to_dict, possibly from another process.
        origin: Where the payload came from, used in error messages.

    Returns:
        The validated snapshot with a recomputed summary.

    Raises:
        MergeConflictError: If the payload is malformed or inconsistent.
    """
    reader = _Reader(origin)
    data = reader.mapping(payload, 'snapshot')
    if data.get('format') != FORMAT_VERSION:
        msg = f'unsupported format {data.get("format")!r}'
        raise reader.fail(msg)
    files = {
        reader.text(path, 'path'): reader.record(path, record)
        for path, record in reader.mapping(data.get('files'), 'files').items()
    }
    diagnostics = [reader.diagnostic(item) for item in reader.sequence(data.get('diagnostics', []), 'diagnostics')]
    return CoverageSnapshot.build(files, diagnostics)


def write_snapshot(snapshot: CoverageSnapshot, path: Path) -> None:
    """Write a snapshot as JSON, creating parent directories.

    The file is written under a temporary name and renamed into place, so
    readers never see a partial snapshot.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(path.name + '.partial')
    partial.write_text(json.dumps(snapshot_to_dict(snapshot), indent=1, sort_keys=True), encoding='utf-8')
    partial.replace(path)
    logger.debug('Wrote coverage snapshot to %s', path)


def read_snapshot(path: Path) -> CoverageSnapshot:
    """Read and validate a snapshot written by write_snapshot.

    Raises:
        MergeConflictError: If the file is not UTF-8 JSON or not a valid snapshot.
        OSError: If the file cannot be read.
    """
    try:
        payload = json.loads(path.read_text(encoding='utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        msg = f'{path}: invalid snapshot: {error}'
        raise MergeConflictError(msg) from error
    return snapshot_from_dict(payload, origin=str(path))
