"""Pure merge of coverage records from independent processes.

Every worker of a parallel run ends with its own snapshot. Merging them is a
reduction: executed lines are unioned, counters are summed, and the derived
``executed`` flags of functions and blocks are recomputed from the merged
line set. The operation is associative and commutative, so the order in
which worker files are read never changes the result.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import replace
from types import MappingProxyType
from typing import TYPE_CHECKING

from pytest_moonlight.analysis.profile import paint_owners
from pytest_moonlight.errors import MergeConflictError
from pytest_moonlight.model.records import BlockInfo, FileRecord, FunctionInfo


if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


def resolve_functions(functions: Iterable[FunctionInfo], executed: frozenset[int]) -> tuple[FunctionInfo, ...]:
    """Set each function's ``executed`` flag from its header line."""
    return tuple(replace(function, executed=function.start_line in executed) for function in functions)


def resolve_blocks(blocks: Iterable[BlockInfo], executed: frozenset[int]) -> tuple[BlockInfo, ...]:
    """Set each block's ``executed`` flag from the lines it owns.

    A block is executed if at least one executed line has it as innermost
    owner. Header lines belong to the enclosing block.
    """
    blocks = tuple(blocks)
    owners = paint_owners(blocks)
    hit = {owners[line] for line in executed if line in owners}
    return tuple(replace(block, executed=block.block_id in hit) for block in blocks)


def _conflict(path: str, what: str) -> MergeConflictError:
    return MergeConflictError(f'{path}: cannot merge records with different {what}')


def _sum_counts(left: Mapping[int, int], right: Mapping[int, int]) -> Mapping[int, int]:
    total = Counter(left)
    total.update(right)
    return MappingProxyType(dict(sorted(total.items())))


def merge_records(left: FileRecord, right: FileRecord) -> FileRecord:
    """Merge two records of the same file.

    Args:
        left: One record.
        right: Another record for the same path.

    Returns:
        A new record holding the union of both.

    Raises:
        MergeConflictError: If the records describe different files or
            different versions of the same file.
    """
    if left.path != right.path:
        msg = f'cannot merge records of {left.path} and {right.path}'
        raise MergeConflictError(msg)
    if left.source_hash != right.source_hash:
        raise _conflict(left.path, 'source hashes')
    if left.analyzable != right.analyzable:
        raise _conflict(left.path, 'analysis outcomes')

    executed = left.executed | right.executed
    if left.analyzable:
        if left.executable != right.executable:
            raise _conflict(left.path, 'executable lines')
        executable = left.executable
    else:
        # Degraded records assume every hit line is executable.
        executable = left.executable | right.executable

    functions = _merge_functions(left, right)
    blocks = _merge_blocks(left, right)
    errors = [error for error in (left.analysis_error, right.analysis_error) if error is not None]

    return FileRecord(
        path=left.path,
        source_lines=left.source_lines or right.source_lines,
        source_hash=left.source_hash,
        executable=executable,
        executed=executed,
        entry_lines=left.entry_lines | right.entry_lines,
        hit_counts=_sum_counts(left.hit_counts, right.hit_counts),
        line_kinds=left.line_kinds or right.line_kinds,
        statement_starts=left.statement_starts or right.statement_starts,
        functions=resolve_functions(functions, executed),
        blocks=resolve_blocks(blocks, executed),
        analyzable=left.analyzable,
        analysis_error=min(errors) if errors else None,
        ignored_hits=left.ignored_hits + right.ignored_hits,
    )


def _merge_functions(left: FileRecord, right: FileRecord) -> list[FunctionInfo]:
    theirs = {function.function_id: function for function in right.functions}
    if set(theirs) != {function.function_id for function in left.functions}:
        raise _conflict(left.path, 'functions')
    merged = []
    for function in left.functions:
        other = theirs[function.function_id]
        if (function.start_line, function.end_line) != (other.start_line, other.end_line):
            raise _conflict(left.path, f'ranges for function {function.function_id}')
        merged.append(replace(function, call_count=function.call_count + other.call_count))
    return merged


def _merge_blocks(left: FileRecord, right: FileRecord) -> list[BlockInfo]:
    theirs = {block.block_id: block for block in right.blocks}
    if set(theirs) != {block.block_id for block in left.blocks}:
        raise _conflict(left.path, 'blocks')
    merged = []
    for block in left.blocks:
        other = theirs[block.block_id]
        if (block.kind, block.start_line, block.end_line, block.parent_id) != (
            other.kind,
            other.start_line,
            other.end_line,
            other.parent_id,
        ):
            raise _conflict(left.path, f'structure for block {block.block_id}')
        merged.append(replace(block, entry_count=block.entry_count + other.entry_count))
    return merged


def merge_record_sets(left: Mapping[str, FileRecord], right: Mapping[str, FileRecord]) -> dict[str, FileRecord]:
    """Merge two path-keyed record sets.

    Paths present on only one side are carried over unchanged.

    Raises:
        MergeConflictError: If any shared path fails to merge.
    """
    merged = dict(left)
    for path, record in right.items():
        merged[path] = merge_records(merged[path], record) if path in merged else record
    return dict(sorted(merged.items()))
