"""Coverage data model: records, the shared store and merge semantics."""

from __future__ import annotations

from pytest_moonlight.model.merge import merge_record_sets, merge_records
from pytest_moonlight.model.records import BlockInfo, FileRecord, FunctionInfo, percentage
from pytest_moonlight.model.store import CoverageStore, normalize_path
from pytest_moonlight.model.summary import ProjectSummary


__all__ = [
    'BlockInfo',
    'CoverageStore',
    'FileRecord',
    'FunctionInfo',
    'ProjectSummary',
    'merge_record_sets',
    'merge_records',
    'normalize_path',
    'percentage',
]
