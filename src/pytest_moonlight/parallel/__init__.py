"""Parallel run support for pytest-moonlight.

Workers write their coverage snapshot at exit; SnapshotAggregator merges
them on the controller.
"""

from __future__ import annotations
