"""Execution trackers that feed the coverage store.

- HookTracker: observes line and call events through ``debug.sethook``.
- ExecutionTracker: the protocol both tracker strategies satisfy.
"""

from __future__ import annotations

from pytest_moonlight.tracking.hook import HookTracker
from pytest_moonlight.tracking.protocol import ExecutionTracker


__all__ = ['ExecutionTracker', 'HookTracker']
