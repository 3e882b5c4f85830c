"""Persistent cache of instrumented Lua sources."""

from __future__ import annotations

from pytest_moonlight.cache.hasher import ContentHasher, read_source
from pytest_moonlight.cache.store import InstrumentedSourceStore


__all__ = ['ContentHasher', 'InstrumentedSourceStore', 'read_source']
