"""Line mapping between instrumented and original sources.

Tracking calls are fused onto existing lines, so the map is the identity for
everything this package instruments today. The type still supports arbitrary
maps so that a rewrite which must split a line can describe what it did.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
import re


@dataclass(frozen=True)
class SourceMap:
    """Maps instrumented line numbers to original line numbers.

    Attributes:
        lines: ``lines[i]`` is the original line of instrumented line ``i + 1``.
            Empty means identity.
    """

    lines: tuple[int, ...] = ()

    @classmethod
    def identity(cls) -> SourceMap:
        """Return the map for a rewrite that kept every line in place."""
        return cls()

    @property
    def is_identity(self) -> bool:
        """Return True if every line maps to itself."""
        return all(original == number for number, original in enumerate(self.lines, start=1))

    def original_line(self, line: int) -> int:
        """Return the original line for an instrumented line.

        Lines past the end of an explicit map are returned unchanged.
        """
        if 1 <= line <= len(self.lines):
            return self.lines[line - 1]
        return line

    def translate_error(self, message: str, path: str) -> str:
        """Rewrite ``file:line:`` and ``file:line:col:`` positions in a Lua error.

        Only positions that refer to ``path`` are touched. Lua shortens long
        chunk names with a leading ``...``, so any location ending in the
        file's base name is treated as a match.

        Args:
            message: Error message or traceback produced by Lua.
            path: The instrumented file.

        Returns:
            The message with every matching position mapped to its original line.

        Example:
            >>> SourceMap((1, 1, 2)).translate_error('/src/m.lua:3: boom', '/src/m.lua')
            '/src/m.lua:2: boom'
        """
        if self.is_identity:
            return message
        pattern = re.compile(
            r'(?P<chunk>[^\s:\'"]*' + re.escape(os.path.basename(path)) + r'):(?P<line>\d+):(?P<col>\d+:)?'
        )

        def replace(match: re.Match[str]) -> str:
            line = self.original_line(int(match.group('line')))
            return f'{match.group("chunk")}:{line}:{match.group("col") or ""}'

        return pattern.sub(replace, message)

    def to_list(self) -> list[int]:
        """Return a JSON-compatible form."""
        return list(self.lines)

    @classmethod
    def from_list(cls, lines: list[int]) -> SourceMap:
        """Rebuild a map from its list form.

        Raises:
            ValueError: If an entry is not a positive integer.
        """
        if any(isinstance(line, bool) or not isinstance(line, int) or line < 1 for line in lines):
            msg = 'source map entries must be positive line numbers'
            raise ValueError(msg)
        return cls(tuple(lines))
