"""Content hashing for the instrumented-source cache.

Cache entries and coverage records are keyed by what a file contains, not
by when it was modified, so an unchanged file always maps to the same key.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path


def read_source(path: str | os.PathLike[str]) -> str:
    """Read a Lua source file as text.

    Lua sources are byte strings. Bytes that are not valid UTF-8 are kept as
    surrogate escapes, so encoding the text with to_lua_bytes() gives back
    the exact file content.

    Raises:
        OSError: If the file cannot be read.
    """
    return Path(path).read_bytes().decode('utf-8', errors='surrogateescape')


def to_lua_bytes(text: str) -> bytes:
    """Encode text read by read_source back into the bytes Lua should see."""
    return text.encode('utf-8', errors='surrogateescape')


class ContentHasher:
    """Produces content hashes for files and strings.

    Example:
        >>> hasher = ContentHasher()
        >>> len(hasher.hash_string('return 42'))
        64
    """

    def hash_string(self, content: str) -> str:
        """Hash a string and return its SHA-256 hex digest."""
        return hashlib.sha256(to_lua_bytes(content)).hexdigest()

    def hash_file(self, path: str | os.PathLike[str]) -> str:
        """Hash a file's content and return its hex digest.

        Raises:
            OSError: If the file cannot be read.
        """
        return self.hash_string(read_source(path))

    def cache_key(self, path: str, content_hash: str, *, track_blocks: bool = False) -> str:
        """Build the cache key for an instrumented file.

        Args:
            path: Normalized path of the file.
            content_hash: Hash of the original source text.
            track_blocks: Whether block tracking calls were injected.

        Returns:
            A key unique to the path, the content and the rewrite options.
        """
        suffix = 'blocks' if track_blocks else 'lines'
        return f'{path}\0{content_hash}\0{suffix}'
