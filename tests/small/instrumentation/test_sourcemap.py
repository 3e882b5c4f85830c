"""Tests for instrumented-to-original line mapping."""

import pytest

from pytest_moonlight.instrumentation import SourceMap


@pytest.mark.small
class TestSourceMap:
    """Tests for SourceMap."""

    def test_identity(self):
        """The default map changes nothing."""
        source_map = SourceMap.identity()

        assert source_map.is_identity
        assert source_map.original_line(7) == 7

    def test_explicit_map(self):
        """Explicit entries map instrumented lines back."""
        source_map = SourceMap((1, 1, 2, 3))

        assert not source_map.is_identity
        assert source_map.original_line(3) == 2
        assert source_map.original_line(10) == 10

    def test_translate_error_with_column(self):
        """``file:line:col:`` positions are mapped as well."""
        source_map = SourceMap((1, 1, 2))

        message = source_map.translate_error('/src/m.lua:3:5: unexpected symbol', '/src/m.lua')

        assert message == '/src/m.lua:2:5: unexpected symbol'

    def test_translate_error_with_shortened_chunk_name(self):
        """Lua's ``...`` shortened chunk names still match by base name."""
        source_map = SourceMap((1, 1, 2))

        message = source_map.translate_error('...ject/src/m.lua:3: boom', '/project/src/m.lua')

        assert message == '...ject/src/m.lua:2: boom'

    def test_translate_error_ignores_other_files(self):
        """Positions in other files are left alone."""
        source_map = SourceMap((1, 1, 2))

        message = source_map.translate_error('/src/other.lua:3: boom', '/src/m.lua')

        assert message == '/src/other.lua:3: boom'

    def test_list_form(self):
        """to_list and from_list are inverses."""
        source_map = SourceMap((1, 1, 2))

        assert SourceMap.from_list(source_map.to_list()) == source_map

    @pytest.mark.parametrize('entries', [[0], [1, -2], [1, 'x'], [True]])
    def test_from_list_rejects_invalid_entries(self, entries):
        """Entries must be positive integers."""
        with pytest.raises(ValueError, match='positive line numbers'):
            SourceMap.from_list(entries)
