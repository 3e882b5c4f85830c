"""pytest-moonlight: Line, function and block coverage for Lua under pytest.

See what your Lua really ran.

pytest-moonlight embeds a Lua runtime in your pytest session, tracks which
lines, functions and structural blocks of your Lua sources execute, and
reports coverage at the end of the run.

Example:
    Measure coverage with the runtime debug hook::

        $ pytest --moonlight

    Rewrite sources with tracking calls and record branch entries::

        $ pytest --moonlight --moonlight-strategy=instrumentation --moonlight-blocks

    Load Lua from a test through the session fixture::

        def test_add(moonlight):
            calc = moonlight.load_file('src/calc.lua')
            assert calc.add(1, 2) == 3
"""

from __future__ import annotations


__version__ = '0.3.0'
__all__ = ['__version__']
