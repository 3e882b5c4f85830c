"""Reporting module for pytest-moonlight coverage results.

Reporters receive a CoverageSnapshot and nothing else.
"""

from pytest_moonlight.reporting.console import ConsoleReporter


__all__ = [
    'ConsoleReporter',
]
