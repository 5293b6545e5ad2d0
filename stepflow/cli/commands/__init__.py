"""CLI command handlers."""

from .run import run_tests

__all__ = ['run_tests']
