"""
Action module.

Provides the registry that dispatches action names to handlers, plus the
built-in actions.
"""

from .registry import ActionRegistry

__all__ = ["ActionRegistry"]
