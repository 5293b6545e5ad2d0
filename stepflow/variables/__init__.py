"""
Variable store and substitution module.
Implements ${...} resolution, multi-pass initialization and the step history.
"""

from .store import VariableStore
from .substitution import VariableSubstitutor, extract_references, stringify

__all__ = ['VariableStore', 'VariableSubstitutor', 'extract_references', 'stringify']
