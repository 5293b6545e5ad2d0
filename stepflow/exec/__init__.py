"""
Execution module.
Handles action calls, retries, expect_error checks and cancellation.
"""

from .cancellation import CancellationToken
from .expectations import validate_expected_error
from .retry import ActionOutcome, RetryExecutor
from .step_executor import StepExecutor

__all__ = [
    "CancellationToken",
    "validate_expected_error",
    "ActionOutcome",
    "RetryExecutor",
    "StepExecutor",
]
