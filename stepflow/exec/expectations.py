"""
expect_error validation.

Applied once per step after retries are exhausted. An expected error that
does not happen is the failure; an expected error that happens is a pass.
"""

import re
from typing import Any, Optional

from ..exceptions import ExpectationError
from ..models import EXPECT_ERROR_TYPES, ExpectErrorSpec
from ..variables.substitution import stringify


def validate_expected_error(
    spec: ExpectErrorSpec,
    error: Optional[BaseException],
    output: Any = None
) -> Optional[ExpectationError]:
    """
    Check an action's error against an expect_error spec.

    Args:
        spec: Expected error specification
        error: Error of the final attempt, None if the action succeeded
        output: Output of the final attempt (quoted in the failure message)

    Returns:
        None when the expectation holds, otherwise an ExpectationError
        describing the failure
    """
    if spec.type not in EXPECT_ERROR_TYPES:
        return ExpectationError(
            f"unsupported error type: {spec.type} "
            f"(supported: {', '.join(EXPECT_ERROR_TYPES)})"
        )

    if error is None:
        return ExpectationError(f"expected error but action succeeded with result: '{stringify(output)}'")

    actual = str(error)
    expected = spec.message

    if spec.type == "any":
        return None
    elif spec.type == "contains":
        matched = expected in actual
    elif spec.type == "not_contains":
        matched = expected not in actual
    elif spec.type == "exact":
        matched = actual == expected
    elif spec.type == "starts_with":
        matched = actual.startswith(expected)
    elif spec.type == "ends_with":
        matched = actual.endswith(expected)
    else:
        try:
            found = re.search(expected, actual) is not None
        except re.error as e:
            return ExpectationError(f"invalid regex pattern '{expected}': {e}")
        matched = found if spec.type == "matches" else not found

    if matched:
        return None
    return ExpectationError(f"error expectation failed: '{actual}' {spec.type} '{expected}'")
