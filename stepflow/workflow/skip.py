"""
Skip evaluation for steps and test cases.
"""

from typing import Callable, Optional, Tuple, Union

NO_REASON = "(no reason provided)"

# Values of a substituted skip string that mean "do not skip"
FALSE_VALUES = ("false", "0")


def evaluate_skip(
    skip: Optional[Union[bool, str]],
    substitute: Callable[[str], str]
) -> Tuple[bool, str]:
    """
    Decide whether a skip field skips its step or test case.

    Args:
        skip: None, a bool, or a string (reason or condition)
        substitute: Resolves ${...} references in a string

    Returns:
        (should_skip, reason)
    """
    if skip is None:
        return False, ""

    if isinstance(skip, bool):
        return (True, NO_REASON) if skip else (False, "")

    text = substitute(str(skip)).strip()
    if text and text.lower() not in FALSE_VALUES:
        return True, text
    return False, ""
