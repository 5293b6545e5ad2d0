"""
Built-in actions.

Every handler takes (token, args, options, silent) and returns the step
output or raises. Arguments arrive already substituted.
"""

import logging
import time
from typing import Any, Dict, List

from ..exceptions import ActionError, EvaluationError, ExecutionCancelled, SkipStep
from ..loader import parse_duration
from ..variables.substitution import stringify
from ..workflow.conditions import ConditionEvaluator

logger = logging.getLogger(__name__)

_evaluator = ConditionEvaluator()


def control_action(token, args: List[Any], options: Dict[str, Any], silent: bool) -> Any:
    """
    Evaluate control-flow expressions: ["if"|"while", condition] or ["for", spec].

    Returns:
        bool for if/while, iteration count for for
    """
    if len(args) < 2:
        raise ActionError("control action requires 2 arguments: type and condition")

    flow_type = stringify(args[0]).lower()
    expression = stringify(args[1])

    try:
        if flow_type in ("if", "while"):
            result = _evaluator.evaluate(expression)
            logger.debug(f"{flow_type} condition '{expression}' evaluated to {result}")
            return result
        if flow_type == "for":
            return _evaluator.count_iterations(expression)
    except EvaluationError as e:
        raise ActionError(f"failed to evaluate {flow_type} condition '{expression}': {e}")

    raise ActionError(f"unknown control flow type: {flow_type}")


def log_action(token, args: List[Any], options: Dict[str, Any], silent: bool) -> str:
    """Log the space-joined arguments at INFO level and return the message."""
    if not args:
        raise ActionError("log action requires at least one argument")
    message = " ".join(stringify(arg) for arg in args)
    if not silent:
        logger.info(message)
    return message


def echo_action(token, args: List[Any], options: Dict[str, Any], silent: bool) -> Any:
    """Return the first argument unchanged (empty string without arguments)."""
    return args[0] if args else ""


def sleep_action(token, args: List[Any], options: Dict[str, Any], silent: bool) -> str:
    """Sleep for a duration (seconds or "500ms"/"2s"/"1m"), interruptibly."""
    if not args:
        raise ActionError("sleep action requires a duration")
    try:
        seconds = parse_duration(args[0])
    except ValueError as e:
        raise ActionError(str(e))

    if token is not None:
        if not token.wait(seconds):
            raise ExecutionCancelled(f"sleep interrupted: {token.reason}")
    elif seconds > 0:
        time.sleep(seconds)
    return f"slept {seconds:g}s"


def assert_action(token, args: List[Any], options: Dict[str, Any], silent: bool) -> str:
    """
    Assert a condition.

    Accepts either [condition] or [actual, operator, expected, message?].
    """
    if not args:
        raise ActionError("assert action requires a condition or actual, operator, expected")

    if len(args) >= 3:
        actual, operator, expected = stringify(args[0]), stringify(args[1]), stringify(args[2])
        expression = f"{actual} {operator} {expected}"
        message = stringify(args[3]) if len(args) > 3 else ""
        if operator not in ConditionEvaluator.OPERATORS:
            raise ActionError(f"unsupported assert operator: {operator}")
        passed = _evaluator.compare(actual, expected, operator)
    else:
        expression = stringify(args[0])
        message = stringify(options["message"]) if options.get("message") else ""
        try:
            passed = _evaluator.evaluate(expression)
        except EvaluationError as e:
            raise ActionError(f"failed to evaluate assertion '{expression}': {e}")

    if not passed:
        raise ActionError(message or f"assertion failed: {expression}")
    return message or "assertion passed"


def fail_action(token, args: List[Any], options: Dict[str, Any], silent: bool) -> Any:
    """Fail the step with the given message."""
    raise ActionError(stringify(args[0]) if args else "step failed")


def skip_action(token, args: List[Any], options: Dict[str, Any], silent: bool) -> Any:
    """Report the step as skipped with the given reason."""
    raise SkipStep(stringify(args[0]) if args else "skipped by action")


BUILTIN_ACTIONS = {
    "control": control_action,
    "log": log_action,
    "echo": echo_action,
    "sleep": sleep_action,
    "assert": assert_action,
    "fail": fail_action,
    "skip": skip_action,
}
