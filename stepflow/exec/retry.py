"""
Retry policy evaluation for action calls.

Two independent triggers decide whether another attempt is made:
- the action raised and its error text matches a retry condition
- the action succeeded but returned a response whose `status_code`
  matches a status condition
"""

import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..exceptions import ActionError, ExecutionCancelled, RetryExhaustedError, SkipStep
from ..models import RetryPolicy, Step
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

# Named error classes and the substrings that identify them
ERROR_CLASSES: Dict[str, List[str]] = {
    "timeout": ["timeout", "deadline exceeded"],
    "connection": ["connection", "network", "refused", "unreachable"],
    "connection_error": ["connection", "network", "refused", "unreachable"],
    "5xx": ["status code 5"],
}

JITTER_RATIO = 0.1


def should_retry_error(error: BaseException, conditions: List[str]) -> bool:
    """
    Decide whether a raised error is retryable.

    Args:
        error: Exception raised by the action
        conditions: Configured retry conditions

    Returns:
        True if any condition matches (always True without conditions)
    """
    if not conditions:
        return True

    message = str(error).lower()
    for condition in conditions:
        key = str(condition).strip().lower()
        if key in ("any", "all"):
            return True
        if key in ERROR_CLASSES:
            if any(needle in message for needle in ERROR_CLASSES[key]):
                return True
        elif key and key in message:
            return True
    return False


def extract_status_code(output: Any) -> Optional[int]:
    """
    Read the `status_code` field of a structured response.

    Accepts a dict or a JSON object held in a str/bytes value.
    """
    if isinstance(output, (str, bytes, bytearray)):
        try:
            output = json.loads(output)
        except (TypeError, ValueError):
            return None
    if not isinstance(output, dict) or "status_code" not in output:
        return None
    try:
        return int(output["status_code"])
    except (TypeError, ValueError):
        return None


def should_retry_response(output: Any, conditions: List[str]) -> bool:
    """
    Decide whether a successful call returned a retryable status.

    Without conditions only 5xx responses are retried.
    """
    status = extract_status_code(output)
    if status is None:
        return False

    for condition in conditions or ["5xx"]:
        key = str(condition).strip().lower()
        if key == "5xx" and 500 <= status < 600:
            return True
        if key == "4xx" and 400 <= status < 500:
            return True
        if key in ("429", "rate_limit") and status == 429:
            return True
        if key == "all" and status >= 400:
            return True
        if key.isdigit() and len(key) == 3 and int(key) == status:
            return True
    return False


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """
    Delay before the attempt following `attempt` (1-based).

    fixed = base, linear = base * attempt, exponential = base * 2^(attempt-1);
    capped by max_delay when set, then jittered by +/-10% when enabled.
    """
    base = max(0.0, policy.delay)
    if policy.backoff == "linear":
        delay = base * attempt
    elif policy.backoff == "exponential":
        delay = base * (2 ** (attempt - 1))
    else:
        delay = base

    if policy.max_delay > 0:
        delay = min(delay, policy.max_delay)

    if policy.jitter and delay > 0:
        delay += delay * random.uniform(-JITTER_RATIO, JITTER_RATIO)

    return max(0.0, delay)


@dataclass
class ActionOutcome:
    """Output and error of the final attempt of an action call."""
    output: Any = None
    error: Optional[BaseException] = None
    attempts: int = 1


class RetryExecutor:
    """
    Calls the action executor, re-invoking it according to the step's policy.
    """

    def __init__(self, action_executor, silent: bool = False):
        """
        Args:
            action_executor: Object with execute(token, action, args, options, silent)
            silent: Passed through to every action call
        """
        self.action_executor = action_executor
        self.silent = silent

    def execute_with_retry(
        self,
        step: Step,
        args: List[Any],
        options: Dict[str, Any],
        token: CancellationToken
    ) -> ActionOutcome:
        """
        Execute one action call with retries.

        Args:
            step: Step being executed (provides action name and policy)
            args: Substituted arguments
            options: Substituted options
            token: Cancellation token

        Returns:
            ActionOutcome of the last attempt; exhausting a policy wraps the
            last error in RetryExhaustedError
        """
        policy = step.retry
        if policy is None:
            output, error = self._call(step.action, args, options, token)
            return ActionOutcome(output=output, error=error, attempts=1)

        max_attempts = max(1, policy.attempts)
        output: Any = None
        error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                if token.cancelled:
                    return ActionOutcome(
                        output=output,
                        error=ExecutionCancelled(f"execution cancelled: {token.reason}"),
                        attempts=attempt - 1
                    )
                logger.info(f"Step '{step.label}': attempt {attempt}/{max_attempts}")

            output, error = self._call(step.action, args, options, token)

            if error is not None:
                if isinstance(error, (ExecutionCancelled, SkipStep)) or not should_retry_error(error, policy.conditions):
                    return ActionOutcome(output=output, error=error, attempts=attempt)
                reason = str(error)
            elif should_retry_response(output, policy.conditions):
                reason = f"retryable status code {extract_status_code(output)}"
            else:
                if attempt > 1:
                    logger.info(f"Step '{step.label}' succeeded on attempt {attempt}/{max_attempts}")
                return ActionOutcome(output=output, error=None, attempts=attempt)

            if attempt == max_attempts:
                break

            delay = compute_delay(policy, attempt)
            logger.warning(
                f"Step '{step.label}' attempt {attempt}/{max_attempts} failed ({reason}); "
                f"retrying in {delay:.3f}s"
            )
            if delay > 0 and not token.wait(delay):
                return ActionOutcome(
                    output=output,
                    error=ExecutionCancelled(f"execution cancelled during retry delay: {token.reason}"),
                    attempts=attempt
                )

        logger.error(f"Step '{step.label}' failed after {max_attempts} attempts")
        return ActionOutcome(
            output=output,
            error=RetryExhaustedError(max_attempts, error),
            attempts=max_attempts
        )

    def _call(self, action: str, args: List[Any], options: Dict[str, Any], token: CancellationToken):
        """Invoke the executor once, turning a raised exception into an error value."""
        try:
            return self.action_executor.execute(token, action, args, options, self.silent), None
        except ActionError as e:
            return e.output, e
        except Exception as e:
            logger.debug(f"Action '{action}' raised {type(e).__name__}: {e}")
            return None, e
