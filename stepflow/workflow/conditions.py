"""
Condition evaluation for if/while blocks and the `control` action.

Conditions arrive already substituted, e.g. "200 == 200" or
"${count} < 3" after resolution. Evaluation works on the text only.
"""

import logging
from typing import Tuple

from ..exceptions import EvaluationError

logger = logging.getLogger(__name__)


class ConditionEvaluator:
    """
    Evaluates condition strings to booleans and loop specs to counts.

    Supports:
    - Comparison: ==, !=, >, <, >=, <= (numeric when both sides parse as
      numbers, string comparison otherwise)
    - String: contains, starts_with, ends_with
    - Logical: || (lowest precedence), &&, leading !
    - Literals: true/false, 1/0, yes/no, on/off
    """

    # Longer operators first so ">=" is not matched as ">"
    OPERATORS = ("==", "!=", ">=", "<=", ">", "<", "contains", "starts_with", "ends_with")

    TRUE_LITERALS = ("true", "1", "yes", "on")
    FALSE_LITERALS = ("false", "0", "no", "off")

    def evaluate(self, condition: str) -> bool:
        """
        Evaluate a condition string.

        Args:
            condition: Substituted condition text

        Returns:
            Boolean result

        Raises:
            EvaluationError: If the condition cannot be parsed
        """
        text = str(condition).strip()
        if not text:
            raise EvaluationError("empty condition")

        if " || " in text:
            return any(self.evaluate(part) for part in text.split(" || "))
        if " && " in text:
            return all(self.evaluate(part) for part in text.split(" && "))

        if text.startswith("!") and not text.startswith("!="):
            return not self.evaluate(text[1:])

        for op in self.OPERATORS:
            token = f" {op} "
            if token in text:
                parts = text.split(token)
                if len(parts) != 2:
                    raise EvaluationError(f"invalid condition format: {text}")
                left, right = (self._unquote(p.strip()) for p in parts)
                return self.compare(left, right, op)

        return self._parse_boolean(text)

    def count_iterations(self, spec: str) -> int:
        """
        Turn a for-loop spec into an iteration count.

        Accepts "N", an inclusive range "a..b" or a list "[x, y, z]".

        Raises:
            EvaluationError: If the spec is malformed or negative
        """
        text = str(spec).strip()

        if ".." in text:
            start, end = self._parse_range(text)
            return end - start + 1

        if text.startswith("[") and text.endswith("]"):
            items = [item for item in text[1:-1].split(",") if item.strip()]
            return len(items)

        try:
            count = int(text)
        except ValueError:
            raise EvaluationError(f"invalid count value: {text}")
        if count < 0:
            raise EvaluationError(f"count cannot be negative: {count}")
        return count

    def _parse_range(self, text: str) -> Tuple[int, int]:
        parts = text.split("..")
        if len(parts) != 2:
            raise EvaluationError(f"invalid range format: {text}")
        try:
            start = int(parts[0].strip())
            end = int(parts[1].strip())
        except ValueError:
            raise EvaluationError(f"invalid range format: {text}")
        if start > end:
            raise EvaluationError(f"start value cannot be greater than end value: {start} > {end}")
        return start, end

    def compare(self, left: str, right: str, op: str) -> bool:
        """Apply one comparison operator to two operands."""
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op == "contains":
            return right in left
        if op == "starts_with":
            return left.startswith(right)
        if op == "ends_with":
            return left.endswith(right)

        try:
            lhs, rhs = float(left), float(right)
        except ValueError:
            lhs, rhs = left, right

        if op == ">":
            return lhs > rhs
        if op == ">=":
            return lhs >= rhs
        if op == "<":
            return lhs < rhs
        return lhs <= rhs

    def _parse_boolean(self, text: str) -> bool:
        value = self._unquote(text).strip().lower()
        if value in self.TRUE_LITERALS:
            return True
        if value in self.FALSE_LITERALS:
            return False
        raise EvaluationError(f"cannot parse as boolean: {text}")

    def _unquote(self, value: str) -> str:
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            return value[1:-1]
        return value
