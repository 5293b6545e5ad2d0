"""
Secrets resolution and masking.

Secret values live in the same variable namespace as regular variables; this
module only tracks which values must be scrubbed from anything shown to a
human: step result output and error text, the step history, and log records.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..exceptions import ValidationError, TestCaseValidationError
from ..models import Secret

logger = logging.getLogger(__name__)

MASK = '***'


class SecretsManager:
    """
    Resolves secret definitions and masks their values in text.

    - Inline `value` wins over `file` when both are set
    - File secrets are read as UTF-8 and stripped of surrounding whitespace
    - Only secrets with mask_output=True are masked; empty values never are
    """

    def __init__(self, base_dir: Optional[Path] = None):
        """
        Initialize secrets manager.

        Args:
            base_dir: Directory that relative secret file paths resolve against
        """
        self.base_dir = Path(base_dir) if base_dir else None
        self._masked_values: Set[str] = set()
        self._names: Dict[str, bool] = {}

    def read_secret(self, secret: Secret) -> str:
        """
        Read the raw (pre-substitution) value of a secret.

        Args:
            secret: Secret definition

        Returns:
            Inline value or stripped file content

        Raises:
            TestCaseValidationError: If neither value nor file is set, or the
                file cannot be read
        """
        if secret.value is not None:
            return secret.value

        if not secret.file:
            raise TestCaseValidationError([ValidationError(
                message=f"Secret '{secret.name}' must have either 'value' or 'file' specified",
                path=f"variables.secrets.{secret.name}"
            )])

        path = Path(secret.file)
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path

        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise TestCaseValidationError([ValidationError(
                message=f"Failed to read secret file '{secret.file}': {e}",
                path=f"variables.secrets.{secret.name}"
            )]) from e

        logger.debug(f"Loaded secret '{secret.name}' from file")
        return content.strip()

    def register(self, name: str, value: Any, mask_output: bool = True) -> None:
        """
        Track a resolved secret value.

        Args:
            name: Secret name
            value: Final (substituted) value
            mask_output: Whether the value is scrubbed from output
        """
        self._names[name] = mask_output
        if mask_output and isinstance(value, str) and value:
            self._masked_values.add(value)

    def is_secret(self, name: str) -> bool:
        return name in self._names

    def is_masked(self, name: str) -> bool:
        return self._names.get(name, False)

    @property
    def names(self) -> List[str]:
        """Secret names, never values."""
        return sorted(self._names)

    def mask_text(self, text: str) -> str:
        """
        Mask known secret values in text.

        Best-effort replacement with '***'.

        Args:
            text: Text potentially containing secrets

        Returns:
            Text with secrets masked
        """
        if not text or not self._masked_values:
            return text

        masked = text
        # Longer values first so a secret containing another is fully masked
        for secret_value in sorted(self._masked_values, key=len, reverse=True):
            if secret_value in masked:
                masked = re.sub(re.escape(secret_value), MASK, masked)

        return masked

    def mask_value(self, value: Any) -> Any:
        """
        Recursively mask secrets inside strings, lists and dicts.

        Args:
            value: Value potentially containing secrets

        Returns:
            Copy of the value with secrets masked
        """
        if not self._masked_values:
            return value
        if isinstance(value, str):
            return self.mask_text(value)
        if isinstance(value, dict):
            return {self.mask_value(key): self.mask_value(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.mask_value(item) for item in value]
        return value


class SecretsMaskingFilter(logging.Filter):
    """
    Logging filter for masking secrets in log records.

    Can be attached to Python logging handlers to mask secrets in real-time.
    """

    def __init__(self, secrets_manager: SecretsManager):
        """
        Initialize filter with a secrets manager.

        Args:
            secrets_manager: Manager containing values to mask
        """
        super().__init__()
        self.secrets_manager = secrets_manager

    def filter(self, record):
        """
        Filter log record to mask secrets.

        Args:
            record: LogRecord to filter

        Returns:
            True (always pass the record through)
        """
        if isinstance(record.msg, str):
            record.msg = self.secrets_manager.mask_text(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = self.secrets_manager.mask_value(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self.secrets_manager.mask_text(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return True
