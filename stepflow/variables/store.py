"""
Variable store: the mutable namespace of one test-case run.

Regular variables, resolved secrets, loop-position variables, step results
bound via `result:` and the step history all live in one mapping guarded by a
single lock. Every read or write holds the lock for exactly one access.
"""

import logging
import threading
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from ..models import Secret
from ..security.secrets import SecretsManager
from .substitution import (
    SECRETS_NAMESPACE,
    STEP_HISTORY_VAR,
    VariableSubstitutor,
    contains_reference,
)

logger = logging.getLogger(__name__)

# Hard cap on resolution passes; guards against self-referencing definitions
MAX_RESOLUTION_PASSES = 10


class VariableStore(Mapping):
    """
    Thread-safe variable namespace with ${...} substitution.

    Reads never fail: lookups of unknown names report not-found, and
    substitution leaves unknown references untouched.
    """

    def __init__(
        self,
        initial: Optional[Dict[str, Any]] = None,
        secrets_manager: Optional[SecretsManager] = None,
        substitutor: Optional[VariableSubstitutor] = None
    ):
        self._variables: Dict[str, Any] = dict(initial or {})
        self._secret_names: List[str] = []
        self._lock = threading.RLock()
        self.secrets_manager = secrets_manager or SecretsManager()
        self.substitutor = substitutor or VariableSubstitutor()

    # Mapping interface (used by the substitutor)

    def __getitem__(self, name: str) -> Any:
        with self._lock:
            if name in self._variables:
                return self._variables[name]
            if name == SECRETS_NAMESPACE:
                return {key: self._variables[key] for key in self._secret_names if key in self._variables}
        raise KeyError(name)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._variables

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._variables))

    def __len__(self) -> int:
        with self._lock:
            return len(self._variables)

    # Store operations

    def lookup(self, name: str) -> Tuple[Any, bool]:
        """
        Get a variable.

        Returns:
            (value, found); value is None when not found
        """
        with self._lock:
            if name in self._variables:
                return self._variables[name], True
            return None, False

    def get(self, name: str, default: Any = None) -> Any:
        with self._lock:
            return self._variables.get(name, default)

    def set(self, name: str, value: Any) -> None:
        """Set a variable, overwriting any earlier value."""
        with self._lock:
            self._variables[name] = value

    def delete(self, name: str) -> None:
        with self._lock:
            self._variables.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._variables.clear()
            self._secret_names.clear()

    def snapshot(self) -> Dict[str, Any]:
        """Shallow copy of the current namespace."""
        with self._lock:
            return dict(self._variables)

    def substitute(self, text: str) -> str:
        """Substitute ${...} references in a string (fail-open)."""
        return self.substitutor.substitute_string(text, self)

    def substitute_deep(self, value: Any) -> Any:
        """Substitute references inside strings, lists and dicts."""
        return self.substitutor.substitute(value, self)

    @property
    def secret_names(self) -> List[str]:
        with self._lock:
            return list(self._secret_names)

    # Step history

    def append_history(self, entry: Dict[str, Any]) -> None:
        """
        Append an entry to the reserved step-history list.

        The list is replaced rather than mutated so earlier snapshots and
        values handed to actions stay unchanged.
        """
        with self._lock:
            history = self._variables.get(STEP_HISTORY_VAR)
            if not isinstance(history, list):
                history = []
            self._variables[STEP_HISTORY_VAR] = history + [entry]

    # Initialization

    def initialize(
        self,
        variables: Optional[Dict[str, Any]] = None,
        secrets: Optional[Iterable[Secret]] = None
    ) -> int:
        """
        Seed the store from test-case definitions.

        1. Secrets first, in declaration order; each value gets one
           substitution round so it may reference earlier secrets.
        2. Regular variables copied verbatim.
        3. Stored values re-substituted until stable (at most
           MAX_RESOLUTION_PASSES passes).

        Args:
            variables: Regular variable definitions
            secrets: Secret definitions

        Returns:
            Number of resolution passes performed
        """
        with self._lock:
            secret_masks: Dict[str, bool] = {}
            for secret in secrets or []:
                raw = self.secrets_manager.read_secret(secret)
                self._variables[secret.name] = self.substitute_deep(raw)
                if secret.name not in self._secret_names:
                    self._secret_names.append(secret.name)
                secret_masks[secret.name] = secret.mask_output

            if variables:
                if STEP_HISTORY_VAR in variables:
                    logger.warning(
                        f"The variable '{STEP_HISTORY_VAR}' is reserved for internal use and will be overwritten"
                    )
                for key, value in variables.items():
                    if key in secret_masks:
                        logger.warning(f"Variable '{key}' shadows a secret of the same name")
                    self._variables[key] = value

            passes = self._resolve_passes()

            for name, mask_output in secret_masks.items():
                self.secrets_manager.register(name, self._variables.get(name), mask_output)

        logger.debug(f"Initialized {len(self._variables)} variables in {passes} resolution pass(es)")
        return passes

    def _resolve_passes(self) -> int:
        """
        Re-substitute stored values until nothing changes.

        Keys whose values still contain a ${...} token are tracked as dirty;
        a pass only revisits dirty keys. Strings compare by value, containers
        always count as changed, so a container that keeps an unresolvable
        reference runs until the pass cap.
        """
        dirty = [key for key, value in self._variables.items() if contains_reference(value)]
        passes = 0

        while dirty and passes < MAX_RESOLUTION_PASSES:
            passes += 1
            changed = False
            still_dirty = []

            for key in dirty:
                old = self._variables[key]
                new = self.substitute_deep(old)
                self._variables[key] = new

                if isinstance(new, str):
                    if new != old:
                        changed = True
                else:
                    changed = True

                if contains_reference(new):
                    still_dirty.append(key)

            dirty = still_dirty
            if not changed:
                break

        if dirty:
            logger.debug(f"Unresolved references remain in: {sorted(dirty)}")
        return passes
