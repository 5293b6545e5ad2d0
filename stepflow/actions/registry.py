"""
Action registry.

Maps action names to handler callables and implements the action-executor
contract the engine consumes: execute(token, action, args, options, silent).
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..exceptions import ActionError

logger = logging.getLogger(__name__)

# handler(token, args, options, silent) -> output
ActionHandler = Callable[..., Any]


class ActionRegistry:
    """
    Registry for action handlers.

    Built-in actions are always available; registered handlers take
    precedence over a built-in of the same name.
    """

    def __init__(self, include_builtins: bool = True):
        """
        Initialize the registry.

        Args:
            include_builtins: Load control, log, echo, sleep, assert, fail, skip
        """
        self._actions: Dict[str, ActionHandler] = {}
        self._builtin_actions = self._load_builtin_actions() if include_builtins else {}

    def _load_builtin_actions(self) -> Dict[str, ActionHandler]:
        from . import builtin
        return dict(builtin.BUILTIN_ACTIONS)

    def register(self, name: str, handler: ActionHandler) -> None:
        """
        Register an action handler.

        Raises:
            ValueError: If the name is empty or the handler is not callable
        """
        if not name:
            raise ValueError("Action name must not be empty")
        if not callable(handler):
            raise ValueError(f"Handler for action '{name}' is not callable")

        self._actions[name] = handler
        logger.debug(f"Registered action: {name}")

    def get(self, name: str) -> Optional[ActionHandler]:
        return self._actions.get(name) or self._builtin_actions.get(name)

    def exists(self, name: str) -> bool:
        return name in self._actions or name in self._builtin_actions

    def list_actions(self) -> List[str]:
        return sorted(set(self._actions) | set(self._builtin_actions))

    def execute(
        self,
        token,
        action: str,
        args: List[Any],
        options: Dict[str, Any],
        silent: bool = False
    ) -> Any:
        """
        Run an action by name.

        Args:
            token: Cancellation token forwarded to the handler
            action: Action name
            args: Substituted positional arguments
            options: Substituted options
            silent: Suppress the action's own output

        Returns:
            Whatever the handler returns

        Raises:
            ActionError: If the action is unknown; handler errors propagate
        """
        handler = self.get(action)
        if handler is None:
            raise ActionError(f"unknown action: {action}")
        return handler(token, list(args or []), dict(options or {}), silent)
