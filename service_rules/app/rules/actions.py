"""
Action dispatch for matched rules.

Actions are open string tags resolved against a ``CapabilityRegistry``.
A handler is called as ``handler(parameters, entity)`` and may be a plain
function or a coroutine function.
"""

import asyncio
import copy
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from shared.logging import get_logger

from .models import ActionResult, ResolvedAction, RuleAction

CapabilityHandler = Callable[[Dict[str, Any], Any], Union[Any, Awaitable[Any]]]


class CapabilityRegistry:
    """Maps action type tags to side-effecting handlers."""

    def __init__(self, handlers: Optional[Dict[str, CapabilityHandler]] = None):
        self.logger = get_logger("rules.capabilities")
        self._handlers: Dict[str, CapabilityHandler] = {}
        for action_type, handler in (handlers or {}).items():
            self.register(action_type, handler)

    def register(self, action_type: str, handler: CapabilityHandler) -> None:
        """Register (or replace) the handler for an action type."""
        if not action_type or not action_type.strip():
            raise ValueError("action_type must be a non-empty string")
        if not callable(handler):
            raise TypeError(f"handler for {action_type} is not callable")

        tag = _normalize(action_type)
        if tag in self._handlers:
            self.logger.info("Capability replaced", action_type=tag)
        self._handlers[tag] = handler

    def capability(self, action_type: str):
        """Decorator form of :meth:`register`."""
        def decorator(func: CapabilityHandler) -> CapabilityHandler:
            self.register(action_type, func)
            return func
        return decorator

    def unregister(self, action_type: str) -> bool:
        return self._handlers.pop(_normalize(action_type), None) is not None

    def get(self, action_type: str) -> Optional[CapabilityHandler]:
        return self._handlers.get(_normalize(action_type))

    def registered_types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, action_type: object) -> bool:
        return isinstance(action_type, str) and _normalize(action_type) in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


class ActionExecutor:
    """Executes rule actions against registered capabilities."""

    def __init__(self, registry: CapabilityRegistry):
        self.registry = registry
        self.logger = get_logger("rules.actions")

    async def execute(self, action: RuleAction, entity: Any,
                      capabilities: Optional[CapabilityRegistry] = None) -> ActionResult:
        """Execute one action. Never raises; failures come back as results."""
        registry = capabilities if capabilities is not None else self.registry
        handler = registry.get(action.action_type)

        if handler is None:
            self.logger.warning(
                "No capability registered for action",
                action_type=action.action_type,
                action_id=action.action_id
            )
            return self._tag(
                ActionResult.failed(f"unknown action type: {action.action_type}"), action
            )

        try:
            outcome = handler(action.parameters, entity)
            if asyncio.iscoroutine(outcome) or isinstance(outcome, asyncio.Future):
                outcome = await outcome
        except Exception as e:
            self.logger.error(
                "Action failed",
                action_type=action.action_type,
                action_id=action.action_id,
                error=str(e)
            )
            return self._tag(ActionResult.failed(str(e) or type(e).__name__), action)

        if isinstance(outcome, ActionResult):
            result = outcome
        else:
            result = ActionResult.ok(outcome)

        self.logger.debug(
            "Action executed",
            action_type=action.action_type,
            succeeded=result.succeeded
        )
        return self._tag(result, action)

    @staticmethod
    def _tag(result: ActionResult, action: RuleAction) -> ActionResult:
        result.action_type = result.action_type or action.action_type
        result.action_id = result.action_id or action.action_id
        return result


class DryRunActionExecutor:
    """Resolves actions without invoking any capability."""

    def __init__(self, registry: Optional[CapabilityRegistry] = None):
        self.registry = registry

    def resolve(self, action: RuleAction) -> ResolvedAction:
        registered = None
        if self.registry is not None:
            registered = action.action_type in self.registry
        return ResolvedAction(
            action_type=action.action_type,
            parameters=copy.deepcopy(action.parameters),
            order=action.order,
            action_id=action.action_id,
            handler_registered=registered,
        )


def _normalize(action_type: str) -> str:
    return action_type.strip().upper()
