"""
Built-in warehouse capabilities.

These handlers do not mutate the entity. Each returns a marker describing
the change the owning service should apply (a new priority, a user or zone
assignment, a notification, a block/hold decision, a modified field value).
"""

from typing import Any, Dict

from .actions import CapabilityRegistry
from .resolver import MISSING, resolve_field
from .values import RuleValue


def set_priority(parameters: Dict[str, Any], entity: Any) -> Dict[str, Any]:
    if "value" not in parameters:
        raise ValueError("SET_PRIORITY requires a 'value' parameter")
    return {
        "type": "SET_PRIORITY",
        "field": parameters.get("field") or "priority",
        "value": parameters["value"],
    }


def assign_user(parameters: Dict[str, Any], entity: Any) -> Dict[str, Any]:
    user_id = parameters.get("userId") or parameters.get("user_id")
    if not user_id:
        raise ValueError("ASSIGN_USER requires a 'userId' parameter")
    return {
        "type": "ASSIGN_USER",
        "userId": user_id,
        "role": parameters.get("role"),
    }


def assign_zone(parameters: Dict[str, Any], entity: Any) -> Dict[str, Any]:
    zone = parameters.get("zone")
    if not zone:
        raise ValueError("ASSIGN_ZONE requires a 'zone' parameter")
    return {"type": "ASSIGN_ZONE", "zone": zone}


def send_notification(parameters: Dict[str, Any], entity: Any) -> Dict[str, Any]:
    return {
        "type": "SEND_NOTIFICATION",
        "message": parameters.get("message"),
        "recipients": list(parameters.get("recipients") or []),
        "notificationType": parameters.get("type"),
    }


def block_action(parameters: Dict[str, Any], entity: Any) -> Dict[str, Any]:
    return {
        "type": "BLOCK_ACTION",
        "blocked": True,
        "reason": parameters.get("reason"),
    }


def hold_order(parameters: Dict[str, Any], entity: Any) -> Dict[str, Any]:
    return {
        "type": "HOLD_ORDER",
        "held": True,
        "reason": parameters.get("reason"),
    }


def modify_field(parameters: Dict[str, Any], entity: Any) -> Dict[str, Any]:
    """Compute a new field value with ``set`` (default), ``add`` or ``multiply``."""
    field = parameters.get("field")
    if not field:
        raise ValueError("MODIFY_FIELD requires a 'field' parameter")

    operation = (parameters.get("operation") or "set").lower()
    value = parameters.get("value")

    if operation == "set":
        final_value = value
    elif operation in ("add", "multiply"):
        current = resolve_field(entity, field)
        current_num = None if current is MISSING else RuleValue.of(current).as_number()
        operand = RuleValue.of(value).as_number()
        if current_num is None or operand is None:
            raise ValueError(f"MODIFY_FIELD {operation} needs numeric values, got {current!r} and {value!r}")
        final_value = current_num + operand if operation == "add" else current_num * operand
        final_value = int(final_value) if final_value == final_value.to_integral_value() else float(final_value)
    else:
        raise ValueError(f"unsupported MODIFY_FIELD operation: {operation}")

    return {"type": "MODIFY_FIELD", "field": field, "value": final_value}


def default_capabilities() -> CapabilityRegistry:
    """Registry preloaded with the built-in warehouse capabilities."""
    registry = CapabilityRegistry()
    registry.register("SET_PRIORITY", set_priority)
    registry.register("ASSIGN_USER", assign_user)
    registry.register("ASSIGN_ZONE", assign_zone)
    registry.register("SEND_NOTIFICATION", send_notification)
    registry.register("BLOCK_ACTION", block_action)
    registry.register("HOLD_ORDER", hold_order)
    registry.register("MODIFY_FIELD", modify_field)
    return registry
