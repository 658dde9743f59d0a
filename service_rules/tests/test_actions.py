"""
Unit tests for the capability registry and action executors.
"""

import asyncio
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_rules.app.rules.actions import ActionExecutor, CapabilityRegistry, DryRunActionExecutor
from service_rules.app.rules.models import ActionResult, RuleAction


class TestCapabilityRegistry:
    """Test cases for CapabilityRegistry."""

    @pytest.fixture
    def registry(self):
        """Create an empty registry."""
        return CapabilityRegistry()

    def test_register_normalizes_tag(self, registry):
        """Test tags are trimmed and uppercased."""
        handler = lambda params, entity: None
        registry.register(" set_priority ", handler)

        assert registry.get("SET_PRIORITY") is handler
        assert "set_priority" in registry
        assert registry.registered_types() == ["SET_PRIORITY"]

    def test_register_rejects_bad_input(self, registry):
        """Test empty tags and non-callables are rejected."""
        with pytest.raises(ValueError):
            registry.register("  ", lambda p, e: None)
        with pytest.raises(TypeError):
            registry.register("HOLD_ORDER", "not callable")

    def test_register_replaces_existing(self, registry):
        """Test re-registering a tag replaces the handler."""
        first = lambda p, e: 1
        second = lambda p, e: 2
        registry.register("HOLD_ORDER", first)
        registry.register("HOLD_ORDER", second)

        assert registry.get("HOLD_ORDER") is second
        assert len(registry) == 1

    def test_decorator_registration(self, registry):
        """Test the capability decorator."""
        @registry.capability("ASSIGN_ZONE")
        def assign(params, entity):
            return params["zone"]

        assert registry.get("ASSIGN_ZONE") is assign

    def test_unregister(self, registry):
        """Test removing a capability."""
        registry.register("BLOCK_ACTION", lambda p, e: None)

        assert registry.unregister("block_action") is True
        assert registry.unregister("BLOCK_ACTION") is False
        assert "BLOCK_ACTION" not in registry

    def test_constructor_handlers(self):
        """Test registering handlers up front."""
        registry = CapabilityRegistry({"b": lambda p, e: None, "a": lambda p, e: None})

        assert registry.registered_types() == ["A", "B"]
        assert 42 not in registry


class TestActionExecutor:
    """Test cases for ActionExecutor."""

    @pytest.fixture
    def registry(self):
        """Create a registry with sync, async and failing handlers."""
        registry = CapabilityRegistry()
        registry.register("ECHO", lambda params, entity: {"params": params, "id": entity["id"]})

        async def slow_echo(params, entity):
            await asyncio.sleep(0)
            return params.get("value")

        def explode(params, entity):
            raise RuntimeError("capability down")

        def bare_failure(params, entity):
            raise KeyError()

        registry.register("SLOW_ECHO", slow_echo)
        registry.register("EXPLODE", explode)
        registry.register("BARE", bare_failure)
        registry.register("EXPLICIT", lambda params, entity: ActionResult.failed("refused"))
        return registry

    @pytest.fixture
    def executor(self, registry):
        """Create executor."""
        return ActionExecutor(registry)

    @pytest.mark.asyncio
    async def test_sync_handler(self, executor):
        """Test plain function handlers."""
        action = RuleAction(action_type="ECHO", parameters={"x": 1}, action_id="a-1")

        result = await executor.execute(action, {"id": "ORD-1"})

        assert result.succeeded is True
        assert result.output == {"params": {"x": 1}, "id": "ORD-1"}
        assert result.action_type == "ECHO"
        assert result.action_id == "a-1"

    @pytest.mark.asyncio
    async def test_async_handler(self, executor):
        """Test coroutine handlers are awaited."""
        action = RuleAction(action_type="SLOW_ECHO", parameters={"value": "URGENT"})

        result = await executor.execute(action, {})

        assert result.succeeded is True
        assert result.output == "URGENT"

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failure(self, executor):
        """Test a raising handler yields a failed result."""
        result = await executor.execute(RuleAction(action_type="EXPLODE"), {})

        assert result.succeeded is False
        assert result.error == "capability down"

    @pytest.mark.asyncio
    async def test_exception_without_message(self, executor):
        """Test the exception type names the failure when it has no message."""
        result = await executor.execute(RuleAction(action_type="BARE"), {})

        assert result.succeeded is False
        assert result.error == "KeyError"

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, executor):
        """Test unregistered actions fail without raising."""
        result = await executor.execute(RuleAction(action_type="LAUNCH_ROCKET"), {})

        assert result.succeeded is False
        assert result.error == "unknown action type: LAUNCH_ROCKET"
        assert result.action_type == "LAUNCH_ROCKET"

    @pytest.mark.asyncio
    async def test_handler_returned_result_is_kept(self, executor):
        """Test an ActionResult returned by a handler passes through."""
        result = await executor.execute(RuleAction(action_type="EXPLICIT", action_id="a-9"), {})

        assert result.succeeded is False
        assert result.error == "refused"
        assert result.action_id == "a-9"

    @pytest.mark.asyncio
    async def test_capabilities_override(self, executor):
        """Test a per-call registry takes precedence."""
        override = CapabilityRegistry({"ECHO": lambda params, entity: "override"})

        result = await executor.execute(RuleAction(action_type="ECHO"), {"id": "x"}, capabilities=override)

        assert result.output == "override"

    @pytest.mark.asyncio
    async def test_empty_capabilities_override(self, executor):
        """Test an empty per-call registry is used as given."""
        calls = []
        executor.registry.register("HOLD_ORDER", lambda params, entity: calls.append(1))

        result = await executor.execute(RuleAction(action_type="HOLD_ORDER"), {}, capabilities=CapabilityRegistry())

        assert calls == []
        assert result.succeeded is False
        assert result.error == "unknown action type: HOLD_ORDER"


class TestDryRunActionExecutor:
    """Test cases for DryRunActionExecutor."""

    def test_resolve_copies_parameters(self):
        """Test resolved parameters are independent of the rule."""
        action = RuleAction(action_type="SEND_NOTIFICATION", parameters={"recipients": ["ops"]}, order=2)

        resolved = DryRunActionExecutor().resolve(action)
        resolved.parameters["recipients"].append("everyone")

        assert action.parameters == {"recipients": ["ops"]}
        assert resolved.order == 2
        assert resolved.handler_registered is None

    def test_resolve_reports_registration(self):
        """Test handler registration is reported without calling the handler."""
        calls = []
        registry = CapabilityRegistry({"HOLD_ORDER": lambda p, e: calls.append(p)})
        dry_run = DryRunActionExecutor(registry)

        assert dry_run.resolve(RuleAction(action_type="HOLD_ORDER")).handler_registered is True
        assert dry_run.resolve(RuleAction(action_type="UNKNOWN")).handler_registered is False
        assert calls == []
