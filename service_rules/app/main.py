"""
Rules service for the Warehouse platform.
"""

from typing import Optional

from fastapi import Header, Query

from shared.base_service import BaseService
from shared.logging import set_entity_context, set_user_context

from .audit.sink import AuditSink, InMemoryAuditSink
from .cache.redis_cache import CachingRuleRepository, RedisRuleCache
from .persistence.base import RuleRepository
from .persistence.memory import InMemoryRuleRepository
from .persistence.postgres import PostgreSQLAuditSink, PostgreSQLRuleRepository
from .rules.actions import CapabilityRegistry
from .rules.capabilities import default_capabilities
from .rules.engine import RuleEngine
from .rules.lifecycle import RuleManager, build_rule, validate_rule
from .rules.models import (
    AdHocRuleTestRequest, FireEventRequest, RuleCreateRequest, RuleListResponse,
    RuleStatus, RuleTestRequest, RuleType, RuleUpdateRequest
)


class RulesService(BaseService):
    """Rules service implementation."""

    def __init__(
        self,
        repository: Optional[RuleRepository] = None,
        capabilities: Optional[CapabilityRegistry] = None,
        audit_sink: Optional[AuditSink] = None,
        **config_overrides
    ):
        super().__init__("rules", 8020, **config_overrides)

        # Initialize components
        self.repository = repository if repository is not None else self._build_repository()
        self.capabilities = capabilities if capabilities is not None else default_capabilities()
        self.audit_sink = audit_sink if audit_sink is not None else self._build_audit_sink()

        self.manager = RuleManager(self.repository)
        self.engine = RuleEngine(
            self.repository,
            self.capabilities,
            audit_sink=self.audit_sink,
            metrics=self.metrics,
            stop_on_first_match=self.config.rules_stop_on_first_match,
            halt_actions_on_failure=self.config.rules_halt_actions_on_failure,
            audit_timeout_seconds=self.config.audit_timeout_seconds
        )

        self._setup_rules_routes()

    def _build_repository(self) -> RuleRepository:
        if self.config.rules_backend == "postgres":
            repository: RuleRepository = PostgreSQLRuleRepository(self.config.postgres_dsn)
        else:
            repository = InMemoryRuleRepository()

        if self.config.rules_cache_enabled:
            cache = RedisRuleCache(self.config.redis_url, self.config.rules_cache_ttl_seconds)
            repository = CachingRuleRepository(repository, cache, self.metrics)

        return repository

    def _build_audit_sink(self) -> AuditSink:
        backing = self.repository
        if isinstance(backing, CachingRuleRepository):
            backing = backing.repository
        if isinstance(backing, PostgreSQLRuleRepository):
            return PostgreSQLAuditSink(backing)
        return InMemoryAuditSink(self.config.audit_buffer_size)

    def _setup_rules_routes(self):
        """Set up rules-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "rules",
                "message": "Warehouse Platform - Rules Service",
                "version": "1.0.0",
                "capabilities": self.capabilities.registered_types()
            }

        @self.app.get("/rules")
        async def list_rules(
            status: Optional[RuleStatus] = Query(None, description="Filter by status"),
            rule_type: Optional[RuleType] = Query(None, description="Filter by rule type"),
            include_archived: bool = Query(False, description="Include archived rules"),
            page: int = Query(1, ge=1, description="Page number"),
            limit: int = Query(50, ge=1, le=100, description="Items per page")
        ):
            """List rules with optional filtering."""
            rules, total = await self.manager.list_rules(
                status=status, rule_type=rule_type, page=page, limit=limit,
                include_archived=include_archived
            )
            return RuleListResponse(
                rules=[rule.to_dict() for rule in rules],
                total=total,
                page=page,
                limit=limit
            )

        @self.app.post("/rules", status_code=201)
        async def create_rule(request: RuleCreateRequest):
            """Create a new DRAFT rule."""
            rule = await self.manager.create_rule(request)
            return rule.to_dict()

        @self.app.post("/rules/test")
        async def test_rule_definition(request: AdHocRuleTestRequest):
            """Dry-run an unsaved rule definition."""
            rule = validate_rule(build_rule(request.rule, rule_id="adhoc"))
            return self.engine.test(rule, request.sample_entity).to_dict()

        @self.app.post("/rules/events")
        async def fire_event(request: FireEventRequest):
            """Fire a warehouse event against every eligible rule."""
            set_entity_context(request.entity_id)
            set_user_context(request.triggered_by)
            trace = await self.engine.fire(
                request.event_type,
                request.entity,
                request.entity_type,
                entity_id=request.entity_id,
                triggered_by=request.triggered_by
            )
            return trace.to_dict()

        @self.app.get("/rules/{rule_id}")
        async def get_rule(rule_id: str):
            """Get a rule by ID."""
            rule = await self.manager.get_rule(rule_id)
            return rule.to_dict()

        @self.app.put("/rules/{rule_id}")
        async def update_rule(rule_id: str, request: RuleUpdateRequest):
            """Update a rule that is not archived."""
            set_user_context(request.updated_by)
            rule = await self.manager.update_rule(rule_id, request)
            return rule.to_dict()

        @self.app.delete("/rules/{rule_id}")
        async def delete_rule(rule_id: str):
            """Delete a rule."""
            await self.manager.delete_rule(rule_id)
            await self._refresh_active_rules()
            return {"success": True, "message": "Rule deleted successfully"}

        @self.app.post("/rules/{rule_id}/activate")
        async def activate_rule(rule_id: str, x_user_id: Optional[str] = Header(None)):
            """Move a DRAFT or INACTIVE rule to ACTIVE."""
            rule = await self.manager.activate(rule_id, x_user_id)
            await self._refresh_active_rules()
            return rule.to_dict()

        @self.app.post("/rules/{rule_id}/deactivate")
        async def deactivate_rule(rule_id: str, x_user_id: Optional[str] = Header(None)):
            """Move an ACTIVE rule to INACTIVE."""
            rule = await self.manager.deactivate(rule_id, x_user_id)
            await self._refresh_active_rules()
            return rule.to_dict()

        @self.app.post("/rules/{rule_id}/toggle")
        async def toggle_rule(rule_id: str, x_user_id: Optional[str] = Header(None)):
            """Flip a rule between ACTIVE and INACTIVE."""
            rule = await self.manager.toggle(rule_id, x_user_id)
            await self._refresh_active_rules()
            return rule.to_dict()

        @self.app.post("/rules/{rule_id}/archive")
        async def archive_rule(rule_id: str, x_user_id: Optional[str] = Header(None)):
            """Archive a rule. Archived rules can no longer be edited."""
            rule = await self.manager.archive(rule_id, x_user_id)
            await self._refresh_active_rules()
            return rule.to_dict()

        @self.app.post("/rules/{rule_id}/test")
        async def test_stored_rule(rule_id: str, request: RuleTestRequest):
            """Dry-run a stored rule in any status."""
            result = await self.engine.test_rule(rule_id, request.sample_entity)
            return result.to_dict()

        @self.app.get("/rules/{rule_id}/executions")
        async def get_executions(
            rule_id: str,
            limit: int = Query(100, ge=1, le=1000, description="Maximum records")
        ):
            """Get the most recent execution records for a rule."""
            await self.manager.get_rule(rule_id)
            records = await self.audit_sink.find_records(rule_id=rule_id, limit=limit)
            return {
                "rule_id": rule_id,
                "executions": [record.to_dict() for record in records],
                "count": len(records)
            }

    async def _refresh_active_rules(self):
        _, total = await self.repository.list_rules(status=RuleStatus.ACTIVE, limit=1)
        self.metrics.set_gauge("active_rules", total)

    async def _check_dependencies(self):
        """Check rules service dependencies."""
        dependencies = {}

        try:
            if await self.repository.health_check():
                dependencies["repository"] = "ok"
            else:
                dependencies["repository"] = "error"
        except Exception:
            dependencies["repository"] = "error"

        return dependencies

    async def start(self):
        """Start rules service components."""
        await self.repository.start()
        await self._refresh_active_rules()
        self.logger.info(
            "Rules service started",
            backend=self.config.rules_backend,
            cache_enabled=self.config.rules_cache_enabled,
            capabilities=self.capabilities.registered_types()
        )

    async def stop(self):
        """Stop rules service components."""
        await self.repository.stop()
        self.logger.info("Rules service stopped")


def create_app():
    """Create rules service application."""
    service = RulesService()
    return service.app


if __name__ == "__main__":
    service = RulesService()
    service.run()
