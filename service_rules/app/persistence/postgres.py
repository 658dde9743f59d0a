"""
PostgreSQL persistence layer for the Rules Service.
"""

import json
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

import asyncpg

from shared.errors import RepositoryError
from shared.logging import get_logger

from ..audit.sink import AuditSink
from ..rules.models import (
    ActionResult, BusinessRule, ConditionOperator, ConditionResult, ExecutionRecord,
    LogicalOperator, RuleAction, RuleCondition, RuleEventType, RuleStatus, RuleType,
    rule_type_accepts
)
from .base import RuleRepository

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS business_rules (
        rule_id VARCHAR(255) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        description TEXT,
        rule_type VARCHAR(50) NOT NULL,
        status VARCHAR(50) NOT NULL DEFAULT 'DRAFT',
        priority INTEGER NOT NULL DEFAULT 0,
        start_date TIMESTAMP WITH TIME ZONE,
        end_date TIMESTAMP WITH TIME ZONE,
        created_by VARCHAR(255),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        updated_by VARCHAR(255),
        updated_at TIMESTAMP WITH TIME ZONE,
        version INTEGER NOT NULL DEFAULT 1,
        last_executed_at TIMESTAMP WITH TIME ZONE,
        execution_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_business_rules_active
    ON business_rules(rule_type, priority DESC) WHERE status = 'ACTIVE'
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_trigger_events (
        rule_id VARCHAR(255) NOT NULL REFERENCES business_rules(rule_id) ON DELETE CASCADE,
        event_type VARCHAR(50) NOT NULL,
        PRIMARY KEY (rule_id, event_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_conditions (
        condition_id VARCHAR(255) PRIMARY KEY,
        rule_id VARCHAR(255) NOT NULL REFERENCES business_rules(rule_id) ON DELETE CASCADE,
        field VARCHAR(255) NOT NULL,
        operator VARCHAR(50) NOT NULL,
        value JSONB NOT NULL,
        value2 JSONB,
        logical_operator VARCHAR(10),
        "order" INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_rule_conditions_rule ON rule_conditions(rule_id, "order")
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_actions (
        action_id VARCHAR(255) PRIMARY KEY,
        rule_id VARCHAR(255) NOT NULL REFERENCES business_rules(rule_id) ON DELETE CASCADE,
        action_type VARCHAR(50) NOT NULL,
        parameters JSONB NOT NULL DEFAULT '{}',
        "order" INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_rule_actions_rule ON rule_actions(rule_id, "order")
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_execution_logs (
        log_id VARCHAR(255) PRIMARY KEY,
        rule_id VARCHAR(255) NOT NULL REFERENCES business_rules(rule_id) ON DELETE CASCADE,
        event_type VARCHAR(50) NOT NULL,
        entity_id VARCHAR(255) NOT NULL,
        entity_type VARCHAR(100) NOT NULL,
        triggered_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
        triggered_by VARCHAR(255) NOT NULL,
        conditions_met BOOLEAN NOT NULL,
        execution_time_ms INTEGER NOT NULL,
        error_message TEXT,
        execution_results JSONB NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_rule_execution_logs_rule
    ON rule_execution_logs(rule_id, triggered_at DESC)
    """,
)


class PostgreSQLRuleRepository(RuleRepository):
    """asyncpg-backed rule repository."""

    def __init__(self, dsn: str, create_schema: bool = True):
        self.dsn = dsn
        self.create_schema = create_schema
        self.logger = get_logger("rules.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            if self.create_schema:
                await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise RepositoryError("Failed to start PostgreSQL persistence", {"error": str(e)})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def load_eligible_rules(self, event: RuleEventType,
                                  entity_type: Optional[str]) -> List[BusinessRule]:
        # One snapshot for the rule rows and their children
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    rows = await conn.fetch("""
                        SELECT r.* FROM business_rules r
                        JOIN rule_trigger_events e ON e.rule_id = r.rule_id
                        WHERE r.status = 'ACTIVE'
                          AND e.event_type = $1
                          AND (r.start_date IS NULL OR r.start_date <= NOW())
                          AND (r.end_date IS NULL OR r.end_date >= NOW())
                        ORDER BY r.priority DESC, r.rule_id ASC
                    """, event.value)
                    rules = await self._hydrate(conn, rows)
        except asyncpg.PostgresError as e:
            self.logger.error("Error loading eligible rules", event_type=event.value, error=str(e))
            raise RepositoryError("Failed to load eligible rules", {"event_type": event.value, "error": str(e)})

        return [rule for rule in rules if rule_type_accepts(rule.rule_type, entity_type)]

    async def increment_execution_count(self, rule_id: str) -> None:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE business_rules
                SET execution_count = execution_count + 1,
                    last_executed_at = NOW()
                WHERE rule_id = $1
            """, rule_id)

        if result == "UPDATE 0":
            raise RepositoryError(f"Rule {rule_id} not found for execution count update", {"rule_id": rule_id})

    async def load_rule(self, rule_id: str) -> Optional[BusinessRule]:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    row = await conn.fetchrow("SELECT * FROM business_rules WHERE rule_id = $1", rule_id)
                    if not row:
                        return None
                    rules = await self._hydrate(conn, [row])
        except asyncpg.PostgresError as e:
            self.logger.error("Error loading rule", rule_id=rule_id, error=str(e))
            raise RepositoryError("Failed to load rule", {"rule_id": rule_id, "error": str(e)})
        return rules[0]

    async def save_rule(self, rule: BusinessRule) -> BusinessRule:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    # execution_count and last_executed_at are owned by increment_execution_count
                    await conn.execute("""
                        INSERT INTO business_rules (
                            rule_id, name, description, rule_type, status, priority,
                            start_date, end_date, created_by, created_at, updated_by,
                            updated_at, version, execution_count, last_executed_at
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                        ON CONFLICT (rule_id) DO UPDATE SET
                            name = EXCLUDED.name,
                            description = EXCLUDED.description,
                            rule_type = EXCLUDED.rule_type,
                            status = EXCLUDED.status,
                            priority = EXCLUDED.priority,
                            start_date = EXCLUDED.start_date,
                            end_date = EXCLUDED.end_date,
                            updated_by = EXCLUDED.updated_by,
                            updated_at = EXCLUDED.updated_at,
                            version = EXCLUDED.version
                    """,
                        rule.rule_id, rule.name, rule.description, rule.rule_type.value,
                        rule.status.value, rule.priority, rule.start_date, rule.end_date,
                        rule.created_by, rule.created_at, rule.updated_by, rule.updated_at,
                        rule.version, rule.execution_count, rule.last_executed_at
                    )

                    await conn.execute("DELETE FROM rule_trigger_events WHERE rule_id = $1", rule.rule_id)
                    await conn.executemany(
                        "INSERT INTO rule_trigger_events (rule_id, event_type) VALUES ($1, $2)",
                        [(rule.rule_id, event.value) for event in rule.trigger_events]
                    )

                    await conn.execute("DELETE FROM rule_conditions WHERE rule_id = $1", rule.rule_id)
                    await conn.executemany("""
                        INSERT INTO rule_conditions (
                            condition_id, rule_id, field, operator, value, value2,
                            logical_operator, "order"
                        ) VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8)
                    """, [self._condition_args(rule, c, i) for i, c in enumerate(rule.conditions)])

                    await conn.execute("DELETE FROM rule_actions WHERE rule_id = $1", rule.rule_id)
                    await conn.executemany("""
                        INSERT INTO rule_actions (action_id, rule_id, action_type, parameters, "order")
                        VALUES ($1, $2, $3, $4::jsonb, $5)
                    """, [self._action_args(rule, a, i) for i, a in enumerate(rule.actions)])

        except asyncpg.PostgresError as e:
            self.logger.error("Error saving rule", rule_id=rule.rule_id, error=str(e))
            raise RepositoryError("Failed to save rule", {"rule_id": rule.rule_id, "error": str(e)})

        self.logger.info("Rule saved", rule_id=rule.rule_id, name=rule.name, version=rule.version)
        return rule

    async def list_rules(self, status: Optional[RuleStatus] = None,
                         rule_type: Optional[RuleType] = None,
                         offset: int = 0, limit: int = 50,
                         include_archived: bool = False) -> Tuple[List[BusinessRule], int]:
        clauses = ["1=1"]
        params: List[Any] = []
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        elif not include_archived:
            clauses.append("status != 'ARCHIVED'")
        if rule_type is not None:
            params.append(rule_type.value)
            clauses.append(f"rule_type = ${len(params)}")
        where = " AND ".join(clauses)

        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    total = await conn.fetchval(f"SELECT COUNT(*) FROM business_rules WHERE {where}", *params)
                    rows = await conn.fetch(
                        f"""
                        SELECT * FROM business_rules WHERE {where}
                        ORDER BY priority DESC, rule_id ASC
                        OFFSET ${len(params) + 1} LIMIT ${len(params) + 2}
                        """,
                        *params, offset, limit
                    )
                    rules = await self._hydrate(conn, rows)
        except asyncpg.PostgresError as e:
            self.logger.error("Error listing rules", error=str(e))
            raise RepositoryError("Failed to list rules", {"error": str(e)})

        return rules, total or 0

    async def delete_rule(self, rule_id: str) -> bool:
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("DELETE FROM business_rules WHERE rule_id = $1", rule_id)
        except asyncpg.PostgresError as e:
            self.logger.error("Error deleting rule", rule_id=rule_id, error=str(e))
            raise RepositoryError("Failed to delete rule", {"rule_id": rule_id, "error": str(e)})

        if result == "DELETE 1":
            self.logger.info("Rule deleted", rule_id=rule_id)
            return True
        self.logger.warning("Rule not found for deletion", rule_id=rule_id)
        return False

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    async def _hydrate(self, conn, rows: Iterable[Any]) -> List[BusinessRule]:
        rows = list(rows)
        if not rows:
            return []
        rule_ids = [row["rule_id"] for row in rows]

        event_rows = await conn.fetch(
            "SELECT rule_id, event_type FROM rule_trigger_events WHERE rule_id = ANY($1::varchar[])",
            rule_ids
        )
        condition_rows = await conn.fetch(
            """
            SELECT * FROM rule_conditions WHERE rule_id = ANY($1::varchar[])
            ORDER BY rule_id, "order", condition_id
            """,
            rule_ids
        )
        action_rows = await conn.fetch(
            """
            SELECT * FROM rule_actions WHERE rule_id = ANY($1::varchar[])
            ORDER BY rule_id, "order", action_id
            """,
            rule_ids
        )

        events: Dict[str, List[RuleEventType]] = {rule_id: [] for rule_id in rule_ids}
        for row in event_rows:
            events[row["rule_id"]].append(RuleEventType(row["event_type"]))
        conditions: Dict[str, List[RuleCondition]] = {rule_id: [] for rule_id in rule_ids}
        for row in condition_rows:
            conditions[row["rule_id"]].append(self._row_to_condition(row))
        actions: Dict[str, List[RuleAction]] = {rule_id: [] for rule_id in rule_ids}
        for row in action_rows:
            actions[row["rule_id"]].append(self._row_to_action(row))

        return [
            self._row_to_rule(row, events[row["rule_id"]], conditions[row["rule_id"]], actions[row["rule_id"]])
            for row in rows
        ]

    def _row_to_rule(self, row, events: List[RuleEventType], conditions: List[RuleCondition],
                     actions: List[RuleAction]) -> BusinessRule:
        """Convert database rows to a BusinessRule."""
        return BusinessRule(
            rule_id=row["rule_id"],
            name=row["name"],
            description=row["description"],
            rule_type=RuleType(row["rule_type"]),
            status=RuleStatus(row["status"]),
            priority=row["priority"],
            trigger_events=sorted(events, key=lambda e: e.value),
            conditions=conditions,
            actions=actions,
            execution_count=row["execution_count"],
            version=row["version"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_by=row["updated_by"],
            updated_at=row["updated_at"],
            last_executed_at=row["last_executed_at"],
        )

    @staticmethod
    def _row_to_condition(row) -> RuleCondition:
        logical = row["logical_operator"]
        return RuleCondition(
            condition_id=row["condition_id"],
            rule_id=row["rule_id"],
            field=row["field"],
            operator=ConditionOperator(row["operator"]),
            value=_load_json(row["value"]),
            value2=_load_json(row["value2"]),
            logical_operator=LogicalOperator(logical) if logical else None,
            order=row["order"],
        )

    @staticmethod
    def _row_to_action(row) -> RuleAction:
        return RuleAction(
            action_id=row["action_id"],
            rule_id=row["rule_id"],
            action_type=row["action_type"],
            parameters=_load_json(row["parameters"]) or {},
            order=row["order"],
        )

    @staticmethod
    def _condition_args(rule: BusinessRule, condition: RuleCondition, position: int) -> Tuple:
        return (
            condition.condition_id or f"{rule.rule_id}-condition-{position}",
            rule.rule_id,
            condition.field,
            condition.operator.value,
            _dump_json(condition.value),
            None if condition.value2 is None else _dump_json(condition.value2),
            condition.logical_operator.value if condition.logical_operator else None,
            condition.order,
        )

    @staticmethod
    def _action_args(rule: BusinessRule, action: RuleAction, position: int) -> Tuple:
        return (
            action.action_id or f"{rule.rule_id}-action-{position}",
            rule.rule_id,
            action.action_type,
            _dump_json(action.parameters),
            action.order,
        )


class PostgreSQLAuditSink(AuditSink):
    """Writes execution records to ``rule_execution_logs``."""

    def __init__(self, repository: PostgreSQLRuleRepository):
        self.repository = repository
        self.logger = get_logger("rules.audit.postgres")

    async def record(self, record: ExecutionRecord) -> None:
        results = {
            "rule_name": record.rule_name,
            "rule_version": record.rule_version,
            "priority": record.priority,
            "condition_results": [c.to_dict() for c in record.condition_results],
            "action_results": [a.to_dict() for a in record.action_results],
        }
        async with self.repository.pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO rule_execution_logs (
                    log_id, rule_id, event_type, entity_id, entity_type, triggered_at,
                    triggered_by, conditions_met, execution_time_ms, error_message,
                    execution_results
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
            """,
                str(uuid.uuid4()), record.rule_id, record.event_type.value,
                record.entity_id or "", record.entity_type or "", record.timestamp,
                record.triggered_by or "system", record.matched,
                int(round(record.execution_time_ms)), record.error, _dump_json(results)
            )

    async def find_records(self, rule_id: Optional[str] = None,
                           limit: int = 50) -> List[ExecutionRecord]:
        query = "SELECT * FROM rule_execution_logs"
        params: List[Any] = []
        if rule_id is not None:
            params.append(rule_id)
            query += " WHERE rule_id = $1"
        params.append(limit)
        query += f" ORDER BY triggered_at DESC LIMIT ${len(params)}"

        try:
            async with self.repository.pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except asyncpg.PostgresError as e:
            self.logger.error("Error loading execution logs", rule_id=rule_id, error=str(e))
            raise RepositoryError("Failed to load execution logs", {"rule_id": rule_id, "error": str(e)})

        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row) -> ExecutionRecord:
        results = _load_json(row["execution_results"]) or {}
        if isinstance(results, list):
            results = {"action_results": results}
        return ExecutionRecord(
            rule_id=row["rule_id"],
            event_type=RuleEventType(row["event_type"]),
            entity_type=row["entity_type"] or None,
            entity_id=row["entity_id"] or None,
            matched=row["conditions_met"],
            rule_name=results.get("rule_name"),
            rule_version=results.get("rule_version"),
            priority=results.get("priority") or 0,
            condition_results=[ConditionResult(**c) for c in results.get("condition_results", [])],
            action_results=[ActionResult(**a) for a in results.get("action_results", [])],
            error=row["error_message"],
            triggered_by=row["triggered_by"],
            timestamp=row["triggered_at"],
            execution_time_ms=float(row["execution_time_ms"]),
        )


def _dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value
