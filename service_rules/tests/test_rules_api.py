"""
Unit tests for the Rules service HTTP API.
"""

import pytest
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_rules.app.audit.sink import InMemoryAuditSink
from service_rules.app.main import RulesService, create_app
from service_rules.app.persistence.memory import InMemoryRuleRepository
from service_rules.app.rules.actions import CapabilityRegistry


class TestRulesService:
    """Test cases for RulesService."""

    @pytest.fixture
    def service(self):
        """Create RulesService with in-memory storage."""
        return RulesService(repository=InMemoryRuleRepository(), audit_sink=InMemoryAuditSink())

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        return TestClient(service.app)

    @pytest.fixture
    def rule_payload(self):
        """Rule creation request."""
        return {
            "name": "Urgent large orders",
            "description": "Orders with more than 20 items go first",
            "rule_type": "ALLOCATION",
            "priority": 80,
            "trigger_events": ["ORDER_CREATED"],
            "conditions": [
                {"field": "itemCount", "operator": "GREATER_THAN", "value": 20, "logical_operator": "AND"},
                {"field": "priority", "operator": "NOT_EQUALS", "value": "URGENT", "order": 1}
            ],
            "actions": [
                {"action_type": "SET_PRIORITY", "parameters": {"value": "URGENT"}}
            ],
            "created_by": "planner-1"
        }

    def create_active_rule(self, client, payload):
        rule_id = client.post("/rules", json=payload).json()["rule_id"]
        client.post(f"/rules/{rule_id}/activate", headers={"X-User-ID": "lead-1"})
        return rule_id

    def test_create_app(self):
        """Test app factory."""
        assert create_app().title == "Rules Service"

    def test_root_endpoint(self, client):
        """Test root endpoint lists capabilities."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "rules"
        assert "SET_PRIORITY" in data["capabilities"]

    def test_empty_capability_registry_is_kept(self):
        """Test an explicitly empty registry is not replaced by the built-ins."""
        service = RulesService(
            repository=InMemoryRuleRepository(),
            capabilities=CapabilityRegistry(),
            audit_sink=InMemoryAuditSink()
        )

        assert len(service.capabilities) == 0
        assert service.engine.capabilities is service.capabilities
        assert TestClient(service.app).get("/").json()["capabilities"] == []

    def test_health_endpoint(self, client):
        """Test health endpoint reports the repository."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["dependencies"] == {"repository": "ok"}

    def test_health_endpoint_repository_down(self, service, client):
        """Test health endpoint when the repository check fails."""
        service.repository.health_check = AsyncMock(side_effect=ConnectionError("down"))

        assert client.get("/health").json()["dependencies"] == {"repository": "error"}

    def test_create_rule(self, client, rule_payload):
        """Test creating a DRAFT rule."""
        response = client.post("/rules", json=rule_payload)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "DRAFT"
        assert data["version"] == 1
        assert data["conditions"][0]["condition_id"] == f"{data['rule_id']}-condition-0"

    def test_create_invalid_rule(self, client, rule_payload):
        """Test semantic validation errors."""
        rule_payload["priority"] = 400
        rule_payload["conditions"][0]["operator"] = "BETWEEN"

        response = client.post("/rules", json=rule_payload)

        assert response.status_code == 422
        data = response.json()
        assert data["code"] == "VALIDATION_ERROR"
        fields = {error["field"] for error in data["details"]["errors"]}
        assert fields == {"priority", "conditions[0].value2"}

    def test_create_malformed_rule(self, client, rule_payload):
        """Test schema validation errors."""
        rule_payload["conditions"][0]["operator"] = "ROUGHLY"

        response = client.post("/rules", json=rule_payload)

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_get_unknown_rule(self, client):
        """Test 404 for an unknown rule."""
        response = client.get("/rules/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "RULE_NOT_FOUND"

    def test_lifecycle_endpoints(self, client, rule_payload):
        """Test activate, deactivate, toggle and archive."""
        rule_id = client.post("/rules", json=rule_payload).json()["rule_id"]

        activated = client.post(f"/rules/{rule_id}/activate", headers={"X-User-ID": "lead-1"}).json()
        assert activated["status"] == "ACTIVE"
        assert activated["updated_by"] == "lead-1"

        assert client.post(f"/rules/{rule_id}/deactivate").json()["status"] == "INACTIVE"
        assert client.post(f"/rules/{rule_id}/toggle").json()["status"] == "ACTIVE"

        archived = client.post(f"/rules/{rule_id}/archive").json()
        assert archived["status"] == "ARCHIVED"
        assert archived["version"] == 5

        response = client.post(f"/rules/{rule_id}/activate")
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_RULE_TRANSITION"

    def test_update_rule(self, client, rule_payload):
        """Test partial update."""
        rule_id = client.post("/rules", json=rule_payload).json()["rule_id"]

        response = client.put(f"/rules/{rule_id}", json={"priority": 20, "updated_by": "lead-2"})

        assert response.status_code == 200
        data = response.json()
        assert data["priority"] == 20
        assert data["name"] == "Urgent large orders"
        assert data["version"] == 2

    def test_list_rules(self, client, rule_payload):
        """Test listing with archived rules hidden by default."""
        keep_id = client.post("/rules", json=rule_payload).json()["rule_id"]
        archive_id = client.post("/rules", json=rule_payload).json()["rule_id"]
        client.post(f"/rules/{archive_id}/archive")

        data = client.get("/rules").json()
        assert [r["rule_id"] for r in data["rules"]] == [keep_id]
        assert data["total"] == 1

        assert client.get("/rules", params={"include_archived": True}).json()["total"] == 2
        assert client.get("/rules", params={"status": "ARCHIVED"}).json()["rules"][0]["rule_id"] == archive_id

    def test_delete_rule(self, client, rule_payload):
        """Test deleting a rule."""
        rule_id = client.post("/rules", json=rule_payload).json()["rule_id"]

        assert client.delete(f"/rules/{rule_id}").json()["success"] is True
        assert client.delete(f"/rules/{rule_id}").status_code == 404

    def test_fire_event(self, client, rule_payload, service):
        """Test firing an event runs matched rules and records executions."""
        rule_id = self.create_active_rule(client, rule_payload)

        response = client.post("/rules/events", json={
            "event_type": "ORDER_CREATED",
            "entity_type": "order",
            "entity_id": "ORD-1",
            "entity": {"orderId": "ORD-1", "itemCount": 25, "priority": "NORMAL"},
            "triggered_by": "wms-api"
        })

        assert response.status_code == 200
        data = response.json()
        assert data["matched_rules"] == [rule_id]
        action = data["records"][0]["action_results"][0]
        assert action["succeeded"] is True
        assert action["output"]["value"] == "URGENT"

        assert client.get(f"/rules/{rule_id}").json()["execution_count"] == 1

        executions = client.get(f"/rules/{rule_id}/executions").json()
        assert executions["count"] == 1
        assert executions["executions"][0]["triggered_by"] == "wms-api"

    def test_fire_event_load_failure(self, client, service):
        """Test a repository outage is reported as 503."""
        service.repository.load_eligible_rules = AsyncMock(side_effect=ConnectionError("db down"))

        response = client.post("/rules/events", json={
            "event_type": "ORDER_CREATED", "entity_type": "order", "entity": {}
        })

        assert response.status_code == 503
        assert response.json()["code"] == "RULE_LOAD_FAILED"

    def test_test_stored_rule(self, client, rule_payload):
        """Test dry-running a DRAFT rule by id."""
        rule_id = client.post("/rules", json=rule_payload).json()["rule_id"]

        data = client.post(f"/rules/{rule_id}/test", json={
            "sample_entity": {"itemCount": 5, "priority": "URGENT"}
        }).json()

        assert data["matched"] is False
        assert [c["evaluated"] for c in data["condition_trace"]] == [True, True]
        assert data["would_fire_actions"] == []
        assert client.get(f"/rules/{rule_id}").json()["execution_count"] == 0

    def test_test_adhoc_rule(self, client, rule_payload):
        """Test dry-running an unsaved definition."""
        response = client.post("/rules/test", json={
            "rule": rule_payload,
            "sample_entity": {"itemCount": 30, "priority": "NORMAL"}
        })

        assert response.status_code == 200
        data = response.json()
        assert data["rule_id"] == "adhoc"
        assert data["matched"] is True
        assert data["would_fire_actions"][0]["handler_registered"] is True
        assert client.get("/rules").json()["total"] == 0

    def test_metrics_endpoint(self, client, rule_payload):
        """Test Prometheus exposition includes rule metrics."""
        self.create_active_rule(client, rule_payload)

        body = client.get("/metrics").text

        assert "active_rules 1.0" in body
        assert "http_requests_total" in body
