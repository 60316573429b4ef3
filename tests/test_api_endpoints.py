"""Tests for the REST API."""

import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from mapping_engine.api.endpoints import create_app, sanitize_error_message
from mapping_engine.contracts import FetchResult, InsertResult, MeshTransport
from mapping_engine.engine import build_engine

from conftest import CRM_ID, WAREHOUSE_ID, column

BASE = "/api/v1/tenants/acme/workspaces/analytics"


@pytest.fixture
def engine(db_manager, catalog, execution_engine, matcher, converter, registry):
    mesh = MagicMock(spec=MeshTransport)
    mesh.should_broadcast.return_value = False
    return build_engine(
        db_manager=db_manager,
        execution_engine=execution_engine,
        matcher=matcher,
        converter=converter,
        registry=registry,
        mesh=mesh,
    )


@pytest.fixture
def client(engine):
    """Test client against an injected engine; startup builds nothing."""
    return TestClient(create_app(engine))


def _create_table_mapping(client, name="users_to_customers"):
    response = client.post(f"{BASE}/mappings", json={
        "name": name, "scope": "table", "source": "crm.users", "target": "warehouse.customers",
    })
    assert response.status_code == 201, response.text
    return response.json()


def _create_rule(client, name, source, target):
    response = client.post(f"{BASE}/rules", json={
        "name": name,
        "source_uris": [column(CRM_ID, "users", source)],
        "target_uris": [column(WAREHOUSE_ID, "customers", target)],
    })
    assert response.status_code == 201, response.text
    return response.json()


def _ndjson(response):
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


class TestHealth:
    """Tests for health and metrics."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["engine_loaded"] is True

    def test_metrics_count_requests(self, client):
        _create_table_mapping(client)
        client.get(f"{BASE}/mappings/missing")

        body = client.get("/metrics").json()
        assert body["requests_processed"] >= 2
        assert body["errors"] >= 1
        assert body["in_flight"] == 0


class TestMappingEndpoints:
    """Tests for mapping CRUD."""

    def test_create_and_show(self, client):
        created = _create_table_mapping(client)
        assert created["mapping"]["mapping_type"] == "table-to-table"
        assert created["rules_created"] == 0

        shown = client.get(f"{BASE}/mappings/users_to_customers").json()
        assert shown["source_identifier"] == f"redb://data/database/{CRM_ID}/table/users"
        assert [m["name"] for m in client.get(f"{BASE}/mappings").json()] == ["users_to_customers"]

    def test_bad_scope_is_rejected(self, client):
        response = client.post(f"{BASE}/mappings", json={
            "name": "m", "scope": "schema", "source": "crm", "target": "warehouse",
        })
        assert response.status_code == 422

    def test_duplicate_name(self, client):
        _create_table_mapping(client)
        response = client.post(f"{BASE}/mappings", json={
            "name": "users_to_customers", "scope": "database", "source": "crm", "target": "warehouse",
        })
        assert response.status_code == 409
        assert response.json()["code"] == "already_exists"

    def test_unknown_mapping(self, client):
        response = client.get(f"{BASE}/mappings/missing")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_other_workspace_is_isolated(self, client):
        _create_table_mapping(client)
        response = client.get("/api/v1/tenants/acme/workspaces/sales/mappings/users_to_customers")
        assert response.status_code == 404

    def test_filters(self, client):
        _create_table_mapping(client)

        response = client.post(f"{BASE}/mappings/users_to_customers/filters", json={
            "filter_type": "where", "filter_expression": {"column": "status", "value": "active"},
            "filter_operator": "or",
        })
        assert response.status_code == 201
        filter_id = response.json()["id"]
        assert response.json()["filter_operator"] == "OR"

        deleted = client.delete(f"{BASE}/mappings/users_to_customers/filters/{filter_id}")
        assert deleted.json() == {"filter_id": filter_id, "deleted": True}

    def test_bad_filter_type(self, client):
        _create_table_mapping(client)
        response = client.post(f"{BASE}/mappings/users_to_customers/filters", json={"filter_type": "having"})
        assert response.status_code == 422

    def test_delete(self, client):
        _create_table_mapping(client)
        response = client.delete(f"{BASE}/mappings/users_to_customers", params={"keep_rules": True})
        assert response.json()["deleted"] is True
        assert client.get(f"{BASE}/mappings").json() == []


class TestRuleEndpoints:
    """Tests for rule CRUD, attachment and validation."""

    def test_rule_lifecycle(self, client):
        _create_table_mapping(client)
        rule = _create_rule(client, "email_rule", "email", "email")
        assert rule["cardinality"] == "one-to-one"

        attached = client.post(f"{BASE}/mappings/users_to_customers/rules", json={"rule_name": "email_rule"})
        assert attached.status_code == 200
        assert [r["name"] for r in attached.json()["rules"]] == ["email_rule"]

        listed = client.get(f"{BASE}/mappings/users_to_customers/rules").json()
        assert [r["name"] for r in listed] == ["email_rule"]

        detached = client.delete(f"{BASE}/mappings/users_to_customers/rules/email_rule")
        assert detached.json()["rules"] == []

        assert client.delete(f"{BASE}/rules/email_rule").status_code == 200
        assert client.get(f"{BASE}/rules/email_rule").status_code == 404

    def test_unknown_cardinality(self, client):
        response = client.post(f"{BASE}/rules", json={
            "name": "r", "source_uris": [column(CRM_ID, "users", "id")], "cardinality": "some-to-some",
        })
        assert response.status_code == 422

    def test_unknown_item(self, client):
        response = client.post(f"{BASE}/rules", json={
            "name": "r", "source_uris": [column(CRM_ID, "users", "nickname")],
            "target_uris": [column(WAREHOUSE_ID, "customers", "full_name")],
        })
        assert response.status_code == 404

    def test_reorder_negative(self, client):
        _create_table_mapping(client)
        _create_rule(client, "email_rule", "email", "email")
        client.post(f"{BASE}/mappings/users_to_customers/rules", json={"rule_name": "email_rule"})

        response = client.put(f"{BASE}/mappings/users_to_customers/rules/email_rule/order", json={"order": -1})
        assert response.status_code == 422

    def test_validate(self, client):
        _create_table_mapping(client)
        _create_rule(client, "id_rule", "id", "id")
        client.post(f"{BASE}/mappings/users_to_customers/rules", json={"rule_name": "id_rule"})

        response = client.post(f"{BASE}/mappings/users_to_customers/validate")

        assert response.status_code == 200
        body = response.json()
        assert body["is_valid"] is False
        assert body["errors"] == ["Required target column 'full_name' is not mapped"]
        assert body["validated_at"]


class TestDataMovementEndpoints:
    """Tests for copy and transform endpoints."""

    def _mapped(self, client):
        _create_table_mapping(client)
        _create_rule(client, "id_rule", "id", "id")
        client.post(f"{BASE}/mappings/users_to_customers/rules", json={"rule_name": "id_rule"})

    def test_copy_dry_run_streams_ndjson(self, client):
        self._mapped(client)

        response = client.post(f"{BASE}/mappings/users_to_customers/copy", json={"dry_run": True})

        assert response.headers["content-type"].startswith("application/x-ndjson")
        messages = _ndjson(response)
        assert [m["status"] for m in messages] == ["started", "completed"]
        assert "Found 1 mapping rules" in messages[-1]["message"]

    def test_copy_unknown_mapping_reports_in_stream(self, client):
        response = client.post(f"{BASE}/mappings/missing/copy", json={})

        assert response.status_code == 200
        assert [m["status"] for m in _ndjson(response)] == ["started", "error"]

    def test_copy_status(self, client):
        body = client.get("/api/v1/copy-operations/copy_x_1").json()
        assert body["status"] == "not_found"
        assert body["operation_id"] == "copy_x_1"

    def test_transform(self, client, execution_engine):
        self._mapped(client)
        execution_engine.fetch_data.return_value = FetchResult(rows=[{"id": 1}, {"id": 2}])
        execution_engine.transform_data.return_value = [{"id": 1}, {"id": 2}]
        execution_engine.insert_data.return_value = InsertResult(success=True, rows_affected=2)

        response = client.post(f"{BASE}/mappings/users_to_customers/transform", json={"mode": "Append"})

        assert response.status_code == 200
        body = response.json()
        assert body["rows_processed"] == 2
        assert body["rows_inserted"] == 2
        assert body["is_complete"] is True

    def test_transform_update_mode(self, client):
        self._mapped(client)
        response = client.post(f"{BASE}/mappings/users_to_customers/transform", json={"mode": "update"})
        assert response.status_code == 501
        assert response.json()["code"] == "unimplemented"

    def test_transform_stream_precondition(self, client):
        _create_table_mapping(client)
        response = client.post(f"{BASE}/mappings/users_to_customers/transform/stream", json={})
        assert response.status_code == 412


class TestDeployEndpoints:
    """Tests for schema deploy endpoints."""

    def test_new_database_requires_instance(self, client):
        response = client.post(f"{BASE}/deploy/commit", json={
            "repo": "crm-repo", "branch": "main", "target_database": "clone", "new_database": True,
        })
        assert response.status_code == 422

    def test_deploy_commit_to_existing(self, client, execution_engine):
        response = client.post(f"{BASE}/deploy/commit", json={
            "repo": "crm-repo", "branch": "main", "commit": "c002", "target_database": "crm",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Commit schema deployed successfully"
        assert body["target_database_id"] == CRM_ID
        execution_engine.deploy_schema.assert_called_once()

    def test_deploy_table_existing(self, client, execution_engine):
        execution_engine.get_database_schema.return_value = {"tables": {"customers": {}}}
        response = client.post(f"{BASE}/deploy/table", json={
            "mapping_name": "m", "source_database": "crm", "source_table": "users",
            "target_database": "warehouse", "target_table": "customers",
        })
        assert response.status_code == 412
        assert response.json()["code"] == "failed_precondition"


class TestSanitizeErrorMessage:
    """Tests for error message scrubbing."""

    def test_masks_url_credentials(self):
        message = sanitize_error_message("cannot reach postgresql://admin:hunter2@db:5432/crm")
        assert message == "cannot reach postgresql://***:***@db:5432/crm"

    def test_hides_secret_messages(self):
        assert sanitize_error_message("invalid api_key for anchor") == (
            "An internal error occurred while processing the request."
        )

    def test_truncates(self):
        assert len(sanitize_error_message("x" * 600)) == 503
