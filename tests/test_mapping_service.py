"""Tests for mapping, rule and attachment operations."""

import pytest

from mapping_engine.contracts import ColumnMatch, MatchResult, TableMatch
from mapping_engine.contracts.transformation_registry import TransformationInfo
from mapping_engine.lib.exceptions import (
    AlreadyExistsError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
    UnavailableError,
)
from mapping_engine.services.mapping_service import MappingService

from conftest import CRM_ID, TENANT, WAREHOUSE_ID, WORKSPACE, column


def users_to_customers_match():
    return MatchResult(
        table_matches=[TableMatch(
            source_table="users",
            target_table="customers",
            score=0.8,
            column_matches=[
                ColumnMatch("id", "id", 0.92, is_type_compatible=True),
                ColumnMatch("email", "email", 0.97, is_type_compatible=True),
                ColumnMatch("signup_date", "full_name", 0.31),
                ColumnMatch("status", "full_name", 0.6, is_poor_match=True),
            ],
        )],
        overall_similarity_score=0.8,
    )


def _table_mapping(service, name="users_to_customers", generate_rules=True):
    return service.add_mapping(
        TENANT, WORKSPACE, name, "table", "crm.users", "warehouse.customers",
        generate_rules=generate_rules,
    )


class TestAddMapping:
    """Tests for the generic add-mapping entry point."""

    def test_table_mapping_generates_rules_from_matches(self, service, matcher, broadcaster):
        matcher.match.return_value = users_to_customers_match()

        result = _table_mapping(service)

        mapping = result['mapping']
        assert mapping['mapping_type'] == "table-to-table"
        assert mapping['source_identifier'] == f"redb://data/database/{CRM_ID}/table/users"
        assert result['rules_created'] == 2
        assert [r['name'] for r in mapping['rules']] == [
            "users_id_to_customers_id",
            "users_email_to_customers_email",
        ]
        assert [r['rule_order'] for r in mapping['rules']] == [0, 1]
        assert mapping['rules'][0]['transformation_name'] == "direct_mapping"
        assert mapping['rule_count'] == 2

        source_model = matcher.match.call_args.args[0]
        assert list(source_model['tables']) == ["users"]
        assert "user_status" in source_model['types']

    def test_creation_is_broadcast_after_commit(self, service, matcher, broadcaster):
        matcher.match.return_value = users_to_customers_match()

        _table_mapping(service)

        steps = broadcaster.broadcast_chain.call_args.args[0]
        assert [(s.table, s.operation) for s in steps] == [
            ("mappings", "insert"),
            ("mapping_rules", "insert"),
            ("mapping_rules", "insert"),
        ]
        assert 'rules' not in steps[0].record

    def test_matcher_failure_becomes_warning(self, service, matcher):
        matcher.match.side_effect = RuntimeError("matcher offline")

        result = _table_mapping(service)

        assert result['rules_created'] == 0
        assert result['warnings'][0].startswith("Schema matching failed, no rules generated")

    def test_database_scope(self, service, matcher):
        matcher.match.return_value = MatchResult()

        result = service.add_mapping(TENANT, WORKSPACE, "crm_to_wh", "database", "crm", "warehouse")

        assert result['mapping']['mapping_type'] == "database-to-database"
        assert result['mapping']['mapping_object']['target_database_name'] == "warehouse"
        matcher.match.assert_not_called()

    def test_redb_uri_source(self, service, matcher):
        result = service.add_mapping(
            TENANT, WORKSPACE, "by_uri", "table",
            f"redb://data/database/{CRM_ID}/table/users", "warehouse.customers",
        )
        assert result['mapping']['mapping_object']['source_database_name'] == "crm"

    def test_table_scope_needs_tables(self, service):
        with pytest.raises(InvalidArgumentError):
            service.add_mapping(TENANT, WORKSPACE, "m", "table", "crm", "warehouse")

    def test_unknown_scope(self, service):
        with pytest.raises(InvalidArgumentError) as exc_info:
            service.add_mapping(TENANT, WORKSPACE, "m", "column", "crm.users", "warehouse.customers")
        assert exc_info.value.details['scope'] == "column"

    def test_duplicate_name(self, service, broadcaster):
        _table_mapping(service, generate_rules=False)
        broadcaster.reset_mock()

        with pytest.raises(AlreadyExistsError):
            _table_mapping(service, generate_rules=False)
        broadcaster.broadcast_chain.assert_not_called()

    def test_unknown_database(self, service):
        with pytest.raises(NotFoundError):
            service.add_mapping(TENANT, WORKSPACE, "m", "table", "nowhere.users", "warehouse.customers")

    def test_empty_mapping(self, service):
        result = service.add_empty_mapping(TENANT, WORKSPACE, "scratch")
        assert result['mapping']['mapping_type'] == "undefined"
        assert result['mapping']['rules'] == []


class TestMcpMappings:
    """Tests for mappings onto MCP resources."""

    def test_rule_per_source_column(self, service):
        result = service.add_mapping(TENANT, WORKSPACE, "lookup", "table", "crm.users", "mcp://customer_lookup")

        mapping = result['mapping']
        assert mapping['mapping_type'] == "table-to-mcp-resource"
        assert result['rules_created'] == 4
        assert mapping['rules'][0]['name'] == "users_id_mcp_customer_lookup"
        assert mapping['rules'][0]['target_uris'] == ["mcp_virtual://lookup.mcp_virtual_lookup.id"]
        assert mapping['rules'][0]['rule_metadata']['match_type'] == "auto_generated_mcp"

    def test_database_source_creates_mapping_without_rules(self, service):
        result = service.add_mapping(TENANT, WORKSPACE, "lookup", "database", "crm", "mcp://customer_lookup")

        assert result['rules_created'] == 0
        assert result['mapping']['mapping_type'] == "database-to-mcp-resource"
        assert "without rules" in result['warnings'][0]

    def test_table_without_columns_fails_and_rolls_back(self, service):
        with pytest.raises(FailedPreconditionError):
            service.add_mapping(TENANT, WORKSPACE, "lookup", "table", "crm.audit_log", "mcp://customer_lookup")
        assert service.list_mappings(TENANT, WORKSPACE) == []


class TestStreamMappings:
    """Tests for stream-to-table, table-to-stream and stream-to-stream mappings."""

    def test_stream_to_table_name_matches_columns(self, service):
        result = service.add_stream_to_table_mapping(
            TENANT, WORKSPACE, "orders_in", "kafka-main", "orders", "warehouse.orders",
            filters=[{"filter_type": "where",
                      "filter_expression": {"field": "total_amount", "operator": ">", "value": 0}}],
        )

        mapping = result['mapping']
        assert mapping['mapping_type'] == "stream-to-table"
        assert mapping['source_identifier'] == "stream://analytics/stream/kafka-main/orders"
        assert [r['name'] for r in mapping['rules']] == ["Order_ID_to_order_id"]
        assert mapping['rules'][0]['rule_metadata']['match_type'] == "auto_generated_stream"
        assert len(mapping['filters']) == 1

    def test_bad_filter_is_a_warning(self, service):
        result = service.add_stream_to_table_mapping(
            TENANT, WORKSPACE, "orders_in", "kafka-main", "orders", "warehouse.orders",
            filters=[{"filter_type": "limit", "filter_expression": {}}],
        )
        assert result['mapping']['filters'] == []
        assert any(w.startswith("Failed to add filter to mapping 'orders_in'") for w in result['warnings'])

    def test_stream_to_stream_matches_names_case_insensitively(self, service):
        result = service.add_stream_to_stream_mapping(
            TENANT, WORKSPACE, "enrich", "kafka-main", "orders", "int-kafka-1", "orders-enriched",
        )
        assert result['mapping']['mapping_type'] == "stream-to-stream"
        assert result['rules_created'] == 1

    def test_undiscovered_table_warns(self, service):
        result = service.add_table_to_stream_mapping(
            TENANT, WORKSPACE, "outbox", "warehouse.pending_events", "kafka-main", "orders",
        )
        assert result['rules_created'] == 0
        assert result['warnings'] == ["Columns not yet discovered for mapping 'outbox'; no rules generated"]

    def test_unknown_topic(self, service):
        with pytest.raises(NotFoundError):
            service.add_stream_to_table_mapping(
                TENANT, WORKSPACE, "m", "kafka-main", "payments", "warehouse.orders",
            )


class TestRules:
    """Tests for standalone rule operations."""

    def test_cardinality_inferred(self, service):
        rule = service.add_mapping_rule(
            TENANT, WORKSPACE, "email_copy",
            source_uris=[column(CRM_ID, "users", "email")],
            target_uris=[column(WAREHOUSE_ID, "customers", "email")],
        )
        assert rule['cardinality'] == "one-to-one"
        assert rule['rule_metadata']['match_type'] == "user_defined"
        assert rule['rule_metadata']['target_resource_uri'] == f"redb://data/database/{WAREHOUSE_ID}/table/customers"

    def test_single_identifier_fallback(self, service):
        rule = service.add_mapping_rule(
            TENANT, WORKSPACE, "legacy",
            source_identifier=f"db://{CRM_ID}.users.email",
            target_identifier=column(WAREHOUSE_ID, "customers", "email"),
        )
        assert rule['source_uris'] == [f"db://{CRM_ID}.users.email"]

    def test_no_items_rejected(self, service):
        with pytest.raises(InvalidArgumentError):
            service.add_mapping_rule(TENANT, WORKSPACE, "empty")

    def test_claimed_cardinality_must_match(self, service):
        with pytest.raises(InvalidArgumentError):
            service.add_mapping_rule(
                TENANT, WORKSPACE, "bad",
                source_uris=[column(CRM_ID, "users", "email")],
                target_uris=[column(WAREHOUSE_ID, "customers", "email"), column(WAREHOUSE_ID, "customers", "id")],
                cardinality="one-to-one",
            )

    def test_unknown_item(self, service):
        with pytest.raises(NotFoundError):
            service.add_mapping_rule(
                TENANT, WORKSPACE, "ghost",
                source_uris=[column(CRM_ID, "users", "nickname")],
                target_uris=[column(WAREHOUSE_ID, "customers", "email")],
            )

    def test_sink_accepted_when_transformation_supports_it(self, service, registry):
        registry.get_transformation.return_value = TransformationInfo("archive_rows", "sink")

        rule = service.add_mapping_rule(
            TENANT, WORKSPACE, "archive",
            source_uris=[column(CRM_ID, "users", "email"), column(CRM_ID, "users", "id")],
            target_uris=[],
            transformation_name="archive_rows",
        )

        assert rule['cardinality'] == "sink"
        registry.get_transformation.assert_called_once_with("archive_rows")

    def test_sink_rejected_for_generator_transformation(self, service, registry):
        registry.get_transformation.return_value = TransformationInfo("next_id", "generator")

        with pytest.raises(InvalidArgumentError):
            service.add_mapping_rule(
                TENANT, WORKSPACE, "archive",
                source_uris=[column(CRM_ID, "users", "email"), column(CRM_ID, "users", "id")],
                target_uris=[],
                transformation_name="next_id",
            )

    def test_unknown_transformation(self, service, registry):
        with pytest.raises(NotFoundError):
            service.add_mapping_rule(
                TENANT, WORKSPACE, "r",
                source_uris=[column(CRM_ID, "users", "email")],
                target_uris=[column(WAREHOUSE_ID, "customers", "email")],
                transformation_name="lowercase",
            )

    def test_invalid_transformation(self, service, registry):
        registry.get_transformation.return_value = TransformationInfo("lowercase", "passthrough", is_valid=False)
        with pytest.raises(FailedPreconditionError):
            service.add_mapping_rule(
                TENANT, WORKSPACE, "r",
                source_uris=[column(CRM_ID, "users", "email")],
                target_uris=[column(WAREHOUSE_ID, "customers", "email")],
                transformation_name="lowercase",
            )

    def test_registry_not_configured(self, db_manager, catalog):
        service = MappingService(db_manager)
        with pytest.raises(UnavailableError):
            service.add_mapping_rule(
                TENANT, WORKSPACE, "r",
                source_uris=[column(CRM_ID, "users", "email")],
                target_uris=[column(WAREHOUSE_ID, "customers", "email")],
                transformation_name="lowercase",
            )

    def test_direct_mapping_skips_registry(self, service, registry):
        service.add_mapping_rule(
            TENANT, WORKSPACE, "r",
            source_uris=[column(CRM_ID, "users", "email")],
            target_uris=[column(WAREHOUSE_ID, "customers", "email")],
            transformation_name="direct_mapping",
        )
        registry.get_transformation.assert_not_called()

    def test_modify_reports_invalidated_mappings(self, service, matcher):
        matcher.match.return_value = users_to_customers_match()
        _table_mapping(service)

        view = service.modify_mapping_rule(
            TENANT, WORKSPACE, "users_email_to_customers_email",
            target_uris=[column(WAREHOUSE_ID, "customers", "full_name")],
            metadata={"reviewed_by": "dba"},
        )

        assert view['invalidated_mappings'] == ["users_to_customers"]
        assert view['target_uris'] == [column(WAREHOUSE_ID, "customers", "full_name")]
        assert view['rule_metadata']['reviewed_by'] == "dba"
        assert view['rule_metadata']['match_type'] == "auto_generated"

    def test_delete_attached_rule_fails(self, service, matcher):
        matcher.match.return_value = users_to_customers_match()
        _table_mapping(service)

        with pytest.raises(FailedPreconditionError):
            service.delete_mapping_rule(TENANT, WORKSPACE, "users_id_to_customers_id")

    def test_show_rule_lists_mappings(self, service, matcher):
        matcher.match.return_value = users_to_customers_match()
        _table_mapping(service)

        view = service.show_mapping_rule(TENANT, WORKSPACE, "users_id_to_customers_id")
        assert view['mappings'] == ["users_to_customers"]


class TestAttachmentAndValidation:
    """Tests for attaching rules and the validated flag."""

    def _valid_mapping(self, service, matcher):
        matcher.match.return_value = users_to_customers_match()
        _table_mapping(service)
        service.add_mapping_rule(
            TENANT, WORKSPACE, "email_to_name",
            source_uris=[column(CRM_ID, "users", "email")],
            target_uris=[column(WAREHOUSE_ID, "customers", "full_name")],
        )
        service.attach_mapping_rule(TENANT, WORKSPACE, "users_to_customers", "email_to_name")
        return service.validate_mapping(TENANT, WORKSPACE, "users_to_customers")

    def test_missing_required_column_is_an_error(self, service, matcher):
        matcher.match.return_value = users_to_customers_match()
        _table_mapping(service)

        result = service.validate_mapping(TENANT, WORKSPACE, "users_to_customers")

        assert result['is_valid'] is False
        assert result['errors'] == ["Required target column 'full_name' is not mapped"]

    def test_fully_mapped_mapping_validates(self, service, matcher):
        result = self._valid_mapping(service, matcher)

        assert result['is_valid'] is True
        assert result['validated_at'] is not None
        assert service.show_mapping(TENANT, WORKSPACE, "users_to_customers")['validated'] is True

    def test_detach_invalidates(self, service, matcher):
        self._valid_mapping(service, matcher)

        view = service.detach_mapping_rule(TENANT, WORKSPACE, "users_to_customers", "email_to_name")

        assert view['validated'] is False
        assert view['rule_count'] == 2
        assert service.show_mapping(TENANT, WORKSPACE, "users_to_customers")['unmapped_target_columns'] == [
            "full_name"
        ]

    def test_reorder(self, service, matcher):
        self._valid_mapping(service, matcher)

        view = service.update_mapping_rule_order(TENANT, WORKSPACE, "users_to_customers", "email_to_name", 0)

        assert [r['name'] for r in view['rules']][0] == "email_to_name"
        assert [r['rule_order'] for r in view['rules']] == [0, 1, 2]
        assert view['validated'] is False

    def test_rule_reference_by_id(self, service, matcher):
        self._valid_mapping(service, matcher)
        rule_id = service.show_mapping_rule(TENANT, WORKSPACE, "email_to_name")['id']

        service.detach_mapping_rule(TENANT, WORKSPACE, "users_to_customers", rule_id)
        rules = service.list_mapping_rules(TENANT, WORKSPACE, "users_to_customers")
        assert "email_to_name" not in [r['name'] for r in rules]

    def test_list_mappings_in_other_workspace(self, service, matcher):
        self._valid_mapping(service, matcher)
        assert service.list_mappings(TENANT, "sandbox") == []


class TestMaintenance:
    """Tests for modify, delete and filters."""

    def test_delete_removes_unshared_rules(self, service, matcher, broadcaster):
        matcher.match.return_value = users_to_customers_match()
        _table_mapping(service)

        result = service.delete_mapping(TENANT, WORKSPACE, "users_to_customers")

        assert result['deleted'] is True
        assert sorted(result['rules_deleted']) == [
            "users_email_to_customers_email",
            "users_id_to_customers_id",
        ]
        assert service.list_mapping_rules(TENANT, WORKSPACE) == []
        step = broadcaster.broadcast_chain.call_args.args[0][0]
        assert (step.table, step.operation) == ("mappings", "delete")

    def test_delete_keep_rules(self, service, matcher):
        matcher.match.return_value = users_to_customers_match()
        _table_mapping(service)

        result = service.delete_mapping(TENANT, WORKSPACE, "users_to_customers", keep_rules=True)

        assert result['rules_deleted'] == []
        assert len(service.list_mapping_rules(TENANT, WORKSPACE)) == 2

    def test_modify_description(self, service):
        _table_mapping(service, generate_rules=False)
        view = service.modify_mapping(TENANT, WORKSPACE, "users_to_customers", description="nightly sync")
        assert view['description'] == "nightly sync"

    def test_filters(self, service):
        _table_mapping(service, generate_rules=False)
        created = service.add_mapping_filter(
            TENANT, WORKSPACE, "users_to_customers", "where",
            {"field": "status", "operator": "=", "value": "active"},
        )
        assert created['filter_operator'] == "AND"

        service.delete_mapping_filter(TENANT, WORKSPACE, "users_to_customers", created['id'])
        assert service.show_mapping(TENANT, WORKSPACE, "users_to_customers")['filters'] == []

    def test_operations_are_counted(self, service):
        with pytest.raises(NotFoundError):
            service.show_mapping(TENANT, WORKSPACE, "missing")
        snapshot = service.metrics.snapshot()
        assert snapshot.requests_processed == 1
        assert snapshot.errors == 1
        assert snapshot.in_flight == 0
