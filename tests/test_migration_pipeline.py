"""Tests for data copy and transform."""

from unittest.mock import MagicMock

import pytest

from mapping_engine.contracts import (
    DataBatch,
    FetchResult,
    InsertResult,
    TransformationRegistry,
)
from mapping_engine.lib.exceptions import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    UnimplementedError,
)
from mapping_engine.models import CopyStatus
from mapping_engine.services.mapping_store import MappingStore
from mapping_engine.services.migration_pipeline import MigrationPipeline, RulePlan, _chunk

from conftest import ARCHIVE_ID, CRM_ID, TENANT, WAREHOUSE_ID, WORKSPACE, FakeStream, column

USERS_TO_CUSTOMERS = "crm.users -> warehouse.customers"
USERS_TO_ORDERS = "crm.users -> warehouse.orders"


def seed_mapping(db_manager, name, rules):
    """Create a mapping with (rule_name, source_uri, target_uri) rules attached in order"""
    with db_manager.transaction() as session:
        store = MappingStore(session, TENANT, WORKSPACE)
        mapping = store.create_mapping(name=name)
        for rule_name, source, target in rules:
            rule = store.create_rule(
                name=rule_name, cardinality="one-to-one",
                source_uris=[source], target_uris=[target],
                transformation_name="direct_mapping",
            )
            store.attach_rule(mapping, rule)


def attach_extra_rule(db_manager, mapping_name, **rule):
    """Create a rule with explicit items and attach it after the existing ones"""
    with db_manager.transaction() as session:
        store = MappingStore(session, TENANT, WORKSPACE)
        store.attach_rule(store.get_mapping(mapping_name), store.create_rule(**rule))


def rows(count, start=0):
    return [{"id": i, "email": f"user{i}@example.com"} for i in range(start, start + count)]


@pytest.fixture
def pipeline(db_manager, catalog, execution_engine):
    return MigrationPipeline(db_manager, execution_engine)


@pytest.fixture
def two_pair_mapping(db_manager, catalog):
    seed_mapping(db_manager, "users_fanout", [
        ("id_to_id", column(CRM_ID, "users", "id"), column(WAREHOUSE_ID, "customers", "id")),
        ("email_to_email", column(CRM_ID, "users", "email"), column(WAREHOUSE_ID, "customers", "email")),
        ("id_to_order", column(CRM_ID, "users", "id"), column(WAREHOUSE_ID, "orders", "order_id")),
    ])
    return "users_fanout"


class TestCopyMappingData:
    """Tests for the streamed multi-pair copy."""

    def test_dry_run_counts_rules(self, pipeline, execution_engine, two_pair_mapping):
        messages = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, two_pair_mapping, dry_run=True))

        assert [m.status for m in messages] == [CopyStatus.STARTED, CopyStatus.COMPLETED]
        assert messages[-1].rows_processed == 0
        assert "Found 3 mapping rules" in messages[-1].message
        execution_engine.fetch_data_stream.assert_not_called()
        execution_engine.insert_batch.assert_not_called()

    def test_mapping_without_rules(self, pipeline, db_manager):
        seed_mapping(db_manager, "empty", [])

        messages = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, "empty"))

        assert messages[-1].status is CopyStatus.ERROR
        assert messages[-1].errors == ["No mapping rules found for this mapping"]

    def test_unknown_mapping_is_reported_in_stream(self, pipeline):
        messages = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, "missing"))

        assert messages[0].status is CopyStatus.STARTED
        assert messages[-1].status is CopyStatus.ERROR
        assert "missing" in messages[-1].message

    def test_all_pairs_copied(self, pipeline, execution_engine, two_pair_mapping):
        execution_engine.get_row_count.return_value = 5
        execution_engine.fetch_data_stream.side_effect = lambda *a, **kw: FakeStream([
            DataBatch(rows=rows(3)),
            DataBatch(rows=rows(2, start=3), is_complete=True),
        ])
        execution_engine.insert_batch.side_effect = (
            lambda *a, **kw: InsertResult(success=True, rows_affected=len(a[4]))
        )

        messages = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, two_pair_mapping, batch_size=3))

        final = messages[-1]
        assert final.status is CopyStatus.COMPLETED
        assert final.rows_processed == 10
        assert final.total_rows == 10
        assert final.message == "Data copy completed successfully. Processed 10 rows across 2 table pairs."

        pair_messages = [m.message for m in messages if m.message.startswith("Processing table pair")]
        assert pair_messages == [
            f"Processing table pair 1/2: {USERS_TO_CUSTOMERS}",
            f"Processing table pair 2/2: {USERS_TO_ORDERS}",
        ]

        first_fetch = execution_engine.fetch_data_stream.call_args_list[0]
        assert first_fetch.args == (TENANT, WORKSPACE, CRM_ID, "users")
        assert first_fetch.kwargs == {"columns": ["id", "email"], "batch_size": 3}

        first_insert = execution_engine.insert_batch.call_args_list[0]
        assert first_insert.args[2:4] == (WAREHOUSE_ID, "customers")
        assert first_insert.args[4][0] == {"id": 0, "email": "user0@example.com"}
        assert first_insert.kwargs == {"use_transaction": True}

        last_insert = execution_engine.insert_batch.call_args_list[-1]
        assert last_insert.args[3] == "orders"
        assert last_insert.args[4][0] == {"order_id": 3}

    def test_failed_pair_does_not_stop_the_copy(self, pipeline, execution_engine, two_pair_mapping):
        execution_engine.get_row_count.return_value = 10
        execution_engine.fetch_data_stream.side_effect = [
            FakeStream([DataBatch(rows=rows(10), is_complete=True)]),
            FakeStream([], error=ConnectionResetError("stream reset by peer")),
        ]
        execution_engine.insert_batch.return_value = InsertResult(success=True, rows_affected=10)

        messages = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, two_pair_mapping))

        final = messages[-1]
        assert final.status is CopyStatus.COMPLETED_WITH_ERRORS
        assert final.rows_processed == 10
        assert final.errors == [
            f"Failed to copy data for table pair {USERS_TO_ORDERS}: stream reset by peer"
        ]
        assert "Processed 10 rows across 2 table pairs." in final.message

    def test_failed_insert_is_reported(self, pipeline, execution_engine, two_pair_mapping):
        execution_engine.fetch_data_stream.side_effect = lambda *a, **kw: FakeStream(
            [DataBatch(rows=rows(2), is_complete=True)]
        )
        execution_engine.insert_batch.return_value = InsertResult(success=False, message="duplicate key")

        final = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, two_pair_mapping))[-1]

        assert final.status is CopyStatus.COMPLETED_WITH_ERRORS
        assert len(final.errors) == 2
        assert final.errors[0].endswith("failed to insert data into warehouse.customers: duplicate key")

    def test_disconnected_target(self, pipeline, execution_engine, db_manager, catalog):
        seed_mapping(db_manager, "to_archive", [
            ("id_to_legacy", column(CRM_ID, "users", "id"), column(ARCHIVE_ID, "legacy_users", "id")),
        ])
        execution_engine.get_row_count.return_value = 0

        final = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, "to_archive"))[-1]

        assert final.status is CopyStatus.COMPLETED_WITH_ERRORS
        assert final.errors == [
            "Failed to copy data for table pair crm.users -> archive.legacy_users: "
            "target database 'archive' is not connected"
        ]
        execution_engine.fetch_data_stream.assert_not_called()

    def test_unplaceable_generator_rule_does_not_fail_the_copy(self, pipeline, execution_engine, db_manager):
        seed_mapping(db_manager, "users_with_generator", [
            ("id_to_id", column(CRM_ID, "users", "id"), column(WAREHOUSE_ID, "customers", "id")),
        ])
        attach_extra_rule(
            db_manager, "users_with_generator",
            name="gen_name", cardinality="generator",
            source_uris=[], target_uris=[column(WAREHOUSE_ID, "customers", "full_name")],
            transformation_name="full_name_generator",
        )
        execution_engine.get_row_count.return_value = 10
        execution_engine.fetch_data_stream.side_effect = lambda *a, **kw: FakeStream(
            [DataBatch(rows=rows(10), is_complete=True)]
        )
        execution_engine.insert_batch.return_value = InsertResult(success=True, rows_affected=10)

        messages = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, "users_with_generator"))

        final = messages[-1]
        assert final.status is CopyStatus.COMPLETED
        assert final.rows_processed == 10
        assert final.errors == []
        assert any(
            m.status is CopyStatus.PROGRESS and m.message.startswith("Skipping rule gen_name")
            for m in messages
        )

    def test_extra_source_columns_are_reported(self, pipeline, execution_engine, db_manager, caplog):
        seed_mapping(db_manager, "names", [])
        attach_extra_rule(
            db_manager, "names",
            name="name_parts_to_full_name", cardinality="many-to-one",
            source_uris=[column(CRM_ID, "users", "first_name"), column(CRM_ID, "users", "last_name")],
            target_uris=[column(WAREHOUSE_ID, "customers", "full_name")],
            transformation_name="direct_mapping",
        )
        execution_engine.get_row_count.return_value = 0
        execution_engine.fetch_data_stream.side_effect = lambda *a, **kw: FakeStream([])

        with caplog.at_level("WARNING", logger="mapping_engine.services.migration_pipeline"):
            final = list(pipeline.copy_mapping_data(TENANT, WORKSPACE, "names"))[-1]

        assert final.status is CopyStatus.COMPLETED
        assert execution_engine.fetch_data_stream.call_args.kwargs["columns"] == ["first_name"]
        assert "only the first is copied" in caplog.text
        assert "last_name" in caplog.text

    def test_progress_serializes(self, pipeline, two_pair_mapping):
        started = next(pipeline.copy_mapping_data(TENANT, WORKSPACE, two_pair_mapping, dry_run=True))
        data = started.to_dict()
        assert data['status'] == "started"
        assert data['operation_id'].startswith("copy_users_fanout_")

    def test_copy_status_is_not_tracked(self, pipeline):
        status = pipeline.get_copy_status("copy_x_1")
        assert status.status is CopyStatus.NOT_FOUND
        assert status.operation_id == "copy_x_1"


class TestTransformData:
    """Tests for the single-pair unary and streamed transform."""

    @pytest.fixture
    def users_mapping(self, db_manager, catalog):
        seed_mapping(db_manager, "users_to_customers", [
            ("id_to_id", column(CRM_ID, "users", "id"), column(WAREHOUSE_ID, "customers", "id")),
            ("email_to_email", column(CRM_ID, "users", "email"), column(WAREHOUSE_ID, "customers", "email")),
        ])
        return "users_to_customers"

    def test_append(self, pipeline, execution_engine, users_mapping):
        execution_engine.fetch_data.return_value = FetchResult(rows=rows(4))
        execution_engine.transform_data.side_effect = lambda *a: a[4]
        execution_engine.insert_data.return_value = InsertResult(success=True, rows_affected=4)

        summary = pipeline.transform_data(TENANT, WORKSPACE, users_mapping)

        assert (summary.rows_processed, summary.rows_transformed, summary.rows_inserted) == (4, 4, 4)
        assert summary.source_table_name == "users"
        assert summary.target_database_name == "warehouse"
        options = execution_engine.transform_data.call_args.args[5]
        assert options['mode'] == "append"
        assert options['transformation_rules'][1] == {
            'source_field': "email",
            'target_field': "email",
            'transformation_type': "direct_mapping",
            'transformation_options': {},
        }
        execution_engine.wipe_database.assert_not_called()

    def test_replace_wipes_target_first(self, pipeline, execution_engine, users_mapping):
        execution_engine.fetch_data.return_value = FetchResult(rows=[])
        execution_engine.transform_data.return_value = []
        execution_engine.insert_data.return_value = InsertResult(success=True)

        pipeline.transform_data(TENANT, WORKSPACE, users_mapping, mode="replace")

        execution_engine.wipe_database.assert_called_once_with(TENANT, WORKSPACE, WAREHOUSE_ID)

    def test_update_mode_is_unimplemented(self, pipeline, execution_engine, users_mapping):
        with pytest.raises(UnimplementedError):
            pipeline.transform_data(TENANT, WORKSPACE, users_mapping, mode="update")
        execution_engine.fetch_data.assert_not_called()

    def test_unknown_mode(self, pipeline, users_mapping):
        with pytest.raises(InvalidArgumentError):
            pipeline.transform_data(TENANT, WORKSPACE, users_mapping, mode="merge")

    def test_no_rules(self, pipeline, db_manager):
        seed_mapping(db_manager, "empty", [])
        with pytest.raises(FailedPreconditionError):
            pipeline.transform_data(TENANT, WORKSPACE, "empty")

    def test_disconnected_target(self, pipeline, db_manager, catalog):
        seed_mapping(db_manager, "to_archive", [
            ("id_to_legacy", column(CRM_ID, "users", "id"), column(ARCHIVE_ID, "legacy_users", "id")),
        ])
        with pytest.raises(FailedPreconditionError) as exc_info:
            pipeline.transform_data(TENANT, WORKSPACE, "to_archive")
        assert "archive" in exc_info.value.message

    def test_fetch_failure(self, pipeline, execution_engine, users_mapping):
        execution_engine.fetch_data.return_value = FetchResult(success=False, message="timeout")
        with pytest.raises(InternalError):
            pipeline.transform_data(TENANT, WORKSPACE, users_mapping)

    def test_stream_yields_running_totals(self, pipeline, execution_engine, users_mapping):
        execution_engine.fetch_data_stream.return_value = FakeStream([
            DataBatch(rows=rows(3)),
            DataBatch(rows=rows(2, start=3), is_complete=True),
        ])
        execution_engine.transform_data.side_effect = lambda *a: a[4]
        execution_engine.insert_batch.side_effect = (
            lambda *a, **kw: InsertResult(success=True, rows_affected=len(a[4]))
        )

        summaries = list(pipeline.transform_data_stream(TENANT, WORKSPACE, users_mapping, batch_size=3))

        assert [s.rows_processed for s in summaries] == [3, 5, 5]
        assert [s.is_complete for s in summaries] == [False, False, True]
        assert summaries[-1].rows_inserted == 5
        assert summaries[-1].message == "Data transformation completed successfully"


class TestTransformRows:
    """Tests for per-row rule application."""

    PLANS = [
        RulePlan("id", "id", "customer_id", "direct_mapping", {}),
        RulePlan("email", "email", "email", "lowercase", {"locale": "en"}),
        RulePlan("generated", None, "source_system", "", {}),
        RulePlan("sink", "email", None, "", {}),
    ]

    def test_parallel_chunks_keep_order(self, db_manager):
        registry = MagicMock(spec=TransformationRegistry)
        registry.execute.side_effect = lambda name, value, options: value.lower()
        pipeline = MigrationPipeline(db_manager, MagicMock(), registry=registry)
        batch = [{"id": i, "email": f"User{i}@Example.com"} for i in range(25)]

        output = pipeline.transform_rows(batch, self.PLANS, workers=4)

        assert [row['customer_id'] for row in output] == list(range(25))
        assert output[7] == {"customer_id": 7, "email": "user7@example.com", "source_system": None}
        registry.execute.assert_any_call("lowercase", "User0@Example.com", {"locale": "en"})

    def test_failed_transformation_keeps_value(self, db_manager):
        registry = MagicMock(spec=TransformationRegistry)
        registry.execute.side_effect = ValueError("bad input")
        pipeline = MigrationPipeline(db_manager, MagicMock(), registry=registry)

        output = pipeline.transform_rows([{"id": 1, "email": "A@B.C"}], self.PLANS)

        assert output == [{"customer_id": 1, "email": "A@B.C", "source_system": None}]

    def test_without_registry_values_pass_through(self, db_manager):
        pipeline = MigrationPipeline(db_manager, MagicMock())
        assert pipeline.transform_row({"id": 2, "email": "X@Y.Z"}, self.PLANS)['email'] == "X@Y.Z"

    @pytest.mark.parametrize("count, parts, sizes", [
        (10, 3, [4, 3, 3]),
        (2, 8, [1, 1]),
        (0, 4, [0]),
    ])
    def test_chunking(self, count, parts, sizes):
        assert [len(c) for c in _chunk(list(range(count)), parts)] == sizes
