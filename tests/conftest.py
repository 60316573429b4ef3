"""Shared fixtures: an in-memory mapping store seeded with a small catalog."""

import uuid
from dataclasses import dataclass
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from mapping_engine.contracts import (
    DataBatch,
    DataStream,
    ExecutionEngine,
    SchemaConverter,
    SchemaMatcher,
    StreamEnded,
    TransformationRegistry,
)
from mapping_engine.lib.db_manager import DatabaseManager
from mapping_engine.models import (
    ConnectionStatus,
    DatabaseInstance,
    ManagedDatabase,
    ResourceContainer,
    ResourceItem,
    SchemaBranch,
    SchemaCommit,
    SchemaRepo,
)
from mapping_engine.services.broadcast import MeshBroadcaster
from mapping_engine.services.mapping_service import MappingService
from mapping_engine.services.mapping_store import MappingStore
from mapping_engine.services.resource_address import (
    build_column_uri,
    build_stream_uri,
    build_table_uri,
)

TENANT = "acme"
WORKSPACE = "analytics"

CRM_ID = "11111111-1111-4111-8111-111111111111"
WAREHOUSE_ID = "22222222-2222-4222-8222-222222222222"
ARCHIVE_ID = "33333333-3333-4333-8333-333333333333"

ORDERS_TOPIC_URI = build_stream_uri(WORKSPACE, "stream", "kafka-main", "orders")
ENRICHED_TOPIC_URI = build_stream_uri(WORKSPACE, "stream", "kafka-main", "orders-enriched")

CRM_SCHEMA = {
    "tables": {
        "users": {
            "name": "users",
            "columns": {
                "id": {"name": "id", "data_type": "integer"},
                "email": {"name": "email", "data_type": "varchar(255)"},
                "signup_date": {"name": "signup_date", "data_type": "date"},
                "status": {"name": "status", "data_type": "user_status"},
            },
        },
        "audit_log": {
            "name": "audit_log",
            "columns": {"entry": {"name": "entry", "data_type": "text"}},
        },
    },
    "types": {
        "user_status": {"kind": "enum", "values": ["active", "disabled"]},
        "unused_type": {"kind": "enum", "values": ["x"]},
    },
}

WAREHOUSE_SCHEMA = {
    "tables": {
        "customers": {
            "name": "customers",
            "columns": {
                "id": {"name": "id", "data_type": "bigint"},
                "email": {"name": "email", "data_type": "text"},
                "full_name": {"name": "full_name", "data_type": "varchar"},
            },
        },
        "orders": {
            "name": "orders",
            "columns": {
                "order_id": {"name": "order_id", "data_type": "integer"},
                "total": {"name": "total", "data_type": "numeric"},
            },
        },
    },
}


def column(database_id: str, table: str, name: str) -> str:
    return build_column_uri(database_id, table, name)


@dataclass
class Catalog:
    """Names and ids of the seeded catalog"""
    tenant: str = TENANT
    workspace: str = WORKSPACE
    crm_id: str = CRM_ID
    warehouse_id: str = WAREHOUSE_ID
    archive_id: str = ARCHIVE_ID


class FakeStream(DataStream):
    """Replays a fixed list of batches, then ends or raises ``error``"""

    def __init__(self, batches: List[DataBatch], error: Optional[Exception] = None):
        self.batches = list(batches)
        self.error = error
        self.closed = False

    def recv(self) -> DataBatch:
        if self.batches:
            return self.batches.pop(0)
        if self.error is not None:
            raise self.error
        raise StreamEnded()

    def close(self) -> None:
        self.closed = True


def _container(database_id, table, items):
    container = ResourceContainer(
        tenant_id=TENANT,
        workspace_id=WORKSPACE,
        resource_uri=build_table_uri(database_id, table),
        object_type="table",
        object_name=table,
        database_id=database_id,
    )
    container.items = [
        ResourceItem(
            resource_uri=column(database_id, table, name),
            item_name=name,
            data_type=data_type,
            is_nullable=nullable,
            is_primary_key=(position == 0),
            ordinal_position=position,
        )
        for position, (name, data_type, nullable) in enumerate(items)
    ]
    return container


def _topic(topic_uri, topic, fields):
    container = ResourceContainer(
        tenant_id=TENANT,
        workspace_id=WORKSPACE,
        resource_uri=topic_uri,
        object_type="topic",
        object_name=topic,
        integration_id="int-kafka-1",
        integration_name="kafka-main",
        topic_name=topic,
    )
    container.items = [
        ResourceItem(
            resource_uri=f"{topic_uri}/fields/{name}",
            item_name=name,
            data_type=data_type,
            ordinal_position=position,
        )
        for position, (name, data_type) in enumerate(fields)
    ]
    return container


@pytest.fixture
def db_manager():
    """Fresh in-memory mapping store per test."""
    manager = DatabaseManager("sqlite://")
    manager.create_all()
    yield manager
    manager.close()


@pytest.fixture
def catalog(db_manager) -> Catalog:
    """Seed instances, databases, discovered containers and schema history."""
    with db_manager.transaction() as session:
        instance = DatabaseInstance(
            tenant_id=TENANT, workspace_id=WORKSPACE, name="pg-main",
            database_type="postgresql", vendor="postgres", status=ConnectionStatus.CONNECTED,
        )
        offline = DatabaseInstance(
            tenant_id=TENANT, workspace_id=WORKSPACE, name="pg-offline",
            database_type="postgresql", vendor="postgres", status=ConnectionStatus.DISCONNECTED,
        )
        session.add_all([instance, offline])
        session.flush()

        session.add_all([
            ManagedDatabase(
                id=uuid.UUID(CRM_ID), tenant_id=TENANT, workspace_id=WORKSPACE, name="crm",
                database_type="postgresql", status=ConnectionStatus.CONNECTED,
                instance_id=instance.id, schema_structure=CRM_SCHEMA,
            ),
            ManagedDatabase(
                id=uuid.UUID(WAREHOUSE_ID), tenant_id=TENANT, workspace_id=WORKSPACE, name="warehouse",
                database_type="postgresql", status=ConnectionStatus.CONNECTED,
                instance_id=instance.id, schema_structure=WAREHOUSE_SCHEMA,
            ),
            ManagedDatabase(
                id=uuid.UUID(ARCHIVE_ID), tenant_id=TENANT, workspace_id=WORKSPACE, name="archive",
                database_type="mysql", status=ConnectionStatus.DISCONNECTED,
                instance_id=instance.id,
            ),
        ])

        session.add_all([
            _container(CRM_ID, "users", [
                ("id", "integer", False),
                ("email", "varchar(255)", False),
                ("signup_date", "date", True),
                ("status", "user_status", True),
            ]),
            _container(WAREHOUSE_ID, "customers", [
                ("id", "bigint", False),
                ("email", "text", True),
                ("full_name", "varchar", False),
            ]),
            _container(WAREHOUSE_ID, "orders", [
                ("order_id", "integer", False),
                ("total", "numeric", True),
            ]),
            _topic(ORDERS_TOPIC_URI, "orders", [("Order_ID", "string"), ("total_amount", "double")]),
            _topic(ENRICHED_TOPIC_URI, "orders-enriched", [("order_id", "string"), ("region", "string")]),
        ])

        repo = SchemaRepo(tenant_id=TENANT, workspace_id=WORKSPACE, name="crm-repo", database_id=CRM_ID)
        branch = SchemaBranch(name="main", connected_database_id=CRM_ID)
        branch.commits = [
            SchemaCommit(code="c001", sequence=1, is_head=False, schema_type="postgresql",
                         schema_structure={"tables": {}}),
            SchemaCommit(code="c002", sequence=2, is_head=True, schema_type="postgresql",
                         schema_structure=CRM_SCHEMA),
        ]
        repo.branches = [branch]
        session.add(repo)

    return Catalog()


@pytest.fixture
def store_session(db_manager, catalog):
    """A MappingStore bound to an open session; changes are committed on exit."""
    with db_manager.transaction() as session:
        yield MappingStore(session, TENANT, WORKSPACE)


@pytest.fixture
def matcher() -> MagicMock:
    return MagicMock(spec=SchemaMatcher, name="SchemaMatcher")


@pytest.fixture
def converter() -> MagicMock:
    return MagicMock(spec=SchemaConverter, name="SchemaConverter")


@pytest.fixture
def registry() -> MagicMock:
    """Transformation registry that knows no transformations unless told otherwise."""
    mock = MagicMock(spec=TransformationRegistry, name="TransformationRegistry")
    mock.get_transformation.return_value = None
    return mock


@pytest.fixture
def broadcaster() -> MagicMock:
    return MagicMock(spec=MeshBroadcaster, name="MeshBroadcaster")


@pytest.fixture
def execution_engine() -> MagicMock:
    return MagicMock(spec=ExecutionEngine, name="ExecutionEngine")


@pytest.fixture
def service(db_manager, catalog, matcher, registry, broadcaster) -> MappingService:
    return MappingService(db_manager, matcher=matcher, registry=registry, broadcaster=broadcaster)
