"""
Resource Address Resolver

Parses and builds the typed, scheme-prefixed identifiers that name a
database, table, column, stream topic or external tool resource:

    redb://data/database/{id}[/table/{name}[/column/{name}]]
    mcp://{resource}
    stream://{workspace}/{kind}/{integration}/{topic}
    mcp_virtual://{mapping}.{virtual_table}.{column}
    db://{id}.{table}.{column}          (legacy, also with a leading '@')
    database[.table]                    (legacy source/target form)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Union

from ..lib.exceptions import InvalidArgumentError

logger = logging.getLogger(__name__)

REDB_PATTERN = "redb://data/database/{id}[/table/{name}[/column/{name}]]"
STREAM_PATTERN = "stream://{workspace}/{kind}/{integration}/{topic}"
MCP_VIRTUAL_PATTERN = "mcp_virtual://{mapping}.{virtual_table}.{column}"
LEGACY_PATTERN = "db://{database_id}.{table}.{column}"


class Protocol(str, Enum):
    REDB = "redb"
    MCP = "mcp"
    STREAM = "stream"
    MCP_VIRTUAL = "mcp_virtual"
    LEGACY_DB = "db"


class ObjectType(str, Enum):
    DATABASE = "database"
    TABLE = "table"
    COLUMN = "column"
    TOPIC = "topic"
    RESOURCE = "resource"


@dataclass(frozen=True)
class ResourceAddress:
    """Decoded form of a resource URI"""
    protocol: Protocol
    object_type: ObjectType
    database_id: str = ""
    table: str = ""
    column: str = ""
    resource_name: str = ""
    workspace: str = ""
    kind: str = ""
    integration: str = ""
    topic: str = ""

    @property
    def object_name(self) -> str:
        if self.object_type is ObjectType.COLUMN:
            return self.column
        if self.object_type is ObjectType.TABLE:
            return self.table
        if self.object_type is ObjectType.TOPIC:
            return self.topic
        if self.object_type is ObjectType.RESOURCE:
            return self.resource_name
        return self.database_id

    @property
    def table_uri(self) -> str:
        """Address of the owning table (or the database for database scope)"""
        if self.protocol is Protocol.REDB or self.protocol is Protocol.LEGACY_DB:
            if self.table:
                return build_table_uri(self.database_id, self.table)
            return build_database_uri(self.database_id)
        return self.to_uri()

    def to_uri(self) -> str:
        if self.protocol is Protocol.REDB:
            if self.object_type is ObjectType.COLUMN:
                return build_column_uri(self.database_id, self.table, self.column)
            if self.object_type is ObjectType.TABLE:
                return build_table_uri(self.database_id, self.table)
            return build_database_uri(self.database_id)
        if self.protocol is Protocol.MCP:
            return build_mcp_uri(self.resource_name)
        if self.protocol is Protocol.STREAM:
            return build_stream_uri(self.workspace, self.kind, self.integration, self.topic)
        if self.protocol is Protocol.MCP_VIRTUAL:
            return build_mcp_virtual_uri(self.resource_name, self.table, self.column)
        return f"db://{self.database_id}.{self.table}.{self.column}"


class DatabaseDirectory(ABC):
    """Resolves database ids embedded in addresses to human-readable names"""

    @abstractmethod
    def get_database_name(self, database_id: str) -> str:
        """Raises NotFoundError when the id is unknown"""
        pass


# Builders

def build_database_uri(database_id: str) -> str:
    return f"redb://data/database/{database_id}"


def build_table_uri(database_id: str, table: str) -> str:
    return f"redb://data/database/{database_id}/table/{table}"


def build_column_uri(database_id: str, table: str, column: str) -> str:
    return f"redb://data/database/{database_id}/table/{table}/column/{column}"


def build_resource_uri(
    scope: Union[ObjectType, str],
    database_id: str,
    table: str = "",
    column: str = ""
) -> str:
    """
    Build a redb:// address for a database, table or column

    A table or column scope with missing name parts degrades to the parent
    database address and logs a warning. Any other scope is rejected.

    Raises:
        InvalidArgumentError: For scopes other than database, table and column
    """
    try:
        scope = ObjectType(scope)
    except ValueError:
        raise InvalidArgumentError(
            f"unsupported resource scope '{scope}': expected database, table or column",
            {'scope': str(scope)}
        )

    if scope is ObjectType.DATABASE:
        return build_database_uri(database_id)
    if scope is ObjectType.TABLE:
        if not table:
            logger.warning("Table name is empty for table-scope resource URI")
            return build_database_uri(database_id)
        return build_table_uri(database_id, table)
    if scope is ObjectType.COLUMN:
        if not table or not column:
            logger.warning("Table or column name is empty for column-scope resource URI")
            return build_database_uri(database_id)
        return build_column_uri(database_id, table, column)

    raise InvalidArgumentError(
        f"unsupported resource scope '{scope.value}': expected database, table or column",
        {'scope': scope.value}
    )


def build_mcp_uri(resource_name: str) -> str:
    if not resource_name:
        raise InvalidArgumentError("MCP resource name cannot be empty")
    return f"mcp://{resource_name}"


def build_stream_uri(workspace: str, kind: str, integration: str, topic: str) -> str:
    return f"stream://{workspace}/{kind}/{integration}/{topic}"


def build_mcp_virtual_uri(mapping_name: str, virtual_table: str, column: str) -> str:
    return f"mcp_virtual://{mapping_name}.{virtual_table}.{column}"


def build_mapping_type(source_type, target_type) -> str:
    """Derive a mapping_type such as ``table-to-table``"""
    source = getattr(source_type, "value", source_type)
    target = getattr(target_type, "value", target_type)
    return f"{source}-to-{target}"


# Parsers

def parse_resource_uri(uri: str) -> ResourceAddress:
    """
    Decode any supported resource address

    Raises:
        InvalidArgumentError: If the address is empty, malformed or uses an
            unsupported scheme; the message names the expected pattern
    """
    if not uri:
        raise InvalidArgumentError("resource URI cannot be empty")

    if uri.startswith("redb://"):
        return _parse_redb(uri)
    if uri.startswith("mcp_virtual://"):
        return _parse_mcp_virtual(uri)
    if uri.startswith("mcp://"):
        name = uri[len("mcp://"):]
        if not name:
            raise InvalidArgumentError(f"invalid MCP URI '{uri}': expected mcp://{{resource}}")
        return ResourceAddress(protocol=Protocol.MCP, object_type=ObjectType.RESOURCE, resource_name=name)
    if uri.startswith("stream://"):
        return parse_stream_uri(uri)
    if uri.startswith("db://") or uri.startswith("@db://"):
        return parse_legacy_identifier(uri)

    raise InvalidArgumentError(
        f"unsupported resource URI '{uri}': expected one of redb://, mcp://, stream://, mcp_virtual:// or db://",
        {'uri': uri}
    )


def _parse_redb(uri: str) -> ResourceAddress:
    parts = uri[len("redb://"):].split("/")
    error = InvalidArgumentError(f"invalid resource URI '{uri}': expected {REDB_PATTERN}", {'uri': uri})

    if len(parts) not in (3, 5, 7) or parts[0] != "data" or parts[1] != "database":
        raise error
    if any(not part for part in parts):
        raise error

    database_id = parts[2]
    if len(parts) == 3:
        return ResourceAddress(protocol=Protocol.REDB, object_type=ObjectType.DATABASE, database_id=database_id)

    if parts[3] != "table":
        raise error
    if len(parts) == 5:
        return ResourceAddress(
            protocol=Protocol.REDB,
            object_type=ObjectType.TABLE,
            database_id=database_id,
            table=parts[4],
        )

    if parts[5] != "column":
        raise error
    return ResourceAddress(
        protocol=Protocol.REDB,
        object_type=ObjectType.COLUMN,
        database_id=database_id,
        table=parts[4],
        column=parts[6],
    )


def _parse_mcp_virtual(uri: str) -> ResourceAddress:
    parts = uri[len("mcp_virtual://"):].split(".")
    if len(parts) != 3 or any(not part for part in parts):
        raise InvalidArgumentError(f"invalid virtual URI '{uri}': expected {MCP_VIRTUAL_PATTERN}", {'uri': uri})
    return ResourceAddress(
        protocol=Protocol.MCP_VIRTUAL,
        object_type=ObjectType.COLUMN,
        resource_name=parts[0],
        table=parts[1],
        column=parts[2],
    )


def parse_stream_uri(uri: str) -> ResourceAddress:
    """Decode stream://{workspace}/{kind}/{integration}/{topic}"""
    if not uri.startswith("stream://"):
        raise InvalidArgumentError(f"invalid stream URI '{uri}': expected {STREAM_PATTERN}", {'uri': uri})
    parts = uri[len("stream://"):].split("/", 3)
    if len(parts) < 4 or any(not part for part in parts):
        raise InvalidArgumentError(f"invalid stream URI '{uri}': expected {STREAM_PATTERN}", {'uri': uri})
    workspace, kind, integration, topic = parts
    return ResourceAddress(
        protocol=Protocol.STREAM,
        object_type=ObjectType.TOPIC,
        workspace=workspace,
        kind=kind,
        integration=integration,
        topic=topic,
    )


def parse_legacy_identifier(identifier: str) -> ResourceAddress:
    """Decode db://{database_id}.{table}.{column} (optionally '@'-prefixed)"""
    clean = identifier
    if clean.startswith("@db://"):
        clean = clean[len("@db://"):]
    elif clean.startswith("db://"):
        clean = clean[len("db://"):]

    parts = clean.split(".")
    if len(parts) != 3 or any(not part for part in parts):
        raise InvalidArgumentError(
            f"invalid identifier '{identifier}': expected '{LEGACY_PATTERN}' or '@{LEGACY_PATTERN}'",
            {'identifier': identifier}
        )
    return ResourceAddress(
        protocol=Protocol.LEGACY_DB,
        object_type=ObjectType.COLUMN,
        database_id=parts[0],
        table=parts[1],
        column=parts[2],
    )


def parse_column_identifier(identifier: str) -> ResourceAddress:
    """
    Decode a rule item address that must point at a database column

    Accepts redb:// column addresses and the legacy db:// form.
    """
    address = parse_resource_uri(identifier)
    if address.protocol not in (Protocol.REDB, Protocol.LEGACY_DB) or address.object_type is not ObjectType.COLUMN:
        raise InvalidArgumentError(
            f"identifier '{identifier}' does not address a database column: expected {REDB_PATTERN} or {LEGACY_PATTERN}",
            {'identifier': identifier}
        )
    return address


def parse_source_target(value: str, directory: DatabaseDirectory) -> Tuple[str, str]:
    """
    Split an add-mapping source/target into (database, table)

    redb:// addresses resolve their database id to a name via ``directory``;
    other URIs come back unchanged in the database slot with an empty table.
    Plain values use the legacy ``database[.table]`` form.

    Raises:
        InvalidArgumentError: For empty or malformed input
        NotFoundError: If the database id cannot be resolved
    """
    if not value:
        raise InvalidArgumentError("source/target cannot be empty")

    if "://" in value:
        address = parse_resource_uri(value)
        if address.protocol is Protocol.REDB:
            database_name = directory.get_database_name(address.database_id)
            table = address.table if address.object_type in (ObjectType.TABLE, ObjectType.COLUMN) else ""
            return database_name, table
        return value, ""

    parts = value.split(".")
    if len(parts) == 1:
        return parts[0], ""
    if len(parts) == 2:
        return parts[0], parts[1]
    raise InvalidArgumentError(
        f"invalid format '{value}': expected 'database' or 'database.table'",
        {'value': value}
    )
