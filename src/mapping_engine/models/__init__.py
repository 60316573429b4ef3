"""
Mapping store schema

Every table gets a UUID key and creation/update stamps from ``Base``.
Constraint names follow a fixed convention so PostgreSQL and SQLite
produce the same DDL.
"""

import enum
import re
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import Column, DateTime, MetaData, Uuid
from sqlalchemy.orm import declarative_base, declared_attr
from sqlalchemy.sql import func

metadata = MetaData(naming_convention={
    "pk": "pk_%(table_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ix": "ix_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
})

_CAMEL_BOUNDARY = re.compile(r'(?<=[a-z0-9])(?=[A-Z])')


def _plain(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return value


class StoreRecord:
    """Shared columns and serialization for mapping store rows"""

    @declared_attr
    def __tablename__(cls):
        # MappingRuleLink -> mapping_rule_link
        return _CAMEL_BOUNDARY.sub('_', cls.__name__).lower()

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by attribute, with ids, stamps and enums as plain strings"""
        return {column.key: _plain(getattr(self, column.key)) for column in self.__table__.columns}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id}>"


Base = declarative_base(cls=StoreRecord, metadata=metadata)


class ConnectionStatus:
    """Connection states reported for databases and instances"""
    CONNECTED = "STATUS_CONNECTED"
    DISCONNECTED = "STATUS_DISCONNECTED"
    PENDING = "STATUS_PENDING"


# Model modules register their tables on Base
from .enums import (  # noqa: E402
    Cardinality,
    CopyStatus,
    FilterOperator,
    FilterType,
    ItemRole,
    MappingScope,
    MatchType,
    ResourceKind,
    TransformMode,
)
from .metadata import MappingProvenance, RuleMetadata  # noqa: E402
from .resource import ResourceContainer, ResourceItem  # noqa: E402
from .catalog import (  # noqa: E402
    DatabaseInstance,
    ManagedDatabase,
    SchemaBranch,
    SchemaCommit,
    SchemaRepo,
)
from .mapping_rule import MappingRule, MappingRuleItem  # noqa: E402
from .mapping import Mapping, MappingFilter, MappingRuleLink  # noqa: E402

__all__ = [
    'Base',
    'StoreRecord',
    'metadata',
    'ConnectionStatus',
    'Cardinality',
    'CopyStatus',
    'FilterOperator',
    'FilterType',
    'ItemRole',
    'MappingScope',
    'MatchType',
    'ResourceKind',
    'TransformMode',
    'MappingProvenance',
    'RuleMetadata',
    'ResourceContainer',
    'ResourceItem',
    'DatabaseInstance',
    'ManagedDatabase',
    'SchemaRepo',
    'SchemaBranch',
    'SchemaCommit',
    'MappingRule',
    'MappingRuleItem',
    'Mapping',
    'MappingFilter',
    'MappingRuleLink',
]
