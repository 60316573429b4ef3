"""
ResourceContainer and ResourceItem Models

Addressable units populated by schema discovery: containers are tables or
stream topics, items are their columns or message fields. The engine reads
them to resolve addresses and to compute unmapped columns.
"""

from sqlalchemy import (
    Boolean, Column, Float, ForeignKey, Integer, JSON, String, Text, Uuid
)
from sqlalchemy.orm import relationship, validates

from . import Base


class ResourceContainer(Base):
    """A table, collection or stream topic that owns resource items"""

    tenant_id = Column(String(64), nullable=False, comment="Owning tenant")
    workspace_id = Column(String(64), nullable=False, comment="Owning workspace")

    resource_uri = Column(
        String(512),
        nullable=False,
        unique=True,
        comment="Canonical address, e.g. redb://data/database/{id}/table/{name}"
    )

    object_type = Column(
        String(32),
        nullable=False,
        default="table",
        comment="Container kind (table, topic, collection)"
    )

    object_name = Column(String(255), nullable=False, comment="Table or topic name")
    database_id = Column(String(64), nullable=True, comment="Owning database id for tables")

    integration_id = Column(String(64), nullable=True, comment="Stream integration id")
    integration_name = Column(String(255), nullable=True, comment="Stream integration name")
    topic_name = Column(String(255), nullable=True, comment="Stream topic name")

    container_metadata = Column(JSON, nullable=True, default=dict, comment="Discovery metadata")

    items = relationship(
        "ResourceItem",
        back_populates="container",
        cascade="all, delete-orphan",
        order_by="ResourceItem.ordinal_position",
        lazy="selectin"
    )

    @validates('resource_uri')
    def validate_resource_uri(self, key: str, uri: str) -> str:
        if not uri or "://" not in uri:
            raise ValueError("resource_uri must be a scheme-prefixed address")
        return uri

    def __repr__(self) -> str:
        return f"<ResourceContainer(uri='{self.resource_uri}')>"


class ResourceItem(Base):
    """A column or message field with its discovered metadata"""

    container_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('resource_container.id', ondelete='CASCADE'),
        nullable=False,
        comment="Owning container"
    )

    resource_uri = Column(String(512), nullable=False, unique=True, comment="Canonical item address")
    item_name = Column(String(255), nullable=False, comment="Column or field name")

    data_type = Column(String(128), nullable=True, comment="Engine-native data type")
    unified_data_type = Column(String(128), nullable=True, comment="Cross-engine data type")

    is_nullable = Column(Boolean, nullable=False, default=True)
    is_primary_key = Column(Boolean, nullable=False, default=False)
    is_unique = Column(Boolean, nullable=False, default=False)
    is_indexed = Column(Boolean, nullable=False, default=False)

    is_privileged = Column(Boolean, nullable=False, default=False, comment="Privileged data flag")
    privileged_classification = Column(String(128), nullable=True)
    detection_confidence = Column(Float, nullable=True)
    description = Column(Text, nullable=True)

    ordinal_position = Column(Integer, nullable=False, default=0)

    container = relationship("ResourceContainer", back_populates="items")

    def __repr__(self) -> str:
        return f"<ResourceItem(uri='{self.resource_uri}')>"
