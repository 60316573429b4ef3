"""
Mapping Model

A declared correspondence between a source and a target resource, its
ordered rule attachments and its filters.
"""

from typing import List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, JSON,
    String, Text, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship, validates

from . import Base
from .enums import FilterOperator, FilterType, ResourceKind
from .metadata import MappingProvenance


class Mapping(Base):
    """Correspondence between two resources plus its validation state"""

    __table_args__ = (
        UniqueConstraint('tenant_id', 'workspace_id', 'name', name='mapping_name'),
    )

    tenant_id = Column(String(64), nullable=False, comment="Owning tenant")
    workspace_id = Column(String(64), nullable=False, comment="Owning workspace")

    name = Column(String(255), nullable=False, comment="Mapping name, unique per workspace")
    description = Column(Text, nullable=False, default="")

    mapping_type = Column(
        String(64),
        nullable=False,
        default="undefined",
        comment="Derived as {source_type}-to-{target_type}"
    )

    source_type = Column(String(32), nullable=True, comment="database, table, stream or mcp-resource")
    target_type = Column(String(32), nullable=True)
    source_identifier = Column(String(512), nullable=False, default="", comment="Source address")
    target_identifier = Column(String(512), nullable=False, default="", comment="Target address")

    source_container_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('resource_container.id', ondelete='SET NULL'),
        nullable=True
    )
    target_container_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('resource_container.id', ondelete='SET NULL'),
        nullable=True
    )

    mapping_object = Column(JSON, nullable=False, default=dict, comment="Human-readable provenance")

    validated = Column(Boolean, nullable=False, default=False)
    validated_at = Column(DateTime(timezone=True), nullable=True)
    validation_errors = Column(JSON, nullable=False, default=list)
    validation_warnings = Column(JSON, nullable=False, default=list)

    rule_count = Column(Integer, nullable=False, default=0, comment="Denormalized attached rule count")
    owner_id = Column(String(64), nullable=True)

    rule_links = relationship(
        "MappingRuleLink",
        back_populates="mapping",
        cascade="all, delete-orphan",
        order_by="MappingRuleLink.rule_order",
        lazy="selectin"
    )

    filters = relationship(
        "MappingFilter",
        back_populates="mapping",
        cascade="all, delete-orphan",
        order_by="MappingFilter.filter_order",
        lazy="selectin"
    )

    @validates('name')
    def validate_name(self, key: str, name: str) -> str:
        if not name or not name.strip():
            raise ValueError("mapping name cannot be empty")
        return name.strip()

    @property
    def source_kind(self) -> Optional[ResourceKind]:
        return ResourceKind(self.source_type) if self.source_type else None

    @property
    def target_kind(self) -> Optional[ResourceKind]:
        return ResourceKind(self.target_type) if self.target_type else None

    @property
    def provenance(self) -> MappingProvenance:
        return MappingProvenance.from_dict(self.mapping_object)

    @property
    def rules(self) -> List:
        """Attached rules in attachment order"""
        return [link.rule for link in self.rule_links]

    def __repr__(self) -> str:
        return f"<Mapping(name='{self.name}', type='{self.mapping_type}')>"


class MappingRuleLink(Base):
    """Attachment of a rule to a mapping at an explicit order"""

    __table_args__ = (
        UniqueConstraint('mapping_id', 'rule_id', name='mapping_rule_attachment'),
    )

    mapping_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('mapping.id', ondelete='CASCADE'),
        nullable=False
    )
    rule_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('mapping_rule.id', ondelete='CASCADE'),
        nullable=False
    )
    rule_order = Column(Integer, nullable=False, default=0)

    mapping = relationship("Mapping", back_populates="rule_links")
    rule = relationship("MappingRule", back_populates="links", lazy="selectin")


_FILTER_TYPES = ", ".join(f"'{t.value}'" for t in FilterType)
_FILTER_OPERATORS = ", ".join(f"'{o.value}'" for o in FilterOperator)


class MappingFilter(Base):
    """Ordered, typed predicate attached to a mapping"""

    __table_args__ = (
        CheckConstraint(f"filter_type IN ({_FILTER_TYPES})", name='valid_filter_type'),
        CheckConstraint(f"filter_operator IN ({_FILTER_OPERATORS})", name='valid_filter_operator'),
    )

    mapping_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('mapping.id', ondelete='CASCADE'),
        nullable=False
    )
    filter_type = Column(String(32), nullable=False)
    filter_expression = Column(JSON, nullable=False, default=dict)
    filter_order = Column(Integer, nullable=False, default=0)
    filter_operator = Column(String(8), nullable=False, default=FilterOperator.AND.value)

    mapping = relationship("Mapping", back_populates="filters")
