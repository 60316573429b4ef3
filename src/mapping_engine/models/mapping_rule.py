"""
MappingRule Model

One transformation edge: ordered source and target item references, a
cardinality, a named transformation and its options. A rule lives
independently of any mapping until it is attached.
"""

from typing import List

from sqlalchemy import (
    CheckConstraint, Column, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship, validates

from . import Base
from .enums import Cardinality, ItemRole
from .metadata import RuleMetadata

_CARDINALITY_VALUES = ", ".join(f"'{c.value}'" for c in Cardinality if c is not Cardinality.INVALID)


class MappingRule(Base):
    """A reusable transformation edge between resource items"""

    __table_args__ = (
        UniqueConstraint('tenant_id', 'workspace_id', 'name', name='rule_name'),
        CheckConstraint(f"cardinality IN ({_CARDINALITY_VALUES})", name='valid_cardinality'),
    )

    tenant_id = Column(String(64), nullable=False, comment="Owning tenant")
    workspace_id = Column(String(64), nullable=False, comment="Owning workspace")

    name = Column(String(255), nullable=False, comment="Rule name, unique per workspace")
    description = Column(Text, nullable=False, default="")

    cardinality = Column(
        String(32),
        nullable=False,
        default=Cardinality.ONE_TO_ONE.value,
        comment="Structural relationship of source and target items"
    )

    transformation_name = Column(String(255), nullable=False, default="", comment="Named transformation")
    transformation_options = Column(JSON, nullable=False, default=dict)

    rule_metadata = Column(JSON, nullable=False, default=dict, comment="Provenance and match details")

    owner_id = Column(String(64), nullable=True)

    items = relationship(
        "MappingRuleItem",
        back_populates="rule",
        cascade="all, delete-orphan",
        order_by="MappingRuleItem.position",
        lazy="selectin"
    )

    links = relationship(
        "MappingRuleLink",
        back_populates="rule",
        cascade="all, delete-orphan",
        passive_deletes=True
    )

    @validates('name')
    def validate_name(self, key: str, name: str) -> str:
        if not name or not name.strip():
            raise ValueError("rule name cannot be empty")
        return name.strip()

    @property
    def cardinality_kind(self) -> Cardinality:
        return Cardinality(self.cardinality)

    @property
    def source_uris(self) -> List[str]:
        return [item.resource_uri for item in self.items if item.role == ItemRole.SOURCE.value]

    @property
    def target_uris(self) -> List[str]:
        return [item.resource_uri for item in self.items if item.role == ItemRole.TARGET.value]

    @property
    def source_identifier(self) -> str:
        """First source address, the single-valued form older callers use"""
        uris = self.source_uris
        return uris[0] if uris else ""

    @property
    def target_identifier(self) -> str:
        uris = self.target_uris
        return uris[0] if uris else ""

    @property
    def metadata_info(self) -> RuleMetadata:
        return RuleMetadata.from_dict(self.rule_metadata)

    def to_dict(self):
        data = super().to_dict()
        data['source_uris'] = self.source_uris
        data['target_uris'] = self.target_uris
        return data

    def __repr__(self) -> str:
        return f"<MappingRule(name='{self.name}', cardinality='{self.cardinality}')>"


class MappingRuleItem(Base):
    """Ordered reference from a rule to one source or target item"""

    __table_args__ = (
        UniqueConstraint('rule_id', 'role', 'position', name='rule_item_position'),
        CheckConstraint("role IN ('source', 'target')", name='valid_role'),
    )

    rule_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('mapping_rule.id', ondelete='CASCADE'),
        nullable=False
    )

    role = Column(String(16), nullable=False, comment="source or target")
    position = Column(Integer, nullable=False, default=0, comment="Order within the role")
    resource_uri = Column(String(512), nullable=False, comment="Referenced item address")

    item_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('resource_item.id', ondelete='SET NULL'),
        nullable=True,
        comment="Resolved resource item; null for virtual targets"
    )

    rule = relationship("MappingRule", back_populates="items")
    item = relationship("ResourceItem", lazy="selectin")

    def __repr__(self) -> str:
        return f"<MappingRuleItem(role='{self.role}', uri='{self.resource_uri}')>"
