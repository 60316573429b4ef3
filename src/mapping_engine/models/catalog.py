"""
Catalog Models

Instances, databases and schema version history. These are owned by the
wider control plane; the engine reads them to resolve names, check
connection state and find schemas to deploy.
"""

from sqlalchemy import (
    Boolean, Column, ForeignKey, Integer, JSON, String, Text, UniqueConstraint, Uuid
)
from sqlalchemy.orm import relationship

from . import Base, ConnectionStatus


class DatabaseInstance(Base):
    """A database server that can host logical databases"""

    __table_args__ = (
        UniqueConstraint('tenant_id', 'workspace_id', 'name', name='instance_name'),
    )

    tenant_id = Column(String(64), nullable=False)
    workspace_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    database_type = Column(String(64), nullable=False, comment="Engine type, e.g. postgres")
    vendor = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False, default=ConnectionStatus.PENDING)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED


class ManagedDatabase(Base):
    """A logical database registered in the workspace"""

    __table_args__ = (
        UniqueConstraint('tenant_id', 'workspace_id', 'name', name='database_name'),
    )

    tenant_id = Column(String(64), nullable=False)
    workspace_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False, comment="Human-readable database name")
    description = Column(Text, nullable=False, default="")
    database_type = Column(String(64), nullable=False, comment="Engine type, e.g. postgres")
    vendor = Column(String(64), nullable=True)
    db_name = Column(String(255), nullable=True, comment="Physical database name")
    status = Column(String(32), nullable=False, default=ConnectionStatus.PENDING)

    instance_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('database_instance.id', ondelete='SET NULL'),
        nullable=True
    )

    schema_structure = Column(JSON, nullable=True, comment="Discovered schema model")
    enriched_tables = Column(JSON, nullable=True, comment="Classification enrichment")

    instance = relationship("DatabaseInstance")

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED


class SchemaRepo(Base):
    """Schema version repository tracking one database"""

    tenant_id = Column(String(64), nullable=False)
    workspace_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    database_id = Column(String(64), nullable=True, comment="Database the repo tracks")

    branches = relationship(
        "SchemaBranch",
        back_populates="repo",
        cascade="all, delete-orphan",
        lazy="selectin"
    )


class SchemaBranch(Base):
    """Branch of a schema repository"""

    repo_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('schema_repo.id', ondelete='CASCADE'),
        nullable=False
    )
    name = Column(String(255), nullable=False)
    connected_database_id = Column(String(64), nullable=True)

    repo = relationship("SchemaRepo", back_populates="branches")
    commits = relationship(
        "SchemaCommit",
        back_populates="branch",
        cascade="all, delete-orphan",
        order_by="SchemaCommit.sequence.desc()",
        lazy="selectin"
    )

    @property
    def connected_to_database(self) -> bool:
        return bool(self.connected_database_id)


class SchemaCommit(Base):
    """A snapshot of a schema on a branch"""

    branch_id = Column(
        Uuid(as_uuid=True),
        ForeignKey('schema_branch.id', ondelete='CASCADE'),
        nullable=False
    )
    code = Column(String(64), nullable=False, comment="Short commit code")
    sequence = Column(Integer, nullable=False, default=0, comment="Monotonic commit number")
    is_head = Column(Boolean, nullable=False, default=False)
    schema_type = Column(String(64), nullable=True, comment="Engine type the schema was taken from")
    schema_structure = Column(JSON, nullable=True)

    branch = relationship("SchemaBranch", back_populates="commits")
