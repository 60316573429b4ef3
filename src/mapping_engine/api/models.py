"""Pydantic models for API requests and responses."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models.enums import Cardinality, FilterOperator, FilterType, MappingScope, TransformMode


class ErrorResponse(BaseModel):
    """Error body returned for every failed request."""

    code: str = Field(..., description="Machine-checkable status code, e.g. not_found")
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class FilterSpec(BaseModel):
    """Filter attached to a mapping."""

    filter_type: str = Field(..., description="where, limit, order_by or custom")
    filter_expression: Dict[str, Any] = Field(default_factory=dict)
    filter_operator: Optional[str] = Field(default=None, description="AND or OR (default AND)")

    @field_validator('filter_type')
    @classmethod
    def validate_filter_type(cls, v: str) -> str:
        allowed = [t.value for t in FilterType]
        if v not in allowed:
            raise ValueError(f"filter_type must be one of {', '.join(allowed)}")
        return v

    @field_validator('filter_operator')
    @classmethod
    def validate_filter_operator(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        v = v.upper()
        if v not in [o.value for o in FilterOperator]:
            raise ValueError("filter_operator must be AND or OR")
        return v


class AddMappingRequest(BaseModel):
    """Request model for creating a database, table or MCP mapping."""

    name: str = Field(..., min_length=1, max_length=255)
    scope: str = Field(default=MappingScope.TABLE.value, description="database or table")
    source: str = Field(..., min_length=1, description="database[.table] or redb:// URI")
    target: str = Field(..., min_length=1, description="database[.table], redb:// URI or mcp://resource")
    description: str = ""
    generate_rules: bool = False

    @field_validator('scope')
    @classmethod
    def validate_scope(cls, v: str) -> str:
        v = v.strip().lower()
        allowed = [s.value for s in MappingScope]
        if v not in allowed:
            raise ValueError(f"scope must be one of {', '.join(allowed)}")
        return v


class AddEmptyMappingRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""


class StreamMappingRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    filters: List[FilterSpec] = Field(default_factory=list)
    generate_rules: bool = True


class AddStreamToTableMappingRequest(StreamMappingRequest):
    source_integration: str = Field(..., min_length=1)
    source_topic: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1, description="database.table or redb:// table URI")


class AddTableToStreamMappingRequest(StreamMappingRequest):
    source: str = Field(..., min_length=1, description="database.table or redb:// table URI")
    target_integration: str = Field(..., min_length=1)
    target_topic: str = Field(..., min_length=1)


class AddStreamToStreamMappingRequest(StreamMappingRequest):
    source_integration: str = Field(..., min_length=1)
    source_topic: str = Field(..., min_length=1)
    target_integration: str = Field(..., min_length=1)
    target_topic: str = Field(..., min_length=1)


class ModifyMappingRequest(BaseModel):
    description: Optional[str] = None
    mapping_object: Optional[Dict[str, Any]] = None


def _check_cardinality(v: Optional[str]) -> Optional[str]:
    if v is None or v == "":
        return None
    allowed = [c.value for c in Cardinality if c is not Cardinality.INVALID]
    if v not in allowed:
        raise ValueError(f"cardinality must be one of {', '.join(allowed)}")
    return v


class AddMappingRuleRequest(BaseModel):
    """Request model for creating a standalone rule."""

    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    source_uris: List[str] = Field(default_factory=list)
    target_uris: List[str] = Field(default_factory=list)
    source_identifier: str = Field(default="", description="Single source address, used when source_uris is empty")
    target_identifier: str = Field(default="", description="Single target address, used when target_uris is empty")
    cardinality: Optional[str] = Field(default=None, description="Inferred from item counts when omitted")
    transformation_name: str = ""
    transformation_options: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('cardinality')
    @classmethod
    def validate_cardinality(cls, v: Optional[str]) -> Optional[str]:
        return _check_cardinality(v)


class ModifyMappingRuleRequest(BaseModel):
    description: Optional[str] = None
    source_uris: Optional[List[str]] = None
    target_uris: Optional[List[str]] = None
    cardinality: Optional[str] = None
    transformation_name: Optional[str] = None
    transformation_options: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('cardinality')
    @classmethod
    def validate_cardinality(cls, v: Optional[str]) -> Optional[str]:
        return _check_cardinality(v)


class AttachRuleRequest(BaseModel):
    rule_name: str = Field(..., min_length=1)
    order: Optional[int] = Field(default=None, ge=0, description="Defaults to after the last rule")


class RuleOrderRequest(BaseModel):
    order: int = Field(..., ge=0)


class CopyDataRequest(BaseModel):
    """Request model for a streamed multi-table copy."""

    batch_size: Optional[int] = Field(default=None, ge=1, le=100000)
    parallel_workers: Optional[int] = Field(default=None, ge=1, le=64)
    dry_run: bool = False


class TransformRequest(BaseModel):
    mode: str = Field(default=TransformMode.APPEND.value, description="append, replace or update")
    batch_size: Optional[int] = Field(default=None, ge=1, le=100000)

    @field_validator('mode')
    @classmethod
    def normalize_mode(cls, v: str) -> str:
        return v.strip().lower()


class DeployTableRequest(BaseModel):
    mapping_name: str = Field(..., min_length=1, max_length=255)
    source_database: str = Field(..., min_length=1)
    source_table: str = Field(..., min_length=1)
    target_database: str = Field(..., min_length=1)
    target_table: str = Field(default="", description="Defaults to the source table name")
    description: str = ""
    generate_rules: bool = True
    wipe: bool = False


class DeployCommitRequest(BaseModel):
    """Deploy a committed schema to an existing or a new database."""

    repo: str = Field(..., min_length=1)
    branch: str = Field(..., min_length=1)
    commit: str = Field(default="", description="Commit code; empty or HEAD selects the head commit")
    target_database: str = Field(..., min_length=1)
    new_database: bool = False
    instance: Optional[str] = Field(default=None, validate_default=True)
    description: str = ""
    wipe: bool = False
    merge: bool = True

    @field_validator('instance')
    @classmethod
    def require_instance_for_new_database(cls, v: Optional[str], info) -> Optional[str]:
        if info.data.get('new_database') and not v:
            raise ValueError("instance is required when new_database is true")
        return v


class ValidationResponse(BaseModel):
    mapping: str
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    validated_at: Optional[str] = None


class TransformSummaryResponse(BaseModel):
    source_database_name: str
    source_table_name: str
    target_database_name: str
    target_table_name: str
    rows_processed: int
    rows_transformed: int
    rows_inserted: int
    rows_updated: int
    rows_deleted: int
    message: str
    is_complete: bool


class DeployCommitResponse(BaseModel):
    message: str
    target_database_id: str
    repo_id: Optional[str] = None
    branch_id: Optional[str] = None
    commit_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
