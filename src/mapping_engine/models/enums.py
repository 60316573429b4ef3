"""
Closed enumerations shared by models, services and the HTTP surface.

Values are the wire/storage spellings; members are what code dispatches on.
"""

from enum import Enum


class ResourceKind(str, Enum):
    """Source/target type tag of a mapping"""
    DATABASE = "database"
    TABLE = "table"
    STREAM = "stream"
    MCP_RESOURCE = "mcp-resource"


class MappingScope(str, Enum):
    """Scope accepted by the generic add-mapping entry point"""
    DATABASE = "database"
    TABLE = "table"


class Cardinality(str, Enum):
    """Structural shape of a rule's source-to-target relationship"""
    ONE_TO_ONE = "one-to-one"
    ONE_TO_MANY = "one-to-many"
    MANY_TO_ONE = "many-to-one"
    MANY_TO_MANY = "many-to-many"
    GENERATOR = "generator"
    SINK = "sink"
    INVALID = "invalid"


class ItemRole(str, Enum):
    SOURCE = "source"
    TARGET = "target"


class FilterType(str, Enum):
    WHERE = "where"
    LIMIT = "limit"
    ORDER_BY = "order_by"
    CUSTOM = "custom"


class FilterOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class MatchType(str, Enum):
    """How a rule came into existence"""
    USER_DEFINED = "user_defined"
    AUTO_GENERATED = "auto_generated"
    AUTO_GENERATED_MCP = "auto_generated_mcp"
    AUTO_GENERATED_STREAM = "auto_generated_stream"


class TransformMode(str, Enum):
    APPEND = "append"
    REPLACE = "replace"
    UPDATE = "update"


class CopyStatus(str, Enum):
    """Status string carried by each streamed copy message"""
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    ERROR = "error"
    NOT_FOUND = "not_found"
