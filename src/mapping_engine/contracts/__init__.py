"""
Service Contracts Package

Abstract base classes for the collaborators the mapping engine talks to
over the network.
"""

from .execution_engine import (
    DataBatch,
    DataStream,
    DeployOptions,
    ExecutionEngine,
    FetchResult,
    InsertResult,
    StreamEnded,
)

from .schema_matcher import (
    ColumnMatch,
    ConversionResult,
    MatchOptions,
    MatchResult,
    SchemaConverter,
    SchemaMatcher,
    TableMatch,
)

from .transformation_registry import (
    DIRECT_MAPPING,
    TransformationInfo,
    TransformationRegistry,
    TransformationTypes,
)

from .mesh_transport import BroadcastRecord, MeshTransport

__all__ = [
    # Execution engine
    "DataBatch",
    "DataStream",
    "DeployOptions",
    "ExecutionEngine",
    "FetchResult",
    "InsertResult",
    "StreamEnded",

    # Schema matcher
    "ColumnMatch",
    "ConversionResult",
    "MatchOptions",
    "MatchResult",
    "SchemaConverter",
    "SchemaMatcher",
    "TableMatch",

    # Transformation registry
    "DIRECT_MAPPING",
    "TransformationInfo",
    "TransformationRegistry",
    "TransformationTypes",

    # Mesh
    "BroadcastRecord",
    "MeshTransport",
]
