"""
Engine Assembly

Wires the store, collaborator clients and services together. The HTTP
and CLI layers both work against a MappingEngine instance.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .clients import (
    HttpExecutionEngine,
    HttpMeshTransport,
    HttpTransformationRegistry,
    HttpUnifiedModelClient,
)
from .config.settings import Settings
from .contracts import ExecutionEngine, SchemaConverter, SchemaMatcher, TransformationRegistry
from .contracts.mesh_transport import MeshTransport
from .lib.db_manager import DatabaseManager
from .lib.metrics import EngineMetrics
from .services.broadcast import MeshBroadcaster
from .services.mapping_service import MappingService
from .services.migration_pipeline import MigrationPipeline
from .services.schema_deploy import SchemaDeployer

logger = logging.getLogger(__name__)


@dataclass
class MappingEngine:
    db: DatabaseManager
    metrics: EngineMetrics
    broadcaster: MeshBroadcaster
    mappings: MappingService
    pipeline: MigrationPipeline
    deployer: SchemaDeployer

    def close(self) -> None:
        self.broadcaster.flush(timeout=Settings.BROADCAST_TIMEOUT_SECONDS)
        self.db.close()


def build_engine(
    db_manager: Optional[DatabaseManager] = None,
    execution_engine: Optional[ExecutionEngine] = None,
    matcher: Optional[SchemaMatcher] = None,
    converter: Optional[SchemaConverter] = None,
    registry: Optional[TransformationRegistry] = None,
    mesh: Optional[MeshTransport] = None
) -> MappingEngine:
    """
    Build a MappingEngine

    Collaborators not passed in are HTTP clients pointed at the URLs in
    Settings.
    """
    db_manager = db_manager or DatabaseManager()
    metrics = EngineMetrics()

    if matcher is None or converter is None:
        unified = HttpUnifiedModelClient(Settings.UNIFIED_MODEL_SERVICE_URL)
        matcher = matcher or unified
        converter = converter or unified
    execution_engine = execution_engine or HttpExecutionEngine(Settings.ANCHOR_SERVICE_URL)
    registry = registry or HttpTransformationRegistry(Settings.TRANSFORMATION_SERVICE_URL)
    mesh = mesh or HttpMeshTransport(Settings.MESH_SERVICE_URL, timeout=Settings.BROADCAST_TIMEOUT_SECONDS)

    broadcaster = MeshBroadcaster(mesh, timeout=Settings.BROADCAST_TIMEOUT_SECONDS)
    mappings = MappingService(
        db_manager,
        matcher=matcher,
        registry=registry,
        broadcaster=broadcaster,
        metrics=metrics,
    )
    pipeline = MigrationPipeline(db_manager, execution_engine, registry=registry, metrics=metrics)
    deployer = SchemaDeployer(db_manager, execution_engine, converter, mappings, metrics=metrics)

    logger.info(f"Mapping engine assembled (mesh broadcast: {broadcaster.enabled()})")
    return MappingEngine(
        db=db_manager,
        metrics=metrics,
        broadcaster=broadcaster,
        mappings=mappings,
        pipeline=pipeline,
        deployer=deployer,
    )
