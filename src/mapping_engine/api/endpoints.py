"""FastAPI endpoints for the Mapping & Migration Engine."""

import json
import logging
import re
from contextlib import asynccontextmanager
from itertools import chain
from typing import Any, AsyncGenerator, Dict, Iterable, Iterator, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from ..config.settings import Settings
from ..engine import MappingEngine, build_engine
from ..lib.exceptions import MappingEngineError
from ..lib.logging_config import log_context
from ..services.schema_deploy import ExistingDatabaseTarget, NewDatabaseTarget
from .models import (
    AddEmptyMappingRequest,
    AddMappingRequest,
    AddMappingRuleRequest,
    AddStreamToStreamMappingRequest,
    AddStreamToTableMappingRequest,
    AddTableToStreamMappingRequest,
    AttachRuleRequest,
    CopyDataRequest,
    DeployCommitRequest,
    DeployCommitResponse,
    DeployTableRequest,
    ErrorResponse,
    FilterSpec,
    ModifyMappingRequest,
    ModifyMappingRuleRequest,
    RuleOrderRequest,
    TransformRequest,
    TransformSummaryResponse,
    ValidationResponse,
)

api_logger = logging.getLogger("mapping_engine.api")

WORKSPACE_PREFIX = "/api/v1/tenants/{tenant_id}/workspaces/{workspace}"
WORKSPACE_PATH = re.compile(r"^/api/v1/tenants/([^/]+)/workspaces/([^/]+)")

STATUS_CODES = {
    'not_found': 404,
    'invalid_argument': 400,
    'failed_precondition': 412,
    'already_exists': 409,
    'unavailable': 503,
    'unimplemented': 501,
    'internal': 500,
}

NDJSON = "application/x-ndjson"

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    412: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def sanitize_error_message(message: str) -> str:
    """
    Remove sensitive information from an error message.

    Credentials embedded in connection URLs are masked. Messages that
    mention secrets are replaced with a generic message and only the
    error type is logged server-side.

    Args:
        message: Error message produced by a service

    Returns:
        Safe error message for client
    """
    lowered = message.lower()
    sensitive_patterns = [
        'password', 'api_key', 'secret', 'token', 'credential',
        'bearer ', 'authorization', 'api-key'
    ]
    if any(pattern in lowered for pattern in sensitive_patterns):
        api_logger.error("error_with_sensitive_data", extra={"data": {"length": len(message)}})
        return "An internal error occurred while processing the request."

    message = re.sub(r"(\w+://)[^/\s:@]+:[^/\s@]+@", r"\1***:***@", message)
    if len(message) > 500:
        message = message[:500] + "..."
    return message


def error_body(error: MappingEngineError) -> Dict[str, Any]:
    return {
        'code': error.code,
        'message': sanitize_error_message(error.message),
        'details': {k: str(v) for k, v in error.details.items()},
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Build the engine on startup unless one was injected, close it on shutdown."""
    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        api_logger.info("Initializing mapping engine...")
        engine = build_engine()
        engine.db.create_all()
        app.state.engine = engine
        api_logger.info("Mapping engine ready.")

    yield

    if owns_engine:
        api_logger.info("Shutting down...")
        app.state.engine.close()
        app.state.engine = None


def get_engine(request: Request) -> MappingEngine:
    return request.app.state.engine


def ndjson_lines(items: Iterable[Dict[str, Any]]) -> Iterator[str]:
    """Encode items one per line; an error ends the stream with an error line."""
    try:
        for item in items:
            yield json.dumps(item, default=str) + "\n"
    except MappingEngineError as e:
        api_logger.error(f"Stream aborted [{e.code}]: {e.message}")
        yield json.dumps({'error': error_body(e)}) + "\n"


def create_app(engine: Optional[MappingEngine] = None) -> FastAPI:
    """
    Create the FastAPI application

    Args:
        engine: Pre-built engine; when omitted one is built at startup from Settings

    Returns:
        Configured application
    """
    app = FastAPI(
        title="Mapping & Migration Engine API",
        description="Mappings, rules and data movement between databases, streams and MCP resources",
        version=Settings.APP_VERSION,
        lifespan=lifespan
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"]
    )

    @app.middleware("http")
    async def bind_workspace_log_context(request: Request, call_next):
        match = WORKSPACE_PATH.match(request.url.path)
        if match is None:
            return await call_next(request)
        with log_context(tenant_id=match.group(1), workspace=match.group(2)):
            return await call_next(request)

    @app.exception_handler(MappingEngineError)
    async def handle_engine_error(request: Request, exc: MappingEngineError) -> JSONResponse:
        status = STATUS_CODES.get(exc.code, 500)
        if status >= 500:
            api_logger.error(f"{request.method} {request.url.path} failed [{exc.code}]: {exc.message}")
        return JSONResponse(status_code=status, content=error_body(exc))

    @app.get("/health")
    def health_check(engine: MappingEngine = Depends(get_engine)):
        """Health check endpoint."""
        return {
            "status": "healthy",
            "engine_loaded": engine is not None,
            "database": engine.db.get_connection_info() if engine is not None else None,
        }

    @app.get("/metrics")
    def metrics(engine: MappingEngine = Depends(get_engine)):
        return engine.metrics.to_dict()

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    @app.post(WORKSPACE_PREFIX + "/mappings", status_code=201, responses=ERROR_RESPONSES)
    def add_mapping(tenant_id: str, workspace: str, request: AddMappingRequest,
                    engine: MappingEngine = Depends(get_engine)):
        """
        Create a database, table or MCP mapping.

        Source and target accept ``database[.table]`` or ``redb://`` URIs;
        an ``mcp://`` target creates an MCP mapping.
        """
        return engine.mappings.add_mapping(
            tenant_id, workspace, request.name, request.scope, request.source, request.target,
            description=request.description, generate_rules=request.generate_rules
        )

    @app.post(WORKSPACE_PREFIX + "/mappings/empty", status_code=201, responses=ERROR_RESPONSES)
    def add_empty_mapping(tenant_id: str, workspace: str, request: AddEmptyMappingRequest,
                          engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.add_empty_mapping(tenant_id, workspace, request.name, request.description)

    @app.post(WORKSPACE_PREFIX + "/mappings/stream-to-table", status_code=201, responses=ERROR_RESPONSES)
    def add_stream_to_table_mapping(tenant_id: str, workspace: str, request: AddStreamToTableMappingRequest,
                                    engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.add_stream_to_table_mapping(
            tenant_id, workspace, request.name, request.source_integration, request.source_topic,
            request.target, description=request.description, filters=_filters(request.filters),
            generate_rules=request.generate_rules
        )

    @app.post(WORKSPACE_PREFIX + "/mappings/table-to-stream", status_code=201, responses=ERROR_RESPONSES)
    def add_table_to_stream_mapping(tenant_id: str, workspace: str, request: AddTableToStreamMappingRequest,
                                    engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.add_table_to_stream_mapping(
            tenant_id, workspace, request.name, request.source, request.target_integration,
            request.target_topic, description=request.description, filters=_filters(request.filters),
            generate_rules=request.generate_rules
        )

    @app.post(WORKSPACE_PREFIX + "/mappings/stream-to-stream", status_code=201, responses=ERROR_RESPONSES)
    def add_stream_to_stream_mapping(tenant_id: str, workspace: str, request: AddStreamToStreamMappingRequest,
                                     engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.add_stream_to_stream_mapping(
            tenant_id, workspace, request.name, request.source_integration, request.source_topic,
            request.target_integration, request.target_topic, description=request.description,
            filters=_filters(request.filters), generate_rules=request.generate_rules
        )

    @app.get(WORKSPACE_PREFIX + "/mappings")
    def list_mappings(tenant_id: str, workspace: str, engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.list_mappings(tenant_id, workspace)

    @app.get(WORKSPACE_PREFIX + "/mappings/{mapping_name}", responses=ERROR_RESPONSES)
    def show_mapping(tenant_id: str, workspace: str, mapping_name: str,
                     engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.show_mapping(tenant_id, workspace, mapping_name)

    @app.patch(WORKSPACE_PREFIX + "/mappings/{mapping_name}", responses=ERROR_RESPONSES)
    def modify_mapping(tenant_id: str, workspace: str, mapping_name: str, request: ModifyMappingRequest,
                       engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.modify_mapping(
            tenant_id, workspace, mapping_name,
            description=request.description, mapping_object=request.mapping_object
        )

    @app.delete(WORKSPACE_PREFIX + "/mappings/{mapping_name}", responses=ERROR_RESPONSES)
    def delete_mapping(tenant_id: str, workspace: str, mapping_name: str,
                       keep_rules: bool = Query(False, description="Keep rules no other mapping uses"),
                       engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.delete_mapping(tenant_id, workspace, mapping_name, keep_rules=keep_rules)

    @app.post(WORKSPACE_PREFIX + "/mappings/{mapping_name}/validate",
              response_model=ValidationResponse, responses=ERROR_RESPONSES)
    def validate_mapping(tenant_id: str, workspace: str, mapping_name: str,
                         engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.validate_mapping(tenant_id, workspace, mapping_name)

    @app.post(WORKSPACE_PREFIX + "/mappings/{mapping_name}/filters", status_code=201, responses=ERROR_RESPONSES)
    def add_mapping_filter(tenant_id: str, workspace: str, mapping_name: str, request: FilterSpec,
                           engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.add_mapping_filter(
            tenant_id, workspace, mapping_name,
            request.filter_type, request.filter_expression, request.filter_operator
        )

    @app.delete(WORKSPACE_PREFIX + "/mappings/{mapping_name}/filters/{filter_id}", responses=ERROR_RESPONSES)
    def delete_mapping_filter(tenant_id: str, workspace: str, mapping_name: str, filter_id: str,
                              engine: MappingEngine = Depends(get_engine)):
        engine.mappings.delete_mapping_filter(tenant_id, workspace, mapping_name, filter_id)
        return {'filter_id': filter_id, 'deleted': True}

    # ------------------------------------------------------------------
    # Rule attachment
    # ------------------------------------------------------------------

    @app.get(WORKSPACE_PREFIX + "/mappings/{mapping_name}/rules", responses=ERROR_RESPONSES)
    def list_attached_rules(tenant_id: str, workspace: str, mapping_name: str,
                            engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.list_mapping_rules(tenant_id, workspace, mapping_name)

    @app.post(WORKSPACE_PREFIX + "/mappings/{mapping_name}/rules", responses=ERROR_RESPONSES)
    def attach_mapping_rule(tenant_id: str, workspace: str, mapping_name: str, request: AttachRuleRequest,
                            engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.attach_mapping_rule(
            tenant_id, workspace, mapping_name, request.rule_name, request.order
        )

    @app.delete(WORKSPACE_PREFIX + "/mappings/{mapping_name}/rules/{rule_name}", responses=ERROR_RESPONSES)
    def detach_mapping_rule(tenant_id: str, workspace: str, mapping_name: str, rule_name: str,
                            engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.detach_mapping_rule(tenant_id, workspace, mapping_name, rule_name)

    @app.put(WORKSPACE_PREFIX + "/mappings/{mapping_name}/rules/{rule_name}/order", responses=ERROR_RESPONSES)
    def update_mapping_rule_order(tenant_id: str, workspace: str, mapping_name: str, rule_name: str,
                                  request: RuleOrderRequest, engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.update_mapping_rule_order(
            tenant_id, workspace, mapping_name, rule_name, request.order
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @app.post(WORKSPACE_PREFIX + "/rules", status_code=201, responses=ERROR_RESPONSES)
    def add_mapping_rule(tenant_id: str, workspace: str, request: AddMappingRuleRequest,
                         engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.add_mapping_rule(
            tenant_id, workspace, request.name,
            source_uris=request.source_uris,
            target_uris=request.target_uris,
            cardinality=request.cardinality,
            transformation_name=request.transformation_name,
            transformation_options=request.transformation_options,
            metadata=request.metadata,
            description=request.description,
            source_identifier=request.source_identifier,
            target_identifier=request.target_identifier,
        )

    @app.get(WORKSPACE_PREFIX + "/rules")
    def list_mapping_rules(tenant_id: str, workspace: str, engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.list_mapping_rules(tenant_id, workspace)

    @app.get(WORKSPACE_PREFIX + "/rules/{rule_name}", responses=ERROR_RESPONSES)
    def show_mapping_rule(tenant_id: str, workspace: str, rule_name: str,
                          engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.show_mapping_rule(tenant_id, workspace, rule_name)

    @app.patch(WORKSPACE_PREFIX + "/rules/{rule_name}", responses=ERROR_RESPONSES)
    def modify_mapping_rule(tenant_id: str, workspace: str, rule_name: str, request: ModifyMappingRuleRequest,
                            engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.modify_mapping_rule(
            tenant_id, workspace, rule_name, **request.model_dump(exclude_none=True)
        )

    @app.delete(WORKSPACE_PREFIX + "/rules/{rule_name}", responses=ERROR_RESPONSES)
    def delete_mapping_rule(tenant_id: str, workspace: str, rule_name: str,
                            engine: MappingEngine = Depends(get_engine)):
        return engine.mappings.delete_mapping_rule(tenant_id, workspace, rule_name)

    # ------------------------------------------------------------------
    # Data movement
    # ------------------------------------------------------------------

    @app.post(WORKSPACE_PREFIX + "/mappings/{mapping_name}/copy")
    def copy_mapping_data(tenant_id: str, workspace: str, mapping_name: str, request: CopyDataRequest,
                          engine: MappingEngine = Depends(get_engine)):
        """
        Copy every table pair of a mapping.

        Progress is streamed as newline-delimited JSON; failures appear as
        status messages inside the stream.
        """
        progress = engine.pipeline.copy_mapping_data(
            tenant_id, workspace, mapping_name,
            batch_size=request.batch_size,
            parallel_workers=request.parallel_workers,
            dry_run=request.dry_run,
        )
        return StreamingResponse(ndjson_lines(p.to_dict() for p in progress), media_type=NDJSON)

    @app.get("/api/v1/copy-operations/{operation_id}")
    def get_copy_status(operation_id: str, engine: MappingEngine = Depends(get_engine)):
        return engine.pipeline.get_copy_status(operation_id).to_dict()

    @app.post(WORKSPACE_PREFIX + "/mappings/{mapping_name}/transform",
              response_model=TransformSummaryResponse, responses={**ERROR_RESPONSES, 501: {"model": ErrorResponse}})
    def transform_data(tenant_id: str, workspace: str, mapping_name: str, request: TransformRequest,
                       engine: MappingEngine = Depends(get_engine)):
        return engine.pipeline.transform_data(tenant_id, workspace, mapping_name, request.mode).to_dict()

    @app.post(WORKSPACE_PREFIX + "/mappings/{mapping_name}/transform/stream",
              responses={**ERROR_RESPONSES, 501: {"model": ErrorResponse}})
    def transform_data_stream(tenant_id: str, workspace: str, mapping_name: str, request: TransformRequest,
                              engine: MappingEngine = Depends(get_engine)):
        summaries = engine.pipeline.transform_data_stream(
            tenant_id, workspace, mapping_name, request.mode, batch_size=request.batch_size
        )
        # Pull the first summary here so precondition failures get an HTTP status
        first = next(summaries)
        items = (s.to_dict() for s in chain([first], summaries))
        return StreamingResponse(ndjson_lines(items), media_type=NDJSON)

    # ------------------------------------------------------------------
    # Schema deploy
    # ------------------------------------------------------------------

    @app.post(WORKSPACE_PREFIX + "/deploy/table", status_code=201, responses=ERROR_RESPONSES)
    def add_table_mapping_with_deploy(tenant_id: str, workspace: str, request: DeployTableRequest,
                                      engine: MappingEngine = Depends(get_engine)):
        return engine.deployer.add_table_mapping_with_deploy(
            tenant_id, workspace, request.mapping_name,
            request.source_database, request.source_table,
            request.target_database, request.target_table,
            description=request.description,
            generate_rules=request.generate_rules,
            wipe=request.wipe,
        )

    @app.post(WORKSPACE_PREFIX + "/deploy/commit", response_model=DeployCommitResponse, responses=ERROR_RESPONSES)
    def deploy_commit_schema(tenant_id: str, workspace: str, request: DeployCommitRequest,
                             engine: MappingEngine = Depends(get_engine)):
        if request.new_database:
            target = NewDatabaseTarget(
                instance=request.instance,
                database_name=request.target_database,
                description=request.description,
                wipe=request.wipe,
                merge=request.merge,
            )
        else:
            target = ExistingDatabaseTarget(
                database_name=request.target_database,
                wipe=request.wipe,
                merge=request.merge,
            )
        result = engine.deployer.deploy_commit_schema(
            tenant_id, workspace, request.repo, request.branch, request.commit, target
        )
        return result.to_dict()

    return app


def _filters(filters: List[FilterSpec]) -> List[Dict[str, Any]]:
    return [f.model_dump() for f in filters]


app = create_app()
