"""
Schema Conversion & Deployment

Deploys a single table (with exactly the user-defined types it uses) or a
whole committed schema into a target database, converting between engine
types when source and target differ.

Deploy-then-map flow:
    schema located -> existence-checked -> type-filtered -> [converted]
    -> deployed -> discovery-refreshed (best-effort) -> mapping created
"""

import copy
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..config.settings import Settings
from ..contracts.execution_engine import DeployOptions, ExecutionEngine
from ..contracts.schema_matcher import SchemaConverter
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import (
    FailedPreconditionError,
    InternalError,
    MappingEngineError,
    NotFoundError,
    UnavailableError,
)
from ..lib.metrics import EngineMetrics
from ..models import ConnectionStatus, SchemaBranch, SchemaCommit
from .mapping_service import MappingService
from .mapping_store import MappingStore

logger = logging.getLogger(__name__)


@dataclass
class ExistingDatabaseTarget:
    database_name: str
    wipe: bool = False
    merge: bool = True


@dataclass
class NewDatabaseTarget:
    instance: str
    database_name: str
    description: str = ""
    wipe: bool = False
    merge: bool = False


DeployTarget = Union[ExistingDatabaseTarget, NewDatabaseTarget]


@dataclass
class DeployResult:
    message: str
    target_database_id: str
    repo_id: Optional[str] = None
    branch_id: Optional[str] = None
    commit_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'target_database_id': self.target_database_id,
            'repo_id': self.repo_id,
            'branch_id': self.branch_id,
            'commit_id': self.commit_id,
            'warnings': list(self.warnings),
        }


def _tables(schema_model: Dict[str, Any]) -> Dict[str, Any]:
    tables = schema_model.get("tables") or {}
    if isinstance(tables, list):
        return {t.get("name"): t for t in tables}
    return tables


def _columns(table: Dict[str, Any]) -> List[Dict[str, Any]]:
    columns = table.get("columns") or {}
    if isinstance(columns, dict):
        return list(columns.values())
    return list(columns)


def references_type(data_type: Optional[str], type_name: str) -> bool:
    """True if a column type names ``type_name`` directly or as ``ns.type``"""
    if not data_type:
        return False
    base = data_type.strip().lower()
    if base.endswith("[]"):
        base = base[:-2]
    candidate = type_name.lower()
    return (
        base == candidate
        or base.endswith("." + candidate)
        or candidate.endswith("." + base)
    )


def extract_table_with_types(schema_model: Dict[str, Any], table_name: str) -> Tuple[Dict[str, Any], List[str]]:
    """
    Build a schema model holding one table and only the types it references

    Returns:
        Tuple of (schema model, referenced type names)

    Raises:
        NotFoundError: If the table is not in the model
    """
    table = _tables(schema_model).get(table_name)
    if table is None:
        raise NotFoundError(f"table '{table_name}' not found in source schema", {'table': table_name})

    registry = schema_model.get("types") or {}
    used: Dict[str, Any] = {}
    for column in _columns(table):
        for key in ("data_type", "type_name", "udt_name"):
            data_type = column.get(key)
            for type_name, definition in registry.items():
                if type_name not in used and references_type(data_type, type_name):
                    used[type_name] = definition

    extracted = {
        "tables": {table_name: copy.deepcopy(table)},
        "types": copy.deepcopy(used),
    }
    if schema_model.get("schemas"):
        extracted["schemas"] = copy.deepcopy(schema_model["schemas"])
    return extracted, sorted(used)


def rename_table(schema_model: Dict[str, Any], old_name: str, new_name: str) -> Dict[str, Any]:
    tables = _tables(schema_model)
    if old_name not in tables:
        raise InternalError(
            f"table '{old_name}' not found in schema model; cannot rename to '{new_name}'",
            {'table': old_name, 'tables': sorted(tables)}
        )
    table = dict(tables.pop(old_name))
    table["name"] = new_name
    tables[new_name] = table
    schema_model["tables"] = tables
    return schema_model


class SchemaDeployer:
    """Deploys tables and committed schemas into target databases"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        engine: ExecutionEngine,
        converter: Optional[SchemaConverter],
        mapping_service: MappingService,
        metrics: Optional[EngineMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.db = db_manager
        self.engine = engine
        self.converter = converter
        self.mapping_service = mapping_service
        self.metrics = metrics or EngineMetrics()
        self._sleep = sleep
        self._clock = clock

    def convert_if_needed(
        self,
        schema_model: Dict[str, Any],
        source_type: str,
        target_type: str,
        warnings: List[str]
    ) -> Dict[str, Any]:
        """Run the schema converter when engine types differ and reparse its output"""
        if (source_type or "").lower() == (target_type or "").lower():
            return schema_model
        if self.converter is None:
            raise UnavailableError(
                f"schema converter is not configured; cannot convert {source_type} to {target_type}"
            )

        result = self.converter.convert(json.dumps(schema_model), source_type, target_type)
        warnings.extend(result.warnings)
        try:
            converted = json.loads(result.converted_schema)
        except (TypeError, ValueError) as e:
            raise InternalError(
                f"failed to parse converted schema ({source_type} -> {target_type}): {e}",
                {'source_type': source_type, 'target_type': target_type}
            )
        logger.info(f"Converted schema from {source_type} to {target_type}")
        return converted

    # ------------------------------------------------------------------
    # Table deploy
    # ------------------------------------------------------------------

    def add_table_mapping_with_deploy(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        source_database: str,
        source_table: str,
        target_database: str,
        target_table: str = "",
        description: str = "",
        generate_rules: bool = True,
        wipe: bool = False,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Deploy one table into the target database, then map it

        Raises:
            FailedPreconditionError: Source schema not discovered, target not
                connected, or the table already exists at the target
            NotFoundError: Table not in the source schema
            InternalError: Deploy succeeded but mapping creation failed
        """
        target_table = target_table or source_table

        with self.metrics.track_operation("add_table_mapping_with_deploy"):
            with self.db.get_session() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                source_db = store.get_database_by_name(source_database)
                target_db = store.get_database_by_name(target_database)
                if not source_db.schema_structure:
                    raise FailedPreconditionError(
                        f"source database '{source_database}' has no discovered schema",
                        {'database': source_database}
                    )
                if not target_db.is_connected:
                    raise FailedPreconditionError(
                        f"target database '{target_database}' is not connected",
                        {'database': target_database}
                    )
                source_model = copy.deepcopy(source_db.schema_structure)
                source_type, target_type = source_db.database_type, target_db.database_type
                target_id = str(target_db.id)

            warnings: List[str] = []
            extracted, type_names = extract_table_with_types(source_model, source_table)

            live_schema = self.engine.get_database_schema(tenant_id, workspace_id, target_id) or {}
            if target_table in _tables(live_schema):
                raise FailedPreconditionError(
                    f"table '{target_table}' already exists in target database '{target_database}'",
                    {'database': target_database, 'table': target_table}
                )

            if target_table != source_table:
                extracted = rename_table(extracted, source_table, target_table)
            extracted = self.convert_if_needed(extracted, source_type, target_type, warnings)

            self.engine.deploy_schema(
                tenant_id, workspace_id, target_id, extracted, DeployOptions(wipe=wipe, merge=not wipe)
            )
            logger.info(
                f"Deployed {source_database}.{source_table} to {target_database}.{target_table} "
                f"with {len(type_names)} types"
            )

            try:
                self.engine.refresh_discovery(tenant_id, workspace_id, target_id)
            except MappingEngineError as e:
                message = f"Table deployed but discovery refresh failed: {e.message}"
                logger.warning(message)
                warnings.append(message)

            try:
                created = self.mapping_service.add_table_mapping(
                    tenant_id, workspace_id, mapping_name,
                    source_database, source_table, target_database, target_table,
                    description=description, generate_rules=generate_rules, owner_id=owner_id
                )
            except MappingEngineError as e:
                raise InternalError(
                    f"table deployed successfully but failed to create mapping: {e.message} "
                    f"(table remains in target database)",
                    {'database': target_database, 'table': target_table}
                )

            warnings.extend(created['warnings'])
            return {
                'mapping': created['mapping'],
                'rules_created': created['rules_created'],
                'deployed_table': target_table,
                'deployed_types': type_names,
                'warnings': warnings,
            }

    # ------------------------------------------------------------------
    # Commit deploy
    # ------------------------------------------------------------------

    @staticmethod
    def _select_commit(branch: SchemaBranch, commit_ref: str) -> SchemaCommit:
        if not branch.commits:
            raise NotFoundError(f"branch '{branch.name}' has no commits", {'branch': branch.name})
        if not commit_ref or commit_ref.upper() == "HEAD":
            for commit in branch.commits:
                if commit.is_head:
                    return commit
            return branch.commits[0]
        for commit in branch.commits:
            if commit.code == commit_ref or str(commit.id) == commit_ref:
                return commit
        raise NotFoundError(
            f"commit '{commit_ref}' not found on branch '{branch.name}'",
            {'branch': branch.name, 'commit': commit_ref}
        )

    def deploy_commit_schema(
        self,
        tenant_id: str,
        workspace_id: str,
        repo_name: str,
        branch_name: str,
        commit_ref: str,
        target: DeployTarget
    ) -> DeployResult:
        """
        Deploy a committed schema into an existing or a newly created database

        Raises:
            NotFoundError: Repo, branch, commit, instance or database absent,
                or the commit carries no schema
            FailedPreconditionError: Target or instance not connected, or the
                source engine type cannot be determined
        """
        with self.metrics.track_operation("deploy_commit_schema"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                repo = store.get_repo(repo_name)
                branch = store.get_branch(repo, branch_name)
                commit = self._select_commit(branch, commit_ref)
                if not commit.schema_structure:
                    raise NotFoundError(f"commit '{commit.code}' has no schema", {'commit': commit.code})

                source_type = commit.schema_type
                if not source_type and branch.connected_to_database:
                    try:
                        source_type = store.get_database(branch.connected_database_id).database_type
                    except NotFoundError:
                        source_type = None
                if not source_type:
                    raise FailedPreconditionError(
                        "unable to determine source database type from commit",
                        {'commit': commit.code}
                    )
                schema = copy.deepcopy(commit.schema_structure)
                commit_code = commit.code

                if isinstance(target, NewDatabaseTarget):
                    instance = store.get_instance(target.instance)
                    if not instance.is_connected:
                        raise FailedPreconditionError(
                            f"instance '{instance.name}' is not connected",
                            {'instance': instance.name}
                        )
                    database = store.create_database_record(
                        name=target.database_name,
                        database_type=instance.database_type,
                        instance=instance,
                        description=target.description or f"Deployed from commit: {commit_code}",
                    )
                    instance_id = str(instance.id)
                else:
                    database = store.get_database_by_name(target.database_name)
                    if not database.is_connected:
                        raise FailedPreconditionError(
                            f"target database '{database.name}' is not connected",
                            {'database': database.name}
                        )
                    instance_id = None
                target_id = str(database.id)
                target_type = database.database_type

            if isinstance(target, NewDatabaseTarget):
                self.engine.create_database(tenant_id, workspace_id, instance_id, target.database_name)
                self.engine.connect_database(tenant_id, workspace_id, target_id)
                self._mark_connected(tenant_id, workspace_id, target_id)
                logger.info(f"Created database {target.database_name} on instance {target.instance}")

            warnings: List[str] = []
            schema = self.convert_if_needed(schema, source_type, target_type, warnings)
            self.engine.deploy_schema(
                tenant_id, workspace_id, target_id, schema,
                DeployOptions(wipe=target.wipe, merge=target.merge)
            )
            logger.info(f"Deployed commit {commit_code} of {repo_name}/{branch_name} to database {target_id}")

            result = DeployResult(
                message="Commit schema deployed successfully",
                target_database_id=target_id,
                warnings=warnings,
            )
            try:
                result.repo_id, result.branch_id, result.commit_id = self.wait_for_discovery(
                    tenant_id, workspace_id, target_id
                )
            except MappingEngineError as e:
                message = f"Schema deployed but anchor discovery failed: {e.message}"
                logger.warning(message)
                result.warnings.append(message)
            return result

    def _mark_connected(self, tenant_id: str, workspace_id: str, database_id: str) -> None:
        with self.db.transaction() as session:
            store = MappingStore(session, tenant_id, workspace_id)
            store.get_database(database_id).status = ConnectionStatus.CONNECTED

    def wait_for_discovery(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None
    ) -> Tuple[str, str, str]:
        """
        Poll until discovery has recorded a repo, branch and commit for a database

        Raises:
            UnavailableError: If nothing appears within the timeout
        """
        timeout = Settings.DISCOVERY_WAIT_TIMEOUT_SECONDS if timeout is None else timeout
        interval = Settings.DISCOVERY_POLL_INTERVAL_SECONDS if interval is None else interval
        deadline = self._clock() + timeout

        while True:
            with self.db.get_session() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                repo = store.find_repo_for_database(database_id)
                if repo is not None:
                    for branch in repo.branches:
                        if branch.commits:
                            return str(repo.id), str(branch.id), str(branch.commits[0].id)

            if self._clock() >= deadline:
                raise UnavailableError(
                    f"timed out after {timeout:g}s waiting for schema discovery of database {database_id}",
                    {'database_id': database_id}
                )
            self._sleep(interval)
