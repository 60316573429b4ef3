"""
Mapping Service

Engine operations over mappings, rules, attachments and filters. Each
operation runs in its own transaction, is counted in the engine metrics
and, once committed, is broadcast to mesh peers.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..contracts.mesh_transport import BroadcastRecord
from ..contracts.schema_matcher import MatchOptions, SchemaMatcher
from ..contracts.transformation_registry import DIRECT_MAPPING, TransformationRegistry
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import (
    FailedPreconditionError,
    InvalidArgumentError,
    MappingEngineError,
    NotFoundError,
    UnavailableError,
)
from ..lib.metrics import EngineMetrics
from ..models import (
    Cardinality,
    ManagedDatabase,
    Mapping,
    MappingProvenance,
    MappingRule,
    MappingScope,
    MatchType,
    ResourceContainer,
    ResourceItem,
    ResourceKind,
    RuleMetadata,
)
from .broadcast import MeshBroadcaster
from .cardinality import (
    infer_cardinality,
    validate_cardinality,
    validate_transformation_cardinality,
    validate_transformation_shape,
)
from .mapping_store import MappingStore
from .mapping_validator import MappingValidator
from .resource_address import (
    Protocol,
    build_database_uri,
    build_mapping_type,
    build_mcp_virtual_uri,
    build_stream_uri,
    build_table_uri,
    parse_resource_uri,
    parse_source_target,
)
from .schema_match import RuleGenerationResult, SchemaMatchOrchestrator, unique_rule_name

logger = logging.getLogger(__name__)

STREAM_KIND = "stream"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def rule_view(rule: MappingRule) -> Dict[str, Any]:
    return rule.to_dict()


def mapping_view(mapping: Mapping, include_rules: bool = False) -> Dict[str, Any]:
    data = mapping.to_dict()
    if include_rules:
        data['rules'] = [
            dict(rule_view(link.rule), rule_order=link.rule_order)
            for link in sorted(mapping.rule_links, key=lambda lk: lk.rule_order)
        ]
        data['filters'] = [f.to_dict() for f in sorted(mapping.filters, key=lambda f: f.filter_order)]
    return data


class MappingService:
    """Mapping and rule operations for every tenant and workspace"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        matcher: Optional[SchemaMatcher] = None,
        registry: Optional[TransformationRegistry] = None,
        broadcaster: Optional[MeshBroadcaster] = None,
        metrics: Optional[EngineMetrics] = None,
        match_options: Optional[MatchOptions] = None
    ):
        self.db = db_manager
        self.registry = registry
        self.broadcaster = broadcaster
        self.metrics = metrics or EngineMetrics()
        self.orchestrator = SchemaMatchOrchestrator(matcher, match_options)
        self.validator = MappingValidator()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _broadcast(self, steps: List[BroadcastRecord]) -> None:
        if self.broadcaster is not None and steps:
            self.broadcaster.broadcast_chain(steps)

    @staticmethod
    def _mapping_record(view: Dict[str, Any], operation: str) -> BroadcastRecord:
        record = {k: v for k, v in view.items() if k not in ('rules', 'filters')}
        return BroadcastRecord("mappings", operation, record, {'mapping_id': view['id']})

    @staticmethod
    def _rule_record(view: Dict[str, Any], operation: str) -> BroadcastRecord:
        return BroadcastRecord("mapping_rules", operation, view, {'rule_id': view['id']})

    def _created(self, mapping: Mapping, generation: Optional[RuleGenerationResult] = None,
                 warnings: Optional[List[str]] = None) -> Tuple[Dict[str, Any], List[BroadcastRecord]]:
        view = mapping_view(mapping, include_rules=True)
        all_warnings = list(warnings or [])
        rules_created = 0
        if generation is not None:
            all_warnings.extend(generation.warnings)
            rules_created = generation.rules_created
        steps = [self._mapping_record(view, "insert")]
        steps.extend(self._rule_record(rule, "insert") for rule in view['rules'])
        result = {'mapping': view, 'rules_created': rules_created, 'warnings': all_warnings}
        return result, steps

    @staticmethod
    def _get_rule(store: MappingStore, reference: str) -> MappingRule:
        rule = store.find_rule(reference)
        if rule is not None:
            return rule
        return store.get_rule(reference)

    def _check_transformation(
        self,
        transformation_name: str,
        cardinality: Cardinality,
        source_count: int,
        target_count: int
    ) -> None:
        if not transformation_name or transformation_name == DIRECT_MAPPING:
            return
        if self.registry is None:
            raise UnavailableError(
                f"transformation registry is not configured; cannot resolve '{transformation_name}'"
            )
        info = self.registry.get_transformation(transformation_name)
        if info is None:
            raise NotFoundError(
                f"transformation '{transformation_name}' not found",
                {'transformation_name': transformation_name}
            )
        if not info.is_valid:
            raise FailedPreconditionError(
                f"transformation '{transformation_name}' is not valid",
                {'transformation_name': transformation_name}
            )
        validate_transformation_cardinality(info.transformation_type, cardinality)
        validate_transformation_shape(info.transformation_type, source_count, target_count)

    @staticmethod
    def _require_items(store: MappingStore, uris: List[str]) -> None:
        for uri in uris:
            address = parse_resource_uri(uri)
            if address.protocol is Protocol.MCP_VIRTUAL:
                continue
            if store.resolve_item(uri) is None:
                raise NotFoundError(f"resource item '{uri}' not found", {'resource_uri': uri})

    @staticmethod
    def _owning_table_uri(uris: List[str]) -> Optional[str]:
        for uri in uris:
            try:
                address = parse_resource_uri(uri)
            except InvalidArgumentError:
                continue
            if address.protocol in (Protocol.REDB, Protocol.LEGACY_DB) and address.table:
                return address.table_uri
        return None

    # ------------------------------------------------------------------
    # Mapping creation
    # ------------------------------------------------------------------

    def add_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        scope: str,
        source: str,
        target: str,
        description: str = "",
        generate_rules: bool = False,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a mapping, routing on scope and target address

        An mcp:// target always creates an MCP mapping. Otherwise the
        scope picks database-to-database or table-to-table.
        """
        try:
            scope = MappingScope(scope)
        except ValueError:
            raise InvalidArgumentError(
                f"unsupported mapping scope '{scope}': expected database or table",
                {'scope': str(scope)}
            )

        if target.startswith("mcp://"):
            return self.add_mcp_mapping(tenant_id, workspace_id, name, source, target, description, owner_id)

        with self.metrics.track_operation("add_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                source_db_name, source_table = parse_source_target(source, store)
                target_db_name, target_table = parse_source_target(target, store)
                source_db = store.get_database_by_name(source_db_name)
                target_db = store.get_database_by_name(target_db_name)

                if scope is MappingScope.TABLE:
                    if not source_table or not target_table:
                        raise InvalidArgumentError(
                            "table scope requires both source and target tables",
                            {'source': source, 'target': target}
                        )
                    mapping, generation = self._create_table_mapping(
                        store, name, description, source_db, source_table,
                        target_db, target_table, generate_rules, owner_id
                    )
                else:
                    mapping, generation = self._create_database_mapping(
                        store, name, description, source_db, target_db, generate_rules, owner_id
                    )
                result, steps = self._created(mapping, generation)

        self._broadcast(steps)
        return result

    def add_empty_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        description: str = "",
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("add_empty_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.create_mapping(
                    name=name,
                    description=description,
                    mapping_type="undefined",
                    owner_id=owner_id,
                )
                result, steps = self._created(mapping)

        self._broadcast(steps)
        return result

    def add_database_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        source_database: str,
        target_database: str,
        description: str = "",
        generate_rules: bool = True,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("add_database_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping, generation = self._create_database_mapping(
                    store, name, description,
                    store.get_database_by_name(source_database),
                    store.get_database_by_name(target_database),
                    generate_rules, owner_id
                )
                result, steps = self._created(mapping, generation)

        self._broadcast(steps)
        return result

    def add_table_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        source_database: str,
        source_table: str,
        target_database: str,
        target_table: str,
        description: str = "",
        generate_rules: bool = True,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("add_table_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping, generation = self._create_table_mapping(
                    store, name, description,
                    store.get_database_by_name(source_database), source_table,
                    store.get_database_by_name(target_database), target_table,
                    generate_rules, owner_id
                )
                result, steps = self._created(mapping, generation)

        self._broadcast(steps)
        return result

    def _create_database_mapping(
        self,
        store: MappingStore,
        name: str,
        description: str,
        source_db: ManagedDatabase,
        target_db: ManagedDatabase,
        generate_rules: bool,
        owner_id: Optional[str]
    ) -> Tuple[Mapping, Optional[RuleGenerationResult]]:
        provenance = MappingProvenance(
            source_database_name=source_db.name,
            source_database_id=str(source_db.id),
            target_database_name=target_db.name,
            target_database_id=str(target_db.id),
        )
        mapping = store.create_mapping(
            name=name,
            description=description or f"Mapping from {source_db.name} to {target_db.name}",
            mapping_type=build_mapping_type(ResourceKind.DATABASE, ResourceKind.DATABASE),
            source_type=ResourceKind.DATABASE,
            target_type=ResourceKind.DATABASE,
            source_identifier=build_database_uri(str(source_db.id)),
            target_identifier=build_database_uri(str(target_db.id)),
            mapping_object=provenance.to_dict(),
            owner_id=owner_id,
        )
        generation = None
        if generate_rules:
            generation = self.orchestrator.generate_rules(store, mapping, source_db, target_db)
        return mapping, generation

    def _create_table_mapping(
        self,
        store: MappingStore,
        name: str,
        description: str,
        source_db: ManagedDatabase,
        source_table: str,
        target_db: ManagedDatabase,
        target_table: str,
        generate_rules: bool,
        owner_id: Optional[str]
    ) -> Tuple[Mapping, Optional[RuleGenerationResult]]:
        provenance = MappingProvenance(
            source_database_name=source_db.name,
            source_database_id=str(source_db.id),
            source_table_name=source_table,
            target_database_name=target_db.name,
            target_database_id=str(target_db.id),
            target_table_name=target_table,
        )
        mapping = store.create_mapping(
            name=name,
            description=description or (
                f"Mapping from {source_db.name}.{source_table} to {target_db.name}.{target_table}"
            ),
            mapping_type=build_mapping_type(ResourceKind.TABLE, ResourceKind.TABLE),
            source_type=ResourceKind.TABLE,
            target_type=ResourceKind.TABLE,
            source_identifier=build_table_uri(str(source_db.id), source_table),
            target_identifier=build_table_uri(str(target_db.id), target_table),
            mapping_object=provenance.to_dict(),
            owner_id=owner_id,
        )
        generation = None
        if generate_rules:
            generation = self.orchestrator.generate_rules(
                store, mapping, source_db, target_db,
                source_table=source_table, target_table=target_table
            )
        return mapping, generation

    def add_mcp_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        source: str,
        target: str,
        description: str = "",
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Map a table onto an MCP resource

        One rule is created per source column, each targeting a virtual
        column of the resource. A database-level source creates the
        mapping without rules.

        Raises:
            FailedPreconditionError: If a table source yields no rules
        """
        resource_name = parse_resource_uri(target).resource_name

        with self.metrics.track_operation("add_mcp_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                source_db_name, source_table = parse_source_target(source, store)
                source_db = store.get_database_by_name(source_db_name)

                warnings = []
                if source_table:
                    source_identifier = build_table_uri(str(source_db.id), source_table)
                    source_kind = ResourceKind.TABLE
                else:
                    source_identifier = build_database_uri(str(source_db.id))
                    source_kind = ResourceKind.DATABASE

                provenance = MappingProvenance(
                    source_database_name=source_db.name,
                    source_database_id=str(source_db.id),
                    source_table_name=source_table or None,
                    target_mcp_resource=resource_name,
                )
                mapping = store.create_mapping(
                    name=name,
                    description=description or f"Mapping from {source_db.name} to MCP resource {resource_name}",
                    mapping_type=build_mapping_type(source_kind, ResourceKind.MCP_RESOURCE),
                    source_type=source_kind,
                    target_type=ResourceKind.MCP_RESOURCE,
                    source_identifier=source_identifier,
                    target_identifier=target,
                    mapping_object=provenance.to_dict(),
                    owner_id=owner_id,
                )

                generation = RuleGenerationResult()
                if source_kind is ResourceKind.DATABASE:
                    message = (
                        f"Database-level MCP mapping '{name}' created without rules; "
                        f"map individual tables to generate column rules"
                    )
                    logger.warning(message)
                    warnings.append(message)
                else:
                    self._generate_mcp_rules(store, mapping, source_db, source_table, resource_name, target, generation)
                    if generation.rules_created == 0:
                        raise FailedPreconditionError(
                            f"no mapping rules could be created for {source_db.name}.{source_table}; "
                            f"the table has no discovered columns",
                            {'source': source, 'target': target}
                        )

                result, steps = self._created(mapping, generation, warnings)

        self._broadcast(steps)
        return result

    def _generate_mcp_rules(
        self,
        store: MappingStore,
        mapping: Mapping,
        source_db: ManagedDatabase,
        source_table: str,
        resource_name: str,
        target_uri: str,
        generation: RuleGenerationResult
    ) -> None:
        table_uri = build_table_uri(str(source_db.id), source_table)
        container = store.get_container_by_uri(table_uri)
        if container is None:
            return

        generated_at = _utc_timestamp()
        virtual_table = f"mcp_virtual_{mapping.name}"
        for item in store.items_for_container(container):
            metadata = RuleMetadata(
                match_type=MatchType.AUTO_GENERATED_MCP,
                source_table=source_table,
                source_column=item.item_name,
                source_database_id=str(source_db.id),
                source_database_name=source_db.name,
                source_resource_uri=table_uri,
                target_resource_uri=target_uri,
                column_data_type=item.data_type,
                column_nullable=item.is_nullable,
                is_primary_key=item.is_primary_key,
                generated_at=generated_at,
            )
            base_name = f"{source_table}_{item.item_name}_mcp_{resource_name}"
            try:
                rule = store.create_rule(
                    name=unique_rule_name(store, base_name),
                    cardinality=Cardinality.ONE_TO_ONE,
                    source_uris=[item.resource_uri],
                    target_uris=[build_mcp_virtual_uri(mapping.name, virtual_table, item.item_name)],
                    description=f"Expose {source_db.name}.{source_table}.{item.item_name} via MCP resource {resource_name}",
                    transformation_name=DIRECT_MAPPING,
                    rule_metadata=metadata.to_dict(),
                )
                store.attach_rule(mapping, rule)
            except MappingEngineError as e:
                message = f"Failed to create rule {base_name}: {e.message}"
                logger.warning(message)
                generation.warnings.append(message)
                continue
            generation.rules_created += 1
            generation.rule_names.append(rule.name)

    # ------------------------------------------------------------------
    # Stream mappings
    # ------------------------------------------------------------------

    def add_stream_to_table_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        source_integration: str,
        source_topic: str,
        target: str,
        description: str = "",
        filters: Optional[List[Dict[str, Any]]] = None,
        generate_rules: bool = True,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("add_stream_to_table_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                source_container = store.get_stream_container(source_integration, source_topic)
                target_db, target_table, target_container = self._table_endpoint(store, target)

                provenance = MappingProvenance(
                    source_integration_name=source_container.integration_name or source_integration,
                    source_integration_id=source_container.integration_id,
                    source_topic_name=source_topic,
                    target_database_name=target_db.name,
                    target_database_id=str(target_db.id),
                    target_table_name=target_table,
                )
                mapping = store.create_mapping(
                    name=name,
                    description=description or f"Stream {source_integration}/{source_topic} to {target_db.name}.{target_table}",
                    mapping_type=build_mapping_type(ResourceKind.STREAM, ResourceKind.TABLE),
                    source_type=ResourceKind.STREAM,
                    target_type=ResourceKind.TABLE,
                    source_identifier=build_stream_uri(workspace_id, STREAM_KIND, source_integration, source_topic),
                    target_identifier=build_table_uri(str(target_db.id), target_table),
                    mapping_object=provenance.to_dict(),
                    owner_id=owner_id,
                    source_container_id=source_container.id,
                    target_container_id=target_container.id if target_container is not None else None,
                )
                result, steps = self._finish_stream_mapping(
                    store, mapping, source_container, target_container, filters, generate_rules
                )

        self._broadcast(steps)
        return result

    def add_table_to_stream_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        source: str,
        target_integration: str,
        target_topic: str,
        description: str = "",
        filters: Optional[List[Dict[str, Any]]] = None,
        generate_rules: bool = True,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("add_table_to_stream_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                source_db, source_table, source_container = self._table_endpoint(store, source)
                target_container = store.get_stream_container(target_integration, target_topic)

                provenance = MappingProvenance(
                    source_database_name=source_db.name,
                    source_database_id=str(source_db.id),
                    source_table_name=source_table,
                    target_integration_name=target_container.integration_name or target_integration,
                    target_integration_id=target_container.integration_id,
                    target_topic_name=target_topic,
                )
                mapping = store.create_mapping(
                    name=name,
                    description=description or f"{source_db.name}.{source_table} to stream {target_integration}/{target_topic}",
                    mapping_type=build_mapping_type(ResourceKind.TABLE, ResourceKind.STREAM),
                    source_type=ResourceKind.TABLE,
                    target_type=ResourceKind.STREAM,
                    source_identifier=build_table_uri(str(source_db.id), source_table),
                    target_identifier=build_stream_uri(workspace_id, STREAM_KIND, target_integration, target_topic),
                    mapping_object=provenance.to_dict(),
                    owner_id=owner_id,
                    source_container_id=source_container.id if source_container is not None else None,
                    target_container_id=target_container.id,
                )
                result, steps = self._finish_stream_mapping(
                    store, mapping, source_container, target_container, filters, generate_rules
                )

        self._broadcast(steps)
        return result

    def add_stream_to_stream_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        source_integration: str,
        source_topic: str,
        target_integration: str,
        target_topic: str,
        description: str = "",
        filters: Optional[List[Dict[str, Any]]] = None,
        generate_rules: bool = True,
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("add_stream_to_stream_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                source_container = store.get_stream_container(source_integration, source_topic)
                target_container = store.get_stream_container(target_integration, target_topic)

                provenance = MappingProvenance(
                    source_integration_name=source_container.integration_name or source_integration,
                    source_integration_id=source_container.integration_id,
                    source_topic_name=source_topic,
                    target_integration_name=target_container.integration_name or target_integration,
                    target_integration_id=target_container.integration_id,
                    target_topic_name=target_topic,
                )
                mapping = store.create_mapping(
                    name=name,
                    description=description or (
                        f"Stream {source_integration}/{source_topic} to stream {target_integration}/{target_topic}"
                    ),
                    mapping_type=build_mapping_type(ResourceKind.STREAM, ResourceKind.STREAM),
                    source_type=ResourceKind.STREAM,
                    target_type=ResourceKind.STREAM,
                    source_identifier=build_stream_uri(workspace_id, STREAM_KIND, source_integration, source_topic),
                    target_identifier=build_stream_uri(workspace_id, STREAM_KIND, target_integration, target_topic),
                    mapping_object=provenance.to_dict(),
                    owner_id=owner_id,
                    source_container_id=source_container.id,
                    target_container_id=target_container.id,
                )
                result, steps = self._finish_stream_mapping(
                    store, mapping, source_container, target_container, filters, generate_rules
                )

        self._broadcast(steps)
        return result

    def _table_endpoint(
        self,
        store: MappingStore,
        value: str
    ) -> Tuple[ManagedDatabase, str, Optional[ResourceContainer]]:
        database_name, table = parse_source_target(value, store)
        if not table:
            raise InvalidArgumentError(
                f"'{value}' must name a table: expected 'database.table' or a redb:// table URI",
                {'value': value}
            )
        database = store.get_database_by_name(database_name)
        container = store.get_container_by_uri(build_table_uri(str(database.id), table))
        return database, table, container

    def _finish_stream_mapping(
        self,
        store: MappingStore,
        mapping: Mapping,
        source_container: Optional[ResourceContainer],
        target_container: Optional[ResourceContainer],
        filters: Optional[List[Dict[str, Any]]],
        generate_rules: bool
    ) -> Tuple[Dict[str, Any], List[BroadcastRecord]]:
        warnings = []
        for spec in filters or []:
            try:
                store.create_filter(
                    mapping,
                    spec.get('filter_type', ''),
                    spec.get('filter_expression') or {},
                    spec.get('filter_operator'),
                )
            except MappingEngineError as e:
                message = f"Failed to add filter to mapping '{mapping.name}': {e.message}"
                logger.warning(message)
                warnings.append(message)

        generation = RuleGenerationResult()
        if generate_rules:
            if source_container is None or target_container is None:
                message = f"Columns not yet discovered for mapping '{mapping.name}'; no rules generated"
                logger.warning(message)
                warnings.append(message)
            else:
                self._generate_name_matched_rules(store, mapping, source_container, target_container, generation)

        return self._created(mapping, generation, warnings)

    def _generate_name_matched_rules(
        self,
        store: MappingStore,
        mapping: Mapping,
        source_container: ResourceContainer,
        target_container: ResourceContainer,
        generation: RuleGenerationResult
    ) -> None:
        """Pair items by name, case-insensitively first, then ignoring underscores"""
        sources = store.items_for_container(source_container)
        targets = store.items_for_container(target_container)

        pairs: List[Tuple[ResourceItem, ResourceItem]] = []
        used = set()
        unmatched = []
        by_lower = {}
        for target in targets:
            by_lower.setdefault(target.item_name.lower(), target)
        for source in sources:
            target = by_lower.get(source.item_name.lower())
            if target is not None and target.id not in used:
                pairs.append((source, target))
                used.add(target.id)
            else:
                unmatched.append(source)

        by_compact = {}
        for target in targets:
            if target.id not in used:
                by_compact.setdefault(target.item_name.lower().replace("_", ""), target)
        for source in unmatched:
            target = by_compact.get(source.item_name.lower().replace("_", ""))
            if target is not None and target.id not in used:
                pairs.append((source, target))
                used.add(target.id)

        generated_at = _utc_timestamp()
        for source, target in pairs:
            base_name = f"{source.item_name}_to_{target.item_name}"
            metadata = RuleMetadata(
                match_type=MatchType.AUTO_GENERATED_STREAM,
                source_column=source.item_name,
                target_column=target.item_name,
                source_resource_uri=source_container.resource_uri,
                target_resource_uri=target_container.resource_uri,
                column_data_type=source.data_type,
                generated_at=generated_at,
            )
            try:
                rule = store.create_rule(
                    name=unique_rule_name(store, base_name),
                    cardinality=Cardinality.ONE_TO_ONE,
                    source_uris=[source.resource_uri],
                    target_uris=[target.resource_uri],
                    description=f"Auto-generated rule for {source.item_name} -> {target.item_name}",
                    transformation_name=DIRECT_MAPPING,
                    rule_metadata=metadata.to_dict(),
                )
                store.attach_rule(mapping, rule)
            except MappingEngineError as e:
                message = f"Failed to create rule {base_name}: {e.message}"
                logger.warning(message)
                generation.warnings.append(message)
                continue
            generation.rules_created += 1
            generation.rule_names.append(rule.name)

    # ------------------------------------------------------------------
    # Mapping maintenance
    # ------------------------------------------------------------------

    def list_mappings(self, tenant_id: str, workspace_id: str) -> List[Dict[str, Any]]:
        with self.metrics.track_operation("list_mappings"):
            with self.db.get_session() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                return [mapping_view(m) for m in store.list_mappings()]

    def show_mapping(self, tenant_id: str, workspace_id: str, name: str) -> Dict[str, Any]:
        with self.metrics.track_operation("show_mapping"):
            with self.db.get_session() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.get_mapping(name)
                view = mapping_view(mapping, include_rules=True)
                view['unmapped_target_columns'] = [item.item_name for item in store.unmapped_items(mapping)]
                return view

    def modify_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        description: Optional[str] = None,
        mapping_object: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("modify_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.modify_mapping(store.get_mapping(name), description, mapping_object)
                view = mapping_view(mapping, include_rules=True)

        self._broadcast([self._mapping_record(view, "update")])
        return view

    def delete_mapping(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        keep_rules: bool = False
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("delete_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.get_mapping(name)
                mapping_id = str(mapping.id)
                deleted_rules = store.delete_mapping(mapping, keep_rules=keep_rules)

        self._broadcast([BroadcastRecord("mappings", "delete", {'name': name}, {'mapping_id': mapping_id})])
        return {'mapping': name, 'deleted': True, 'rules_deleted': deleted_rules}

    def add_mapping_filter(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        filter_type: str,
        filter_expression: Dict[str, Any],
        filter_operator: Optional[str] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("add_mapping_filter"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping_filter = store.create_filter(
                    store.get_mapping(mapping_name), filter_type, filter_expression, filter_operator
                )
                return mapping_filter.to_dict()

    def delete_mapping_filter(self, tenant_id: str, workspace_id: str, mapping_name: str, filter_id: str) -> None:
        with self.metrics.track_operation("delete_mapping_filter"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                store.delete_filter(store.get_mapping(mapping_name), filter_id)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_mapping_rule(
        self,
        tenant_id: str,
        workspace_id: str,
        name: str,
        source_uris: Optional[List[str]] = None,
        target_uris: Optional[List[str]] = None,
        cardinality: Optional[str] = None,
        transformation_name: str = "",
        transformation_options: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        description: str = "",
        source_identifier: str = "",
        target_identifier: str = "",
        owner_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a standalone rule

        Cardinality is inferred from item counts when not given, then
        checked against the counts and the transformation's declared type.
        Single ``source_identifier``/``target_identifier`` values are used
        when the URI lists are empty.
        """
        sources = list(source_uris or ([source_identifier] if source_identifier else []))
        targets = list(target_uris or ([target_identifier] if target_identifier else []))

        with self.metrics.track_operation("add_mapping_rule"):
            if cardinality:
                resolved = validate_cardinality(cardinality, len(sources), len(targets))
            else:
                resolved = infer_cardinality(len(sources), len(targets))
                if resolved is Cardinality.INVALID:
                    raise InvalidArgumentError("a rule must reference at least one source or target item")

            self._check_transformation(transformation_name, resolved, len(sources), len(targets))

            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                self._require_items(store, sources + targets)

                info = RuleMetadata.from_dict(metadata)
                if info.match_type is None:
                    info.match_type = MatchType.USER_DEFINED
                info.source_uris = sources
                info.target_uris = targets
                info.transformation_name = transformation_name or None
                info.transformation_options = transformation_options or None
                info.source_resource_uri = info.source_resource_uri or self._owning_table_uri(sources)
                info.target_resource_uri = info.target_resource_uri or self._owning_table_uri(targets)
                info.generated_at = info.generated_at or _utc_timestamp()

                rule = store.create_rule(
                    name=name,
                    cardinality=resolved,
                    source_uris=sources,
                    target_uris=targets,
                    description=description,
                    transformation_name=transformation_name,
                    transformation_options=transformation_options,
                    rule_metadata=info.to_dict(),
                    owner_id=owner_id,
                )
                view = rule_view(rule)

        self._broadcast([self._rule_record(view, "insert")])
        return view

    def modify_mapping_rule(
        self,
        tenant_id: str,
        workspace_id: str,
        rule_name: str,
        description: Optional[str] = None,
        source_uris: Optional[List[str]] = None,
        target_uris: Optional[List[str]] = None,
        cardinality: Optional[str] = None,
        transformation_name: Optional[str] = None,
        transformation_options: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Partially update a rule; every mapping using it becomes unvalidated"""
        with self.metrics.track_operation("modify_mapping_rule"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                rule = self._get_rule(store, rule_name)

                sources = source_uris if source_uris is not None else rule.source_uris
                targets = target_uris if target_uris is not None else rule.target_uris
                items_changed = source_uris is not None or target_uris is not None

                if cardinality:
                    resolved = validate_cardinality(cardinality, len(sources), len(targets))
                elif items_changed:
                    resolved = validate_cardinality(
                        infer_cardinality(len(sources), len(targets)), len(sources), len(targets)
                    )
                else:
                    resolved = rule.cardinality_kind

                name = transformation_name if transformation_name is not None else rule.transformation_name
                self._check_transformation(name, resolved, len(sources), len(targets))

                updates = dict(metadata or {})
                if items_changed:
                    self._require_items(store, sources + targets)
                    updates['source_uris'] = sources
                    updates['target_uris'] = targets
                if transformation_name is not None:
                    updates['transformation_name'] = transformation_name
                if transformation_options is not None:
                    updates['transformation_options'] = transformation_options

                invalidated = store.modify_rule(
                    rule,
                    description=description,
                    cardinality=resolved,
                    source_uris=source_uris,
                    target_uris=target_uris,
                    transformation_name=transformation_name,
                    transformation_options=transformation_options,
                    metadata_updates=updates,
                )
                view = rule_view(rule)
                view['invalidated_mappings'] = [m.name for m in invalidated]

        self._broadcast([self._rule_record(view, "update")])
        return view

    def delete_mapping_rule(self, tenant_id: str, workspace_id: str, rule_name: str) -> Dict[str, Any]:
        with self.metrics.track_operation("delete_mapping_rule"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                rule = self._get_rule(store, rule_name)
                rule_id = str(rule.id)
                store.delete_rule(rule)

        self._broadcast([BroadcastRecord("mapping_rules", "delete", {'name': rule_name}, {'rule_id': rule_id})])
        return {'rule': rule_name, 'deleted': True}

    def list_mapping_rules(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """All rules in the workspace, or the ordered rules of one mapping"""
        with self.metrics.track_operation("list_mapping_rules"):
            with self.db.get_session() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                if mapping_name:
                    rules = store.rules_for_mapping(store.get_mapping(mapping_name))
                else:
                    rules = store.list_rules()
                return [rule_view(rule) for rule in rules]

    def show_mapping_rule(self, tenant_id: str, workspace_id: str, rule_name: str) -> Dict[str, Any]:
        with self.metrics.track_operation("show_mapping_rule"):
            with self.db.get_session() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                rule = self._get_rule(store, rule_name)
                view = rule_view(rule)
                view['mappings'] = [m.name for m in store.mappings_for_rule(rule)]
                return view

    def attach_mapping_rule(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        rule_name: str,
        order: Optional[int] = None
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("attach_mapping_rule"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.get_mapping(mapping_name)
                link = store.attach_rule(mapping, self._get_rule(store, rule_name), order)
                link_record = {
                    'mapping_id': str(mapping.id),
                    'rule_id': str(link.rule_id),
                    'rule_order': link.rule_order,
                }
                view = mapping_view(mapping, include_rules=True)

        self._broadcast([
            self._mapping_record(view, "update"),
            BroadcastRecord("mapping_rule_links", "insert", link_record,
                            {'mapping_id': link_record['mapping_id'], 'rule_id': link_record['rule_id']}),
        ])
        return view

    def detach_mapping_rule(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        rule_name: str
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("detach_mapping_rule"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.get_mapping(mapping_name)
                rule = self._get_rule(store, rule_name)
                store.detach_rule(mapping, rule)
                key = {'mapping_id': str(mapping.id), 'rule_id': str(rule.id)}
                view = mapping_view(mapping, include_rules=True)

        self._broadcast([
            BroadcastRecord("mapping_rule_links", "delete", dict(key), key),
            self._mapping_record(view, "update"),
        ])
        return view

    def update_mapping_rule_order(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        rule_name: str,
        order: int
    ) -> Dict[str, Any]:
        with self.metrics.track_operation("update_mapping_rule_order"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.get_mapping(mapping_name)
                store.update_rule_order(mapping, self._get_rule(store, rule_name), order)
                view = mapping_view(mapping, include_rules=True)

        self._broadcast([self._mapping_record(view, "update")])
        return view

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_mapping(self, tenant_id: str, workspace_id: str, mapping_name: str) -> Dict[str, Any]:
        """
        Validate a mapping and persist the outcome

        Returns:
            Dictionary with is_valid, errors and warnings
        """
        if not tenant_id or not workspace_id or not mapping_name:
            raise InvalidArgumentError("tenant_id, workspace and mapping name are required")

        with self.metrics.track_operation("validate_mapping"):
            with self.db.transaction() as session:
                store = MappingStore(session, tenant_id, workspace_id)
                mapping = store.get_mapping(mapping_name)
                outcome = self.validator.validate(store, mapping)
                store.update_validation_status(mapping, outcome.is_valid, outcome.errors, outcome.warnings)
                view = mapping_view(mapping)

        self._broadcast([self._mapping_record(view, "update")])
        return {
            'mapping': mapping_name,
            'is_valid': outcome.is_valid,
            'errors': outcome.errors,
            'warnings': outcome.warnings,
            'validated_at': view.get('validated_at'),
        }
