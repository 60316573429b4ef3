"""
Migration Pipeline

Moves and transforms data for the rules of a mapping. Rules are grouped
into (source table, target table) pairs; pairs run one after another and
batches within a pair are strictly ordered, each insert finishing before
the next batch is requested.

A failed pair is recorded and the copy continues with the next pair.
"""

import logging
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from ..config.settings import Settings
from ..contracts.execution_engine import ExecutionEngine, StreamEnded
from ..contracts.transformation_registry import DIRECT_MAPPING, TransformationRegistry
from ..lib.db_manager import DatabaseManager
from ..lib.exceptions import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    MappingEngineError,
    UnimplementedError,
)
from ..lib.metrics import EngineMetrics
from ..models import CopyStatus, ManagedDatabase, MappingRule, TransformMode
from .mapping_store import MappingStore
from .resource_address import ObjectType, Protocol, parse_column_identifier, parse_resource_uri

logger = logging.getLogger(__name__)


@dataclass
class CopyProgress:
    """One streamed copy status message"""
    status: CopyStatus
    message: str
    operation_id: str
    rows_processed: int = 0
    total_rows: int = 0
    current_table: str = ""
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data


@dataclass
class TransformSummary:
    """Row counts for one source/target table pair"""
    source_database_name: str
    source_table_name: str
    target_database_name: str
    target_table_name: str
    rows_processed: int = 0
    rows_transformed: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_deleted: int = 0
    message: str = ""
    is_complete: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RulePlan:
    """What the pipeline needs from a rule once the session is closed"""
    name: str
    source_column: Optional[str]
    target_column: Optional[str]
    transformation_name: str
    transformation_options: Dict[str, Any]


@dataclass
class Endpoint:
    database_id: str
    database_name: str
    table: str
    connected: bool

    @property
    def label(self) -> str:
        return f"{self.database_name}.{self.table}"


@dataclass
class TablePair:
    source: Endpoint
    target: Endpoint
    rules: List[RulePlan] = field(default_factory=list)

    @property
    def key(self) -> str:
        return f"{self.source.label} -> {self.target.label}"


def _chunk(rows: List[Dict[str, Any]], parts: int) -> List[List[Dict[str, Any]]]:
    """Split rows into at most ``parts`` contiguous chunks"""
    parts = max(1, min(parts, len(rows)))
    size, remainder = divmod(len(rows), parts)
    chunks, start = [], 0
    for index in range(parts):
        end = start + size + (1 if index < remainder else 0)
        chunks.append(rows[start:end])
        start = end
    return chunks


class MigrationPipeline:
    """Executes unary, streamed and multi-pair data movement for mappings"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        engine: ExecutionEngine,
        registry: Optional[TransformationRegistry] = None,
        metrics: Optional[EngineMetrics] = None
    ):
        self.db = db_manager
        self.engine = engine
        self.registry = registry
        self.metrics = metrics or EngineMetrics()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    @staticmethod
    def _endpoint(store: MappingStore, databases: Dict[str, ManagedDatabase], database_id: str, table: str) -> Endpoint:
        if database_id not in databases:
            databases[database_id] = store.get_database(database_id)
        database = databases[database_id]
        return Endpoint(
            database_id=str(database.id),
            database_name=database.name,
            table=table,
            connected=database.is_connected,
        )

    @staticmethod
    def _table_of(resource_uri: Optional[str], identifier: str):
        """(database_id, table) from a table URI, else from a column identifier"""
        if resource_uri:
            try:
                address = parse_resource_uri(resource_uri)
                if address.protocol is Protocol.REDB and address.object_type is not ObjectType.DATABASE:
                    return address.database_id, address.table
            except InvalidArgumentError:
                pass
        address = parse_column_identifier(identifier)
        return address.database_id, address.table

    @staticmethod
    def _column_of(identifier: str) -> Optional[str]:
        if not identifier:
            return None
        return parse_column_identifier(identifier).column

    def _plan_rule(self, rule: MappingRule) -> RulePlan:
        extra_sources = rule.source_uris[1:]
        if extra_sources:
            logger.warning(
                f"Rule {rule.name} has {len(rule.source_uris)} sources; only the first is copied, "
                f"ignoring {', '.join(extra_sources)}"
            )
        return RulePlan(
            name=rule.name,
            source_column=self._column_of(rule.source_identifier),
            target_column=self._column_of(rule.target_identifier),
            transformation_name=rule.transformation_name or "",
            transformation_options=dict(rule.transformation_options or {}),
        )

    def _plan_pairs(self, store: MappingStore, rules: List[MappingRule], skipped: List[str]) -> List[TablePair]:
        """Group rules by table pair; rules that fit no pair are logged and listed in ``skipped``"""
        pairs: "OrderedDict[str, TablePair]" = OrderedDict()
        databases: Dict[str, ManagedDatabase] = {}
        for rule in rules:
            info = rule.metadata_info
            try:
                source_db, source_table = self._table_of(info.source_resource_uri, rule.source_identifier)
                target_db, target_table = self._table_of(info.target_resource_uri, rule.target_identifier)
                pair = TablePair(
                    source=self._endpoint(store, databases, source_db, source_table),
                    target=self._endpoint(store, databases, target_db, target_table),
                )
                plan = self._plan_rule(rule)
            except MappingEngineError as e:
                message = f"Skipping rule {rule.name}: {e.message}"
                logger.warning(message)
                skipped.append(message)
                continue
            pairs.setdefault(pair.key, pair).rules.append(plan)
        return list(pairs.values())

    def _load_single_pair(self, tenant_id: str, workspace_id: str, mapping_name: str) -> TablePair:
        """Resolve the pair named by a mapping's first rule and every rule's column plan"""
        with self.db.get_session() as session:
            store = MappingStore(session, tenant_id, workspace_id)
            mapping = store.get_mapping(mapping_name)
            rules = store.rules_for_mapping(mapping)
            if not rules:
                raise FailedPreconditionError("mapping has no rules", {'mapping': mapping_name})

            first = rules[0]
            source = parse_column_identifier(first.source_identifier)
            target = parse_column_identifier(first.target_identifier)
            databases: Dict[str, ManagedDatabase] = {}
            pair = TablePair(
                source=self._endpoint(store, databases, source.database_id, source.table),
                target=self._endpoint(store, databases, target.database_id, target.table),
            )
            for rule in rules:
                try:
                    pair.rules.append(self._plan_rule(rule))
                except InvalidArgumentError as e:
                    logger.warning(f"Ignoring rule {rule.name} for transform: {e.message}")

        if not pair.source.connected:
            raise FailedPreconditionError(
                f"source database '{pair.source.database_name}' is not connected",
                {'database_id': pair.source.database_id}
            )
        if not pair.target.connected:
            raise FailedPreconditionError(
                f"target database '{pair.target.database_name}' is not connected",
                {'database_id': pair.target.database_id}
            )
        return pair

    @staticmethod
    def _parse_mode(mode) -> TransformMode:
        try:
            resolved = TransformMode(getattr(mode, "value", mode))
        except ValueError:
            raise InvalidArgumentError(f"invalid mode '{mode}': expected append or replace", {'mode': str(mode)})
        if resolved is TransformMode.UPDATE:
            raise UnimplementedError("update mode (upsert) is not implemented; use append or replace")
        return resolved

    @staticmethod
    def _transformation_rules(pair: TablePair) -> List[Dict[str, Any]]:
        return [
            {
                'source_field': plan.source_column or "",
                'target_field': plan.target_column or "",
                'transformation_type': plan.transformation_name,
                'transformation_options': plan.transformation_options,
            }
            for plan in pair.rules
        ]

    # ------------------------------------------------------------------
    # Unary and streamed transform
    # ------------------------------------------------------------------

    def transform_data(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        mode: str = TransformMode.APPEND.value
    ) -> TransformSummary:
        """
        Fetch, transform and insert a mapping's data in single calls

        Raises:
            FailedPreconditionError: No rules, or a database not connected
            InvalidArgumentError: Unknown mode
            UnimplementedError: update mode
        """
        with self.metrics.track_operation("transform_data"):
            resolved = self._parse_mode(mode)
            pair = self._load_single_pair(tenant_id, workspace_id, mapping_name)
            source, target = pair.source, pair.target

            fetched = self.engine.fetch_data(tenant_id, workspace_id, source.database_id, source.table)
            if not fetched.success:
                raise InternalError(f"failed to fetch data from {source.label}: {fetched.message}")

            transformed = self.engine.transform_data(
                tenant_id, workspace_id, target.database_id, target.table, fetched.rows,
                {'transformation_rules': self._transformation_rules(pair), 'mode': resolved.value}
            )

            if resolved is TransformMode.REPLACE:
                self.engine.wipe_database(tenant_id, workspace_id, target.database_id)

            inserted = self.engine.insert_data(tenant_id, workspace_id, target.database_id, target.table, transformed)
            if not inserted.success:
                raise InternalError(f"failed to insert data into {target.label}: {inserted.message}")

            logger.info(
                f"Transformed {len(fetched.rows)} rows from {source.label} into {target.label} "
                f"({inserted.rows_affected} inserted)"
            )
            return TransformSummary(
                source_database_name=source.database_name,
                source_table_name=source.table,
                target_database_name=target.database_name,
                target_table_name=target.table,
                rows_processed=len(fetched.rows),
                rows_transformed=len(transformed),
                rows_inserted=inserted.rows_affected,
                message="Data transformation completed successfully",
                is_complete=True,
            )

    def transform_data_stream(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        mode: str = TransformMode.APPEND.value,
        batch_size: Optional[int] = None
    ) -> Iterator[TransformSummary]:
        """Stream a mapping's data batch by batch, yielding running totals"""
        with self.metrics.track_operation("transform_data_stream"):
            resolved = self._parse_mode(mode)
            pair = self._load_single_pair(tenant_id, workspace_id, mapping_name)
            source, target = pair.source, pair.target
            options = {'transformation_rules': self._transformation_rules(pair), 'mode': resolved.value}

            if resolved is TransformMode.REPLACE:
                self.engine.wipe_database(tenant_id, workspace_id, target.database_id)

            summary = TransformSummary(
                source_database_name=source.database_name,
                source_table_name=source.table,
                target_database_name=target.database_name,
                target_table_name=target.table,
            )
            stream = self.engine.fetch_data_stream(
                tenant_id, workspace_id, source.database_id, source.table,
                batch_size=batch_size or Settings.COPY_DEFAULT_BATCH_SIZE
            )
            with stream:
                while True:
                    try:
                        batch = stream.recv()
                    except StreamEnded:
                        break
                    if not batch.success:
                        raise InternalError(f"failed to fetch data from {source.label}: {batch.message}")

                    if batch.rows:
                        transformed = self.engine.transform_data(
                            tenant_id, workspace_id, target.database_id, target.table, batch.rows, options
                        )
                        inserted = self.engine.insert_batch(
                            tenant_id, workspace_id, target.database_id, target.table, transformed
                        )
                        if not inserted.success:
                            raise InternalError(f"failed to insert data into {target.label}: {inserted.message}")

                        summary.rows_processed += len(batch.rows)
                        summary.rows_transformed += len(transformed)
                        summary.rows_inserted += inserted.rows_affected
                        summary.message = "Data chunk processed successfully"
                        summary.is_complete = False
                        yield TransformSummary(**asdict(summary))

                    if batch.is_complete:
                        break

            summary.message = "Data transformation completed successfully"
            summary.is_complete = True
            yield summary

    # ------------------------------------------------------------------
    # Multi-pair copy
    # ------------------------------------------------------------------

    def copy_mapping_data(
        self,
        tenant_id: str,
        workspace_id: str,
        mapping_name: str,
        batch_size: Optional[int] = None,
        parallel_workers: Optional[int] = None,
        dry_run: bool = False
    ) -> Iterator[CopyProgress]:
        """
        Copy every table pair of a mapping, streaming progress

        Failures are reported in the stream; a failed pair does not stop
        the pairs after it.
        """
        batch_size = batch_size or Settings.COPY_DEFAULT_BATCH_SIZE
        workers = parallel_workers or Settings.COPY_DEFAULT_PARALLEL_WORKERS
        operation_id = f"copy_{mapping_name}_{time.time_ns()}"
        log_extra = {'tenant_id': tenant_id, 'workspace': workspace_id, 'operation_id': operation_id}

        def progress(status: CopyStatus, message: str, **kwargs) -> CopyProgress:
            return CopyProgress(status=status, message=message, operation_id=operation_id, **kwargs)

        with self.metrics.track_operation("copy_mapping_data"):
            yield progress(CopyStatus.STARTED, f"Starting data copy for mapping '{mapping_name}'")

            errors: List[str] = []
            skipped: List[str] = []
            try:
                with self.db.get_session() as session:
                    store = MappingStore(session, tenant_id, workspace_id)
                    rules = store.rules_for_mapping(store.get_mapping(mapping_name))
                    if not rules:
                        yield progress(
                            CopyStatus.ERROR,
                            "No mapping rules found for this mapping",
                            errors=["No mapping rules found for this mapping"],
                        )
                        return
                    if dry_run:
                        yield progress(
                            CopyStatus.COMPLETED,
                            f"Dry run completed successfully. Found {len(rules)} mapping rules "
                            f"ready for data copying.",
                        )
                        return
                    pairs = self._plan_pairs(store, rules, skipped)
            except MappingEngineError as e:
                logger.error(f"Copy {operation_id} failed before start: {e.message}", extra=log_extra)
                yield progress(CopyStatus.ERROR, e.message, errors=[e.message])
                return

            for message in skipped:
                yield progress(CopyStatus.PROGRESS, message)

            total_rows = 0
            for pair in pairs:
                total_rows += self._estimate_rows(tenant_id, workspace_id, pair)

            rows_processed = 0
            for index, pair in enumerate(pairs, start=1):
                yield progress(
                    CopyStatus.PROGRESS,
                    f"Processing table pair {index}/{len(pairs)}: {pair.key}",
                    rows_processed=rows_processed,
                    total_rows=total_rows,
                    current_table=pair.key,
                )
                try:
                    for copied in self._copy_pair(tenant_id, workspace_id, pair, batch_size, workers):
                        rows_processed += copied
                        yield progress(
                            CopyStatus.PROGRESS,
                            f"Copied {copied} rows for {pair.key}",
                            rows_processed=rows_processed,
                            total_rows=total_rows,
                            current_table=pair.key,
                        )
                except Exception as e:
                    detail = e.message if isinstance(e, MappingEngineError) else str(e)
                    message = f"Failed to copy data for table pair {pair.key}: {detail}"
                    logger.error(message, extra=log_extra)
                    errors.append(message)

            if errors:
                yield progress(
                    CopyStatus.COMPLETED_WITH_ERRORS,
                    f"Data copy completed with {len(errors)} errors. Processed {rows_processed} rows "
                    f"across {len(pairs)} table pairs.",
                    rows_processed=rows_processed,
                    total_rows=total_rows,
                    errors=errors,
                )
            else:
                yield progress(
                    CopyStatus.COMPLETED,
                    f"Data copy completed successfully. Processed {rows_processed} rows "
                    f"across {len(pairs)} table pairs.",
                    rows_processed=rows_processed,
                    total_rows=total_rows,
                )
            logger.info(
                f"Copy {operation_id} finished: {rows_processed} rows, {len(errors)} errors",
                extra=log_extra
            )

    def get_copy_status(self, operation_id: str) -> CopyProgress:
        """Copy operations are not tracked after their stream ends"""
        return CopyProgress(
            status=CopyStatus.NOT_FOUND,
            message=f"Operation {operation_id} is not tracked; follow the copy stream for progress",
            operation_id=operation_id,
        )

    def _estimate_rows(self, tenant_id: str, workspace_id: str, pair: TablePair) -> int:
        if not pair.source.connected:
            return 0
        try:
            return int(self.engine.get_row_count(tenant_id, workspace_id, pair.source.database_id, pair.source.table))
        except MappingEngineError as e:
            logger.warning(f"Could not count rows in {pair.source.label}: {e.message}")
            return 0

    def _copy_pair(
        self,
        tenant_id: str,
        workspace_id: str,
        pair: TablePair,
        batch_size: int,
        workers: int
    ) -> Iterator[int]:
        """Copy one pair, yielding the row count of each inserted batch"""
        for endpoint, side in ((pair.source, "source"), (pair.target, "target")):
            if not endpoint.connected:
                raise FailedPreconditionError(f"{side} database '{endpoint.database_name}' is not connected")

        columns = [plan.source_column for plan in pair.rules if plan.source_column]
        stream = self.engine.fetch_data_stream(
            tenant_id, workspace_id, pair.source.database_id, pair.source.table,
            columns=columns, batch_size=batch_size
        )
        with stream:
            while True:
                try:
                    batch = stream.recv()
                except StreamEnded:
                    return
                if not batch.success:
                    raise InternalError(f"failed to fetch data from {pair.source.label}: {batch.message}")

                if batch.rows:
                    rows = self.transform_rows(batch.rows, pair.rules, workers)
                    result = self.engine.insert_batch(
                        tenant_id, workspace_id, pair.target.database_id, pair.target.table,
                        rows, use_transaction=True
                    )
                    if not result.success:
                        raise InternalError(f"failed to insert data into {pair.target.label}: {result.message}")
                    yield len(rows)

                if batch.is_complete:
                    return

    # ------------------------------------------------------------------
    # Row transformation
    # ------------------------------------------------------------------

    def transform_rows(
        self,
        rows: List[Dict[str, Any]],
        rules: List[RulePlan],
        workers: int = 1
    ) -> List[Dict[str, Any]]:
        """
        Apply rules to a batch, splitting it across ``workers`` threads

        Output order matches input order.
        """
        if workers <= 1 or len(rows) < 2:
            return [self.transform_row(row, rules) for row in rows]

        chunks = _chunk(rows, workers)
        with ThreadPoolExecutor(max_workers=len(chunks)) as pool:
            results = pool.map(lambda chunk: [self.transform_row(row, rules) for row in chunk], chunks)
            return [row for chunk in results for row in chunk]

    def transform_row(self, row: Dict[str, Any], rules: List[RulePlan]) -> Dict[str, Any]:
        output = {}
        for plan in rules:
            if not plan.target_column:
                continue
            value = row.get(plan.source_column) if plan.source_column else None
            output[plan.target_column] = self.apply_transformation(plan, value)
        return output

    def apply_transformation(self, plan: RulePlan, value: Any) -> Any:
        """Pass values through for direct mappings, otherwise ask the registry"""
        if not plan.transformation_name or plan.transformation_name == DIRECT_MAPPING or self.registry is None:
            return value
        try:
            return self.registry.execute(plan.transformation_name, value, plan.transformation_options)
        except Exception as e:
            logger.warning(
                f"Transformation {plan.transformation_name} failed for rule {plan.name}, "
                f"keeping original value: {e}"
            )
            return value
