"""
Schema Match Orchestrator

Sends two enriched schema models to the schema matcher and turns every
acceptable column match into a direct_mapping rule attached to a mapping.
Rule generation is best-effort: matcher failures become warnings.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..contracts.schema_matcher import MatchOptions, SchemaMatcher
from ..contracts.transformation_registry import DIRECT_MAPPING
from ..lib.exceptions import MappingEngineError
from ..models import Cardinality, ManagedDatabase, Mapping, MatchType, RuleMetadata
from .mapping_store import MappingStore
from .resource_address import build_column_uri, build_table_uri

logger = logging.getLogger(__name__)

# Column matches scoring below this are not turned into rules
RULE_SCORE_THRESHOLD = 0.5


@dataclass
class RuleGenerationResult:
    rules_created: int = 0
    rule_names: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def filter_schema_to_table(schema_model: Dict[str, Any], table_name: str) -> Dict[str, Any]:
    """
    Reduce a schema model to one table

    User-defined types and schemas are kept whole since the table may
    reference any of them.
    """
    model = dict(schema_model or {})
    tables = model.get("tables") or {}
    if isinstance(tables, list):
        model["tables"] = [t for t in tables if t.get("name") == table_name]
    else:
        model["tables"] = {name: t for name, t in tables.items() if name == table_name}
    return model


def build_enrichment(database: ManagedDatabase) -> Optional[Dict[str, Any]]:
    """Classification data for a database as the matcher expects it"""
    enriched = database.enriched_tables
    if not enriched:
        return None
    return {"database_id": str(database.id), "tables": copy.deepcopy(enriched)}


def unique_rule_name(store: MappingStore, base: str, reserved: Optional[set] = None) -> str:
    """Return ``base`` or ``base_1``, ``base_2``, ... whichever is free"""
    reserved = reserved or set()
    candidate = base
    counter = 1
    while candidate in reserved or store.rule_name_exists(candidate):
        candidate = f"{base}_{counter}"
        counter += 1
    return candidate


class SchemaMatchOrchestrator:
    """Drives the schema matcher and materializes matches as rules"""

    def __init__(self, matcher: Optional[SchemaMatcher], options: Optional[MatchOptions] = None):
        self.matcher = matcher
        self.options = options or MatchOptions()

    def generate_rules(
        self,
        store: MappingStore,
        mapping: Mapping,
        source_db: ManagedDatabase,
        target_db: ManagedDatabase,
        source_table: Optional[str] = None,
        target_table: Optional[str] = None
    ) -> RuleGenerationResult:
        """
        Match two databases (or two tables) and attach a rule per accepted column match

        Args:
            store: Store bound to the caller's session
            mapping: Mapping receiving the rules
            source_db: Source database record
            target_db: Target database record
            source_table: Restrict the source model to this table
            target_table: Restrict the target model to this table

        Returns:
            RuleGenerationResult with counts and warnings
        """
        result = RuleGenerationResult()

        if self.matcher is None:
            result.warnings.append("Schema matcher is not configured; no rules generated")
            logger.warning(result.warnings[-1])
            return result

        source_model = source_db.schema_structure
        target_model = target_db.schema_structure
        if not source_model or not target_model:
            message = (
                f"Schema not yet discovered for "
                f"{source_db.name if not source_model else target_db.name}; no rules generated"
            )
            result.warnings.append(message)
            logger.warning(message)
            return result

        if source_table:
            source_model = filter_schema_to_table(source_model, source_table)
        if target_table:
            target_model = filter_schema_to_table(target_model, target_table)

        try:
            match_result = self.matcher.match(
                source_model,
                target_model,
                self.options,
                source_enrichment=build_enrichment(source_db),
                target_enrichment=build_enrichment(target_db),
            )
        except Exception as e:
            message = f"Schema matching failed, no rules generated: {e}"
            logger.warning(message)
            result.warnings.append(message)
            return result

        result.warnings.extend(match_result.warnings)
        generated_at = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")

        for table_match in match_result.table_matches:
            for column_match in table_match.column_matches:
                if column_match.is_unmatched or column_match.is_poor_match:
                    continue
                if column_match.score < RULE_SCORE_THRESHOLD:
                    continue

                base_name = (
                    f"{table_match.source_table}_{column_match.source_column}_to_"
                    f"{table_match.target_table}_{column_match.target_column}"
                )
                metadata = RuleMetadata(
                    match_type=MatchType.AUTO_GENERATED,
                    match_score=column_match.score,
                    type_compatible=column_match.is_type_compatible,
                    source_table=table_match.source_table,
                    source_column=column_match.source_column,
                    source_database_id=str(source_db.id),
                    source_database_name=source_db.name,
                    target_table=table_match.target_table,
                    target_column=column_match.target_column,
                    target_database_id=str(target_db.id),
                    target_database_name=target_db.name,
                    source_resource_uri=build_table_uri(str(source_db.id), table_match.source_table),
                    target_resource_uri=build_table_uri(str(target_db.id), table_match.target_table),
                    generated_at=generated_at,
                )
                description = (
                    f"Auto-generated rule for {source_db.name}.{table_match.source_table}."
                    f"{column_match.source_column} -> {target_db.name}.{table_match.target_table}."
                    f"{column_match.target_column}"
                )

                try:
                    rule = store.create_rule(
                        name=unique_rule_name(store, base_name),
                        cardinality=Cardinality.ONE_TO_ONE,
                        source_uris=[build_column_uri(
                            str(source_db.id), table_match.source_table, column_match.source_column
                        )],
                        target_uris=[build_column_uri(
                            str(target_db.id), table_match.target_table, column_match.target_column
                        )],
                        description=description,
                        transformation_name=DIRECT_MAPPING,
                        rule_metadata=metadata.to_dict(),
                    )
                    store.attach_rule(mapping, rule)
                except MappingEngineError as e:
                    message = f"Failed to create rule {base_name}: {e.message}"
                    logger.warning(message)
                    result.warnings.append(message)
                    continue

                result.rules_created += 1
                result.rule_names.append(rule.name)

        logger.info(
            f"Generated {result.rules_created} rules for mapping '{mapping.name}' "
            f"(overall similarity {match_result.overall_similarity_score:.2f})"
        )
        return result
