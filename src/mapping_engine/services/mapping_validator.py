"""
Mapping Validation

Checks a mapping's addresses, rule targets, target column coverage and
source/target type compatibility. Errors make the mapping invalid;
warnings are reported alongside a valid result.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..lib.exceptions import InvalidArgumentError, NotFoundError
from ..models import ItemRole, Mapping, MappingRule, ResourceKind
from .mapping_store import MappingStore
from .resource_address import ObjectType, Protocol, parse_resource_uri

logger = logging.getLogger(__name__)

TYPE_GROUPS = {
    'string': {
        'char', 'character', 'varchar', 'character varying', 'nchar', 'nvarchar',
        'text', 'string', 'clob', 'citext', 'uuid', 'json', 'jsonb',
    },
    'numeric': {
        'int', 'integer', 'int2', 'int4', 'int8', 'smallint', 'bigint', 'tinyint', 'mediumint',
        'serial', 'bigserial', 'decimal', 'numeric', 'number', 'float', 'float4', 'float8',
        'double', 'double precision', 'real', 'money',
    },
    'datetime': {
        'date', 'time', 'timetz', 'timestamp', 'timestamptz', 'datetime', 'datetime2',
        'timestamp with time zone', 'timestamp without time zone', 'interval',
    },
    'boolean': {'bool', 'boolean', 'bit'},
}


@dataclass
class ValidationOutcome:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def normalize_type(data_type: Optional[str]) -> str:
    """Lower-case a type name and drop size parameters and array markers"""
    if not data_type:
        return ""
    base = re.sub(r"\(.*?\)", "", data_type.strip().lower())
    return base.replace("[]", "").strip()


def type_group(data_type: Optional[str]) -> Optional[str]:
    normalized = normalize_type(data_type)
    for group, members in TYPE_GROUPS.items():
        if normalized in members:
            return group
    return None


def types_compatible(source_type: Optional[str], target_type: Optional[str]) -> bool:
    """Exact (case-insensitive) matches pass, otherwise both types must share a group"""
    source, target = normalize_type(source_type), normalize_type(target_type)
    if source == target:
        return True
    group = type_group(source)
    return group is not None and group == type_group(target)


class MappingValidator:
    """Validates one mapping against the resources it references"""

    def validate(self, store: MappingStore, mapping: Mapping) -> ValidationOutcome:
        errors: List[str] = []
        warnings: List[str] = []

        rules = store.rules_for_mapping(mapping)
        if not rules:
            warnings.append("Mapping has no rules defined")

        if not mapping.source_identifier:
            errors.append("Mapping has no source identifier")
        if not mapping.target_identifier:
            errors.append("Mapping has no target identifier")

        self._check_endpoint(store, mapping, mapping.source_identifier, mapping.source_kind, "source", errors)
        self._check_endpoint(store, mapping, mapping.target_identifier, mapping.target_kind, "target", errors)

        if mapping.target_kind is ResourceKind.TABLE and mapping.target_identifier:
            self._check_target_consistency(mapping, rules, errors)

        for item in store.unmapped_items(mapping):
            if item.is_nullable:
                warnings.append(f"Target column '{item.item_name}' is not mapped")
            else:
                errors.append(f"Required target column '{item.item_name}' is not mapped")

        for rule in rules:
            self._check_types(rule, warnings)

        outcome = ValidationOutcome(is_valid=not errors, errors=errors, warnings=warnings)
        logger.info(
            f"Validated mapping '{mapping.name}': valid={outcome.is_valid}, "
            f"{len(errors)} errors, {len(warnings)} warnings"
        )
        return outcome

    def _check_endpoint(
        self,
        store: MappingStore,
        mapping: Mapping,
        identifier: str,
        kind: Optional[ResourceKind],
        side: str,
        errors: List[str]
    ) -> None:
        if not identifier or kind is None:
            return
        if kind is ResourceKind.MCP_RESOURCE:
            return
        if kind is ResourceKind.DATABASE:
            try:
                address = parse_resource_uri(identifier)
                store.get_database(address.database_id)
            except (InvalidArgumentError, NotFoundError) as e:
                errors.append(f"Cannot resolve {side} database '{identifier}': {e.message}")
            return

        container_id = mapping.source_container_id if side == "source" else mapping.target_container_id
        if container_id is None and store.get_container_by_uri(identifier) is None:
            errors.append(f"Cannot resolve {side} container '{identifier}'")

    def _check_target_consistency(self, mapping: Mapping, rules: List[MappingRule], errors: List[str]) -> None:
        try:
            expected = parse_resource_uri(mapping.target_identifier)
        except InvalidArgumentError:
            return
        if expected.protocol is not Protocol.REDB:
            return

        for rule in rules:
            for uri in rule.target_uris:
                try:
                    address = parse_resource_uri(uri)
                except InvalidArgumentError as e:
                    errors.append(f"Rule '{rule.name}' has an invalid target '{uri}': {e.message}")
                    continue
                if address.object_type is not ObjectType.COLUMN or address.protocol is Protocol.MCP_VIRTUAL:
                    continue
                if (address.database_id, address.table) != (expected.database_id, expected.table):
                    errors.append(
                        f"Rule '{rule.name}' targets {address.database_id}.{address.table} "
                        f"but mapping targets {expected.database_id}.{expected.table}"
                    )

    def _check_types(self, rule: MappingRule, warnings: List[str]) -> None:
        sources = [i.item for i in rule.items if i.role == ItemRole.SOURCE.value and i.item is not None]
        targets = [i.item for i in rule.items if i.role == ItemRole.TARGET.value and i.item is not None]
        if len(sources) != 1 or len(targets) != 1:
            return
        source, target = sources[0], targets[0]
        if not source.data_type or not target.data_type:
            return
        if not types_compatible(source.data_type, target.data_type):
            warnings.append(
                f"Rule '{rule.name}': source type '{source.data_type}' may not be compatible "
                f"with target type '{target.data_type}'"
            )
