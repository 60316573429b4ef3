"""
Mapping Store

Session-scoped repository over mappings, rules, rule attachments, filters,
resource containers/items and the catalog tables the engine reads. Every
query is scoped to one tenant and workspace.

Callers own the transaction: the store flushes so constraint violations
surface early, but never commits.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..lib.exceptions import (
    AlreadyExistsError,
    FailedPreconditionError,
    InvalidArgumentError,
    NotFoundError,
)
from ..models import (
    DatabaseInstance,
    ItemRole,
    ManagedDatabase,
    Mapping,
    MappingFilter,
    MappingRule,
    MappingRuleItem,
    MappingRuleLink,
    ResourceContainer,
    ResourceItem,
    SchemaBranch,
    SchemaRepo,
)
from .cardinality import validate_filter, validate_filter_operator
from .resource_address import (
    DatabaseDirectory,
    Protocol,
    build_column_uri,
    parse_resource_uri,
)

logger = logging.getLogger(__name__)


def _as_uuid(value: Any) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class MappingStore(DatabaseDirectory):
    """Repository for one tenant/workspace inside an open session"""

    def __init__(self, session: Session, tenant_id: str, workspace_id: str):
        if not tenant_id or not workspace_id:
            raise InvalidArgumentError("tenant_id and workspace_id are required")
        self.session = session
        self.tenant_id = tenant_id
        self.workspace_id = workspace_id

    def _scoped(self, model):
        return self.session.query(model).filter(
            model.tenant_id == self.tenant_id,
            model.workspace_id == self.workspace_id
        )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def get_database(self, database_id: str) -> ManagedDatabase:
        key = _as_uuid(database_id)
        database = self._scoped(ManagedDatabase).filter(ManagedDatabase.id == key).first() if key else None
        if database is None:
            raise NotFoundError(f"database '{database_id}' not found", {'database_id': str(database_id)})
        return database

    def get_database_by_name(self, name: str) -> ManagedDatabase:
        database = self._scoped(ManagedDatabase).filter(ManagedDatabase.name == name).first()
        if database is None:
            raise NotFoundError(f"database '{name}' not found", {'database_name': name})
        return database

    def get_database_name(self, database_id: str) -> str:
        return self.get_database(database_id).name

    def find_database_by_name(self, name: str) -> Optional[ManagedDatabase]:
        return self._scoped(ManagedDatabase).filter(ManagedDatabase.name == name).first()

    def create_database_record(
        self,
        name: str,
        database_type: str,
        instance: DatabaseInstance,
        description: str = "",
        status: str = "STATUS_PENDING"
    ) -> ManagedDatabase:
        if self.find_database_by_name(name) is not None:
            raise AlreadyExistsError(f"database '{name}' already exists", {'database_name': name})
        database = ManagedDatabase(
            tenant_id=self.tenant_id,
            workspace_id=self.workspace_id,
            name=name,
            description=description,
            database_type=database_type,
            vendor=instance.vendor,
            db_name=name,
            status=status,
            instance_id=instance.id,
        )
        self.session.add(database)
        self.session.flush()
        return database

    def get_instance(self, name_or_id: str) -> DatabaseInstance:
        query = self._scoped(DatabaseInstance)
        key = _as_uuid(name_or_id)
        instance = None
        if key is not None:
            instance = query.filter(DatabaseInstance.id == key).first()
        if instance is None:
            instance = query.filter(DatabaseInstance.name == name_or_id).first()
        if instance is None:
            raise NotFoundError(f"instance '{name_or_id}' not found", {'instance': name_or_id})
        return instance

    def get_repo(self, name: str) -> SchemaRepo:
        repo = self._scoped(SchemaRepo).filter(SchemaRepo.name == name).first()
        if repo is None:
            raise NotFoundError(f"schema repo '{name}' not found", {'repo': name})
        return repo

    def get_branch(self, repo: SchemaRepo, name: str) -> SchemaBranch:
        for branch in repo.branches:
            if branch.name == name:
                return branch
        raise NotFoundError(
            f"branch '{name}' not found in repo '{repo.name}'",
            {'repo': repo.name, 'branch': name}
        )

    def find_repo_for_database(self, database_id: str) -> Optional[SchemaRepo]:
        return (
            self._scoped(SchemaRepo)
            .filter(SchemaRepo.database_id == str(database_id))
            .order_by(SchemaRepo.created_at.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Resource containers and items
    # ------------------------------------------------------------------

    def get_container_by_uri(self, uri: str) -> Optional[ResourceContainer]:
        return self._scoped(ResourceContainer).filter(ResourceContainer.resource_uri == uri).first()

    def get_item_by_uri(self, uri: str) -> Optional[ResourceItem]:
        return (
            self.session.query(ResourceItem)
            .join(ResourceContainer, ResourceItem.container_id == ResourceContainer.id)
            .filter(
                ResourceContainer.tenant_id == self.tenant_id,
                ResourceContainer.workspace_id == self.workspace_id,
                ResourceItem.resource_uri == uri
            )
            .first()
        )

    def resolve_item(self, uri: str) -> Optional[ResourceItem]:
        """Look up an item by address, accepting legacy db:// column identifiers"""
        item = self.get_item_by_uri(uri)
        if item is not None:
            return item
        try:
            address = parse_resource_uri(uri)
        except InvalidArgumentError:
            return None
        if address.protocol is Protocol.LEGACY_DB:
            return self.get_item_by_uri(build_column_uri(address.database_id, address.table, address.column))
        return None

    def items_for_container(self, container: ResourceContainer) -> List[ResourceItem]:
        return list(container.items)

    def get_stream_container(self, integration: str, topic: str) -> ResourceContainer:
        """Find a topic container by integration (name or id) and topic name"""
        container = (
            self._scoped(ResourceContainer)
            .filter(
                ResourceContainer.topic_name == topic,
                (ResourceContainer.integration_name == integration)
                | (ResourceContainer.integration_id == integration)
            )
            .first()
        )
        if container is None:
            raise NotFoundError(
                f"stream topic '{topic}' not found for integration '{integration}'",
                {'integration': integration, 'topic': topic}
            )
        return container

    def unmapped_items(self, mapping: Mapping) -> List[ResourceItem]:
        """Target items no attached rule writes to"""
        if mapping.target_container_id is None:
            return []
        container = self.session.get(ResourceContainer, mapping.target_container_id)
        if container is None:
            return []
        mapped = set()
        for rule in mapping.rules:
            for item in rule.items:
                if item.role == ItemRole.TARGET.value:
                    mapped.add(item.resource_uri)
                    if item.item_id is not None:
                        mapped.add(item.item_id)
        return [item for item in container.items if item.resource_uri not in mapped and item.id not in mapped]

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    def find_mapping(self, name: str) -> Optional[Mapping]:
        return self._scoped(Mapping).filter(Mapping.name == name).first()

    def get_mapping(self, name: str) -> Mapping:
        mapping = self.find_mapping(name)
        if mapping is None:
            raise NotFoundError(f"mapping '{name}' not found", {'mapping': name})
        return mapping

    def list_mappings(self) -> List[Mapping]:
        return self._scoped(Mapping).order_by(Mapping.name).all()

    def create_mapping(
        self,
        name: str,
        description: str = "",
        mapping_type: str = "undefined",
        source_type: Optional[str] = None,
        target_type: Optional[str] = None,
        source_identifier: str = "",
        target_identifier: str = "",
        mapping_object: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None,
        source_container_id: Optional[uuid.UUID] = None,
        target_container_id: Optional[uuid.UUID] = None
    ) -> Mapping:
        """
        Insert a mapping and resolve its source/target containers

        Raises:
            AlreadyExistsError: If the name is taken in this workspace
        """
        if self.find_mapping(name) is not None:
            raise AlreadyExistsError(f"mapping '{name}' already exists", {'mapping': name})

        mapping = Mapping(
            tenant_id=self.tenant_id,
            workspace_id=self.workspace_id,
            name=name,
            description=description or "",
            mapping_type=mapping_type,
            source_type=getattr(source_type, "value", source_type),
            target_type=getattr(target_type, "value", target_type),
            source_identifier=source_identifier,
            target_identifier=target_identifier,
            source_container_id=source_container_id or self._container_id(source_identifier, "source"),
            target_container_id=target_container_id or self._container_id(target_identifier, "target"),
            mapping_object=mapping_object or {},
            owner_id=owner_id,
            validated=False,
            validation_errors=[],
            validation_warnings=[],
            rule_count=0,
        )
        self.session.add(mapping)
        self.session.flush()
        logger.info(f"Created mapping '{name}' ({mapping.mapping_type})")
        return mapping

    def _container_id(self, identifier: str, side: str) -> Optional[uuid.UUID]:
        if not identifier:
            return None
        container = self.get_container_by_uri(identifier)
        if container is None:
            logger.warning(f"No {side} container found for '{identifier}'")
            return None
        return container.id

    def modify_mapping(
        self,
        mapping: Mapping,
        description: Optional[str] = None,
        mapping_object: Optional[Dict[str, Any]] = None
    ) -> Mapping:
        if description is not None:
            mapping.description = description
        if mapping_object is not None:
            merged = dict(mapping.mapping_object or {})
            merged.update(mapping_object)
            mapping.mapping_object = merged
        self.session.flush()
        return mapping

    def delete_mapping(self, mapping: Mapping, keep_rules: bool = False) -> List[str]:
        """
        Delete a mapping and its links

        Returns:
            Names of rules deleted because no other mapping references them
        """
        rules = mapping.rules
        self.session.delete(mapping)
        self.session.flush()

        deleted = []
        if not keep_rules:
            for rule in rules:
                # drop stale in-memory links; the rows went with the mapping
                self.session.expire(rule, ['links'])
                if not self.mappings_for_rule(rule):
                    deleted.append(rule.name)
                    self.session.delete(rule)
            self.session.flush()
        logger.info(f"Deleted mapping '{mapping.name}' (rules removed: {len(deleted)})")
        return deleted

    def invalidate_mapping(self, mapping: Mapping) -> None:
        mapping.validated = False
        mapping.validated_at = None

    def update_validation_status(
        self,
        mapping: Mapping,
        is_valid: bool,
        errors: List[str],
        warnings: List[str]
    ) -> Mapping:
        mapping.validated = is_valid
        mapping.validated_at = datetime.now(timezone.utc)
        mapping.validation_errors = list(errors)
        mapping.validation_warnings = list(warnings)
        self.session.flush()
        return mapping

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def find_rule(self, name: str) -> Optional[MappingRule]:
        return self._scoped(MappingRule).filter(MappingRule.name == name).first()

    def get_rule(self, rule_id: str) -> MappingRule:
        key = _as_uuid(rule_id)
        rule = self._scoped(MappingRule).filter(MappingRule.id == key).first() if key else None
        if rule is None:
            raise NotFoundError(f"mapping rule '{rule_id}' not found", {'rule_id': str(rule_id)})
        return rule

    def get_rule_by_name(self, name: str) -> MappingRule:
        rule = self.find_rule(name)
        if rule is None:
            raise NotFoundError(f"mapping rule '{name}' not found", {'rule': name})
        return rule

    def rule_name_exists(self, name: str) -> bool:
        return self.find_rule(name) is not None

    def list_rules(self) -> List[MappingRule]:
        return self._scoped(MappingRule).order_by(MappingRule.name).all()

    def create_rule(
        self,
        name: str,
        cardinality: str,
        source_uris: List[str],
        target_uris: List[str],
        description: str = "",
        transformation_name: str = "",
        transformation_options: Optional[Dict[str, Any]] = None,
        rule_metadata: Optional[Dict[str, Any]] = None,
        owner_id: Optional[str] = None
    ) -> MappingRule:
        """
        Insert a rule with its ordered items

        Item ids are resolved where a matching resource item exists.

        Raises:
            AlreadyExistsError: If the name is taken in this workspace
        """
        if self.rule_name_exists(name):
            raise AlreadyExistsError(f"mapping rule '{name}' already exists", {'rule': name})

        rule = MappingRule(
            tenant_id=self.tenant_id,
            workspace_id=self.workspace_id,
            name=name,
            description=description or "",
            cardinality=getattr(cardinality, "value", cardinality),
            transformation_name=transformation_name or "",
            transformation_options=transformation_options or {},
            rule_metadata=rule_metadata or {},
            owner_id=owner_id,
        )
        rule.items = self._build_items(source_uris, target_uris)
        self.session.add(rule)
        self.session.flush()
        logger.debug(f"Created mapping rule '{name}' ({rule.cardinality})")
        return rule

    def _build_items(self, source_uris: List[str], target_uris: List[str]) -> List[MappingRuleItem]:
        items = []
        for role, uris in ((ItemRole.SOURCE, source_uris), (ItemRole.TARGET, target_uris)):
            for position, uri in enumerate(uris):
                resolved = self.resolve_item(uri)
                items.append(MappingRuleItem(
                    role=role.value,
                    position=position,
                    resource_uri=uri,
                    item_id=resolved.id if resolved is not None else None,
                ))
        return items

    def modify_rule(
        self,
        rule: MappingRule,
        description: Optional[str] = None,
        cardinality: Optional[str] = None,
        source_uris: Optional[List[str]] = None,
        target_uris: Optional[List[str]] = None,
        transformation_name: Optional[str] = None,
        transformation_options: Optional[Dict[str, Any]] = None,
        metadata_updates: Optional[Dict[str, Any]] = None
    ) -> List[Mapping]:
        """
        Apply a partial update and invalidate every mapping using the rule

        Returns:
            The invalidated mappings
        """
        if description is not None:
            rule.description = description
        if cardinality is not None:
            rule.cardinality = getattr(cardinality, "value", cardinality)
        if source_uris is not None or target_uris is not None:
            sources = source_uris if source_uris is not None else rule.source_uris
            targets = target_uris if target_uris is not None else rule.target_uris
            rule.items.clear()
            self.session.flush()
            rule.items.extend(self._build_items(sources, targets))
        if transformation_name is not None:
            rule.transformation_name = transformation_name
        if transformation_options is not None:
            rule.transformation_options = transformation_options
        if metadata_updates:
            rule.rule_metadata = rule.metadata_info.merge(metadata_updates).to_dict()

        mappings = self.mappings_for_rule(rule)
        for mapping in mappings:
            self.invalidate_mapping(mapping)
        self.session.flush()
        return mappings

    def delete_rule(self, rule: MappingRule) -> None:
        """
        Raises:
            FailedPreconditionError: While any mapping still references the rule
        """
        mappings = self.mappings_for_rule(rule)
        if mappings:
            names = [m.name for m in mappings]
            raise FailedPreconditionError(
                f"mapping rule '{rule.name}' is attached to {len(names)} mapping(s): {', '.join(names)}",
                {'rule': rule.name, 'mappings': names}
            )
        self.session.expire(rule, ['links'])
        self.session.delete(rule)
        self.session.flush()

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def _link(self, mapping: Mapping, rule: MappingRule) -> Optional[MappingRuleLink]:
        return (
            self.session.query(MappingRuleLink)
            .filter(MappingRuleLink.mapping_id == mapping.id, MappingRuleLink.rule_id == rule.id)
            .first()
        )

    def refresh_rule_count(self, mapping: Mapping) -> int:
        count = (
            self.session.query(func.count(MappingRuleLink.id))
            .filter(MappingRuleLink.mapping_id == mapping.id)
            .scalar()
        )
        mapping.rule_count = count or 0
        return mapping.rule_count

    def attach_rule(self, mapping: Mapping, rule: MappingRule, order: Optional[int] = None) -> MappingRuleLink:
        """
        Attach a rule at ``order`` (default: after the last attached rule)

        Raises:
            AlreadyExistsError: If the rule is already attached
        """
        if self._link(mapping, rule) is not None:
            raise AlreadyExistsError(
                f"mapping rule '{rule.name}' is already attached to mapping '{mapping.name}'",
                {'mapping': mapping.name, 'rule': rule.name}
            )
        if order is None:
            current = (
                self.session.query(func.max(MappingRuleLink.rule_order))
                .filter(MappingRuleLink.mapping_id == mapping.id)
                .scalar()
            )
            order = 0 if current is None else current + 1

        link = MappingRuleLink(mapping_id=mapping.id, rule_id=rule.id, rule_order=order)
        link.rule = rule
        mapping.rule_links.append(link)
        self.session.flush()

        self.invalidate_mapping(mapping)
        self.refresh_rule_count(mapping)
        self.session.flush()
        return link

    def detach_rule(self, mapping: Mapping, rule: MappingRule) -> None:
        """
        Raises:
            NotFoundError: If the rule is not attached to the mapping
        """
        link = self._link(mapping, rule)
        if link is None:
            raise NotFoundError(
                f"mapping rule '{rule.name}' is not attached to mapping '{mapping.name}'",
                {'mapping': mapping.name, 'rule': rule.name}
            )
        mapping.rule_links.remove(link)
        self.session.flush()

        self.invalidate_mapping(mapping)
        self.refresh_rule_count(mapping)
        self.session.flush()

    def update_rule_order(self, mapping: Mapping, rule: MappingRule, new_order: int) -> List[MappingRuleLink]:
        """Move a rule to ``new_order`` and renumber the other attachments around it"""
        link = self._link(mapping, rule)
        if link is None:
            raise NotFoundError(
                f"mapping rule '{rule.name}' is not attached to mapping '{mapping.name}'",
                {'mapping': mapping.name, 'rule': rule.name}
            )
        if new_order < 0:
            raise InvalidArgumentError("rule order cannot be negative", {'order': new_order})

        links = sorted(mapping.rule_links, key=lambda lk: lk.rule_order)
        links.remove(link)
        links.insert(min(new_order, len(links)), link)
        for position, current in enumerate(links):
            current.rule_order = position

        self.invalidate_mapping(mapping)
        self.session.flush()
        self.session.refresh(mapping, attribute_names=['rule_links'])
        return list(mapping.rule_links)

    def rules_for_mapping(self, mapping: Mapping) -> List[MappingRule]:
        links = (
            self.session.query(MappingRuleLink)
            .filter(MappingRuleLink.mapping_id == mapping.id)
            .order_by(MappingRuleLink.rule_order)
            .all()
        )
        return [link.rule for link in links]

    def mappings_for_rule(self, rule: MappingRule) -> List[Mapping]:
        return (
            self.session.query(Mapping)
            .join(MappingRuleLink, MappingRuleLink.mapping_id == Mapping.id)
            .filter(MappingRuleLink.rule_id == rule.id)
            .order_by(Mapping.name)
            .all()
        )

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    def create_filter(
        self,
        mapping: Mapping,
        filter_type: str,
        filter_expression: Dict[str, Any],
        filter_operator: Optional[str] = None,
        filter_order: Optional[int] = None
    ) -> MappingFilter:
        kind = validate_filter(filter_type, filter_expression)
        operator = validate_filter_operator(filter_operator)
        if filter_order is None:
            filter_order = len(mapping.filters)

        mapping_filter = MappingFilter(
            mapping_id=mapping.id,
            filter_type=kind.value,
            filter_expression=dict(filter_expression or {}),
            filter_order=filter_order,
            filter_operator=operator.value,
        )
        mapping.filters.append(mapping_filter)
        self.session.flush()
        return mapping_filter

    def list_filters(self, mapping: Mapping) -> List[MappingFilter]:
        return sorted(mapping.filters, key=lambda f: f.filter_order)

    def delete_filter(self, mapping: Mapping, filter_id: str) -> None:
        key = _as_uuid(filter_id)
        for mapping_filter in mapping.filters:
            if mapping_filter.id == key:
                mapping.filters.remove(mapping_filter)
                self.session.flush()
                return
        raise NotFoundError(f"filter '{filter_id}' not found on mapping '{mapping.name}'", {'filter_id': str(filter_id)})
