"""
Typed views over the JSON metadata stored on rules and mappings.

Known provenance keys are dataclass fields; anything else lands in
``extra`` and is written back unchanged, so keys added by other writers
survive a read-modify-write cycle.
"""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from .enums import MatchType


def _known_field_names(cls) -> set:
    return {f.name for f in fields(cls) if f.name != "extra"}


@dataclass
class RuleMetadata:
    """Provenance and match information recorded on a mapping rule"""
    match_type: Optional[MatchType] = None
    match_score: Optional[float] = None
    type_compatible: Optional[bool] = None
    source_table: Optional[str] = None
    source_column: Optional[str] = None
    source_database_id: Optional[str] = None
    source_database_name: Optional[str] = None
    target_table: Optional[str] = None
    target_column: Optional[str] = None
    target_database_id: Optional[str] = None
    target_database_name: Optional[str] = None
    source_uris: Optional[List[str]] = None
    target_uris: Optional[List[str]] = None
    source_resource_uri: Optional[str] = None
    target_resource_uri: Optional[str] = None
    transformation_name: Optional[str] = None
    transformation_options: Optional[Dict[str, Any]] = None
    column_data_type: Optional[str] = None
    column_nullable: Optional[bool] = None
    is_primary_key: Optional[bool] = None
    generated_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RuleMetadata":
        data = dict(data or {})
        known = _known_field_names(cls)
        kwargs = {key: data.pop(key) for key in list(data) if key in known}
        if kwargs.get("match_type") is not None:
            try:
                kwargs["match_type"] = MatchType(kwargs["match_type"])
            except ValueError:
                # Unknown provenance labels are preserved verbatim
                data["match_type"] = kwargs.pop("match_type")
        return cls(extra=data, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = dict(self.extra)
        for name in _known_field_names(type(self)):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, MatchType):
                value = value.value
            result[name] = value
        return result

    def merge(self, updates: Optional[Dict[str, Any]]) -> "RuleMetadata":
        """Return a new instance with ``updates`` laid over this one"""
        merged = self.to_dict()
        merged.update(updates or {})
        return RuleMetadata.from_dict(merged)


@dataclass
class MappingProvenance:
    """Human-readable provenance stored as a mapping's ``mapping_object``"""
    source_database_name: Optional[str] = None
    source_database_id: Optional[str] = None
    source_table_name: Optional[str] = None
    target_database_name: Optional[str] = None
    target_database_id: Optional[str] = None
    target_table_name: Optional[str] = None
    target_mcp_resource: Optional[str] = None
    source_integration_name: Optional[str] = None
    source_integration_id: Optional[str] = None
    source_topic_name: Optional[str] = None
    target_integration_name: Optional[str] = None
    target_integration_id: Optional[str] = None
    target_topic_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MappingProvenance":
        data = dict(data or {})
        known = _known_field_names(cls)
        kwargs = {key: data.pop(key) for key in list(data) if key in known}
        return cls(extra=data, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = dict(self.extra)
        for name in _known_field_names(type(self)):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result
