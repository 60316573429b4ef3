"""
Schema Matcher Contract

The unified-model service scores column/table similarity between two
schema models and converts schemas across engine types.

Schema models are plain dictionaries::

    {
        "tables": {"users": {"name": "users", "columns": {"id": {"name": "id", "data_type": "integer", ...}}}},
        "types": {"status_enum": {...}},
        "schemas": {"public": {...}}
    }
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class MatchOptions:
    """Weighted scoring configuration sent with every match request"""
    name_similarity_threshold: float = 0.3
    poor_match_threshold: float = 0.2
    name_weight: float = 0.4
    type_weight: float = 0.3
    classification_weight: float = 0.2
    privileged_data_weight: float = 0.1
    table_structure_weight: float = 0.3
    enable_cross_table_matching: bool = False


@dataclass
class ColumnMatch:
    source_column: str
    target_column: str
    score: float
    is_type_compatible: bool = False
    is_poor_match: bool = False
    is_unmatched: bool = False


@dataclass
class TableMatch:
    source_table: str
    target_table: str
    score: float = 0.0
    column_matches: List[ColumnMatch] = field(default_factory=list)


@dataclass
class MatchResult:
    table_matches: List[TableMatch] = field(default_factory=list)
    overall_similarity_score: float = 0.0
    warnings: List[str] = field(default_factory=list)


@dataclass
class ConversionResult:
    converted_schema: str
    warnings: List[str] = field(default_factory=list)


class SchemaMatcher(ABC):
    """Abstract interface for schema similarity matching"""

    @abstractmethod
    def match(
        self,
        source_model: Dict[str, Any],
        target_model: Dict[str, Any],
        options: MatchOptions,
        source_enrichment: Optional[Dict[str, Any]] = None,
        target_enrichment: Optional[Dict[str, Any]] = None
    ) -> MatchResult:
        """
        Score the correspondence between two schema models

        Args:
            source_model: Source schema model
            target_model: Target schema model
            options: Scoring weights and thresholds
            source_enrichment: Optional classification data for the source
            target_enrichment: Optional classification data for the target

        Returns:
            Per-table/per-column scores and flags
        """
        pass


class SchemaConverter(ABC):
    """Abstract interface for cross-engine schema conversion"""

    @abstractmethod
    def convert(self, schema_json: str, source_type: str, target_type: str) -> ConversionResult:
        """Translate a JSON schema model from one engine type to another"""
        pass
