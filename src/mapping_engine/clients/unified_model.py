"""HTTP client for the unified-model service (schema matching and conversion)."""

from dataclasses import asdict
from typing import Any, Dict, Optional

from ..contracts.schema_matcher import (
    ColumnMatch,
    ConversionResult,
    MatchOptions,
    MatchResult,
    SchemaConverter,
    SchemaMatcher,
    TableMatch,
)
from .base import ServiceClient


def _column_match(data: Dict[str, Any]) -> ColumnMatch:
    return ColumnMatch(
        source_column=data.get("source_column", ""),
        target_column=data.get("target_column", ""),
        score=float(data.get("score", 0.0)),
        is_type_compatible=bool(data.get("is_type_compatible", False)),
        is_poor_match=bool(data.get("is_poor_match", False)),
        is_unmatched=bool(data.get("is_unmatched", False)),
    )


def parse_match_result(body: Dict[str, Any]) -> MatchResult:
    tables = [
        TableMatch(
            source_table=table.get("source_table", ""),
            target_table=table.get("target_table", ""),
            score=float(table.get("score", 0.0)),
            column_matches=[_column_match(c) for c in table.get("column_matches") or []],
        )
        for table in body.get("table_matches") or []
    ]
    return MatchResult(
        table_matches=tables,
        overall_similarity_score=float(body.get("overall_similarity_score", 0.0)),
        warnings=list(body.get("warnings") or []),
    )


class HttpUnifiedModelClient(ServiceClient, SchemaMatcher, SchemaConverter):
    """SchemaMatcher and SchemaConverter over the unified-model REST API."""

    service_name = "unified model service"

    def match(
        self,
        source_model: Dict[str, Any],
        target_model: Dict[str, Any],
        options: MatchOptions,
        source_enrichment: Optional[Dict[str, Any]] = None,
        target_enrichment: Optional[Dict[str, Any]] = None
    ) -> MatchResult:
        body = self.post("/api/v1/schemas/match", json={
            'source_model': source_model,
            'target_model': target_model,
            'options': asdict(options),
            'source_enrichment': source_enrichment,
            'target_enrichment': target_enrichment,
        })
        return parse_match_result(body)

    def convert(self, schema_json: str, source_type: str, target_type: str) -> ConversionResult:
        body = self.post("/api/v1/schemas/convert", json={
            'schema': schema_json,
            'source_type': source_type,
            'target_type': target_type,
        })
        return ConversionResult(
            converted_schema=body.get("converted_schema", ""),
            warnings=list(body.get("warnings") or []),
        )
