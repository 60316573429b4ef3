"""HTTP client for the execution engine (anchor service)."""

import json
import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import httpx

from ..contracts.execution_engine import (
    DataBatch,
    DataStream,
    DeployOptions,
    ExecutionEngine,
    FetchResult,
    InsertResult,
    StreamEnded,
)
from ..lib.exceptions import InternalError, UnavailableError
from .base import ServiceClient, raise_for_response


class HttpDataStream(DataStream):
    """NDJSON response body read one batch per line."""

    def __init__(self, client: httpx.Client, path: str, payload: Dict[str, Any]):
        self._context = client.stream("POST", path, json=payload)
        try:
            self._response = self._context.__enter__()
        except httpx.TransportError as e:
            raise UnavailableError(f"anchor service unreachable: {e}", {'path': path})
        if not self._response.is_success:
            self._response.read()
            self.close()
            raise_for_response("anchor service", self._response)
        self._lines = self._response.iter_lines()
        self._closed = False

    def recv(self) -> DataBatch:
        try:
            for line in self._lines:
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except ValueError as e:
                    raise InternalError(f"anchor service sent an invalid batch: {e}")
                return DataBatch(
                    rows=data.get("rows") or [],
                    success=data.get("success", True),
                    message=data.get("message", ""),
                    is_complete=data.get("is_complete", False),
                )
        except httpx.TransportError as e:
            raise UnavailableError(f"anchor stream interrupted: {e}")
        raise StreamEnded()

    def close(self) -> None:
        if getattr(self, "_closed", False):
            return
        self._closed = True
        self._context.__exit__(None, None, None)


class HttpExecutionEngine(ServiceClient, ExecutionEngine):
    """ExecutionEngine backed by the anchor service REST API."""

    service_name = "anchor service"

    @staticmethod
    def _db_path(tenant_id: str, workspace_id: str, database_id: str) -> str:
        return f"/api/v1/tenants/{tenant_id}/workspaces/{workspace_id}/databases/{database_id}"

    def _table_path(self, tenant_id: str, workspace_id: str, database_id: str, table_name: str) -> str:
        return f"{self._db_path(tenant_id, workspace_id, database_id)}/tables/{table_name}"

    def fetch_data(self, tenant_id, workspace_id, database_id, table_name) -> FetchResult:
        body = self.post(f"{self._table_path(tenant_id, workspace_id, database_id, table_name)}/fetch")
        return FetchResult(
            rows=body.get("rows") or [],
            success=body.get("success", True),
            message=body.get("message", ""),
        )

    def fetch_data_stream(
        self,
        tenant_id,
        workspace_id,
        database_id,
        table_name,
        columns: Optional[List[str]] = None,
        batch_size: int = 1000
    ) -> DataStream:
        path = f"{self._table_path(tenant_id, workspace_id, database_id, table_name)}/fetch/stream"
        return HttpDataStream(self.client, path, {'columns': columns or [], 'batch_size': batch_size})

    def transform_data(self, tenant_id, workspace_id, database_id, table_name, rows, options) -> List[Dict[str, Any]]:
        body = self.post(
            f"{self._table_path(tenant_id, workspace_id, database_id, table_name)}/transform",
            json={'rows': rows, 'options': options}
        )
        return body.get("rows") or []

    def _insert_result(self, body: Dict[str, Any]) -> InsertResult:
        return InsertResult(
            success=body.get("success", True),
            rows_affected=body.get("rows_affected", 0),
            message=body.get("message", ""),
        )

    def insert_data(self, tenant_id, workspace_id, database_id, table_name, rows) -> InsertResult:
        body = self.post(
            f"{self._table_path(tenant_id, workspace_id, database_id, table_name)}/insert",
            json={'rows': rows}
        )
        return self._insert_result(body)

    def insert_batch(self, tenant_id, workspace_id, database_id, table_name, rows, use_transaction=True) -> InsertResult:
        body = self.post(
            f"{self._table_path(tenant_id, workspace_id, database_id, table_name)}/insert-batch",
            json={'rows': rows, 'use_transaction': use_transaction}
        )
        return self._insert_result(body)

    def wipe_database(self, tenant_id, workspace_id, database_id) -> None:
        self.post(f"{self._db_path(tenant_id, workspace_id, database_id)}/wipe")

    def get_row_count(self, tenant_id, workspace_id, database_id, table_name) -> int:
        body = self.get(f"{self._table_path(tenant_id, workspace_id, database_id, table_name)}/count")
        return int(body.get("row_count", 0))

    def get_database_schema(self, tenant_id, workspace_id, database_id) -> Dict[str, Any]:
        body = self.get(f"{self._db_path(tenant_id, workspace_id, database_id)}/schema")
        return body.get("schema") or {}

    def deploy_schema(self, tenant_id, workspace_id, database_id, schema, options: Optional[DeployOptions] = None) -> None:
        self.post(
            f"{self._db_path(tenant_id, workspace_id, database_id)}/deploy",
            json={'schema': schema, 'options': asdict(options or DeployOptions())}
        )

    def refresh_discovery(self, tenant_id, workspace_id, database_id) -> None:
        self.post(f"{self._db_path(tenant_id, workspace_id, database_id)}/discovery/refresh")

    def create_database(self, tenant_id, workspace_id, instance_id, database_name) -> None:
        self.post(
            f"/api/v1/tenants/{tenant_id}/workspaces/{workspace_id}/instances/{instance_id}/databases",
            json={'database_name': database_name}
        )

    def connect_database(self, tenant_id, workspace_id, database_id) -> None:
        self.post(f"{self._db_path(tenant_id, workspace_id, database_id)}/connect")
