"""
Execution Engine Contract

The execution engine performs real database I/O: fetch, insert, wipe,
schema discovery and deployment. The mapping engine reaches it only
through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class StreamEnded(Exception):
    """Raised by DataStream.recv() once the source has no more batches"""
    pass


@dataclass
class DataBatch:
    """One server-streamed chunk of source rows"""
    rows: List[Dict[str, Any]]
    success: bool = True
    message: str = ""
    is_complete: bool = False


@dataclass
class InsertResult:
    """Outcome of an insert call"""
    success: bool
    rows_affected: int = 0
    message: str = ""


@dataclass
class DeployOptions:
    """Options applied when deploying a schema to a database"""
    wipe: bool = False
    merge: bool = False


@dataclass
class FetchResult:
    """Unary fetch result"""
    rows: List[Dict[str, Any]] = field(default_factory=list)
    success: bool = True
    message: str = ""


class DataStream(ABC):
    """Server-streamed fetch handle"""

    @abstractmethod
    def recv(self) -> DataBatch:
        """
        Receive the next batch

        Returns:
            The next DataBatch

        Raises:
            StreamEnded: When the stream is exhausted
        """
        pass

    def close(self) -> None:
        """Release the underlying connection"""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class ExecutionEngine(ABC):
    """Abstract interface for database execution operations"""

    @abstractmethod
    def fetch_data(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        table_name: str
    ) -> FetchResult:
        """Fetch all rows of a table in one call"""
        pass

    @abstractmethod
    def fetch_data_stream(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        table_name: str,
        columns: Optional[List[str]] = None,
        batch_size: int = 1000
    ) -> DataStream:
        """Open a batched stream over a table's rows"""
        pass

    @abstractmethod
    def transform_data(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        table_name: str,
        rows: List[Dict[str, Any]],
        options: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """Apply transformation rules to rows destined for a target table"""
        pass

    @abstractmethod
    def insert_data(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        table_name: str,
        rows: List[Dict[str, Any]]
    ) -> InsertResult:
        """Insert rows in one call"""
        pass

    @abstractmethod
    def insert_batch(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        table_name: str,
        rows: List[Dict[str, Any]],
        use_transaction: bool = True
    ) -> InsertResult:
        """Insert one batch of rows, optionally inside a transaction"""
        pass

    @abstractmethod
    def wipe_database(self, tenant_id: str, workspace_id: str, database_id: str) -> None:
        """Remove all data from a database"""
        pass

    @abstractmethod
    def get_row_count(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        table_name: str
    ) -> int:
        """Count rows in a table"""
        pass

    @abstractmethod
    def get_database_schema(self, tenant_id: str, workspace_id: str, database_id: str) -> Dict[str, Any]:
        """Fetch the live schema model of a database"""
        pass

    @abstractmethod
    def deploy_schema(
        self,
        tenant_id: str,
        workspace_id: str,
        database_id: str,
        schema: Dict[str, Any],
        options: Optional[DeployOptions] = None
    ) -> None:
        """Create the objects in ``schema`` on the target database"""
        pass

    @abstractmethod
    def refresh_discovery(self, tenant_id: str, workspace_id: str, database_id: str) -> None:
        """Re-run schema discovery so new objects become resource items"""
        pass

    @abstractmethod
    def create_database(
        self,
        tenant_id: str,
        workspace_id: str,
        instance_id: str,
        database_name: str
    ) -> None:
        """Create a logical database on an instance"""
        pass

    @abstractmethod
    def connect_database(self, tenant_id: str, workspace_id: str, database_id: str) -> None:
        """Open the execution engine's connection to a registered database"""
        pass
