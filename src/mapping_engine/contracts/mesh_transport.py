"""
Mesh Transport Contract

Best-effort propagation of entity mutations to peer nodes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class BroadcastRecord:
    table: str
    operation: str  # insert, update or delete
    record: Dict[str, Any] = field(default_factory=dict)
    primary_key: Dict[str, Any] = field(default_factory=dict)


class MeshTransport(ABC):
    """Abstract interface for the inter-node mesh"""

    @abstractmethod
    def should_broadcast(self) -> bool:
        """False on single-node deployments"""
        pass

    @abstractmethod
    def broadcast(self, record: BroadcastRecord, timeout: float) -> None:
        """Send one record to peers; may raise on transport failure"""
        pass
