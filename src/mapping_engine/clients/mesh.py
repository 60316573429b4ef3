"""HTTP transport to the inter-node mesh."""

from dataclasses import asdict
from typing import Optional

import httpx

from ..contracts.mesh_transport import BroadcastRecord, MeshTransport
from .base import ServiceClient


class HttpMeshTransport(ServiceClient, MeshTransport):
    """Posts mutation records to the local mesh node, which fans them out to peers."""

    service_name = "mesh service"

    def __init__(self, base_url: str, timeout: Optional[float] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.enabled = bool(base_url and base_url.strip())
        super().__init__(base_url or "http://localhost", timeout=timeout, transport=transport)

    def should_broadcast(self) -> bool:
        return self.enabled

    def broadcast(self, record: BroadcastRecord, timeout: float) -> None:
        self.post("/api/v1/mesh/broadcast", json=asdict(record), timeout=timeout)
