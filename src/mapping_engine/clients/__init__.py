"""HTTP clients for the collaborator services."""

from .anchor import HttpDataStream, HttpExecutionEngine
from .base import ServiceClient
from .mesh import HttpMeshTransport
from .transformation import HttpTransformationRegistry
from .unified_model import HttpUnifiedModelClient

__all__ = [
    "HttpDataStream",
    "HttpExecutionEngine",
    "HttpMeshTransport",
    "HttpTransformationRegistry",
    "HttpUnifiedModelClient",
    "ServiceClient",
]
