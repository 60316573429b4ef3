"""HTTP client for the transformation service."""

from typing import Any, Dict, Optional

from ..contracts.transformation_registry import TransformationInfo, TransformationRegistry
from ..lib.exceptions import NotFoundError
from .base import ServiceClient


class HttpTransformationRegistry(ServiceClient, TransformationRegistry):
    """TransformationRegistry over the transformation service REST API."""

    service_name = "transformation service"

    def get_transformation(self, name: str) -> Optional[TransformationInfo]:
        try:
            body = self.get(f"/api/v1/transformations/{name}")
        except NotFoundError:
            return None
        return TransformationInfo(
            name=body.get("name", name),
            transformation_type=body.get("transformation_type", ""),
            is_valid=bool(body.get("is_valid", True)),
            description=body.get("description", ""),
        )

    def execute(self, name: str, value: Any, options: Optional[Dict[str, Any]] = None) -> Any:
        body = self.post(f"/api/v1/transformations/{name}/execute", json={
            'value': value,
            'options': options or {},
        })
        return body.get("value")
