"""Shared httpx plumbing for collaborator service clients."""

import logging
from typing import Any, Dict, Optional

import httpx

from ..config.settings import Settings
from ..lib.exceptions import InternalError, NotFoundError, UnavailableError

logger = logging.getLogger(__name__)


def error_message(response: httpx.Response) -> str:
    """Best-effort extraction of an error message from a service response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


def raise_for_response(service: str, response: httpx.Response) -> None:
    """
    Map a non-2xx response to an engine exception.

    Raises:
        NotFoundError: On 404
        UnavailableError: On 502, 503 and 504
        InternalError: On any other error status
    """
    if response.is_success:
        return
    message = f"{service} returned {response.status_code}: {error_message(response)}"
    details = {'service': service, 'status_code': response.status_code}
    if response.status_code == 404:
        raise NotFoundError(message, details)
    if response.status_code in (502, 503, 504):
        raise UnavailableError(message, details)
    raise InternalError(message, details)


class ServiceClient:
    """Synchronous JSON client for one collaborator service."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = Settings.SERVICE_TIMEOUT_SECONDS if timeout is None else timeout
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={'Accept': 'application/json', 'User-Agent': 'mapping-engine'}
        )

    def request(self, method: str, path: str, **kwargs) -> Any:
        """
        Send a request and decode the JSON body.

        Raises:
            UnavailableError: If the service cannot be reached or times out
        """
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise UnavailableError(
                f"{self.service_name} unreachable at {self.base_url}: {e}",
                {'service': self.service_name, 'path': path}
            )
        raise_for_response(self.service_name, response)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise InternalError(f"{self.service_name} returned invalid JSON for {path}: {e}")

    def get(self, path: str, **kwargs) -> Any:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, json: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return self.request("POST", path, json=json, **kwargs)

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
