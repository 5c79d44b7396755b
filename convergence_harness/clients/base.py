import logging
from typing import Any, Optional

import httpx

from ..errors import AlreadyExistsError, ClientError, ConflictError, NotFoundError

logger = logging.getLogger("convergence_harness.clients")


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.text


def raise_for_status(response: httpx.Response, what: str):
    """Map HTTP failures onto the client error types."""
    if response.status_code < 400:
        return
    detail = _detail(response)
    message = f"{response.request.method} {what}: HTTP {response.status_code} - {detail}"
    if response.status_code == 404:
        raise NotFoundError(message, response.status_code)
    if response.status_code == 409:
        if "already exists" in detail:
            raise AlreadyExistsError(message, response.status_code)
        raise ConflictError(message, response.status_code)
    raise ClientError(message, response.status_code)


class ApiClient:
    """
    Thin JSON wrapper around an httpx.Client.

    Pass `http` to reuse an existing client (tests hand in a FastAPI
    TestClient); otherwise one is created for `base_url`.
    """

    def __init__(
        self,
        base_url: str = "",
        http: Optional[httpx.Client] = None,
        prefix: str = "",
        timeout: float = 30.0,
    ):
        self._owns_http = http is None
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.prefix = prefix.rstrip("/")

    def close(self):
        if self._owns_http:
            self.http.close()

    def request(self, method: str, path: str, json: Any = None, params: Optional[dict] = None) -> Any:
        url = f"{self.prefix}{path}"
        try:
            response = self.http.request(method, url, json=json, params=params)
        except httpx.TransportError as e:
            raise ClientError(f"{method} {url}: {e}") from e
        raise_for_status(response, url)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()
