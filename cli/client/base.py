"""Synchronous HTTP client that unwraps the LabelOps response envelope"""

from typing import Any

import httpx
from rich.console import Console
from rich.panel import Panel

console = Console()

API_PREFIX = "/v1"


class LabelOpsError(Exception):
    """Raised for transport failures and `ok: false` envelopes"""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}
        self.request_id = request_id


def _error_from(response: httpx.Response, body: dict[str, Any]) -> LabelOpsError:
    error = body.get("error") or {}
    message = error.get("message") or body.get("detail") or "Unknown error"
    request_id = body.get("request_id") or response.headers.get("X-Request-ID")

    footer = f"request {request_id}" if request_id else None
    console.print(Panel(f"[red]{message}[/red]", title="API Error", subtitle=footer))

    return LabelOpsError(
        f"API Error {response.status_code}: {message}",
        status_code=response.status_code,
        details=error.get("details"),
        request_id=request_id,
    )


class APIClient:
    """Thin wrapper over `httpx.Client`; every path is relative to /v1"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 30,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(
            base_url=self.base_url + API_PREFIX,
            timeout=timeout,
            headers=headers or {},
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.client.close()

    def unwrap(self, response: httpx.Response) -> Any:
        """Return the envelope's `data`, raising `LabelOpsError` on failure"""
        try:
            body = response.json()
        except ValueError:
            console.print(f"[red]Failed to parse response: {response.text}[/red]")
            raise LabelOpsError(
                f"Invalid JSON response: {response.status_code}",
                status_code=response.status_code,
            ) from None

        if response.status_code >= 400 or body.get("ok") is False:
            raise _error_from(response, body)

        if "ok" not in body:
            return body
        data = body.get("data")
        return {} if data is None else data

    def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        try:
            response = self.client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.RequestError as e:
            console.print(f"[red]Connection error: {e}[/red]")
            raise LabelOpsError(f"Connection failed: {e}") from None
        return self.unwrap(response)

    def get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return self.request("GET", path, params=params, headers=headers)

    def post(
        self,
        path: str,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        return self.request("POST", path, json=json, headers=headers)
