"""
Tool Clients - How tool_call nodes reach tool servers.

A tool server is addressed by an endpoint ref from the ``tools`` section of
configuration.json. ``POST {url}/execute`` runs one tool with
``{"tool": name, "parameters": {...}}`` and answers ``{"result": ...}``.
``POST {url}/discover`` lists the served tools with their parameter schemas.

Clients raise ToolCallError on failure; the tool_call node turns that into a
structured NodeError.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from atelier.errors import ToolCallError, UnknownToolEndpointError

logger = logging.getLogger(__name__)


@runtime_checkable
class ToolClient(Protocol):
    async def call(
        self,
        endpoint_ref: str,
        tool_name: str,
        parameters: dict[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        """Run a tool and return its result."""
        ...

    async def describe(self, endpoint_ref: str, tool_name: str) -> dict[str, Any] | None:
        """The tool's discovery entry, or None when the server does not list it."""
        ...


class ToolEndpoint(BaseModel):
    """One configured tool server."""

    url: str
    auth_token: str | None = Field(default=None, alias="authToken")
    timeout_ms: int = Field(default=30_000, ge=1, alias="timeoutMs")

    model_config = {"extra": "allow", "populate_by_name": True}

    @classmethod
    def parse(cls, value: "str | dict[str, Any] | ToolEndpoint") -> "ToolEndpoint":
        if isinstance(value, ToolEndpoint):
            return value
        if isinstance(value, str):
            return cls(url=value)
        return cls.model_validate(value)

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers


class HttpToolClient:
    """
    Calls tool servers over HTTP.

    Example:
        client = HttpToolClient({"catalog": {"url": "https://tools.example.com", "authToken": t}})
        sizes = await client.call("catalog", "size_chart", {"sku": "D-104"})
    """

    def __init__(
        self,
        endpoints: dict[str, Any],
        *,
        client: httpx.AsyncClient | None = None,
    ):
        self.endpoints = {ref: ToolEndpoint.parse(value) for ref, value in endpoints.items()}
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _endpoint(self, endpoint_ref: str) -> ToolEndpoint:
        endpoint = self.endpoints.get(endpoint_ref)
        if endpoint is None:
            raise UnknownToolEndpointError(f"No tool endpoint configured for '{endpoint_ref}'")
        return endpoint

    async def call(
        self,
        endpoint_ref: str,
        tool_name: str,
        parameters: dict[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        endpoint = self._endpoint(endpoint_ref)
        timeout = (timeout_ms or endpoint.timeout_ms) / 1000
        try:
            response = await self._get_client().post(
                f"{endpoint.url.rstrip('/')}/execute",
                json={"tool": tool_name, "parameters": parameters},
                headers=endpoint.headers(),
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise ToolCallError(f"Tool '{tool_name}' timed out", timeout=True) from e
        except httpx.RequestError as e:
            raise ToolCallError(f"Tool server '{endpoint_ref}' unreachable: {e}") from e

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = response.text

        if response.status_code >= 400:
            detail = data.get("message", data) if isinstance(data, dict) else data
            raise ToolCallError(
                f"Tool '{tool_name}' error (HTTP {response.status_code}): {detail}",
                status=response.status_code,
                details={"data": data},
            )
        if not isinstance(data, dict):
            raise ToolCallError(
                f"Tool '{tool_name}' returned invalid JSON", status=response.status_code
            )
        return data.get("result")

    async def describe(self, endpoint_ref: str, tool_name: str) -> dict[str, Any] | None:
        endpoint = self._endpoint(endpoint_ref)
        try:
            response = await self._get_client().post(
                f"{endpoint.url.rstrip('/')}/discover",
                json={},
                headers=endpoint.headers(),
                timeout=endpoint.timeout_ms / 1000,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"⚠ Could not discover tools on '{endpoint_ref}': {e}")
            return None

        tools = data.get("tools") if isinstance(data, dict) else None
        for tool in tools or []:
            if isinstance(tool, dict) and tool.get("name") == tool_name:
                return tool
        return None


ToolFunction = Callable[[dict[str, Any]], Awaitable[Any]]


class FunctionToolClient:
    """
    Routes tool names to local async functions.

        client = FunctionToolClient({"size_chart": lookup_sizes})
    """

    def __init__(
        self,
        tools: dict[str, ToolFunction] | None = None,
        schemas: dict[str, dict[str, Any]] | None = None,
    ):
        self.tools: dict[str, ToolFunction] = dict(tools or {})
        self.schemas: dict[str, dict[str, Any]] = dict(schemas or {})
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def register(
        self, tool_name: str, func: ToolFunction, schema: dict[str, Any] | None = None
    ) -> None:
        self.tools[tool_name] = func
        if schema is not None:
            self.schemas[tool_name] = schema

    async def call(
        self,
        endpoint_ref: str,
        tool_name: str,
        parameters: dict[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        func = self.tools.get(tool_name)
        if func is None:
            raise ToolCallError(f"Unknown tool '{tool_name}'", status=404)
        self.calls.append((endpoint_ref, tool_name, parameters))
        return await func(parameters)

    async def describe(self, endpoint_ref: str, tool_name: str) -> dict[str, Any] | None:
        return self.schemas.get(tool_name)
