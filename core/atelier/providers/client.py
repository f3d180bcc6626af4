"""
Provider Clients - How provider nodes reach AI services.

A provider is addressed by its ``providerRef``. Sync providers are called
with ``invoke`` and answer with their output. Async providers are called with
``submit``: they accept the job, answer with an acknowledgement, and later
report back through the signed completion callback using the
``{taskId, stepIndex}`` descriptor they were given.

Clients raise ProviderCallError on failure; the provider node turns that
into a structured NodeError.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import httpx

from atelier.errors import ProviderCallError

logger = logging.getLogger(__name__)


@runtime_checkable
class ProviderClient(Protocol):
    async def invoke(
        self,
        provider_ref: str,
        inputs: dict[str, Any],
        *,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        """Call a sync provider and return its output."""
        ...

    async def submit(
        self,
        provider_ref: str,
        inputs: dict[str, Any],
        *,
        callback: dict[str, Any],
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        """Hand a job to an async provider and return its acknowledgement."""
        ...


def is_retryable_status(status: int | None) -> bool:
    """Server errors and rate limits are worth another attempt."""
    return status is not None and (status >= 500 or status == 429)


class HttpProviderClient:
    """
    Calls providers over HTTP.

    Endpoints come from the ``providers`` map in configuration.json
    (``providerRef -> URL``).

    Example:
        client = HttpProviderClient({"virtual-tryon": "https://gpu.example.com/tryon"})
        output = await client.invoke("virtual-tryon", {"image": url}, run_id="run_1")
    """

    def __init__(
        self,
        endpoints: dict[str, str],
        *,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        default_timeout: float = 30.0,
    ):
        self.endpoints = dict(endpoints)
        self._headers = {"Content-Type": "application/json", "Accept": "application/json"}
        self._headers.update(headers or {})
        self._client = client
        self._owns_client = client is None
        self._default_timeout = default_timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._default_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def invoke(
        self,
        provider_ref: str,
        inputs: dict[str, Any],
        *,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        payload = {"input": inputs, "runId": run_id, "nodeId": node_id}
        return await self._post(provider_ref, payload, timeout_ms)

    async def submit(
        self,
        provider_ref: str,
        inputs: dict[str, Any],
        *,
        callback: dict[str, Any],
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        payload = {"input": inputs, "callback": callback}
        return await self._post(provider_ref, payload, timeout_ms)

    async def _post(
        self, provider_ref: str, payload: dict[str, Any], timeout_ms: int | None
    ) -> dict[str, Any]:
        url = self.endpoints.get(provider_ref)
        if url is None:
            raise ProviderCallError(f"No endpoint configured for provider '{provider_ref}'")

        timeout = timeout_ms / 1000 if timeout_ms else self._default_timeout
        try:
            response = await self._get_client().post(
                url, json=payload, headers=self._headers, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise ProviderCallError(f"Provider '{provider_ref}' timed out", timeout=True) from e
        except httpx.RequestError as e:
            raise ProviderCallError(f"Provider '{provider_ref}' unreachable: {e}") from e

        return self._handle_response(provider_ref, response)

    def _handle_response(self, provider_ref: str, response: httpx.Response) -> dict[str, Any]:
        if response.status_code >= 400:
            try:
                body = response.json()
                detail = body.get("message", response.text) if isinstance(body, dict) else body
            except ValueError:
                detail = response.text
            raise ProviderCallError(
                f"Provider '{provider_ref}' error (HTTP {response.status_code}): {detail}",
                status=response.status_code,
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderCallError(
                f"Provider '{provider_ref}' returned invalid JSON", status=response.status_code
            ) from e
        return data if isinstance(data, dict) else {"result": data}


ProviderFunction = Callable[[dict[str, Any]], Awaitable[Any]]


class FunctionProviderClient:
    """
    Routes provider refs to local async functions.

    Used for embedding the engine in-process and in tests. ``submit`` only
    records the job; whoever plays the worker reports back through the
    completion callback.

        client = FunctionProviderClient({"upscale": upscale_image})
    """

    def __init__(self, functions: dict[str, ProviderFunction] | None = None):
        self.functions: dict[str, ProviderFunction] = dict(functions or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.submitted: list[dict[str, Any]] = []

    def register(self, provider_ref: str, func: ProviderFunction) -> None:
        self.functions[provider_ref] = func

    async def invoke(
        self,
        provider_ref: str,
        inputs: dict[str, Any],
        *,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        func = self.functions.get(provider_ref)
        if func is None:
            raise ProviderCallError(f"Unknown provider '{provider_ref}'", status=404)
        self.calls.append((provider_ref, inputs))
        result = await func(inputs)
        return result if isinstance(result, dict) else {"result": result}

    async def submit(
        self,
        provider_ref: str,
        inputs: dict[str, Any],
        *,
        callback: dict[str, Any],
        timeout_ms: int | None = None,
    ) -> dict[str, Any]:
        job = {"providerRef": provider_ref, "input": inputs, "callback": dict(callback)}
        self.submitted.append(job)
        return {"accepted": True, "jobId": f"{callback.get('taskId')}:{callback.get('stepIndex')}"}
