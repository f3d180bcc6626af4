"""Clients for external AI providers and tool servers."""

from atelier.providers.client import (
    FunctionProviderClient,
    HttpProviderClient,
    ProviderClient,
    is_retryable_status,
)
from atelier.providers.tools import FunctionToolClient, HttpToolClient, ToolClient, ToolEndpoint

__all__ = [
    "FunctionProviderClient",
    "FunctionToolClient",
    "HttpProviderClient",
    "HttpToolClient",
    "ProviderClient",
    "ToolClient",
    "ToolEndpoint",
    "is_retryable_status",
]
