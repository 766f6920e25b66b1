from __future__ import annotations

from typing import Any

import httpx

from llm_key_proxy.config import ApiType


class ProxyError(RuntimeError):
    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str, *, api_type: ApiType | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.api_type = api_type


class RouteNotFound(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class ProviderUnconfigured(ProxyError):
    status_code = 503
    error_type = "provider_unconfigured"


class UpstreamTransportError(ProxyError):
    """Raised once every key failed without yielding an HTTP response."""

    status_code = 500
    error_type = "upstream_connection_error"

    def __init__(
        self,
        message: str,
        *,
        api_type: ApiType | None = None,
        cause: httpx.RequestError | None = None,
    ) -> None:
        super().__init__(message, api_type=api_type)
        self.cause = cause


_GEMINI_STATUS_NAMES = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    404: "NOT_FOUND",
    429: "RESOURCE_EXHAUSTED",
    503: "UNAVAILABLE",
}


def error_envelope(
    *,
    status_code: int,
    message: str,
    api_type: ApiType | None,
    error_type: str | None = None,
) -> dict[str, Any]:
    """Build an error body in the native shape of the provider family."""
    if api_type == "openai":
        code = error_type or "internal_error"
        return {"error": {"message": message, "type": code, "code": code}}
    return {
        "error": {
            "code": status_code,
            "message": message,
            "status": _GEMINI_STATUS_NAMES.get(status_code, "INTERNAL"),
        }
    }
