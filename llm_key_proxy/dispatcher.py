from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType
from typing import Any
from uuid import uuid4

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response

from llm_key_proxy.config import Provider
from llm_key_proxy.errors import (
    ProviderUnconfigured,
    ProxyError,
    RouteNotFound,
    error_envelope,
)
from llm_key_proxy.key_pool import mask_api_key
from llm_key_proxy.registry import ProviderRegistry
from llm_key_proxy.route_resolver import RouteMatch, RouteResolver
from llm_key_proxy.upstream import RawResponse, UpstreamClient, build_upstream_client

logger = logging.getLogger("uvicorn.error")

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    # httpx has already decoded the body.
    "content-encoding",
}

CacheKey = tuple[str, bool]


def _filter_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def _raw_request_target(request: Request) -> str:
    # request.url.path is percent-decoded; %2F, %3F and %23 must reach upstream as sent.
    raw_path = request.scope.get("raw_path")
    path = (
        raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
    )
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


class ClientCache:
    """Per-provider upstream clients behind a copy-on-write mapping.

    The live mapping is never mutated; additions and invalidations publish a
    new mapping with a single reference assignment.
    """

    def __init__(self, factory: Callable[[Provider], UpstreamClient]) -> None:
        self._factory = factory
        self._clients: Mapping[CacheKey, UpstreamClient] = MappingProxyType({})

    def get_or_create(self, provider: Provider, *, legacy: bool) -> UpstreamClient:
        cache_key = (provider.key, legacy)
        client = self._clients.get(cache_key)
        if client is not None:
            return client
        client = self._factory(provider)
        updated = dict(self._clients)
        # Keep a client that a concurrent caller published first.
        client = updated.setdefault(cache_key, client)
        self._clients = MappingProxyType(updated)
        logger.info(
            "upstream_client_created provider=%s api_type=%s legacy=%s keys=%d",
            provider.key,
            provider.api_type,
            legacy,
            len(client.pool),
        )
        return client

    def all(self) -> list[UpstreamClient]:
        return list(self._clients.values())

    def peek(self, name: str) -> UpstreamClient | None:
        key = name.strip().lower()
        return self._clients.get((key, False)) or self._clients.get((key, True))

    def invalidate(self, names: Iterable[str] | None = None) -> None:
        if names is None:
            self._clients = MappingProxyType({})
            return
        dropped = {name.strip().lower() for name in names}
        self._clients = MappingProxyType(
            {
                cache_key: client
                for cache_key, client in self._clients.items()
                if cache_key[0] not in dropped
            }
        )


class Dispatcher:
    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        http_client: httpx.AsyncClient,
        pool_reset_seconds: float = 0.0,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.registry = registry
        self.resolver = RouteResolver(registry)
        self.http_client = http_client
        self._pool_reset_seconds = pool_reset_seconds
        self._event_hook = event_hook
        self.clients = ClientCache(self._build_client)
        registry.on_change(self.clients.invalidate)

    def _build_client(self, provider: Provider) -> UpstreamClient:
        return build_upstream_client(
            provider,
            http_client=self.http_client,
            pool_reset_seconds=self._pool_reset_seconds,
        )

    def resolve(self, path: str) -> RouteMatch:
        match = self.resolver.resolve(path)
        if match is None:
            raise RouteNotFound(
                "Invalid API path. Use /{provider}/{path}, /gemini/v1/* or /openai/v1/*."
            )
        return match

    def client_for(self, match: RouteMatch) -> UpstreamClient:
        provider = (
            self.registry.lookup_legacy(match.provider_name)
            if match.legacy
            else self.registry.lookup(match.provider_name)
        )
        if provider is None:
            raise ProviderUnconfigured(
                f"Provider '{match.provider_name}' is not configured.",
                api_type=match.api_type,
            )
        try:
            return self.clients.get_or_create(provider, legacy=match.legacy)
        except ValueError as exc:
            raise ProviderUnconfigured(str(exc), api_type=match.api_type) from exc

    async def forward(
        self,
        match: RouteMatch,
        *,
        method: str,
        headers: Mapping[str, str],
        body: bytes | None,
        request_id: str,
    ) -> RawResponse:
        client = self.client_for(match)
        upstream_headers = client.filter_request_headers(headers)
        logger.info(
            "proxy_forward request_id=%s provider=%s api_type=%s legacy=%s upstream_path=%s",
            request_id,
            match.provider_name,
            match.api_type,
            match.legacy,
            match.upstream_path.split("?", 1)[0],
        )
        return await client.send(
            method,
            match.upstream_path,
            body,
            upstream_headers,
            request_id=request_id,
        )

    async def dispatch(self, request: Request) -> Response:
        request_id = (
            request.headers.get("x-request-id")
            or request.headers.get("x-correlation-id")
            or uuid4().hex[:12]
        )
        started = time.perf_counter()
        inbound_path = _raw_request_target(request)
        provider_name: str | None = None
        error_type: str | None = None

        try:
            body = await request.body()
            match = self.resolve(inbound_path)
            provider_name = match.provider_name
            raw = await self.forward(
                match,
                method=request.method,
                headers=request.headers,
                body=body or None,
                request_id=request_id,
            )
            response: Response = Response(
                content=raw.body,
                status_code=raw.status_code,
                headers=_filter_response_headers(raw.headers),
            )
        except ProxyError as exc:
            error_type = exc.error_type
            logger.warning(
                "proxy_error request_id=%s path=%s status=%d error_type=%s error=%s",
                request_id,
                request.url.path,
                exc.status_code,
                exc.error_type,
                exc.message,
            )
            response = self._error_response(exc)
        except Exception as exc:
            error_type = exc.__class__.__name__
            logger.error(
                "proxy_internal_error request_id=%s path=%s error_type=%s error=%s",
                request_id,
                request.url.path,
                error_type,
                self.redact_keys(str(exc)),
            )
            response = JSONResponse(
                status_code=500,
                content=error_envelope(
                    status_code=500,
                    message="Internal server error",
                    api_type=None,
                ),
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "proxy_response request_id=%s method=%s path=%s provider=%s status=%d latency_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            provider_name,
            response.status_code,
            latency_ms,
        )
        self._emit(
            {
                "event": "proxy_request",
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "provider": provider_name,
                "status": int(response.status_code),
                "latency_ms": round(latency_ms, 3),
                "error_type": error_type,
            }
        )
        response.headers["x-request-id"] = request_id
        return response

    def redact_keys(self, text: str) -> str:
        for client in self.clients.all():
            for key in client.pool.keys:
                if key in text:
                    text = text.replace(key, mask_api_key(key))
        return text

    @staticmethod
    def _error_response(exc: ProxyError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope(
                status_code=exc.status_code,
                message=exc.message,
                api_type=exc.api_type,
                error_type=exc.error_type,
            ),
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self._event_hook is None:
            return
        try:
            self._event_hook(event)
        except Exception as exc:
            logger.debug("request_event_failed event=%s error=%s", event["event"], exc)
