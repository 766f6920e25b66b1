from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import Response

from llm_key_proxy.admin import router as admin_router
from llm_key_proxy.config import build_legacy_providers
from llm_key_proxy.dispatcher import Dispatcher
from llm_key_proxy.gateway.auth import AdminAuthenticator
from llm_key_proxy.gateway.request_log import JsonlRequestLogger, RequestLogBuffer
from llm_key_proxy.key_pool import mask_api_key
from llm_key_proxy.registry import ProviderRegistry
from llm_key_proxy.settings import Settings, get_settings

app = FastAPI(
    title="LLM Key Proxy",
    description="Gemini and OpenAI-compatible API proxy with API key rotation.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


@app.middleware("http")
async def admin_auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/admin"):
        return await call_next(request)

    authenticator: AdminAuthenticator | None = getattr(
        app.state, "authenticator", None
    )
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def _build_http_client(settings: Settings) -> httpx.AsyncClient:
    timeout = max(0.1, float(settings.upstream_timeout_seconds))
    read_timeout = settings.upstream_read_timeout_seconds or timeout
    write_timeout = settings.upstream_write_timeout_seconds or timeout
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=None,
            connect=max(0.1, float(settings.upstream_connect_timeout_seconds)),
            read=max(0.1, float(read_timeout)),
            write=max(0.1, float(write_timeout)),
            pool=max(0.1, float(settings.upstream_pool_timeout_seconds)),
        ),
        limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
    )


def _build_registry(settings: Settings) -> ProviderRegistry:
    legacy = build_legacy_providers(
        gemini_keys=settings.gemini_api_keys_list,
        gemini_base_url=settings.gemini_base_url,
        openai_keys=settings.openai_api_keys_list,
        openai_base_url=settings.legacy_openai_base_url,
    )
    registry = ProviderRegistry.from_config_file(
        settings.providers_config_path, legacy=legacy
    )
    if not len(registry) and not legacy and not settings.admin_enabled:
        raise RuntimeError(
            "No providers configured and no admin API keys set. Configure "
            f"'{settings.providers_config_path}', GEMINI_API_KEYS/OPENAI_API_KEYS, "
            "or ADMIN_API_KEYS."
        )
    for provider in [*registry.providers(), *registry.legacy_providers()]:
        logger.info(
            "provider_configured provider=%s api_type=%s base_url=%s keys=%s",
            provider.key,
            provider.api_type,
            provider.base_url,
            ",".join(mask_api_key(key) for key in provider.resolved_keys()),
        )
    return registry


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    # httpx logs full request URLs at INFO, which would expose Gemini query keys.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    registry = _build_registry(settings)
    request_logger = JsonlRequestLogger(
        path=settings.request_log_path,
        enabled=settings.request_log_enabled,
    )
    request_log_buffer = RequestLogBuffer(max_events=settings.request_log_buffer_size)

    def request_event_hook(event: dict[str, Any]) -> None:
        request_log_buffer.append(event)
        request_logger.log(event)

    app.state.settings = settings
    app.state.authenticator = AdminAuthenticator(settings)
    app.state.registry = registry
    app.state.request_logger = request_logger
    app.state.request_log_buffer = request_log_buffer
    app.state.dispatcher = Dispatcher(
        registry=registry,
        http_client=_build_http_client(settings),
        pool_reset_seconds=settings.key_pool_reset_seconds,
        event_hook=request_event_hook,
    )
    logger.info(
        (
            "startup complete providers_config_path=%s providers=%d legacy=%s "
            "admin_enabled=%s request_log_enabled=%s request_log_path=%s"
        ),
        settings.providers_config_path,
        len(registry),
        ",".join(provider.key for provider in registry.legacy_providers()) or "-",
        settings.admin_enabled,
        settings.request_log_enabled,
        settings.request_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    dispatcher: Dispatcher | None = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        await dispatcher.http_client.aclose()
    request_logger: JsonlRequestLogger | None = getattr(
        app.state, "request_logger", None
    )
    if request_logger is not None:
        request_logger.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    registry: ProviderRegistry = app.state.registry
    return {
        "status": "ok",
        "providers": len(registry) + len(registry.legacy_providers()),
    }


app.include_router(admin_router)


@app.api_route("/{full_path:path}", methods=PROXY_METHODS)
async def proxy(full_path: str, request: Request) -> Response:
    dispatcher: Dispatcher = app.state.dispatcher
    return await dispatcher.dispatch(request)


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "llm_key_proxy.main:app", host=settings.host, port=settings.port, reload=False
    )


if __name__ == "__main__":
    run()
