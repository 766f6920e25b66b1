from __future__ import annotations

import logging
from typing import Any

import yaml
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, ValidationError

from llm_key_proxy.config import ApiType, Provider
from llm_key_proxy.dispatcher import Dispatcher
from llm_key_proxy.gateway.request_log import RequestLogBuffer
from llm_key_proxy.key_pool import mask_api_key
from llm_key_proxy.registry import ProviderRegistry

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/admin", tags=["admin"])


class ProviderUpdate(BaseModel):
    api_type: ApiType | str = "openai"
    base_url: str
    keys: list[str] = Field(default_factory=list)
    keys_env: str | None = None


def _registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def _dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def _describe_provider(
    provider: Provider, dispatcher: Dispatcher, *, legacy: bool
) -> dict[str, Any]:
    client = dispatcher.clients.peek(provider.key)
    return {
        "name": provider.name,
        "api_type": provider.api_type,
        "base_url": provider.base_url,
        "legacy": legacy,
        "keys_env": provider.keys_env,
        "keys": [mask_api_key(key) for key in provider.resolved_keys()],
        "pool": client.pool.snapshot() if client is not None else None,
    }


@router.get("/providers")
async def list_providers(request: Request) -> dict[str, Any]:
    registry = _registry(request)
    dispatcher = _dispatcher(request)
    data = [
        _describe_provider(provider, dispatcher, legacy=False)
        for provider in registry.providers()
    ]
    shadowed = {provider.key for provider in registry.providers()}
    data.extend(
        _describe_provider(provider, dispatcher, legacy=True)
        for provider in registry.legacy_providers()
        if provider.key not in shadowed
    )
    return {"object": "list", "data": data}


@router.put("/providers/{name}")
async def upsert_provider(
    name: str, update: ProviderUpdate, request: Request
) -> dict[str, Any]:
    try:
        provider = Provider(name=name, **update.model_dump())
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail=exc.errors(include_url=False, include_input=False),
        ) from exc
    if not provider.is_usable:
        raise HTTPException(
            status_code=400,
            detail=f"Provider '{provider.name}' needs at least one API key.",
        )
    _registry(request).upsert(provider)
    logger.info(
        "admin_provider_upserted provider=%s api_type=%s keys=%d",
        provider.key,
        provider.api_type,
        len(provider.resolved_keys()),
    )
    return _describe_provider(provider, _dispatcher(request), legacy=False)


@router.delete("/providers/{name}")
async def delete_provider(name: str, request: Request) -> dict[str, Any]:
    if not _registry(request).remove(name):
        raise HTTPException(status_code=404, detail=f"Unknown provider '{name}'.")
    logger.info("admin_provider_removed provider=%s", name.strip().lower())
    return {"name": name, "deleted": True}


@router.post("/providers/{name}/reset")
async def reset_provider_pool(name: str, request: Request) -> dict[str, Any]:
    registry = _registry(request)
    if registry.lookup(name) is None and registry.lookup_legacy(name) is None:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{name}'.")
    client = _dispatcher(request).clients.peek(name)
    if client is None:
        return {"name": name, "reset": False}
    client.pool.reset()
    return {"name": name, "reset": True, "pool": client.pool.snapshot()}


@router.post("/reload")
async def reload_providers(request: Request) -> dict[str, Any]:
    registry = _registry(request)
    if registry.config_path is None:
        raise HTTPException(
            status_code=409, detail="No provider configuration file is configured."
        )
    try:
        registry.reload()
    except (ValueError, yaml.YAMLError) as exc:
        # pydantic's ValidationError is a ValueError.
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"providers": len(registry)}


@router.get("/logs")
async def recent_logs(
    request: Request, limit: int = Query(default=50, ge=0, le=1000)
) -> dict[str, Any]:
    buffer: RequestLogBuffer = request.app.state.request_log_buffer
    return {"object": "list", "data": buffer.recent(limit)}
