from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import ClassVar

import httpx

from llm_key_proxy.config import ApiType, Provider
from llm_key_proxy.errors import UpstreamTransportError
from llm_key_proxy.key_pool import KeyPool, mask_api_key

logger = logging.getLogger("uvicorn.error")

RATE_LIMITED_STATUS = 429
EXHAUSTED_MESSAGE = "All API keys have been rate limited"
BASE_FORWARDED_HEADERS = frozenset({"content-type", "accept", "user-agent"})


@dataclass(slots=True)
class RawResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def _json_response(status_code: int, payload: dict[str, object]) -> RawResponse:
    return RawResponse(
        status_code=status_code,
        headers={"content-type": "application/json"},
        body=json.dumps(payload, separators=(",", ":")).encode("utf-8"),
    )


def _redact(text: str, key: str) -> str:
    return text.replace(key, mask_api_key(key)) if key else text


class UpstreamClient(ABC):
    """Sends one request to a provider, rotating keys on rate limits.

    Subclasses only decide where the credential goes and which inbound headers
    the provider family understands.
    """

    api_type: ClassVar[ApiType]
    extra_forwarded_headers: ClassVar[frozenset[str]] = frozenset()

    def __init__(
        self,
        *,
        name: str,
        base_url: str,
        pool: KeyPool,
        http_client: httpx.AsyncClient,
        pool_reset_seconds: float = 0.0,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.pool = pool
        self._http_client = http_client
        self._pool_reset_seconds = max(0.0, float(pool_reset_seconds))

    @classmethod
    def forwarded_headers(cls) -> frozenset[str]:
        return BASE_FORWARDED_HEADERS | cls.extra_forwarded_headers

    @classmethod
    def filter_request_headers(cls, incoming: Mapping[str, str]) -> dict[str, str]:
        allowed = cls.forwarded_headers()
        return {
            name.lower(): value
            for name, value in incoming.items()
            if name.lower() in allowed
        }

    @abstractmethod
    def apply_credential(
        self, url: httpx.URL, headers: dict[str, str], key: str
    ) -> tuple[httpx.URL, dict[str, str]]:
        """Return the URL and headers carrying ``key`` for one attempt."""

    @abstractmethod
    def exhausted_response(self) -> RawResponse:
        """Error body returned when every key is rate limited."""

    def build_url(self, path: str) -> httpx.URL:
        if path and not path.startswith(("/", "?")):
            path = "/" + path
        return httpx.URL(f"{self.base_url}{path}")

    async def attempt(
        self,
        method: str,
        path: str,
        body: bytes | None,
        headers: Mapping[str, str],
        key: str,
    ) -> RawResponse:
        request_headers = dict(headers)
        content = body if body and method.upper() != "GET" else None
        if content is not None:
            request_headers.setdefault("content-type", "application/json")
        url, request_headers = self.apply_credential(
            self.build_url(path), request_headers, key
        )
        response = await self._http_client.request(
            method.upper(),
            url,
            content=content,
            headers=request_headers,
        )
        return RawResponse(
            status_code=response.status_code,
            headers=dict(response.headers.items()),
            body=response.content,
        )

    async def send(
        self,
        method: str,
        path: str,
        body: bytes | None,
        headers: Mapping[str, str],
        *,
        request_id: str = "-",
    ) -> RawResponse:
        self._reset_pool_after_cooldown()
        last_error: httpx.RequestError | None = None
        last_error_key = ""
        rate_limited: RawResponse | None = None
        attempts = 0

        while (key := self.pool.current_key()) is not None:
            attempts += 1
            masked = mask_api_key(key)
            started = time.perf_counter()
            try:
                response = await self.attempt(method, path, body, headers, key)
            except httpx.RequestError as exc:
                last_error = exc
                last_error_key = key
                logger.warning(
                    (
                        "upstream_request_error request_id=%s provider=%s key=%s "
                        "attempt=%d error_type=%s error=%s"
                    ),
                    request_id,
                    self.name,
                    masked,
                    attempts,
                    exc.__class__.__name__,
                    _redact(str(exc), key),
                )
                self.pool.mark_failed(key)
                continue

            latency_ms = (time.perf_counter() - started) * 1000.0
            if response.status_code == RATE_LIMITED_STATUS:
                logger.info(
                    "upstream_rate_limited request_id=%s provider=%s key=%s attempt=%d latency_ms=%.2f",
                    request_id,
                    self.name,
                    masked,
                    attempts,
                    latency_ms,
                )
                rate_limited = response
                self.pool.mark_failed(key)
                continue

            logger.info(
                "upstream_response request_id=%s provider=%s key=%s attempt=%d status=%d latency_ms=%.2f",
                request_id,
                self.name,
                masked,
                attempts,
                response.status_code,
                latency_ms,
            )
            self.pool.advance()
            return response

        if last_error is None:
            logger.warning(
                "upstream_keys_exhausted request_id=%s provider=%s attempts=%d relayed=%s",
                request_id,
                self.name,
                attempts,
                rate_limited is not None,
            )
            return rate_limited or self.exhausted_response()

        raise UpstreamTransportError(
            (
                f"Could not reach provider '{self.name}' "
                f"({last_error.__class__.__name__}): "
                f"{_redact(str(last_error), last_error_key)}"
            ),
            api_type=self.api_type,
            cause=last_error,
        ) from last_error

    def _reset_pool_after_cooldown(self) -> None:
        if self._pool_reset_seconds <= 0 or not self.pool.is_exhausted():
            return
        if self.pool.exhausted_for_seconds() >= self._pool_reset_seconds:
            self.pool.reset()


class GeminiClient(UpstreamClient):
    api_type: ClassVar[ApiType] = "gemini"
    extra_forwarded_headers: ClassVar[frozenset[str]] = frozenset(
        {"x-goog-user-project"}
    )

    def apply_credential(
        self, url: httpx.URL, headers: dict[str, str], key: str
    ) -> tuple[httpx.URL, dict[str, str]]:
        return url.copy_set_param("key", key), headers

    def exhausted_response(self) -> RawResponse:
        return _json_response(
            RATE_LIMITED_STATUS,
            {
                "error": {
                    "code": RATE_LIMITED_STATUS,
                    "message": EXHAUSTED_MESSAGE,
                    "status": "RESOURCE_EXHAUSTED",
                }
            },
        )


class OpenAICompatibleClient(UpstreamClient):
    api_type: ClassVar[ApiType] = "openai"
    extra_forwarded_headers: ClassVar[frozenset[str]] = frozenset(
        {"openai-organization", "openai-project"}
    )

    def apply_credential(
        self, url: httpx.URL, headers: dict[str, str], key: str
    ) -> tuple[httpx.URL, dict[str, str]]:
        shaped = {k: v for k, v in headers.items() if k.lower() != "authorization"}
        shaped["authorization"] = f"Bearer {key}"
        return url, shaped

    def exhausted_response(self) -> RawResponse:
        return _json_response(
            RATE_LIMITED_STATUS,
            {
                "error": {
                    "message": EXHAUSTED_MESSAGE,
                    "type": "rate_limit_exceeded",
                    "code": "rate_limit_exceeded",
                }
            },
        )


CLIENT_TYPES: dict[ApiType, type[UpstreamClient]] = {
    "gemini": GeminiClient,
    "openai": OpenAICompatibleClient,
}


def build_upstream_client(
    provider: Provider,
    *,
    http_client: httpx.AsyncClient,
    pool_reset_seconds: float = 0.0,
) -> UpstreamClient:
    keys = provider.resolved_keys()
    if not keys:
        raise ValueError(f"Provider '{provider.name}' has no API keys configured.")
    client_type = CLIENT_TYPES[provider.api_type]
    return client_type(
        name=provider.key,
        base_url=provider.base_url,
        pool=KeyPool(keys, label=provider.key),
        http_client=http_client,
        pool_reset_seconds=pool_reset_seconds,
    )
