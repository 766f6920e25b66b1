from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit

from llm_key_proxy.config import ApiType, Provider
from llm_key_proxy.registry import ProviderRegistry

_LEGACY_PATH_PREFIXES: dict[str, tuple[str, ...]] = {
    "gemini": ("/v1/", "/v1beta/"),
    "openai": ("/v1/",),
}


@dataclass(frozen=True, slots=True)
class RouteMatch:
    provider_name: str
    api_type: ApiType
    upstream_path: str
    legacy: bool = False


def _segments(path: str) -> list[str]:
    return [segment for segment in path.split("/") if segment]


def strip_overlapping_prefix(base_url: str, path: str) -> str:
    """Drop leading path segments already present at the end of ``base_url``.

    ``strip_overlapping_prefix("https://api.x.com/v1", "/v1/models")`` returns
    ``"/models"``. The longest overlapping run wins, so a base URL ending in
    ``/api/v1`` also absorbs a path starting with ``/api/v1``. Segments are
    compared whole; ``/v1`` never matches a base path ending in ``/xv1``.
    """
    base_segments = _segments(urlsplit(base_url).path)
    path_segments = _segments(path)
    overlap = 0
    for size in range(min(len(base_segments), len(path_segments)), 0, -1):
        if path_segments[:size] == base_segments[-size:]:
            overlap = size
            break
    if overlap == 0:
        return path
    remainder = path_segments[overlap:]
    if not remainder:
        return ""
    stripped = "/" + "/".join(remainder)
    if path.endswith("/"):
        stripped += "/"
    return stripped


class RouteResolver:
    def __init__(self, registry: ProviderRegistry) -> None:
        self._registry = registry

    def resolve(self, inbound_path: str) -> RouteMatch | None:
        parts = urlsplit(inbound_path)
        segments = parts.path.split("/")
        # Leading "/" yields an empty first element.
        if len(segments) < 2 or not segments[1].strip():
            return None
        provider_name = segments[1]
        remainder = "/" + "/".join(segments[2:]) if len(segments) > 2 else ""
        query = f"?{parts.query}" if parts.query else ""

        provider = self._registry.lookup(provider_name)
        if provider is not None:
            upstream_path = strip_overlapping_prefix(provider.base_url, remainder)
            return RouteMatch(
                provider_name=provider.key,
                api_type=provider.api_type,
                upstream_path=upstream_path + query,
            )
        return self._resolve_legacy(provider_name, remainder, query)

    def _resolve_legacy(
        self, provider_name: str, remainder: str, query: str
    ) -> RouteMatch | None:
        provider: Provider | None = self._registry.lookup_legacy(provider_name)
        if provider is None:
            return None
        prefixes = _LEGACY_PATH_PREFIXES.get(provider.key, ())
        if not remainder.startswith(prefixes):
            return None
        return RouteMatch(
            provider_name=provider.key,
            api_type=provider.api_type,
            upstream_path=strip_overlapping_prefix(provider.base_url, remainder)
            + query,
            legacy=True,
        )
