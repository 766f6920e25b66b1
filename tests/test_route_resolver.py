from __future__ import annotations

from llm_key_proxy.config import Provider
from llm_key_proxy.registry import ProviderRegistry
from llm_key_proxy.route_resolver import RouteResolver, strip_overlapping_prefix


def _resolver(*providers: Provider, legacy: dict[str, Provider] | None = None) -> RouteResolver:
    return RouteResolver(ProviderRegistry(providers, legacy=legacy))


def test_strip_overlapping_prefix_removes_duplicate_version_segment() -> None:
    assert strip_overlapping_prefix("https://api.x.com/v1", "/v1/models") == "/models"


def test_strip_overlapping_prefix_prefers_longest_overlap() -> None:
    assert (
        strip_overlapping_prefix("https://api.groq.com/openai/v1", "/openai/v1/chat/completions")
        == "/chat/completions"
    )
    assert (
        strip_overlapping_prefix("https://api.groq.com/openai/v1", "/v1/chat/completions")
        == "/chat/completions"
    )


def test_strip_overlapping_prefix_handles_arbitrary_version_tokens() -> None:
    assert strip_overlapping_prefix("https://host/api/v2alpha", "/v2alpha/items") == "/items"
    assert strip_overlapping_prefix("https://host/v1beta/", "/v1beta/models/x") == "/models/x"


def test_strip_overlapping_prefix_leaves_unrelated_paths_alone() -> None:
    assert strip_overlapping_prefix("https://api.openai.com", "/v1/models") == "/v1/models"
    assert strip_overlapping_prefix("https://api.x.com/v1", "/v2/models") == "/v2/models"
    assert strip_overlapping_prefix("https://api.x.com/xv1", "/v1/models") == "/v1/models"
    assert strip_overlapping_prefix("https://api.x.com/v1", "") == ""


def test_strip_overlapping_prefix_keeps_trailing_slash() -> None:
    assert strip_overlapping_prefix("https://api.x.com/v1", "/v1/files/") == "/files/"
    assert strip_overlapping_prefix("https://api.x.com/v1", "/v1") == ""


def test_resolve_registry_provider_deduplicates_version() -> None:
    resolver = _resolver(
        Provider(name="providerX", api_type="openai", base_url="https://api.x.com/v1", keys=["k1"])
    )

    match = resolver.resolve("/providerX/v1/models")

    assert match is not None
    assert match.provider_name == "providerx"
    assert match.api_type == "openai"
    assert match.upstream_path == "/models"
    assert match.legacy is False


def test_resolve_is_case_insensitive_and_keeps_query_string() -> None:
    resolver = _resolver(
        Provider(
            name="Studio",
            api_type="gemini",
            base_url="https://generativelanguage.googleapis.com/v1beta",
            keys=["k1"],
        )
    )

    match = resolver.resolve("/STUDIO/v1beta/models/gemini-pro:streamGenerateContent?alt=sse")

    assert match is not None
    assert match.provider_name == "studio"
    assert match.api_type == "gemini"
    assert match.upstream_path == "/models/gemini-pro:streamGenerateContent?alt=sse"


def test_resolve_unknown_provider_is_no_match() -> None:
    resolver = _resolver(
        Provider(name="groq", base_url="https://api.groq.com/openai/v1", keys=["k1"])
    )
    assert resolver.resolve("/unknown/v1/models") is None
    assert resolver.resolve("/") is None
    assert resolver.resolve("") is None


def test_resolve_legacy_routes_require_version_prefix() -> None:
    legacy = {
        "gemini": Provider(
            name="gemini",
            api_type="gemini",
            base_url="https://generativelanguage.googleapis.com",
            keys=["g1"],
        ),
        "openai": Provider(
            name="openai", api_type="openai", base_url="https://api.openai.com", keys=["o1"]
        ),
    }
    resolver = _resolver(legacy=legacy)

    gemini = resolver.resolve("/gemini/v1beta/models")
    assert gemini is not None
    assert gemini.legacy is True
    assert gemini.api_type == "gemini"
    assert gemini.upstream_path == "/v1beta/models"

    openai = resolver.resolve("/openai/v1/chat/completions")
    assert openai is not None
    assert openai.legacy is True
    assert openai.upstream_path == "/v1/chat/completions"

    assert resolver.resolve("/openai/v1beta/models") is None
    assert resolver.resolve("/gemini/models") is None


def test_registry_provider_shadows_legacy_name() -> None:
    legacy = {
        "openai": Provider(
            name="openai", api_type="openai", base_url="https://api.openai.com", keys=["o1"]
        )
    }
    resolver = _resolver(
        Provider(name="openai", api_type="openai", base_url="https://proxy.local/v1", keys=["k"]),
        legacy=legacy,
    )

    match = resolver.resolve("/openai/v1/models")

    assert match is not None
    assert match.legacy is False
    assert match.upstream_path == "/models"
