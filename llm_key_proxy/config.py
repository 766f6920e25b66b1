from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from llm_key_proxy.utils.persistence import YamlFileStore

ApiType = Literal["gemini", "openai"]

RESERVED_PROVIDER_NAMES = frozenset({"admin", "health"})

_API_TYPE_ALIASES = {
    "gemini": "gemini",
    "google": "gemini",
    "openai": "openai",
    "openai-compatible": "openai",
    "openai_compatible": "openai",
}


class Provider(BaseModel):
    name: str
    api_type: ApiType = "openai"
    base_url: str
    keys: list[str] = Field(default_factory=list)
    keys_env: str | None = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Provider name must not be empty.")
        if "/" in normalized or "?" in normalized:
            raise ValueError(
                f"Provider name '{normalized}' must be a single path segment."
            )
        if normalized.lower() in RESERVED_PROVIDER_NAMES:
            raise ValueError(f"Provider name '{normalized}' is reserved.")
        return normalized

    @field_validator("api_type", mode="before")
    @classmethod
    def _normalize_api_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _API_TYPE_ALIASES.get(value.strip().lower(), value.strip().lower())
        return value

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized.startswith(("http://", "https://")):
            raise ValueError(f"Provider base_url '{value}' must be an http(s) URL.")
        return normalized.rstrip("/")

    @field_validator("keys", mode="before")
    @classmethod
    def _coerce_keys(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, list):
            return value
        cleaned: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            item = item.strip()
            if item and item not in cleaned:
                cleaned.append(item)
        return cleaned

    @property
    def key(self) -> str:
        return self.name.lower()

    def resolved_keys(self) -> list[str]:
        if self.keys:
            return list(self.keys)
        if self.keys_env:
            raw = os.getenv(self.keys_env, "")
            return [item.strip() for item in raw.split(",") if item.strip()]
        return []

    @property
    def is_usable(self) -> bool:
        return bool(self.resolved_keys())

    def to_config_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "api_type": self.api_type,
            "base_url": self.base_url,
        }
        if self.keys_env and not self.keys:
            payload["keys_env"] = self.keys_env
        else:
            payload["keys"] = list(self.keys)
        return payload


class ProvidersConfig(BaseModel):
    providers: list[Provider] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_unique_names(self) -> ProvidersConfig:
        seen: set[str] = set()
        for provider in self.providers:
            if provider.key in seen:
                raise ValueError(f"Duplicate provider name '{provider.name}'.")
            seen.add(provider.key)
        return self


def load_providers_config(path: str | Path) -> ProvidersConfig:
    store = YamlFileStore(path)
    payload = store.load_mapping(
        error_message=(
            f"Expected a YAML mapping with a 'providers' list in '{store.path}'."
        ),
    )
    return ProvidersConfig.model_validate(payload)


def save_providers_config(path: str | Path, providers: list[Provider]) -> None:
    YamlFileStore(path).write(
        {"providers": [provider.to_config_dict() for provider in providers]},
        sort_keys=False,
    )


def build_legacy_providers(
    *,
    gemini_keys: list[str],
    gemini_base_url: str,
    openai_keys: list[str],
    openai_base_url: str,
) -> dict[str, Provider]:
    legacy: dict[str, Provider] = {}
    if gemini_keys:
        legacy["gemini"] = Provider(
            name="gemini",
            api_type="gemini",
            base_url=gemini_base_url,
            keys=gemini_keys,
        )
    if openai_keys:
        legacy["openai"] = Provider(
            name="openai",
            api_type="openai",
            base_url=openai_base_url,
            keys=openai_keys,
        )
    return legacy
