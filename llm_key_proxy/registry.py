from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from threading import Lock
from types import MappingProxyType

from llm_key_proxy.config import (
    Provider,
    ProvidersConfig,
    load_providers_config,
    save_providers_config,
)

logger = logging.getLogger("uvicorn.error")

ChangeListener = Callable[[frozenset[str]], None]


class ProviderRegistry:
    """Named provider configurations held as an immutable, swappable snapshot.

    Readers always see a complete snapshot; writers build a replacement mapping
    and swap the reference. Listeners receive the lower-cased names whose
    configuration changed.
    """

    def __init__(
        self,
        providers: Iterable[Provider] = (),
        *,
        legacy: Mapping[str, Provider] | None = None,
        config_path: str | Path | None = None,
    ) -> None:
        self._snapshot: Mapping[str, Provider] = _freeze(providers)
        self._legacy: Mapping[str, Provider] = MappingProxyType(
            {name.lower(): provider for name, provider in (legacy or {}).items()}
        )
        self._config_path = Path(config_path) if config_path is not None else None
        self._listeners: list[ChangeListener] = []
        self._write_lock = Lock()

    @classmethod
    def from_config_file(
        cls,
        path: str | Path,
        *,
        legacy: Mapping[str, Provider] | None = None,
    ) -> ProviderRegistry:
        config = load_providers_config(path)
        return cls(config.providers, legacy=legacy, config_path=path)

    @property
    def snapshot(self) -> Mapping[str, Provider]:
        return self._snapshot

    @property
    def config_path(self) -> Path | None:
        return self._config_path

    def __len__(self) -> int:
        return len(self._snapshot)

    def lookup(self, name: str) -> Provider | None:
        return self._snapshot.get(name.strip().lower())

    def lookup_legacy(self, name: str) -> Provider | None:
        return self._legacy.get(name.strip().lower())

    def providers(self) -> list[Provider]:
        return list(self._snapshot.values())

    def legacy_providers(self) -> list[Provider]:
        return list(self._legacy.values())

    def on_change(self, callback: ChangeListener) -> None:
        self._listeners.append(callback)

    def replace_all(self, providers: Iterable[Provider], *, persist: bool = False) -> None:
        # Re-validate as a whole so duplicate names are rejected before swapping.
        validated = ProvidersConfig(providers=list(providers)).providers
        self._swap(_freeze(validated), persist=persist)

    def upsert(self, provider: Provider, *, persist: bool = True) -> None:
        with self._write_lock:
            updated = dict(self._snapshot)
            updated[provider.key] = provider
            self._swap_locked(MappingProxyType(updated), persist=persist)

    def remove(self, name: str, *, persist: bool = True) -> bool:
        key = name.strip().lower()
        with self._write_lock:
            if key not in self._snapshot:
                return False
            updated = {k: v for k, v in self._snapshot.items() if k != key}
            self._swap_locked(MappingProxyType(updated), persist=persist)
        return True

    def reload(self) -> None:
        if self._config_path is None:
            raise RuntimeError("Provider registry has no configuration file to reload.")
        self.replace_all(load_providers_config(self._config_path).providers)
        logger.info(
            "provider_registry_reloaded path=%s providers=%d",
            self._config_path,
            len(self._snapshot),
        )

    def _swap(self, replacement: Mapping[str, Provider], *, persist: bool) -> None:
        with self._write_lock:
            self._swap_locked(replacement, persist=persist)

    def _swap_locked(self, replacement: Mapping[str, Provider], *, persist: bool) -> None:
        previous = self._snapshot
        if persist and self._config_path is not None:
            save_providers_config(self._config_path, list(replacement.values()))
        self._snapshot = replacement
        changed = frozenset(
            name
            for name in set(previous) | set(replacement)
            if previous.get(name) != replacement.get(name)
        )
        if not changed:
            return
        logger.info("provider_registry_changed providers=%s", ",".join(sorted(changed)))
        for listener in list(self._listeners):
            listener(changed)


def _freeze(providers: Iterable[Provider]) -> Mapping[str, Provider]:
    return MappingProxyType({provider.key: provider for provider in providers})
