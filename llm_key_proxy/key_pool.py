from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any

logger = logging.getLogger("uvicorn.error")


def mask_api_key(key: str | None) -> str:
    if not key or len(key) < 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


class KeyPool:
    """Round-robin rotation and failure tracking over one provider's keys.

    The pool is shared by every request sent to the provider. A key marked as
    failed is skipped until :meth:`reset` is called; once every key has failed
    the pool reports itself exhausted and :meth:`current_key` returns ``None``.
    """

    def __init__(self, keys: list[str], *, label: str = "provider") -> None:
        if not keys:
            raise ValueError(f"Key pool for '{label}' requires at least one key.")
        self.label = label
        self._keys: tuple[str, ...] = tuple(dict.fromkeys(keys))
        self._current_index = 0
        self._failed_keys: set[str] = set()
        self._exhausted_since: float | None = None
        self._lock = Lock()

    @property
    def keys(self) -> tuple[str, ...]:
        return self._keys

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def failed_keys(self) -> frozenset[str]:
        return frozenset(self._failed_keys)

    @property
    def exhausted_since(self) -> float | None:
        return self._exhausted_since

    def __len__(self) -> int:
        return len(self._keys)

    def current_key(self) -> str | None:
        with self._lock:
            if self._is_exhausted_locked():
                return None
            return self._keys[self._current_index]

    def is_exhausted(self) -> bool:
        with self._lock:
            return self._is_exhausted_locked()

    def mark_failed(self, key: str) -> None:
        with self._lock:
            if key not in self._keys:
                return
            self._failed_keys.add(key)
            # Another request may already have rotated past this key.
            if self._keys[self._current_index] in self._failed_keys:
                self._advance_locked()
            failed_count = len(self._failed_keys)
            exhausted = self._is_exhausted_locked()
            if exhausted and self._exhausted_since is None:
                self._exhausted_since = time.monotonic()
        logger.info(
            "key_pool_mark_failed provider=%s key=%s failed=%d/%d exhausted=%s",
            self.label,
            mask_api_key(key),
            failed_count,
            len(self._keys),
            exhausted,
        )

    def advance(self) -> None:
        with self._lock:
            if self._is_exhausted_locked():
                return
            self._advance_locked()

    def reset(self) -> None:
        with self._lock:
            self._failed_keys.clear()
            self._current_index = 0
            self._exhausted_since = None
        logger.info("key_pool_reset provider=%s keys=%d", self.label, len(self._keys))

    def exhausted_for_seconds(self) -> float:
        exhausted_since = self._exhausted_since
        if exhausted_since is None:
            return 0.0
        return max(0.0, time.monotonic() - exhausted_since)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_keys": len(self._keys),
                "failed_keys": len(self._failed_keys),
                "current_key": (
                    None
                    if self._is_exhausted_locked()
                    else mask_api_key(self._keys[self._current_index])
                ),
                "exhausted": self._is_exhausted_locked(),
                "keys": [
                    {
                        "key": mask_api_key(key),
                        "failed": key in self._failed_keys,
                    }
                    for key in self._keys
                ],
            }

    def _is_exhausted_locked(self) -> bool:
        return len(self._failed_keys) >= len(self._keys)

    def _advance_locked(self) -> None:
        # Probes are bounded by the key count so an all-failed pool cannot spin.
        total = len(self._keys)
        index = self._current_index
        for _ in range(total):
            index = (index + 1) % total
            if self._keys[index] not in self._failed_keys:
                break
        self._current_index = index
