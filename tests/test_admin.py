from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import yaml

from tests.client_test_utils import (
    admin_headers,
    build_test_client,
    install_upstream,
    write_providers_file,
)

PROVIDER = {
    "name": "groq",
    "api_type": "openai",
    "base_url": "https://api.groq.com/openai/v1",
    "keys": ["gsk-000011112222", "gsk-333344445555"],
}


def test_admin_requires_bearer_token(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, [PROVIDER]) as client:
        missing = client.get("/admin/providers")
        wrong = client.get("/admin/providers", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert missing.json()["error"]["type"] == "authentication_error"
    assert wrong.status_code == 401


def test_admin_disabled_without_admin_keys(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, [PROVIDER], ADMIN_API_KEYS="") as client:
        response = client.get("/admin/providers", headers=admin_headers())
    assert response.status_code == 404


def test_list_providers_masks_keys(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch, tmp_path, [PROVIDER], GEMINI_API_KEYS="AIza-legacy-0001"
    ) as client:
        response = client.get("/admin/providers", headers=admin_headers())

    assert response.status_code == 200
    data = {item["name"]: item for item in response.json()["data"]}
    assert data["groq"]["keys"] == ["gsk-...2222", "gsk-...5555"]
    assert data["groq"]["legacy"] is False
    assert data["groq"]["pool"] is None
    assert data["gemini"]["legacy"] is True
    assert "gsk-000011112222" not in response.text
    assert "AIza-legacy-0001" not in response.text


def test_upsert_provider_persists_and_rebuilds_client(monkeypatch: Any, tmp_path: Path) -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["authorization"])
        return httpx.Response(200, json={"data": []})

    with build_test_client(monkeypatch, tmp_path, [PROVIDER]) as client:
        install_upstream(handler)
        client.get("/groq/v1/models")
        dispatcher = client.app.state.dispatcher
        assert dispatcher.clients.peek("groq") is not None

        response = client.put(
            "/admin/providers/groq",
            headers=admin_headers(),
            json={
                "api_type": "openai",
                "base_url": "https://api.groq.com/openai/v1",
                "keys": ["gsk-newkey-99998888"],
            },
        )
        assert response.status_code == 200
        assert dispatcher.clients.peek("groq") is None

        client.get("/groq/v1/models")

    assert seen == ["Bearer gsk-000011112222", "Bearer gsk-newkey-99998888"]
    stored = yaml.safe_load((tmp_path / "providers.yaml").read_text(encoding="utf-8"))
    assert stored["providers"][0]["keys"] == ["gsk-newkey-99998888"]


def test_upsert_rejects_invalid_provider(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, [PROVIDER]) as client:
        bad_url = client.put(
            "/admin/providers/other",
            headers=admin_headers(),
            json={"api_type": "openai", "base_url": "not-a-url", "keys": ["k-12345678"]},
        )
        no_keys = client.put(
            "/admin/providers/other",
            headers=admin_headers(),
            json={"api_type": "gemini", "base_url": "https://g.example", "keys": []},
        )

    assert bad_url.status_code == 400
    assert no_keys.status_code == 400


def test_delete_provider(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, [PROVIDER]) as client:
        deleted = client.delete("/admin/providers/GROQ", headers=admin_headers())
        missing = client.delete("/admin/providers/groq", headers=admin_headers())
        routed = client.get("/groq/v1/models")

    assert deleted.status_code == 200
    assert missing.status_code == 404
    assert routed.status_code == 400


def test_reset_provider_pool(monkeypatch: Any, tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429)

    with build_test_client(monkeypatch, tmp_path, [PROVIDER]) as client:
        not_built = client.post("/admin/providers/groq/reset", headers=admin_headers())
        install_upstream(handler)
        client.get("/groq/v1/models")
        pool = client.app.state.dispatcher.clients.peek("groq").pool
        assert pool.is_exhausted() is True

        reset = client.post("/admin/providers/groq/reset", headers=admin_headers())
        unknown = client.post("/admin/providers/nope/reset", headers=admin_headers())

    assert not_built.json() == {"name": "groq", "reset": False}
    assert reset.status_code == 200
    assert reset.json()["pool"]["exhausted"] is False
    assert pool.current_key() == "gsk-000011112222"
    assert unknown.status_code == 404


def test_reload_picks_up_file_changes(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path, [PROVIDER]) as client:
        write_providers_file(
            tmp_path / "providers.yaml",
            [PROVIDER, dict(PROVIDER, name="second")],
        )
        reloaded = client.post("/admin/reload", headers=admin_headers())
        (tmp_path / "providers.yaml").write_text("providers: [{name: x}]", encoding="utf-8")
        broken = client.post("/admin/reload", headers=admin_headers())

    assert reloaded.status_code == 200
    assert reloaded.json() == {"providers": 2}
    assert broken.status_code == 400


def test_recent_logs(monkeypatch: Any, tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    with build_test_client(monkeypatch, tmp_path, [PROVIDER]) as client:
        install_upstream(handler)
        client.get("/groq/v1/models", headers={"x-request-id": "r1"})
        client.get("/missing/v1/models", headers={"x-request-id": "r2"})
        response = client.get("/admin/logs?limit=1", headers=admin_headers())

    assert response.status_code == 200
    events = response.json()["data"]
    assert len(events) == 1
    assert events[0]["request_id"] == "r2"
    assert events[0]["status"] == 400
