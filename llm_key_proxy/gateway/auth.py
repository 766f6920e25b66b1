from __future__ import annotations

import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse

from llm_key_proxy.settings import Settings


class AdminAuthenticator:
    """Bearer-token check for the admin API."""

    def __init__(self, settings: Settings):
        self.api_keys = tuple(settings.admin_api_keys_list)

    @property
    def enabled(self) -> bool:
        return bool(self.api_keys)

    def is_valid_token(self, token: str) -> bool:
        candidate = token.encode("utf-8")
        # Compare against every key so timing does not reveal which one matched.
        matched = False
        for key in self.api_keys:
            if secrets.compare_digest(candidate, key.encode("utf-8")):
                matched = True
        return matched

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.enabled:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={
                    "error": {
                        "message": "Admin API is disabled.",
                        "type": "not_found",
                        "code": "admin_disabled",
                    }
                },
            )

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")
        if not self.is_valid_token(token.strip()):
            return _unauthorized("Invalid admin API key.")

        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
