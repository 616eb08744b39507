from __future__ import annotations

import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse

from pplx_gateway.settings import Settings


class Authenticator:
    def __init__(self, settings: Settings):
        self.api_keys = settings.api_keys_list
        self.required = settings.auth_required

    def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")

        bearer_token = token.strip()
        presented = bearer_token.encode("utf-8")
        if any(
            secrets.compare_digest(presented, key.encode("utf-8")) for key in self.api_keys
        ):
            return None
        return _unauthorized("Invalid API key.")


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
