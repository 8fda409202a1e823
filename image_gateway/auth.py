from __future__ import annotations

import logging
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse

from image_gateway.errors import AuthenticationError
from image_gateway.settings import Settings

logger = logging.getLogger("uvicorn.error")


class Authenticator:
    """Static bearer-token check against ``AUTHORIZED_API_KEY``.

    An unset secret rejects every request instead of opening the gateway.
    """

    def __init__(self, settings: Settings):
        self.api_key = settings.authorized_api_key_value
        if self.api_key is None:
            logger.error(
                "auth_config_error reason=AUTHORIZED_API_KEY not set, all protected requests will be rejected"
            )

    def is_authorized(self, authorization: str | None) -> bool:
        scheme, _, token = (authorization or "").partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return False
        if self.api_key is None:
            return False
        return secrets.compare_digest(
            token.strip().encode("utf-8"), self.api_key.encode("utf-8")
        )

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if self.is_authorized(request.headers.get("authorization")):
            return None
        logger.info(
            "auth_rejected path=%s has_header=%s",
            request.url.path,
            "authorization" in request.headers,
        )
        return _unauthorized()


def _unauthorized() -> JSONResponse:
    error = AuthenticationError("Authentication failed, invalid API key")
    return JSONResponse(
        status_code=error.status_code,
        headers={"WWW-Authenticate": "Bearer"},
        content=error.to_payload(),
    )
