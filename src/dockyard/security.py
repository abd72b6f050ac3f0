"""API Security: optional bearer-key authentication for the HTTP API.

- DOCKYARD_API_KEY: when set, every ``/api`` route requires
  ``Authorization: Bearer <key>``. When unset, routes are open (suitable for
  deployments behind a trusted gateway).
- SSE routes also accept ``?token=<key>`` because EventSource cannot send
  headers.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

API_KEY_ENV = "DOCKYARD_API_KEY"

_bearer_scheme = HTTPBearer(auto_error=False)


def get_security_config() -> dict:
    api_key = os.environ.get(API_KEY_ENV)
    return {
        "authentication_required": api_key is not None,
        "api_key_env_var": API_KEY_ENV,
    }


def generate_api_key() -> str:
    return secrets.token_urlsafe(32)


def _check(provided: str | None, request: Request | None = None) -> bool:
    # An empty configured key still enforces auth.
    expected_key = os.environ.get(API_KEY_ENV)
    if expected_key is None:
        return True

    client = request.client.host if request is not None and request.client else "unknown"
    if not provided:
        logger.warning("API request without credentials from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide Authorization: Bearer <api_key>.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(provided, expected_key):
        logger.warning("Invalid API key from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return True


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency: validate the bearer key if one is configured."""
    return _check(credentials.credentials if credentials else None, request)


async def require_api_key_or_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """Like ``require_api_key`` but also accepts ``?token=`` (SSE routes)."""
    provided = credentials.credentials if credentials else request.query_params.get("token")
    return _check(provided, request)
