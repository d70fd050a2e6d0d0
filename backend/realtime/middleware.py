"""WebSocket authentication middleware for JWT and Cookie-based auth."""

import logging
from typing import Optional
from urllib.parse import parse_qs

from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

User = get_user_model()
logger = logging.getLogger(__name__)


def _token_from_scope(scope) -> Optional[str]:
    """JWT from ``?token=`` or an ``Authorization: Bearer`` header."""
    params = parse_qs(scope.get("query_string", b"").decode())
    token_list = params.get("token")
    if token_list:
        return token_list[0]

    for name, value in scope.get("headers", []):
        if name == b"authorization":
            scheme, _, credentials = value.decode().partition(" ")
            if scheme.lower() == "bearer" and credentials:
                return credentials.strip()
    return None


@database_sync_to_async
def _user_for_token(token: str):
    try:
        access = AccessToken(token)
        return User.objects.get(id=access["user_id"], is_active=True)
    except (TokenError, KeyError, User.DoesNotExist) as e:
        logger.debug("JWT auth failed: %s", e)
        return AnonymousUser()


class JWTOrCookieAuthMiddleware(BaseMiddleware):
    """
    Authenticate WebSocket connections using either:
    1. JWT in the querystring (?token=...) or an Authorization header
    2. Session cookies, already resolved by AuthMiddlewareStack - for browser use
    """

    async def __call__(self, scope, receive, send):
        token = _token_from_scope(scope)
        if token:
            scope["user"] = await _user_for_token(token)
        elif "user" not in scope:
            scope["user"] = AnonymousUser()
        return await super().__call__(scope, receive, send)
