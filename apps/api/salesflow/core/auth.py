from __future__ import annotations

import hmac
from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from salesflow.core.config import get_settings
from salesflow.errors import Forbidden, Unauthorized


ANONYMOUS_SUB = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUB

    @property
    def actor_id(self) -> str | None:
        return None if self.is_anonymous else self.sub


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


def decode_user(token: str) -> AuthUser | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = str(payload.get("sub", ANONYMOUS_SUB))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub=ANONYMOUS_SUB, roles=["guest"])

    user = decode_user(token)
    if user is None:
        return AuthUser(sub=ANONYMOUS_SUB, roles=["guest"])

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = user.sub
    return user


def secrets_match(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_webhook_secret(request: Request) -> None:
    settings = get_settings()
    if not secrets_match(request.headers.get("x-webhook-secret"), settings.webhook_secret):
        raise Unauthorized("invalid webhook secret")


def authorize_sweep_caller(request: Request, user: AuthUser) -> str:
    """Accept a scheduler bearer secret, the shared webhook secret, or an admin session.

    Returns the path that authorised the call.
    """
    settings = get_settings()
    if secrets_match(_bearer_token(request), settings.cron_secret):
        return "cron_secret"
    if secrets_match(request.headers.get("x-webhook-secret"), settings.webhook_secret):
        return "webhook_secret"
    if user.is_anonymous:
        raise Unauthorized("authentication required")
    if "admin" not in user.roles:
        raise Forbidden("admin role required")
    return "admin_session"
