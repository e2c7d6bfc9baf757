"""Bearer-token (HS256 JWT) verification for HTTP routes and the presenter WebSocket."""
import logging

import jwt
from fastapi import Depends, Header, Request
from starlette.requests import HTTPConnection

from .config import GatewaySettings
from .errors import AuthenticationError, PermissionDenied
from .models import Identity

logger = logging.getLogger(__name__)

ALGORITHMS = ["HS256"]


def decode_token(token: str, settings: GatewaySettings) -> Identity:
    """Verify signature, issuer and audience; return the identity the token carries."""
    if not settings.jwt_secret:
        raise PermissionDenied("Invalid or expired token")
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=ALGORITHMS,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
    except jwt.InvalidTokenError as e:
        logger.info("Token rejected: %s", e)
        raise PermissionDenied("Invalid or expired token")

    user_id = claims.get("userId") or claims.get("sub")
    email = claims.get("email")
    if not user_id or not email:
        raise PermissionDenied("Token is missing identity claims")
    return Identity(
        user_id=str(user_id),
        email=str(email),
        role=str(claims.get("role") or ""),
        name=claims.get("name"),
    )


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def settings_of(conn: HTTPConnection) -> GatewaySettings:
    return conn.app.state.context.settings


async def require_identity(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Identity:
    token = bearer_token(authorization)
    if not token:
        raise AuthenticationError("Access token required")
    return decode_token(token, settings_of(request))


async def require_admin(
    request: Request,
    identity: Identity = Depends(require_identity),
) -> Identity:
    """Elevated role, e.g. for emergency stop."""
    if identity.role not in settings_of(request).admin_roles:
        raise PermissionDenied("Administrator role required")
    return identity


def authenticate_presenter(conn: HTTPConnection) -> Identity:
    """Verify a WebSocket handshake: token from ?token= or the Authorization header, broadcast role required."""
    settings = settings_of(conn)
    token = conn.query_params.get("token") or bearer_token(conn.headers.get("authorization"))
    if not token:
        raise AuthenticationError("Access token required")
    identity = decode_token(token, settings)
    if identity.role not in settings.broadcast_roles:
        raise PermissionDenied(f"Role '{identity.role}' may not broadcast")
    return identity
