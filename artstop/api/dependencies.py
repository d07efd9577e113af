"""
Request dependencies: services from app state and the bearer-token user.

pip install fastapi PyJWT
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from artstop.config import Settings
from artstop.errors import AuthenticationError, AuthorizationError
from artstop.pipeline.order_lifecycle import OrderLifecycle
from artstop.pipeline.order_queries import OrderQueries
from artstop.pipeline.webhooks import WebhookProcessor
from artstop.schemas.orders import UserRole


# =============================================================================
# SERVICES
# =============================================================================

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle


def get_queries(request: Request) -> OrderQueries:
    return request.app.state.queries


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhooks


# =============================================================================
# AUTH
# =============================================================================

class AuthenticatedUser(BaseModel):
    """Claims carried by the access token"""
    id: str
    email: str = ""
    role: UserRole = UserRole.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


_bearer = HTTPBearer(auto_error=False)


def create_access_token(
    settings: Settings,
    user_id: str,
    email: str = "",
    role: UserRole = UserRole.CUSTOMER,
    expires_in: Optional[timedelta] = None,
) -> str:
    expires_at = datetime.now(timezone.utc) + (expires_in or timedelta(hours=settings.jwt_expiry_hours))
    claims = {"id": user_id, "email": email, "role": UserRole(role).value, "exp": expires_at}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    if credentials is None:
        raise AuthenticationError("Not authorized, no token")
    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.PyJWTError as e:
        raise AuthenticationError("Not authorized, token failed") from e

    if not claims.get("id"):
        raise AuthenticationError("Not authorized, token failed")
    try:
        role = UserRole(claims.get("role", UserRole.CUSTOMER.value))
    except ValueError as e:
        raise AuthenticationError("Not authorized, token failed") from e
    return AuthenticatedUser(id=claims["id"], email=claims.get("email", ""), role=role)


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise AuthorizationError("Admin access required")
    return user
