"""Bearer-token dependencies. Tokens are issued by the external auth service."""

import logging
from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from shared.config import get_settings
from shared.errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    user_id: str
    is_admin: bool = False


def get_current_principal(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Principal:
    """Decode the HS256 access token into its `id` and `isAdmin` claims."""
    if credentials is None:
        raise Unauthorized("Missing bearer token")

    settings = get_settings()
    try:
        payload = jwt.decode(credentials.credentials, settings.access_token_secret, algorithms=["HS256"])
    except JWTError as e:
        logger.info(f"Rejected access token: {e}")
        raise Unauthorized("Invalid or expired token") from e

    user_id = payload.get("id")
    if not user_id:
        raise Unauthorized("Token has no user id")
    return Principal(user_id=str(user_id), is_admin=payload.get("isAdmin") is True)


def get_current_user_id(principal: Principal = Depends(get_current_principal)) -> str:
    return principal.user_id


def authorize_user(user_id: str, principal: Principal = Depends(get_current_principal)) -> Principal:
    """The `user_id` path parameter must be the caller, unless the caller is an admin."""
    if principal.user_id != user_id and not principal.is_admin:
        logger.warning(f"User {principal.user_id} denied access to resources of user {user_id}")
        raise Forbidden("Not allowed to access another user's resources")
    return principal


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        logger.warning(f"User {principal.user_id} denied access to an admin operation")
        raise Forbidden("Admin access required")
    return principal
