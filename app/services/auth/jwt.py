"""
Bearer-token principal for API routes.

Tokens are issued by the account service; this side only verifies the
signature and reads the subject and role.
"""
import logging
from typing import Any

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from app.core.config import settings
from app.core.errors import AuthenticationError, AuthorizationError

logger = logging.getLogger("auth")

auth_scheme = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    user_id: str
    role: str = "user"

    model_config = {"frozen": True}

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str) -> Principal:
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc

    # account service has issued both claim names over time
    subject = str(payload.get("sub") or payload.get("userId") or "").strip()
    if not subject:
        raise AuthenticationError("Token missing subject")
    return Principal(user_id=subject, role=str(payload.get("role") or "user"))


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(auth_scheme),
) -> Principal:
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing bearer token")
    return decode_token(credentials.credentials)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        logger.warning("admin_access_denied", extra={"user_id": principal.user_id})
        raise AuthorizationError("Admin access required")
    return principal
