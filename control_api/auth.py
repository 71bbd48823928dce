# control_api/auth.py
"""
Access checks for privileged endpoints.

Authentication itself happens upstream: a reverse proxy sets the
X-Admin-Access header to a signed JWT whose ``user_info`` claim carries the
user's roles. This module only verifies that token and branches on the roles.
"""
import logging
import os
from typing import List, Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from daq.conf import is_development

logger = logging.getLogger(__name__)

ADMIN_ACCESS_HEADER = "X-Admin-Access"


class UserInfo(BaseModel):
    id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)


class AuthSession(BaseModel):
    is_admin: bool = False
    user_info: Optional[UserInfo] = None

    @property
    def is_authenticated(self) -> bool:
        return self.is_admin or self.user_info is not None

    @property
    def display_name(self) -> str:
        if self.user_info is None:
            return "Unknown User"
        return self.user_info.name or self.user_info.email or "Unknown User"


def get_jwt_secret() -> str:
    """Get the token signing secret from environment variable."""
    return os.getenv("AUTH_JWT_SECRET_KEY", "")


def get_user_role() -> str:
    return os.getenv("AUTH_USER_ROLE", "daq-control")


def get_admin_role() -> str:
    return os.getenv("AUTH_ADMIN_ROLE", "daq-control-superadmin")


def _dev_session() -> AuthSession:
    return AuthSession(
        is_admin=True,
        user_info=UserInfo(id=1, email="dev@dev.local", name="dev", roles=[get_user_role(), get_admin_role()]),
    )


def check_auth_session(token: Optional[str]) -> AuthSession:
    """
    Resolve the trust signal into an AuthSession.

    Missing, invalid or role-less tokens yield an anonymous session, except in
    development mode where a dev admin session is returned instead.
    """
    fallback = _dev_session() if is_development() else AuthSession()

    token = (token or "").strip()
    if not token:
        return fallback

    secret = get_jwt_secret()
    if not secret:
        logger.error("%s header present but AUTH_JWT_SECRET_KEY is not configured", ADMIN_ACCESS_HEADER)
        return fallback

    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.InvalidTokenError as e:
        logger.warning("Failed to verify %s token: %s", ADMIN_ACCESS_HEADER, e)
        return fallback

    raw_user_info = payload.get("user_info")
    if not isinstance(raw_user_info, dict):
        return fallback

    user_info = UserInfo.model_validate(raw_user_info)
    if get_user_role() not in user_info.roles:
        return fallback

    return AuthSession(is_admin=get_admin_role() in user_info.roles, user_info=user_info)


def get_auth_session(
    admin_access: Optional[str] = Header(None, alias=ADMIN_ACCESS_HEADER),
) -> AuthSession:
    return check_auth_session(admin_access)


def require_user(session: AuthSession = Depends(get_auth_session)) -> AuthSession:
    """Raises HTTPException unless the request carries a valid user session."""
    if not session.is_authenticated:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return session


def require_admin(session: AuthSession = Depends(get_auth_session)) -> AuthSession:
    """Raises HTTPException unless the request carries an admin session."""
    if not session.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized: Admin access required")
    return session
