"""
Request context from identity-provider tokens.

The identity provider issues HS256 JWTs carrying the subject id (`sub`),
the active organization (`org_id`) and the member's role (`org_role`).
Every service call receives the decoded RequestContext explicitly.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from jose import jwt as jose_jwt
from pydantic import BaseModel

from .config import JWT_ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

security = HTTPBearer()

ADMIN_ROLES = {"admin", "owner", "org:admin", "org:owner"}


class RequestContext(BaseModel):
    organization_id: str
    subject_id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return is_admin_role(self.role)


def is_admin_role(role: Optional[str]) -> bool:
    """Admin if the role is a known admin role, an `*:admin` role, or mentions admin"""
    if not role:
        return False
    normalized = role.strip().lower()
    if normalized in ADMIN_ROLES:
        return True
    return normalized.endswith(":admin") or "admin" in normalized


def create_access_token(
    subject_id: str,
    organization_id: str,
    role: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed access token (service-to-service callers)"""
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=15))
    to_encode: dict[str, Any] = {
        "sub": subject_id,
        "org_id": organization_id,
        "org_role": role,
        "exp": expire,
    }
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> RequestContext:
    try:
        payload = jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"🚫 JWT verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token") from e

    subject_id = payload.get("sub")
    organization_id = payload.get("org_id")
    if not subject_id or not organization_id:
        logger.warning("🚫 Token missing subject or organization claim")
        raise HTTPException(status_code=401, detail="Token is missing organization context")

    return RequestContext(
        organization_id=organization_id,
        subject_id=subject_id,
        role=payload.get("org_role"),
    )


async def get_request_context(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> RequestContext:
    """FastAPI dependency resolving the caller's organization context"""
    return decode_access_token(credentials.credentials)
