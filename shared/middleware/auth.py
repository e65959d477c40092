"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
Identity comes from the JWT alone; the booking core only needs a principal
and a yes/no capability check.
"""

import uuid
from enum import Enum as PyEnum
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


class UserRole(str, PyEnum):
    PATIENT = "patient"
    HOSPITAL_AUTHORITY = "hospital_authority"
    ADMIN = "admin"


class Principal:
    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.role: UserRole = UserRole(payload["role"])
        self.email: Optional[str] = payload.get("email")
        self.session_id: str = payload.get("jti") or str(self.user_id)
        hospital_id = payload.get("hospital_id")
        self.hospital_id: Optional[uuid.UUID] = uuid.UUID(hospital_id) if hospital_id else None

    @property
    def actor(self) -> str:
        return f"{self.role.value}:{self.user_id}"

    def can_manage_hospital(self, hospital_id) -> bool:
        if self.role == UserRole.ADMIN:
            return True
        return self.role == UserRole.HOSPITAL_AUTHORITY and str(self.hospital_id) == str(hospital_id)

    def owns(self, user_id) -> bool:
        return str(self.user_id) == str(user_id)


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """Extract and validate JWT from Authorization header."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        payload = verify_access_token(credentials.credentials)
        return Principal(payload)
    except (JWTError, KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if principal.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return principal


# Convenience role dependencies
require_hospital_authority = RoleRequired(UserRole.HOSPITAL_AUTHORITY, UserRole.ADMIN)
require_admin = RoleRequired(UserRole.ADMIN)
