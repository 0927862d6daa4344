from dataclasses import dataclass
from typing import Annotated, Optional
import uuid
import logging

from fastapi import Depends, Header, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.core.security import PrincipalRole, verify_access_token, verify_webhook_secret
from app.services.cache_service import CacheService


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, taken from the access token claims."""
    user_id: uuid.UUID
    role: PrincipalRole
    vendor_id: Optional[uuid.UUID] = None

    @property
    def is_admin(self) -> bool:
        return self.role == PrincipalRole.ADMIN


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Principal:
    """
    Dependency to get the current authenticated principal.
    Validates the JWT token and reads sub / role / vendor_id claims.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_access_token(credentials.credentials)
    if payload is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise credentials_exception

    try:
        user_id = uuid.UUID(payload.get("sub", ""))
        role = PrincipalRole(payload.get("role", PrincipalRole.AFFILIATE.value))
        vendor_id = uuid.UUID(payload["vendor_id"]) if payload.get("vendor_id") else None
    except ValueError:
        logger.warning(f"Invalid claims in token: sub={payload.get('sub')} role={payload.get('role')}")
        raise credentials_exception

    return Principal(user_id=user_id, role=role, vendor_id=vendor_id)


def require_role(*roles: PrincipalRole):
    """
    Dependency factory that only lets the given roles through.

    Usage:
        @router.get("/admin/stats", dependencies=[Depends(require_role(PrincipalRole.ADMIN))])
        async def stats():
            ...
    """
    async def role_dependency(
        principal: Annotated[Principal, Depends(get_current_principal)],
    ) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"This action requires role: {', '.join(r.value for r in roles)}"
            )
        return principal

    return role_dependency


async def get_vendor_principal(
    principal: Annotated[Principal, Depends(require_role(PrincipalRole.VENDOR))],
) -> Principal:
    if principal.vendor_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Vendor token is missing vendor_id"
        )
    return principal


def get_cache(request: Request) -> Optional[CacheService]:
    """Cache service constructed in the app lifespan (None when disabled)."""
    return getattr(request.app.state, "cache", None)


async def verify_webhook(
    x_webhook_secret: Annotated[Optional[str], Header()] = None,
) -> None:
    if not verify_webhook_secret(x_webhook_secret):
        logger.warning("Rejected webhook call with invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret"
        )


# Type aliases for cleaner dependency injection
DB = Annotated[AsyncSession, Depends(get_db)]
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
VendorPrincipal = Annotated[Principal, Depends(get_vendor_principal)]
AdminPrincipal = Annotated[Principal, Depends(require_role(PrincipalRole.ADMIN))]
Cache = Annotated[Optional[CacheService], Depends(get_cache)]
