from typing import Annotated, Any, Dict

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from analytics_engine.core.config import settings
from analytics_engine.core.schemas import PermissionScope, SecurityContext


# The token is issued by the authorization service, the engine only reads it
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token")


def context_from_claims(payload: Dict[str, Any]) -> SecurityContext:
    """
    Build the request's SecurityContext from token claims.
    Missing id lists mean no access, never all access.
    """
    return SecurityContext(
        user_id=payload.get("user_id"),
        accessible_tenant_ids=frozenset(int(i) for i in payload.get("tenant_ids") or []),
        accessible_sub_entity_ids=frozenset(int(i) for i in payload.get("sub_entity_ids") or []),
        permission_scope=PermissionScope(payload.get("permission_scope", PermissionScope.OWN.value)),
    )


# Decode the token and see what the caller may read
async def get_security_context(token: Annotated[str, Depends(oauth2_scheme)]) -> SecurityContext:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        if payload.get("user_id") is None:
            raise credentials_exception
        return context_from_claims(payload)

    # Expired, tampered, or claims of the wrong type
    except (jwt.PyJWTError, ValueError, TypeError):
        raise credentials_exception


async def validate_admin_scope(
    context: Annotated[SecurityContext, Depends(get_security_context)],
) -> SecurityContext:
    if context.permission_scope != PermissionScope.ALL:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have enough privileges (Admin only)",
        )
    return context
