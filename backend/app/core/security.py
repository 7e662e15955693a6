"""
Security and Authentication for the Cloud Actions API.

Tokens are issued by the dashboard's auth service; this module only verifies
them (JWT, OAuth2 bearer) and enforces scopes derived from the caller's role.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, List

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, SecurityScopes
from jose import JWTError, jwt
from pydantic import BaseModel

from backend.app.core.config import get_settings

settings = get_settings()

# Cloud action scopes
CLOUD_ACTIONS_READ = "cloud_actions:read"
CLOUD_ACTIONS_WRITE = "cloud_actions:write"
CLOUD_ACTIONS_DISPATCH = "cloud_actions:dispatch"

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl="api/v1/auth/token",
    scopes={
        CLOUD_ACTIONS_READ: "Read cloud actions and their logs",
        CLOUD_ACTIONS_WRITE: "Create, cancel and run cloud actions",
        CLOUD_ACTIONS_DISPATCH: "Trigger a dispatch cycle (scheduler only)",
    },
)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """
    Generate a signed JWT token.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=15)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


# Role definitions
class Role:
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"
    SCHEDULER = "scheduler"  # service account for the external cron


ROLE_SCOPES = {
    Role.ADMIN: [CLOUD_ACTIONS_READ, CLOUD_ACTIONS_WRITE, CLOUD_ACTIONS_DISPATCH],
    Role.OPERATOR: [CLOUD_ACTIONS_READ, CLOUD_ACTIONS_WRITE],
    Role.VIEWER: [CLOUD_ACTIONS_READ],
    Role.SCHEDULER: [CLOUD_ACTIONS_DISPATCH],
}


class User(BaseModel):
    username: str
    role: str
    scopes: List[str] = []
    tenant_id: Optional[str] = None


class TokenData(BaseModel):
    username: Optional[str] = None
    role: Optional[str] = None
    scopes: List[str] = []
    tenant_id: Optional[str] = None


async def get_current_user(
    security_scopes: SecurityScopes,
    token: str = Depends(oauth2_scheme)
) -> User:
    """
    Validate JWT token and check required scopes based on Role-Based Access Control.
    """
    if security_scopes.scopes:
        authenticate_value = f'Bearer scope="{security_scopes.scope_str}"'
    else:
        authenticate_value = "Bearer"

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": authenticate_value},
    )

    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm]
        )
    except JWTError:
        raise credentials_exception

    username: Optional[str] = payload.get("sub")
    if username is None:
        raise credentials_exception

    role: str = payload.get("role", Role.VIEWER)
    tenant_id: Optional[str] = payload.get("tenant_id")
    # Assign scopes based on role if not present in token
    token_scopes = payload.get("scopes", ROLE_SCOPES.get(role, []))
    token_data = TokenData(username=username, role=role, scopes=token_scopes, tenant_id=tenant_id)

    for scope in security_scopes.scopes:
        if scope not in token_data.scopes:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Not enough permissions. Required scope: {scope}",
                headers={"WWW-Authenticate": authenticate_value},
            )

    return User(username=username, role=role, scopes=token_data.scopes, tenant_id=tenant_id)


def require_tenant(user: User) -> str:
    """Tenant of the caller; tenant-scoped endpoints reject tokens without one."""
    if not user.tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token carries no tenant")
    return user.tenant_id
