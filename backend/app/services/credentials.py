"""Resolves an action's credential reference to platform credentials."""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import async_session_maker
from backend.app.core.logging import get_logger
from backend.app.models.platform_credential_orm import PlatformCredentialORM
from backend.app.services.platform_adapter import PlatformCredentials

logger = get_logger(__name__)


class MissingCredentialsError(Exception):
    """No usable credentials for the action; retrying cannot fix this."""


class CredentialResolver:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or async_session_maker

    async def resolve(self, credential_id: Optional[str], tenant_id: str) -> PlatformCredentials:
        """Look up credentials owned by ``tenant_id``; another tenant's row is treated as missing."""
        if not credential_id:
            raise MissingCredentialsError("Action has no credential reference")

        async with self.session_factory() as session:
            result = await session.execute(
                select(PlatformCredentialORM).where(
                    PlatformCredentialORM.id == credential_id,
                    PlatformCredentialORM.tenant_id == tenant_id,
                )
            )
            row = result.scalar_one_or_none()

        if row is None:
            logger.warning(f"Credential {credential_id} not found for tenant {tenant_id}")
            raise MissingCredentialsError(f"Credentials {credential_id} not found")
        if not (row.api_key or row.pat):
            raise MissingCredentialsError(f"Credentials {credential_id} have neither an API key nor a PAT")

        return PlatformCredentials(username=row.username, api_key=row.api_key, pat=row.pat)
