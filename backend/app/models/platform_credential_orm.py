"""
Platform credentials used to call the Mendix Deploy API on a tenant's behalf.

Rows are written by the dashboard's settings screens; the engine only reads them.
"""
import uuid

from sqlalchemy import Column, String, DateTime, Text

from backend.app.core.clock import utc_now
from backend.app.core.database import Base


class PlatformCredentialORM(Base):
    __tablename__ = "platform_credentials"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    username = Column(String(256), nullable=False)
    api_key = Column(Text, nullable=True)
    pat = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    def __repr__(self):
        return f"<PlatformCredential {self.id} user={self.username}>"
