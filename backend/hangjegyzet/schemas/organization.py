from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import BaseModel

from hangjegyzet.schemas.base import IdentifiedBase


class OrganizationCreate(BaseModel):
    """Organization creation schema"""
    name: str
    subscription_tier: str = "trial"
    subscription_expires_at: Optional[datetime] = None
    mode_limits: Optional[Dict[str, int]] = None


class OrganizationRead(OrganizationCreate, IdentifiedBase):
    """Organization as stored"""

    def is_subscription_active(self, moment: datetime) -> bool:
        expires_at = self.subscription_expires_at
        if expires_at is None:
            return True
        if expires_at.tzinfo is None:
            # SQLite drops the offset; stored values are UTC
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at > moment
