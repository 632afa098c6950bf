from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class TimestampedBase(BaseModel):
    """Base schema for records with timestamps"""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class IdentifiedBase(TimestampedBase):
    """Base schema for records with ID and timestamps"""
    id: str

    model_config = ConfigDict(from_attributes=True)
