"""
Schemas for outbox administration.
"""
from typing import Optional
from pydantic import BaseModel, Field


class PurgeRequest(BaseModel):
    older_than_days: Optional[int] = Field(default=None, ge=0, description="Defaults to the configured retention")
