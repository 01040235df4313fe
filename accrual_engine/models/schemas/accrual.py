"""
Schemas for the accrual trigger surface.
"""
import datetime as dt
from pydantic import BaseModel, Field


class RunDateRequest(BaseModel):
    """Process (or reprocess with ``force``) a single operational date."""
    date: dt.date = Field(description="Operational date, YYYY-MM-DD")
    force: bool = Field(default=False, description="Reprocess even if the date is COMPLETED")
