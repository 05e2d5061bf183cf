"""CRM-side records the engine creates or reads."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel


class CrmTask(BaseModel):
    """Follow-up task assigned to a CRM user."""
    subject: str
    description: str
    what_id: str
    owner_id: Optional[str] = None
    status: str = "Open"
    priority: str = "Normal"
    activity_date: Optional[date] = None


class MenuSubmission(BaseModel):
    """A merchant record whose menu-collection link was recently set."""
    merchant_id: str
    merchant_name: str
    submission_link: str
    manager_email: Optional[str] = None
    manager_name: Optional[str] = None
    last_modified: datetime
