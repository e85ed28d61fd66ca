from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from app.schemas.offer import StatusEntryOut


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class AppointmentCreate(BaseModel):
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    assigned_inspector_id: str = Field(..., min_length=1)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = Field(default=None, max_length=255)
    scheduled_at: datetime
    duration_minutes: int = Field(default=60, gt=0, le=24 * 60)


class AppointmentOut(BaseModel):
    id: str
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    created_by: str
    assigned_inspector_id: str
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    scheduled_at: datetime
    duration_minutes: int
    status: AppointmentStatus
    report_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    reminder_sent_at: Optional[datetime] = None
    status_history: List[StatusEntryOut] = Field(default_factory=list)


class AppointmentCompleteRequest(BaseModel):
    report_id: Optional[str] = None
    inspector_notes: Optional[str] = Field(default=None, max_length=4000)


class AppointmentCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class AppointmentLinkReportRequest(BaseModel):
    report_id: str = Field(..., min_length=1)


class ReminderRunOut(BaseModel):
    period: str
    appointment_day: str
    skipped: Optional[str] = None
    reminded: int = 0
    already_sent: int = 0
    no_recipient: int = 0
    failed: int = 0
