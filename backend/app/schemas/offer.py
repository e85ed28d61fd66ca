from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class OfferStatus(str, Enum):
    PENDING = "pending"
    AWAITING_RESPONSE = "awaiting_response"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class CustomerResponse(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class StatusEntryOut(BaseModel):
    status: str
    timestamp: datetime
    changed_by: str
    changed_by_name: str
    reason: Optional[str] = None


class OfferCreate(BaseModel):
    report_id: Optional[str] = None
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=255)
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    total_amount: Optional[Decimal] = None
    currency: str = "SEK"
    valid_until: datetime
    is_public: bool = False


class OfferOut(BaseModel):
    id: str
    report_id: Optional[str] = None
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    created_by: str
    is_public: bool
    title: str
    customer_name: Optional[str] = None
    total_amount: Optional[float] = None
    currency: str
    status: OfferStatus
    sent_at: Optional[datetime] = None
    valid_until: datetime
    follow_up_attempts: int
    last_follow_up_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    customer_response: Optional[CustomerResponse] = None
    status_history: List[StatusEntryOut] = Field(default_factory=list)


class OfferListResponse(BaseModel):
    items: List[OfferOut]


class OfferRejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class OfferExtendRequest(BaseModel):
    valid_until: datetime


class FollowUpRunOut(BaseModel):
    period: str
    skipped: Optional[str] = None
    processed: int = 0
    expired: int = 0
    escalated: int = 0
    followed_up: int = 0
    not_due: int = 0
    already_processed: int = 0
    failed: int = 0
