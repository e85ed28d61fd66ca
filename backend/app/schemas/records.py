from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class CustomerOut(BaseModel):
    id: str
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    created_by: str
    name: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None


class CustomerListResponse(BaseModel):
    items: List[CustomerOut]


class ReportOut(BaseModel):
    id: str
    branch_id: Optional[str] = None
    company_id: Optional[str] = None
    created_by: str
    is_public: bool
    title: str
    status: str
    offer_status: Optional[str] = None
    created_at: Optional[datetime] = None


class ReportListResponse(BaseModel):
    items: List[ReportOut]
