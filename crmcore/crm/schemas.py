from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


DealStage = Literal["LEAD", "QUALIFIED", "PROPOSAL", "NEGOTIATION", "CLOSED_WON", "CLOSED_LOST"]
LeadStatus = Literal["New", "Contacted", "Qualified", "Converted", "Lost"]

LEAD_STATUS_CONVERTED = "Converted"
ACTIVITY_STATUS_COMPLETED = "COMPLETED"


class WritePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


# Money columns are NUMERIC(18, 2).
Money = Annotated[Decimal, Field(max_digits=18, decimal_places=2)]


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str | None


class ContactSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    email: str


class CompanySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str


class DealSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    value: Decimal
    stage: str


class UserCreate(WritePayload):
    email: EmailStr
    name: str | None = None


class UserUpdate(WritePayload):
    email: EmailStr | None = None
    name: str | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str | None
    created_at: datetime
    updated_at: datetime
    contacts: list[ContactSummary] = Field(default_factory=list)


class ContactCreate(WritePayload):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    phone: str | None = None
    address: str | None = None
    user_id: str = Field(min_length=1)
    company_id: str | None = None


class ContactUpdate(WritePayload):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    address: str | None = None
    user_id: str | None = Field(default=None, min_length=1)
    company_id: str | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    email: str
    phone: str | None
    address: str | None
    user_id: str
    company_id: str | None
    created_at: datetime
    updated_at: datetime
    user: UserSummary | None = None
    company: CompanySummary | None = None


class CompanyCreate(WritePayload):
    name: str = Field(min_length=1)
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    size: str | None = None
    revenue: Money | None = None
    description: str | None = None
    user_id: str = Field(min_length=1)


class CompanyUpdate(WritePayload):
    name: str | None = Field(default=None, min_length=1)
    industry: str | None = None
    website: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    size: str | None = None
    revenue: Money | None = None
    description: str | None = None
    user_id: str | None = Field(default=None, min_length=1)


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    industry: str | None
    website: str | None
    phone: str | None
    address: str | None
    city: str | None
    state: str | None
    country: str | None
    size: str | None
    revenue: Decimal | None
    description: str | None
    user_id: str
    created_at: datetime
    updated_at: datetime
    user: UserSummary | None = None
    contacts: list[ContactSummary] = Field(default_factory=list)
    deals: list[DealSummary] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)


class DealCreate(WritePayload):
    title: str = Field(min_length=1)
    value: Money
    description: str | None = None
    stage: DealStage = "LEAD"
    probability: int = Field(default=0, ge=0, le=100)
    expected_close_date: datetime | None = None
    actual_close_date: datetime | None = None
    user_id: str = Field(min_length=1)
    contact_id: str | None = None
    company_id: str | None = None


class DealUpdate(WritePayload):
    title: str | None = Field(default=None, min_length=1)
    value: Money | None = None
    description: str | None = None
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: datetime | None = None
    actual_close_date: datetime | None = None
    user_id: str | None = Field(default=None, min_length=1)
    contact_id: str | None = None
    company_id: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    value: Decimal
    description: str | None
    stage: str
    probability: int
    expected_close_date: datetime | None
    actual_close_date: datetime | None
    user_id: str
    contact_id: str | None
    company_id: str | None
    created_at: datetime
    updated_at: datetime
    user: UserSummary | None = None
    contact: ContactSummary | None = None
    company: CompanySummary | None = None
    counts: dict[str, int] = Field(default_factory=dict)


class LeadCreate(WritePayload):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    source: str | None = None
    status: LeadStatus = "New"
    score: int | None = None
    notes: str | None = None
    user_id: str = Field(min_length=1)


class LeadUpdate(WritePayload):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    job_title: str | None = None
    source: str | None = None
    status: LeadStatus | None = None
    score: int | None = None
    notes: str | None = None
    user_id: str | None = Field(default=None, min_length=1)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    first_name: str
    last_name: str
    email: str
    phone: str | None
    company: str | None
    job_title: str | None
    source: str | None
    status: str
    score: int | None
    notes: str | None
    converted_to_contact_id: str | None
    user_id: str
    created_at: datetime
    updated_at: datetime
    user: UserSummary | None = None


class LeadConvertRequest(WritePayload):
    company_id: str | None = None


class LeadConversionRead(BaseModel):
    lead: LeadRead
    contact: ContactRead


class ActivityCreate(WritePayload):
    title: str = Field(min_length=1)
    type: str = Field(min_length=1)
    description: str | None = None
    status: str = Field(default="PENDING", min_length=1)
    due_date: datetime | None = None
    completed_at: datetime | None = None
    priority: str = Field(default="Medium", min_length=1)
    user_id: str = Field(min_length=1)
    contact_id: str | None = None
    company_id: str | None = None
    deal_id: str | None = None


class ActivityUpdate(WritePayload):
    title: str | None = Field(default=None, min_length=1)
    type: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: str | None = Field(default=None, min_length=1)
    due_date: datetime | None = None
    completed_at: datetime | None = None
    priority: str | None = Field(default=None, min_length=1)
    user_id: str | None = Field(default=None, min_length=1)
    contact_id: str | None = None
    company_id: str | None = None
    deal_id: str | None = None


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    type: str
    description: str | None
    status: str
    due_date: datetime | None
    completed_at: datetime | None
    priority: str
    user_id: str
    contact_id: str | None
    company_id: str | None
    deal_id: str | None
    created_at: datetime
    updated_at: datetime
    user: UserSummary | None = None
    contact: ContactSummary | None = None
    company: CompanySummary | None = None
    deal: DealSummary | None = None


class NoteCreate(WritePayload):
    content: str = Field(min_length=1)
    title: str | None = None
    user_id: str = Field(min_length=1)
    contact_id: str | None = None
    company_id: str | None = None
    deal_id: str | None = None


class NoteUpdate(WritePayload):
    content: str | None = Field(default=None, min_length=1)
    title: str | None = None
    user_id: str | None = Field(default=None, min_length=1)
    contact_id: str | None = None
    company_id: str | None = None
    deal_id: str | None = None


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str | None
    content: str
    user_id: str
    contact_id: str | None
    company_id: str | None
    deal_id: str | None
    created_at: datetime
    updated_at: datetime
    user: UserSummary | None = None
    contact: ContactSummary | None = None
    company: CompanySummary | None = None
    deal: DealSummary | None = None
