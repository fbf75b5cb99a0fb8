from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from crm_api.auth.schemas import UserRole


DealStatus = Literal["LEAD", "OPPORTUNITY", "PROPOSAL", "NEGOTIATION", "CLOSED_WON", "CLOSED_LOST"]


class CustomerCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    company_name: str = Field(min_length=1)
    industry: str | None = None
    website: str | None = None
    address: str | None = None
    email: str | None = None
    phone: str | None = None


class CustomerUpdate(CustomerCreate):
    pass


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_name: str
    industry: str | None
    website: str | None
    address: str | None
    email: str | None
    phone: str | None
    created_at: datetime
    updated_at: datetime


class CustomerName(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    company_name: str


class ContactCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str | None = None
    phone: str | None = None
    position: str | None = None
    customer_id: UUID | None = None


class ContactUpdate(ContactCreate):
    pass


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    position: str | None
    customer_id: UUID | None
    created_at: datetime
    updated_at: datetime
    customers: CustomerName | None = None


class DealCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    value: Decimal = Field(default=Decimal("0"), ge=0)
    status: DealStatus = "LEAD"
    customer_id: UUID
    expected_close_date: date | None = None


class DealUpdate(DealCreate):
    pass


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    value: float
    status: DealStatus
    customer_id: UUID
    expected_close_date: date | None
    created_by: UUID | None
    created_at: datetime
    updated_at: datetime
    customers: CustomerName | None = None


class UserCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    role: UserRole = "agent"


class UserUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    role: UserRole
    # Forwarded to the identity service when non-empty.
    password: str | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str
    email: str
    role: UserRole
    is_active: bool


class UserName(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    first_name: str
    last_name: str


class AssignmentCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: UUID
    deal_id: UUID
    assigned_by: UUID | None = None


class AssignmentRead(BaseModel):
    id: UUID
    user_id: UUID
    deal_id: UUID
    created_at: datetime
    deal: DealRead
    user: UserName
    # Name of the assigning user, null once that user is deleted.
    assigned_by: UserName | None = None
