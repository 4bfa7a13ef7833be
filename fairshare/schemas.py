"""
Pydantic schemas for the FairShare API.

Amounts are accepted as numbers or strings and returned as strings with two
decimals (``"12.50"``) so clients never see float rounding.
"""

from __future__ import annotations

from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, Field, PlainSerializer, field_validator

Money = Annotated[
    Decimal,
    PlainSerializer(lambda value: f"{value:.2f}", return_type=str, when_used="json"),
]


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip().lower()
    local, _, domain = value.partition("@")
    if not local or "." not in domain:
        raise ValueError("Invalid email address")
    return value


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    database: Literal["ok", "unavailable"]
    queue: Literal["ok", "unavailable"]
    timestamp: float
    version: str


class MessageResponse(BaseModel):
    message: str


# Users


class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    username: str
    avatar_url: Optional[str] = None
    created_at: float


class UserBrief(BaseModel):
    id: int
    name: str
    username: str
    avatar_url: Optional[str] = None


class UserUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=254)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


# Groups


class GroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class GroupUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class GroupResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    created_by: int
    created_at: float
    updated_at: float
    member_count: int
    balance: Optional[Money] = None


class GroupListResponse(BaseModel):
    groups: list[GroupResponse]
    total_count: int
    has_more: bool


class GroupSummaryMember(BaseModel):
    user_id: int
    name: str


class GroupSummaryResponse(BaseModel):
    id: int
    name: str
    created_by: int
    created_at: float
    members: list[GroupSummaryMember]
    member_count: int
    user_balance: Money


class MemberResponse(BaseModel):
    id: int
    user_id: int
    role: str
    joined_at: float
    user: Optional[UserBrief] = None


# Invites


class InviteRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    expires_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)


class InviteResponse(BaseModel):
    id: int
    group_id: int
    invite_code: str
    created_by: int
    active: bool
    expires_at: Optional[float] = None
    created_at: float


class InviteGroupInfo(BaseModel):
    name: str
    member_count: int


class InviterInfo(BaseModel):
    name: str


class InviteVerifyResponse(BaseModel):
    valid: bool
    group: InviteGroupInfo
    invited_by: Optional[InviterInfo] = None


# Expenses


class ParticipantShare(BaseModel):
    user_id: int
    amount_owed: Decimal = Field(..., ge=0)


class ExpenseCreateRequest(BaseModel):
    group_id: int
    title: str = Field(..., min_length=1, max_length=200)
    total_amount: Decimal = Field(..., gt=0)
    paid_by: Optional[int] = None
    date: Optional[date_type] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    participants: Optional[list[ParticipantShare]] = None
    split_equally_among: Optional[list[int]] = None


class ExpenseUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    total_amount: Optional[Decimal] = Field(default=None, gt=0)
    paid_by: Optional[int] = None
    date: Optional[date_type] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    participants: Optional[list[ParticipantShare]] = None
    split_equally_among: Optional[list[int]] = None


class ParticipantResponse(BaseModel):
    user_id: int
    amount_owed: Money
    user: Optional[UserBrief] = None


class ExpenseResponse(BaseModel):
    id: int
    group_id: int
    title: str
    total_amount: Money
    paid_by: int
    paid_by_user: Optional[UserBrief] = None
    date: date_type
    notes: Optional[str] = None
    participants: list[ParticipantResponse]
    created_at: float
    updated_at: float


class ExpenseListResponse(BaseModel):
    expenses: list[ExpenseResponse]
    total_count: int
    has_more: bool
    page: int


# Payments


class PaymentCreateRequest(BaseModel):
    group_id: int
    paid_by: Optional[int] = None
    paid_to: int
    amount: Decimal = Field(..., gt=0)
    date: Optional[date_type] = None
    note: Optional[str] = Field(default=None, max_length=500)


class PaymentUpdateRequest(BaseModel):
    paid_by: Optional[int] = None
    paid_to: Optional[int] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    date: Optional[date_type] = None
    note: Optional[str] = Field(default=None, max_length=500)


class PaymentResponse(BaseModel):
    id: int
    group_id: int
    paid_by: int
    paid_to: int
    amount: Money
    date: date_type
    note: Optional[str] = None
    paid_by_user: Optional[UserBrief] = None
    paid_to_user: Optional[UserBrief] = None
    created_at: float
    updated_at: float


class PaymentListResponse(BaseModel):
    payments: list[PaymentResponse]
    total_count: int
    has_more: bool
    page: int


# Activity


class ActivityResponse(BaseModel):
    id: int
    user_id: int
    action_type: str
    group_id: Optional[int] = None
    expense_id: Optional[int] = None
    payment_id: Optional[int] = None
    metadata: Optional[dict] = None
    created_at: float
    user_name: Optional[str] = None
    group_name: Optional[str] = None
    expense_title: Optional[str] = None
    payment_amount: Optional[Money] = None


class ActivityListResponse(BaseModel):
    activities: list[ActivityResponse]
    total_count: int
    has_more: bool


# Balances


class GroupBalanceEntry(BaseModel):
    user_id: int
    user: Optional[UserBrief] = None
    balance: Money


class PairBalanceEntry(BaseModel):
    other_user_id: int
    other_user: Optional[UserBrief] = None
    amount: Money
    direction: Literal["owes", "owed"]


class CounterpartyAmount(BaseModel):
    user_id: int
    user: Optional[UserBrief] = None
    amount: Money


class UserBalancesResponse(BaseModel):
    total_owed: Money
    total_owes: Money
    net_balance: Money
    owed_by: list[CounterpartyAmount]
    owes_to: list[CounterpartyAmount]


class SettlementResponse(BaseModel):
    from_user_id: int
    to_user_id: int
    amount: Money
    from_user: Optional[UserBrief] = None
    to_user: Optional[UserBrief] = None


class RefreshBalancesResponse(BaseModel):
    group_id: int
    status: Literal["recalculated", "queued"]
    balances: Optional[list[GroupBalanceEntry]] = None
