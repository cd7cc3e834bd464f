from datetime import date as date_type, datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


# Auth
class UserCreate(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    phone: str = Field(min_length=8, max_length=30)
    password: str = Field(min_length=8, max_length=128)
    invite_code: Optional[str] = Field(default=None, max_length=20)

    @field_validator('name')
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError('Name must have at least 2 characters')
        return v


class LoginRequest(BaseModel):
    identifier: str = Field(min_length=3, max_length=120)  # Email or phone
    password: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=16, max_length=200)
    password: str = Field(min_length=8, max_length=128)


class LogoutAllRequest(BaseModel):
    keep_current: bool = False


class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str


class User(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    pix_key: Optional[str] = None
    home_id: Optional[int] = None
    is_admin: bool = False
    last_seen_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuthResponse(Token):
    user: User


class SessionInfo(BaseModel):
    id: str
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool


# Homes
class HomeCreate(BaseModel):
    name: str = Field(min_length=2, max_length=100)


class JoinHomeRequest(BaseModel):
    invite_code: str = Field(min_length=4, max_length=20)


class SwitchHomeRequest(BaseModel):
    home_id: int


class HomeMember(BaseModel):
    user_id: int
    name: str
    email: str
    role: str


class Home(BaseModel):
    id: int
    name: str
    invite_code: str
    created_at: datetime
    members: list[HomeMember] = []


# Expenses
class CustomSplit(BaseModel):
    user_id: int
    percent: float = Field(ge=0.01, le=100)


class ShareDraft(BaseModel):
    """A computed share before it is persisted."""
    user_id: int
    amount: int  # In cents
    split_percent: float
    is_paid: bool = False


class ExpenseCreate(BaseModel):
    description: str = Field(min_length=1, max_length=200)
    amount: int = Field(gt=0)  # In cents
    category_id: int
    split_type: Optional[Literal["EQUAL", "CUSTOM", "INDIVIDUAL"]] = None
    custom_splits: Optional[list[CustomSplit]] = None
    notes: Optional[str] = Field(default=None, max_length=3000)
    receipt: Optional[str] = Field(default=None, max_length=1000)
    date: Optional[date_type] = None
    due_date: Optional[date_type] = None
    reminder_enabled: bool = False
    recurrence_type: Optional[Literal["NONE", "MONTHLY"]] = None
    recurrence_interval_months: Optional[int] = Field(default=None, ge=1, le=12)
    reminder_days_before: Optional[int] = Field(default=None, ge=0, le=30)

    @field_validator('description')
    @classmethod
    def strip_description(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Description is required')
        return v


class ExpenseShare(BaseModel):
    id: int
    expense_id: int
    user_id: int
    amount: int
    split_percent: Optional[float] = None
    is_paid: bool
    paid_at: Optional[datetime] = None
    proof_url: Optional[str] = None
    proof_description: Optional[str] = None

    class Config:
        from_attributes = True


class Expense(BaseModel):
    id: int
    description: str
    amount: int
    date: date_type
    due_date: Optional[date_type] = None
    split_type: str
    notes: Optional[str] = None  # User notes only, schedule metadata is exposed below
    receipt: Optional[str] = None
    category_id: int
    home_id: int
    paid_by_id: int
    created_at: datetime
    recurrence_type: str
    recurrence_interval_months: int
    reminder_days_before: int
    account_status: str
    shares: list[ExpenseShare] = []
    can_manage: bool = False
    can_delete: bool = False
    delete_window_ends_at: Optional[datetime] = None


class ExpenseStatusUpdate(BaseModel):
    status: Literal["OPEN", "CLOSED"]


class SettleShareRequest(BaseModel):
    proof_url: Optional[str] = Field(default=None, max_length=1000)
    proof_description: Optional[str] = Field(default=None, max_length=500)

    @field_validator('proof_url')
    @classmethod
    def validate_proof_url(cls, v):
        if v is not None and not v.startswith(('http://', 'https://')):
            raise ValueError('proof_url must be a valid URL')
        return v


class Balance(BaseModel):
    """Net balance of a home member."""
    user_id: int
    name: str
    amount: int  # Cents. Positive means you are owed, negative means you owe


class Creditor(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str] = None
    pix_key: Optional[str] = None


class DebtExpense(BaseModel):
    id: int
    description: str
    total_amount: int
    date: date_type
    notes: Optional[str] = None
    receipt: Optional[str] = None
    split_type: str
    recurrence_type: str
    recurrence_interval_months: int
    reminder_days_before: int
    account_status: str


class Debt(BaseModel):
    share_id: int
    amount: int
    split_percent: Optional[float] = None
    proof_url: Optional[str] = None
    proof_description: Optional[str] = None
    expense: DebtExpense
    creditor: Creditor


class Category(BaseModel):
    id: int
    home_id: int
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    type: str
    is_recurring: bool
    recurring_day: Optional[int] = None

    class Config:
        from_attributes = True


# Notifications
class Notification(BaseModel):
    id: int
    type: str
    title: str
    message: str
    data: Optional[dict] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
