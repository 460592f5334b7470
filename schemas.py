import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import CategoryType, PaymentMethod, TransactionType


class SessionIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=1, max_length=128)


class SignupIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=8, max_length=72)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    icon: str = Field(..., min_length=1, max_length=10)
    color: str = Field(..., pattern=r"^#[0-9A-Fa-f]{6}$")
    type: CategoryType


class CreditCardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    brand: str = Field(..., min_length=1, max_length=50)
    bank: str = Field(..., min_length=1, max_length=50)
    limit_cents: int = Field(..., ge=0)
    color: str = Field(default="#3B82F6", pattern=r"^#[0-9A-Fa-f]{6}$")
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)
    is_blocked: bool = False


class SubscriptionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    service: Optional[str] = Field(default=None, max_length=100)
    amount_cents: int = Field(..., ge=0)
    billing_day: int = Field(..., ge=1, le=31)
    payment_method: PaymentMethod
    credit_card_id: Optional[int] = None
    category_id: Optional[int] = None
    is_active: bool = True


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1, max_length=255)
    amount_cents: int = Field(..., gt=0)
    date: dt.date
    kind: TransactionType
    category_id: Optional[int] = None
    payment_method: Optional[PaymentMethod] = None
    credit_card_id: Optional[int] = None
    installments: int = 1
    is_recurring: bool = False


class TransactionUpdate(BaseModel):
    """Partial update; only fields that were sent are applied."""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    kind: Optional[TransactionType] = None
    category_id: Optional[int] = None
    payment_method: Optional[PaymentMethod] = None
    credit_card_id: Optional[int] = None


class BudgetIn(BaseModel):
    category_id: int
    amount_cents: int = Field(..., ge=0)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)


class InvoicePaymentIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
