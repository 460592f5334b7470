from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"
    subscription = "subscription"


class PaymentMethod(str, Enum):
    cash = "cash"
    debit = "debit"
    credit = "credit"
    instant_transfer = "instant_transfer"
    bank_transfer = "bank_transfer"


class InvoiceStatus(str, Enum):
    pending = "pending"
    partial = "partial"
    paid = "paid"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    icon: Mapped[str] = mapped_column(String(10), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class CreditCard(Base, TimestampMixin):
    __tablename__ = "credit_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand: Mapped[str] = mapped_column(String(50), nullable=False)
    bank: Mapped[str] = mapped_column(String(50), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_used_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#3B82F6")
    closing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="credit_card"
    )

    @property
    def available_limit_cents(self) -> int:
        return max(0, self.limit_cents - self.current_used_cents)

    __table_args__ = (
        CheckConstraint("limit_cents >= 0", name="ck_credit_card_limit_positive"),
        CheckConstraint("current_used_cents >= 0", name="ck_credit_card_used_positive"),
        CheckConstraint("closing_day BETWEEN 1 AND 31", name="ck_credit_card_closing"),
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_credit_card_due"),
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    service: Mapped[Optional[str]] = mapped_column(String(100))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(PaymentMethod), nullable=False
    )
    credit_card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("credit_cards.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    credit_card: Mapped[Optional["CreditCard"]] = relationship("CreditCard")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_subscription_amount_positive"),
        CheckConstraint("billing_day BETWEEN 1 AND 31", name="ck_subscription_billing"),
        Index("ix_subscriptions_user_active", "user_id", "is_active"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    kind: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(
        SAEnum(PaymentMethod)
    )
    credit_card_id: Mapped[Optional[int]] = mapped_column(ForeignKey("credit_cards.id"))
    installments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    credit_card: Mapped[Optional["CreditCard"]] = relationship(
        "CreditCard", back_populates="transactions"
    )

    @property
    def is_card_expense(self) -> bool:
        return self.kind == TransactionType.expense and self.credit_card_id is not None

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_parent", "parent_transaction_id"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "installments BETWEEN 1 AND 24", name="ck_transactions_installments_range"
        ),
        CheckConstraint(
            "installment_number BETWEEN 1 AND installments",
            name="ck_transactions_installment_number",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        UniqueConstraint(
            "user_id",
            "category_id",
            "year",
            "month",
            name="uq_budget_user_category_month",
        ),
        Index("ix_budget_user_month", "user_id", "year", "month"),
    )


class CreditCardInvoice(Base, TimestampMixin):
    __tablename__ = "credit_card_invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    credit_card_id: Mapped[int] = mapped_column(
        ForeignKey("credit_cards.id"), nullable=False
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[InvoiceStatus] = mapped_column(
        SAEnum(InvoiceStatus), nullable=False, default=InvoiceStatus.pending
    )

    credit_card: Mapped["CreditCard"] = relationship("CreditCard")

    __table_args__ = (
        CheckConstraint("total_cents >= 0", name="ck_invoice_total_positive"),
        CheckConstraint("paid_cents >= 0", name="ck_invoice_paid_positive"),
        UniqueConstraint(
            "user_id", "credit_card_id", "due_date", name="uq_invoice_card_due_date"
        ),
    )
