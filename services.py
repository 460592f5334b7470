from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from auth import hash_password, verify_password
from config import get_settings
from grouping import (
    ConflictingModeError,
    GroupKind,
    InstallmentRangeError,
    MutationScope,
    classify,
    occurrence_in_month,
    plan_rows,
    resolve_group_key,
    validate_installment_total,
)
from models import (
    Budget,
    Category,
    CategoryType,
    CreditCard,
    CreditCardInvoice,
    InvoiceStatus,
    PaymentMethod,
    Subscription,
    Transaction,
    TransactionType,
    User,
)
from money import split_evenly
from periods import (
    Period,
    add_months,
    custom_period,
    days_in_month,
    month_period,
    trailing_months,
)
from schemas import (
    BudgetIn,
    CategoryIn,
    CreditCardIn,
    InvoicePaymentIn,
    SessionIn,
    SignupIn,
    SubscriptionIn,
    TransactionIn,
    TransactionUpdate,
)

__all__ = [
    "BudgetService",
    "AuthenticationError",
    "CategoryService",
    "ConflictingModeError",
    "CreditCardService",
    "DuplicateUserError",
    "InstallmentRangeError",
    "MetricsService",
    "NotFoundError",
    "SubscriptionService",
    "TransactionFilters",
    "TransactionNotFound",
    "TransactionService",
    "UserService",
    "get_current_user_id",
]

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES: list[tuple[str, str, str, CategoryType]] = [
    ("Food", "🍔", "#EF4444", CategoryType.expense),
    ("Transport", "🚗", "#F59E0B", CategoryType.expense),
    ("Housing", "🏠", "#8B5CF6", CategoryType.expense),
    ("Health", "🏥", "#10B981", CategoryType.expense),
    ("Education", "📚", "#2563EB", CategoryType.expense),
    ("Leisure", "🎭", "#EC4899", CategoryType.expense),
    ("Clothing", "👕", "#06B6D4", CategoryType.expense),
    ("Bills", "📄", "#6B7280", CategoryType.expense),
    ("Other", "📦", "#84CC16", CategoryType.expense),
    ("Salary", "💰", "#10B981", CategoryType.income),
    ("Transport Allowance", "🚇", "#2563EB", CategoryType.income),
    ("Meal Allowance", "🍽️", "#F59E0B", CategoryType.income),
    ("Freelance", "💻", "#8B5CF6", CategoryType.income),
    ("Bonus", "🎁", "#EC4899", CategoryType.income),
    ("Other", "💵", "#6B7280", CategoryType.income),
]


class NotFoundError(ValueError):
    pass


class TransactionNotFound(NotFoundError):
    pass


class AuthenticationError(ValueError):
    pass


class DuplicateUserError(ValueError):
    pass


def get_current_user_id() -> int:
    return get_settings().default_user_id


@dataclass
class TransactionFilters:
    kind: Optional[TransactionType] = None
    category_id: Optional[int] = None
    query: Optional[str] = None


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: SignupIn) -> User:
        email = data.email.strip().lower()
        if self.session.scalar(select(User.id).where(User.email == email)) is not None:
            raise DuplicateUserError("A user with this email already exists")

        user = User(
            email=email,
            password_hash=hash_password(data.password),
            first_name=data.first_name,
            last_name=data.last_name,
        )
        self.session.add(user)
        self.session.flush()
        CategoryService(self.session, user.id).add_defaults()
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_created: user={user.id}")
        return user

    def authenticate(self, data: SessionIn) -> User:
        email = data.email.strip().lower()
        user = self.session.scalar(select(User).where(User.email == email))
        if (
            not user
            or not user.password_hash
            or not verify_password(data.password, user.password_hash)
        ):
            raise AuthenticationError("Invalid credentials")
        return user

    def ensure_default_user(self) -> User:
        user_id = get_current_user_id()
        user = self.session.get(User, user_id)
        if user:
            return user
        user = User(id=user_id, email=f"user{user_id}@localhost")
        self.session.add(user)
        self.session.flush()
        CategoryService(self.session, user.id).add_defaults()
        logger.info(f"default_user_created: user={user.id}")
        return user


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(
        self, name: str, type: CategoryType, exclude_id: Optional[int] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def add_defaults(self) -> None:
        existing = self.session.scalar(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        )
        if existing:
            return
        for name, icon, color, type in DEFAULT_CATEGORIES:
            self.session.add(
                Category(
                    user_id=self.user_id, name=name, icon=icon, color=color, type=type
                )
            )
        self.session.flush()

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name, data.type):
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=name,
            icon=data.icon,
            color=data.color.upper(),
            type=data.type,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryIn) -> Category:
        category = self.get(category_id)
        name = data.name.strip()
        if self._name_taken(name, data.type, exclude_id=category.id):
            raise ValueError("Category with this name already exists")
        category.name = name
        category.icon = data.icon
        category.color = data.color.upper()
        category.type = data.type
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        # References degrade to "uncategorized" instead of cascading.
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
            .values(category_id=None)
        )
        self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == self.user_id,
                Subscription.category_id == category.id,
            )
            .values(category_id=None)
        )
        self.session.execute(
            delete(Budget).where(
                Budget.user_id == self.user_id, Budget.category_id == category.id
            )
        )
        self.session.delete(category)
        self.session.commit()


class CreditCardService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[CreditCard]:
        stmt = (
            select(CreditCard)
            .where(CreditCard.user_id == self.user_id)
            .order_by(CreditCard.name, CreditCard.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, card_id: int) -> CreditCard:
        card = self.session.get(CreditCard, card_id)
        if not card or card.user_id != self.user_id:
            raise NotFoundError("Credit card not found")
        return card

    def create(self, data: CreditCardIn) -> CreditCard:
        card = CreditCard(
            user_id=self.user_id,
            name=data.name.strip(),
            brand=data.brand.strip(),
            bank=data.bank.strip(),
            limit_cents=data.limit_cents,
            current_used_cents=0,
            color=data.color.upper(),
            closing_day=data.closing_day,
            due_day=data.due_day,
            is_blocked=data.is_blocked,
        )
        self.session.add(card)
        self.session.commit()
        self.session.refresh(card)
        return card

    def update(self, card_id: int, data: CreditCardIn) -> CreditCard:
        card = self.get(card_id)
        for field, value in data.model_dump().items():
            setattr(card, field, value)
        card.color = data.color.upper()
        self.session.commit()
        self.session.refresh(card)
        return card

    def delete(self, card_id: int) -> None:
        card = self.get(card_id)
        charged = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.credit_card_id == card.id,
            )
        )
        if charged:
            raise ValueError(
                "Credit card still has transactions; delete them before removing the card"
            )
        self.session.execute(
            update(Subscription)
            .where(
                Subscription.user_id == self.user_id,
                Subscription.credit_card_id == card.id,
            )
            .values(credit_card_id=None)
        )
        self.session.execute(
            delete(CreditCardInvoice).where(
                CreditCardInvoice.user_id == self.user_id,
                CreditCardInvoice.credit_card_id == card.id,
            )
        )
        self.session.delete(card)
        self.session.commit()

    def adjust_used(self, card_id: int, delta_cents: int) -> CreditCard:
        """Move the card's used amount by `delta_cents`, never below zero. No commit."""
        card = self.get(card_id)
        card.current_used_cents = max(0, card.current_used_cents + delta_cents)
        self.session.flush()
        logger.info(
            f"card_used_adjusted: card={card.id} delta={delta_cents} used={card.current_used_cents}"
        )
        return card

    def statement(self, card_id: int, start: date, end: date) -> list[dict[str, object]]:
        card = self.get(card_id)
        period = custom_period(start, end)

        txns = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.credit_card_id == card.id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()
        entries: list[dict[str, object]] = [
            {
                "id": txn.id,
                "description": txn.description,
                "amount_cents": txn.amount_cents,
                "date": txn.date,
                "kind": txn.kind.value,
                "category_id": txn.category_id,
                "installment_number": txn.installment_number,
                "installments": txn.installments,
                "is_subscription": False,
            }
            for txn in txns
        ]

        subscriptions = self.session.scalars(
            select(Subscription).where(
                Subscription.user_id == self.user_id,
                Subscription.credit_card_id == card.id,
                Subscription.payment_method == PaymentMethod.credit,
                Subscription.is_active.is_(True),
            )
        ).all()
        billing_days = days_in_month(start.year, start.month)
        for sub in subscriptions:
            entries.append(
                {
                    "id": f"subscription-{sub.id}",
                    "description": f"{sub.name} (Subscription)",
                    "amount_cents": sub.amount_cents,
                    "date": date(
                        start.year, start.month, min(sub.billing_day, billing_days)
                    ),
                    "kind": TransactionType.expense.value,
                    "category_id": sub.category_id,
                    "installment_number": 1,
                    "installments": 1,
                    "is_subscription": True,
                }
            )
        entries.sort(key=lambda e: e["date"])
        return entries

    def invoice_window(self, card: CreditCard, due_date: date) -> Period:
        """Purchases closing into the invoice due on `due_date`."""
        closing_month = due_date.replace(day=1)
        if card.closing_day >= card.due_day:
            closing_month = add_months(closing_month, -1)
        closing = add_months(closing_month, 0, desired_day=card.closing_day)
        previous = add_months(closing_month, -1, desired_day=card.closing_day)
        return custom_period(previous + timedelta(days=1), closing)

    def get_or_create_invoice(self, card_id: int, due_date: date) -> CreditCardInvoice:
        card = self.get(card_id)
        period = self.invoice_window(card, due_date)
        total = sum(
            int(entry["amount_cents"])
            for entry in self.statement(card.id, period.start, period.end)
        )

        invoice = self.session.scalar(
            select(CreditCardInvoice).where(
                CreditCardInvoice.user_id == self.user_id,
                CreditCardInvoice.credit_card_id == card.id,
                CreditCardInvoice.due_date == due_date,
            )
        )
        if invoice is None:
            invoice = CreditCardInvoice(
                user_id=self.user_id,
                credit_card_id=card.id,
                due_date=due_date,
                paid_cents=0,
            )
            self.session.add(invoice)
        invoice.total_cents = total
        invoice.status = _invoice_status(invoice.total_cents, invoice.paid_cents)
        self.session.commit()
        self.session.refresh(invoice)
        return invoice

    def pay_invoice(self, invoice_id: int, data: InvoicePaymentIn) -> CreditCardInvoice:
        invoice = self.session.get(CreditCardInvoice, invoice_id)
        if not invoice or invoice.user_id != self.user_id:
            raise NotFoundError("Invoice not found")

        try:
            invoice.paid_cents += data.amount_cents
            invoice.status = _invoice_status(invoice.total_cents, invoice.paid_cents)
            self.adjust_used(invoice.credit_card_id, -data.amount_cents)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(invoice)
        logger.info(
            f"invoice_paid: invoice={invoice.id} amount={data.amount_cents} status={invoice.status.value}"
        )
        return invoice


def _invoice_status(total_cents: int, paid_cents: int) -> InvoiceStatus:
    if total_cents > 0 and paid_cents >= total_cents:
        return InvoiceStatus.paid
    if paid_cents > 0:
        return InvoiceStatus.partial
    return InvoiceStatus.pending


class SubscriptionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, active_only: bool = False) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .options(joinedload(Subscription.category))
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.billing_day, Subscription.name)
        )
        if active_only:
            stmt = stmt.where(Subscription.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, subscription_id: int) -> Subscription:
        sub = self.session.get(Subscription, subscription_id)
        if not sub or sub.user_id != self.user_id:
            raise NotFoundError("Subscription not found")
        return sub

    def _check_links(self, data: SubscriptionIn) -> None:
        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(data.category_id)
            if category.type == CategoryType.income:
                raise ValueError("Category type mismatch")
        if data.credit_card_id is not None:
            CreditCardService(self.session, self.user_id).get(data.credit_card_id)
            if data.payment_method != PaymentMethod.credit:
                raise ValueError(
                    "Subscriptions billed to a credit card must use the credit payment method"
                )
        elif data.payment_method == PaymentMethod.credit:
            raise ValueError("A credit card is required for credit payments")

    def create(self, data: SubscriptionIn) -> Subscription:
        self._check_links(data)
        sub = Subscription(user_id=self.user_id, **data.model_dump())
        sub.name = data.name.strip()
        self.session.add(sub)
        self.session.commit()
        self.session.refresh(sub)
        return sub

    def update(self, subscription_id: int, data: SubscriptionIn) -> Subscription:
        sub = self.get(subscription_id)
        self._check_links(data)
        for field, value in data.model_dump().items():
            setattr(sub, field, value)
        sub.name = data.name.strip()
        self.session.commit()
        self.session.refresh(sub)
        return sub

    def toggle(self, subscription_id: int, is_active: bool) -> Subscription:
        sub = self.get(subscription_id)
        sub.is_active = is_active
        self.session.commit()
        return sub

    def delete(self, subscription_id: int) -> None:
        sub = self.get(subscription_id)
        self.session.delete(sub)
        self.session.commit()

    def active_total_cents(self) -> tuple[int, int]:
        row = self.session.execute(
            select(
                func.coalesce(func.sum(Subscription.amount_cents), 0),
                func.count(Subscription.id),
            ).where(
                Subscription.user_id == self.user_id,
                Subscription.is_active.is_(True),
            )
        ).one()
        return int(row[0] or 0), int(row[1] or 0)


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _check_links(
        self,
        kind: TransactionType,
        category_id: Optional[int],
        payment_method: Optional[PaymentMethod],
        credit_card_id: Optional[int],
    ) -> None:
        if category_id is not None:
            category = CategoryService(self.session, self.user_id).get(category_id)
            if kind == TransactionType.income and category.type != CategoryType.income:
                raise ValueError("Category type mismatch")
            if kind == TransactionType.expense and category.type == CategoryType.income:
                raise ValueError("Category type mismatch")
        if credit_card_id is not None:
            CreditCardService(self.session, self.user_id).get(credit_card_id)
            if kind != TransactionType.expense:
                raise ValueError("Only expenses can be charged to a credit card")
            if payment_method != PaymentMethod.credit:
                raise ValueError(
                    "Credit card transactions must use the credit payment method"
                )
        elif kind == TransactionType.expense and payment_method == PaymentMethod.credit:
            raise ValueError("A credit card is required for credit payments")

    @staticmethod
    def _card_charges(rows: Iterable[Transaction]) -> dict[int, int]:
        charges: dict[int, int] = defaultdict(int)
        for row in rows:
            if row.is_card_expense:
                charges[row.credit_card_id] += row.amount_cents
        return dict(charges)

    def _apply_card_charges(
        self, before: dict[int, int], after: dict[int, int]
    ) -> None:
        cards = CreditCardService(self.session, self.user_id)
        for card_id in sorted(set(before) | set(after)):
            delta = after.get(card_id, 0) - before.get(card_id, 0)
            if delta:
                cards.adjust_used(card_id, delta)

    def create(self, data: TransactionIn) -> list[Transaction]:
        """
        Persist a create request, expanding installment purchases into one row
        per month. Returns every row created, anchor first.
        """
        rows = plan_rows(
            data.amount_cents, data.date, data.installments, data.is_recurring
        )
        payment_method = data.payment_method
        if data.credit_card_id is not None and payment_method is None:
            payment_method = PaymentMethod.credit
        self._check_links(
            data.kind, data.category_id, payment_method, data.credit_card_id
        )
        if data.installments > 1 and (
            data.kind != TransactionType.expense or data.credit_card_id is None
        ):
            raise ValueError("Installments are only allowed for credit card expenses")

        created: list[Transaction] = []
        try:
            anchor: Optional[Transaction] = None
            for row in rows:
                txn = Transaction(
                    user_id=self.user_id,
                    description=data.description.strip(),
                    amount_cents=row.amount_cents,
                    date=row.date,
                    kind=data.kind,
                    category_id=data.category_id,
                    payment_method=payment_method,
                    credit_card_id=data.credit_card_id,
                    installments=data.installments,
                    installment_number=row.installment_number,
                    parent_transaction_id=anchor.id if anchor else None,
                    is_recurring=data.is_recurring,
                )
                self.session.add(txn)
                if anchor is None:
                    self.session.flush()
                    anchor = txn
                created.append(txn)
            self.session.flush()
            self._apply_card_charges({}, self._card_charges(created))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        for txn in created:
            self.session.refresh(txn)
        if len(created) > 1:
            logger.info(
                f"installments_created: group={created[0].id} count={len(created)} total={data.amount_cents}"
            )
        return created

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    def parent_of(self, txn: Transaction) -> Optional[Transaction]:
        if txn.parent_transaction_id is None:
            return None
        return self.session.get(Transaction, txn.parent_transaction_id)

    def group_kind(self, txn: Transaction) -> GroupKind:
        return classify(txn, self.parent_of(txn))

    def group_members(self, group_key: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.id == group_key,
                    Transaction.parent_transaction_id == group_key,
                ),
            )
            .order_by(
                Transaction.installment_number, Transaction.date, Transaction.id
            )
        )
        return self.session.scalars(stmt).all()

    def _targets(
        self, txn: Transaction, scope: MutationScope
    ) -> tuple[GroupKind, list[Transaction]]:
        kind = self.group_kind(txn)
        if scope == MutationScope.all and kind != GroupKind.standalone:
            return kind, self.group_members(resolve_group_key(txn))
        return kind, [txn]

    def history(
        self,
        filters: Optional[TransactionFilters] = None,
        period: Optional[Period] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        """Transaction history; credit-card expenses are left out of this view."""
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.kind != TransactionType.expense,
                    Transaction.credit_card_id.is_(None),
                ),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if filters.kind:
            stmt = stmt.where(Transaction.kind == filters.kind)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return self.session.scalars(stmt).all()

    def update(
        self,
        transaction_id: int,
        data: TransactionUpdate,
        scope: MutationScope = MutationScope.single,
    ) -> list[Transaction]:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        for field in ("description", "amount_cents", "date", "kind"):
            if field in changes and changes[field] is None:
                raise ValueError(f"{field} cannot be empty")
        if "description" in changes:
            changes["description"] = changes["description"].strip()

        group_kind, rows = self._targets(txn, scope)
        is_group = scope == MutationScope.all and group_kind != GroupKind.standalone
        if is_group and "date" in changes:
            raise ValueError("The date can only be changed for a single transaction")

        amounts: Optional[list[int]] = None
        if is_group and group_kind == GroupKind.installment and "amount_cents" in changes:
            total_cents = changes.pop("amount_cents")
            validate_installment_total(total_cents, len(rows))
            amounts = split_evenly(total_cents, len(rows))

        before = self._card_charges(rows)
        try:
            for idx, row in enumerate(rows):
                for field, value in changes.items():
                    setattr(row, field, value)
                if amounts is not None:
                    row.amount_cents = amounts[idx]
                if row.credit_card_id is not None and row.payment_method is None:
                    row.payment_method = PaymentMethod.credit
                self._check_links(
                    row.kind, row.category_id, row.payment_method, row.credit_card_id
                )
                if group_kind == GroupKind.installment and not row.is_card_expense:
                    raise ValueError(
                        "Installment purchases must remain credit card expenses"
                    )
            self.session.flush()
            self._apply_card_charges(before, self._card_charges(rows))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        for row in rows:
            self.session.refresh(row)
        if is_group:
            logger.info(
                f"group_updated: group={resolve_group_key(txn)} kind={group_kind.value} rows={len(rows)}"
            )
        return rows

    def _promote_successor(self, txn: Transaction) -> None:
        if txn.parent_transaction_id is not None:
            return
        members = [m for m in self.group_members(txn.id) if m.id != txn.id]
        if not members:
            return
        successor = members[0]
        successor.parent_transaction_id = None
        for member in members[1:]:
            member.parent_transaction_id = successor.id
        self.session.flush()

    def delete(
        self, transaction_id: int, scope: MutationScope = MutationScope.single
    ) -> int:
        txn = self.get(transaction_id)
        group_kind, rows = self._targets(txn, scope)
        is_group = scope == MutationScope.all and group_kind != GroupKind.standalone
        group_key = resolve_group_key(txn)

        before = self._card_charges(rows)
        try:
            if is_group:
                self.session.execute(
                    delete(Transaction).where(
                        Transaction.user_id == self.user_id,
                        or_(
                            Transaction.id == group_key,
                            Transaction.parent_transaction_id == group_key,
                        ),
                    )
                )
            else:
                self._promote_successor(txn)
                self.session.delete(txn)
            self.session.flush()
            self._apply_card_charges(before, {})
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        if is_group:
            logger.info(
                f"group_deleted: group={group_key} kind={group_kind.value} rows={len(rows)}"
            )
        return len(rows)

    def projected_recurring(self, year: int, month: int) -> list[dict[str, object]]:
        """
        Virtual occurrences of recurring series that started before the month
        and have no persisted row inside it. Nothing is written.
        """
        period = month_period(year, month)
        anchors = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.is_recurring.is_(True),
                Transaction.parent_transaction_id.is_(None),
                Transaction.date < period.start,
            )
            .order_by(Transaction.date, Transaction.id)
        ).all()

        projected: list[dict[str, object]] = []
        for anchor in anchors:
            if self._member_in_period(anchor.id, period) is not None:
                continue
            projected.append(
                {
                    "group_key": anchor.id,
                    "description": anchor.description,
                    "amount_cents": anchor.amount_cents,
                    "date": occurrence_in_month(anchor.date, year, month),
                    "kind": anchor.kind.value,
                    "category_id": anchor.category_id,
                    "payment_method": (
                        anchor.payment_method.value if anchor.payment_method else None
                    ),
                    "credit_card_id": anchor.credit_card_id,
                    "is_projected": True,
                }
            )
        return projected

    def _member_in_period(self, group_key: int, period: Period) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                or_(
                    Transaction.id == group_key,
                    Transaction.parent_transaction_id == group_key,
                ),
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date, Transaction.id)
            .limit(1)
        )

    def post_recurring_occurrence(
        self, transaction_id: int, year: int, month: int
    ) -> Transaction:
        txn = self.get(transaction_id)
        if self.group_kind(txn) != GroupKind.recurring:
            raise ValueError("Only recurring transactions have occurrences")
        group_key = resolve_group_key(txn)
        anchor = txn if group_key == txn.id else self.get(group_key)
        period = month_period(year, month)
        if period.end < anchor.date:
            raise ValueError("Occurrences cannot precede the start of the series")

        existing = self._member_in_period(group_key, period)
        if existing is not None:
            return existing

        occurrence = Transaction(
            user_id=self.user_id,
            description=anchor.description,
            amount_cents=anchor.amount_cents,
            date=occurrence_in_month(anchor.date, year, month),
            kind=anchor.kind,
            category_id=anchor.category_id,
            payment_method=anchor.payment_method,
            credit_card_id=anchor.credit_card_id,
            installments=1,
            installment_number=1,
            parent_transaction_id=anchor.id,
            is_recurring=True,
        )
        try:
            self.session.add(occurrence)
            self.session.flush()
            self._apply_card_charges({}, self._card_charges([occurrence]))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(occurrence)
        logger.info(
            f"recurring_posted: group={group_key} date={occurrence.date.isoformat()}"
        )
        return occurrence


class MetricsService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def monthly_summary(
        self, year: int, month: int, *, include_projections: bool = False
    ) -> dict[str, object]:
        period = month_period(year, month)
        # Credit-card expenses count here even though history hides them.
        rows = self.session.execute(
            select(
                Transaction.kind,
                Transaction.category_id,
                func.sum(Transaction.amount_cents).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.kind, Transaction.category_id)
        ).all()

        income = 0
        expenses = 0
        count = 0
        by_category: dict[int, int] = defaultdict(int)
        for row in rows:
            total = int(row.total or 0)
            count += int(row.count or 0)
            if row.kind == TransactionType.income:
                income += total
                continue
            expenses += total
            if row.category_id is not None:
                by_category[row.category_id] += total

        # Recurring series count in every month after their anchor, persisted or not.
        projected = TransactionService(self.session, self.user_id).projected_recurring(
            year, month
        )
        for item in projected:
            amount = int(item["amount_cents"])
            if item["kind"] == TransactionType.income.value:
                income += amount
                continue
            expenses += amount
            if item["category_id"] is not None:
                by_category[item["category_id"]] += amount

        subscriptions_cents, subscriptions_count = SubscriptionService(
            self.session, self.user_id
        ).active_total_cents()

        summary: dict[str, object] = {
            "year": year,
            "month": month,
            "total_income_cents": income,
            "total_expenses_cents": expenses,
            "current_balance_cents": income - expenses,
            "expenses_by_category": {
                category_id: amount
                for category_id, amount in by_category.items()
                if amount > 0
            },
            "transaction_count": count,
            "projected_count": len(projected),
            "active_subscriptions_cents": subscriptions_cents,
            "active_subscriptions": subscriptions_count,
        }
        if include_projections:
            summary["projected_recurring"] = projected
        return summary

    def monthly_series(
        self, year: int, month: int, months: int = 6
    ) -> list[dict[str, object]]:
        if months not in (6, 12):
            raise ValueError("Trend window must be 6 or 12 months")
        series = []
        for y, m in trailing_months(year, month, months):
            summary = self.monthly_summary(y, m)
            series.append(
                {
                    "year": y,
                    "month": m,
                    "total_income_cents": summary["total_income_cents"],
                    "total_expenses_cents": summary["total_expenses_cents"],
                    "current_balance_cents": summary["current_balance_cents"],
                }
            )
        return series


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_for_month(self, year: int, month: int) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.user_id == self.user_id,
                Budget.year == year,
                Budget.month == month,
            )
            .order_by(Budget.id)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetIn) -> Budget:
        category = CategoryService(self.session, self.user_id).get(data.category_id)
        if category.type == CategoryType.income:
            raise ValueError("Budgets can only track expense categories")

        budget = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == data.category_id,
                Budget.year == data.year,
                Budget.month == data.month,
            )
        )
        if budget:
            budget.amount_cents = data.amount_cents
        else:
            budget = Budget(
                user_id=self.user_id,
                category_id=data.category_id,
                amount_cents=data.amount_cents,
                year=data.year,
                month=data.month,
            )
            self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def progress_for_month(self, year: int, month: int) -> list[dict[str, object]]:
        summary = MetricsService(self.session, self.user_id).monthly_summary(year, month)
        spent_by_category = summary["expenses_by_category"]
        progress = []
        for budget in self.list_for_month(year, month):
            spent = int(spent_by_category.get(budget.category_id, 0))
            percent = (
                (spent * 100 / budget.amount_cents) if budget.amount_cents else 0.0
            )
            progress.append(
                {
                    "budget_id": budget.id,
                    "category_id": budget.category_id,
                    "category": budget.category.name if budget.category else None,
                    "budget_cents": budget.amount_cents,
                    "spent_cents": spent,
                    "remaining_cents": budget.amount_cents - spent,
                    "percent": percent,
                }
            )
        return progress
