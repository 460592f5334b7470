from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import (
    Category,
    CategoryType,
    CreditCard,
    PaymentMethod,
    Subscription,
    TransactionType,
)
from schemas import TransactionIn
from services import MetricsService, TransactionFilters, TransactionService


def _setup():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    food = Category(
        user_id=1, name="Food", icon="🍔", color="#EF4444", type=CategoryType.expense
    )
    salary = Category(
        user_id=1, name="Salary", icon="💰", color="#10B981", type=CategoryType.income
    )
    card = CreditCard(
        user_id=1,
        name="Visa",
        brand="Visa",
        bank="Itau",
        limit_cents=300000,
        current_used_cents=0,
        closing_day=1,
        due_day=10,
    )
    session.add_all([food, salary, card])
    session.commit()
    return session, food, salary, card


def _add(session: Session, **kwargs):
    values = dict(
        description="Entry",
        amount_cents=1000,
        date=date(2024, 5, 10),
        kind=TransactionType.expense,
    )
    values.update(kwargs)
    return TransactionService(session).create(TransactionIn(**values))


def test_empty_month_is_all_zeros():
    session, _, _, _ = _setup()
    summary = MetricsService(session).monthly_summary(2024, 5)
    assert summary["total_income_cents"] == 0
    assert summary["total_expenses_cents"] == 0
    assert summary["current_balance_cents"] == 0
    assert summary["expenses_by_category"] == {}
    assert summary["transaction_count"] == 0
    assert "projected_recurring" not in summary
    session.close()


def test_card_expenses_count_in_summary_but_not_in_history():
    session, food, _, card = _setup()
    cash = _add(
        session,
        description="Groceries",
        amount_cents=10000,
        category_id=food.id,
        payment_method=PaymentMethod.debit,
    )[0]
    _add(
        session,
        description="Restaurant",
        amount_cents=5000,
        category_id=food.id,
        payment_method=PaymentMethod.credit,
        credit_card_id=card.id,
    )

    summary = MetricsService(session).monthly_summary(2024, 5)
    assert summary["total_expenses_cents"] == 15000
    assert summary["expenses_by_category"] == {food.id: 15000}

    history = TransactionService(session).history()
    assert [t.id for t in history] == [cash.id]
    session.close()


def test_balance_and_uncategorized_expenses():
    session, food, salary, _ = _setup()
    _add(session, kind=TransactionType.income, amount_cents=500000, category_id=salary.id)
    _add(session, amount_cents=2500, category_id=food.id)
    _add(session, amount_cents=700)
    _add(session, amount_cents=9999, date=date(2024, 6, 1))

    summary = MetricsService(session).monthly_summary(2024, 5)
    assert summary["total_income_cents"] == 500000
    assert summary["total_expenses_cents"] == 3200
    assert summary["current_balance_cents"] == 496800
    assert summary["expenses_by_category"] == {food.id: 2500}
    assert summary["transaction_count"] == 3
    session.close()


def test_installments_land_in_their_own_months():
    session, food, _, card = _setup()
    _add(
        session,
        amount_cents=30000,
        date=date(2024, 1, 15),
        category_id=food.id,
        credit_card_id=card.id,
        installments=3,
    )
    metrics = MetricsService(session)
    for month in (1, 2, 3):
        assert metrics.monthly_summary(2024, month)["total_expenses_cents"] == 10000
    assert metrics.monthly_summary(2024, 4)["total_expenses_cents"] == 0
    session.close()


def test_active_subscriptions_are_informational():
    session, food, _, card = _setup()
    session.add_all(
        [
            Subscription(
                user_id=1,
                name="Netflix",
                amount_cents=3990,
                billing_day=10,
                payment_method=PaymentMethod.credit,
                credit_card_id=card.id,
                category_id=food.id,
                is_active=True,
            ),
            Subscription(
                user_id=1,
                name="Gym",
                amount_cents=9900,
                billing_day=5,
                payment_method=PaymentMethod.debit,
                is_active=False,
            ),
        ]
    )
    session.commit()

    summary = MetricsService(session).monthly_summary(2024, 5)
    assert summary["active_subscriptions_cents"] == 3990
    assert summary["active_subscriptions"] == 1
    assert summary["total_expenses_cents"] == 0
    session.close()


def test_monthly_series_windows():
    session, food, salary, _ = _setup()
    _add(session, kind=TransactionType.income, amount_cents=1000, category_id=salary.id, date=date(2023, 12, 1))
    _add(session, amount_cents=400, category_id=food.id, date=date(2024, 5, 2))

    metrics = MetricsService(session)
    six = metrics.monthly_series(2024, 5, 6)
    assert [(p["year"], p["month"]) for p in six] == [
        (2023, 12),
        (2024, 1),
        (2024, 2),
        (2024, 3),
        (2024, 4),
        (2024, 5),
    ]
    assert six[0]["total_income_cents"] == 1000
    assert six[-1]["current_balance_cents"] == -400
    assert all(p["total_expenses_cents"] == 0 for p in six[1:-1])

    assert len(metrics.monthly_series(2024, 5, 12)) == 12
    with pytest.raises(ValueError):
        metrics.monthly_series(2024, 5, 3)
    session.close()


def test_history_filters():
    session, food, salary, _ = _setup()
    _add(session, description="Bakery", amount_cents=800, category_id=food.id, date=date(2024, 5, 1))
    _add(session, description="Market", amount_cents=4500, category_id=food.id, date=date(2024, 5, 3))
    _add(session, description="Salary", kind=TransactionType.income, amount_cents=1000, category_id=salary.id, date=date(2024, 5, 5))

    service = TransactionService(session)
    assert [t.description for t in service.history()] == ["Salary", "Market", "Bakery"]
    assert [
        t.description
        for t in service.history(TransactionFilters(kind=TransactionType.expense))
    ] == ["Market", "Bakery"]
    assert [t.description for t in service.history(TransactionFilters(query="bak"))] == [
        "Bakery"
    ]
    assert [t.description for t in service.history(limit=1, offset=1)] == ["Market"]
    session.close()
