from datetime import date

import pytest

from grouping import (
    ConflictingModeError,
    GroupKind,
    InstallmentRangeError,
    classify,
    occurrence_in_month,
    plan_rows,
    resolve_group_key,
)
from models import Transaction, TransactionType
from money import format_currency, split_evenly
from periods import add_months, month_period, trailing_months


def _txn(**kwargs) -> Transaction:
    values = dict(
        id=1,
        user_id=1,
        description="Test",
        amount_cents=1000,
        date=date(2024, 1, 15),
        kind=TransactionType.expense,
        installments=1,
        installment_number=1,
        parent_transaction_id=None,
        is_recurring=False,
    )
    values.update(kwargs)
    return Transaction(**values)


def test_plan_rows_installments_keep_day_of_month():
    rows = plan_rows(30000, date(2024, 1, 15), 3)
    assert [(r.installment_number, r.date, r.amount_cents) for r in rows] == [
        (1, date(2024, 1, 15), 10000),
        (2, date(2024, 2, 15), 10000),
        (3, date(2024, 3, 15), 10000),
    ]


def test_plan_rows_clamps_to_short_months():
    rows = plan_rows(4000, date(2024, 1, 31), 4)
    assert [r.date for r in rows] == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
        date(2024, 4, 30),
    ]


def test_plan_rows_amounts_sum_exactly():
    for count in range(2, 25):
        rows = plan_rows(10001, date(2024, 11, 30), count)
        assert len(rows) == count
        assert sum(r.amount_cents for r in rows) == 10001
        assert [r.installment_number for r in rows] == list(range(1, count + 1))


def test_plan_rows_recurring_is_single_row():
    rows = plan_rows(500000, date(2024, 3, 5), 1, is_recurring=True)
    assert len(rows) == 1
    assert rows[0].date == date(2024, 3, 5)


@pytest.mark.parametrize("installments", [0, 25, -3])
def test_plan_rows_rejects_out_of_range(installments):
    with pytest.raises(InstallmentRangeError):
        plan_rows(1000, date(2024, 1, 1), installments)


def test_plan_rows_rejects_totals_smaller_than_installment_count():
    with pytest.raises(ValueError, match="cannot be split"):
        plan_rows(5, date(2024, 1, 1), 24)
    rows = plan_rows(24, date(2024, 1, 1), 24)
    assert all(r.amount_cents == 1 for r in rows)


def test_plan_rows_rejects_recurring_installments():
    with pytest.raises(ConflictingModeError):
        plan_rows(1000, date(2024, 1, 1), 3, is_recurring=True)


def test_classify_and_group_key():
    anchor = _txn(id=10, installments=3)
    member = _txn(id=11, installments=3, installment_number=2, parent_transaction_id=10)
    assert classify(anchor) == GroupKind.installment
    assert classify(member, anchor) == GroupKind.installment
    assert resolve_group_key(anchor) == 10
    assert resolve_group_key(member) == 10

    salary = _txn(id=20, kind=TransactionType.income, is_recurring=True)
    occurrence = _txn(id=21, parent_transaction_id=20, is_recurring=False)
    assert classify(salary) == GroupKind.recurring
    assert classify(occurrence, salary) == GroupKind.recurring

    assert classify(_txn(id=30)) == GroupKind.standalone


def test_occurrence_in_month_clamps_day():
    assert occurrence_in_month(date(2024, 1, 31), 2023, 2) == date(2023, 2, 28)
    assert occurrence_in_month(date(2024, 1, 5), 2024, 6) == date(2024, 6, 5)


def test_split_evenly_gives_remainder_to_first_parts():
    assert split_evenly(1000, 3) == [334, 333, 333]
    assert split_evenly(0, 2) == [0, 0]
    with pytest.raises(ValueError):
        split_evenly(100, 0)


def test_period_helpers():
    period = month_period(2024, 2)
    assert period.slug == "2024-02"
    assert period.end == date(2024, 2, 29)
    with pytest.raises(ValueError):
        month_period(2024, 13)
    assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
    assert trailing_months(2024, 2, 3) == [(2023, 12), (2024, 1), (2024, 2)]


def test_format_currency():
    assert format_currency(123456) == "R$ 1.234,56"
    assert format_currency(-5) == "-R$ 0,05"
