from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from models import Transaction
from money import split_evenly
from periods import add_months, days_in_month

MAX_INSTALLMENTS = 24


class GroupKind(str, Enum):
    installment = "installment"
    recurring = "recurring"
    standalone = "standalone"


class MutationScope(str, Enum):
    single = "single"
    all = "all"


class InstallmentRangeError(ValueError):
    pass


class ConflictingModeError(ValueError):
    pass


@dataclass(frozen=True)
class PlannedRow:
    installment_number: int
    date: date
    amount_cents: int


def validate_group_mode(installments: int, is_recurring: bool) -> None:
    if installments < 1 or installments > MAX_INSTALLMENTS:
        raise InstallmentRangeError(
            f"Installments must be between 1 and {MAX_INSTALLMENTS}"
        )
    if is_recurring and installments > 1:
        raise ConflictingModeError(
            "A transaction cannot be both recurring and split into installments"
        )


def validate_installment_total(total_cents: int, installments: int) -> None:
    if installments > 1 and total_cents < installments:
        raise ValueError(
            f"A total of {total_cents} cents cannot be split into {installments} installments"
        )


def plan_rows(
    total_cents: int, start: date, installments: int, is_recurring: bool = False
) -> list[PlannedRow]:
    """
    Expand one create request into the rows that must be persisted.

    Recurring and standalone requests yield a single row. An installment
    purchase yields one row per month starting at `start`, keeping the
    day-of-month (clamped to short months), with the total split evenly.
    """
    validate_group_mode(installments, is_recurring)
    validate_installment_total(total_cents, installments)
    amounts = split_evenly(total_cents, installments)
    return [
        PlannedRow(
            installment_number=idx + 1,
            date=add_months(start, idx, desired_day=start.day),
            amount_cents=amount,
        )
        for idx, amount in enumerate(amounts)
    ]


def resolve_group_key(txn: Transaction) -> int:
    return txn.parent_transaction_id or txn.id


def classify(txn: Transaction, parent: Optional[Transaction] = None) -> GroupKind:
    installments = txn.installments or 1
    if parent is not None:
        installments = max(installments, parent.installments or 1)
    if installments > 1:
        return GroupKind.installment
    if txn.is_recurring or (parent is not None and parent.is_recurring):
        return GroupKind.recurring
    return GroupKind.standalone


def occurrence_in_month(anchor: date, year: int, month: int) -> date:
    return date(year, month, min(anchor.day, days_in_month(year, month)))
