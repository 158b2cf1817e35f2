"""
Payment allocation rules.

Everything in this module works on plain values so the cascade can be
exercised without a database. The services layer maps model rows to
``InstallmentPosition`` objects and writes the resulting lines back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from apps.core.utils.money import ZERO, non_negative, quantize


INSTALLMENT_UPCOMING = 'upcoming'
INSTALLMENT_PARTIAL = 'partial'
INSTALLMENT_PAID = 'paid'
INSTALLMENT_OVERDUE = 'overdue'

FEE_UNPAID = 'unpaid'
FEE_PARTIAL = 'partial'
FEE_PAID = 'paid'


def installment_balance(amount, paid_amount) -> Decimal:
    return non_negative(quantize(amount) - quantize(paid_amount))


def installment_status(amount, paid_amount, current_status=INSTALLMENT_UPCOMING) -> str:
    amount = quantize(amount)
    paid_amount = quantize(paid_amount)
    if paid_amount >= amount:
        return INSTALLMENT_PAID
    if paid_amount > 0:
        return INSTALLMENT_PARTIAL
    if current_status == INSTALLMENT_OVERDUE:
        return INSTALLMENT_OVERDUE
    return INSTALLMENT_UPCOMING


def fee_totals(amount, discount, paid):
    """Return ``(paid, balance, status)`` for a fee, with ``paid`` bounded by the net amount."""
    net = non_negative(quantize(amount) - quantize(discount))
    paid = min(non_negative(paid), net)
    balance = non_negative(net - paid)

    if balance == 0:
        status = FEE_PAID
    elif paid > 0:
        status = FEE_PARTIAL
    else:
        status = FEE_UNPAID
    return paid, balance, status


@dataclass(frozen=True)
class InstallmentPosition:
    key: object
    amount: Decimal
    paid_amount: Decimal = ZERO
    due_date: date | None = None
    status: str = INSTALLMENT_UPCOMING

    @property
    def balance(self) -> Decimal:
        return installment_balance(self.amount, self.paid_amount)

    @property
    def is_paid(self) -> bool:
        return self.status == INSTALLMENT_PAID or self.balance == 0


@dataclass(frozen=True)
class AllocationLine:
    key: object
    applied: Decimal
    paid_amount: Decimal
    balance: Decimal
    status: str
    previous_status: str

    @property
    def became_paid(self) -> bool:
        return self.status == INSTALLMENT_PAID and self.previous_status != INSTALLMENT_PAID


def order_for_allocation(positions, start_key=None):
    """
    Order installments for a payment: due date ascending, ties in the given
    order. With ``start_key`` that installment goes first and the rest
    follow in due-date order.
    """
    indexed = list(enumerate(positions))
    indexed.sort(key=lambda item: (item[1].due_date is None, item[1].due_date or date.min, item[0]))
    ordered = [position for _, position in indexed]

    if start_key is None:
        return ordered

    first = [position for position in ordered if position.key == start_key]
    rest = [position for position in ordered if position.key != start_key]
    return first + rest


def allocate(ordered_installments, amount):
    """
    Spread ``amount`` over ``ordered_installments``.

    Paid installments are skipped; each open one receives
    ``min(remaining, balance)``. Returns ``(lines, remainder)`` where
    ``lines`` only covers installments that received money and
    ``remainder`` is whatever could not be placed.
    """
    remaining = non_negative(amount)
    lines = []

    for position in ordered_installments:
        if remaining <= 0:
            break
        if position.is_paid:
            continue

        applied = min(remaining, position.balance)
        if applied <= 0:
            continue

        paid_amount = quantize(quantize(position.paid_amount) + applied)
        lines.append(
            AllocationLine(
                key=position.key,
                applied=applied,
                paid_amount=paid_amount,
                balance=installment_balance(position.amount, paid_amount),
                status=installment_status(position.amount, paid_amount, position.status),
                previous_status=position.status,
            )
        )
        remaining = quantize(remaining - applied)

    return lines, remaining


def apply_to_fee(amount, discount, paid, payment):
    """Direct payment on a fee without installments: ``(applied, new_paid, remainder)``."""
    payment = non_negative(payment)
    current_paid, balance, _ = fee_totals(amount, discount, paid)
    applied = min(payment, balance)
    return applied, quantize(current_paid + applied), quantize(payment - applied)
