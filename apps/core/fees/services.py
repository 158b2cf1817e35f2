from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import OperationalError, transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from apps.core.numbering.formatting import DOMAIN_FEE, DOMAIN_INSTALLMENT
from apps.core.numbering.services import Reservation, apply_lock_timeout, reserve_receipt_numbers
from apps.core.utils.money import ZERO, non_negative, quantize, to_decimal

from .allocation import InstallmentPosition, allocate, apply_to_fee, order_for_allocation
from .exceptions import AllocationRetryable, AllocationTargetNotFound, OverAllocation
from .models import Fee, Installment

logger = logging.getLogger(__name__)


CONSTITUENT_FEE_TYPES = (Fee.TYPE_TUITION, Fee.TYPE_TRANSPORTATION)


@dataclass(frozen=True)
class CheckDetails:
    number: str = ''
    date: date | None = None
    bank_name: str = ''


@dataclass(frozen=True)
class PaymentRequest:
    target_fee_id: int
    amount: Decimal
    method: str = Fee.METHOD_CASH
    note: str = ''
    check_details: CheckDetails | None = None
    payment_date: date | None = None
    target_installment_id: int | None = None


def _school_id(school):
    return getattr(school, 'pk', school)


def _validate_method(method):
    if method and method not in dict(Fee.PAYMENT_METHOD_CHOICES):
        raise ValidationError(f"Unknown payment method '{method}'.")


def _stamp_payment(record, request: PaymentRequest, receipt_number='', provisional=False):
    record.payment_method = request.method or record.payment_method
    record.payment_note = request.note or ''
    details = request.check_details
    if details is not None:
        record.check_number = (details.number or '')[:60]
        record.check_date = details.date
        record.bank_name = (details.bank_name or '')[:120]

    # Numbers are only ever attached to records that have none.
    if not record.receipt_number and receipt_number:
        record.receipt_number = receipt_number
        record.receipt_number_provisional = provisional


def _roll_up_from_installments(fee: Fee, installments):
    if installments:
        fee.paid = quantize(sum((to_decimal(item.paid_amount) for item in installments), ZERO))
    fee.refresh_totals()


def _positions(installments):
    return [
        InstallmentPosition(
            key=item.pk,
            amount=quantize(item.amount),
            paid_amount=quantize(item.paid_amount),
            due_date=item.due_date,
            status=item.status,
        )
        for item in installments
    ]


def _lock_fee_group(fee_id, school_id):
    """
    Lock the target fee and return ``(fee, constituents)``.

    For a combined fee the student's tuition and transportation fees are
    locked in the same id-ordered query, the order pay-all uses as well.
    """
    head = Fee.objects.filter(pk=fee_id, school_id=school_id).values('fee_type', 'student_ref').first()
    if head is None:
        return None, []

    if head['fee_type'] != Fee.TYPE_COMBINED:
        return Fee.objects.select_for_update().filter(pk=fee_id, school_id=school_id).first(), []

    locked = list(
        Fee.objects.select_for_update()
        .filter(
            Q(pk=fee_id) | Q(fee_type__in=CONSTITUENT_FEE_TYPES, student_ref=head['student_ref']),
            school_id=school_id,
        )
        .order_by('id')
    )
    fee = next((item for item in locked if item.pk == fee_id), None)
    return fee, [item for item in locked if item.pk != fee_id]


def _settle_constituent_fees(
    fee: Fee,
    constituents,
    request: PaymentRequest,
    payment_date,
    receipt_number,
    provisional,
):
    """Pay off the tuition and transportation fees behind a paid combined fee."""
    settled = []
    for constituent in constituents:
        if constituent.status == Fee.STATUS_PAID:
            continue

        installments = list(
            Installment.objects.select_for_update().filter(fee=constituent).order_by('due_date', 'id')
        )
        already_paid = sum((to_decimal(item.paid_amount) for item in installments), ZERO)
        outstanding = non_negative(quantize(constituent.net_amount) - already_paid)

        by_pk = {item.pk: item for item in installments}
        lines, leftover = allocate(order_for_allocation(_positions(installments)), outstanding)
        for line in lines:
            installment = by_pk[line.key]
            installment.paid_amount = line.paid_amount
            installment.paid_date = payment_date
            _stamp_payment(installment, request, receipt_number, provisional)
            installment.save()

        if leftover > 0:
            if installments:
                logger.warning(
                    f"Installments of fee {constituent.pk} fall {leftover} short of its net amount; "
                    f"adding a paid installment for the rest"
                )
            installments.append(
                Installment.objects.create(
                    school_id=constituent.school_id,
                    fee=constituent,
                    amount=leftover,
                    paid_amount=leftover,
                    due_date=payment_date,
                    paid_date=payment_date,
                    payment_method=request.method,
                    payment_note=request.note or '',
                    receipt_number=receipt_number,
                    receipt_number_provisional=provisional if receipt_number else False,
                )
            )

        _roll_up_from_installments(constituent, installments)
        constituent.payment_date = payment_date
        _stamp_payment(constituent, request, receipt_number, provisional)
        constituent.save()
        settled.append(constituent)

        logger.info(
            f"Settled {constituent.fee_type} fee {constituent.pk} for {constituent.student_ref} "
            f"through combined fee {fee.pk}"
        )

    return settled


def _apply_payment_locked(
    request: PaymentRequest,
    *,
    school_id,
    amount: Decimal,
    reject_overpayment=False,
    reservation: Reservation | None = None,
):
    apply_lock_timeout()

    fee, constituents = _lock_fee_group(request.target_fee_id, school_id)
    if fee is None:
        raise AllocationTargetNotFound('Fee', request.target_fee_id, school_id)

    installments = list(
        Installment.objects.select_for_update().filter(fee=fee).order_by('due_date', 'id')
    )
    by_pk = {installment.pk: installment for installment in installments}
    if request.target_installment_id is not None and request.target_installment_id not in by_pk:
        raise AllocationTargetNotFound('Installment', request.target_installment_id, school_id)

    payment_date = request.payment_date or timezone.localdate()
    lines = []

    if installments:
        already_paid = sum((to_decimal(item.paid_amount) for item in installments), ZERO)
        outstanding = non_negative(quantize(fee.net_amount) - already_paid)
        allocatable = min(amount, outstanding)

        ordered = order_for_allocation(_positions(installments), start_key=request.target_installment_id)
        lines, leftover = allocate(ordered, allocatable)
        remainder = quantize(amount - allocatable + leftover)
        direct_paid = None
        domain = DOMAIN_INSTALLMENT
    else:
        _, direct_paid, remainder = apply_to_fee(fee.amount, fee.discount, fee.paid, amount)
        domain = DOMAIN_FEE

    applied_amount = quantize(amount - remainder)
    warnings = []
    if remainder > 0:
        if reject_overpayment:
            raise OverAllocation(fee.pk, remainder)
        warnings.append(OverAllocation(fee.pk, remainder))
        logger.warning(
            f"Payment of {amount} on fee {fee.pk} exceeds what is owed; "
            f"{remainder} left unapplied for manual handling"
        )

    touched = [by_pk[line.key] for line in lines]
    if applied_amount <= 0:
        return {
            'fee': fee,
            'installments': [],
            'lines': [],
            'applied_amount': ZERO,
            'unapplied_amount': remainder,
            'receipt_number': fee.receipt_number,
            'reservation': None,
            'propagated_fees': [],
            'warnings': warnings,
        }

    needs_number = not fee.receipt_number or any(not item.receipt_number for item in touched)
    receipt_number = ''
    provisional = False
    if needs_number:
        if reservation is None:
            reservation = reserve_receipt_numbers(school=school_id, domain=domain, count=1)
        receipt_number = reservation.number
        provisional = reservation.is_fallback

    line_by_key = {line.key: line for line in lines}
    for installment in touched:
        line = line_by_key[installment.pk]
        installment.paid_amount = line.paid_amount
        installment.paid_date = payment_date
        _stamp_payment(installment, request, receipt_number, provisional)
        installment.save()

    if installments:
        _roll_up_from_installments(fee, installments)
    else:
        fee.paid = direct_paid
    fee.payment_date = payment_date
    _stamp_payment(fee, request, receipt_number, provisional)
    fee.save()

    propagated = []
    if fee.is_combined and fee.status == Fee.STATUS_PAID:
        propagated = _settle_constituent_fees(
            fee,
            constituents,
            request,
            payment_date,
            fee.receipt_number,
            fee.receipt_number_provisional,
        )

    return {
        'fee': fee,
        'installments': touched,
        'lines': lines,
        'applied_amount': applied_amount,
        'unapplied_amount': remainder,
        'receipt_number': fee.receipt_number or receipt_number,
        'reservation': reservation if needs_number else None,
        'propagated_fees': propagated,
        'warnings': warnings,
    }


def apply_payment(request: PaymentRequest, *, school, reject_overpayment=False):
    """
    Apply a payment to a fee and its installments.

    Installments are paid in due-date order (starting at
    ``request.target_installment_id`` when given) and overflow cascades to
    the next open installment. The whole request is one transaction: either
    every fee, installment and counter change is committed or none is.

    Returns a dict with the updated ``fee``, the ``installments`` that
    received money, the allocation ``lines``, ``applied_amount``,
    ``unapplied_amount``, the ``receipt_number``, the ``reservation`` used
    (None when no new number was needed), ``propagated_fees`` for combined
    fees and ``warnings`` (``OverAllocation`` instances).
    """
    amount = quantize(to_decimal(request.amount))
    if amount <= 0:
        raise ValidationError('Payment amount must be greater than zero.')
    _validate_method(request.method)

    school_id = _school_id(school)
    try:
        with transaction.atomic():
            result = _apply_payment_locked(
                request,
                school_id=school_id,
                amount=amount,
                reject_overpayment=reject_overpayment,
            )
    except OperationalError as exc:
        logger.error(f"Payment on fee {request.target_fee_id} rolled back: {exc}")
        raise AllocationRetryable(request.target_fee_id, exc) from exc

    fee = result['fee']
    logger.info(
        f"Applied {result['applied_amount']} to fee {fee.pk} ({fee.student_ref}); "
        f"status={fee.status} balance={fee.balance} receipt={result['receipt_number'] or '-'}"
    )
    return result


def pay_all_fees_for_student(
    *,
    school,
    student_ref,
    method=Fee.METHOD_CASH,
    note='',
    check_details: CheckDetails | None = None,
    payment_date=None,
):
    """Pay every outstanding fee of a student in full under one shared fee receipt number."""
    _validate_method(method)
    school_id = _school_id(school)

    try:
        with transaction.atomic():
            apply_lock_timeout()
            fees = list(
                Fee.objects.select_for_update()
                .filter(school_id=school_id, student_ref=student_ref)
                .exclude(status=Fee.STATUS_PAID)
                .order_by('id')
            )
            if not fees:
                return {'results': [], 'receipt_number': '', 'reservation': None}

            reservation = None
            if any(not fee.receipt_number for fee in fees):
                reservation = reserve_receipt_numbers(school=school_id, domain=DOMAIN_FEE, count=1)

            results = []
            for fee in fees:
                # A combined fee earlier in the loop may already have settled this one.
                fee.refresh_from_db(fields=['paid', 'balance', 'status'])
                if fee.status == Fee.STATUS_PAID or fee.balance <= 0:
                    continue

                request = PaymentRequest(
                    target_fee_id=fee.pk,
                    amount=fee.balance,
                    method=method,
                    note=note,
                    check_details=check_details,
                    payment_date=payment_date,
                )
                results.append(
                    _apply_payment_locked(
                        request,
                        school_id=school_id,
                        amount=quantize(fee.balance),
                        reservation=reservation,
                    )
                )
    except OperationalError as exc:
        logger.error(f"Pay-all for student {student_ref} rolled back: {exc}")
        raise AllocationRetryable(None, exc) from exc

    receipt_number = reservation.number if reservation else ''
    logger.info(
        f"Paid {len(results)} fee(s) in full for student {student_ref} "
        f"(receipt {receipt_number or 'existing'})"
    )
    return {
        'results': results,
        'receipt_number': receipt_number,
        'reservation': reservation,
    }


@transaction.atomic
def ensure_receipt_number(record):
    """
    Return the record's receipt number, reserving one only if it has none.

    Safe to call every time a receipt is viewed or printed: an existing
    number is never replaced.
    """
    model = type(record)
    locked = model.objects.select_for_update().get(pk=record.pk)
    if locked.receipt_number:
        record.receipt_number = locked.receipt_number
        return locked.receipt_number

    domain = DOMAIN_INSTALLMENT if isinstance(locked, Installment) else DOMAIN_FEE
    reservation = reserve_receipt_numbers(school=locked.school_id, domain=domain, count=1)
    locked.receipt_number = reservation.number
    locked.receipt_number_provisional = reservation.is_fallback
    locked.save(update_fields=['receipt_number', 'receipt_number_provisional', 'updated_at'])

    record.receipt_number = locked.receipt_number
    record.receipt_number_provisional = locked.receipt_number_provisional
    return locked.receipt_number


@transaction.atomic
def recalculate_fee_totals(fee: Fee):
    fee = Fee.objects.select_for_update().get(pk=fee.pk)
    totals = Installment.objects.filter(fee=fee).aggregate(total=Sum('paid_amount'), count=Count('id'))
    if totals['count']:
        fee.paid = quantize(totals['total'])
    fee.save(update_fields=['paid', 'updated_at'])
    return fee


def mark_overdue_installments(*, school, as_of_date=None):
    as_of_date = as_of_date or timezone.localdate()
    now = timezone.now()
    open_rows = Installment.objects.for_school(_school_id(school)).exclude(status=Installment.STATUS_PAID)

    marked = (
        open_rows.filter(due_date__lt=as_of_date, paid_amount__lte=0)
        .exclude(status=Installment.STATUS_OVERDUE)
        .update(status=Installment.STATUS_OVERDUE, updated_at=now)
    )
    reset = (
        open_rows.filter(status=Installment.STATUS_OVERDUE, due_date__gte=as_of_date)
        .update(status=Installment.STATUS_UPCOMING, updated_at=now)
    )

    if marked or reset:
        logger.info(f"Marked {marked} installment(s) overdue, reset {reset} to upcoming (as of {as_of_date})")
    return {'marked_overdue': marked, 'reset_upcoming': reset}


def find_receipt_number_conflicts(*, school):
    """
    Report receipt numbers that need reconciliation.

    ``duplicates`` maps a number to the students sharing it (a number shared
    by one student's fee, installments and combined parts is expected).
    ``provisional`` lists records numbered by the fallback generator.
    """
    school_id = _school_id(school)
    owners = defaultdict(set)

    fees = Fee.objects.for_school(school_id)
    for number, student_ref in fees.with_receipt_number().values_list('receipt_number', 'student_ref'):
        owners[number].add(student_ref)

    installments = Installment.objects.for_school(school_id)
    for number, student_ref in installments.with_receipt_number().values_list('receipt_number', 'fee__student_ref'):
        owners[number].add(student_ref)

    duplicates = {
        number: sorted(student_refs)
        for number, student_refs in sorted(owners.items())
        if len(student_refs) > 1
    }

    provisional = [
        ('fee', pk, number)
        for pk, number in fees.provisional_receipts().order_by('id').values_list('id', 'receipt_number')
    ]
    provisional += [
        ('installment', pk, number)
        for pk, number in installments.provisional_receipts().order_by('id').values_list('id', 'receipt_number')
    ]

    return {
        'duplicates': duplicates,
        'provisional': provisional,
    }
