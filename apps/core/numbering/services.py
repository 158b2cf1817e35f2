from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import DatabaseError, connection, transaction
from django.db.models import F
from django.utils import timezone

from apps.core.schools.models import NumberingSettings
from apps.core.schools.services import ensure_numbering_settings, get_numbering_settings

from .exceptions import ReservationFailed
from .formatting import DOMAINS, FORMAT_AUTO, format_batch, format_receipt_number
from .models import ReceiptCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reservation:
    school_id: int | None
    domain: str
    numbers: tuple
    first_value: int | None = None
    is_fallback: bool = False

    @property
    def number(self) -> str:
        return self.numbers[0]

    def __len__(self):
        return len(self.numbers)

    def __iter__(self):
        return iter(self.numbers)


def _validate_domain(domain):
    if domain not in DOMAINS:
        raise ValidationError(f"Unknown numbering domain '{domain}'.")


def apply_lock_timeout():
    """Bound lock waits for the current transaction where the backend supports it."""
    timeout_ms = settings.RECEIPT_LOCK_TIMEOUT_MS
    if connection.vendor != 'postgresql' or not timeout_ms:
        return
    with connection.cursor() as cursor:
        cursor.execute("SELECT set_config('lock_timeout', %s, true)", [f'{int(timeout_ms)}ms'])


def _get_or_create_counter(numbering: NumberingSettings, domain: str) -> ReceiptCounter:
    fmt, prefix, start, year = numbering.for_domain(domain)
    counter, created = ReceiptCounter.objects.get_or_create(
        school_id=numbering.school_id,
        domain=domain,
        defaults={
            'current_value': max(int(start or 1), 1),
            'format': fmt,
            'prefix': prefix,
            'year': year,
        },
    )
    if created:
        logger.info(
            f"Created {domain} receipt counter for school {numbering.school_id} "
            f"starting at {counter.current_value}"
        )
    return counter


def _reserve_once(numbering: NumberingSettings, domain: str, count: int) -> Reservation:
    with transaction.atomic():
        apply_lock_timeout()
        counter = _get_or_create_counter(numbering, domain)

        # The UPDATE takes the row lock and holds it until commit, so the read
        # below sees exactly this caller's increment.
        updated = ReceiptCounter.objects.filter(pk=counter.pk).update(
            current_value=F('current_value') + count,
            updated_at=timezone.now(),
        )
        if updated != 1:
            raise DatabaseError(f'Receipt counter {counter.pk} disappeared during reservation.')

        next_value, fmt, prefix, year = (
            ReceiptCounter.objects.filter(pk=counter.pk)
            .values_list('current_value', 'format', 'prefix', 'year')
            .get()
        )

    first_value = next_value - count
    numbers = format_batch(first_value, count, fmt=fmt, prefix=prefix, year=year, domain=domain)
    return Reservation(
        school_id=numbering.school_id,
        domain=domain,
        numbers=tuple(numbers),
        first_value=first_value,
    )


def generate_fallback_numbers(*, domain, count=1, numbering: NumberingSettings | None = None, school_id=None):
    """Best-effort numbers that do not touch the counter store.

    The result is flagged ``is_fallback``; the numbers may collide and need
    reconciliation later.
    """
    _validate_domain(domain)
    prefix = ''
    if numbering is not None:
        _, prefix, _, _ = numbering.for_domain(domain)
        school_id = numbering.school_id

    numbers = format_batch(0, count, fmt=FORMAT_AUTO, prefix=prefix, domain=domain)
    return Reservation(
        school_id=school_id,
        domain=domain,
        numbers=tuple(numbers),
        first_value=None,
        is_fallback=True,
    )


def reserve_receipt_numbers(*, school, domain, count=1, allow_fallback=None) -> Reservation:
    """
    Reserve ``count`` consecutive receipt numbers for a school's domain.

    Store failures are retried with exponential backoff. When every attempt
    fails the flagged fallback generator is used if allowed, otherwise
    ``ReservationFailed`` is raised. ``SettingsUnavailable`` is never retried.
    """
    _validate_domain(domain)
    if count is None or int(count) < 1:
        raise ValidationError('At least one receipt number must be reserved.')
    count = int(count)

    school_id = getattr(school, 'pk', school)
    attempts = max(1, int(settings.RECEIPT_RESERVATION_MAX_ATTEMPTS))
    backoff = float(settings.RECEIPT_RESERVATION_BACKOFF_SECONDS)

    numbering = None
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            if numbering is None:
                numbering = get_numbering_settings(school=school)
            reservation = _reserve_once(numbering, domain, count)
        except DatabaseError as exc:
            last_error = exc
            logger.error(
                f"Receipt reservation attempt {attempt}/{attempts} failed for school "
                f"{school_id} ({domain}): {exc}"
            )
            if attempt < attempts and backoff > 0:
                time.sleep(backoff * (2 ** (attempt - 1)))
            continue

        logger.info(
            f"Reserved {count} {domain} receipt number(s) for school {school_id}: "
            f"{', '.join(reservation.numbers)}"
        )
        return reservation

    if allow_fallback is None:
        allow_fallback = settings.RECEIPT_ALLOW_FALLBACK
    if not allow_fallback:
        raise ReservationFailed(school_id, domain, attempts, last_error)

    reservation = generate_fallback_numbers(
        domain=domain,
        count=count,
        numbering=numbering,
        school_id=school_id,
    )
    logger.warning(
        f"Using non-atomic fallback {domain} receipt number(s) for school {school_id}: "
        f"{', '.join(reservation.numbers)}. Reconciliation may be required."
    )
    return reservation


def preview_next_receipt_number(*, school, domain) -> str:
    """Format the number the next reservation would hand out, without reserving it."""
    _validate_domain(domain)
    numbering = get_numbering_settings(school=school)
    counter = ReceiptCounter.objects.filter(school_id=numbering.school_id, domain=domain).first()
    if counter:
        return format_receipt_number(
            counter.current_value,
            fmt=counter.format,
            prefix=counter.prefix,
            year=counter.year,
            domain=domain,
        )

    fmt, prefix, start, year = numbering.for_domain(domain)
    return format_receipt_number(max(int(start or 1), 1), fmt=fmt, prefix=prefix, year=year, domain=domain)


@transaction.atomic
def configure_numbering(*, school, domain, fmt=None, prefix=None, year=None, start=None):
    """
    Change a domain's numbering style and keep its live counter in step.

    ``start`` may only move the counter forward; numbers already handed out
    are never reissued.
    """
    _validate_domain(domain)
    numbering = ensure_numbering_settings(school=school)
    numbering = NumberingSettings.objects.select_for_update().get(pk=numbering.pk)
    counter = (
        ReceiptCounter.objects.select_for_update()
        .filter(school_id=numbering.school_id, domain=domain)
        .first()
    )

    if start is not None:
        start = int(start)
        if start < 1:
            raise ValidationError('Receipt counter must start at 1 or above.')
        if counter and start < counter.current_value:
            raise ValidationError(
                f"Receipt counter is already at {counter.current_value}; it cannot be moved back to {start}."
            )

    fields = numbering.field_names_for_domain(domain)
    changes = {
        fields['format']: fmt,
        fields['prefix']: prefix,
        fields['year']: year,
        fields['counter']: start,
    }
    updated_fields = []
    for field_name, value in changes.items():
        if value is not None and getattr(numbering, field_name) != value:
            setattr(numbering, field_name, value)
            updated_fields.append(field_name)

    if updated_fields:
        numbering.full_clean()
        numbering.save(update_fields=updated_fields + ['updated_at'])

    if counter:
        fmt_value, prefix_value, _, year_value = numbering.for_domain(domain)
        counter.format = fmt_value
        counter.prefix = prefix_value
        counter.year = year_value
        if start is not None:
            counter.current_value = start
        counter.save(update_fields=['format', 'prefix', 'year', 'current_value', 'updated_at'])

    logger.info(
        f"Updated {domain} numbering for school {numbering.school_id}: "
        f"{', '.join(updated_fields) or 'no changes'}"
    )
    return numbering
