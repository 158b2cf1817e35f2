import threading
from unittest import mock

from django.core.exceptions import ValidationError
from django.db import DatabaseError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings

from apps.core.schools.models import School

from . import services
from .exceptions import ReservationFailed
from .formatting import (
    DOMAIN_FEE,
    DOMAIN_INSTALLMENT,
    FORMAT_AUTO,
    FORMAT_CUSTOM,
    FORMAT_SEQUENTIAL,
    FORMAT_SHORT_YEAR,
    FORMAT_YEAR,
    format_batch,
    format_receipt_number,
    validate_receipt_number,
)
from .models import ReceiptCounter
from .services import (
    configure_numbering,
    generate_fallback_numbers,
    preview_next_receipt_number,
    reserve_receipt_numbers,
)


def fixed_clock():
    return 1_700_000_000_123_456_789


class FormattingTests(SimpleTestCase):
    def test_year_formats(self):
        self.assertEqual(format_receipt_number(10, fmt=FORMAT_YEAR, year=2024), '10/2024')
        self.assertEqual(format_receipt_number(15, fmt=FORMAT_SHORT_YEAR, year=2024), '15/24')

    def test_custom_and_sequential(self):
        self.assertEqual(format_receipt_number(100, fmt=FORMAT_CUSTOM, prefix='INV-'), 'INV-100')
        self.assertEqual(format_receipt_number(7, fmt=FORMAT_SEQUENTIAL), '7')

    def test_auto_uses_domain_default_prefix(self):
        fee_number = format_receipt_number(1, fmt=FORMAT_AUTO, domain=DOMAIN_FEE, clock=fixed_clock)
        installment_number = format_receipt_number(1, fmt=FORMAT_AUTO, domain=DOMAIN_INSTALLMENT, clock=fixed_clock)

        self.assertEqual(fee_number, 'R-0000123456')
        self.assertEqual(installment_number, '0000123456')

    def test_auto_keeps_configured_prefix(self):
        number = format_receipt_number(1, fmt=FORMAT_AUTO, prefix='PAY-', domain=DOMAIN_FEE, clock=fixed_clock)
        self.assertEqual(number, 'PAY-0000123456')

    def test_auto_batch_is_distinct(self):
        numbers = format_batch(1, 3, fmt=FORMAT_AUTO, domain=DOMAIN_FEE, clock=fixed_clock)
        self.assertEqual(numbers, ['R-0000123456', 'R-0000123457', 'R-0000123458'])

    def test_validate_receipt_number(self):
        self.assertTrue(validate_receipt_number('10/2024', fmt=FORMAT_YEAR))
        self.assertFalse(validate_receipt_number('10/24', fmt=FORMAT_YEAR))
        self.assertTrue(validate_receipt_number('15/24', fmt=FORMAT_SHORT_YEAR))
        self.assertTrue(validate_receipt_number('INV-100', fmt=FORMAT_CUSTOM, prefix='INV-'))
        self.assertFalse(validate_receipt_number('100', fmt=FORMAT_CUSTOM, prefix='INV-'))
        self.assertFalse(validate_receipt_number('', fmt=FORMAT_SEQUENTIAL))


class ReservationTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Counter School', code='counter_school')
        configure_numbering(school=self.school, domain=DOMAIN_FEE, fmt=FORMAT_SEQUENTIAL)

    def counter(self, domain=DOMAIN_FEE):
        return ReceiptCounter.objects.get(school=self.school, domain=domain)

    def test_reserve_increments_counter(self):
        first = reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)
        second = reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)

        self.assertEqual(first.number, '1')
        self.assertEqual(second.number, '2')
        self.assertFalse(second.is_fallback)
        self.assertEqual(self.counter().current_value, 3)

    def test_batch_is_contiguous(self):
        configure_numbering(school=self.school, domain=DOMAIN_FEE, fmt=FORMAT_YEAR, year=2024, start=10)

        reservation = reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE, count=3)

        self.assertEqual(list(reservation), ['10/2024', '11/2024', '12/2024'])
        self.assertEqual(reservation.first_value, 10)
        self.assertEqual(preview_next_receipt_number(school=self.school, domain=DOMAIN_FEE), '13/2024')

    def test_domains_are_independent(self):
        configure_numbering(school=self.school, domain=DOMAIN_INSTALLMENT, fmt=FORMAT_CUSTOM, prefix='I-')

        reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)
        installment = reserve_receipt_numbers(school=self.school, domain=DOMAIN_INSTALLMENT)

        self.assertEqual(installment.number, 'I-1')
        self.assertEqual(self.counter(DOMAIN_FEE).current_value, 2)
        self.assertEqual(self.counter(DOMAIN_INSTALLMENT).current_value, 2)

    def test_preview_does_not_reserve(self):
        self.assertEqual(preview_next_receipt_number(school=self.school, domain=DOMAIN_FEE), '1')
        self.assertEqual(preview_next_receipt_number(school=self.school, domain=DOMAIN_FEE), '1')
        self.assertFalse(ReceiptCounter.objects.filter(school=self.school).exists())

        reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)
        self.assertEqual(preview_next_receipt_number(school=self.school, domain=DOMAIN_FEE), '2')

    def test_invalid_requests(self):
        with self.assertRaises(ValidationError):
            reserve_receipt_numbers(school=self.school, domain='payroll')
        with self.assertRaises(ValidationError):
            reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE, count=0)

    def test_auto_format_still_advances_counter(self):
        configure_numbering(school=self.school, domain=DOMAIN_FEE, fmt=FORMAT_AUTO)

        reservation = reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)

        self.assertTrue(reservation.number.startswith('R-'))
        self.assertEqual(self.counter().current_value, 2)

    def test_counter_cannot_move_backwards(self):
        reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE, count=5)

        with self.assertRaises(ValidationError):
            configure_numbering(school=self.school, domain=DOMAIN_FEE, start=3)

        configure_numbering(school=self.school, domain=DOMAIN_FEE, start=50)
        self.assertEqual(reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE).number, '50')

    def test_counter_rows_are_protected(self):
        reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)
        counter = self.counter()

        counter.current_value = 1
        with self.assertRaises(ValidationError):
            counter.full_clean()
        with self.assertRaises(ValidationError):
            counter.delete()

    def test_style_change_applies_to_live_counter(self):
        reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)
        configure_numbering(school=self.school, domain=DOMAIN_FEE, fmt=FORMAT_SHORT_YEAR, year=2025)

        self.assertEqual(reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE).number, '2/25')


@override_settings(RECEIPT_RESERVATION_BACKOFF_SECONDS=0, RECEIPT_RESERVATION_MAX_ATTEMPTS=3)
class ReservationFailureTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Flaky School', code='flaky_school')
        configure_numbering(school=self.school, domain=DOMAIN_FEE, fmt=FORMAT_CUSTOM, prefix='R-')

    def test_transient_failure_is_retried(self):
        original = services._reserve_once
        calls = []

        def flaky(numbering, domain, count):
            calls.append(domain)
            if len(calls) == 1:
                raise DatabaseError('could not obtain lock')
            return original(numbering, domain, count)

        with mock.patch('apps.core.numbering.services._reserve_once', side_effect=flaky):
            reservation = reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)

        self.assertEqual(len(calls), 2)
        self.assertEqual(reservation.number, 'R-1')
        self.assertFalse(reservation.is_fallback)

    def test_exhausted_retries_raise_when_fallback_disabled(self):
        with mock.patch(
            'apps.core.numbering.services._reserve_once',
            side_effect=DatabaseError('store unavailable'),
        ) as reserve_once:
            with self.assertRaises(ReservationFailed) as ctx:
                reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE, allow_fallback=False)

        self.assertEqual(reserve_once.call_count, 3)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertFalse(ReceiptCounter.objects.filter(school=self.school).exists())

    def test_exhausted_retries_use_flagged_fallback(self):
        with mock.patch(
            'apps.core.numbering.services._reserve_once',
            side_effect=DatabaseError('store unavailable'),
        ):
            reservation = reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE, count=2)

        self.assertTrue(reservation.is_fallback)
        self.assertIsNone(reservation.first_value)
        self.assertEqual(len(reservation), 2)
        self.assertEqual(len(set(reservation)), 2)
        for number in reservation:
            self.assertTrue(number.startswith('R-'))

    def test_fallback_without_settings_uses_domain_prefix(self):
        reservation = generate_fallback_numbers(domain=DOMAIN_INSTALLMENT)
        self.assertTrue(reservation.is_fallback)
        self.assertTrue(reservation.number.isdigit())


class ConcurrentReservationTests(TransactionTestCase):
    def setUp(self):
        # Threads need their own connections to one shared database.
        if connection.vendor == 'sqlite' and connection.is_in_memory_db():
            self.skipTest('in-memory SQLite databases are not shared between threads')

    def test_parallel_reservations_are_unique(self):
        school = School.objects.create(name='Busy School', code='busy_school')
        configure_numbering(school=school, domain=DOMAIN_FEE, fmt=FORMAT_SEQUENTIAL)
        reserve_receipt_numbers(school=school, domain=DOMAIN_FEE)

        numbers = []
        errors = []

        def worker():
            try:
                for _ in range(5):
                    reservation = reserve_receipt_numbers(school=school.pk, domain=DOMAIN_FEE, allow_fallback=False)
                    numbers.append(reservation.number)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(numbers), 40)
        self.assertEqual(set(numbers), {str(value) for value in range(2, 42)})
        self.assertEqual(ReceiptCounter.objects.get(school=school).current_value, 42)
