from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib import admin
from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.db import DatabaseError, OperationalError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from apps.core.numbering.formatting import DOMAIN_FEE, DOMAIN_INSTALLMENT, FORMAT_CUSTOM
from apps.core.numbering.models import ReceiptCounter
from apps.core.numbering.services import configure_numbering, preview_next_receipt_number
from apps.core.schools.models import School

from .allocation import (
    INSTALLMENT_OVERDUE,
    INSTALLMENT_PAID,
    INSTALLMENT_PARTIAL,
    InstallmentPosition,
    allocate,
    apply_to_fee,
    fee_totals,
    order_for_allocation,
)
from .exceptions import AllocationRetryable, AllocationTargetNotFound, OverAllocation
from .models import Fee, Installment
from .services import (
    CheckDetails,
    PaymentRequest,
    _lock_fee_group,
    apply_payment,
    ensure_receipt_number,
    find_receipt_number_conflicts,
    mark_overdue_installments,
    pay_all_fees_for_student,
    recalculate_fee_totals,
)


class AllocationRuleTests(SimpleTestCase):
    def positions(self, *amounts):
        start = date(2026, 1, 1)
        return [
            InstallmentPosition(key=index, amount=Decimal(amount), due_date=start + timedelta(days=30 * index))
            for index, amount in enumerate(amounts)
        ]

    def test_payment_cascades_in_due_order(self):
        lines, remainder = allocate(self.positions('100', '100', '100'), Decimal('250'))

        self.assertEqual([line.applied for line in lines], [Decimal('100'), Decimal('100'), Decimal('50')])
        self.assertEqual([line.status for line in lines], [INSTALLMENT_PAID, INSTALLMENT_PAID, INSTALLMENT_PARTIAL])
        self.assertEqual(lines[2].balance, Decimal('50.00'))
        self.assertTrue(lines[0].became_paid)
        self.assertEqual(remainder, Decimal('0.00'))

    def test_paid_installments_are_skipped(self):
        positions = self.positions('100', '100')
        positions[0] = InstallmentPosition(
            key=0,
            amount=Decimal('100'),
            paid_amount=Decimal('100'),
            due_date=positions[0].due_date,
            status=INSTALLMENT_PAID,
        )
        lines, remainder = allocate(positions, Decimal('150'))

        self.assertEqual([line.key for line in lines], [1])
        self.assertEqual(remainder, Decimal('50.00'))

    def test_target_goes_first(self):
        positions = list(reversed(self.positions('10', '20', '30')))
        ordered = order_for_allocation(positions, start_key=2)
        self.assertEqual([position.key for position in ordered], [2, 0, 1])

    def test_missing_due_dates_sort_last(self):
        positions = [
            InstallmentPosition(key='undated', amount=Decimal('10')),
            InstallmentPosition(key='dated', amount=Decimal('10'), due_date=date(2026, 5, 1)),
        ]
        self.assertEqual([position.key for position in order_for_allocation(positions)], ['dated', 'undated'])

    def test_direct_fee_payment(self):
        self.assertEqual(
            apply_to_fee(Decimal('500'), Decimal('100'), Decimal('350'), Decimal('100')),
            (Decimal('50.00'), Decimal('400.00'), Decimal('50.00')),
        )

    def test_fee_totals_clamp(self):
        self.assertEqual(fee_totals('300', '0', '350'), (Decimal('300.00'), Decimal('0.00'), Fee.STATUS_PAID))
        self.assertEqual(fee_totals('300', '0', '0'), (Decimal('0.00'), Decimal('300.00'), Fee.STATUS_UNPAID))


class FeesBaseTestCase(TestCase):
    def setUp(self):
        self.today = timezone.localdate()
        self.school = School.objects.create(name='Fee School', code='fee_school')
        self.other_school = School.objects.create(name='Other School', code='other_school')
        configure_numbering(school=self.school, domain=DOMAIN_FEE, fmt=FORMAT_CUSTOM, prefix='R-')
        configure_numbering(school=self.school, domain=DOMAIN_INSTALLMENT, fmt=FORMAT_CUSTOM, prefix='I-')

    def create_fee(self, amount, *, installments=(), discount='0', fee_type=Fee.TYPE_TUITION, student_ref='S-1'):
        fee = Fee.objects.create(
            school=self.school,
            student_ref=student_ref,
            student_name=f'Student {student_ref}',
            fee_type=fee_type,
            amount=Decimal(amount),
            discount=Decimal(discount),
        )
        for index, installment_amount in enumerate(installments):
            Installment.objects.create(
                school=self.school,
                fee=fee,
                amount=Decimal(installment_amount),
                due_date=self.today + timedelta(days=30 * index),
            )
        return fee

    def pay(self, fee, amount, **kwargs):
        request = PaymentRequest(target_fee_id=fee.pk, amount=Decimal(amount), **kwargs)
        return apply_payment(request, school=self.school)

    def installments_of(self, fee):
        return list(Installment.objects.filter(fee=fee).order_by('due_date', 'id'))


class ApplyPaymentTests(FeesBaseTestCase):
    def test_payment_cascades_across_installments(self):
        fee = self.create_fee('300', installments=('100', '100', '100'))

        result = self.pay(fee, '250')

        fee.refresh_from_db()
        first, second, third = self.installments_of(fee)
        self.assertEqual([first.status, second.status, third.status], ['paid', 'paid', 'partial'])
        self.assertEqual(third.paid_amount, Decimal('50.00'))
        self.assertEqual(third.balance, Decimal('50.00'))
        self.assertEqual(fee.paid, Decimal('250.00'))
        self.assertEqual(fee.balance, Decimal('50.00'))
        self.assertEqual(fee.status, Fee.STATUS_PARTIAL)
        self.assertEqual(first.paid_date, self.today)

        self.assertEqual(result['applied_amount'], Decimal('250.00'))
        self.assertEqual(result['unapplied_amount'], Decimal('0.00'))
        self.assertEqual(result['receipt_number'], 'I-1')
        self.assertEqual({first.receipt_number, second.receipt_number, third.receipt_number}, {'I-1'})
        self.assertEqual(fee.receipt_number, 'I-1')

    def test_exact_payment_settles_fee(self):
        fee = self.create_fee('300', installments=('100', '100', '100'))

        result = self.pay(fee, '300', method=Fee.METHOD_CHECK, check_details=CheckDetails('000123', self.today, 'City Bank'))

        fee.refresh_from_db()
        self.assertEqual(fee.status, Fee.STATUS_PAID)
        self.assertEqual(fee.balance, Decimal('0.00'))
        self.assertEqual(fee.payment_method, Fee.METHOD_CHECK)
        self.assertEqual(fee.check_number, '000123')
        self.assertEqual(fee.bank_name, 'City Bank')
        self.assertEqual(result['warnings'], [])
        self.assertTrue(all(item.status == INSTALLMENT_PAID for item in self.installments_of(fee)))

    def test_overpayment_is_reported(self):
        fee = self.create_fee('300', installments=('100', '100', '100'))

        result = self.pay(fee, '350')

        fee.refresh_from_db()
        self.assertEqual(fee.paid, Decimal('300.00'))
        self.assertEqual(result['unapplied_amount'], Decimal('50.00'))
        self.assertEqual(len(result['warnings']), 1)
        self.assertIsInstance(result['warnings'][0], OverAllocation)

    def test_overpayment_can_be_rejected(self):
        fee = self.create_fee('300', installments=('100', '100', '100'))

        with self.assertRaises(OverAllocation):
            apply_payment(
                PaymentRequest(target_fee_id=fee.pk, amount=Decimal('350')),
                school=self.school,
                reject_overpayment=True,
            )

        fee.refresh_from_db()
        self.assertEqual(fee.paid, Decimal('0.00'))
        self.assertFalse(ReceiptCounter.objects.filter(school=self.school).exists())

    def test_fee_without_installments_with_discount(self):
        fee = self.create_fee('500', discount='100')

        first = self.pay(fee, '150')
        fee.refresh_from_db()
        self.assertEqual(fee.paid, Decimal('150.00'))
        self.assertEqual(fee.balance, Decimal('250.00'))
        self.assertEqual(fee.status, Fee.STATUS_PARTIAL)
        self.assertEqual(first['receipt_number'], 'R-1')

        second = self.pay(fee, '250')
        fee.refresh_from_db()
        self.assertEqual(fee.status, Fee.STATUS_PAID)
        self.assertEqual(second['receipt_number'], 'R-1')
        self.assertIsNone(second['reservation'])
        self.assertEqual(preview_next_receipt_number(school=self.school, domain=DOMAIN_FEE), 'R-2')

    def test_totals_are_conserved_over_several_payments(self):
        fee = self.create_fee('150', installments=('50', '75', '25'))

        for amount in ('37.35', '100', '12.65'):
            self.pay(fee, amount)

        fee.refresh_from_db()
        installments = self.installments_of(fee)
        self.assertEqual(fee.paid, sum(item.paid_amount for item in installments))
        self.assertEqual(fee.paid + fee.balance, fee.net_amount)
        self.assertEqual(fee.status, Fee.STATUS_PAID)
        self.assertTrue(all(item.balance == Decimal('0.00') for item in installments))

    def test_target_installment_is_paid_first(self):
        fee = self.create_fee('300', installments=('100', '100', '100'))
        first, second, third = self.installments_of(fee)

        self.pay(fee, '120', target_installment_id=third.pk)

        first.refresh_from_db()
        second.refresh_from_db()
        third.refresh_from_db()
        self.assertEqual(third.status, INSTALLMENT_PAID)
        self.assertEqual(first.paid_amount, Decimal('20.00'))
        self.assertEqual(second.paid_amount, Decimal('0.00'))

    def test_unknown_fee_changes_nothing(self):
        fee = self.create_fee('100')

        with self.assertRaises(AllocationTargetNotFound):
            apply_payment(PaymentRequest(target_fee_id=fee.pk + 1000, amount=Decimal('10')), school=self.school)
        with self.assertRaises(AllocationTargetNotFound):
            apply_payment(PaymentRequest(target_fee_id=fee.pk, amount=Decimal('10')), school=self.other_school)

        fee.refresh_from_db()
        self.assertEqual(fee.paid, Decimal('0.00'))
        self.assertFalse(ReceiptCounter.objects.exists())

    def test_unknown_installment_changes_nothing(self):
        fee = self.create_fee('200', installments=('100', '100'))

        with self.assertRaises(AllocationTargetNotFound):
            self.pay(fee, '50', target_installment_id=999999)

        fee.refresh_from_db()
        self.assertEqual(fee.paid, Decimal('0.00'))

    def test_invalid_payment_is_rejected(self):
        fee = self.create_fee('100')
        with self.assertRaises(ValidationError):
            self.pay(fee, '0')
        with self.assertRaises(ValidationError):
            self.pay(fee, '10', method='barter')

    def test_lock_failure_is_retryable(self):
        fee = self.create_fee('100')
        with mock.patch(
            'apps.core.fees.services._apply_payment_locked',
            side_effect=OperationalError('lock timeout'),
        ):
            with self.assertRaises(AllocationRetryable) as ctx:
                self.pay(fee, '10')

        self.assertTrue(ctx.exception.retryable)
        fee.refresh_from_db()
        self.assertEqual(fee.paid, Decimal('0.00'))

    @override_settings(RECEIPT_RESERVATION_BACKOFF_SECONDS=0)
    def test_fallback_receipt_is_marked_provisional(self):
        fee = self.create_fee('100')

        with mock.patch(
            'apps.core.numbering.services._reserve_once',
            side_effect=DatabaseError('store unavailable'),
        ):
            result = self.pay(fee, '100')

        fee.refresh_from_db()
        self.assertEqual(fee.status, Fee.STATUS_PAID)
        self.assertTrue(fee.receipt_number_provisional)
        self.assertTrue(fee.receipt_number.startswith('R-'))
        self.assertTrue(result['reservation'].is_fallback)


class CombinedFeeTests(FeesBaseTestCase):
    def setUp(self):
        super().setUp()
        self.tuition = self.create_fee('400', fee_type=Fee.TYPE_TUITION)
        self.transport = self.create_fee('200', installments=('100', '100'), fee_type=Fee.TYPE_TRANSPORTATION)
        self.combined = self.create_fee('600', fee_type=Fee.TYPE_COMBINED)
        self.sibling_tuition = self.create_fee('400', fee_type=Fee.TYPE_TUITION, student_ref='S-2')

    def test_paid_combined_fee_settles_parts(self):
        result = self.pay(self.combined, '600')

        self.tuition.refresh_from_db()
        self.transport.refresh_from_db()
        self.sibling_tuition.refresh_from_db()
        self.assertEqual(self.tuition.status, Fee.STATUS_PAID)
        self.assertEqual(self.transport.status, Fee.STATUS_PAID)
        self.assertEqual(self.sibling_tuition.status, Fee.STATUS_UNPAID)
        self.assertEqual(len(result['propagated_fees']), 2)

        synthesized = self.installments_of(self.tuition)
        self.assertEqual(len(synthesized), 1)
        self.assertEqual(synthesized[0].amount, Decimal('400.00'))
        self.assertEqual(synthesized[0].status, INSTALLMENT_PAID)

        self.assertTrue(all(item.status == INSTALLMENT_PAID for item in self.installments_of(self.transport)))
        self.assertEqual(self.tuition.receipt_number, result['receipt_number'])
        self.assertEqual(self.transport.receipt_number, result['receipt_number'])

    def test_discounted_part_is_settled_up_to_its_net_amount(self):
        transport = self.create_fee(
            '200',
            discount='50',
            installments=('100', '100'),
            fee_type=Fee.TYPE_TRANSPORTATION,
            student_ref='S-3',
        )
        combined = self.create_fee('150', fee_type=Fee.TYPE_COMBINED, student_ref='S-3')

        self.pay(combined, '150')

        transport.refresh_from_db()
        first, second = self.installments_of(transport)
        self.assertEqual(transport.status, Fee.STATUS_PAID)
        self.assertEqual(transport.paid, Decimal('150.00'))
        self.assertEqual(first.paid_amount + second.paid_amount, transport.paid)
        self.assertLessEqual(first.paid_amount + second.paid_amount, transport.net_amount)
        self.assertEqual((first.status, second.status), (INSTALLMENT_PAID, INSTALLMENT_PARTIAL))

    def test_short_schedule_gets_a_paid_installment_for_the_rest(self):
        tuition = self.create_fee('300', installments=('100',), student_ref='S-4')
        combined = self.create_fee('300', fee_type=Fee.TYPE_COMBINED, student_ref='S-4')

        self.pay(combined, '300')

        tuition.refresh_from_db()
        installments = self.installments_of(tuition)
        self.assertEqual(tuition.status, Fee.STATUS_PAID)
        self.assertEqual([item.amount for item in installments], [Decimal('100.00'), Decimal('200.00')])
        self.assertEqual(sum(item.paid_amount for item in installments), tuition.paid)

    def test_combined_fee_and_parts_are_locked_together_in_id_order(self):
        fee, constituents = _lock_fee_group(self.combined.pk, self.school.pk)

        self.assertEqual(fee, self.combined)
        self.assertEqual([item.pk for item in constituents], [self.tuition.pk, self.transport.pk])

        fee, constituents = _lock_fee_group(self.tuition.pk, self.school.pk)
        self.assertEqual((fee, constituents), (self.tuition, []))
        self.assertEqual(_lock_fee_group(self.combined.pk, self.other_school.pk), (None, []))

    def test_partial_combined_payment_does_not_propagate(self):
        result = self.pay(self.combined, '300')

        self.tuition.refresh_from_db()
        self.assertEqual(self.tuition.status, Fee.STATUS_UNPAID)
        self.assertEqual(result['propagated_fees'], [])


class PayAllTests(FeesBaseTestCase):
    def test_all_outstanding_fees_share_one_receipt(self):
        tuition = self.create_fee('300', installments=('150', '150'))
        books = self.create_fee('80', fee_type=Fee.TYPE_BOOKS)
        untouched = self.create_fee('90', student_ref='S-2')

        result = pay_all_fees_for_student(school=self.school, student_ref='S-1', method=Fee.METHOD_CASH)

        tuition.refresh_from_db()
        books.refresh_from_db()
        untouched.refresh_from_db()
        self.assertEqual(result['receipt_number'], 'R-1')
        self.assertEqual(len(result['results']), 2)
        self.assertEqual((tuition.status, books.status), (Fee.STATUS_PAID, Fee.STATUS_PAID))
        self.assertEqual((tuition.receipt_number, books.receipt_number), ('R-1', 'R-1'))
        self.assertEqual(untouched.status, Fee.STATUS_UNPAID)
        self.assertEqual(preview_next_receipt_number(school=self.school, domain=DOMAIN_FEE), 'R-2')

    def test_nothing_outstanding(self):
        result = pay_all_fees_for_student(school=self.school, student_ref='S-9')
        self.assertEqual(result['results'], [])
        self.assertIsNone(result['reservation'])


class ReceiptNumberTests(FeesBaseTestCase):
    def test_existing_number_is_never_replaced(self):
        fee = self.create_fee('100')

        self.assertEqual(ensure_receipt_number(fee), 'R-1')
        self.assertEqual(ensure_receipt_number(fee), 'R-1')

        fee.refresh_from_db()
        self.assertEqual(fee.receipt_number, 'R-1')
        self.assertEqual(preview_next_receipt_number(school=self.school, domain=DOMAIN_FEE), 'R-2')

    def test_installments_use_their_own_domain(self):
        fee = self.create_fee('100', installments=('100',))
        installment = self.installments_of(fee)[0]
        self.assertEqual(ensure_receipt_number(installment), 'I-1')

    def test_conflicts_report_numbers_shared_across_students(self):
        first = self.create_fee('100')
        second = self.create_fee('100', student_ref='S-2')
        same_student = self.create_fee('50', fee_type=Fee.TYPE_BOOKS)
        Fee.objects.filter(pk__in=[first.pk, second.pk, same_student.pk]).update(receipt_number='R-7')
        Fee.objects.filter(pk=same_student.pk).update(receipt_number='R-8', receipt_number_provisional=True)

        report = find_receipt_number_conflicts(school=self.school)

        self.assertEqual(report['duplicates'], {'R-7': ['S-1', 'S-2']})
        self.assertEqual(report['provisional'], [('fee', same_student.pk, 'R-8')])

    def test_check_command(self):
        out = StringIO()
        call_command('check_receipt_numbers', '--school', 'fee_school', stdout=out)
        self.assertIn('no receipt number conflicts', out.getvalue())

        first = self.create_fee('100')
        second = self.create_fee('100', student_ref='S-2')
        Fee.objects.filter(pk__in=[first.pk, second.pk]).update(receipt_number='R-7')
        with self.assertRaises(CommandError):
            call_command('check_receipt_numbers', '--fail-on-conflict', stdout=StringIO())


class InstallmentMaintenanceTests(FeesBaseTestCase):
    def test_overdue_marking(self):
        fee = self.create_fee('200', installments=('100', '100'))
        first, second = self.installments_of(fee)
        Installment.objects.filter(pk=first.pk).update(due_date=self.today - timedelta(days=5))

        result = mark_overdue_installments(school=self.school)

        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(result['marked_overdue'], 1)
        self.assertEqual(first.status, INSTALLMENT_OVERDUE)
        self.assertEqual(second.status, 'upcoming')

        # A partial payment moves it out of overdue.
        self.pay(fee, '40')
        first.refresh_from_db()
        self.assertEqual(first.status, INSTALLMENT_PARTIAL)

    def test_display_status_reads_overdue(self):
        fee = self.create_fee('100', installments=('100',))
        installment = self.installments_of(fee)[0]
        self.assertEqual(installment.display_status(self.today + timedelta(days=1)), INSTALLMENT_OVERDUE)
        self.assertEqual(installment.display_status(self.today), 'upcoming')

    def test_overdue_command(self):
        fee = self.create_fee('100', installments=('100',))
        out = StringIO()
        call_command(
            'mark_overdue_installments',
            '--as-of',
            (self.today + timedelta(days=3)).isoformat(),
            stdout=out,
        )
        self.assertEqual(self.installments_of(fee)[0].status, INSTALLMENT_OVERDUE)
        self.assertIn('fee_school: 1 overdue', out.getvalue())

    def test_recalculate_totals_from_installments(self):
        fee = self.create_fee('200', installments=('100', '100'))
        first = self.installments_of(fee)[0]
        Installment.objects.filter(pk=first.pk).update(paid_amount=Decimal('100'))

        fee = recalculate_fee_totals(fee)

        self.assertEqual(fee.paid, Decimal('100.00'))
        self.assertEqual(fee.balance, Decimal('100.00'))
        self.assertEqual(fee.status, Fee.STATUS_PARTIAL)

    def test_installment_admin_keeps_fee_totals_in_step(self):
        fee = self.create_fee('200', installments=('100', '100'))
        first = self.installments_of(fee)[0]
        Installment.objects.filter(pk=first.pk).update(paid_amount=Decimal('60'))
        model_admin = admin.site._registry[Installment]

        self.assertIn('paid_amount', model_admin.get_readonly_fields(None, first))

        first.refresh_from_db()
        first.due_date = self.today + timedelta(days=10)
        model_admin.save_model(None, first, None, True)

        fee.refresh_from_db()
        self.assertEqual(fee.paid, Decimal('60.00'))
        self.assertEqual(fee.balance, Decimal('140.00'))


class SeedCommandTests(TestCase):
    def test_seed_creates_fees_and_schedules(self):
        call_command('seed_fees', '--students', '2', '--installments', '2', '--seed', '7', stdout=StringIO())

        self.assertEqual(Fee.objects.count(), 6)
        self.assertEqual(Installment.objects.count(), 8)
        for fee in Fee.objects.exclude(fee_type=Fee.TYPE_ACTIVITIES):
            self.assertEqual(sum(item.amount for item in fee.installments.all()), fee.net_amount)
