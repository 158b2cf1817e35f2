from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings

from apps.core.numbering.exceptions import SettingsUnavailable
from apps.core.numbering.formatting import DOMAIN_FEE, DOMAIN_INSTALLMENT, FORMAT_AUTO
from apps.core.numbering.services import reserve_receipt_numbers

from .models import NumberingSettings, School
from .services import ensure_numbering_settings, get_numbering_settings


class SchoolModelTests(TestCase):
    def test_code_is_generated_from_name(self):
        school = School.objects.create(name='Green Valley High')
        self.assertEqual(school.code, 'green_valley_high')

    def test_generated_code_is_unique(self):
        School.objects.create(name='Green Valley High')
        second = School.objects.create(name='Green Valley High')
        self.assertEqual(second.code, 'green_valley_high_1')


class NumberingSettingsTests(TestCase):
    def setUp(self):
        self.school = School.objects.create(name='Settings School', code='settings_school')

    def test_defaults_are_created_on_first_access(self):
        numbering = get_numbering_settings(school=self.school)

        self.assertEqual(NumberingSettings.objects.count(), 1)
        fmt, prefix, counter, year = numbering.for_domain(DOMAIN_FEE)
        self.assertEqual(fmt, FORMAT_AUTO)
        self.assertEqual(prefix, '')
        self.assertEqual(counter, 1)
        self.assertIsNotNone(year)

    def test_ensure_is_idempotent(self):
        first = ensure_numbering_settings(school=self.school)
        second = ensure_numbering_settings(school=self.school.pk)
        self.assertEqual(first.pk, second.pk)

    def test_missing_settings_raise_when_defaults_disabled(self):
        with self.assertRaises(SettingsUnavailable):
            get_numbering_settings(school=self.school, create_defaults=False)

    def test_unknown_school_is_unavailable(self):
        with self.assertRaises(SettingsUnavailable):
            ensure_numbering_settings(school=999999)

    @override_settings(RECEIPT_SETTINGS_AUTO_CREATE=False)
    def test_reservation_is_not_retried_without_settings(self):
        with self.assertRaises(SettingsUnavailable) as ctx:
            reserve_receipt_numbers(school=self.school, domain=DOMAIN_FEE)
        self.assertFalse(ctx.exception.retryable)

    def test_counter_below_one_is_invalid(self):
        numbering = ensure_numbering_settings(school=self.school)
        numbering.installment_receipt_number_counter = 0
        with self.assertRaises(ValidationError):
            numbering.full_clean()

    def test_domain_fields(self):
        numbering = ensure_numbering_settings(school=self.school)
        self.assertEqual(
            numbering.field_names_for_domain(DOMAIN_INSTALLMENT)['counter'],
            'installment_receipt_number_counter',
        )
        with self.assertRaises(ValidationError):
            numbering.for_domain('payroll')
