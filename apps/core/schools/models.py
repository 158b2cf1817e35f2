from uuid import uuid4

from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone
from django.utils.text import slugify

from apps.core.numbering.formatting import (
    DOMAIN_FEE,
    DOMAIN_INSTALLMENT,
    FORMAT_AUTO,
    FORMAT_CHOICES,
)


class School(models.Model):
    uuid = models.UUIDField(default=uuid4, editable=False, db_index=True)
    name = models.CharField(max_length=255)
    code = models.CharField(max_length=40, unique=True, null=True, blank=True)
    address = models.TextField(blank=True)
    phone = models.CharField(max_length=20, blank=True)
    email = models.EmailField(blank=True)
    timezone = models.CharField(max_length=64, default='UTC')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['name']
        indexes = [
            models.Index(fields=['code']),
            models.Index(fields=['is_active']),
        ]

    def save(self, *args, **kwargs):
        if not self.code:
            base_code = slugify(self.name).replace('-', '_')[:30] or 'school'
            candidate = base_code
            sequence = 1
            while School.objects.exclude(pk=self.pk).filter(code=candidate).exists():
                suffix = f'_{sequence}'
                candidate = f'{base_code[:30 - len(suffix)]}{suffix}'
                sequence += 1
            self.code = candidate

        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.name} ({self.code})"


def _current_year():
    return timezone.now().year


class NumberingSettings(models.Model):
    """Receipt numbering configuration for one school.

    Holds the style (format, prefix, year) and the starting counter of both
    numbering domains. The live counters are kept in
    ``numbering.ReceiptCounter`` and are seeded from here on first use.
    """

    school = models.OneToOneField(
        School,
        on_delete=models.CASCADE,
        related_name='numbering_settings',
    )

    receipt_number_format = models.CharField(max_length=20, choices=FORMAT_CHOICES, default=FORMAT_AUTO)
    receipt_number_prefix = models.CharField(max_length=30, blank=True)
    receipt_number_counter = models.PositiveIntegerField(default=1)
    receipt_number_year = models.PositiveIntegerField(default=_current_year)

    installment_receipt_number_format = models.CharField(
        max_length=20,
        choices=FORMAT_CHOICES,
        default=FORMAT_AUTO,
    )
    installment_receipt_number_prefix = models.CharField(max_length=30, blank=True)
    installment_receipt_number_counter = models.PositiveIntegerField(default=1)
    installment_receipt_number_year = models.PositiveIntegerField(default=_current_year)

    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name_plural = 'numbering settings'

    def clean(self):
        super().clean()
        if self.receipt_number_counter is not None and self.receipt_number_counter < 1:
            raise ValidationError({'receipt_number_counter': 'Counter must start at 1 or above.'})
        if self.installment_receipt_number_counter is not None and self.installment_receipt_number_counter < 1:
            raise ValidationError({'installment_receipt_number_counter': 'Counter must start at 1 or above.'})

    def for_domain(self, domain):
        """Return ``(format, prefix, counter, year)`` configured for ``domain``."""
        if domain == DOMAIN_INSTALLMENT:
            return (
                self.installment_receipt_number_format,
                self.installment_receipt_number_prefix,
                self.installment_receipt_number_counter,
                self.installment_receipt_number_year,
            )
        if domain == DOMAIN_FEE:
            return (
                self.receipt_number_format,
                self.receipt_number_prefix,
                self.receipt_number_counter,
                self.receipt_number_year,
            )
        raise ValidationError(f"Unknown numbering domain '{domain}'.")

    def field_names_for_domain(self, domain):
        if domain == DOMAIN_INSTALLMENT:
            base = 'installment_receipt_number'
        elif domain == DOMAIN_FEE:
            base = 'receipt_number'
        else:
            raise ValidationError(f"Unknown numbering domain '{domain}'.")
        return {
            'format': f'{base}_format',
            'prefix': f'{base}_prefix',
            'counter': f'{base}_counter',
            'year': f'{base}_year',
        }

    def __str__(self):
        return f"Numbering settings ({self.school.code})"
