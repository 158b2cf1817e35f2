from decimal import Decimal

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from apps.core.schools.models import School
from apps.core.utils.managers import SchoolManager

from .allocation import (
    FEE_PAID,
    FEE_PARTIAL,
    FEE_UNPAID,
    INSTALLMENT_OVERDUE,
    INSTALLMENT_PAID,
    INSTALLMENT_PARTIAL,
    INSTALLMENT_UPCOMING,
    fee_totals,
    installment_balance,
    installment_status,
)


class PaymentDetailsModel(models.Model):
    METHOD_CASH = 'cash'
    METHOD_VISA = 'visa'
    METHOD_CHECK = 'check'
    METHOD_BANK_TRANSFER = 'bank-transfer'
    METHOD_OTHER = 'other'
    PAYMENT_METHOD_CHOICES = (
        (METHOD_CASH, 'Cash'),
        (METHOD_VISA, 'Card'),
        (METHOD_CHECK, 'Cheque'),
        (METHOD_BANK_TRANSFER, 'Bank transfer'),
        (METHOD_OTHER, 'Other'),
    )

    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, blank=True)
    payment_note = models.TextField(blank=True)
    check_number = models.CharField(max_length=60, blank=True)
    check_date = models.DateField(null=True, blank=True)
    bank_name = models.CharField(max_length=120, blank=True)
    receipt_number = models.CharField(max_length=50, blank=True, db_index=True)
    receipt_number_provisional = models.BooleanField(default=False)

    class Meta:
        abstract = True


class Fee(PaymentDetailsModel):
    TYPE_TUITION = 'tuition'
    TYPE_TRANSPORTATION = 'transportation'
    TYPE_COMBINED = 'transportation_and_tuition'
    TYPE_ACTIVITIES = 'activities'
    TYPE_UNIFORM = 'uniform'
    TYPE_BOOKS = 'books'
    TYPE_OTHER = 'other'
    FEE_TYPE_CHOICES = (
        (TYPE_TUITION, 'Tuition'),
        (TYPE_TRANSPORTATION, 'Transportation'),
        (TYPE_COMBINED, 'Transportation & tuition'),
        (TYPE_ACTIVITIES, 'Activities'),
        (TYPE_UNIFORM, 'Uniform'),
        (TYPE_BOOKS, 'Books'),
        (TYPE_OTHER, 'Other'),
    )

    STATUS_UNPAID = FEE_UNPAID
    STATUS_PARTIAL = FEE_PARTIAL
    STATUS_PAID = FEE_PAID
    STATUS_CHOICES = (
        (STATUS_UNPAID, 'Unpaid'),
        (STATUS_PARTIAL, 'Partially paid'),
        (STATUS_PAID, 'Paid'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fees',
    )
    objects = SchoolManager()

    student_ref = models.CharField(max_length=64, db_index=True)
    student_name = models.CharField(max_length=255, blank=True)
    fee_type = models.CharField(max_length=40, choices=FEE_TYPE_CHOICES, default=TYPE_TUITION)
    description = models.CharField(max_length=255, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    paid = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_UNPAID)
    payment_date = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['student_ref', 'fee_type', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gte=0) & Q(discount__gte=0) & Q(paid__gte=0) & Q(balance__gte=0),
                name='fee_non_negative_amounts',
            ),
            models.CheckConstraint(
                condition=Q(discount__lte=F('amount')),
                name='fee_discount_not_above_amount',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'student_ref', 'fee_type']),
            models.Index(fields=['school', 'status']),
        ]

    @property
    def net_amount(self):
        return Decimal(self.amount) - Decimal(self.discount)

    @property
    def is_combined(self):
        return self.fee_type == self.TYPE_COMBINED

    def clean(self):
        super().clean()

        if self.amount is None or self.amount < 0:
            raise ValidationError({'amount': 'Amount cannot be negative.'})
        if self.discount is None or self.discount < 0:
            raise ValidationError({'discount': 'Discount cannot be negative.'})
        if self.discount > self.amount:
            raise ValidationError({'discount': 'Discount cannot exceed amount.'})
        if self.paid is None or self.paid < 0:
            raise ValidationError({'paid': 'Paid amount cannot be negative.'})
        if self.paid > self.net_amount:
            raise ValidationError({'paid': 'Paid amount cannot exceed amount after discount.'})

    def refresh_totals(self):
        self.paid, self.balance, self.status = fee_totals(self.amount, self.discount, self.paid)

    def save(self, *args, **kwargs):
        self.refresh_totals()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None:
            kwargs['update_fields'] = set(update_fields) | {'paid', 'balance', 'status'}
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.student_ref} - {self.get_fee_type_display()} ({self.school.code})"


class Installment(PaymentDetailsModel):
    STATUS_UPCOMING = INSTALLMENT_UPCOMING
    STATUS_PARTIAL = INSTALLMENT_PARTIAL
    STATUS_PAID = INSTALLMENT_PAID
    STATUS_OVERDUE = INSTALLMENT_OVERDUE
    STATUS_CHOICES = (
        (STATUS_UPCOMING, 'Upcoming'),
        (STATUS_PARTIAL, 'Partially paid'),
        (STATUS_PAID, 'Paid'),
        (STATUS_OVERDUE, 'Overdue'),
    )

    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='fee_installments',
    )
    fee = models.ForeignKey(
        Fee,
        on_delete=models.CASCADE,
        related_name='installments',
    )
    objects = SchoolManager()

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_UPCOMING)
    due_date = models.DateField()
    paid_date = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['due_date', 'id']
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gte=0) & Q(paid_amount__gte=0) & Q(balance__gte=0),
                name='installment_non_negative_amounts',
            ),
            models.CheckConstraint(
                condition=Q(paid_amount__lte=F('amount')),
                name='installment_paid_not_above_amount',
            ),
        ]
        indexes = [
            models.Index(fields=['school', 'fee', 'due_date']),
            models.Index(fields=['school', 'status', 'due_date']),
        ]

    def clean(self):
        super().clean()

        if self.fee_id and self.fee.school_id != self.school_id:
            raise ValidationError({'fee': 'Fee must belong to selected school.'})
        if self.amount is None or self.amount < 0:
            raise ValidationError({'amount': 'Amount cannot be negative.'})
        if self.paid_amount is None or self.paid_amount < 0:
            raise ValidationError({'paid_amount': 'Paid amount cannot be negative.'})
        if self.paid_amount > self.amount:
            raise ValidationError({'paid_amount': 'Paid amount cannot exceed installment amount.'})

    def display_status(self, as_of_date=None):
        """Status as shown to users: unpaid installments past their due date read as overdue."""
        as_of_date = as_of_date or timezone.localdate()
        if self.status == self.STATUS_PAID:
            return self.STATUS_PAID
        if self.paid_amount <= 0 and self.due_date < as_of_date:
            return self.STATUS_OVERDUE
        if self.status == self.STATUS_OVERDUE:
            return self.STATUS_UPCOMING
        return self.status

    def refresh_totals(self):
        self.balance = installment_balance(self.amount, self.paid_amount)
        self.status = installment_status(self.amount, self.paid_amount, self.status)

    def save(self, *args, **kwargs):
        self.refresh_totals()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None:
            kwargs['update_fields'] = set(update_fields) | {'balance', 'status'}
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.fee.student_ref} - {self.amount} due {self.due_date}"
