from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q

from apps.core.schools.models import School
from apps.core.utils.managers import SchoolManager

from .formatting import DOMAIN_CHOICES, FORMAT_AUTO, FORMAT_CHOICES


class ReceiptCounter(models.Model):
    school = models.ForeignKey(
        School,
        on_delete=models.CASCADE,
        related_name='receipt_counters',
    )
    objects = SchoolManager()

    domain = models.CharField(max_length=20, choices=DOMAIN_CHOICES)
    current_value = models.PositiveBigIntegerField(default=1)
    format = models.CharField(max_length=20, choices=FORMAT_CHOICES, default=FORMAT_AUTO)
    prefix = models.CharField(max_length=30, blank=True)
    year = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['school_id', 'domain']
        constraints = [
            models.UniqueConstraint(
                fields=['school', 'domain'],
                name='unique_receipt_counter_per_school_domain',
            ),
            models.CheckConstraint(
                condition=Q(current_value__gte=1),
                name='receipt_counter_value_positive',
            ),
        ]

    def clean(self):
        super().clean()

        if not self.pk:
            return

        previous = ReceiptCounter.objects.filter(pk=self.pk).values('current_value', 'school_id', 'domain').first()
        if not previous:
            return

        if self.current_value < previous['current_value']:
            raise ValidationError({'current_value': 'Receipt counters cannot move backwards.'})
        if previous['school_id'] != self.school_id or previous['domain'] != self.domain:
            raise ValidationError('Receipt counter school and domain cannot be changed.')

    def delete(self, *args, **kwargs):
        raise ValidationError('Receipt counters cannot be deleted.')

    def __str__(self):
        return f"{self.domain} counter @ {self.current_value} ({self.school.code})"
