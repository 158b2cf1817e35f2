from django import forms
from django.contrib import admin

from apps.core.numbering.formatting import DOMAINS
from apps.core.numbering.models import ReceiptCounter
from apps.core.numbering.services import configure_numbering

from .models import NumberingSettings, School


@admin.register(School)
class SchoolAdmin(admin.ModelAdmin):
    list_display = ('name', 'code', 'timezone', 'is_active')
    list_filter = ('is_active',)
    search_fields = ('name', 'code', 'email')


class NumberingSettingsAdminForm(forms.ModelForm):
    class Meta:
        model = NumberingSettings
        fields = '__all__'

    def clean(self):
        cleaned_data = super().clean()
        if not self.instance.pk:
            return cleaned_data

        for domain in DOMAINS:
            field_name = self.instance.field_names_for_domain(domain)['counter']
            start = cleaned_data.get(field_name)
            if field_name not in self.changed_data or start is None:
                continue
            counter = ReceiptCounter.objects.filter(school_id=self.instance.school_id, domain=domain).first()
            if counter and start < counter.current_value:
                self.add_error(
                    field_name,
                    f'Counter is already at {counter.current_value}; numbers cannot be reissued.',
                )
        return cleaned_data


@admin.register(NumberingSettings)
class NumberingSettingsAdmin(admin.ModelAdmin):
    form = NumberingSettingsAdminForm
    list_display = (
        'school',
        'receipt_number_format',
        'receipt_number_prefix',
        'installment_receipt_number_format',
        'installment_receipt_number_prefix',
        'updated_at',
    )
    search_fields = ('school__name', 'school__code')

    def save_model(self, request, obj, form, change):
        if not change:
            super().save_model(request, obj, form, change)
            return

        for domain in DOMAINS:
            fields = obj.field_names_for_domain(domain)
            configure_numbering(
                school=obj.school_id,
                domain=domain,
                fmt=getattr(obj, fields['format']),
                prefix=getattr(obj, fields['prefix']),
                year=getattr(obj, fields['year']),
                start=getattr(obj, fields['counter']) if fields['counter'] in form.changed_data else None,
            )
