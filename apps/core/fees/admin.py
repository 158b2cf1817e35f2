from django.contrib import admin, messages

from .models import Fee, Installment
from .services import ensure_receipt_number, recalculate_fee_totals


class InstallmentInline(admin.TabularInline):
    model = Installment
    extra = 0
    fields = ('due_date', 'amount', 'paid_amount', 'balance', 'status', 'paid_date', 'receipt_number')
    readonly_fields = ('paid_amount', 'balance', 'status', 'paid_date', 'receipt_number')


@admin.register(Fee)
class FeeAdmin(admin.ModelAdmin):
    list_display = (
        'student_ref',
        'student_name',
        'fee_type',
        'amount',
        'discount',
        'paid',
        'balance',
        'status',
        'receipt_number',
        'receipt_number_provisional',
    )
    list_filter = ('school', 'fee_type', 'status', 'receipt_number_provisional')
    search_fields = ('student_ref', 'student_name', 'receipt_number')
    readonly_fields = ('paid', 'balance', 'status', 'receipt_number', 'receipt_number_provisional')
    inlines = (InstallmentInline,)
    actions = ('recalculate_totals', 'assign_missing_receipt_numbers')

    @admin.action(description='Recalculate paid and balance from installments')
    def recalculate_totals(self, request, queryset):
        for fee in queryset:
            recalculate_fee_totals(fee)
        self.message_user(request, f'Recalculated {queryset.count()} fee(s).', messages.SUCCESS)

    @admin.action(description='Assign receipt numbers where missing')
    def assign_missing_receipt_numbers(self, request, queryset):
        assigned = 0
        for fee in queryset.filter(receipt_number=''):
            ensure_receipt_number(fee)
            assigned += 1
        self.message_user(request, f'Assigned {assigned} receipt number(s).', messages.SUCCESS)


@admin.register(Installment)
class InstallmentAdmin(admin.ModelAdmin):
    list_display = ('fee', 'due_date', 'amount', 'paid_amount', 'balance', 'status', 'receipt_number')
    list_filter = ('school', 'status')
    search_fields = ('fee__student_ref', 'fee__student_name', 'receipt_number')
    readonly_fields = ('paid_amount', 'balance', 'status', 'paid_date', 'receipt_number', 'receipt_number_provisional')

    def save_model(self, request, obj, form, change):
        super().save_model(request, obj, form, change)
        recalculate_fee_totals(obj.fee)
