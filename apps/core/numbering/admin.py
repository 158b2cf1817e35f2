from django.contrib import admin

from .models import ReceiptCounter


@admin.register(ReceiptCounter)
class ReceiptCounterAdmin(admin.ModelAdmin):
    list_display = ('school', 'domain', 'current_value', 'format', 'prefix', 'year', 'updated_at')
    list_filter = ('school', 'domain', 'format')
    search_fields = ('school__name', 'school__code')

    # Counters only move through the numbering services.
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
