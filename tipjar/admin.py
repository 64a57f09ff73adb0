"""
Tipjar Django Admin Configuration

Key features:
- Page totals are read-only; they only change when a tip completes
- Lightning addresses are read-only once set, since pending charges point at them
- Tips are read-only: they are an append-only record of payment attempts
"""

from django.contrib import admin
from .models import Tip, TippingPage


class TippingPageAdmin(admin.ModelAdmin):
    list_display = ('username', 'display_name', 'kind', 'total_received', 'tip_count', 'suspended')
    list_filter = ('kind', 'suspended', 'deactivated')
    search_fields = ('username', 'display_name', 'contact_email')
    readonly_fields = ('total_received', 'tip_count', 'created_at')

    def get_readonly_fields(self, request, obj=None):
        """Lock the Lightning address on existing pages that have one."""
        if obj and obj.lightning_address:
            return self.readonly_fields + ('lightning_address',)
        return self.readonly_fields


class TipAdmin(admin.ModelAdmin):
    list_display = ('supporter_name', 'page', 'amount', 'status', 'payment_id', 'created_at', 'completed_at')
    list_filter = ('status',)
    search_fields = ('payment_id', 'supporter_name', 'page__username')

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


admin.site.register(TippingPage, TippingPageAdmin)
admin.site.register(Tip, TipAdmin)
