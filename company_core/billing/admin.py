from django.contrib import admin

from .models import InvoiceMirror, Quote
from .pricing import dollars_to_cents, format_currency


@admin.register(Quote)
class QuoteAdmin(admin.ModelAdmin):
    list_display = ('id', 'client', 'status', 'total', 'due_date', 'created_at')
    list_filter = ('status',)
    search_fields = ('client__name',)
    readonly_fields = ('subtotal', 'discount', 'total', 'status', 'created_at', 'updated_at')


@admin.register(InvoiceMirror)
class InvoiceMirrorAdmin(admin.ModelAdmin):
    list_display = ('invoice_number', 'client', 'status', 'total_display', 'finalized_at', 'email_sent_at')
    list_filter = ('status',)
    search_fields = ('stripe_invoice_id', 'client__name')
    # Stripe is the source of truth; the mirror is never edited by hand.
    readonly_fields = [field.name for field in InvoiceMirror._meta.fields]

    def total_display(self, obj):
        return format_currency(dollars_to_cents(obj.total))
    total_display.short_description = 'Total'

    def has_add_permission(self, request):
        return False
