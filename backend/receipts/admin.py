from django.contrib import admin

from .models import Receipt, ReceiptCounter


@admin.register(Receipt)
class ReceiptAdmin(admin.ModelAdmin):
    list_display = ("receipt_no", "transaction_key", "transaction_type", "customer_name", "payment_method", "issued_at")
    search_fields = ("receipt_no", "transaction_key", "customer_name", "customer_phone")
    list_filter = ("transaction_type", "payment_method")

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(ReceiptCounter)
class ReceiptCounterAdmin(admin.ModelAdmin):
    list_display = ("day", "last_number")
