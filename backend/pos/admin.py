from django.contrib import admin

from .models import Payment, POSMachine, Refund, Shift


@admin.register(POSMachine)
class POSMachineAdmin(admin.ModelAdmin):
    list_display = ("name", "machine_key", "status", "created_at")
    search_fields = ("name", "machine_key")
    list_filter = ("status",)


@admin.register(Shift)
class ShiftAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "machine",
        "opened_by",
        "status",
        "activity_type",
        "opening_cash",
        "expected_cash",
        "cash_difference",
        "opened_at",
        "closed_at",
    )
    list_filter = ("status", "activity_type", "machine")
    readonly_fields = ("expected_cash", "cash_difference")


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("receipt_number", "member", "amount", "refunded_total", "method", "status", "paid_at")
    search_fields = ("receipt_number", "external_reference", "member__first_name", "member__phone")
    list_filter = ("status", "method")
    readonly_fields = ("refunded_total",)


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ("payment", "amount", "shift", "goodwill", "created_by", "created_at")
    list_filter = ("goodwill",)
