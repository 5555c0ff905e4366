from django.contrib import admin

from .models import PauseInterval, Subscription


class PauseIntervalInline(admin.TabularInline):
    model = PauseInterval
    extra = 0
    readonly_fields = ("started_at", "ended_at", "duration_days", "reason")


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "member",
        "plan",
        "status",
        "payment_status",
        "price",
        "paid_amount",
        "start_date",
        "end_date",
    )
    search_fields = ("member__first_name", "member__last_name", "member__phone", "member__member_code")
    list_filter = ("status", "payment_status", "cancel_source")
    inlines = [PauseIntervalInline]
