from django.contrib import admin

from .models import CheckInIdempotencyRecord, MemberPackage, PackageSessionUsage


@admin.register(MemberPackage)
class MemberPackageAdmin(admin.ModelAdmin):
    list_display = ("member", "plan", "status", "remaining_sessions", "total_sessions", "start_date", "end_date")
    search_fields = ("member__first_name", "member__last_name", "member__phone", "session_name")
    list_filter = ("status",)


@admin.register(PackageSessionUsage)
class PackageSessionUsageAdmin(admin.ModelAdmin):
    list_display = ("member_package", "member", "session_name", "source", "used_at")
    list_filter = ("source",)


@admin.register(CheckInIdempotencyRecord)
class CheckInIdempotencyRecordAdmin(admin.ModelAdmin):
    list_display = ("idempotency_key", "member", "member_package", "created_at")
    search_fields = ("idempotency_key",)
