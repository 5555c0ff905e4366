from django.contrib import admin

from .models import CheckIn, Member, Plan


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = ("member_code", "first_name", "last_name", "phone", "is_active")
    search_fields = ("member_code", "first_name", "last_name", "phone")
    list_filter = ("is_active",)


@admin.register(Plan)
class PlanAdmin(admin.ModelAdmin):
    list_display = ("name", "plan_type", "price", "duration_days", "total_sessions", "validity_days", "is_active")
    list_filter = ("plan_type", "is_active")


@admin.register(CheckIn)
class CheckInAdmin(admin.ModelAdmin):
    list_display = ("member", "method", "created_at")
    list_filter = ("method",)
