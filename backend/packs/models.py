from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from core.models import TimeStampedModel
from subscriptions.models import PaymentState


class PackageStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    PAUSED = "PAUSED", "Paused"
    COMPLETED = "COMPLETED", "Completed"
    EXPIRED = "EXPIRED", "Expired"


class UsageSource(models.TextChoices):
    CHECKIN = "CHECKIN", "Check-in"
    MANUAL = "MANUAL", "Manual"


class MemberPackage(TimeStampedModel):
    member = models.ForeignKey("members.Member", on_delete=models.PROTECT, related_name="packages")
    plan = models.ForeignKey("members.Plan", on_delete=models.PROTECT, related_name="member_packages")
    start_date = models.DateTimeField()
    end_date = models.DateTimeField(null=True, blank=True)

    total_sessions = models.PositiveIntegerField()
    remaining_sessions = models.IntegerField()
    session_name = models.CharField(max_length=120, blank=True)
    session_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    status = models.CharField(max_length=20, choices=PackageStatus.choices, default=PackageStatus.ACTIVE)

    payment_method = models.CharField(max_length=20, null=True, blank=True)
    payment_status = models.CharField(max_length=10, choices=PaymentState.choices, default=PaymentState.UNPAID)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="packages_created",
    )

    class Meta:
        ordering = ["-created_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["member"],
                condition=Q(status="ACTIVE"),
                name="uniq_active_package_member",
            ),
            models.CheckConstraint(condition=Q(total_sessions__gt=0), name="package_total_sessions_positive"),
            models.CheckConstraint(
                condition=Q(remaining_sessions__gte=0) & Q(remaining_sessions__lte=F("total_sessions")),
                name="package_remaining_within_total",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "end_date"], name="pack_status_end_date_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.session_name or self.plan_id} {self.remaining_sessions}/{self.total_sessions} [{self.status}]"

    @property
    def used_sessions(self) -> int:
        return self.total_sessions - self.remaining_sessions


class PackageSessionUsage(models.Model):
    member = models.ForeignKey("members.Member", on_delete=models.PROTECT, related_name="package_usages")
    member_package = models.ForeignKey(MemberPackage, on_delete=models.PROTECT, related_name="usages")
    checkin = models.ForeignKey(
        "members.CheckIn",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="package_usages",
    )
    session_name = models.CharField(max_length=120, blank=True)
    session_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    source = models.CharField(max_length=20, choices=UsageSource.choices, default=UsageSource.CHECKIN)
    used_at = models.DateTimeField()
    notes = models.TextField(blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="package_usages_created",
    )

    class Meta:
        ordering = ["used_at", "id"]

    def __str__(self) -> str:
        return f"Usage#{self.pk} package={self.member_package_id} at {self.used_at}"


class CheckInIdempotencyRecord(models.Model):
    idempotency_key = models.CharField(max_length=128, unique=True)
    member = models.ForeignKey("members.Member", on_delete=models.PROTECT, related_name="+")
    member_package = models.ForeignKey(MemberPackage, on_delete=models.PROTECT, related_name="idempotency_records")
    checkin = models.ForeignKey("members.CheckIn", on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    response = models.JSONField()
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return self.idempotency_key
