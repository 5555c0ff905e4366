from decimal import Decimal

from django.db import models
from django.db.models import Q

from core.models import TimeStampedModel


class Member(TimeStampedModel):
    first_name = models.CharField(max_length=120)
    last_name = models.CharField(max_length=120, blank=True)
    phone = models.CharField(max_length=20, unique=True)
    member_code = models.CharField(max_length=30, unique=True)
    is_active = models.BooleanField(default=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __str__(self) -> str:
        return f"{self.full_name} ({self.member_code})"


class PlanType(models.TextChoices):
    SUBSCRIPTION = "SUBSCRIPTION", "Subscription"
    PACKAGE = "PACKAGE", "Session Package"


class Plan(TimeStampedModel):
    name = models.CharField(max_length=120)
    plan_type = models.CharField(max_length=20, choices=PlanType.choices, default=PlanType.SUBSCRIPTION)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    # subscriptions
    duration_days = models.PositiveIntegerField(null=True, blank=True)
    # session packs
    total_sessions = models.PositiveIntegerField(null=True, blank=True)
    validity_days = models.PositiveIntegerField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=Q(plan_type="PACKAGE") | Q(duration_days__gt=0),
                name="subscription_plan_has_duration",
            ),
        ]

    @property
    def is_package(self) -> bool:
        return self.plan_type == PlanType.PACKAGE

    def __str__(self) -> str:
        return f"{self.name} [{self.plan_type}]"


class CheckIn(TimeStampedModel):
    member = models.ForeignKey(Member, on_delete=models.CASCADE, related_name="checkins")
    method = models.CharField(max_length=20, default="manual")
    notes = models.JSONField(default=dict, blank=True)

    def __str__(self) -> str:
        return f"CheckIn #{self.pk} - {self.member}"
