import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q, Sum

from core.exceptions import Conflict
from core.models import TimeStampedModel
from core.money import ZERO, ceil_days, clamp_money, round_money
from pos.models import COLLECTED_STATUSES

logger = logging.getLogger(__name__)


class SubscriptionStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    PAUSED = "paused", "Paused"
    FROZEN = "frozen", "Frozen"
    EXPIRED = "expired", "Expired"
    CANCELLED = "cancelled", "Cancelled"


class PaymentState(models.TextChoices):
    UNPAID = "unpaid", "Unpaid"
    PARTIAL = "partial", "Partial"
    PAID = "paid", "Paid"


class CancelSource(models.TextChoices):
    MANUAL = "manual", "Manual"
    AUTO_REFUND = "auto_refund", "Automatic (fully refunded)"


class CancelType(models.TextChoices):
    PRORATED = "prorated", "Prorated"
    IMMEDIATE = "immediate", "Immediate"


ALLOWED_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.FROZEN,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    },
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.FROZEN: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.EXPIRED: set(),
    SubscriptionStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = (SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELLED)


def payment_state_for(paid: Decimal, total: Decimal) -> str:
    if paid >= total:
        return PaymentState.PAID
    if paid > ZERO:
        return PaymentState.PARTIAL
    return PaymentState.UNPAID


class Subscription(TimeStampedModel):
    member = models.ForeignKey("members.Member", on_delete=models.PROTECT, related_name="subscriptions")
    plan = models.ForeignKey("members.Plan", on_delete=models.PROTECT, related_name="subscriptions")
    previous_subscription = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="renewals",
    )

    start_date = models.DateTimeField()
    end_date = models.DateTimeField()
    status = models.CharField(max_length=20, choices=SubscriptionStatus.choices, default=SubscriptionStatus.ACTIVE)

    price = models.DecimalField(max_digits=12, decimal_places=2)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    payment_status = models.CharField(max_length=10, choices=PaymentState.choices, default=PaymentState.UNPAID)
    notes = models.TextField(blank=True)

    frozen_at = models.DateTimeField(null=True, blank=True)
    frozen_until = models.DateTimeField(null=True, blank=True)
    frozen_days = models.PositiveIntegerField(default=0)

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="cancelled_subscriptions",
    )
    cancel_reason = models.CharField(max_length=255, blank=True)
    cancel_source = models.CharField(max_length=20, choices=CancelSource.choices, blank=True)
    used_non_refundable_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))

    alert_acknowledged = models.BooleanField(default=False)
    alert_acknowledged_at = models.DateTimeField(null=True, blank=True)
    alert_acknowledged_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="acknowledged_subscriptions",
    )

    idempotency_key = models.CharField(max_length=100, null=True, blank=True, unique=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions_created",
    )

    class Meta:
        ordering = ["-created_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["member"],
                condition=Q(status="active"),
                name="uniq_active_subscription_member",
            ),
            models.CheckConstraint(
                condition=Q(discount__gte=0) & Q(discount__lte=models.F("price")),
                name="subscription_discount_within_price",
            ),
            models.CheckConstraint(condition=Q(paid_amount__gte=0), name="subscription_paid_non_negative"),
        ]
        indexes = [
            models.Index(fields=["member", "status"], name="subs_member_status_idx"),
            models.Index(fields=["status", "end_date"], name="subs_status_end_date_idx"),
        ]

    def __str__(self) -> str:
        return f"Subscription#{self.pk} member={self.member_id} {self.status}"

    @property
    def total_price(self) -> Decimal:
        return clamp_money(self.price - self.discount)

    @property
    def balance_due(self) -> Decimal:
        return clamp_money(self.total_price - self.paid_amount)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, target) -> bool:
        return target in ALLOWED_TRANSITIONS[SubscriptionStatus(self.status)]

    def _transition(self, target) -> None:
        if not self.can_transition(target):
            raise Conflict(
                f"Cannot move a {self.status} subscription to {target}.",
                reason="INVALID_TRANSITION",
            )
        self.status = target

    def refresh_payment_totals(self) -> None:
        paid = self.payments.filter(status__in=COLLECTED_STATUSES).aggregate(total=Sum("amount"))["total"]
        self.paid_amount = round_money(paid or ZERO)
        self.payment_status = payment_state_for(self.paid_amount, self.total_price)
        self.save(update_fields=["paid_amount", "payment_status", "updated_at"])

    def pause(self, ctx, reason: str = "") -> "PauseInterval":
        self._transition(SubscriptionStatus.PAUSED)
        self.save(update_fields=["status", "updated_at"])
        return PauseInterval.objects.create(subscription=self, started_at=ctx.now, reason=reason or "")

    def resume(self, ctx) -> "PauseInterval":
        """Close the open pause and push ``end_date`` out by the days paused."""
        self._transition(SubscriptionStatus.ACTIVE)
        interval = self.pause_intervals.filter(ended_at__isnull=True).order_by("-started_at").first()
        if interval is None:
            logger.warning("Subscription %s resumed without an open pause entry", self.pk)
            interval = PauseInterval.objects.create(
                subscription=self,
                started_at=ctx.now,
                ended_at=ctx.now,
                duration_days=0,
                reason="Orphan pause closed on resume",
            )
        else:
            interval.ended_at = ctx.now
            interval.duration_days = ceil_days(ctx.now - interval.started_at)
            interval.save(update_fields=["ended_at", "duration_days"])
        self.end_date = self.end_date + timedelta(days=interval.duration_days)
        self.save(update_fields=["status", "end_date", "updated_at"])
        return interval

    def freeze(self, ctx, days: int) -> None:
        self._transition(SubscriptionStatus.FROZEN)
        self.frozen_at = ctx.now
        self.frozen_until = ctx.now + timedelta(days=days)
        self.frozen_days = days
        self.end_date = self.end_date + timedelta(days=days)
        self.save(update_fields=["status", "frozen_at", "frozen_until", "frozen_days", "end_date", "updated_at"])

    def unfreeze(self, ctx) -> None:
        self._transition(SubscriptionStatus.ACTIVE)
        self.frozen_at = None
        self.frozen_until = None
        self.save(update_fields=["status", "frozen_at", "frozen_until", "updated_at"])

    def expire(self) -> None:
        self._transition(SubscriptionStatus.EXPIRED)
        self.save(update_fields=["status", "updated_at"])

    def cancel(self, ctx, reason: str = "", source=CancelSource.MANUAL, used_amount=ZERO) -> None:
        self._transition(SubscriptionStatus.CANCELLED)
        self.end_date = ctx.now
        self.cancelled_at = ctx.now
        self.cancelled_by = ctx.actor if ctx.actor_id else None
        self.cancel_reason = (reason or "")[:255]
        self.cancel_source = source
        self.used_non_refundable_amount = round_money(used_amount)
        # surfaces as a fresh alert
        self.alert_acknowledged = False
        self.alert_acknowledged_at = None
        self.alert_acknowledged_by = None
        self.save(
            update_fields=[
                "status",
                "end_date",
                "cancelled_at",
                "cancelled_by",
                "cancel_reason",
                "cancel_source",
                "used_non_refundable_amount",
                "alert_acknowledged",
                "alert_acknowledged_at",
                "alert_acknowledged_by",
                "updated_at",
            ]
        )


class PauseInterval(models.Model):
    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="pause_intervals")
    started_at = models.DateTimeField()
    ended_at = models.DateTimeField(null=True, blank=True)
    duration_days = models.PositiveIntegerField(default=0)
    reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["started_at", "id"]

    def __str__(self) -> str:
        return f"Pause {self.started_at} -> {self.ended_at or 'open'}"
