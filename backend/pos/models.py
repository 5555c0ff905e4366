from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from core.models import TimeStampedModel


class MachineStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    DISABLED = "disabled", "Disabled"


class POSMachine(TimeStampedModel):
    machine_key = models.CharField(max_length=120, unique=True)
    name = models.CharField(max_length=120, default="Counter POS")
    status = models.CharField(max_length=20, choices=MachineStatus.choices, default=MachineStatus.ACTIVE)

    def __str__(self) -> str:
        return f"{self.name} ({self.machine_key})"


class ShiftStatus(models.TextChoices):
    OPEN = "open", "Open"
    CLOSED = "closed", "Closed"


class ShiftActivity(models.TextChoices):
    NORMAL = "NORMAL", "Normal"
    NO_ACTIVITY = "NO_ACTIVITY", "No Activity"


NO_ACTIVITY_NOTE = "System: No Transactions Shift"


class Shift(models.Model):
    machine = models.ForeignKey(POSMachine, on_delete=models.PROTECT, related_name="shifts")
    opened_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="opened_shifts")
    closed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="closed_shifts",
    )
    opened_at = models.DateTimeField()
    closed_at = models.DateTimeField(null=True, blank=True)

    opening_cash = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    closing_cash = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    expected_cash = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    cash_difference = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    status = models.CharField(max_length=10, choices=ShiftStatus.choices, default=ShiftStatus.OPEN)
    activity_type = models.CharField(max_length=20, choices=ShiftActivity.choices, default=ShiftActivity.NORMAL)
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ["-opened_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["machine"],
                condition=Q(status="open"),
                name="uniq_open_shift_per_machine",
            ),
            models.UniqueConstraint(
                fields=["opened_by"],
                condition=Q(status="open"),
                name="uniq_open_shift_per_user",
            ),
            models.CheckConstraint(condition=Q(opening_cash__gte=0), name="shift_opening_cash_non_negative"),
        ]

    def __str__(self) -> str:
        return f"Shift#{self.pk} machine={self.machine_id} by={self.opened_by_id} {self.status}"

    @property
    def is_open(self) -> bool:
        return self.status == ShiftStatus.OPEN


class PaymentMethod(models.TextChoices):
    CASH = "cash", "Cash"
    CARD = "card", "Card"
    TRANSFER = "transfer", "Bank Transfer"
    WALLET = "wallet", "Wallet"
    OTHER = "other", "Other"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    REFUNDED = "refunded", "Refunded"
    PARTIAL_REFUND = "partial_refund", "Partial Refund"


# statuses that represent money actually received
COLLECTED_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND)


class Payment(TimeStampedModel):
    member = models.ForeignKey("members.Member", on_delete=models.PROTECT, related_name="payments")
    subscription = models.ForeignKey(
        "subscriptions.Subscription",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
    )
    shift = models.ForeignKey(Shift, on_delete=models.PROTECT, null=True, blank=True, related_name="payments")

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    refunded_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    method = models.CharField(max_length=20, choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    status = models.CharField(max_length=20, choices=PaymentStatus.choices, default=PaymentStatus.COMPLETED)

    receipt_number = models.CharField(max_length=40, unique=True)
    external_reference = models.CharField(max_length=120, null=True, blank=True, db_index=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments_created",
    )
    collector_name = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["-paid_at", "-id"]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gte=0), name="payment_amount_non_negative"),
            models.CheckConstraint(
                condition=Q(refunded_total__gte=0) & Q(refunded_total__lte=F("amount")),
                name="payment_refunded_within_amount",
            ),
        ]
        indexes = [
            models.Index(fields=["shift", "method", "status"], name="pos_payment_shift_method_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.receipt_number} {self.amount} {self.method} [{self.status}]"

    @property
    def refundable_balance(self) -> Decimal:
        return self.amount - self.refunded_total


class Refund(TimeStampedModel):
    payment = models.ForeignKey(Payment, on_delete=models.PROTECT, related_name="refunds")
    shift = models.ForeignKey(Shift, on_delete=models.PROTECT, related_name="refunds")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    reason = models.CharField(max_length=255, blank=True)
    goodwill = models.BooleanField(default=False)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="refunds_created",
    )

    class Meta:
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="refund_amount_positive"),
        ]

    def __str__(self) -> str:
        return f"Refund {self.amount} on {self.payment_id}"
