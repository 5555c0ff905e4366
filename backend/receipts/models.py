from django.conf import settings
from django.db import models

from core.exceptions import Conflict
from core.models import TimeStampedModel


class TransactionType(models.TextChoices):
    PAYMENT = "payment", "Payment"
    SUBSCRIPTION = "subscription", "Subscription"


class ReceiptStatus(models.TextChoices):
    ISSUED = "issued", "Issued"


class ReceiptCounter(models.Model):
    day = models.DateField(unique=True)
    last_number = models.PositiveIntegerField(default=0)

    def __str__(self) -> str:
        return f"{self.day:%Y%m%d}: {self.last_number}"


class Receipt(TimeStampedModel):
    receipt_no = models.CharField(max_length=32, unique=True)
    transaction_key = models.CharField(max_length=64, unique=True)
    transaction_type = models.CharField(max_length=20, choices=TransactionType.choices)
    payment_method = models.CharField(max_length=20, blank=True)

    member = models.ForeignKey(
        "members.Member",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="receipts",
    )
    customer_name = models.CharField(max_length=255, blank=True)
    customer_phone = models.CharField(max_length=20, blank=True)
    customer_code = models.CharField(max_length=30, blank=True)

    staff = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="receipts_issued",
    )
    staff_name = models.CharField(max_length=255, blank=True)

    items = models.JSONField(default=list)
    totals = models.JSONField(default=dict)
    status = models.CharField(max_length=20, choices=ReceiptStatus.choices, default=ReceiptStatus.ISSUED)
    notes = models.TextField(blank=True)
    issued_at = models.DateTimeField()

    class Meta:
        ordering = ["-issued_at", "-id"]
        indexes = [
            models.Index(fields=["transaction_type", "issued_at"], name="receipt_type_issued_idx"),
            models.Index(fields=["customer_name", "customer_phone"], name="receipt_customer_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise Conflict("Issued receipts cannot be changed.", reason="RECEIPT_IMMUTABLE")
        super().save(*args, **kwargs)

    def __str__(self) -> str:
        return f"{self.receipt_no} ({self.transaction_key})"
