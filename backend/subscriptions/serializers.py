from rest_framework import serializers

from members.serializers import MemberSummarySerializer, PlanSerializer
from pos.serializers import PaymentSerializer

from .models import CancelType, PauseInterval, Subscription


class PauseIntervalSerializer(serializers.ModelSerializer):
    class Meta:
        model = PauseInterval
        fields = ["id", "started_at", "ended_at", "duration_days", "reason"]


class SubscriptionSerializer(serializers.ModelSerializer):
    member = MemberSummarySerializer(read_only=True)
    plan = PlanSerializer(read_only=True)
    pause_history = PauseIntervalSerializer(source="pause_intervals", many=True, read_only=True)
    total_price = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    balance_due = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = Subscription
        fields = [
            "id",
            "member",
            "plan",
            "previous_subscription",
            "start_date",
            "end_date",
            "status",
            "price",
            "discount",
            "total_price",
            "paid_amount",
            "balance_due",
            "payment_status",
            "notes",
            "frozen_at",
            "frozen_until",
            "frozen_days",
            "cancelled_at",
            "cancelled_by",
            "cancel_reason",
            "cancel_source",
            "used_non_refundable_amount",
            "alert_acknowledged",
            "pause_history",
            "created_at",
        ]
        read_only_fields = fields


class CreateSubscriptionSerializer(serializers.Serializer):
    member_id = serializers.IntegerField()
    plan_id = serializers.IntegerField()
    start_date = serializers.DateTimeField(required=False, allow_null=True)
    price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    paid_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    payment_status = serializers.ChoiceField(choices=["paid", "partial", "unpaid"], required=False)
    method = serializers.CharField(max_length=20, required=False, default="cash")
    external_reference = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    idempotency_key = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)


class RenewSubscriptionSerializer(serializers.Serializer):
    plan_id = serializers.IntegerField()
    paid_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    payment_status = serializers.ChoiceField(choices=["paid", "partial", "unpaid"], required=False)
    method = serializers.CharField(max_length=20, required=False, default="cash")
    external_reference = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    idempotency_key = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)


class TogglePauseSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class FreezeSerializer(serializers.Serializer):
    days = serializers.IntegerField()


class CollectBalanceSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    method = serializers.CharField(max_length=20, required=False, default="cash")
    external_reference = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)


class CancelSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=CancelType.values, required=False, default=CancelType.PRORATED)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class AcknowledgeSerializer(serializers.Serializer):
    acknowledged = serializers.BooleanField(required=False, default=True)


class CancelPreviewSerializer(serializers.Serializer):
    paid_total = serializers.DecimalField(max_digits=12, decimal_places=2)
    refunded_total = serializers.DecimalField(max_digits=12, decimal_places=2)
    used_days = serializers.IntegerField()
    total_duration = serializers.IntegerField()
    used_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    refundable_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    net_retained = serializers.DecimalField(max_digits=12, decimal_places=2)


def settlement_data(result) -> dict:
    receipt = result.get("receipt")
    return {
        "subscription": SubscriptionSerializer(result["subscription"]).data,
        "payments": PaymentSerializer(result["payments"], many=True).data,
        "receipt_no": receipt.receipt_no if receipt else None,
        "replay": result["replay"],
    }
