from rest_framework import serializers

from .models import Payment, POSMachine, Refund, Shift


class POSMachineSerializer(serializers.ModelSerializer):
    class Meta:
        model = POSMachine
        fields = ["id", "machine_key", "name", "status"]


class ShiftSerializer(serializers.ModelSerializer):
    opened_by_name = serializers.CharField(source="opened_by.display_name", read_only=True)
    closed_by_name = serializers.CharField(source="closed_by.display_name", read_only=True, default=None)

    class Meta:
        model = Shift
        fields = [
            "id",
            "machine",
            "opened_by",
            "opened_by_name",
            "closed_by",
            "closed_by_name",
            "opened_at",
            "closed_at",
            "opening_cash",
            "closing_cash",
            "expected_cash",
            "cash_difference",
            "status",
            "activity_type",
            "notes",
        ]
        read_only_fields = fields


class OpenShiftSerializer(serializers.Serializer):
    machine_id = serializers.IntegerField()
    opening_cash = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class CloseShiftSerializer(serializers.Serializer):
    closing_cash = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class ShiftSummarySerializer(serializers.Serializer):
    shift = ShiftSerializer()
    total_collected = serializers.DecimalField(max_digits=12, decimal_places=2)
    cash_collected = serializers.DecimalField(max_digits=12, decimal_places=2)
    total_refunded = serializers.DecimalField(max_digits=12, decimal_places=2)
    net_cash = serializers.DecimalField(max_digits=12, decimal_places=2)
    expected_cash = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_count = serializers.IntegerField()
    refund_count = serializers.IntegerField()
    by_method = serializers.DictField(child=serializers.DecimalField(max_digits=12, decimal_places=2))


class RefundSerializer(serializers.ModelSerializer):
    class Meta:
        model = Refund
        fields = ["id", "payment", "shift", "amount", "reason", "goodwill", "created_by", "created_at"]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    refunds = RefundSerializer(many=True, read_only=True)

    class Meta:
        model = Payment
        fields = [
            "id",
            "receipt_number",
            "member",
            "subscription",
            "shift",
            "amount",
            "refunded_total",
            "method",
            "status",
            "external_reference",
            "paid_at",
            "notes",
            "collector_name",
            "refunds",
            "created_at",
        ]
        read_only_fields = fields


class RecordPaymentSerializer(serializers.Serializer):
    member_id = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    method = serializers.CharField(max_length=20)
    external_reference = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class RecordRefundSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    goodwill = serializers.BooleanField(required=False, default=False)
