from rest_framework import serializers

from .models import Receipt


class ReceiptSerializer(serializers.ModelSerializer):
    class Meta:
        model = Receipt
        fields = [
            "id",
            "receipt_no",
            "transaction_key",
            "transaction_type",
            "payment_method",
            "member",
            "customer_name",
            "customer_phone",
            "customer_code",
            "staff_name",
            "items",
            "totals",
            "status",
            "notes",
            "issued_at",
        ]
        read_only_fields = fields
