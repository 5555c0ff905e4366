from rest_framework import serializers

from members.serializers import MemberSummarySerializer

from .models import MemberPackage, PackageSessionUsage, PackageStatus


class MemberPackageSerializer(serializers.ModelSerializer):
    member = MemberSummarySerializer(read_only=True)
    plan_name = serializers.CharField(source="plan.name", read_only=True)
    used_sessions = serializers.IntegerField(read_only=True)

    class Meta:
        model = MemberPackage
        fields = [
            "id",
            "member",
            "plan",
            "plan_name",
            "start_date",
            "end_date",
            "total_sessions",
            "remaining_sessions",
            "used_sessions",
            "session_name",
            "session_price",
            "status",
            "payment_method",
            "payment_status",
            "amount_paid",
            "created_at",
        ]
        read_only_fields = fields


class AssignPackageSerializer(serializers.Serializer):
    member_id = serializers.IntegerField()
    plan_id = serializers.IntegerField()
    start_date = serializers.DateTimeField(required=False, allow_null=True)
    session_name = serializers.CharField(max_length=120, required=False, allow_blank=True)
    session_price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    payment_method = serializers.CharField(max_length=20, required=False, allow_blank=True, allow_null=True)
    payment_status = serializers.CharField(max_length=10, required=False, default="unpaid")
    amount_paid = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)


class PackageStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=[PackageStatus.ACTIVE, PackageStatus.PAUSED])


class CheckInSerializer(serializers.Serializer):
    idempotency_key = serializers.CharField(max_length=128, required=False, allow_blank=True, allow_null=True)
    session_name = serializers.CharField(max_length=120, required=False, allow_blank=True)
    session_price = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)


class PackageSessionUsageSerializer(serializers.ModelSerializer):
    created_by_name = serializers.CharField(source="created_by.display_name", read_only=True, default=None)

    class Meta:
        model = PackageSessionUsage
        fields = [
            "id",
            "member",
            "member_package",
            "checkin",
            "session_name",
            "session_price",
            "source",
            "used_at",
            "created_by_name",
        ]
        read_only_fields = fields
