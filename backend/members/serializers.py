from rest_framework import serializers

from .models import Member, Plan


class MemberSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Member
        fields = ["id", "member_code", "first_name", "last_name", "phone"]


class PlanSerializer(serializers.ModelSerializer):
    class Meta:
        model = Plan
        fields = ["id", "name", "plan_type", "price", "duration_days", "total_sessions", "validity_days", "is_active"]
