from django.utils import timezone
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from core.context import context_for
from pos.serializers import PaymentSerializer
from users.permissions import IsAdminUserRole, IsCashierOrAdminRole, RequiresOpenShift

from . import services
from .models import Subscription
from .serializers import (
    AcknowledgeSerializer,
    CancelPreviewSerializer,
    CancelSerializer,
    CollectBalanceSerializer,
    CreateSubscriptionSerializer,
    FreezeSerializer,
    RenewSubscriptionSerializer,
    SubscriptionSerializer,
    TogglePauseSerializer,
    settlement_data,
)

MONEY_ACTIONS = {"create", "renew", "collect"}
ADMIN_ACTIONS = {"cancel", "preview_cancel"}


class SubscriptionViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = SubscriptionSerializer
    queryset = Subscription.objects.select_related("member", "plan").prefetch_related("pause_intervals")

    def get_permissions(self):
        if self.action in ADMIN_ACTIONS:
            return [IsAdminUserRole()]
        if self.action in MONEY_ACTIONS:
            return [IsCashierOrAdminRole(), RequiresOpenShift()]
        return [IsCashierOrAdminRole()]

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.action == "list":
            params = self.request.query_params
            if params.get("status"):
                queryset = queryset.filter(status=params["status"])
            if params.get("member_id"):
                queryset = queryset.filter(member_id=params["member_id"])
        return queryset

    def list(self, request, *args, **kwargs):
        services.expire_due_subscriptions(timezone.now())
        return super().list(request, *args, **kwargs)

    def create(self, request):
        serializer = CreateSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        idempotency_key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")
        result = services.create_subscription(
            data["member_id"],
            data["plan_id"],
            context_for(request),
            start_date=data.get("start_date"),
            price=data.get("price"),
            discount=data.get("discount"),
            paid_amount=data.get("paid_amount"),
            payment_status=data.get("payment_status"),
            method=data["method"],
            external_reference=data.get("external_reference"),
            notes=data["notes"],
            idempotency_key=idempotency_key or None,
        )
        code = status.HTTP_200_OK if result["replay"] else status.HTTP_201_CREATED
        return Response(settlement_data(result), status=code)

    @action(detail=True, methods=["post"])
    def renew(self, request, pk=None):
        serializer = RenewSubscriptionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        idempotency_key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")
        result = services.renew_subscription(
            pk,
            data["plan_id"],
            context_for(request),
            paid_amount=data.get("paid_amount"),
            payment_status=data.get("payment_status"),
            method=data["method"],
            external_reference=data.get("external_reference"),
            notes=data["notes"],
            idempotency_key=idempotency_key or None,
        )
        code = status.HTTP_200_OK if result["replay"] else status.HTTP_201_CREATED
        return Response(settlement_data(result), status=code)

    @action(detail=True, methods=["post"], url_path="toggle-pause")
    def toggle_pause(self, request, pk=None):
        serializer = TogglePauseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = services.toggle_pause(pk, context_for(request), serializer.validated_data["reason"])
        return Response(SubscriptionSerializer(subscription).data)

    @action(detail=True, methods=["post"])
    def freeze(self, request, pk=None):
        serializer = FreezeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription = services.freeze_subscription(pk, serializer.validated_data["days"], context_for(request))
        return Response(SubscriptionSerializer(subscription).data)

    @action(detail=True, methods=["post"])
    def unfreeze(self, request, pk=None):
        subscription = services.unfreeze_subscription(pk, context_for(request))
        return Response(SubscriptionSerializer(subscription).data)

    @action(detail=True, methods=["post"])
    def collect(self, request, pk=None):
        serializer = CollectBalanceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        subscription, payment = services.collect_subscription_balance(
            pk,
            serializer.validated_data["amount"],
            serializer.validated_data["method"],
            context_for(request),
            external_reference=serializer.validated_data.get("external_reference"),
        )
        return Response(
            {
                "subscription": SubscriptionSerializer(subscription).data,
                "payment": PaymentSerializer(payment).data,
            }
        )

    @action(detail=True, methods=["get"], url_path="preview-cancel")
    def preview_cancel(self, request, pk=None):
        preview = services.preview_cancel(pk, context_for(request, with_shift=False))
        return Response(CancelPreviewSerializer(preview).data)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = CancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = services.cancel_subscription(
            pk,
            context_for(request),
            cancel_type=serializer.validated_data["type"],
            reason=serializer.validated_data["reason"],
        )
        return Response(
            {
                "subscription": SubscriptionSerializer(result["subscription"]).data,
                "refund_amount": str(result["refund_amount"]),
                "preview": CancelPreviewSerializer(result["preview"]).data,
            }
        )

    @action(detail=True, methods=["post"])
    def acknowledge(self, request, pk=None):
        serializer = AcknowledgeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        services.acknowledge_alert(pk, context_for(request, with_shift=False), serializer.validated_data["acknowledged"])
        return Response({"detail": "Alert status updated."})

    @action(detail=False, methods=["post"], url_path="acknowledge-all")
    def acknowledge_all(self, request):
        count = services.acknowledge_all_alerts(context_for(request, with_shift=False))
        return Response({"detail": "All current alerts marked as reviewed.", "count": count})

    @action(detail=False, methods=["get"])
    def expired(self, request):
        now = timezone.now()
        unacknowledged = request.query_params.get("range") == "unacknowledged"
        queryset = services.expired_alerts(now, unacknowledged_only=unacknowledged)
        return Response(SubscriptionSerializer(queryset, many=True).data)

    @action(detail=False, methods=["get"], url_path="expiring-soon")
    def expiring_soon(self, request):
        try:
            days = int(request.query_params.get("days", 7))
        except ValueError:
            return Response({"detail": "Invalid days"}, status=status.HTTP_400_BAD_REQUEST)
        queryset = services.expiring_soon(timezone.now(), days=days)
        return Response(SubscriptionSerializer(queryset, many=True).data)
