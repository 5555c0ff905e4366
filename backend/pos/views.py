from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from core.context import context_for
from users.permissions import IsAdminUserRole, IsCashierOrAdminRole, RequiresOpenShift

from . import services
from .models import Payment, Shift, ShiftStatus
from .serializers import (
    CloseShiftSerializer,
    OpenShiftSerializer,
    PaymentSerializer,
    POSMachineSerializer,
    RecordPaymentSerializer,
    RecordRefundSerializer,
    RefundSerializer,
    ShiftSerializer,
    ShiftSummarySerializer,
)


class MachineStatusView(APIView):
    permission_classes = [IsCashierOrAdminRole]

    def get(self, request):
        machine = services.register_machine(
            request.query_params.get("machine_key"),
            request.query_params.get("name"),
        )
        state = services.machine_status(machine.pk)
        open_shift = state["open_shift"]
        own_shift = services.open_shift_for_user(request.user)
        return Response(
            {
                "machine": POSMachineSerializer(machine).data,
                "open_shift": ShiftSerializer(open_shift).data if open_shift else None,
                "my_shift": ShiftSerializer(own_shift).data if own_shift else None,
            }
        )


class ShiftViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = ShiftSerializer
    queryset = Shift.objects.select_related("machine", "opened_by", "closed_by")

    def get_permissions(self):
        if self.action == "list":
            return [IsAdminUserRole()]
        return [IsCashierOrAdminRole()]

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.action == "list":
            queryset = queryset.filter(status=ShiftStatus.CLOSED)
            machine_id = self.request.query_params.get("machine_id")
            if machine_id:
                queryset = queryset.filter(machine_id=machine_id)
        return queryset

    @action(detail=False, methods=["post"], url_path="open")
    def open(self, request):
        serializer = OpenShiftSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        shift = services.open_shift(
            serializer.validated_data["machine_id"],
            request.user.pk,
            serializer.validated_data["opening_cash"],
            context_for(request, with_shift=False),
        )
        return Response(ShiftSerializer(shift).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"])
    def close(self, request, pk=None):
        serializer = CloseShiftSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        shift = services.close_shift(
            pk,
            request.user.pk,
            serializer.validated_data["closing_cash"],
            context_for(request, with_shift=False),
        )
        return Response(ShiftSerializer(shift).data)

    @action(detail=True, methods=["get"])
    def summary(self, request, pk=None):
        return Response(ShiftSummarySerializer(services.shift_summary(pk)).data)


class PaymentViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = PaymentSerializer
    permission_classes = [IsCashierOrAdminRole, RequiresOpenShift]
    queryset = Payment.objects.select_related("member", "shift").prefetch_related("refunds")

    def get_queryset(self):
        queryset = services.payments_visible_to(self.request.user, super().get_queryset())
        params = self.request.query_params
        if params.get("member_id"):
            queryset = queryset.filter(member_id=params["member_id"])
        if params.get("subscription_id"):
            queryset = queryset.filter(subscription_id=params["subscription_id"])
        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        return queryset

    def create(self, request):
        serializer = RecordPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        payment, receipt = services.record_counter_payment(
            data["member_id"],
            data["amount"],
            data["method"],
            context_for(request),
            external_reference=data.get("external_reference"),
            notes=data.get("notes", ""),
        )
        return Response(
            {"payment": PaymentSerializer(payment).data, "receipt_no": receipt.receipt_no},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"])
    def refund(self, request, pk=None):
        serializer = RecordRefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = self.get_object()
        refund = services.record_refund(
            payment,
            serializer.validated_data["amount"],
            context_for(request),
            reason=serializer.validated_data["reason"],
            goodwill=serializer.validated_data["goodwill"],
        )
        payment.refresh_from_db()
        return Response(
            {"refund": RefundSerializer(refund).data, "payment": PaymentSerializer(payment).data},
            status=status.HTTP_201_CREATED,
        )
