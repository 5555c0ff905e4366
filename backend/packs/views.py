from django.utils import timezone
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from core.context import context_for
from core.throttles import CheckInRateThrottle
from users.permissions import IsCashierOrAdminRole

from . import services
from .models import MemberPackage
from .serializers import (
    AssignPackageSerializer,
    CheckInSerializer,
    MemberPackageSerializer,
    PackageSessionUsageSerializer,
    PackageStatusSerializer,
)


class PackageAssignmentViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = MemberPackageSerializer
    permission_classes = [IsCashierOrAdminRole]
    queryset = MemberPackage.objects.select_related("member", "plan")

    def get_throttles(self):
        if self.action == "checkins" and self.request.method == "POST":
            return [CheckInRateThrottle()]
        return super().get_throttles()

    def get_queryset(self):
        queryset = super().get_queryset()
        params = self.request.query_params
        if params.get("member_id"):
            queryset = queryset.filter(member_id=params["member_id"])
        if params.get("status"):
            queryset = queryset.filter(status=params["status"].upper())
        return queryset

    def list(self, request, *args, **kwargs):
        member_id = request.query_params.get("member_id")
        if member_id:
            services.sync_statuses(timezone.now(), member_id=member_id)
        else:
            services.sync_statuses(timezone.now())
        return super().list(request, *args, **kwargs)

    def retrieve(self, request, *args, **kwargs):
        if str(kwargs.get("pk", "")).isdigit():
            services.sync_statuses(timezone.now(), pk=kwargs["pk"])
        return super().retrieve(request, *args, **kwargs)

    def create(self, request):
        serializer = AssignPackageSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        assignment = services.assign_package(
            data["member_id"],
            data["plan_id"],
            context_for(request, with_shift=False),
            start_date=data.get("start_date"),
            session_name=data.get("session_name"),
            session_price=data.get("session_price"),
            payment_method=data.get("payment_method"),
            payment_status=data["payment_status"],
            amount_paid=data.get("amount_paid"),
        )
        return Response(MemberPackageSerializer(assignment).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["patch"], url_path="status")
    def set_status(self, request, pk=None):
        serializer = PackageStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        assignment = services.set_package_status(
            pk,
            serializer.validated_data["status"],
            context_for(request, with_shift=False),
        )
        return Response(MemberPackageSerializer(assignment).data)

    @action(detail=True, methods=["get", "post"])
    def checkins(self, request, pk=None):
        if request.method == "GET":
            usages = services.package_usages(pk)
            return Response(PackageSessionUsageSerializer(usages, many=True).data)

        serializer = CheckInSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        idempotency_key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")
        payload, replay = services.check_in_package(
            pk,
            context_for(request, with_shift=False),
            idempotency_key=idempotency_key,
            session_name=data.get("session_name"),
            session_price=data.get("session_price"),
        )
        code = status.HTTP_200_OK if replay else status.HTTP_201_CREATED
        return Response({"data": payload, "replay": replay}, status=code)
