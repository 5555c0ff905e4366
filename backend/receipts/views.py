import io

import qrcode
from django.db.models import Q
from django.http import HttpResponse
from django.utils.dateparse import parse_date
from rest_framework import mixins, viewsets
from rest_framework.decorators import action

from core.exceptions import NotFound
from core.throttles import ReceiptQrRateThrottle
from users.permissions import IsAdminUserRole, IsCashierOrAdminRole

from .models import Receipt
from .serializers import ReceiptSerializer


class ReceiptViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = ReceiptSerializer
    queryset = Receipt.objects.all()
    lookup_field = "receipt_no"

    def get_permissions(self):
        if self.action == "list":
            return [IsAdminUserRole()]
        return [IsCashierOrAdminRole()]

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.action != "list":
            return queryset
        params = self.request.query_params
        if params.get("type"):
            queryset = queryset.filter(transaction_type=params["type"])
        if params.get("payment_method"):
            queryset = queryset.filter(payment_method=params["payment_method"])
        if params.get("member_id"):
            queryset = queryset.filter(member_id=params["member_id"])
        start = parse_date(params.get("from") or "")
        end = parse_date(params.get("to") or "")
        if start:
            queryset = queryset.filter(issued_at__date__gte=start)
        if end:
            queryset = queryset.filter(issued_at__date__lte=end)
        search = (params.get("search") or "").strip()
        if search:
            queryset = queryset.filter(
                Q(receipt_no__icontains=search)
                | Q(transaction_key__icontains=search)
                | Q(customer_name__icontains=search)
                | Q(customer_phone__icontains=search)
                | Q(customer_code__icontains=search)
            )
        return queryset

    @action(detail=True, methods=["get"], throttle_classes=[ReceiptQrRateThrottle])
    def qr(self, request, receipt_no=None):
        receipt = Receipt.objects.filter(receipt_no=receipt_no).first()
        if receipt is None:
            raise NotFound("Receipt not found.")

        img = qrcode.make(receipt.receipt_no)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return HttpResponse(buffer.getvalue(), content_type="image/png")
