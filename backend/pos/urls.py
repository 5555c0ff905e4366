from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import MachineStatusView, PaymentViewSet, ShiftViewSet

router = DefaultRouter()
router.register(r"shifts", ShiftViewSet, basename="shifts")
router.register(r"payments", PaymentViewSet, basename="payments")

urlpatterns = [
    *router.urls,
    path("status/", MachineStatusView.as_view(), name="pos-status"),
]
