from rest_framework.routers import SimpleRouter

from .views import ReceiptViewSet

router = SimpleRouter()
router.register(r"", ReceiptViewSet, basename="receipts")

urlpatterns = router.urls
