from rest_framework.routers import DefaultRouter

from .views import PackageAssignmentViewSet

router = DefaultRouter()
router.register(r"assignments", PackageAssignmentViewSet, basename="pack-assignments")

urlpatterns = router.urls
