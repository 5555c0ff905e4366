from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/pos/", include("pos.urls")),
    path("api/subscriptions/", include("subscriptions.urls")),
    path("api/packs/", include("packs.urls")),
    path("api/receipts/", include("receipts.urls")),
]
