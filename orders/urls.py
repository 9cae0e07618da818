from django.urls import path
from rest_framework.routers import DefaultRouter

from orders.views import OrderViewSet, PublicOrderStatusView

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")

urlpatterns = router.urls + [
    path("public/orders/<str:order_number>/", PublicOrderStatusView.as_view(), name="public-order-status"),
]
