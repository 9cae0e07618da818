from rest_framework.routers import DefaultRouter

from catalog.views import BrandModelViewSet, EquipmentTypeViewSet

router = DefaultRouter()
router.register(r"equipment-types", EquipmentTypeViewSet, basename="equipment-type")
router.register(r"brand-models", BrandModelViewSet, basename="brand-model")

urlpatterns = router.urls
