from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import BranchViewSet, CompanyView, OnboardingView, StaffViewSet, healthz, readyz

router = DefaultRouter()
router.register(r"branches", BranchViewSet, basename="branch")
router.register(r"staff", StaffViewSet, basename="staff")

urlpatterns = router.urls + [
    path("onboarding/", OnboardingView.as_view(), name="onboarding"),
    path("company/", CompanyView.as_view(), name="company"),
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]
