from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import (
    AuditLogViewSet,
    BranchViewSet,
    BusinessSettingsView,
    ReceiptPhraseViewSet,
    UserAdminViewSet,
)

router = DefaultRouter()
router.register(r"branches", BranchViewSet, basename="branch")
router.register(r"users", UserAdminViewSet, basename="user")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")
router.register(r"settings/receipt-phrases", ReceiptPhraseViewSet, basename="receipt-phrase")

urlpatterns = router.urls + [
    path("settings/business/", BusinessSettingsView.as_view(), name="business_settings"),
]
