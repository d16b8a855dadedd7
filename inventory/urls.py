from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.reports import InventorySummaryReportView, PurchasesReportView, StockLevelsReportView
from inventory.views import (
    CategoryViewSet,
    ProductViewSet,
    PurchaseViewSet,
    StockAdjustmentView,
    StockAuditViewSet,
    StockLevelViewSet,
    StockMovementViewSet,
    UnitViewSet,
    WarehouseViewSet,
)

router = DefaultRouter()
router.register(r"units", UnitViewSet, basename="unit")
router.register(r"categories", CategoryViewSet, basename="category")
router.register(r"products", ProductViewSet, basename="product")
router.register(r"warehouses", WarehouseViewSet, basename="warehouse")
router.register(r"stock/levels", StockLevelViewSet, basename="stock-level")
router.register(r"stock/movements", StockMovementViewSet, basename="stock-movement")
router.register(r"purchases", PurchaseViewSet, basename="purchase")
router.register(r"stock-audits", StockAuditViewSet, basename="stock-audit")

urlpatterns = router.urls + [
    path("stock/adjust/", StockAdjustmentView.as_view(), name="stock-adjust"),
    path("reports/inventory-summary/", InventorySummaryReportView.as_view(), name="report-inventory-summary"),
    path("reports/stock-levels/", StockLevelsReportView.as_view(), name="report-stock-levels"),
    path("reports/purchases/", PurchasesReportView.as_view(), name="report-purchases"),
]
