from django.urls import path
from rest_framework.routers import DefaultRouter

from sales.reports import AccountingSummaryReportView, DashboardReportView, SalesReportView
from sales.views import ExpenseCategoryViewSet, ExpenseViewSet, ExternalSaleViewSet, SaleViewSet

router = DefaultRouter()
router.register(r"sales", SaleViewSet, basename="sale")
router.register(r"external-sales", ExternalSaleViewSet, basename="external-sale")
router.register(r"expense-categories", ExpenseCategoryViewSet, basename="expense-category")
router.register(r"expenses", ExpenseViewSet, basename="expense")

urlpatterns = router.urls + [
    path("reports/accounting-summary/", AccountingSummaryReportView.as_view(), name="report-accounting-summary"),
    path("reports/sales/", SalesReportView.as_view(), name="report-sales"),
    path("reports/dashboard/", DashboardReportView.as_view(), name="report-dashboard"),
]
