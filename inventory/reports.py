from collections import OrderedDict, defaultdict
from decimal import Decimal

from django.db.models import Count, DecimalField, ExpressionWrapper, F, Q, Sum
from django.db.models.functions import Coalesce
from rest_framework.response import Response

from common.reports import BaseReportView, name_or_na
from common.utils import to_money
from inventory.models import Product, Purchase, StockLevel

VALUE_EXPR = ExpressionWrapper(
    F("quantity") * F("product__purchase_price"),
    output_field=DecimalField(max_digits=18, decimal_places=2),
)


def build_inventory_summary(context, warehouse_id=None):
    levels = StockLevel.objects.all()
    if warehouse_id:
        levels = levels.filter(warehouse_id=warehouse_id)

    totals = levels.aggregate(
        cost=Coalesce(Sum(VALUE_EXPR), Decimal("0.00")),
        quantity=Coalesce(Sum("quantity"), 0),
        products=Count("product_id", filter=Q(quantity__gt=0), distinct=True),
    )
    warehouses = list(
        levels.values("warehouse_id", "warehouse__name")
        .annotate(
            total_inventory_cost=Coalesce(Sum(VALUE_EXPR), Decimal("0.00")),
            total_unique_products=Count("product_id", filter=Q(quantity__gt=0), distinct=True),
            total_stock_quantity=Coalesce(Sum("quantity"), 0),
        )
        .order_by("-total_inventory_cost", "warehouse__name")
    )
    return OrderedDict(
        **context.as_dict(),
        total_inventory_cost=to_money(totals["cost"]),
        total_unique_products_in_stock=totals["products"],
        total_stock_quantity=totals["quantity"],
        warehouses=[
            {
                "warehouse_id": str(row["warehouse_id"]),
                "warehouse_name": row["warehouse__name"],
                "total_inventory_cost": to_money(row["total_inventory_cost"]),
                "total_unique_products": row["total_unique_products"],
                "total_stock_quantity": row["total_stock_quantity"],
            }
            for row in warehouses
        ],
    )


def build_stock_levels(category_id=None, warehouse_id=None):
    """One row per product: per-warehouse quantities, total, low-stock and negative flags."""
    products = Product.objects.filter(is_active=True).select_related("category").order_by("name")
    if category_id:
        products = products.filter(category_id=category_id)
    levels = StockLevel.objects.filter(product__in=products).select_related("warehouse")
    if warehouse_id:
        levels = levels.filter(warehouse_id=warehouse_id)

    by_product = defaultdict(list)
    for level in levels:
        by_product[level.product_id].append(level)

    rows = []
    for product in products:
        product_levels = by_product.get(product.id, [])
        if warehouse_id and not product_levels:
            continue
        total = sum(level.quantity for level in product_levels)
        rows.append(
            {
                "product_id": str(product.id),
                "product_ref": product.unique_reference,
                "product_name": product.name,
                "category": name_or_na(product.category),
                "unit": product.unit_abbreviation or "N/A",
                "warehouses": [
                    {"warehouse_id": str(level.warehouse_id), "warehouse_name": level.warehouse.name, "quantity": level.quantity}
                    for level in sorted(product_levels, key=lambda level: level.warehouse.name)
                ],
                "total_quantity": total,
                "low_stock_threshold": product.low_stock_threshold,
                "is_low_stock": total <= product.low_stock_threshold,
                "has_negative_balance": any(level.quantity < 0 for level in product_levels),
            }
        )
    return rows


def build_purchases_report(start, end, warehouse_id=None):
    qs = Purchase.objects.select_related("warehouse__branch", "registered_by").prefetch_related("items__product")
    if start and end:
        qs = qs.filter(purchase_date__gte=start, purchase_date__lte=end)
    if warehouse_id:
        qs = qs.filter(warehouse_id=warehouse_id)

    rows = []
    for purchase in qs.order_by("-purchase_date"):
        warehouse = purchase.warehouse
        rows.append(
            {
                "purchase_id": str(purchase.id),
                "purchase_date": purchase.purchase_date.isoformat(),
                "status": purchase.status,
                "warehouse": name_or_na(warehouse),
                "branch": name_or_na(warehouse.branch if warehouse else None),
                "registered_by": name_or_na(purchase.registered_by, "username"),
                "item_count": len(purchase.items.all()),
                "total_quantity": sum(item.quantity for item in purchase.items.all()),
                "total_cost": purchase.total_cost,
            }
        )
    return rows


class InventorySummaryReportView(BaseReportView):
    permission_action_map = {"get": "reports.view"}
    cache_key = "inventory-summary"

    def get(self, request):
        _, _, context = self._window(request)
        warehouse_id = request.query_params.get("warehouse")
        payload = self._cached(request, lambda: build_inventory_summary(context, warehouse_id))
        if request.query_params.get("format") == "csv":
            return self._csv_response("inventory_summary.csv", payload["warehouses"])
        return Response(payload)


class StockLevelsReportView(BaseReportView):
    permission_action_map = {"get": "inventory.view"}
    cache_key = "stock-levels"

    def get(self, request):
        _, _, context = self._window(request)
        category_id = request.query_params.get("category")
        warehouse_id = request.query_params.get("warehouse")
        rows = self._cached(request, lambda: build_stock_levels(category_id, warehouse_id))
        if request.query_params.get("format") == "csv":
            flat = [
                {key: value for key, value in row.items() if key != "warehouses"}
                for row in rows
            ]
            return self._csv_response("stock_levels.csv", flat)
        return Response({**context.as_dict(), "results": rows})


class PurchasesReportView(BaseReportView):
    permission_action_map = {"get": "purchase.view"}
    cache_key = "purchases"

    def get(self, request):
        start, end, context = self._window(request)
        warehouse_id = request.query_params.get("warehouse")
        rows = self._cached(request, lambda: build_purchases_report(start, end, warehouse_id))
        if request.query_params.get("format") == "csv":
            return self._csv_response("purchases.csv", rows)
        total_cost = sum((row["total_cost"] for row in rows if row["status"] != Purchase.Status.CANCELLED), Decimal("0.00"))
        return Response({**context.as_dict(), "total_cost": to_money(total_cost), "results": rows})
