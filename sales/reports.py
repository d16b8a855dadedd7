from collections import OrderedDict, defaultdict
from decimal import Decimal

from django.db.models import DecimalField, ExpressionWrapper, F, Q, Sum
from django.db.models.functions import Coalesce
from rest_framework.response import Response

from common.reports import NOT_AVAILABLE, BaseReportView, name_or_na
from common.utils import to_money
from core.models import Branch
from inventory.models import Purchase
from inventory.reports import build_inventory_summary
from sales.models import Expense, ExternalSale, Sale, SaleItem

ZERO = Decimal("0.00")

SALE_COST_EXPR = ExpressionWrapper(
    F("quantity") * F("product__purchase_price"),
    output_field=DecimalField(max_digits=18, decimal_places=2),
)


def _in_window(queryset, field, start, end):
    if start and end:
        return queryset.filter(**{f"{field}__gte": start, f"{field}__lte": end})
    return queryset


def _sum_by_branch(queryset, branch_field, expression):
    rows = queryset.values(branch_field).annotate(total=Coalesce(Sum(expression), ZERO))
    return {
        (str(row[branch_field]) if row[branch_field] else None): to_money(row["total"])
        for row in rows
    }


def build_accounting_summary(context, branch_ids, start, end, include_unassigned=False):
    """Income, cost of goods, purchases, expenses and net profit, per branch and overall.

    Cost of goods for catalog sales uses each product's current purchase price.
    Purchases are attributed to the branch of their warehouse; purchases into a
    warehouse without a branch land in an ``N/A`` row when ``include_unassigned``.
    """
    sales = _in_window(
        Sale.objects.filter(branch_id__in=branch_ids, status=Sale.Status.COMPLETED), "sale_date", start, end
    )
    external = _in_window(
        ExternalSale.objects.filter(branch_id__in=branch_ids, status=ExternalSale.Status.COMPLETED),
        "sale_date",
        start,
        end,
    )
    sale_items = SaleItem.objects.filter(sale__in=sales)
    expenses = _in_window(Expense.objects.filter(branch_id__in=branch_ids), "date", start, end)

    purchases = Purchase.objects.exclude(status=Purchase.Status.CANCELLED)
    scope = Q(warehouse__branch_id__in=branch_ids)
    if include_unassigned:
        scope |= Q(warehouse__branch__isnull=True)
    purchases = purchases.filter(scope)
    purchases = _in_window(purchases, "purchase_date", start, end)

    columns = OrderedDict(
        sales_income=_sum_by_branch(sales, "branch_id", "total_amount"),
        external_sales_income=_sum_by_branch(external, "branch_id", "total_amount"),
        sales_cogs=_sum_by_branch(sale_items, "sale__branch_id", SALE_COST_EXPR),
        external_sales_cost=_sum_by_branch(external, "branch_id", "total_cost"),
        purchases_cost=_sum_by_branch(purchases, "warehouse__branch_id", "total_cost"),
        expenses=_sum_by_branch(expenses, "branch_id", "amount"),
    )

    names = {str(branch.id): branch.name for branch in Branch.objects.filter(id__in=branch_ids)}
    keys = list(names)
    if include_unassigned and None in columns["purchases_cost"]:
        keys.append(None)

    branches = []
    for key in keys:
        values = {column: by_branch.get(key, ZERO) for column, by_branch in columns.items()}
        branches.append(_accounting_row(key, names.get(key, NOT_AVAILABLE), values))
    branches.sort(key=lambda row: (-row["net_profit"], row["branch_name"]))

    totals = {column: to_money(sum(by_branch.values(), ZERO)) for column, by_branch in columns.items()}
    summary = _accounting_row(None, None, totals)
    summary.pop("branch_id")
    summary.pop("branch_name")
    return OrderedDict(**context.as_dict(), **summary, branches=branches)


def _accounting_row(branch_id, branch_name, values):
    income = values["sales_income"] + values["external_sales_income"]
    cogs = values["sales_cogs"] + values["external_sales_cost"]
    return OrderedDict(
        branch_id=branch_id,
        branch_name=branch_name,
        **values,
        total_income=to_money(income),
        total_cogs=to_money(cogs),
        gross_profit=to_money(income - cogs),
        net_profit=to_money(income - cogs - values["expenses"]),
    )


def build_sales_report(branch_ids, start, end, user_id=None):
    sales = _in_window(
        Sale.objects.filter(branch_id__in=branch_ids).select_related("branch", "cashier"), "sale_date", start, end
    )
    external = _in_window(
        ExternalSale.objects.filter(branch_id__in=branch_ids).select_related("branch", "cashier"),
        "sale_date",
        start,
        end,
    )
    if user_id:
        sales = sales.filter(cashier_id=user_id)
        external = external.filter(cashier_id=user_id)

    rows = []
    for kind, queryset in (("sale", sales), ("external_sale", external)):
        for sale in queryset:
            rows.append(
                {
                    "kind": kind,
                    "id": str(sale.id),
                    "transaction_reference": sale.transaction_reference,
                    "sale_date": sale.sale_date.isoformat(),
                    "branch": name_or_na(sale.branch),
                    "cashier": name_or_na(sale.cashier, "username"),
                    "status": sale.status,
                    "payment_method": sale.payment_method,
                    "total_amount": to_money(sale.total_amount),
                }
            )
    rows.sort(key=lambda row: row["sale_date"], reverse=True)
    return rows


def _group_completed(rows, field):
    groups = defaultdict(lambda: {"sales_count": 0, "total_amount": ZERO})
    for row in rows:
        if row["status"] != Sale.Status.COMPLETED:
            continue
        groups[row[field]]["sales_count"] += 1
        groups[row[field]]["total_amount"] += row["total_amount"]
    return [
        {field: name, "sales_count": group["sales_count"], "total_amount": to_money(group["total_amount"])}
        for name, group in sorted(groups.items(), key=lambda item: (-item[1]["total_amount"], item[0]))
    ]


class AccountingSummaryReportView(BaseReportView):
    permission_action_map = {"get": "accounting.view"}
    cache_key = "accounting-summary"

    def get(self, request):
        branch_ids = self._branch_ids(request)
        start, end, context = self._window(request, branch_ids)
        include_unassigned = not request.query_params.get("branch_id")
        payload = self._cached(
            request,
            lambda: build_accounting_summary(context, branch_ids, start, end, include_unassigned),
        )
        if request.query_params.get("format") == "csv":
            return self._csv_response("accounting_summary.csv", payload["branches"])
        return Response(payload)


class SalesReportView(BaseReportView):
    permission_action_map = {"get": "reports.view"}
    cache_key = "sales"

    def get(self, request):
        branch_ids = self._branch_ids(request)
        start, end, context = self._window(request, branch_ids)
        user_id = request.query_params.get("user")
        rows = self._cached(request, lambda: build_sales_report(branch_ids, start, end, user_id))
        if request.query_params.get("format") == "csv":
            return self._csv_response("sales.csv", rows)

        completed = [row for row in rows if row["status"] == Sale.Status.COMPLETED]
        return Response(
            {
                **context.as_dict(),
                "sales_count": len(completed),
                "total_amount": to_money(sum((row["total_amount"] for row in completed), ZERO)),
                "by_branch": _group_completed(rows, "branch"),
                "by_user": _group_completed(rows, "cashier"),
                "results": rows,
            }
        )


class DashboardReportView(BaseReportView):
    permission_action_map = {"get": "reports.view"}
    cache_key = "dashboard"

    def _build(self, context, branch_ids, start, end):
        revenue = ZERO
        sales_count = 0
        for model in (Sale, ExternalSale):
            completed = _in_window(
                model.objects.filter(branch_id__in=branch_ids, status=model.Status.COMPLETED), "sale_date", start, end
            )
            revenue += completed.aggregate(total=Coalesce(Sum("total_amount"), ZERO))["total"]
            sales_count += completed.count()

        inventory = build_inventory_summary(context)
        return OrderedDict(
            **context.as_dict(),
            revenue=to_money(revenue),
            sales_count=sales_count,
            inventory_value=inventory["total_inventory_cost"],
            unique_products_in_stock=inventory["total_unique_products_in_stock"],
        )

    def get(self, request):
        branch_ids = self._branch_ids(request)
        start, end, context = self._window(request, branch_ids)
        payload = self._cached(request, lambda: self._build(context, branch_ids, start, end))
        if request.query_params.get("format") == "csv":
            row = {key: value for key, value in payload.items() if key not in ("currency",)}
            return self._csv_response("dashboard.csv", [row])
        return Response(payload)
