from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog, Branch
from inventory.ledger import adjust_stock
from inventory.models import Category, Product, Purchase, StockMovement, Warehouse
from sales.models import Expense, ExpenseCategory, ExternalSale, Sale


class SalesFixturesMixin:
    def create_fixtures(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="MAIN", name="Main Branch")
        self.other_branch = Branch.objects.create(code="NORTH", name="North Branch")
        self.warehouse = Warehouse.objects.create(name="Central", branch=self.branch)
        self.unassigned_warehouse = Warehouse.objects.create(name="Overflow")
        self.category = Category.objects.create(name="Beverages")
        self.product = Product.objects.create(
            unique_reference="BEV-001",
            name="Mineral Water",
            category=self.category,
            purchase_price=Decimal("2.00"),
            sale_price=Decimal("3.50"),
        )
        self.expense_category = ExpenseCategory.objects.create(name="Utilities")

        self.admin = self._user("sales-admin", "admin")
        self.manager = self._user("sales-manager", "branch_manager")
        self.cashier = self._user("sales-cashier", "cashier")
        self.north_cashier = self._user("north-cashier", "cashier", branch=self.other_branch)

    def _user(self, username, role, branch=None):
        return self.user_model.objects.create_user(
            username=username,
            password="pass1234",
            role=role,
            branch=branch or self.branch,
        )

    def post_sale(self, user, **overrides):
        payload = {
            "payment_method": "cash",
            "items": [{"product": str(self.product.id), "quantity": 2}],
        }
        payload.update(overrides)
        self.client.force_authenticate(user=user)
        return self.client.post("/api/v1/sales/", payload, format="json")

    def post_external_sale(self, user, **overrides):
        payload = {
            "customer_name": "Walk-in",
            "items": [
                {
                    "product_name": "Imported speaker",
                    "product_category_name": "Electronics",
                    "quantity": 2,
                    "unit_sale_price": "10.00",
                    "unit_purchase_price_negotiated": "5.00",
                }
            ],
        }
        payload.update(overrides)
        self.client.force_authenticate(user=user)
        return self.client.post("/api/v1/external-sales/", payload, format="json")


class SaleApiTests(SalesFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def test_sale_gets_daily_receipt_reference(self):
        first = self.post_sale(self.cashier)
        second = self.post_sale(self.cashier)

        day = timezone.now().strftime("%Y%m%d")
        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json()["transaction_reference"], f"SAL-{day}-0001")
        self.assertEqual(second.json()["transaction_reference"], f"SAL-{day}-0002")

    def test_totals_are_computed_server_side(self):
        response = self.post_sale(
            self.cashier,
            total_amount="1.00",
            items=[
                {"product": str(self.product.id), "quantity": 2},
                {"product": str(self.product.id), "quantity": 3, "unit_sale_price": "3.00"},
            ],
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["total_amount"], "16.00")
        self.assertEqual([item["total_price"] for item in body["items"]], ["7.00", "9.00"])
        self.assertEqual(body["cashier"], str(self.cashier.id))
        self.assertEqual(body["branch"], str(self.branch.id))

    def test_sales_do_not_move_stock(self):
        self.post_sale(self.cashier)

        self.assertFalse(StockMovement.objects.exists())

    def test_zero_quantity_is_rejected(self):
        response = self.post_sale(self.cashier, items=[{"product": str(self.product.id), "quantity": 0}])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertFalse(Sale.objects.exists())

    def test_cashier_cannot_sell_for_another_branch(self):
        response = self.post_sale(self.cashier, branch=str(self.other_branch.id))

        self.assertEqual(response.status_code, 400)
        self.assertIn("branch", response.json()["errors"])

    def test_admin_can_sell_for_any_branch(self):
        response = self.post_sale(self.admin, branch=str(self.other_branch.id))

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["branch_name"], "North Branch")

    def test_sales_list_is_scoped_to_branch(self):
        self.post_sale(self.cashier)
        self.post_sale(self.north_cashier)

        self.client.force_authenticate(user=self.north_cashier)
        response = self.client.get("/api/v1/sales/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
        self.assertEqual(response.json()["results"][0]["branch_name"], "North Branch")

    def test_cancel_requires_manager_and_happens_once(self):
        sale_id = self.post_sale(self.cashier).json()["id"]

        response = self.client.post(f"/api/v1/sales/{sale_id}/cancel/")
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        response = self.client.post(f"/api/v1/sales/{sale_id}/cancel/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelled")

        response = self.client.post(f"/api/v1/sales/{sale_id}/cancel/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")
        self.assertEqual(response.json()["errors"], {"current_status": "cancelled"})

    def test_held_sale_is_completed_with_recomputed_total(self):
        created = self.post_sale(self.cashier, status="held").json()
        self.assertEqual(created["status"], "held")
        self.assertEqual(created["total_amount"], "7.00")

        response = self.client.patch(
            f"/api/v1/sales/{created['id']}/",
            {
                "status": "completed",
                "total_amount": "1.00",
                "items": [{"product": str(self.product.id), "quantity": 4}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["total_amount"], "14.00")
        self.assertEqual([item["quantity"] for item in body["items"]], [4])
        self.assertEqual(body["transaction_reference"], created["transaction_reference"])
        log = AuditLog.objects.get(action="sale.update")
        self.assertEqual(log.before_snapshot["status"], "held")
        self.assertEqual(log.after_snapshot["status"], "completed")

    def test_completed_sale_corrections_need_a_manager(self):
        sale_id = self.post_sale(self.cashier).json()["id"]

        response = self.client.patch(f"/api/v1/sales/{sale_id}/", {"customer_name": "Changed"}, format="json")
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        response = self.client.patch(f"/api/v1/sales/{sale_id}/", {"customer_name": "Corrected"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["customer_name"], "Corrected")
        self.assertEqual(response.json()["total_amount"], "7.00")

        response = self.client.patch(f"/api/v1/sales/{sale_id}/", {"status": "held"}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")

    def test_cancelled_sale_cannot_be_amended(self):
        sale_id = self.post_sale(self.cashier, status="held").json()["id"]
        self.client.force_authenticate(user=self.manager)
        self.client.post(f"/api/v1/sales/{sale_id}/cancel/")

        response = self.client.patch(f"/api/v1/sales/{sale_id}/", {"status": "completed"}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")
        self.assertEqual(response.json()["errors"], {"current_status": "cancelled"})
        self.assertEqual(Sale.objects.get().status, Sale.Status.CANCELLED)

    def test_other_cashiers_cannot_amend_a_held_sale(self):
        sale_id = self.post_sale(self.cashier, status="held").json()["id"]
        colleague = self._user("sales-colleague", "cashier")

        self.client.force_authenticate(user=colleague)
        response = self.client.patch(f"/api/v1/sales/{sale_id}/", {"status": "completed"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(Sale.objects.get().status, Sale.Status.HELD)


class ExternalSaleApiTests(SalesFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def test_cashier_sale_waits_for_authorization(self):
        response = self.post_external_sale(self.cashier)

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], "pending_approval")
        self.assertTrue(body["transaction_reference"].startswith("EXT-"))
        self.assertEqual(body["total_amount"], "20.00")
        self.assertEqual(body["total_cost"], "10.00")
        self.assertIsNone(body["authorized_by"])

    def test_manager_authorizes_with_price_override(self):
        created = self.post_external_sale(self.cashier).json()
        item_id = created["items"][0]["id"]

        response = self.client.post(f"/api/v1/external-sales/{created['id']}/authorize/")
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        response = self.client.post(
            f"/api/v1/external-sales/{created['id']}/authorize/",
            {"item_prices": [{"item_id": item_id, "unit_purchase_price_negotiated": "4.00"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(body["total_cost"], "8.00")
        self.assertEqual(body["authorized_by"], str(self.manager.id))
        self.assertEqual(body["items"][0]["unit_purchase_price_negotiated"], "4.00")

        response = self.client.post(f"/api/v1/external-sales/{created['id']}/authorize/", {}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")

    def test_unknown_item_in_override_is_rejected(self):
        created = self.post_external_sale(self.cashier).json()

        self.client.force_authenticate(user=self.manager)
        response = self.client.post(
            f"/api/v1/external-sales/{created['id']}/authorize/",
            {
                "item_prices": [
                    {"item_id": "00000000-0000-0000-0000-000000000000", "unit_purchase_price_negotiated": "1.00"}
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(ExternalSale.objects.get().status, ExternalSale.Status.PENDING_APPROVAL)

    def test_authorizer_sale_completes_immediately(self):
        response = self.post_external_sale(self.manager)

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["status"], "completed")
        self.assertEqual(response.json()["authorized_by"], str(self.manager.id))

    def test_pending_external_sale_is_amended_by_its_cashier(self):
        created = self.post_external_sale(self.cashier).json()
        item = created["items"][0]

        response = self.client.patch(
            f"/api/v1/external-sales/{created['id']}/",
            {
                "items": [
                    {
                        "product_name": item["product_name"],
                        "quantity": 3,
                        "unit_sale_price": "10.00",
                        "unit_purchase_price_negotiated": "5.00",
                    }
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "pending_approval")
        self.assertEqual(body["total_amount"], "30.00")
        self.assertEqual(body["total_cost"], "15.00")
        self.assertTrue(AuditLog.objects.filter(action="external_sale.update").exists())

    def test_cancelled_external_sale_cannot_be_amended(self):
        created = self.post_external_sale(self.cashier).json()
        self.client.force_authenticate(user=self.manager)
        self.client.post(f"/api/v1/external-sales/{created['id']}/cancel/")

        response = self.client.patch(
            f"/api/v1/external-sales/{created['id']}/",
            {"customer_name": "Late fix"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "invalid_state")


class ExpenseApiTests(SalesFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def _payload(self, **overrides):
        payload = {
            "date": "2024-03-05T10:00:00Z",
            "category": str(self.expense_category.id),
            "description": "Electricity",
            "amount": "45.00",
        }
        payload.update(overrides)
        return payload

    def test_amount_must_be_positive(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/expenses/", self._payload(amount="0.00"), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.json()["errors"])

    def test_cashier_records_expense_for_own_branch(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/expenses/",
            self._payload(branch=str(self.other_branch.id)),
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        expense = Expense.objects.get()
        self.assertEqual(expense.branch, self.branch)
        self.assertEqual(expense.recorded_by, self.cashier)

    def test_expense_list_is_scoped_and_delete_needs_manager(self):
        Expense.objects.create(
            date=timezone.now(),
            category=self.expense_category,
            amount=Decimal("10.00"),
            branch=self.other_branch,
            recorded_by=self.north_cashier,
        )
        own = Expense.objects.create(
            date=timezone.now(),
            category=self.expense_category,
            amount=Decimal("12.00"),
            branch=self.branch,
            recorded_by=self.cashier,
        )

        self.client.force_authenticate(user=self.cashier)
        response = self.client.get("/api/v1/expenses/")
        self.assertEqual(response.json()["count"], 1)

        response = self.client.delete(f"/api/v1/expenses/{own.id}/")
        self.assertEqual(response.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        response = self.client.delete(f"/api/v1/expenses/{own.id}/")
        self.assertEqual(response.status_code, 204)

    def test_category_in_use_cannot_be_deleted(self):
        Expense.objects.create(
            date=timezone.now(),
            category=self.expense_category,
            amount=Decimal("10.00"),
            branch=self.branch,
            recorded_by=self.cashier,
        )
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/expense-categories/{self.expense_category.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")


class SalesReportTests(SalesFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()
        self.post_sale(self.cashier)
        self.post_sale(self.cashier, status="held")
        cancelled_id = self.post_sale(self.cashier).json()["id"]
        self.client.force_authenticate(user=self.manager)
        self.client.post(f"/api/v1/sales/{cancelled_id}/cancel/")
        self.post_external_sale(self.manager, items=[
            {
                "product_name": "Imported speaker",
                "quantity": 1,
                "unit_sale_price": "10.00",
                "unit_purchase_price_negotiated": "6.00",
            }
        ])
        self.post_external_sale(self.cashier)
        Expense.objects.create(
            date=timezone.now(),
            category=self.expense_category,
            amount=Decimal("1.50"),
            branch=self.branch,
            recorded_by=self.manager,
        )
        for warehouse, total, status in [
            (self.warehouse, "20.00", Purchase.Status.COMPLETED),
            (self.warehouse, "99.00", Purchase.Status.CANCELLED),
            (self.unassigned_warehouse, "5.00", Purchase.Status.COMPLETED),
        ]:
            Purchase.objects.create(
                purchase_date=timezone.now(),
                warehouse=warehouse,
                registered_by=self.admin,
                status=status,
                total_cost=Decimal(total),
            )

    def test_accounting_summary_counts_completed_sales_only(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/accounting-summary/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(Decimal(str(payload["total_income"])), Decimal("17.00"))
        self.assertEqual(Decimal(str(payload["total_cogs"])), Decimal("10.00"))
        self.assertEqual(Decimal(str(payload["purchases_cost"])), Decimal("25.00"))
        self.assertEqual(Decimal(str(payload["expenses"])), Decimal("1.50"))
        self.assertEqual(Decimal(str(payload["net_profit"])), Decimal("5.50"))
        self.assertEqual(payload["currency"]["symbol"], "FCFA")

        names = [row["branch_name"] for row in payload["branches"]]
        self.assertEqual(names[0], "Main Branch")
        self.assertIn("N/A", names)
        unassigned = next(row for row in payload["branches"] if row["branch_name"] == "N/A")
        self.assertEqual(Decimal(str(unassigned["purchases_cost"])), Decimal("5.00"))

    def test_accounting_summary_is_limited_to_management(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/reports/accounting-summary/")

        self.assertEqual(response.status_code, 403)

    def test_branch_filter_drops_unassigned_purchases(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/accounting-summary/", {"branch_id": str(self.branch.id)})

        payload = response.json()
        self.assertEqual(Decimal(str(payload["purchases_cost"])), Decimal("20.00"))
        self.assertEqual([row["branch_name"] for row in payload["branches"]], ["Main Branch"])

    def test_accounting_summary_csv_export(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/accounting-summary/", {"format": "csv"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertIn("branch_name", response.content.decode())

    def test_sales_report_groups_by_branch_and_user(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/reports/sales/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(len(payload["results"]), 5)
        self.assertEqual(payload["sales_count"], 2)
        self.assertEqual(Decimal(str(payload["total_amount"])), Decimal("17.00"))
        by_user = {row["cashier"]: row["sales_count"] for row in payload["by_user"]}
        self.assertEqual(by_user, {"sales-cashier": 1, "sales-manager": 1})

    def test_sales_report_rejects_half_open_window(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/reports/sales/", {"date_from": "2024-01-01"})

        self.assertEqual(response.status_code, 400)

    def test_dashboard_reports_revenue_and_inventory(self):
        adjust_stock(product=self.product, warehouse=self.warehouse, delta=4, actor=self.admin, reason="opening")
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/reports/dashboard/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(Decimal(str(payload["revenue"])), Decimal("17.00"))
        self.assertEqual(payload["sales_count"], 2)
        self.assertEqual(Decimal(str(payload["inventory_value"])), Decimal("8.00"))
        self.assertEqual(payload["unique_products_in_stock"], 1)

    def test_cashier_cannot_view_reports(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/reports/dashboard/")

        self.assertEqual(response.status_code, 403)
