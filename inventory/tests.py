import threading
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import OperationalError, connection
from django.db.models import Sum
from django.test import TestCase, TransactionTestCase, skipUnlessDBFeature
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient

from common.exceptions import Conflict
from core.models import Branch
from inventory import ledger
from inventory.ledger import adjust_stock, current_quantity, ledger_quantity
from inventory.models import (
    Category,
    Product,
    Purchase,
    StockAuditSubmission,
    StockLevel,
    StockMovement,
    Warehouse,
)


class InventoryFixturesMixin:
    def create_fixtures(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="MAIN", name="Main Branch")
        self.warehouse = Warehouse.objects.create(name="Central", location="Dock 1", branch=self.branch)
        self.other_warehouse = Warehouse.objects.create(name="Overflow")
        self.category = Category.objects.create(name="Beverages", unit_abbreviation="btl")
        self.product = Product.objects.create(
            unique_reference="BEV-001",
            name="Mineral Water",
            category=self.category,
            unit_abbreviation="btl",
            purchase_price=Decimal("2.00"),
            sale_price=Decimal("3.50"),
            low_stock_threshold=5,
        )
        self.other_product = Product.objects.create(
            unique_reference="BEV-002",
            name="Orange Juice",
            category=self.category,
            purchase_price=Decimal("4.00"),
            sale_price=Decimal("6.00"),
        )
        self.admin = self._user("inv-admin", "admin")
        self.stock_manager = self._user("inv-stock-manager", "stock_manager")
        self.controller = self._user("inv-controller", "stock_controller")
        self.other_controller = self._user("inv-controller-2", "stock_controller")
        self.cashier = self._user("inv-cashier", "cashier")

    def _user(self, username, role):
        return self.user_model.objects.create_user(username=username, password="pass1234", role=role, branch=self.branch)

    def assert_ledger_consistent(self, product, warehouse):
        self.assertEqual(current_quantity(product, warehouse), ledger_quantity(product, warehouse))


class StockLedgerTests(InventoryFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def test_adjustments_keep_level_equal_to_movement_sum(self):
        for delta in [10, -3, 7, -20, 4]:
            result = adjust_stock(product=self.product, warehouse=self.warehouse, delta=delta, actor=self.stock_manager, reason="count fix")

        self.assertEqual(current_quantity(self.product, self.warehouse), -2)
        self.assert_ledger_consistent(self.product, self.warehouse)
        self.assertEqual(StockMovement.objects.filter(product=self.product).count(), 5)
        self.assertEqual(result.movement.resulting_quantity, -2)
        self.assertEqual(result.previous_quantity, -6)

    def test_untouched_key_reads_zero(self):
        self.assertEqual(current_quantity(self.other_product, self.other_warehouse), 0)

    def test_zero_delta_is_rejected_without_writes(self):
        with self.assertRaises(ValidationError):
            adjust_stock(product=self.product, warehouse=self.warehouse, delta=0, actor=self.stock_manager, reason="noop")

        self.assertFalse(StockLevel.objects.exists())
        self.assertFalse(StockMovement.objects.exists())

    def test_unknown_product_raises_not_found(self):
        missing = Product(unique_reference="GONE", name="Gone")
        with self.assertRaises(NotFound):
            adjust_stock(product=missing.id, warehouse=self.warehouse, delta=1, actor=self.stock_manager, reason="x")

    def test_negative_result_is_allowed_and_logged(self):
        with self.assertLogs("inventory.ledger", level="WARNING") as logs:
            result = adjust_stock(product=self.product, warehouse=self.warehouse, delta=-4, actor=self.stock_manager, reason="breakage")

        self.assertEqual(result.new_quantity, -4)
        self.assertTrue(result.negative_balance)
        self.assertTrue(any("stock_negative_balance" in line for line in logs.output))

    def test_duplicate_operation_id_is_rejected(self):
        adjust_stock(
            product=self.product,
            warehouse=self.warehouse,
            delta=5,
            actor=self.stock_manager,
            reason="delivery",
            operation_id="op-123",
        )
        with self.assertRaises(Conflict):
            adjust_stock(
                product=self.product,
                warehouse=self.warehouse,
                delta=5,
                actor=self.stock_manager,
                reason="delivery",
                operation_id="op-123",
            )

        self.assertEqual(current_quantity(self.product, self.warehouse), 5)
        self.assertEqual(StockMovement.objects.count(), 1)

    def test_lock_contention_is_retried_then_reported_as_conflict(self):
        with patch("inventory.ledger._lock_level", side_effect=OperationalError("database is locked")) as lock:
            with self.assertRaises(Conflict):
                adjust_stock(product=self.product, warehouse=self.warehouse, delta=1, actor=self.stock_manager, reason="x")

        self.assertEqual(lock.call_count, 3)
        self.assertFalse(StockMovement.objects.exists())

    def test_other_operational_errors_propagate(self):
        with patch("inventory.ledger._lock_level", side_effect=OperationalError("server closed the connection")):
            with self.assertRaises(OperationalError):
                adjust_stock(product=self.product, warehouse=self.warehouse, delta=1, actor=self.stock_manager, reason="x")

    def test_movements_are_append_only(self):
        result = adjust_stock(product=self.product, warehouse=self.warehouse, delta=2, actor=self.stock_manager, reason="x")

        movement = result.movement
        movement.reason = "rewritten"
        with self.assertRaises(ValueError):
            movement.save()
        with self.assertRaises(ValueError):
            movement.delete()


@skipUnlessDBFeature("has_select_for_update")
class ConcurrentAdjustmentTests(InventoryFixturesMixin, TransactionTestCase):
    def setUp(self):
        self.create_fixtures()

    def test_parallel_adjustments_are_not_lost(self):
        workers = 8
        errors = []

        def work():
            try:
                adjust_stock(product=self.product, warehouse=self.warehouse, delta=1, actor=self.stock_manager, reason="parallel")
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=work) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(current_quantity(self.product, self.warehouse), workers)
        self.assert_ledger_consistent(self.product, self.warehouse)

    def test_opposite_deltas_commute(self):
        adjust_stock(product=self.product, warehouse=self.warehouse, delta=10, actor=self.stock_manager, reason="opening")
        errors = []

        def work(delta):
            try:
                adjust_stock(product=self.product, warehouse=self.warehouse, delta=delta, actor=self.stock_manager, reason="race")
            except Exception as exc:  # collected for the assertion below
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=work, args=(delta,)) for delta in (3, -1)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(current_quantity(self.product, self.warehouse), 12)
        self.assertEqual(StockMovement.objects.filter(reason="race").count(), 2)
        self.assert_ledger_consistent(self.product, self.warehouse)


class CommittedAdjustmentTests(InventoryFixturesMixin, TransactionTestCase):
    """Runs on every backend: contention may surface as ``Conflict`` but never as a lost write."""

    def setUp(self):
        self.create_fixtures()

    def run_concurrently(self, deltas):
        applied = []
        conflicts = []
        errors = []
        lock = threading.Lock()

        def work(delta):
            try:
                adjust_stock(product=self.product, warehouse=self.warehouse, delta=delta, actor=self.stock_manager, reason="race")
            except Conflict as exc:
                with lock:
                    conflicts.append(exc)
            except Exception as exc:  # collected for the assertion below
                with lock:
                    errors.append(exc)
            else:
                with lock:
                    applied.append(delta)
            finally:
                connection.close()

        threads = [threading.Thread(target=work, args=(delta,)) for delta in deltas]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return applied, conflicts, errors

    def test_every_committed_adjustment_is_in_the_ledger(self):
        self.assertNotEqual(connection.settings_dict["NAME"], ":memory:")
        adjust_stock(product=self.product, warehouse=self.warehouse, delta=10, actor=self.stock_manager, reason="opening")

        applied, conflicts, errors = self.run_concurrently([1] * 8 + [3, -1, 3, -1])

        self.assertEqual(errors, [])
        self.assertEqual(len(applied) + len(conflicts), 12)
        self.assertEqual(StockMovement.objects.filter(reason="race").count(), len(applied))
        self.assertEqual(current_quantity(self.product, self.warehouse), 10 + sum(applied))
        self.assert_ledger_consistent(self.product, self.warehouse)


class StockAdjustmentApiTests(InventoryFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def _adjust(self, user, **overrides):
        self.client.force_authenticate(user=user)
        payload = {
            "product": str(self.product.id),
            "warehouse": str(self.warehouse.id),
            "delta": 6,
            "reason": "Found extra crate",
        }
        payload.update(overrides)
        return self.client.post("/api/v1/stock/adjust/", payload, format="json")

    def test_manager_adjustment_returns_new_quantity(self):
        response = self._adjust(self.stock_manager)

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["new_quantity"], 6)
        self.assertFalse(response.json()["negative_balance"])
        self.assertEqual(response.json()["movement"]["source_type"], "manual")

    def test_cashier_cannot_adjust_and_denial_is_logged(self):
        with self.assertLogs("security.authorization", level="WARNING") as logs:
            response = self._adjust(self.cashier)

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in line for line in logs.output))
        self.assertFalse(StockMovement.objects.exists())

    def test_zero_delta_returns_validation_error(self):
        response = self._adjust(self.stock_manager, delta=0)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_unknown_warehouse_returns_not_found(self):
        response = self._adjust(self.stock_manager, warehouse="00000000-0000-0000-0000-000000000000")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_retry_with_same_operation_id_is_rejected(self):
        first = self._adjust(self.stock_manager, operation_id="till-7-0001")
        second = self._adjust(self.stock_manager, operation_id="till-7-0001")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["code"], "duplicate_operation")
        self.assertEqual(current_quantity(self.product, self.warehouse), 6)

    def test_levels_and_movements_are_listed(self):
        self._adjust(self.stock_manager)
        self.client.force_authenticate(user=self.cashier)

        levels = self.client.get("/api/v1/stock/levels/", {"warehouse": str(self.warehouse.id)})
        movements = self.client.get("/api/v1/stock/movements/", {"product": str(self.product.id)})

        self.assertEqual(levels.status_code, 200)
        self.assertEqual(levels.json()["results"][0]["quantity"], 6)
        self.assertEqual(movements.json()["count"], 1)


class PurchaseIntakeTests(InventoryFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()
        self.client.force_authenticate(user=self.stock_manager)

    def _payload(self, **overrides):
        payload = {
            "warehouse": str(self.warehouse.id),
            "purchase_date": "2024-03-05T10:00:00Z",
            "status": "completed",
            "items": [
                {"product": str(self.product.id), "quantity": 10, "unit_purchase_price": "2.10"},
                {"product": str(self.other_product.id), "quantity": 3, "unit_purchase_price": "4.00", "note": "promo"},
            ],
        }
        payload.update(overrides)
        return payload

    def test_purchase_increases_stock_with_tagged_movements(self):
        response = self.client.post("/api/v1/purchases/", self._payload(), format="json")

        self.assertEqual(response.status_code, 201)
        purchase_id = response.json()["id"]
        self.assertEqual(response.json()["total_cost"], "33.00")
        self.assertEqual(current_quantity(self.product, self.warehouse), 10)
        self.assertEqual(current_quantity(self.other_product, self.warehouse), 3)
        movements = StockMovement.objects.filter(source_type=StockMovement.Source.PURCHASE, source_id=purchase_id)
        self.assertEqual(movements.count(), 2)
        self.assertTrue(all(purchase_id in movement.reason for movement in movements))

    def test_purchase_is_logged_on_its_own_logger(self):
        with self.assertLogs("inventory.purchases", level="INFO") as logs:
            response = self.client.post("/api/v1/purchases/", self._payload(), format="json")

        self.assertEqual(response.status_code, 201)
        self.assertTrue(any("purchase_recorded" in line for line in logs.output))

    def test_failure_on_any_item_rolls_back_the_whole_purchase(self):
        calls = []
        real_adjust = ledger.adjust_stock

        def flaky_adjust(**kwargs):
            calls.append(kwargs)
            if len(calls) == 2:
                raise Conflict()
            return real_adjust(**kwargs)

        with patch("inventory.services.adjust_stock", side_effect=flaky_adjust):
            response = self.client.post("/api/v1/purchases/", self._payload(), format="json")

        self.assertEqual(response.status_code, 409)
        self.assertFalse(Purchase.objects.exists())
        self.assertFalse(StockMovement.objects.exists())
        self.assertEqual(current_quantity(self.product, self.warehouse), 0)
        self.assertEqual(current_quantity(self.other_product, self.warehouse), 0)

    def test_non_positive_quantity_is_rejected(self):
        payload = self._payload(items=[{"product": str(self.product.id), "quantity": 0, "unit_purchase_price": "1.00"}])

        response = self.client.post("/api/v1/purchases/", payload, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Purchase.objects.exists())

    def test_purchase_without_items_is_rejected(self):
        response = self.client.post("/api/v1/purchases/", self._payload(items=[]), format="json")

        self.assertEqual(response.status_code, 400)

    def test_amendment_reverses_previous_quantities(self):
        created = self.client.post("/api/v1/purchases/", self._payload(), format="json").json()

        response = self.client.put(
            f"/api/v1/purchases/{created['id']}/",
            self._payload(items=[{"product": str(self.product.id), "quantity": 4, "unit_purchase_price": "2.10"}]),
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(current_quantity(self.product, self.warehouse), 4)
        self.assertEqual(current_quantity(self.other_product, self.warehouse), 0)
        self.assert_ledger_consistent(self.product, self.warehouse)
        self.assertEqual(response.json()["total_cost"], "8.40")

    def test_amendment_to_another_warehouse_moves_the_stock(self):
        created = self.client.post("/api/v1/purchases/", self._payload(), format="json").json()

        response = self.client.patch(
            f"/api/v1/purchases/{created['id']}/",
            {"warehouse": str(self.other_warehouse.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(current_quantity(self.product, self.warehouse), 0)
        self.assertEqual(current_quantity(self.product, self.other_warehouse), 10)

    def test_cancelled_purchase_has_no_stock_effect(self):
        created = self.client.post("/api/v1/purchases/", self._payload(), format="json").json()

        self.client.patch(f"/api/v1/purchases/{created['id']}/", {"status": "cancelled"}, format="json")
        self.assertEqual(current_quantity(self.product, self.warehouse), 0)

        self.client.patch(f"/api/v1/purchases/{created['id']}/", {"status": "completed"}, format="json")
        self.assertEqual(current_quantity(self.product, self.warehouse), 10)

    def test_purchase_recorded_as_cancelled_writes_no_movements(self):
        response = self.client.post("/api/v1/purchases/", self._payload(status="cancelled"), format="json")

        self.assertEqual(response.status_code, 201)
        self.assertFalse(StockMovement.objects.exists())

    def test_cashier_cannot_record_purchase(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/purchases/", self._payload(), format="json")

        self.assertEqual(response.status_code, 403)


class StockAuditWorkflowTests(InventoryFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()

    def _submit(self, lines=None, user=None):
        self.client.force_authenticate(user=user or self.controller)
        payload = {
            "warehouse": str(self.warehouse.id),
            "notes_from_controller": "Monthly count",
            "lines": lines
            if lines is not None
            else [
                {
                    "product_ref": self.product.unique_reference,
                    "product_name": self.product.name,
                    "category": str(self.category.id),
                    "unit_abbreviation": "btl",
                    "counted_quantity": 50,
                }
            ],
        }
        return self.client.post("/api/v1/stock-audits/", payload, format="json")

    def _resolve(self, audit, decision="approve", prices=None, user=None):
        self.client.force_authenticate(user=user or self.stock_manager)
        if prices is None:
            prices = [{"line_id": line["id"], "purchase_price": "2.20", "sale_price": "3.80"} for line in audit["lines"]]
        return self.client.post(
            f"/api/v1/stock-audits/{audit['id']}/resolve/",
            {"decision": decision, "manager_notes": "Checked", "line_prices": prices},
            format="json",
        )

    def test_controller_submission_is_pending(self):
        response = self._submit()

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["status"], "pending")
        self.assertEqual(len(response.json()["lines"]), 1)

    def test_submission_requires_lines_and_non_negative_counts(self):
        empty = self._submit(lines=[])
        negative = self._submit(lines=[{"product_ref": "X-1", "product_name": "X", "counted_quantity": -1}])

        self.assertEqual(empty.status_code, 400)
        self.assertEqual(negative.status_code, 400)
        self.assertFalse(StockAuditSubmission.objects.exists())

    def test_approval_uses_quantity_at_approval_time(self):
        adjust_stock(product=self.product, warehouse=self.warehouse, delta=30, actor=self.stock_manager, reason="opening")
        audit = self._submit().json()
        adjust_stock(product=self.product, warehouse=self.warehouse, delta=12, actor=self.stock_manager, reason="late delivery")

        response = self._resolve(audit)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        line = response.json()["audit"]["lines"][0]
        self.assertEqual(line["expected_quantity"], 42)
        self.assertEqual(line["applied_delta"], 8)
        self.assertEqual(current_quantity(self.product, self.warehouse), 50)
        self.assert_ledger_consistent(self.product, self.warehouse)
        self.product.refresh_from_db()
        self.assertEqual(self.product.purchase_price, Decimal("2.20"))
        self.assertEqual(self.product.sale_price, Decimal("3.80"))
        audit_movement = StockMovement.objects.get(source_type=StockMovement.Source.AUDIT)
        self.assertEqual(str(audit_movement.source_id), audit["id"])

    def test_approval_creates_unknown_products(self):
        audit = self._submit(
            lines=[{"product_ref": "SNK-900", "product_name": "Salted Peanuts", "unit_abbreviation": "bag", "counted_quantity": 7}]
        ).json()

        response = self._resolve(audit)

        self.assertEqual(response.status_code, 200)
        product = Product.objects.get(unique_reference="SNK-900")
        self.assertEqual(product.name, "Salted Peanuts")
        self.assertEqual(product.sale_price, Decimal("3.80"))
        self.assertEqual(current_quantity(product, self.warehouse), 7)

    def test_matching_count_writes_no_movement(self):
        adjust_stock(product=self.product, warehouse=self.warehouse, delta=50, actor=self.stock_manager, reason="opening")
        audit = self._submit().json()

        response = self._resolve(audit)

        self.assertEqual(response.json()["audit"]["lines"][0]["applied_delta"], 0)
        self.assertFalse(StockMovement.objects.filter(source_type=StockMovement.Source.AUDIT).exists())

    def test_rejection_has_no_stock_effect(self):
        audit = self._submit().json()

        response = self._resolve(audit, decision="reject", prices=[])

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["audit"]["status"], "rejected")
        self.assertFalse(StockMovement.objects.exists())

    def test_terminal_submission_cannot_be_resolved_again(self):
        audit = self._submit().json()
        self._resolve(audit)

        again = self._resolve(audit, decision="reject", prices=[])

        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["errors"], {"current_status": "approved"})
        self.assertEqual(again.json()["code"], "invalid_state")
        self.assertEqual(StockAuditSubmission.objects.get(id=audit["id"]).status, "approved")
        self.assertEqual(StockMovement.objects.count(), 1)

    def test_approval_requires_prices_for_every_line(self):
        audit = self._submit().json()

        response = self._resolve(audit, prices=[])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(StockAuditSubmission.objects.get(id=audit["id"]).status, "pending")
        self.assertFalse(StockMovement.objects.exists())

    def test_negative_price_is_rejected(self):
        audit = self._submit().json()
        prices = [{"line_id": audit["lines"][0]["id"], "purchase_price": "-1.00", "sale_price": "2.00"}]

        response = self._resolve(audit, prices=prices)

        self.assertEqual(response.status_code, 400)

    def test_controller_cannot_resolve(self):
        audit = self._submit().json()

        response = self._resolve(audit, user=self.controller)

        self.assertEqual(response.status_code, 403)

    def test_controllers_only_see_their_own_submissions(self):
        mine = self._submit().json()
        self._submit(user=self.other_controller)

        self.client.force_authenticate(user=self.controller)
        listed = self.client.get("/api/v1/stock-audits/").json()
        self.client.force_authenticate(user=self.stock_manager)
        all_listed = self.client.get("/api/v1/stock-audits/", {"status": "pending"}).json()

        self.assertEqual([item["id"] for item in listed["results"]], [mine["id"]])
        self.assertEqual(all_listed["count"], 2)

    def test_controller_can_edit_own_pending_submission_only(self):
        audit = self._submit().json()
        payload = {
            "warehouse": str(self.warehouse.id),
            "lines": [{"product_ref": self.product.unique_reference, "product_name": self.product.name, "counted_quantity": 44}],
        }

        edited = self.client.put(f"/api/v1/stock-audits/{audit['id']}/", payload, format="json")
        self._resolve(audit, decision="reject", prices=[])
        self.client.force_authenticate(user=self.controller)
        after_resolution = self.client.put(f"/api/v1/stock-audits/{audit['id']}/", payload, format="json")

        self.assertEqual(edited.status_code, 200)
        self.assertEqual(edited.json()["lines"][0]["counted_quantity"], 44)
        self.assertEqual(after_resolution.status_code, 409)

    def test_pending_or_rejected_can_be_deleted_but_approved_cannot(self):
        pending = self._submit().json()
        approved = self._submit().json()
        self._resolve(approved)

        self.client.force_authenticate(user=self.stock_manager)
        delete_pending = self.client.delete(f"/api/v1/stock-audits/{pending['id']}/")
        delete_approved = self.client.delete(f"/api/v1/stock-audits/{approved['id']}/")

        self.assertEqual(delete_pending.status_code, 204)
        self.assertEqual(delete_approved.status_code, 409)
        self.assertTrue(StockAuditSubmission.objects.filter(id=approved["id"]).exists())


class InventoryReportTests(InventoryFixturesMixin, TestCase):
    def setUp(self):
        self.create_fixtures()
        adjust_stock(product=self.product, warehouse=self.warehouse, delta=4, actor=self.stock_manager, reason="opening")
        adjust_stock(product=self.product, warehouse=self.other_warehouse, delta=6, actor=self.stock_manager, reason="opening")
        adjust_stock(product=self.other_product, warehouse=self.warehouse, delta=-2, actor=self.stock_manager, reason="breakage")

    def test_stock_levels_report_flags_low_and_negative_stock(self):
        self.client.force_authenticate(user=self.stock_manager)

        response = self.client.get("/api/v1/reports/stock-levels/")

        self.assertEqual(response.status_code, 200)
        rows = {row["product_ref"]: row for row in response.json()["results"]}
        self.assertEqual(rows["BEV-001"]["total_quantity"], 10)
        self.assertFalse(rows["BEV-001"]["is_low_stock"])
        self.assertTrue(rows["BEV-002"]["is_low_stock"])
        self.assertTrue(rows["BEV-002"]["has_negative_balance"])
        self.assertEqual(response.json()["currency"]["symbol"], "FCFA")

    def test_inventory_summary_totals(self):
        self.client.force_authenticate(user=self.admin)

        payload = self.client.get("/api/v1/reports/inventory-summary/").json()

        self.assertEqual(payload["total_stock_quantity"], 8)
        self.assertEqual(Decimal(str(payload["total_inventory_cost"])), Decimal("12.00"))
        self.assertEqual(payload["total_unique_products_in_stock"], 1)
        self.assertEqual(len(payload["warehouses"]), 2)

    def test_purchases_report_uses_na_for_missing_branch(self):
        self.client.force_authenticate(user=self.stock_manager)
        self.client.post(
            "/api/v1/purchases/",
            {
                "warehouse": str(self.other_warehouse.id),
                "purchase_date": "2024-03-05T10:00:00Z",
                "items": [{"product": str(self.product.id), "quantity": 1, "unit_purchase_price": "2.00"}],
            },
            format="json",
        )
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/purchases/", {"date_from": "2024-03-01", "date_to": "2024-03-31"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["results"][0]["branch"], "N/A")

    def test_report_requires_both_dates(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/purchases/", {"date_from": "2024-03-01"})

        self.assertEqual(response.status_code, 400)

    def test_impossible_dates_are_client_errors(self):
        self.client.force_authenticate(user=self.admin)

        report = self.client.get("/api/v1/reports/purchases/", {"date_from": "2024-02-30", "date_to": "2024-03-01"})
        listing = self.client.get("/api/v1/purchases/", {"date_from": "2024-02-30"})

        self.assertEqual(report.status_code, 400)
        self.assertEqual(report.json()["code"], "validation_error")
        self.assertIn("date_range", report.json()["errors"])
        self.assertEqual(listing.status_code, 400)

    def test_stock_levels_csv_export(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/reports/stock-levels/", {"format": "csv"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        self.assertIn("product_ref", response.content.decode())

    def test_movement_totals_match_levels_across_all_keys(self):
        for level in StockLevel.objects.all():
            total = StockMovement.objects.filter(product=level.product, warehouse=level.warehouse).aggregate(total=Sum("delta"))["total"]
            self.assertEqual(level.quantity, total)
