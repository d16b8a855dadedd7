import json
import logging
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.http import HttpResponse
from django.test import RequestFactory, TestCase, override_settings
from rest_framework.test import APIClient

from common.logging import JsonFormatter, RequestIdFilter, RequestLogMiddleware, current_request_id
from core.models import AuditLog, Branch, BusinessSettings, ReceiptPhrase
from inventory.ledger import adjust_stock, current_quantity
from inventory.models import Product, StockMovement, Warehouse
from sales.models import ExpenseCategory


class BranchAccessRoleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch_a = Branch.objects.create(code="CA", name="Core A")
        self.branch_b = Branch.objects.create(code="CB", name="Core B")
        self.admin = self.user_model.objects.create_user(
            username="core-admin",
            password="pass1234",
            branch=self.branch_a,
            role="admin",
        )
        self.cashier = self.user_model.objects.create_user(
            username="core-cashier",
            password="pass1234",
            branch=self.branch_a,
            role="cashier",
        )

    def test_admin_can_list_multiple_branches(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual(payload["count"], 2)

    def test_non_admin_branch_scope_is_preserved(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertEqual(ids, {str(self.branch_a.id)})

    def test_cashier_cannot_create_branch_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/branches/", {"code": "CC", "name": "Core C"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("capability=admin.records.manage" in line for line in cm.output))

    def test_admin_branch_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/branches/", {"code": "CC", "name": "Core C"}, format="json")

        self.assertEqual(response.status_code, 201)
        log = AuditLog.objects.get(action="branch.create")
        self.assertEqual(str(log.entity_id), response.json()["id"])
        self.assertEqual(log.actor_id, self.admin.id)

    def test_branch_in_use_cannot_be_deleted(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/branches/{self.branch_a.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertTrue(Branch.objects.filter(id=self.branch_a.id).exists())


class UserAdministrationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="UA", name="Users Branch")
        self.admin = self.user_model.objects.create_user(
            username="users-admin",
            password="pass1234",
            branch=self.branch,
            role="admin",
        )
        self.manager = self.user_model.objects.create_user(
            username="users-manager",
            password="pass1234",
            branch=self.branch,
            role="general_manager",
        )

    def _new_user_payload(self, **overrides):
        payload = {
            "username": "new-cashier",
            "email": "New.Cashier@Example.com",
            "first_name": "New",
            "last_name": "Cashier",
            "role": "cashier",
            "branch": str(self.branch.id),
            "password": "Till-Secure-2024!",
        }
        payload.update(overrides)
        return payload

    def test_anonymous_request_is_rejected(self):
        response = self.client.get("/api/v1/users/")

        self.assertEqual(response.status_code, 401)

    def test_non_admin_is_forbidden_and_logged(self):
        self.client.force_authenticate(user=self.manager)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/users/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("capability=user.manage" in line for line in cm.output))

    def test_role_is_rechecked_against_the_database(self):
        self.client.force_authenticate(user=self.admin)
        self.user_model.objects.filter(pk=self.admin.pk).update(role="cashier")

        response = self.client.get("/api/v1/users/")

        self.assertEqual(response.status_code, 403)

    @override_settings(USER_ADMIN_CREDENTIAL="")
    def test_missing_server_credential_returns_configuration_error(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/users/")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["code"], "server_configuration_error")

    def test_admin_can_create_user_and_password_is_not_returned(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/users/", self._new_user_payload(), format="json")

        self.assertEqual(response.status_code, 201)
        self.assertNotIn("password", response.json())
        self.assertEqual(response.json()["email"], "new.cashier@example.com")
        self.assertEqual(response.json()["branch_name"], "Users Branch")
        created = self.user_model.objects.get(username="new-cashier")
        self.assertTrue(created.check_password("Till-Secure-2024!"))
        self.assertTrue(AuditLog.objects.filter(action="user.create", entity_id=created.id).exists())

    def test_create_requires_password(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/users/", self._new_user_payload(password=""), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("password", response.json()["errors"])

    def test_create_rejects_case_insensitive_duplicate_email(self):
        self.user_model.objects.create_user(username="existing", email="dup@example.com", password="pass1234")
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/users/", self._new_user_payload(email="DUP@example.com"), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("email", response.json()["errors"])

    def test_admin_can_change_role_and_password(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(
            f"/api/v1/users/{self.manager.id}/",
            {"role": "branch_manager", "password": "Brand-New-Pass-77"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.manager.refresh_from_db()
        self.assertEqual(self.manager.role, "branch_manager")
        self.assertTrue(self.manager.check_password("Brand-New-Pass-77"))

    def test_admin_can_delete_user_without_history(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/users/{self.manager.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(self.user_model.objects.filter(pk=self.manager.pk).exists())

    def test_user_with_stock_history_cannot_be_deleted(self):
        warehouse = Warehouse.objects.create(name="Users WH", branch=self.branch)
        product = Product.objects.create(unique_reference="USR-1", name="Stapler")
        adjust_stock(product=product, warehouse=warehouse, delta=3, actor=self.manager, reason="opening")
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/users/{self.manager.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")
        self.assertTrue(self.user_model.objects.filter(pk=self.manager.pk).exists())

    def test_admin_cannot_delete_self(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/users/{self.admin.id}/")

        self.assertEqual(response.status_code, 400)


class BusinessSettingsTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="settings-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(username="settings-cashier", password="pass1234", role="cashier")

    def test_any_authenticated_user_can_read_settings(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/settings/business/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency_symbol"], "FCFA")
        self.assertEqual(response.json()["receipt_prefix"], "SAL")

    def test_cashier_cannot_update_settings(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.patch("/api/v1/settings/business/", {"currency_symbol": "$"}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_admin_update_normalizes_prefix_and_is_audited(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(
            "/api/v1/settings/business/",
            {"receipt_prefix": "shop", "currency_symbol": "$", "currency_position": "prefix"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(BusinessSettings.current().receipt_prefix, "SHOP")
        self.assertTrue(AuditLog.objects.filter(action="business_settings.update").exists())

    def test_prefix_must_be_alphanumeric(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch("/api/v1/settings/business/", {"receipt_prefix": "S-1"}, format="json")

        self.assertEqual(response.status_code, 400)


class ReceiptPhraseTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="phrase-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(username="phrase-cashier", password="pass1234", role="cashier")
        ReceiptPhrase.objects.create(phrase_key="thank_you", language="en", text="Thank you for shopping with us")
        ReceiptPhrase.objects.create(phrase_key="thank_you", language="fr", text="Merci de votre visite")

    def test_cashier_reads_phrases_by_language(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/settings/receipt-phrases/", {"language": "fr"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
        self.assertEqual(response.json()["results"][0]["text"], "Merci de votre visite")

    def test_cashier_cannot_write_phrases(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/settings/receipt-phrases/",
            {"phrase_key": "footer", "language": "en", "text": "See you soon"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(ReceiptPhrase.objects.filter(phrase_key="footer").exists())

    def test_admin_creates_phrase_and_is_audited(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/settings/receipt-phrases/",
            {"phrase_key": " Footer ", "language": "en", "text": "See you soon"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["phrase_key"], "footer")
        log = AuditLog.objects.get(action="receipt_phrase.create")
        self.assertEqual(log.entity, "receipt_phrase")
        self.assertEqual(log.after_snapshot["text"], "See you soon")

    def test_key_is_unique_per_language(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/settings/receipt-phrases/",
            {"phrase_key": "thank_you", "language": "en", "text": "Thanks"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertEqual(ReceiptPhrase.objects.filter(phrase_key="thank_you").count(), 2)

    def test_unsupported_language_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/settings/receipt-phrases/",
            {"phrase_key": "footer", "language": "de", "text": "Bis bald"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("language", response.json()["errors"])


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="AL", name="Audit Branch")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            branch=self.branch,
            role="admin",
        )
        self.client.force_authenticate(user=self.admin)
        self.client.post("/api/v1/warehouses/", {"name": "Audited WH", "branch": str(self.branch.id)}, format="json")

    def test_mutation_is_listed_in_audit_logs(self):
        response = self.client.get("/api/v1/admin/audit-logs/", {"entity": "warehouse"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
        self.assertEqual(response.json()["results"][0]["action"], "warehouse.create")
        self.assertEqual(response.json()["results"][0]["actor_username"], "audit-admin")

    def test_audit_logs_are_read_only(self):
        log = AuditLog.objects.first()

        create_response = self.client.post("/api/v1/admin/audit-logs/", {"action": "x"}, format="json")
        delete_response = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(create_response.status_code, 405)
        self.assertEqual(delete_response.status_code, 405)

    def test_audit_logs_export_csv(self):
        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertIn("warehouse.create", response.content.decode())

    def test_impossible_start_date_is_rejected(self):
        response = self.client.get("/api/v1/admin/audit-logs/", {"start_date": "2024-02-30T00:00:00"})

        self.assertEqual(response.status_code, 400)
        self.assertIn("start_date", response.json()["errors"])


class TokenLoginTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user_model.objects.create_user(
            username="login-user",
            email="login@example.com",
            password="pass1234",
            role="stock_controller",
        )

    def test_login_with_email_returns_role_claim(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "LOGIN@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_login_with_wrong_password_is_rejected(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "login-user", "password": "nope"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)


class HealthTests(TestCase):
    def test_health_endpoints_are_public(self):
        client = APIClient()

        self.assertEqual(client.get("/healthz/").status_code, 200)
        self.assertEqual(client.get("/readyz/").json()["status"], "ready")


class SeedDemoDataCommandTests(TestCase):
    def test_seed_is_idempotent(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        cola = Product.objects.get(unique_reference="BEV-COLA-001")
        warehouse = Warehouse.objects.get(name="Main Warehouse")
        self.assertEqual(current_quantity(cola, warehouse), 120)
        self.assertEqual(StockMovement.objects.count(), 2)
        self.assertEqual(get_user_model().objects.filter(username__in=["admin", "cashier"]).count(), 2)
        self.assertEqual(ExpenseCategory.objects.count(), 3)


class RequestLoggingTests(TestCase):
    def test_request_id_is_echoed_on_error_responses(self):
        branch = Branch.objects.create(code="LOG", name="Logging Branch")
        cashier = get_user_model().objects.create_user(
            username="log-cashier",
            password="pass1234",
            branch=branch,
            role="cashier",
        )
        client = APIClient()
        client.force_authenticate(user=cashier)

        response = client.post("/api/v1/branches/", {"code": "X", "name": "X"}, format="json", HTTP_X_REQUEST_ID="req-42")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response["X-Request-ID"], "req-42")

    def test_logs_emitted_during_a_request_carry_its_id(self):
        captured = []

        def view(request):
            record = logging.LogRecord("inventory.ledger", logging.INFO, __file__, 1, "stock_adjusted", None, None)
            RequestIdFilter().filter(record)
            captured.append(record)
            return HttpResponse("ok")

        request = RequestFactory().get("/api/v1/stock/levels/", HTTP_X_REQUEST_ID="req-43")
        response = RequestLogMiddleware(view)(request)

        self.assertEqual(response["X-Request-ID"], "req-43")
        self.assertEqual(json.loads(JsonFormatter().format(captured[0]))["request_id"], "req-43")
        self.assertIsNone(current_request_id())

    def test_list_responses_carry_page_metadata(self):
        admin = get_user_model().objects.create_user(username="page-admin", password="pass1234", role="admin")
        client = APIClient()
        client.force_authenticate(user=admin)

        payload = client.get("/api/v1/branches/", {"page_size": 1}).json()

        self.assertEqual(payload["page"], 1)
        self.assertIn("page_count", payload)
