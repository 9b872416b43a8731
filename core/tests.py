import json
import logging

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIClient

from common.audit import create_audit_log
from common.logging import JsonFormatter
from common.permissions import get_user_role, user_has_capability
from core.models import AuditLog, User


class AuthTokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="butcher",
            email="Butcher@Example.com",
            password="pass1234",
            role=User.Role.MANAGER,
        )

    def test_email_is_normalized_on_save(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.email, "butcher@example.com")

    def test_login_with_username(self):
        response = self.client.post("/api/v1/token/", {"username": "butcher", "password": "pass1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_login_with_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "BUTCHER@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)

    def test_bad_credentials_return_error_envelope(self):
        response = self.client.post("/api/v1/token/", {"username": "butcher", "password": "wrong"}, format="json")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "authentication_failed")
        self.assertEqual(payload["status"], 401)

    def test_access_token_authenticates_api_requests(self):
        tokens = self.client.post("/api/v1/token/", {"username": "butcher", "password": "pass1234"}, format="json").json()

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {tokens['access']}")
        response = self.client.get("/api/v1/meat-items/")

        self.assertEqual(response.status_code, 200)


class AuditLogApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="owner", password="pass1234", role=User.Role.ADMIN)
        self.staff = user_model.objects.create_user(username="counter", password="pass1234", role=User.Role.STAFF)

        self.entry = create_audit_log(
            actor=self.staff,
            action="meat_stock.adjust",
            entity="meat_stock_log",
            after_snapshot={"change": "-3.00"},
            request_id="req-1",
        )
        create_audit_log(actor=self.admin, action="stock_item.create", entity="stock_item")

    def test_admin_can_list_and_filter_audit_logs(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/", {"action": "meat_stock.adjust"})

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([row["id"] for row in results], [str(self.entry.id)])
        self.assertEqual(results[0]["actor_username"], "counter")

    def test_invalid_actor_filter_returns_nothing(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/", {"actor_id": "nope"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["results"], [])

    def test_staff_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_request_id_header_is_recorded(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/stock-items/",
            {"name": "Salt", "category": "spice"},
            format="json",
            HTTP_X_REQUEST_ID="trace-123",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response["X-Request-ID"], "trace-123")
        entry = AuditLog.objects.get(action="stock_item.create", entity_id=response.json()["id"])
        self.assertEqual(entry.request_id, "trace-123")
        self.assertEqual(entry.after_snapshot["name"], "Salt")


class RoleCapabilityTests(TestCase):
    def test_capabilities_follow_role(self):
        user_model = get_user_model()
        staff = user_model.objects.create_user(username="s", password="x", role=User.Role.STAFF)
        manager = user_model.objects.create_user(username="m", password="x", role=User.Role.MANAGER)
        root = user_model.objects.create_superuser(username="root", password="x", email="root@example.com")

        self.assertTrue(user_has_capability(staff, "stock.adjust"))
        self.assertFalse(user_has_capability(staff, "stock.log.edit"))
        self.assertTrue(user_has_capability(manager, "stock.log.edit"))
        self.assertFalse(user_has_capability(manager, "audit.view"))
        self.assertTrue(user_has_capability(root, "audit.view"))
        self.assertEqual(get_user_role(root), User.Role.ADMIN)
        self.assertFalse(user_has_capability(staff, "unknown.capability"))


class JsonFormatterTests(SimpleTestCase):
    def test_structured_fields_are_emitted(self):
        record = logging.LogRecord("stock.services", logging.INFO, __file__, 1, "stock_adjusted", None, None)
        record.item_id = "abc"
        record.change = "-3.00"

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "stock_adjusted")
        self.assertEqual(payload["level"], "INFO")
        self.assertEqual(payload["item_id"], "abc")
        self.assertEqual(payload["change"], "-3.00")
        self.assertNotIn("log_id", payload)
