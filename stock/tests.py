import threading
import uuid
from decimal import Decimal
from io import StringIO
from unittest import mock, skipUnless

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import OperationalError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from rest_framework.test import APIClient

from core.models import AuditLog, User
from stock.exceptions import (
    InvariantViolationError,
    ItemNotFoundError,
    LogNotFoundError,
    StoreUnavailableError,
)
from stock.models import MeatStockItem, MeatStockLog, StockItem
from stock.services import INITIAL_STOCK_DETAIL, InventoryLedger
from stock.subscriptions import SubscriptionRegistry

SALE = MeatStockLog.Kind.SALE
STOCK_IN = MeatStockLog.Kind.STOCK_IN


class InventoryLedgerTests(TestCase):
    def setUp(self):
        self.ledger = InventoryLedger(max_attempts=3, retry_backoff=0)
        self.item_id = self.ledger.create_meat_item({"name": "Beef brisket"}, initial_stock=10)

    def _item(self):
        return MeatStockItem.objects.get(id=self.item_id)

    def assertLedgerConsistent(self):
        result = self.ledger.reconcile_item(self.item_id)
        self.assertTrue(result.is_consistent, result)

    def test_create_with_initial_stock_writes_stock_in_log(self):
        item = self._item()
        self.assertEqual(item.current_stock, Decimal("10"))

        logs = MeatStockLog.objects.filter(item_id=self.item_id)
        self.assertEqual(logs.count(), 1)
        log = logs.get()
        self.assertEqual(log.change, Decimal("10"))
        self.assertEqual(log.new_stock, Decimal("10"))
        self.assertEqual(log.kind, STOCK_IN)
        self.assertEqual(log.detail, INITIAL_STOCK_DETAIL)

    def test_create_without_initial_stock_writes_no_log(self):
        item_id = self.ledger.create_meat_item({"name": "Pork belly"})

        self.assertEqual(MeatStockItem.objects.get(id=item_id).current_stock, Decimal("0"))
        self.assertFalse(MeatStockLog.objects.filter(item_id=item_id).exists())

    def test_create_rejects_negative_initial_stock(self):
        with self.assertRaises(InvariantViolationError):
            self.ledger.create_meat_item({"name": "Lamb"}, initial_stock=-1)

        self.assertFalse(MeatStockItem.objects.filter(name="Lamb").exists())

    def test_create_rejects_ledger_owned_fields(self):
        with self.assertRaises(InvariantViolationError) as ctx:
            self.ledger.create_meat_item({"name": "Lamb", "current_stock": 5})

        self.assertEqual(ctx.exception.details["fields"], ["current_stock"])

    def test_sale_adjustment_reduces_stock_and_records_snapshot(self):
        log = self.ledger.adjust_stock(self.item_id, -3, SALE, "Order #12")

        self.assertEqual(self._item().current_stock, Decimal("7"))
        self.assertEqual(log.change, Decimal("-3"))
        self.assertEqual(log.new_stock, Decimal("7"))
        self.assertEqual(log.kind, SALE)
        self.assertEqual(log.detail, "Order #12")
        self.assertLedgerConsistent()

    def test_adjustment_below_zero_leaves_no_trace(self):
        self.ledger.adjust_stock(self.item_id, -3, SALE)

        with self.assertRaises(InvariantViolationError) as ctx:
            self.ledger.adjust_stock(self.item_id, -20, SALE)

        self.assertEqual(ctx.exception.details["current_stock"], "7.00")
        self.assertEqual(self._item().current_stock, Decimal("7"))
        self.assertEqual(MeatStockLog.objects.filter(item_id=self.item_id).count(), 2)
        self.assertLedgerConsistent()

    def test_adjustment_to_exactly_zero_is_allowed(self):
        log = self.ledger.adjust_stock(self.item_id, -10, SALE)

        self.assertEqual(log.new_stock, Decimal("0"))
        self.assertEqual(self._item().current_stock, Decimal("0"))

    def test_adjustment_on_missing_item_raises_not_found(self):
        with self.assertRaises(ItemNotFoundError):
            self.ledger.adjust_stock(uuid.uuid4(), 5, STOCK_IN)

    def test_adjustment_rejects_unknown_kind(self):
        with self.assertRaises(ValueError):
            self.ledger.adjust_stock(self.item_id, 5, "refund")

    def test_delete_log_reverses_its_contribution(self):
        log = self.ledger.adjust_stock(self.item_id, -3, SALE)

        self.ledger.delete_log(log.id, self.item_id)

        self.assertEqual(self._item().current_stock, Decimal("10"))
        self.assertFalse(MeatStockLog.objects.filter(id=log.id).exists())
        self.assertLedgerConsistent()

    def test_delete_log_that_would_make_stock_negative_is_rejected(self):
        initial_log = MeatStockLog.objects.get(item_id=self.item_id)
        self.ledger.adjust_stock(self.item_id, -8, SALE)

        with self.assertRaises(InvariantViolationError):
            self.ledger.delete_log(initial_log.id, self.item_id)

        self.assertEqual(self._item().current_stock, Decimal("2"))
        self.assertTrue(MeatStockLog.objects.filter(id=initial_log.id).exists())

    def test_delete_missing_log_raises_not_found(self):
        with self.assertRaises(LogNotFoundError):
            self.ledger.delete_log(uuid.uuid4(), self.item_id)

        self.assertEqual(self._item().current_stock, Decimal("10"))

    def test_delete_log_of_another_item_raises_not_found(self):
        other_id = self.ledger.create_meat_item({"name": "Chicken thigh"}, initial_stock=4)
        other_log = MeatStockLog.objects.get(item_id=other_id)

        with self.assertRaises(LogNotFoundError):
            self.ledger.delete_log(other_log.id, self.item_id)

        self.assertEqual(MeatStockItem.objects.get(id=other_id).current_stock, Decimal("4"))
        self.assertEqual(self._item().current_stock, Decimal("10"))

    def test_update_sale_log_applies_difference_with_sale_sign(self):
        log = self.ledger.adjust_stock(self.item_id, -3, SALE)

        updated = self.ledger.update_log(log.id, self.item_id, 5, "corrected")

        self.assertEqual(updated.change, Decimal("-5"))
        self.assertEqual(updated.new_stock, Decimal("5"))
        self.assertEqual(updated.detail, "corrected")
        self.assertEqual(self._item().current_stock, Decimal("5"))
        self.assertLedgerConsistent()

    def test_update_stock_in_log_is_always_positive(self):
        initial_log = MeatStockLog.objects.get(item_id=self.item_id)

        updated = self.ledger.update_log(initial_log.id, self.item_id, -12)

        self.assertEqual(updated.change, Decimal("12"))
        self.assertEqual(updated.new_stock, Decimal("12"))
        self.assertEqual(self._item().current_stock, Decimal("12"))

    def test_update_log_only_shifts_its_own_snapshot(self):
        first = MeatStockLog.objects.get(item_id=self.item_id)
        second = self.ledger.adjust_stock(self.item_id, -4, SALE)

        self.ledger.update_log(first.id, self.item_id, 15)

        second.refresh_from_db()
        first.refresh_from_db()
        self.assertEqual(first.new_stock, Decimal("15"))
        self.assertEqual(second.new_stock, Decimal("6"))
        self.assertEqual(self._item().current_stock, Decimal("11"))

    def test_update_log_that_would_make_stock_negative_is_rejected(self):
        initial_log = MeatStockLog.objects.get(item_id=self.item_id)
        self.ledger.adjust_stock(self.item_id, -8, SALE)

        with self.assertRaises(InvariantViolationError):
            self.ledger.update_log(initial_log.id, self.item_id, 5)

        initial_log.refresh_from_db()
        self.assertEqual(initial_log.change, Decimal("10"))
        self.assertEqual(self._item().current_stock, Decimal("2"))

    def test_update_missing_log_raises_not_found(self):
        with self.assertRaises(LogNotFoundError):
            self.ledger.update_log(uuid.uuid4(), self.item_id, 1)

    def test_delete_item_removes_its_logs(self):
        self.ledger.adjust_stock(self.item_id, 5, STOCK_IN)
        other_id = self.ledger.create_meat_item({"name": "Chicken thigh"}, initial_stock=4)

        removed = self.ledger.delete_item(self.item_id)

        self.assertEqual(removed, 2)
        self.assertFalse(MeatStockItem.objects.filter(id=self.item_id).exists())
        self.assertFalse(MeatStockLog.objects.filter(item_id=self.item_id).exists())
        self.assertEqual(MeatStockLog.objects.filter(item_id=other_id).count(), 1)

    def test_delete_missing_item_raises_not_found(self):
        with self.assertRaises(ItemNotFoundError):
            self.ledger.delete_item(uuid.uuid4())

    def test_update_meat_item_changes_descriptive_fields_only(self):
        item = self.ledger.update_meat_item(self.item_id, {"name": "Wagyu brisket"})

        self.assertEqual(item.name, "Wagyu brisket")
        self.assertEqual(self._item().current_stock, Decimal("10"))

        with self.assertRaises(InvariantViolationError):
            self.ledger.update_meat_item(self.item_id, {"current_stock": 99})

        self.assertEqual(self._item().current_stock, Decimal("10"))

    def test_mixed_operations_keep_stock_equal_to_log_sum(self):
        sale = self.ledger.adjust_stock(self.item_id, Decimal("-2.5"), SALE)
        self.ledger.adjust_stock(self.item_id, Decimal("7.25"), STOCK_IN)
        self.ledger.update_log(sale.id, self.item_id, Decimal("1.5"))
        restock = self.ledger.adjust_stock(self.item_id, 3, STOCK_IN)
        self.ledger.delete_log(restock.id, self.item_id)

        result = self.ledger.reconcile_item(self.item_id)
        self.assertTrue(result.is_consistent)
        self.assertEqual(result.current_stock, Decimal("15.75"))

    def test_reconcile_reports_drift(self):
        MeatStockItem.objects.filter(id=self.item_id).update(current_stock=Decimal("12"))

        result = self.ledger.reconcile_item(self.item_id)

        self.assertFalse(result.is_consistent)
        self.assertEqual(result.log_total, Decimal("10"))

    def test_contention_is_retried(self):
        calls = []
        original = self.ledger._adjust_stock

        def flaky(*args):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("deadlock detected")
            return original(*args)

        self.ledger._adjust_stock = flaky
        log = self.ledger.adjust_stock(self.item_id, -1, SALE)

        self.assertEqual(len(calls), 2)
        self.assertEqual(log.new_stock, Decimal("9"))
        self.assertEqual(MeatStockLog.objects.filter(item_id=self.item_id).count(), 2)

    def test_exhausted_retries_raise_store_unavailable(self):
        calls = []

        def always_busy(*args):
            calls.append(args)
            raise OperationalError("could not serialize access")

        self.ledger._adjust_stock = always_busy
        with self.assertRaises(StoreUnavailableError) as ctx:
            self.ledger.adjust_stock(self.item_id, -1, SALE)

        self.assertEqual(len(calls), 3)
        self.assertEqual(ctx.exception.details["attempts"], 3)
        self.assertEqual(self._item().current_stock, Decimal("10"))

    def test_invariant_violations_are_not_retried(self):
        calls = []
        original = self.ledger._adjust_stock

        def counting(*args):
            calls.append(args)
            return original(*args)

        self.ledger._adjust_stock = counting
        with self.assertRaises(InvariantViolationError):
            self.ledger.adjust_stock(self.item_id, -50, SALE)

        self.assertEqual(len(calls), 1)

    def test_malformed_ids_are_reported_as_not_found(self):
        malformed = "-" * 36

        with self.assertRaises(ItemNotFoundError):
            self.ledger.adjust_stock(malformed, 5, STOCK_IN)
        with self.assertRaises(ItemNotFoundError):
            self.ledger.reconcile_item(malformed)
        with self.assertRaises(ItemNotFoundError):
            self.ledger.delete_item(malformed)
        with self.assertRaises(LogNotFoundError):
            self.ledger.delete_log("bad", self.item_id)
        with self.assertRaises(LogNotFoundError):
            self.ledger.update_log("bad", self.item_id, 1)
        with self.assertRaises(ItemNotFoundError):
            self.ledger.delete_stock_item(malformed)
        self.assertIsNone(self.ledger.get_meat_item(malformed))
        self.assertEqual(self.ledger.list_meat_logs(malformed), [])
        self.assertEqual(self._item().current_stock, Decimal("10"))

    def test_zero_change_is_recorded_without_moving_stock(self):
        log = self.ledger.adjust_stock(self.item_id, 0, STOCK_IN, "recount")

        self.assertEqual(log.change, Decimal("0"))
        self.assertEqual(log.new_stock, Decimal("10"))
        self.assertLedgerConsistent()

    def test_ledger_operations_lock_the_item_inside_their_transaction(self):
        sale = self.ledger.adjust_stock(self.item_id, -2, SALE)
        baseline_depth = len(connection.savepoint_ids)
        lock_depths = []
        select_for_update = MeatStockItem.objects.select_for_update

        def recording_select_for_update(*args, **kwargs):
            lock_depths.append(len(connection.savepoint_ids))
            return select_for_update(*args, **kwargs)

        operations = [
            lambda: self.ledger.adjust_stock(self.item_id, 1, STOCK_IN),
            lambda: self.ledger.update_log(sale.id, self.item_id, 3),
            lambda: self.ledger.delete_log(sale.id, self.item_id),
            lambda: self.ledger.update_meat_item(self.item_id, {"name": "Brisket"}),
            lambda: self.ledger.reconcile_item(self.item_id),
            lambda: self.ledger.delete_item(self.item_id),
        ]
        with mock.patch.object(MeatStockItem.objects, "select_for_update", side_effect=recording_select_for_update):
            for operation in operations:
                lock_depths.clear()
                operation()
                self.assertEqual(len(lock_depths), 1, operation)
                self.assertGreater(lock_depths[0], baseline_depth, operation)

    def test_stock_item_crud(self):
        salt = self.ledger.create_stock_item({"name": "Salt", "category": "spice", "current_stock": 3})
        self.ledger.create_stock_item({"name": "Charcoal", "category": "fuel"})

        self.assertEqual([item.name for item in self.ledger.list_stock_items()], ["Charcoal", "Salt"])

        updated = self.ledger.update_stock_item(salt.id, {"current_stock": 8, "selling_price": Decimal("1.50")})
        self.assertEqual(updated.current_stock, 8)

        self.ledger.delete_stock_item(salt.id)
        self.assertFalse(StockItem.objects.filter(id=salt.id).exists())
        with self.assertRaises(ItemNotFoundError):
            self.ledger.delete_stock_item(salt.id)


class LedgerSubscriptionTests(TestCase):
    def setUp(self):
        self.ledger = InventoryLedger(max_attempts=1, retry_backoff=0)
        self.item_id = self.ledger.create_meat_item({"name": "Beef brisket"}, initial_stock=10)

    def test_listener_receives_initial_snapshot(self):
        snapshots = []

        self.ledger.listen_to_meat_logs(self.item_id, snapshots.append)

        self.assertEqual(len(snapshots), 1)
        self.assertEqual([log.change for log in snapshots[0]], [Decimal("10")])

    def test_committed_adjustment_is_published(self):
        items = []
        logs = []
        self.ledger.listen_to_meat_item(self.item_id, items.append)
        self.ledger.listen_to_all_meat_logs(logs.append)

        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.adjust_stock(self.item_id, -3, SALE)

        self.assertEqual(len(items), 2)
        self.assertEqual(items[-1].current_stock, Decimal("7"))
        self.assertEqual(len(logs[-1]), 2)

    def test_failed_adjustment_publishes_nothing(self):
        items = []
        self.ledger.listen_to_meat_items(items.append)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(InvariantViolationError):
                self.ledger.adjust_stock(self.item_id, -20, SALE)

        self.assertEqual(callbacks, [])
        self.assertEqual(len(items), 1)

    def test_disposed_listener_stops_receiving(self):
        items = []
        dispose = self.ledger.listen_to_meat_items(items.append)
        dispose()
        dispose()

        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.adjust_stock(self.item_id, 1, STOCK_IN)

        self.assertEqual(len(items), 1)
        self.assertEqual(self.ledger.subscriptions.subscriber_count(), 0)

    def test_item_listener_sees_deletion(self):
        items = []
        self.ledger.listen_to_meat_item(self.item_id, items.append)

        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.delete_item(self.item_id)

        self.assertIsNone(items[-1])

    def test_stock_item_listener(self):
        snapshots = []
        self.ledger.listen_to_stock_items(snapshots.append)

        with self.captureOnCommitCallbacks(execute=True):
            self.ledger.create_stock_item({"name": "Salt", "category": "spice"})

        self.assertEqual(snapshots[0], [])
        self.assertEqual([item.name for item in snapshots[-1]], ["Salt"])


class SubscriptionRegistryTests(SimpleTestCase):
    def test_failing_observer_does_not_block_others(self):
        registry = SubscriptionRegistry()
        received = []

        def broken(_snapshot):
            raise RuntimeError("observer failed")

        with self.assertLogs("stock.subscriptions", level="ERROR"):
            registry.register("topic", broken, lambda: "snapshot")
        registry.register("topic", received.append, lambda: "snapshot")

        with self.assertLogs("stock.subscriptions", level="ERROR"):
            registry.publish("topic")

        self.assertEqual(received, ["snapshot", "snapshot"])

    def test_publish_only_reaches_matching_topics(self):
        registry = SubscriptionRegistry()
        received = []
        registry.register(("meat_logs", "a"), received.append, lambda: "a")
        registry.register(("meat_logs", "b"), received.append, lambda: "b")

        registry.publish(("meat_logs", "b"))

        self.assertEqual(received, ["a", "b", "b"])
        self.assertEqual(registry.subscriber_count(("meat_logs", "a")), 1)


class StockApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.staff = self.user_model.objects.create_user(username="staff", password="pass1234", role=User.Role.STAFF)
        self.manager = self.user_model.objects.create_user(
            username="manager",
            password="pass1234",
            role=User.Role.MANAGER,
        )

        self.client.force_authenticate(user=self.manager)
        response = self.client.post("/api/v1/meat-items/", {"name": "Beef brisket", "initial_stock": "10"}, format="json")
        self.assertEqual(response.status_code, 201)
        self.item_id = response.json()["id"]

    def test_create_returns_item_with_initial_log(self):
        item = self.client.get(f"/api/v1/meat-items/{self.item_id}/").json()
        self.assertEqual(item["current_stock"], "10.00")

        logs = self.client.get(f"/api/v1/meat-items/{self.item_id}/logs/").json()
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["type"], "stock-in")
        self.assertEqual(logs[0]["new_stock"], "10.00")
        self.assertTrue(AuditLog.objects.filter(action="meat_stock_item.create", entity_id=self.item_id).exists())

    def test_staff_can_adjust_stock(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post(
            f"/api/v1/meat-items/{self.item_id}/adjust/",
            {"change": "-3", "type": "sale", "detail": "Walk-in"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["change"], "-3.00")
        self.assertEqual(payload["new_stock"], "7.00")
        self.assertEqual(payload["type"], "sale")
        self.assertTrue(AuditLog.objects.filter(action="meat_stock.adjust", actor=self.staff).exists())

    def test_negative_stock_returns_conflict_envelope(self):
        response = self.client.post(
            f"/api/v1/meat-items/{self.item_id}/adjust/",
            {"change": "-20", "type": "sale"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "invariant_violation")
        self.assertEqual(payload["status"], 409)
        self.assertEqual(MeatStockItem.objects.get(id=self.item_id).current_stock, Decimal("10"))

    def test_adjust_missing_item_returns_not_found(self):
        response = self.client.post(
            f"/api/v1/meat-items/{uuid.uuid4()}/adjust/",
            {"change": "5", "type": "stock-in"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_malformed_item_id_returns_not_found_on_every_route(self):
        malformed = "-" * 36

        adjust = self.client.post(
            f"/api/v1/meat-items/{malformed}/adjust/",
            {"change": "5", "type": "stock-in"},
            format="json",
        )
        reconcile = self.client.get(f"/api/v1/meat-items/{malformed}/reconcile/")
        retrieve = self.client.get(f"/api/v1/meat-items/{malformed}/")

        for response in (adjust, reconcile, retrieve):
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["code"], "not_found")

    def test_zero_change_is_rejected(self):
        response = self.client.post(
            f"/api/v1/meat-items/{self.item_id}/adjust/",
            {"change": "0", "type": "sale"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_patch_cannot_write_current_stock(self):
        response = self.client.patch(
            f"/api/v1/meat-items/{self.item_id}/",
            {"name": "Brisket", "current_stock": "99"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("current_stock", response.json()["errors"])
        item = MeatStockItem.objects.get(id=self.item_id)
        self.assertEqual(item.name, "Beef brisket")
        self.assertEqual(item.current_stock, Decimal("10"))

    def test_patch_updates_name_and_expiry(self):
        response = self.client.patch(
            f"/api/v1/meat-items/{self.item_id}/",
            {"name": "Brisket", "expiry_date": "2026-11-01"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["expiry_date"], "2026-11-01")

    def test_staff_cannot_edit_or_delete_logs(self):
        log = MeatStockLog.objects.get(item_id=self.item_id)
        self.client.force_authenticate(user=self.staff)

        patch_response = self.client.patch(f"/api/v1/meat-logs/{log.id}/", {"change": "4", "detail": ""}, format="json")
        delete_response = self.client.delete(f"/api/v1/meat-logs/{log.id}/")

        self.assertEqual(patch_response.status_code, 403)
        self.assertEqual(delete_response.status_code, 403)
        self.assertEqual(patch_response.json()["code"], "permission_denied")

    def test_manager_edits_and_deletes_logs(self):
        self.client.post(f"/api/v1/meat-items/{self.item_id}/adjust/", {"change": "-3", "type": "sale"}, format="json")
        sale = MeatStockLog.objects.get(item_id=self.item_id, kind=SALE)

        response = self.client.patch(f"/api/v1/meat-logs/{sale.id}/", {"change": "5", "detail": "recount"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["change"], "-5.00")
        self.assertEqual(MeatStockItem.objects.get(id=self.item_id).current_stock, Decimal("5"))

        response = self.client.delete(f"/api/v1/meat-logs/{sale.id}/")
        self.assertEqual(response.status_code, 204)
        self.assertEqual(MeatStockItem.objects.get(id=self.item_id).current_stock, Decimal("10"))

        reconcile = self.client.get(f"/api/v1/meat-items/{self.item_id}/reconcile/").json()
        self.assertTrue(reconcile["is_consistent"])

    def test_log_listing_filters_by_item(self):
        other = self.client.post("/api/v1/meat-items/", {"name": "Pork", "initial_stock": "2"}, format="json").json()

        response = self.client.get("/api/v1/meat-logs/", {"item": other["id"]})

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([log["item_id"] for log in results], [other["id"]])

        bad = self.client.get("/api/v1/meat-logs/", {"item": "not-a-uuid"})
        self.assertEqual(bad.status_code, 400)

    def test_delete_item_cascades_logs(self):
        response = self.client.delete(f"/api/v1/meat-items/{self.item_id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(MeatStockLog.objects.filter(item_id=self.item_id).exists())
        audit = AuditLog.objects.get(action="meat_stock_item.delete")
        self.assertEqual(audit.before_snapshot["removed_logs"], 1)

    def test_staff_cannot_create_items(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post("/api/v1/meat-items/", {"name": "Lamb"}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_stock_items_are_listed_by_name_and_patchable(self):
        self.client.post("/api/v1/stock-items/", {"name": "Salt", "category": "spice"}, format="json")
        created = self.client.post(
            "/api/v1/stock-items/",
            {"name": "Charcoal", "category": "fuel", "cost_price_baht": "12.50"},
            format="json",
        )
        self.assertEqual(created.status_code, 201)

        listing = self.client.get("/api/v1/stock-items/").json()
        self.assertEqual([item["name"] for item in listing["results"]], ["Charcoal", "Salt"])

        response = self.client.patch(f"/api/v1/stock-items/{created.json()['id']}/", {"current_stock": 4}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["current_stock"], 4)

        filtered = self.client.get("/api/v1/stock-items/", {"category": "spice"}).json()
        self.assertEqual([item["name"] for item in filtered["results"]], ["Salt"])

    def test_unauthenticated_requests_are_rejected(self):
        self.client.force_authenticate(user=None)

        response = self.client.get("/api/v1/meat-items/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")


class CheckStockLedgerCommandTests(TestCase):
    def setUp(self):
        self.ledger = InventoryLedger(retry_backoff=0)
        self.item_id = self.ledger.create_meat_item({"name": "Beef brisket"}, initial_stock=10)
        self.ledger.adjust_stock(self.item_id, -4, SALE)

    def test_consistent_ledger_passes(self):
        out = StringIO()

        call_command("check_stock_ledger", stdout=out)

        self.assertIn("All meat stock items match their logs.", out.getvalue())

    def test_drift_fails_the_command(self):
        MeatStockItem.objects.filter(id=self.item_id).update(current_stock=Decimal("9"))
        out = StringIO()

        with self.assertRaises(CommandError):
            call_command("check_stock_ledger", stdout=out)

        self.assertIn(str(self.item_id), out.getvalue())

    def test_unknown_item_fails_the_command(self):
        with self.assertRaises(CommandError):
            call_command("check_stock_ledger", "--item", str(uuid.uuid4()), stdout=StringIO())


@skipUnless(connection.features.has_select_for_update, "Needs a database with row-level locks.")
class LedgerConcurrencyTests(TransactionTestCase):
    def setUp(self):
        self.ledger = InventoryLedger(max_attempts=5, retry_backoff=0.01)
        self.item_id = self.ledger.create_meat_item({"name": "Beef brisket"}, initial_stock=10)

    def _start(self, target, *args):
        errors = []

        def run():
            try:
                target(*args)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        thread = threading.Thread(target=run)
        thread.start()
        return thread, errors

    def test_adjustment_waits_for_running_reconciliation(self):
        item_locked = threading.Event()
        release = threading.Event()
        results = []
        reconciler = InventoryLedger(max_attempts=1, retry_backoff=0)
        lock_item = reconciler._lock_item

        def lock_and_hold(item_id):
            item = lock_item(item_id)
            item_locked.set()
            release.wait(timeout=5)
            return item

        reconciler._lock_item = lock_and_hold

        reconciling, reconcile_errors = self._start(lambda: results.append(reconciler.reconcile_item(self.item_id)))
        self.assertTrue(item_locked.wait(timeout=5))
        adjusting, adjust_errors = self._start(self.ledger.adjust_stock, self.item_id, -3, SALE)

        adjusting.join(timeout=0.3)
        self.assertTrue(adjusting.is_alive())
        release.set()
        reconciling.join(timeout=5)
        adjusting.join(timeout=5)

        self.assertEqual(reconcile_errors + adjust_errors, [])
        self.assertTrue(results[0].is_consistent)
        self.assertEqual(results[0].current_stock, Decimal("10"))
        self.assertEqual(MeatStockItem.objects.get(id=self.item_id).current_stock, Decimal("7"))

    def test_concurrent_sales_keep_stock_equal_to_log_sum(self):
        started = [self._start(self.ledger.adjust_stock, self.item_id, -1, SALE) for _ in range(8)]
        for thread, _ in started:
            thread.join(timeout=10)

        self.assertEqual([error for _, errors in started for error in errors], [])
        result = self.ledger.reconcile_item(self.item_id)
        self.assertTrue(result.is_consistent)
        self.assertEqual(result.current_stock, Decimal("2"))
        self.assertEqual(MeatStockLog.objects.filter(item_id=self.item_id, kind=SALE).count(), 8)
