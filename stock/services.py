import logging
import time
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import TypedDict

from django.apps import apps
from django.conf import settings
from django.db import OperationalError, transaction
from django.db.models import Sum

from stock.exceptions import (
    InvariantViolationError,
    ItemNotFoundError,
    LogNotFoundError,
    StoreUnavailableError,
)
from stock.models import MeatStockItem, MeatStockLog, StockItem
from stock.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

QUANTITY_QUANT = Decimal("0.01")
INITIAL_STOCK_DETAIL = "Initial stock"

MEAT_ITEMS_TOPIC = "meat_items"
ALL_MEAT_LOGS_TOPIC = "meat_logs"
STOCK_ITEMS_TOPIC = "stock_items"


class MeatItemFields(TypedDict, total=False):
    name: str
    expiry_date: date | None


class MeatItemPatch(TypedDict, total=False):
    name: str
    expiry_date: date | None


class StockItemFields(TypedDict, total=False):
    name: str
    category: str
    cost_price: Decimal
    cost_price_baht: Decimal
    wholesale_price: Decimal
    selling_price: Decimal
    current_stock: int


class StockItemPatch(TypedDict, total=False):
    name: str
    category: str
    cost_price: Decimal
    cost_price_baht: Decimal
    wholesale_price: Decimal
    selling_price: Decimal
    current_stock: int


@dataclass
class StockReconciliation:
    item_id: str
    current_stock: Decimal
    log_total: Decimal
    is_consistent: bool


def _to_quantity(value):
    return Decimal(str(value)).quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)


def _checked_fields(values, allowed):
    """Reject keys outside ``allowed`` so no patch can write ledger-owned fields."""
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise InvariantViolationError(
            "These fields cannot be written directly.",
            {"fields": unknown},
        )
    return dict(values)


def _parse_id(value):
    """Return ``value`` as a UUID, or None when it is not one."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _item_topic(item_id):
    return ("meat_item", str(item_id))


def _logs_topic(item_id):
    return ("meat_logs", str(item_id))


def get_ledger():
    return apps.get_app_config("stock").ledger


class InventoryLedger:
    """Keeps meat stock counts consistent with their log entries.

    For every meat item, ``current_stock`` equals the sum of ``change`` over
    the item's logs. Each mutation locks the item row, validates, and writes
    the item and its logs in a single transaction. Contention errors from the
    database are retried a bounded number of times.
    """

    def __init__(self, *, max_attempts=None, retry_backoff=None, subscriptions=None):
        self.max_attempts = max_attempts or getattr(settings, "LEDGER_TRANSACTION_MAX_ATTEMPTS", 3)
        if retry_backoff is None:
            retry_backoff = getattr(settings, "LEDGER_RETRY_BACKOFF_SECONDS", 0.05)
        self.retry_backoff = retry_backoff
        self.subscriptions = subscriptions or SubscriptionRegistry()

    # Transactions

    def _atomic(self, operation, *args, **kwargs):
        for attempt in range(1, self.max_attempts + 1):
            try:
                with transaction.atomic():
                    return operation(*args, **kwargs)
            except OperationalError as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "ledger_transaction_failed",
                        extra={"operation": getattr(operation, "__name__", repr(operation)), "attempt": attempt},
                    )
                    raise StoreUnavailableError(
                        "The stock store is unavailable, try again later.",
                        {"attempts": attempt},
                    ) from exc
                logger.warning(
                    "ledger_transaction_retry",
                    extra={"operation": getattr(operation, "__name__", repr(operation)), "attempt": attempt},
                )
                time.sleep(self.retry_backoff * attempt)

    def _publish_on_commit(self, *topics):
        transaction.on_commit(lambda: self.subscriptions.publish(*topics))

    def _lock_item(self, item_id):
        item_uuid = _parse_id(item_id)
        item = None
        if item_uuid is not None:
            item = MeatStockItem.objects.select_for_update().filter(id=item_uuid).first()
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    def _lock_log(self, log_id, item_id):
        log_uuid = _parse_id(log_id)
        log = None
        if log_uuid is not None:
            log = MeatStockLog.objects.select_for_update().filter(id=log_uuid).first()
        if log is None or str(log.item_id) != str(item_id):
            raise LogNotFoundError(log_id, {"item_id": str(item_id)})
        return log

    # Meat stock ledger

    def create_meat_item(self, fields: MeatItemFields, initial_stock=0):
        fields = _checked_fields(fields, MeatItemFields.__optional_keys__)
        if not fields.get("name"):
            raise ValueError("A meat stock item needs a name.")
        initial_stock = _to_quantity(initial_stock)
        if initial_stock < 0:
            raise InvariantViolationError("Initial stock cannot be negative.", {"initial_stock": str(initial_stock)})

        item = self._atomic(self._create_meat_item, fields, initial_stock)
        logger.info("meat_item_created", extra={"item_id": str(item.id), "new_stock": str(initial_stock)})
        self._publish_on_commit(MEAT_ITEMS_TOPIC, _item_topic(item.id), _logs_topic(item.id), ALL_MEAT_LOGS_TOPIC)
        return item.id

    def _create_meat_item(self, fields, initial_stock):
        item = MeatStockItem.objects.create(current_stock=initial_stock, **fields)
        if initial_stock > 0:
            MeatStockLog.objects.create(
                item_id=item.id,
                change=initial_stock,
                new_stock=initial_stock,
                kind=MeatStockLog.Kind.STOCK_IN,
                detail=INITIAL_STOCK_DETAIL,
            )
        return item

    def update_meat_item(self, item_id, patch: MeatItemPatch):
        patch = _checked_fields(patch, MeatItemPatch.__optional_keys__)
        item = self._atomic(self._update_meat_item, item_id, patch)
        self._publish_on_commit(MEAT_ITEMS_TOPIC, _item_topic(item_id))
        return item

    def _update_meat_item(self, item_id, patch):
        item = self._lock_item(item_id)
        if not patch:
            return item
        for field, value in patch.items():
            setattr(item, field, value)
        item.save(update_fields=[*patch.keys(), "updated_at"])
        return item

    def adjust_stock(self, item_id, change, kind, detail=""):
        if kind not in MeatStockLog.Kind.values:
            raise ValueError(f"Unknown stock log kind {kind!r}.")

        log = self._atomic(self._adjust_stock, item_id, _to_quantity(change), kind, detail)
        logger.info(
            "stock_adjusted",
            extra={"item_id": str(item_id), "log_id": str(log.id), "change": str(log.change), "new_stock": str(log.new_stock)},
        )
        self._publish_on_commit(MEAT_ITEMS_TOPIC, _item_topic(item_id), _logs_topic(item_id), ALL_MEAT_LOGS_TOPIC)
        return log

    def _adjust_stock(self, item_id, change, kind, detail):
        item = self._lock_item(item_id)
        new_stock = item.current_stock + change
        if new_stock < 0:
            raise InvariantViolationError(
                "Stock cannot be negative.",
                {"current_stock": str(item.current_stock), "change": str(change)},
            )

        item.current_stock = new_stock
        item.save(update_fields=["current_stock", "updated_at"])
        return MeatStockLog.objects.create(
            item_id=item.id,
            change=change,
            new_stock=new_stock,
            kind=kind,
            detail=detail,
        )

    def delete_log(self, log_id, item_id):
        reversal = self._atomic(self._delete_log, log_id, item_id)
        logger.info("stock_log_deleted", extra={"item_id": str(item_id), "log_id": str(log_id), "change": str(reversal)})
        self._publish_on_commit(MEAT_ITEMS_TOPIC, _item_topic(item_id), _logs_topic(item_id), ALL_MEAT_LOGS_TOPIC)

    def _delete_log(self, log_id, item_id):
        item = self._lock_item(item_id)
        log = self._lock_log(log_id, item_id)

        reversal = -log.change
        new_stock = item.current_stock + reversal
        if new_stock < 0:
            raise InvariantViolationError(
                "Removing this entry would make stock negative.",
                {"current_stock": str(item.current_stock), "change": str(reversal)},
            )

        item.current_stock = new_stock
        item.save(update_fields=["current_stock", "updated_at"])
        log.delete()
        return reversal

    def update_log(self, log_id, item_id, change, detail=""):
        log = self._atomic(self._update_log, log_id, item_id, _to_quantity(change), detail)
        logger.info(
            "stock_log_updated",
            extra={"item_id": str(item_id), "log_id": str(log_id), "change": str(log.change), "new_stock": str(log.new_stock)},
        )
        self._publish_on_commit(MEAT_ITEMS_TOPIC, _item_topic(item_id), _logs_topic(item_id), ALL_MEAT_LOGS_TOPIC)
        return log

    def _update_log(self, log_id, item_id, change, detail):
        item = self._lock_item(item_id)
        log = self._lock_log(log_id, item_id)

        signed_change = -abs(change) if log.kind == MeatStockLog.Kind.SALE else abs(change)
        difference = signed_change - log.change
        new_stock = item.current_stock + difference
        if new_stock < 0:
            raise InvariantViolationError(
                "Stock cannot be negative.",
                {"current_stock": str(item.current_stock), "change": str(difference)},
            )

        item.current_stock = new_stock
        item.save(update_fields=["current_stock", "updated_at"])

        log.change = signed_change
        log.detail = detail
        # Snapshot is shifted by the same difference, not recomputed.
        log.new_stock = log.new_stock + difference
        log.save(update_fields=["change", "detail", "new_stock"])
        return log

    def delete_item(self, item_id):
        removed_logs = self._atomic(self._delete_item, item_id)
        logger.info("meat_item_deleted", extra={"item_id": str(item_id), "removed_logs": removed_logs})
        self._publish_on_commit(MEAT_ITEMS_TOPIC, _item_topic(item_id), _logs_topic(item_id), ALL_MEAT_LOGS_TOPIC)
        return removed_logs

    def _delete_item(self, item_id):
        item = self._lock_item(item_id)
        removed_logs, _ = MeatStockLog.objects.filter(item_id=item.id).delete()
        item.delete()
        return removed_logs

    def get_meat_item(self, item_id):
        item_uuid = _parse_id(item_id)
        if item_uuid is None:
            return None
        return MeatStockItem.objects.filter(id=item_uuid).first()

    def list_meat_items(self):
        return list(MeatStockItem.objects.order_by("-created_at"))

    def list_meat_logs(self, item_id=None):
        logs = MeatStockLog.objects.order_by("-created_at")
        if item_id is not None:
            item_uuid = _parse_id(item_id)
            if item_uuid is None:
                return []
            logs = logs.filter(item_id=item_uuid)
        return list(logs)

    def reconcile_item(self, item_id):
        return self._atomic(self._reconcile_item, item_id)

    def _reconcile_item(self, item_id):
        # Same row lock as the mutators, so the count and the log sum come from one state.
        item = self._lock_item(item_id)
        log_total = MeatStockLog.objects.filter(item_id=item.id).aggregate(total=Sum("change"))["total"] or Decimal("0")
        log_total = _to_quantity(log_total)
        current_stock = _to_quantity(item.current_stock)
        return StockReconciliation(
            item_id=str(item.id),
            current_stock=current_stock,
            log_total=log_total,
            is_consistent=current_stock == log_total,
        )

    # Generic stock items

    def create_stock_item(self, fields: StockItemFields):
        fields = _checked_fields(fields, StockItemFields.__optional_keys__)
        item = StockItem.objects.create(**fields)
        logger.info("stock_item_created", extra={"item_id": str(item.id)})
        self._publish_on_commit(STOCK_ITEMS_TOPIC)
        return item

    def update_stock_item(self, item_id, patch: StockItemPatch):
        patch = _checked_fields(patch, StockItemPatch.__optional_keys__)
        item_uuid = _parse_id(item_id)
        item = StockItem.objects.filter(id=item_uuid).first() if item_uuid is not None else None
        if item is None:
            raise ItemNotFoundError(item_id)
        if patch:
            for field, value in patch.items():
                setattr(item, field, value)
            item.save(update_fields=[*patch.keys(), "updated_at"])
        self._publish_on_commit(STOCK_ITEMS_TOPIC)
        return item

    def delete_stock_item(self, item_id):
        item_uuid = _parse_id(item_id)
        deleted = 0
        if item_uuid is not None:
            deleted, _ = StockItem.objects.filter(id=item_uuid).delete()
        if not deleted:
            raise ItemNotFoundError(item_id)
        logger.info("stock_item_deleted", extra={"item_id": str(item_id)})
        self._publish_on_commit(STOCK_ITEMS_TOPIC)

    def list_stock_items(self):
        return list(StockItem.objects.order_by("name"))

    # Listeners

    def listen_to_meat_items(self, callback):
        return self.subscriptions.register(MEAT_ITEMS_TOPIC, callback, self.list_meat_items)

    def listen_to_meat_item(self, item_id, callback):
        return self.subscriptions.register(_item_topic(item_id), callback, lambda: self.get_meat_item(item_id))

    def listen_to_meat_logs(self, item_id, callback):
        return self.subscriptions.register(_logs_topic(item_id), callback, lambda: self.list_meat_logs(item_id))

    def listen_to_all_meat_logs(self, callback):
        return self.subscriptions.register(ALL_MEAT_LOGS_TOPIC, callback, self.list_meat_logs)

    def listen_to_stock_items(self, callback):
        return self.subscriptions.register(STOCK_ITEMS_TOPIC, callback, self.list_stock_items)
