import uuid

from django.db import models


class StockItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    category = models.CharField(max_length=128)
    cost_price = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    cost_price_baht = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    wholesale_price = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    selling_price = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    current_stock = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["category", "name"], name="stockitem_category_name_idx"),
        ]


class MeatStockItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    current_stock = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    expiry_date = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["created_at"], name="meatitem_created_idx"),
        ]


class MeatStockLog(models.Model):
    class Kind(models.TextChoices):
        STOCK_IN = "stock-in", "Stock in"
        SALE = "sale", "Sale"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # Plain reference: the ledger owns referential integrity (cascade on item delete).
    item_id = models.UUIDField()
    change = models.DecimalField(max_digits=12, decimal_places=2)
    new_stock = models.DecimalField(max_digits=12, decimal_places=2)
    kind = models.CharField(max_length=16, choices=Kind.choices)
    detail = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["item_id", "created_at"], name="meatlog_item_created_idx"),
            models.Index(fields=["created_at"], name="meatlog_created_idx"),
        ]
