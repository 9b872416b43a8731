import uuid

from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="StockItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("category", models.CharField(max_length=128)),
                ("cost_price", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("cost_price_baht", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("wholesale_price", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("selling_price", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("current_stock", models.IntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["category", "name"], name="stockitem_category_name_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MeatStockItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("current_stock", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("expiry_date", models.DateField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["created_at"], name="meatitem_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MeatStockLog",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("item_id", models.UUIDField()),
                ("change", models.DecimalField(decimal_places=2, max_digits=12)),
                ("new_stock", models.DecimalField(decimal_places=2, max_digits=12)),
                ("kind", models.CharField(choices=[("stock-in", "Stock in"), ("sale", "Sale")], max_length=16)),
                ("detail", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["item_id", "created_at"], name="meatlog_item_created_idx"),
                    models.Index(fields=["created_at"], name="meatlog_created_idx"),
                ],
            },
        ),
    ]
