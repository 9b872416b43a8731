from decimal import Decimal

from rest_framework import serializers

from stock.models import MeatStockItem, MeatStockLog, StockItem


class StockItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = StockItem
        fields = [
            "id",
            "name",
            "category",
            "cost_price",
            "cost_price_baht",
            "wholesale_price",
            "selling_price",
            "current_stock",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]


class MeatStockItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = MeatStockItem
        fields = ["id", "name", "current_stock", "expiry_date", "created_at", "updated_at"]
        read_only_fields = fields


class MeatStockItemCreateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    expiry_date = serializers.DateField(required=False, allow_null=True)
    initial_stock = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), default=Decimal("0"))


class MeatStockItemUpdateSerializer(serializers.Serializer):
    """Only name and expiry date are editable; stock moves go through adjustments."""

    name = serializers.CharField(max_length=255, required=False)
    expiry_date = serializers.DateField(required=False, allow_null=True)

    def validate(self, attrs):
        protected = sorted(set(self.initial_data) - set(self.fields))
        if protected:
            raise serializers.ValidationError({field: "This field cannot be edited directly." for field in protected})
        return attrs


class MeatStockLogSerializer(serializers.ModelSerializer):
    type = serializers.CharField(source="kind", read_only=True)

    class Meta:
        model = MeatStockLog
        fields = ["id", "item_id", "change", "new_stock", "type", "detail", "created_at"]
        read_only_fields = fields


class StockAdjustmentSerializer(serializers.Serializer):
    change = serializers.DecimalField(max_digits=12, decimal_places=2)
    type = serializers.ChoiceField(choices=MeatStockLog.Kind.choices)
    detail = serializers.CharField(required=False, allow_blank=True, default="")

    def validate_change(self, value):
        if value == 0:
            raise serializers.ValidationError("Change must be non-zero.")
        return value


class MeatStockLogUpdateSerializer(serializers.Serializer):
    change = serializers.DecimalField(max_digits=12, decimal_places=2)
    detail = serializers.CharField(allow_blank=True)


class StockReconciliationSerializer(serializers.Serializer):
    item_id = serializers.CharField()
    current_stock = serializers.DecimalField(max_digits=12, decimal_places=2)
    log_total = serializers.DecimalField(max_digits=12, decimal_places=2)
    is_consistent = serializers.BooleanField()
