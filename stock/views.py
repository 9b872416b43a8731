import uuid

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from stock.models import MeatStockItem, MeatStockLog, StockItem
from stock.serializers import (
    MeatStockItemCreateSerializer,
    MeatStockItemSerializer,
    MeatStockItemUpdateSerializer,
    MeatStockLogSerializer,
    MeatStockLogUpdateSerializer,
    StockAdjustmentSerializer,
    StockItemSerializer,
    StockReconciliationSerializer,
)
from stock.services import get_ledger

UUID_LOOKUP_REGEX = "[0-9a-fA-F-]{36}"


class LedgerAuditMixin:
    audit_entity = None

    def _audit(self, *, action, entity_id, before_snapshot=None, after_snapshot=None, entity=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=entity or self.audit_entity,
            entity_id=entity_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )


class StockItemViewSet(LedgerAuditMixin, viewsets.ModelViewSet):
    queryset = StockItem.objects.order_by("name")
    serializer_class = StockItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "stock.view",
        "retrieve": "stock.view",
        "create": "stock.manage",
        "partial_update": "stock.manage",
        "destroy": "stock.manage",
    }
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    lookup_value_regex = UUID_LOOKUP_REGEX
    audit_entity = "stock_item"

    def get_queryset(self):
        queryset = super().get_queryset()
        category = self.request.query_params.get("category")
        if category:
            queryset = queryset.filter(category=category)
        return queryset

    def perform_create(self, serializer):
        serializer.instance = get_ledger().create_stock_item(serializer.validated_data)
        self._audit(action="stock_item.create", entity_id=serializer.instance.id, after_snapshot=serializer.data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        serializer.instance = get_ledger().update_stock_item(serializer.instance.id, serializer.validated_data)
        self._audit(
            action="stock_item.update",
            entity_id=serializer.instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(serializer.instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        get_ledger().delete_stock_item(instance.id)
        self._audit(action="stock_item.delete", entity_id=instance.id, before_snapshot=before_snapshot)


class MeatStockItemViewSet(LedgerAuditMixin, viewsets.ModelViewSet):
    queryset = MeatStockItem.objects.order_by("-created_at")
    serializer_class = MeatStockItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "stock.view",
        "retrieve": "stock.view",
        "logs": "stock.view",
        "reconcile": "stock.view",
        "create": "stock.manage",
        "partial_update": "stock.manage",
        "destroy": "stock.manage",
        "adjust": "stock.adjust",
    }
    http_method_names = ["get", "post", "patch", "delete", "head", "options"]
    lookup_value_regex = UUID_LOOKUP_REGEX
    audit_entity = "meat_stock_item"

    def get_serializer_class(self):
        if self.action == "create":
            return MeatStockItemCreateSerializer
        if self.action == "partial_update":
            return MeatStockItemUpdateSerializer
        if self.action == "adjust":
            return StockAdjustmentSerializer
        return super().get_serializer_class()

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        fields = dict(serializer.validated_data)
        initial_stock = fields.pop("initial_stock")

        item_id = get_ledger().create_meat_item(fields, initial_stock)
        payload = MeatStockItemSerializer(MeatStockItem.objects.get(id=item_id)).data
        self._audit(action="meat_stock_item.create", entity_id=item_id, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    def partial_update(self, request, *args, **kwargs):
        item = self.get_object()
        before_snapshot = MeatStockItemSerializer(item).data
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        item = get_ledger().update_meat_item(item.id, serializer.validated_data)
        payload = MeatStockItemSerializer(item).data
        self._audit(action="meat_stock_item.update", entity_id=item.id, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    def destroy(self, request, *args, **kwargs):
        item = self.get_object()
        before_snapshot = MeatStockItemSerializer(item).data
        removed_logs = get_ledger().delete_item(item.id)
        self._audit(
            action="meat_stock_item.delete",
            entity_id=item.id,
            before_snapshot={**before_snapshot, "removed_logs": removed_logs},
        )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="adjust")
    def adjust(self, request, pk=None):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        log = get_ledger().adjust_stock(
            pk,
            serializer.validated_data["change"],
            serializer.validated_data["type"],
            serializer.validated_data["detail"],
        )
        payload = MeatStockLogSerializer(log).data
        self._audit(action="meat_stock.adjust", entity="meat_stock_log", entity_id=log.id, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["get"], url_path="logs")
    def logs(self, request, pk=None):
        item = self.get_object()
        return Response(MeatStockLogSerializer(get_ledger().list_meat_logs(item.id), many=True).data)

    @action(detail=True, methods=["get"], url_path="reconcile")
    def reconcile(self, request, pk=None):
        return Response(StockReconciliationSerializer(get_ledger().reconcile_item(pk)).data)


class MeatStockLogViewSet(LedgerAuditMixin, viewsets.ModelViewSet):
    queryset = MeatStockLog.objects.order_by("-created_at")
    serializer_class = MeatStockLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "stock.view",
        "retrieve": "stock.view",
        "partial_update": "stock.log.edit",
        "destroy": "stock.log.edit",
    }
    http_method_names = ["get", "patch", "delete", "head", "options"]
    lookup_value_regex = UUID_LOOKUP_REGEX
    audit_entity = "meat_stock_log"

    def get_queryset(self):
        queryset = super().get_queryset()
        item_id = self.request.query_params.get("item")
        if item_id:
            try:
                item_id = uuid.UUID(item_id)
            except ValueError:
                raise ValidationError({"item": "Must be a valid UUID."})
            queryset = queryset.filter(item_id=item_id)
        return queryset

    def partial_update(self, request, *args, **kwargs):
        log = self.get_object()
        before_snapshot = MeatStockLogSerializer(log).data
        serializer = MeatStockLogUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        log = get_ledger().update_log(
            log.id,
            log.item_id,
            serializer.validated_data["change"],
            serializer.validated_data["detail"],
        )
        payload = MeatStockLogSerializer(log).data
        self._audit(action="meat_stock_log.update", entity_id=log.id, before_snapshot=before_snapshot, after_snapshot=payload)
        return Response(payload)

    def destroy(self, request, *args, **kwargs):
        log = self.get_object()
        before_snapshot = MeatStockLogSerializer(log).data
        get_ledger().delete_log(log.id, log.item_id)
        self._audit(action="meat_stock_log.delete", entity_id=log.id, before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)
