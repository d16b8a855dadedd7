from django.db.models import Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, capability_map
from common.utils import parse_query_date
from inventory.audits import delete_audit, resolve_audit, visible_audits
from inventory.models import (
    Category,
    Product,
    Purchase,
    StockAuditSubmission,
    StockLevel,
    StockMovement,
    Unit,
    Warehouse,
)
from inventory.serializers import (
    CategorySerializer,
    ProductSerializer,
    PurchaseSerializer,
    StockAdjustmentSerializer,
    StockAuditResolutionSerializer,
    StockAuditSubmissionSerializer,
    StockLevelSerializer,
    StockMovementSerializer,
    UnitSerializer,
    WarehouseSerializer,
)
from inventory.services import adjust_stock_manually


class UnitViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Unit.objects.all().order_by("abbreviation")
    serializer_class = UnitSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("inventory.view", "catalog.manage")
    audit_entity = "unit"


class CategoryViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Category.objects.all().order_by("name")
    serializer_class = CategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("inventory.view", "catalog.manage")
    audit_entity = "category"


class ProductViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.select_related("category").order_by("name")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("inventory.view", "catalog.manage")
    audit_entity = "product"

    def get_queryset(self):
        qs = super().get_queryset()
        category = self.request.query_params.get("category")
        is_active = self.request.query_params.get("is_active")
        search = self.request.query_params.get("search")
        if category:
            qs = qs.filter(category_id=category)
        if is_active in {"true", "false"}:
            qs = qs.filter(is_active=is_active == "true")
        if search:
            qs = qs.filter(Q(name__icontains=search) | Q(unique_reference__icontains=search))
        return qs


class WarehouseViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Warehouse.objects.select_related("branch").order_by("name")
    serializer_class = WarehouseSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("inventory.view", "warehouse.manage")
    audit_entity = "warehouse"


class StockLevelViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockLevel.objects.select_related("product", "warehouse").order_by("product__name", "warehouse__name")
    serializer_class = StockLevelSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        qs = super().get_queryset()
        product = self.request.query_params.get("product")
        warehouse = self.request.query_params.get("warehouse")
        if product:
            qs = qs.filter(product_id=product)
        if warehouse:
            qs = qs.filter(warehouse_id=warehouse)
        if self.request.query_params.get("negative") == "true":
            qs = qs.filter(quantity__lt=0)
        return qs


class StockMovementViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = StockMovement.objects.select_related("actor").order_by("-created_at")
    serializer_class = StockMovementSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.view", "retrieve": "inventory.view"}

    def get_queryset(self):
        qs = super().get_queryset()
        for param, field in (
            ("product", "product_id"),
            ("warehouse", "warehouse_id"),
            ("source_type", "source_type"),
            ("source_id", "source_id"),
        ):
            value = self.request.query_params.get(param)
            if value:
                qs = qs.filter(**{field: value})
        return qs


class StockAdjustmentView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "stock.adjust"}

    def post(self, request):
        serializer = StockAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        result = adjust_stock_manually(
            request.user,
            product=data["product"],
            warehouse=data["warehouse"],
            delta=data["delta"],
            reason=data["reason"],
            operation_id=data.get("operation_id"),
        )
        create_audit_log_from_request(
            request,
            action="stock.adjust",
            entity="stock_movement",
            entity_id=result.movement.id,
            before_snapshot={"quantity": result.previous_quantity},
            after_snapshot={"quantity": result.new_quantity, "delta": result.delta, "reason": data["reason"]},
            branch=Warehouse.objects.select_related("branch").get(pk=result.warehouse_id).branch,
        )
        return Response(
            {
                "product": str(result.product_id),
                "warehouse": str(result.warehouse_id),
                "previous_quantity": result.previous_quantity,
                "new_quantity": result.new_quantity,
                "negative_balance": result.negative_balance,
                "movement": StockMovementSerializer(result.movement).data,
            },
            status=status.HTTP_201_CREATED,
        )


class PurchaseViewSet(viewsets.ModelViewSet):
    queryset = Purchase.objects.select_related("warehouse", "registered_by").prefetch_related("items__product")
    serializer_class = PurchaseSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "purchase.view",
        "retrieve": "purchase.view",
        "create": "purchase.record",
        "update": "purchase.record",
        "partial_update": "purchase.record",
    }
    http_method_names = ["get", "post", "put", "patch", "head", "options"]

    def get_queryset(self):
        qs = super().get_queryset().order_by("-purchase_date")
        warehouse = self.request.query_params.get("warehouse")
        status_filter = self.request.query_params.get("status")
        date_from = parse_query_date(self.request.query_params.get("date_from"))
        date_to = parse_query_date(self.request.query_params.get("date_to"))
        if warehouse:
            qs = qs.filter(warehouse_id=warehouse)
        if status_filter:
            qs = qs.filter(status=status_filter)
        if date_from:
            qs = qs.filter(purchase_date__date__gte=date_from)
        if date_to:
            qs = qs.filter(purchase_date__date__lte=date_to)
        return qs

    def perform_create(self, serializer):
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="purchase.create",
            entity="purchase",
            entity_id=instance.id,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance.warehouse.branch,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="purchase.amend",
            entity="purchase",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance.warehouse.branch,
        )


class StockAuditViewSet(viewsets.ModelViewSet):
    queryset = StockAuditSubmission.objects.select_related("warehouse", "submitted_by", "audited_by").prefetch_related("lines__category")
    serializer_class = StockAuditSubmissionSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "stock.audit.view",
        "retrieve": "stock.audit.view",
        "create": "stock.audit.submit",
        "update": "stock.audit.submit",
        "partial_update": "stock.audit.submit",
        "destroy": "stock.audit.delete",
        "resolve": "stock.audit.resolve",
    }

    def get_queryset(self):
        qs = visible_audits(self.request.user, super().get_queryset()).order_by("-submission_date")
        status_filter = self.request.query_params.get("status")
        warehouse = self.request.query_params.get("warehouse")
        if status_filter:
            if status_filter not in StockAuditSubmission.Status.values:
                raise ValidationError({"status": "Unknown stock audit status."})
            qs = qs.filter(status=status_filter)
        if warehouse:
            qs = qs.filter(warehouse_id=warehouse)
        return qs

    def perform_create(self, serializer):
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="stock_audit.submit",
            entity="stock_audit",
            entity_id=instance.id,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance.warehouse.branch,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="stock_audit.update",
            entity="stock_audit",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance.warehouse.branch,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        delete_audit(self.request.user, instance)
        create_audit_log_from_request(
            self.request,
            action="stock_audit.delete",
            entity="stock_audit",
            entity_id=before_snapshot["id"],
            before_snapshot=before_snapshot,
            branch=instance.warehouse.branch,
        )

    @action(detail=True, methods=["post"], url_path="resolve")
    def resolve(self, request, pk=None):
        submission = self.get_object()
        serializer = StockAuditResolutionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        submission = resolve_audit(
            request.user,
            submission.id,
            decision=data["decision"],
            manager_notes=data["manager_notes"],
            line_prices=data["line_prices"],
        )
        submission = super().get_queryset().get(pk=submission.pk)
        payload = self.get_serializer(submission).data
        create_audit_log_from_request(
            request,
            action=f"stock_audit.{data['decision']}",
            entity="stock_audit",
            entity_id=submission.id,
            after_snapshot=payload,
            branch=submission.warehouse.branch,
        )
        return Response({"status": "ok", "message": f"Stock audit {submission.status}.", "audit": payload})
