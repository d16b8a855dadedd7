from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, capability_map, user_has_capability
from common.utils import parse_query_date
from core.views import scoped_queryset_for_user
from sales.models import Expense, ExpenseCategory, ExternalSale, Sale
from sales.serializers import (
    ExpenseCategorySerializer,
    ExpenseSerializer,
    ExternalSaleAuthorizationSerializer,
    ExternalSaleSerializer,
    SaleSerializer,
)
from sales.services import authorize_external_sale, cancel_sale


def _filter_window(queryset, request, field):
    date_from = parse_query_date(request.query_params.get("date_from"))
    date_to = parse_query_date(request.query_params.get("date_to"))
    if date_from:
        queryset = queryset.filter(**{f"{field}__date__gte": date_from})
    if date_to:
        queryset = queryset.filter(**{f"{field}__date__lte": date_to})
    return queryset


class SaleRecordMixin:
    """List, record, amend and cancel sales scoped to the caller's branch."""

    audit_entity = None

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        status_filter = self.request.query_params.get("status")
        cashier = self.request.query_params.get("cashier")
        if status_filter:
            qs = qs.filter(status=status_filter)
        if cashier:
            qs = qs.filter(cashier_id=cashier)
        return _filter_window(qs, self.request, "sale_date").order_by("-sale_date")

    def perform_create(self, serializer):
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.create",
            entity=self.audit_entity,
            entity_id=instance.id,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance.branch,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.update",
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance.branch,
        )

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        sale = self.get_object()
        previous_status = sale.status
        sale = cancel_sale(request.user, sale)
        payload = self.get_serializer(sale).data
        create_audit_log_from_request(
            request,
            action=f"{self.audit_entity}.cancel",
            entity=self.audit_entity,
            entity_id=sale.id,
            before_snapshot={"status": previous_status},
            after_snapshot=payload,
            branch=sale.branch,
        )
        return Response(payload)


class SaleViewSet(
    SaleRecordMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Sale.objects.select_related("branch", "cashier").prefetch_related("items__product")
    serializer_class = SaleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "sales.view",
        "retrieve": "sales.view",
        "create": "sales.pos.access",
        "update": "sales.pos.access",
        "partial_update": "sales.pos.access",
        "cancel": "sales.manage",
    }
    audit_entity = "sale"


class ExternalSaleViewSet(
    SaleRecordMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = ExternalSale.objects.select_related("branch", "cashier", "authorized_by").prefetch_related("items")
    serializer_class = ExternalSaleSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "sales.view",
        "retrieve": "sales.view",
        "create": "sales.pos.access",
        "update": "sales.pos.access",
        "partial_update": "sales.pos.access",
        "authorize": "external_sale.authorize",
        "cancel": "sales.manage",
    }
    audit_entity = "external_sale"

    @action(detail=True, methods=["post"], url_path="authorize")
    def authorize(self, request, pk=None):
        external_sale = self.get_object()
        serializer = ExternalSaleAuthorizationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before_snapshot = self.get_serializer(external_sale).data
        external_sale = authorize_external_sale(
            request.user,
            external_sale,
            item_prices=serializer.validated_data["item_prices"],
        )
        external_sale = self.get_queryset().get(pk=external_sale.pk)
        payload = self.get_serializer(external_sale).data
        create_audit_log_from_request(
            request,
            action="external_sale.authorize",
            entity="external_sale",
            entity_id=external_sale.id,
            before_snapshot=before_snapshot,
            after_snapshot=payload,
            branch=external_sale.branch,
        )
        return Response(payload, status=status.HTTP_200_OK)


class ExpenseCategoryViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = ExpenseCategory.objects.all().order_by("name")
    serializer_class = ExpenseCategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("expense.record", "expense.manage")
    audit_entity = "expense_category"


class ExpenseViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Expense.objects.select_related("category", "branch", "recorded_by")
    serializer_class = ExpenseSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("expense.record", "expense.manage", create="expense.record")
    audit_entity = "expense"

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        category = self.request.query_params.get("category")
        if category:
            qs = qs.filter(category_id=category)
        return _filter_window(qs, self.request, "date").order_by("-date")

    def _branch_for(self, serializer):
        user = self.request.user
        branch = serializer.validated_data.get("branch")
        if branch is not None and (user.is_superuser or user_has_capability(user, "admin.records.manage")):
            return branch
        if not getattr(user, "branch_id", None):
            raise ValidationError({"branch": "Authenticated user must belong to a branch to record expenses."})
        return user.branch

    def perform_create(self, serializer):
        instance = serializer.save(branch=self._branch_for(serializer), recorded_by=self.request.user)
        self._audit(action="expense.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        if "branch" in serializer.validated_data:
            instance = serializer.save(branch=self._branch_for(serializer))
        else:
            instance = serializer.save()
        self._audit(
            action="expense.update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )
