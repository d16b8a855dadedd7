import csv
import logging

from django.conf import settings
from django.http import HttpResponse
from django.db import IntegrityError, connections, transaction
from django.db.models import ProtectedError
from django.contrib.auth import get_user_model
from rest_framework import status, viewsets
from rest_framework.decorators import api_view, permission_classes
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.exceptions import Conflict, ServerMisconfigured
from common.permissions import RoleCapabilityPermission, capability_map, user_has_capability
from common.utils import parse_query_date
from rest_framework_simplejwt.views import TokenObtainPairView

from core.models import AuditLog, Branch, BusinessSettings, ReceiptPhrase
from core.serializers import (
    AuditLogSerializer,
    BranchSerializer,
    BusinessSettingsSerializer,
    EmailOrUsernameTokenObtainPairSerializer,
    ReceiptPhraseSerializer,
    UserAdminSerializer,
)

User = get_user_model()
logger = logging.getLogger(__name__)
users_logger = logging.getLogger("core.users")
security_logger = logging.getLogger("security.authorization")


def scoped_queryset_for_user(queryset, user, branch_field="branch_id"):
    if not user.is_authenticated:
        return queryset.none()

    if user.is_superuser or user_has_capability(user, "admin.records.manage"):
        return queryset

    if getattr(user, "branch_id", None):
        return queryset.filter(**{branch_field: user.branch_id})

    return queryset.none()


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class BranchViewSet(viewsets.ModelViewSet):
    queryset = Branch.objects.all().order_by("name")
    serializer_class = BranchSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("inventory.view", "admin.records.manage")

    def get_queryset(self):
        queryset = super().get_queryset()
        user = self.request.user

        if user.is_superuser:
            return queryset
        if user_has_capability(user, "admin.records.manage"):
            return queryset
        if getattr(user, "branch_id", None):
            return queryset.filter(id=user.branch_id)
        return queryset.none()

    def perform_create(self, serializer):
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="branch.create",
            entity="branch",
            entity_id=instance.id,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance,
        )

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="branch.update",
            entity="branch",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
            branch=instance,
        )

    def perform_destroy(self, instance):
        try:
            with transaction.atomic():
                instance.delete()
        except ProtectedError as exc:
            raise Conflict(detail="Branch is still referenced by users, warehouses or sales.") from exc


def _require_fresh_admin(user):
    """Re-read the caller's role from the database; token claims are not trusted here."""
    fresh = User.objects.filter(pk=user.pk).values("role", "is_superuser", "is_active").first()
    if fresh is None or not fresh["is_active"] or not (fresh["is_superuser"] or fresh["role"] == User.Role.ADMIN):
        security_logger.warning(
            "permission_denied capability=user.manage user=%s role=%s",
            getattr(user, "username", "anonymous"),
            fresh["role"] if fresh else None,
        )
        raise PermissionDenied("Only administrators can manage users.")


def _store_error_message(exc):
    if exc.args:
        return str(exc.args[0])
    return str(exc)


class UserAdminViewSet(viewsets.ModelViewSet):
    queryset = User.objects.select_related("branch").order_by("username")
    serializer_class = UserAdminSerializer
    permission_classes = [IsAuthenticated]

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        _require_fresh_admin(request.user)
        if not settings.USER_ADMIN_CREDENTIAL:
            users_logger.error("user_admin_credential_missing path=%s", request.path)
            raise ServerMisconfigured("User administration is not configured on this server.")

    def _snapshot(self, instance):
        data = dict(self.get_serializer(instance).data)
        data.pop("password", None)
        return data

    def perform_create(self, serializer):
        try:
            with transaction.atomic():
                instance = serializer.save()
                create_audit_log_from_request(
                    self.request,
                    action="user.create",
                    entity="user",
                    entity_id=instance.id,
                    after_snapshot=self._snapshot(instance),
                    branch=instance.branch,
                )
        except IntegrityError as exc:
            users_logger.warning("user_create_failed username=%s", serializer.validated_data.get("username"))
            raise Conflict(detail=_store_error_message(exc)) from exc
        users_logger.info("user_created user=%s role=%s by=%s", instance.username, instance.role, self.request.user.username)

    def perform_update(self, serializer):
        before_snapshot = self._snapshot(serializer.instance)
        try:
            with transaction.atomic():
                instance = serializer.save()
                create_audit_log_from_request(
                    self.request,
                    action="user.update",
                    entity="user",
                    entity_id=instance.id,
                    before_snapshot=before_snapshot,
                    after_snapshot=self._snapshot(instance),
                    branch=instance.branch,
                )
        except IntegrityError as exc:
            users_logger.warning("user_update_failed user=%s", serializer.instance.username)
            raise Conflict(detail=_store_error_message(exc)) from exc
        users_logger.info("user_updated user=%s role=%s by=%s", instance.username, instance.role, self.request.user.username)

    def perform_destroy(self, instance):
        if instance.pk == self.request.user.pk:
            raise ValidationError("You cannot delete your own account.")
        snapshot = self._snapshot(instance)
        try:
            with transaction.atomic():
                create_audit_log_from_request(
                    self.request,
                    action="user.delete",
                    entity="user",
                    entity_id=instance.id,
                    before_snapshot=snapshot,
                    branch=instance.branch,
                )
                instance.delete()
        except (IntegrityError, ProtectedError) as exc:
            users_logger.warning("user_delete_failed user=%s", instance.username)
            raise Conflict(detail=_store_error_message(exc)) from exc
        users_logger.info("user_deleted user=%s by=%s", snapshot["username"], self.request.user.username)


class BusinessSettingsView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"put": "settings.manage", "patch": "settings.manage"}

    def get(self, request):
        return Response(BusinessSettingsSerializer(BusinessSettings.current()).data)

    def put(self, request):
        return self._update(request, partial=False)

    def patch(self, request):
        return self._update(request, partial=True)

    def _update(self, request, partial):
        instance = BusinessSettings.current()
        before_snapshot = BusinessSettingsSerializer(instance).data
        serializer = BusinessSettingsSerializer(instance, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        create_audit_log_from_request(
            request,
            action="business_settings.update",
            entity="business_settings",
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=serializer.data,
        )
        return Response(serializer.data)


class ReceiptPhraseViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = ReceiptPhrase.objects.all().order_by("phrase_key", "language")
    serializer_class = ReceiptPhraseSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = capability_map("inventory.view", "settings.manage")
    audit_entity = "receipt_phrase"

    def get_queryset(self):
        qs = super().get_queryset()
        language = self.request.query_params.get("language")
        if language:
            qs = qs.filter(language=language)
        return qs


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor", "branch")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "admin.records.manage", "retrieve": "admin.records.manage", "export": "admin.records.manage"}

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")

        if start_date:
            dt = parse_query_date(start_date, "start_date", with_time=True)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_query_date(end_date, "end_date", with_time=True)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action:
            qs = qs.filter(action=action)
        if entity:
            qs = qs.filter(entity=entity)

        return qs

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        logs = self.get_queryset()
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "branch", "action", "entity", "entity_id", "request_id"])
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", "N/A"),
                    getattr(log.branch, "name", "N/A"),
                    log.action,
                    log.entity,
                    log.entity_id,
                    log.request_id,
                ]
            )
        return response


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
