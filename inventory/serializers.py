from django.utils import timezone
from rest_framework import serializers

from inventory.audits import submit_audit, update_pending_audit
from inventory.models import (
    Category,
    Product,
    Purchase,
    PurchaseItem,
    StockAuditLine,
    StockAuditSubmission,
    StockLevel,
    StockMovement,
    Unit,
    Warehouse,
)
from inventory.services import amend_purchase, record_purchase


class UnitSerializer(serializers.ModelSerializer):
    class Meta:
        model = Unit
        fields = ["id", "abbreviation", "name", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class CategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ["id", "name", "description", "unit_abbreviation", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class ProductSerializer(serializers.ModelSerializer):
    category_name = serializers.CharField(source="category.name", read_only=True, default="N/A")

    class Meta:
        model = Product
        fields = [
            "id",
            "unique_reference",
            "name",
            "description",
            "category",
            "category_name",
            "unit_abbreviation",
            "purchase_price",
            "sale_price",
            "low_stock_threshold",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate(self, attrs):
        for field_name in ("purchase_price", "sale_price"):
            value = attrs.get(field_name)
            if value is not None and value < 0:
                raise serializers.ValidationError({field_name: "Price must be zero or more."})
        return attrs


class WarehouseSerializer(serializers.ModelSerializer):
    branch_name = serializers.CharField(source="branch.name", read_only=True, default="N/A")

    class Meta:
        model = Warehouse
        fields = ["id", "name", "location", "branch", "branch_name", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class StockLevelSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_ref = serializers.CharField(source="product.unique_reference", read_only=True)
    warehouse_name = serializers.CharField(source="warehouse.name", read_only=True)

    class Meta:
        model = StockLevel
        fields = ["id", "product", "product_name", "product_ref", "warehouse", "warehouse_name", "quantity", "updated_at"]
        read_only_fields = fields


class StockMovementSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True)

    class Meta:
        model = StockMovement
        fields = [
            "id",
            "product",
            "warehouse",
            "delta",
            "resulting_quantity",
            "actor",
            "actor_username",
            "reason",
            "source_type",
            "source_id",
            "operation_id",
            "created_at",
        ]
        read_only_fields = fields


class StockAdjustmentSerializer(serializers.Serializer):
    product = serializers.UUIDField()
    warehouse = serializers.UUIDField()
    delta = serializers.IntegerField()
    reason = serializers.CharField(max_length=255)
    operation_id = serializers.CharField(max_length=64, required=False, allow_blank=True)

    def validate_delta(self, value):
        if value == 0:
            raise serializers.ValidationError("Delta must not be zero.")
        return value


class PurchaseItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    quantity = serializers.IntegerField(min_value=1)
    unit_purchase_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)

    class Meta:
        model = PurchaseItem
        fields = ["id", "product", "product_name", "quantity", "unit_purchase_price", "total_cost", "note"]
        read_only_fields = ["id", "total_cost"]


class PurchaseSerializer(serializers.ModelSerializer):
    items = PurchaseItemSerializer(many=True)
    warehouse_name = serializers.CharField(source="warehouse.name", read_only=True)
    registered_by_username = serializers.CharField(source="registered_by.username", read_only=True)
    purchase_date = serializers.DateTimeField(required=False)

    class Meta:
        model = Purchase
        fields = [
            "id",
            "purchase_date",
            "warehouse",
            "warehouse_name",
            "registered_by",
            "registered_by_username",
            "status",
            "total_cost",
            "notes",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "registered_by", "total_cost", "created_at", "updated_at"]

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("A purchase needs at least one item.")
        return value

    def create(self, validated_data):
        return record_purchase(
            self.context["request"].user,
            warehouse=validated_data["warehouse"],
            items=validated_data["items"],
            purchase_date=validated_data.get("purchase_date"),
            status=validated_data.get("status", Purchase.Status.COMPLETED),
            notes=validated_data.get("notes", ""),
        )

    def update(self, instance, validated_data):
        if "items" in validated_data:
            items = validated_data["items"]
        else:
            items = [
                {
                    "product": item.product,
                    "quantity": item.quantity,
                    "unit_purchase_price": item.unit_purchase_price,
                    "note": item.note,
                }
                for item in instance.items.select_related("product")
            ]
        return amend_purchase(
            self.context["request"].user,
            instance,
            warehouse=validated_data.get("warehouse", instance.warehouse),
            items=items,
            purchase_date=validated_data.get("purchase_date", instance.purchase_date),
            status=validated_data.get("status", instance.status),
            notes=validated_data.get("notes", instance.notes),
        )


class StockAuditLineSerializer(serializers.ModelSerializer):
    counted_quantity = serializers.IntegerField(min_value=0)
    category_name = serializers.CharField(source="category.name", read_only=True, default="N/A")

    class Meta:
        model = StockAuditLine
        fields = [
            "id",
            "product_ref",
            "product_name",
            "category",
            "category_name",
            "unit_abbreviation",
            "counted_quantity",
            "purchase_price",
            "sale_price",
            "product",
            "expected_quantity",
            "applied_delta",
        ]
        read_only_fields = ["id", "purchase_price", "sale_price", "product", "expected_quantity", "applied_delta"]


class StockAuditSubmissionSerializer(serializers.ModelSerializer):
    lines = StockAuditLineSerializer(many=True)
    warehouse_name = serializers.CharField(source="warehouse.name", read_only=True)
    submitted_by_username = serializers.CharField(source="submitted_by.username", read_only=True)
    audited_by_username = serializers.CharField(source="audited_by.username", read_only=True, default=None)
    submission_date = serializers.DateTimeField(required=False)

    class Meta:
        model = StockAuditSubmission
        fields = [
            "id",
            "warehouse",
            "warehouse_name",
            "submitted_by",
            "submitted_by_username",
            "submission_date",
            "status",
            "notes_from_controller",
            "notes_from_manager",
            "audited_by",
            "audited_by_username",
            "audit_date",
            "lines",
            "created_at",
            "updated_at",
        ]
        read_only_fields = [
            "id",
            "submitted_by",
            "status",
            "notes_from_manager",
            "audited_by",
            "audit_date",
            "created_at",
            "updated_at",
        ]

    def validate_lines(self, value):
        if not value:
            raise serializers.ValidationError("A stock audit needs at least one counted product.")
        refs = [line["product_ref"].strip() for line in value]
        if len(refs) != len(set(refs)):
            raise serializers.ValidationError("Each product may only be counted once per audit.")
        return value

    def create(self, validated_data):
        return submit_audit(
            self.context["request"].user,
            warehouse=validated_data["warehouse"],
            lines=validated_data["lines"],
            submission_date=validated_data.get("submission_date"),
            notes=validated_data.get("notes_from_controller", ""),
        )

    def update(self, instance, validated_data):
        if "lines" in validated_data:
            lines = validated_data["lines"]
        else:
            lines = [
                {
                    "product_ref": line.product_ref,
                    "product_name": line.product_name,
                    "category": line.category,
                    "unit_abbreviation": line.unit_abbreviation,
                    "counted_quantity": line.counted_quantity,
                }
                for line in instance.lines.all()
            ]
        return update_pending_audit(
            self.context["request"].user,
            instance,
            warehouse=validated_data.get("warehouse", instance.warehouse),
            lines=lines,
            submission_date=validated_data.get("submission_date", instance.submission_date or timezone.now()),
            notes=validated_data.get("notes_from_controller", instance.notes_from_controller),
        )


class AuditLinePriceSerializer(serializers.Serializer):
    line_id = serializers.UUIDField()
    purchase_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    sale_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class StockAuditResolutionSerializer(serializers.Serializer):
    decision = serializers.ChoiceField(choices=["approve", "reject"])
    manager_notes = serializers.CharField(required=False, allow_blank=True, default="")
    line_prices = AuditLinePriceSerializer(many=True, required=False, default=list)
