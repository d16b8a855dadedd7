from rest_framework import serializers

from sales.models import Expense, ExpenseCategory, ExternalSale, ExternalSaleItem, PaymentMethod, Sale, SaleItem
from sales.services import amend_external_sale, amend_sale, create_external_sale, create_sale


class SaleItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_ref = serializers.CharField(source="product.unique_reference", read_only=True)
    quantity = serializers.IntegerField(min_value=1)
    unit_sale_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)

    class Meta:
        model = SaleItem
        fields = ["id", "product", "product_name", "product_ref", "quantity", "unit_sale_price", "total_price", "note"]
        read_only_fields = ["id", "total_price"]


class SaleSerializer(serializers.ModelSerializer):
    items = SaleItemSerializer(many=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True, default="N/A")
    cashier_username = serializers.CharField(source="cashier.username", read_only=True, default="N/A")
    sale_date = serializers.DateTimeField(required=False)
    status = serializers.ChoiceField(
        choices=[Sale.Status.COMPLETED, Sale.Status.HELD],
        required=False,
        default=Sale.Status.COMPLETED,
    )

    class Meta:
        model = Sale
        fields = [
            "id",
            "transaction_reference",
            "branch",
            "branch_name",
            "cashier",
            "cashier_username",
            "sale_date",
            "customer_name",
            "customer_phone",
            "payment_method",
            "status",
            "total_amount",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "transaction_reference", "cashier", "total_amount", "created_at", "updated_at"]
        extra_kwargs = {"branch": {"required": False}}

    def create(self, validated_data):
        return create_sale(
            self.context["request"].user,
            items=validated_data["items"],
            branch=validated_data.get("branch"),
            sale_date=validated_data.get("sale_date"),
            customer_name=validated_data.get("customer_name", ""),
            customer_phone=validated_data.get("customer_phone", ""),
            payment_method=validated_data.get("payment_method", PaymentMethod.CASH),
            status=validated_data["status"],
        )

    def update(self, instance, validated_data):
        return amend_sale(
            self.context["request"].user,
            instance,
            items=validated_data.get("items"),
            status=validated_data.get("status"),
            sale_date=validated_data.get("sale_date"),
            customer_name=validated_data.get("customer_name"),
            customer_phone=validated_data.get("customer_phone"),
            payment_method=validated_data.get("payment_method"),
        )


class ExternalSaleItemSerializer(serializers.ModelSerializer):
    quantity = serializers.IntegerField(min_value=1)
    unit_sale_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    unit_purchase_price_negotiated = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)

    class Meta:
        model = ExternalSaleItem
        fields = [
            "id",
            "product_name",
            "product_category_name",
            "product_unit_name",
            "quantity",
            "unit_sale_price",
            "unit_purchase_price_negotiated",
            "total_price",
            "total_cost",
            "note",
        ]
        read_only_fields = ["id", "total_price", "total_cost"]


class ExternalSaleSerializer(serializers.ModelSerializer):
    items = ExternalSaleItemSerializer(many=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True, default="N/A")
    cashier_username = serializers.CharField(source="cashier.username", read_only=True, default="N/A")
    authorized_by_username = serializers.CharField(source="authorized_by.username", read_only=True, default=None)
    sale_date = serializers.DateTimeField(required=False)

    class Meta:
        model = ExternalSale
        fields = [
            "id",
            "transaction_reference",
            "branch",
            "branch_name",
            "cashier",
            "cashier_username",
            "sale_date",
            "customer_name",
            "customer_phone",
            "payment_method",
            "status",
            "total_amount",
            "total_cost",
            "authorized_by",
            "authorized_by_username",
            "authorized_at",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = [
            "id",
            "transaction_reference",
            "cashier",
            "status",
            "total_amount",
            "total_cost",
            "authorized_by",
            "authorized_at",
            "created_at",
            "updated_at",
        ]
        extra_kwargs = {"branch": {"required": False}}

    def create(self, validated_data):
        return create_external_sale(
            self.context["request"].user,
            items=validated_data["items"],
            branch=validated_data.get("branch"),
            sale_date=validated_data.get("sale_date"),
            customer_name=validated_data.get("customer_name", ""),
            customer_phone=validated_data.get("customer_phone", ""),
            payment_method=validated_data.get("payment_method", PaymentMethod.CASH),
        )

    def update(self, instance, validated_data):
        return amend_external_sale(
            self.context["request"].user,
            instance,
            items=validated_data.get("items"),
            sale_date=validated_data.get("sale_date"),
            customer_name=validated_data.get("customer_name"),
            customer_phone=validated_data.get("customer_phone"),
            payment_method=validated_data.get("payment_method"),
        )


class ExternalSaleItemPriceSerializer(serializers.Serializer):
    item_id = serializers.UUIDField()
    unit_purchase_price_negotiated = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class ExternalSaleAuthorizationSerializer(serializers.Serializer):
    item_prices = ExternalSaleItemPriceSerializer(many=True, required=False, default=list)


class ExpenseCategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = ExpenseCategory
        fields = ["id", "name", "description", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class ExpenseSerializer(serializers.ModelSerializer):
    category_name = serializers.CharField(source="category.name", read_only=True, default="N/A")
    branch_name = serializers.CharField(source="branch.name", read_only=True, default="N/A")
    recorded_by_username = serializers.CharField(source="recorded_by.username", read_only=True, default="N/A")

    class Meta:
        model = Expense
        fields = [
            "id",
            "date",
            "category",
            "category_name",
            "description",
            "amount",
            "vendor_notes",
            "branch",
            "branch_name",
            "recorded_by",
            "recorded_by_username",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "recorded_by", "created_at", "updated_at"]
        extra_kwargs = {"branch": {"required": False}}

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Amount must be greater than zero.")
        return value
