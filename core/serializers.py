from rest_framework import serializers
from django.contrib.auth import password_validation
from django.contrib.auth import get_user_model
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from rest_framework.validators import UniqueTogetherValidator

from core.models import AuditLog, Branch, BusinessSettings, ReceiptPhrase

User = get_user_model()


class UserAdminSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, required=False, allow_blank=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True, default="N/A")

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "email",
            "first_name",
            "last_name",
            "role",
            "branch",
            "branch_name",
            "is_active",
            "password",
            "date_joined",
        ]
        read_only_fields = ["id", "date_joined"]

    def validate_email(self, value):
        normalized_email = value.strip().lower()
        existing = User.objects.filter(email__iexact=normalized_email)
        if self.instance is not None:
            existing = existing.exclude(pk=self.instance.pk)
        if normalized_email and existing.exists():
            raise serializers.ValidationError("A user with this email already exists.")
        return normalized_email

    def validate(self, attrs):
        password = attrs.get("password")
        if self.instance is None and not password:
            raise serializers.ValidationError({"password": "This field is required."})
        if password:
            password_validation.validate_password(password, user=self.instance)
        return attrs

    def create(self, validated_data):
        password = validated_data.pop("password")
        return User.objects.create_user(password=password, **validated_data)

    def update(self, instance, validated_data):
        password = validated_data.pop("password", "")
        for field, value in validated_data.items():
            setattr(instance, field, value)
        if password:
            instance.set_password(password)
        instance.save()
        return instance


class EmailOrUsernameTokenObtainPairSerializer(TokenObtainPairSerializer):
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["role"] = getattr(user, "role", None)
        token["is_superuser"] = user.is_superuser
        token["branch_id"] = str(user.branch_id) if user.branch_id else None
        return token

    def validate(self, attrs):
        username = attrs.get("username", "")
        if username and "@" in username:
            try:
                user = User.objects.get(email__iexact=username)
                attrs["username"] = user.get_username()
            except User.DoesNotExist:
                pass
        return super().validate(attrs)


class BranchSerializer(serializers.ModelSerializer):
    class Meta:
        model = Branch
        fields = ["id", "code", "name", "timezone", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class BusinessSettingsSerializer(serializers.ModelSerializer):
    class Meta:
        model = BusinessSettings
        fields = [
            "business_name",
            "address_line1",
            "address_line2",
            "city",
            "state_province",
            "country",
            "email",
            "phone_number",
            "tax_number",
            "receipt_prefix",
            "date_format",
            "currency_symbol",
            "currency_position",
            "updated_at",
        ]
        read_only_fields = ["updated_at"]

    def validate_receipt_prefix(self, value):
        value = value.strip().upper()
        if not value.isalnum():
            raise serializers.ValidationError("Receipt prefix must be alphanumeric.")
        return value


class ReceiptPhraseSerializer(serializers.ModelSerializer):
    class Meta:
        model = ReceiptPhrase
        fields = ["id", "phrase_key", "language", "text", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]
        validators = [
            UniqueTogetherValidator(
                queryset=ReceiptPhrase.objects.all(),
                fields=["phrase_key", "language"],
                message="A phrase with this key already exists for this language.",
            )
        ]

    def validate_phrase_key(self, value):
        value = value.strip().lower()
        if not value.replace("_", "").replace(".", "").isalnum():
            raise serializers.ValidationError("Phrase key may only contain letters, digits, dots and underscores.")
        return value


class AuditLogSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True)
    branch_name = serializers.CharField(source="branch.name", read_only=True)

    class Meta:
        model = AuditLog
        fields = [
            "id",
            "actor",
            "actor_username",
            "branch",
            "branch_name",
            "action",
            "entity",
            "entity_id",
            "before_snapshot",
            "after_snapshot",
            "request_id",
            "created_at",
        ]
        read_only_fields = fields
