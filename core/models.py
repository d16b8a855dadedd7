import uuid

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import Q
from django.db.models.functions import Lower


class Branch(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=32, unique=True)
    name = models.CharField(max_length=255)
    timezone = models.CharField(max_length=64, default="UTC")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class User(AbstractUser):
    class Role(models.TextChoices):
        ADMIN = "admin", "Admin"
        GENERAL_MANAGER = "general_manager", "General Manager"
        BRANCH_MANAGER = "branch_manager", "Branch Manager"
        CASHIER = "cashier", "Cashier"
        STOCK_CONTROLLER = "stock_controller", "Stock Controller"
        STOCK_MANAGER = "stock_manager", "Stock Manager"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(blank=True)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, null=True, blank=True)
    role = models.CharField(max_length=32, choices=Role.choices, default=Role.CASHIER)

    class Meta(AbstractUser.Meta):
        constraints = [
            models.UniqueConstraint(
                Lower("email"),
                condition=~Q(email=""),
                name="core_user_email_ci_unique",
            )
        ]

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.strip().lower()
        super().save(*args, **kwargs)


class BusinessSettings(models.Model):
    """Single-row store-wide settings; read through :meth:`current`."""

    class DateFormat(models.TextChoices):
        ISO = "YYYY-MM-DD", "YYYY-MM-DD"
        US = "MM/DD/YYYY", "MM/DD/YYYY"
        EU = "DD/MM/YYYY", "DD/MM/YYYY"

    class CurrencyPosition(models.TextChoices):
        PREFIX = "prefix", "Prefix"
        SUFFIX = "suffix", "Suffix"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    business_name = models.CharField(max_length=255, default="My Business")
    address_line1 = models.CharField(max_length=255, blank=True, default="")
    address_line2 = models.CharField(max_length=255, blank=True, default="")
    city = models.CharField(max_length=128, blank=True, default="")
    state_province = models.CharField(max_length=128, blank=True, default="")
    country = models.CharField(max_length=128, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    phone_number = models.CharField(max_length=128, blank=True, default="")
    tax_number = models.CharField(max_length=64, blank=True, default="")
    receipt_prefix = models.CharField(max_length=16, default="SAL")
    date_format = models.CharField(max_length=16, choices=DateFormat.choices, default=DateFormat.ISO)
    currency_symbol = models.CharField(max_length=8, default="FCFA")
    currency_position = models.CharField(max_length=8, choices=CurrencyPosition.choices, default=CurrencyPosition.SUFFIX)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @classmethod
    def current(cls):
        instance = cls.objects.order_by("created_at").first()
        if instance is None:
            instance = cls.objects.create()
        return instance


class ReceiptPhrase(models.Model):
    """Localized text printed on receipts, looked up by key and language."""

    class Language(models.TextChoices):
        EN = "en", "English"
        FR = "fr", "French"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    phrase_key = models.CharField(max_length=64)
    language = models.CharField(max_length=2, choices=Language.choices)
    text = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=("phrase_key", "language"), name="uniq_receiptphrase_key_language"),
        ]

    def __str__(self):
        return f"{self.phrase_key} ({self.language})"


class AuditLog(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    actor = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    branch = models.ForeignKey(Branch, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    entity = models.CharField(max_length=64)
    entity_id = models.UUIDField(null=True, blank=True)
    before_snapshot = models.JSONField(null=True, blank=True)
    after_snapshot = models.JSONField(null=True, blank=True)
    request_id = models.CharField(max_length=255, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["created_at"], name="auditlog_created_idx"),
            models.Index(fields=["action", "created_at"], name="auditlog_action_created_idx"),
            models.Index(fields=["entity", "created_at"], name="auditlog_entity_created_idx"),
            models.Index(fields=["actor", "created_at"], name="auditlog_actor_created_idx"),
        ]
