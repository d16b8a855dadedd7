from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand

from core.models import Branch, BusinessSettings
from inventory.ledger import adjust_stock
from inventory.models import Category, Product, StockMovement, Unit, Warehouse
from sales.models import ExpenseCategory

DEMO_USERS = [
    ("admin", "ADMIN", "admin1234"),
    ("manager", "BRANCH_MANAGER", "manager1234"),
    ("cashier", "CASHIER", "cashier1234"),
    ("controller", "STOCK_CONTROLLER", "controller1234"),
    ("stockmanager", "STOCK_MANAGER", "stockmanager1234"),
]


class Command(BaseCommand):
    help = "Seed demo stock, catalog and user data for local development."

    def handle(self, *args, **options):
        User = get_user_model()
        BusinessSettings.current()

        branch, _ = Branch.objects.get_or_create(
            code="MAIN",
            defaults={"name": "Main Branch", "timezone": "UTC", "is_active": True},
        )

        users = {}
        for username, role, password in DEMO_USERS:
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "role": getattr(User.Role, role),
                    "branch": branch,
                    "is_staff": role == "ADMIN",
                    "is_superuser": role == "ADMIN",
                    "is_active": True,
                },
            )
            if created:
                user.set_password(password)
                user.save(update_fields=["password"])
            users[username] = user

        warehouse_main, _ = Warehouse.objects.get_or_create(
            name="Main Warehouse",
            defaults={"branch": branch, "location": "Back store"},
        )
        Warehouse.objects.get_or_create(name="Store Front", defaults={"branch": branch})

        bottle, _ = Unit.objects.get_or_create(abbreviation="btl", defaults={"name": "Bottle"})
        pack, _ = Unit.objects.get_or_create(abbreviation="pck", defaults={"name": "Pack"})
        beverages, _ = Category.objects.get_or_create(name="Beverages", defaults={"unit_abbreviation": bottle.abbreviation})
        snacks, _ = Category.objects.get_or_create(name="Snacks", defaults={"unit_abbreviation": pack.abbreviation})

        cola, _ = Product.objects.get_or_create(
            unique_reference="BEV-COLA-001",
            defaults={
                "name": "Cola 330ml",
                "category": beverages,
                "unit_abbreviation": bottle.abbreviation,
                "purchase_price": Decimal("0.90"),
                "sale_price": Decimal("1.50"),
                "low_stock_threshold": 20,
            },
        )
        chips, _ = Product.objects.get_or_create(
            unique_reference="SNK-CHIPS-001",
            defaults={
                "name": "Potato Chips",
                "category": snacks,
                "unit_abbreviation": pack.abbreviation,
                "purchase_price": Decimal("1.10"),
                "sale_price": Decimal("2.00"),
                "low_stock_threshold": 10,
            },
        )

        for product, quantity in [(cola, 120), (chips, 60)]:
            operation_id = f"seed-opening-{product.unique_reference}"
            if StockMovement.objects.filter(operation_id=operation_id).exists():
                continue
            adjust_stock(
                product=product,
                warehouse=warehouse_main,
                delta=quantity,
                actor=users["stockmanager"],
                reason="Opening stock",
                operation_id=operation_id,
            )

        for name in ["Utilities", "Rent", "Transport"]:
            ExpenseCategory.objects.get_or_create(name=name)

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write(
            "Credentials: " + ", ".join(f"{username}/{password}" for username, _, password in DEMO_USERS)
        )
        self.stdout.write(f"Branch: {branch.code} | Warehouse: {warehouse_main.name}")
