import logging
from decimal import Decimal

from django.db import transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.permissions import require_capability
from common.utils import to_money
from inventory.ledger import adjust_stock
from inventory.models import Purchase, PurchaseItem, StockMovement

logger = logging.getLogger("inventory.purchases")


def adjust_stock_manually(actor, *, product, warehouse, delta, reason, operation_id=None):
    require_capability(actor, "stock.adjust")
    return adjust_stock(
        product=product,
        warehouse=warehouse,
        delta=delta,
        actor=actor,
        reason=reason,
        source_type=StockMovement.Source.MANUAL,
        operation_id=operation_id,
    )


def _validate_items(items):
    if not items:
        raise ValidationError({"items": "A purchase needs at least one item."})
    errors = {}
    for index, item in enumerate(items):
        quantity = item.get("quantity")
        price = item.get("unit_purchase_price")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            errors[f"items[{index}].quantity"] = "Quantity must be a positive whole number."
        if price is None or Decimal(price) < 0:
            errors[f"items[{index}].unit_purchase_price"] = "Unit purchase price must be zero or more."
    if errors:
        raise ValidationError(errors)


def _write_items(purchase, items):
    total = Decimal("0")
    for item in items:
        line_total = to_money(Decimal(item["unit_purchase_price"]) * item["quantity"])
        PurchaseItem.objects.create(
            purchase=purchase,
            product=item["product"],
            quantity=item["quantity"],
            unit_purchase_price=to_money(item["unit_purchase_price"]),
            total_cost=line_total,
            note=item.get("note", ""),
        )
        total += line_total
    purchase.total_cost = to_money(total)
    purchase.save(update_fields=["total_cost", "updated_at"])


def _ordered_items(purchase):
    # Stable key order keeps concurrent intakes from locking rows in opposite orders.
    return sorted(purchase.items.select_related("product"), key=lambda item: str(item.product_id))


def _receive_items(purchase, actor):
    for item in _ordered_items(purchase):
        adjust_stock(
            product=item.product,
            warehouse=purchase.warehouse_id,
            delta=item.quantity,
            actor=actor,
            reason=f"Purchase {purchase.id} - {item.product.unique_reference}",
            source_type=StockMovement.Source.PURCHASE,
            source_id=purchase.id,
        )


def _reverse_items(purchase, actor):
    for item in _ordered_items(purchase):
        adjust_stock(
            product=item.product,
            warehouse=purchase.warehouse_id,
            delta=-item.quantity,
            actor=actor,
            reason=f"Purchase {purchase.id} amended - reversal of {item.product.unique_reference}",
            source_type=StockMovement.Source.PURCHASE,
            source_id=purchase.id,
        )


def record_purchase(actor, *, warehouse, items, purchase_date=None, status=Purchase.Status.COMPLETED, notes=""):
    """Create the purchase, its items and one stock increase per item in a single transaction."""
    require_capability(actor, "purchase.record")
    _validate_items(items)

    with transaction.atomic():
        purchase = Purchase.objects.create(
            purchase_date=purchase_date or timezone.now(),
            warehouse=warehouse,
            registered_by=actor,
            status=status,
            notes=notes,
        )
        _write_items(purchase, items)
        if purchase.affects_stock:
            _receive_items(purchase, actor)

    logger.info(
        "purchase_recorded purchase=%s warehouse=%s items=%s total=%s status=%s actor=%s",
        purchase.id,
        purchase.warehouse_id,
        len(items),
        purchase.total_cost,
        purchase.status,
        actor.username,
        extra={"purchase_id": str(purchase.id), "warehouse_id": str(purchase.warehouse_id)},
    )
    return purchase


def amend_purchase(actor, purchase, *, warehouse, items, purchase_date, status, notes):
    """Reverse the stock effect of the stored purchase, then apply the amended one."""
    require_capability(actor, "purchase.record")
    _validate_items(items)

    with transaction.atomic():
        purchase = Purchase.objects.select_for_update().get(pk=purchase.pk)
        if purchase.affects_stock:
            _reverse_items(purchase, actor)

        purchase.items.all().delete()
        purchase.warehouse = warehouse
        purchase.purchase_date = purchase_date
        purchase.status = status
        purchase.notes = notes
        purchase.save(update_fields=["warehouse", "purchase_date", "status", "notes", "updated_at"])
        _write_items(purchase, items)

        if purchase.affects_stock:
            _receive_items(purchase, actor)

    logger.info(
        "purchase_amended purchase=%s warehouse=%s items=%s total=%s status=%s actor=%s",
        purchase.id,
        purchase.warehouse_id,
        len(items),
        purchase.total_cost,
        purchase.status,
        actor.username,
        extra={"purchase_id": str(purchase.id), "warehouse_id": str(purchase.warehouse_id)},
    )
    return purchase
