import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.exceptions import Conflict, InvalidState
from common.permissions import require_capability, user_has_capability
from common.utils import next_daily_reference, to_money
from core.models import BusinessSettings
from sales.models import ExternalSale, ExternalSaleItem, PaymentMethod, Sale, SaleItem

logger = logging.getLogger("sales.pos")

EXTERNAL_REFERENCE_PREFIX = "EXT"
REFERENCE_ATTEMPTS = 3


def _sale_branch(actor, branch):
    """Staff sell for their own branch; management may name another one."""
    if branch is not None and user_has_capability(actor, "admin.records.manage"):
        return branch
    if branch is not None and branch.pk != actor.branch_id:
        raise ValidationError({"branch": "You can only record sales for your own branch."})
    if not actor.branch_id:
        raise ValidationError({"branch": "Authenticated user must belong to a branch to record sales."})
    return actor.branch


def _validate_quantities(items, *price_fields):
    if not items:
        raise ValidationError({"items": "At least one item is required."})
    errors = {}
    for index, item in enumerate(items):
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            errors[f"items[{index}].quantity"] = "Quantity must be a positive whole number."
        for field in price_fields:
            value = item.get(field)
            if value is not None and Decimal(value) < 0:
                errors[f"items[{index}].{field}"] = "Price must be zero or more."
    if errors:
        raise ValidationError(errors)


def _create_with_reference(model, prefix, **fields):
    """Insert ``model`` with the next free daily reference, retrying a lost race on the unique key."""
    for _ in range(REFERENCE_ATTEMPTS):
        reference = next_daily_reference(model.objects.all(), "transaction_reference", prefix)
        try:
            with transaction.atomic():
                return model.objects.create(transaction_reference=reference, **fields)
        except IntegrityError:
            logger.warning("transaction_reference_taken model=%s reference=%s", model.__name__, reference)
    raise Conflict("Could not allocate a transaction reference. Retry the sale.")


def _write_sale_items(sale, items):
    """Create the sale's lines, defaulting the unit price to the catalog price; return the total."""
    total = Decimal("0")
    for item in items:
        product = item["product"]
        unit_price = item.get("unit_sale_price")
        unit_price = to_money(product.sale_price if unit_price is None else unit_price)
        line_total = to_money(unit_price * item["quantity"])
        SaleItem.objects.create(
            sale=sale,
            product=product,
            quantity=item["quantity"],
            unit_sale_price=unit_price,
            total_price=line_total,
            note=item.get("note", ""),
        )
        total += line_total
    return to_money(total)


def create_sale(
    actor,
    *,
    items,
    branch=None,
    sale_date=None,
    customer_name="",
    customer_phone="",
    payment_method=PaymentMethod.CASH,
    status=Sale.Status.COMPLETED,
):
    """Record a POS sale; line totals and the sale total are computed here, never taken from the client."""
    require_capability(actor, "sales.pos.access")
    _validate_quantities(items, "unit_sale_price")
    if status == Sale.Status.CANCELLED:
        raise ValidationError({"status": "A new sale cannot be cancelled."})
    branch = _sale_branch(actor, branch)

    with transaction.atomic():
        sale = _create_with_reference(
            Sale,
            BusinessSettings.current().receipt_prefix,
            branch=branch,
            cashier=actor,
            sale_date=sale_date or timezone.now(),
            customer_name=customer_name,
            customer_phone=customer_phone,
            payment_method=payment_method,
            status=status,
        )
        sale.total_amount = _write_sale_items(sale, items)
        sale.save(update_fields=["total_amount", "updated_at"])

    logger.info(
        "sale_recorded sale=%s reference=%s branch=%s total=%s actor=%s",
        sale.id,
        sale.transaction_reference,
        sale.branch_id,
        sale.total_amount,
        actor.username,
        extra={"sale_id": str(sale.id)},
    )
    return sale


def _external_totals(items):
    total_amount = Decimal("0")
    total_cost = Decimal("0")
    for item in items:
        total_amount += item.total_price
        total_cost += item.total_cost
    return to_money(total_amount), to_money(total_cost)


def _price_external_item(item):
    item.total_price = to_money(item.unit_sale_price * item.quantity)
    item.total_cost = to_money(item.unit_purchase_price_negotiated * item.quantity)


def _write_external_items(external_sale, items):
    created = []
    for item in items:
        line = ExternalSaleItem(
            external_sale=external_sale,
            product_name=item["product_name"].strip(),
            product_category_name=item.get("product_category_name", ""),
            product_unit_name=item.get("product_unit_name", ""),
            quantity=item["quantity"],
            unit_sale_price=to_money(item["unit_sale_price"]),
            unit_purchase_price_negotiated=to_money(item["unit_purchase_price_negotiated"]),
            note=item.get("note", ""),
        )
        _price_external_item(line)
        line.save()
        created.append(line)
    return created


def create_external_sale(
    actor,
    *,
    items,
    branch=None,
    sale_date=None,
    customer_name="",
    customer_phone="",
    payment_method=PaymentMethod.CASH,
):
    """Record a sale of non-catalog goods.

    Cashiers' external sales wait for a manager to confirm the negotiated
    purchase prices; a user who can authorize them completes the sale at once.
    """
    require_capability(actor, "sales.pos.access")
    _validate_quantities(items, "unit_sale_price", "unit_purchase_price_negotiated")
    branch = _sale_branch(actor, branch)
    can_authorize = user_has_capability(actor, "external_sale.authorize")
    now = timezone.now()

    with transaction.atomic():
        external_sale = _create_with_reference(
            ExternalSale,
            EXTERNAL_REFERENCE_PREFIX,
            branch=branch,
            cashier=actor,
            sale_date=sale_date or now,
            customer_name=customer_name,
            customer_phone=customer_phone,
            payment_method=payment_method,
            status=ExternalSale.Status.COMPLETED if can_authorize else ExternalSale.Status.PENDING_APPROVAL,
            authorized_by=actor if can_authorize else None,
            authorized_at=now if can_authorize else None,
        )
        created = _write_external_items(external_sale, items)
        external_sale.total_amount, external_sale.total_cost = _external_totals(created)
        external_sale.save(update_fields=["total_amount", "total_cost", "updated_at"])

    logger.info(
        "external_sale_recorded sale=%s reference=%s status=%s total=%s cost=%s actor=%s",
        external_sale.id,
        external_sale.transaction_reference,
        external_sale.status,
        external_sale.total_amount,
        external_sale.total_cost,
        actor.username,
        extra={"sale_id": str(external_sale.id)},
    )
    return external_sale


def authorize_external_sale(actor, external_sale, *, item_prices=None):
    """Confirm a pending external sale, optionally overriding negotiated purchase prices per item."""
    require_capability(actor, "external_sale.authorize")
    overrides = {str(entry["item_id"]): entry["unit_purchase_price_negotiated"] for entry in item_prices or []}

    with transaction.atomic():
        external_sale = ExternalSale.objects.select_for_update().get(pk=external_sale.pk)
        if external_sale.status != ExternalSale.Status.PENDING_APPROVAL:
            raise InvalidState(f"External sale is already {external_sale.status}.", current_status=external_sale.status)

        items = list(external_sale.items.all())
        unknown = set(overrides) - {str(item.id) for item in items}
        if unknown:
            raise ValidationError({"item_prices": f"Unknown items: {', '.join(sorted(unknown))}."})
        for item in items:
            if str(item.id) in overrides:
                price = to_money(overrides[str(item.id)])
                if price < 0:
                    raise ValidationError({"item_prices": "Negotiated purchase price must be zero or more."})
                item.unit_purchase_price_negotiated = price
                _price_external_item(item)
                item.save(update_fields=["unit_purchase_price_negotiated", "total_price", "total_cost"])
        total_amount, total_cost = _external_totals(items)

        now = timezone.now()
        updated = ExternalSale.objects.filter(
            pk=external_sale.pk,
            status=ExternalSale.Status.PENDING_APPROVAL,
        ).update(
            status=ExternalSale.Status.COMPLETED,
            authorized_by=actor,
            authorized_at=now,
            total_amount=total_amount,
            total_cost=total_cost,
            updated_at=now,
        )
        if updated != 1:
            raise InvalidState("External sale was handled by another user.")

    external_sale.refresh_from_db()
    logger.info(
        "external_sale_authorized sale=%s cost=%s actor=%s",
        external_sale.id,
        external_sale.total_cost,
        actor.username,
        extra={"sale_id": str(external_sale.id)},
    )
    return external_sale


def _require_amend_rights(actor, sale, open_status):
    """Cashiers may finish their own open sale; any other edit is a management correction."""
    require_capability(actor, "sales.pos.access")
    if sale.status != open_status or sale.cashier_id != actor.pk:
        require_capability(actor, "sales.manage")


def _header_changes(sale_date, customer_name, customer_phone, payment_method):
    changes = {
        "sale_date": sale_date,
        "customer_name": customer_name,
        "customer_phone": customer_phone,
        "payment_method": payment_method,
    }
    return {field: value for field, value in changes.items() if value is not None}


def amend_sale(
    actor,
    sale,
    *,
    items=None,
    status=None,
    sale_date=None,
    customer_name=None,
    customer_phone=None,
    payment_method=None,
):
    """Edit a held or completed sale and recompute its total from the lines.

    A held sale may be completed here. A completed sale cannot go back on hold
    and a cancelled one cannot be edited at all. ``items``, when given,
    replaces every line.
    """
    with transaction.atomic():
        sale = Sale.objects.get(pk=sale.pk)
        _require_amend_rights(actor, sale, Sale.Status.HELD)
        if sale.status == Sale.Status.CANCELLED:
            raise InvalidState("A cancelled sale cannot be amended.", current_status=sale.status)
        target = status or sale.status
        if target == Sale.Status.CANCELLED:
            raise ValidationError({"status": "Use the cancel action to cancel a sale."})
        if sale.status == Sale.Status.COMPLETED and target == Sale.Status.HELD:
            raise InvalidState("A completed sale cannot be put back on hold.", current_status=sale.status)

        fields = _header_changes(sale_date, customer_name, customer_phone, payment_method)
        if items is not None:
            _validate_quantities(items, "unit_sale_price")
            sale.items.all().delete()
            fields["total_amount"] = _write_sale_items(sale, items)

        updated = Sale.objects.filter(pk=sale.pk, status=sale.status).update(
            status=target,
            updated_at=timezone.now(),
            **fields,
        )
        if updated != 1:
            raise InvalidState("Sale was changed by another user. Reload it and retry.")

    previous_status = sale.status
    sale.refresh_from_db()
    logger.info(
        "sale_amended sale=%s status=%s->%s total=%s actor=%s",
        sale.id,
        previous_status,
        sale.status,
        sale.total_amount,
        actor.username,
        extra={"sale_id": str(sale.id)},
    )
    return sale


def amend_external_sale(
    actor,
    external_sale,
    *,
    items=None,
    sale_date=None,
    customer_name=None,
    customer_phone=None,
    payment_method=None,
):
    """Edit an external sale's lines or customer details without changing its approval state."""
    with transaction.atomic():
        external_sale = ExternalSale.objects.get(pk=external_sale.pk)
        _require_amend_rights(actor, external_sale, ExternalSale.Status.PENDING_APPROVAL)
        if external_sale.status == ExternalSale.Status.CANCELLED:
            raise InvalidState("A cancelled sale cannot be amended.", current_status=external_sale.status)

        fields = _header_changes(sale_date, customer_name, customer_phone, payment_method)
        if items is not None:
            _validate_quantities(items, "unit_sale_price", "unit_purchase_price_negotiated")
            external_sale.items.all().delete()
            fields["total_amount"], fields["total_cost"] = _external_totals(
                _write_external_items(external_sale, items)
            )

        updated = ExternalSale.objects.filter(pk=external_sale.pk, status=external_sale.status).update(
            updated_at=timezone.now(),
            **fields,
        )
        if updated != 1:
            raise InvalidState("External sale was changed by another user. Reload it and retry.")

    external_sale.refresh_from_db()
    logger.info(
        "external_sale_amended sale=%s status=%s total=%s cost=%s actor=%s",
        external_sale.id,
        external_sale.status,
        external_sale.total_amount,
        external_sale.total_cost,
        actor.username,
        extra={"sale_id": str(external_sale.id)},
    )
    return external_sale


def cancel_sale(actor, sale):
    """Cancel a sale or external sale; cancelling twice is an invalid transition."""
    require_capability(actor, "sales.manage")
    model = type(sale)
    updated = model.objects.filter(pk=sale.pk).exclude(status=model.Status.CANCELLED).update(
        status=model.Status.CANCELLED,
        updated_at=timezone.now(),
    )
    if updated != 1:
        raise InvalidState("Sale is already cancelled.", current_status=model.Status.CANCELLED)
    sale.refresh_from_db()
    logger.info("sale_cancelled model=%s sale=%s actor=%s", model.__name__, sale.id, actor.username)
    return sale
