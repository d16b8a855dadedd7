import logging
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, PermissionDenied, ValidationError

from common.exceptions import InvalidState
from common.permissions import require_capability, user_has_capability
from common.utils import to_money
from inventory.ledger import reconcile_stock
from inventory.models import Product, StockAuditLine, StockAuditSubmission, StockMovement

logger = logging.getLogger("inventory.audits")

APPROVE = "approve"
REJECT = "reject"


def _validate_lines(lines):
    if not lines:
        raise ValidationError({"lines": "A stock audit needs at least one counted product."})
    errors = {}
    seen_refs = set()
    for index, line in enumerate(lines):
        ref = (line.get("product_ref") or "").strip()
        quantity = line.get("counted_quantity")
        if not ref:
            errors[f"lines[{index}].product_ref"] = "Product reference is required."
        elif ref in seen_refs:
            errors[f"lines[{index}].product_ref"] = "Each product may only be counted once per audit."
        seen_refs.add(ref)
        if not (line.get("product_name") or "").strip():
            errors[f"lines[{index}].product_name"] = "Product name is required."
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
            errors[f"lines[{index}].counted_quantity"] = "Counted quantity must be a whole number of zero or more."
    if errors:
        raise ValidationError(errors)


def _write_lines(submission, lines):
    for line in lines:
        StockAuditLine.objects.create(
            submission=submission,
            product_ref=line["product_ref"].strip(),
            product_name=line["product_name"].strip(),
            category=line.get("category"),
            unit_abbreviation=line.get("unit_abbreviation", ""),
            counted_quantity=line["counted_quantity"],
        )


def submit_audit(actor, *, warehouse, lines, submission_date=None, notes=""):
    require_capability(actor, "stock.audit.submit")
    if warehouse is None:
        raise ValidationError({"warehouse": "A warehouse is required."})
    _validate_lines(lines)

    with transaction.atomic():
        submission = StockAuditSubmission.objects.create(
            warehouse=warehouse,
            submitted_by=actor,
            submission_date=submission_date or timezone.now(),
            notes_from_controller=notes,
        )
        _write_lines(submission, lines)

    logger.info(
        "stock_audit_submitted audit=%s warehouse=%s lines=%s actor=%s",
        submission.id,
        submission.warehouse_id,
        len(lines),
        actor.username,
        extra={"audit_id": str(submission.id), "warehouse_id": str(submission.warehouse_id)},
    )
    return submission


def update_pending_audit(actor, submission, *, warehouse, lines, submission_date, notes):
    """Replace the counts of a submission that is still awaiting review."""
    require_capability(actor, "stock.audit.submit")
    _validate_lines(lines)

    with transaction.atomic():
        submission = StockAuditSubmission.objects.select_for_update().get(pk=submission.pk)
        if submission.submitted_by_id != actor.pk and not actor.is_superuser:
            raise PermissionDenied("Only the controller who submitted this audit can edit it.")
        if submission.status != StockAuditSubmission.Status.PENDING:
            raise InvalidState("Only pending stock audits can be edited.", current_status=submission.status)

        submission.lines.all().delete()
        submission.warehouse = warehouse
        submission.submission_date = submission_date
        submission.notes_from_controller = notes
        submission.save(update_fields=["warehouse", "submission_date", "notes_from_controller", "updated_at"])
        _write_lines(submission, lines)

    logger.info(
        "stock_audit_updated audit=%s lines=%s actor=%s",
        submission.id,
        len(lines),
        actor.username,
        extra={"audit_id": str(submission.id)},
    )
    return submission


def _parse_price(value, field, line_id, errors):
    try:
        price = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        errors[f"{line_id}.{field}"] = "A price is required."
        return None
    if not price.is_finite() or price < 0:
        errors[f"{line_id}.{field}"] = "Price must be zero or more."
        return None
    return to_money(price)


def _validate_line_prices(lines, line_prices):
    """Return ``{line_id: (purchase_price, sale_price)}`` or raise listing every invalid line."""
    by_id = {str(entry.get("line_id")): entry for entry in line_prices or []}
    prices = {}
    errors = {}
    for line in lines:
        entry = by_id.get(str(line.id))
        if entry is None:
            errors[str(line.id)] = f"Purchase and sale prices are required for {line.product_name}."
            continue
        purchase_price = _parse_price(entry.get("purchase_price"), "purchase_price", line.id, errors)
        sale_price = _parse_price(entry.get("sale_price"), "sale_price", line.id, errors)
        prices[str(line.id)] = (purchase_price, sale_price)
    if errors:
        raise ValidationError({"line_prices": errors})
    return prices


def _resolve_product(line, purchase_price, sale_price):
    product = Product.objects.select_for_update().filter(unique_reference=line.product_ref).first()
    if product is None:
        try:
            with transaction.atomic():
                return Product.objects.create(
                    unique_reference=line.product_ref,
                    name=line.product_name,
                    category=line.category,
                    unit_abbreviation=line.unit_abbreviation,
                    purchase_price=purchase_price,
                    sale_price=sale_price,
                )
        except IntegrityError:
            product = Product.objects.select_for_update().get(unique_reference=line.product_ref)
    product.purchase_price = purchase_price
    product.sale_price = sale_price
    product.save(update_fields=["purchase_price", "sale_price", "updated_at"])
    return product


def resolve_audit(actor, submission_id, *, decision, manager_notes="", line_prices=None):
    """Approve or reject a pending submission.

    Approval reconciles every counted line against the balance read under the
    row lock at this moment, so movements recorded after submission are kept.
    """
    require_capability(actor, "stock.audit.resolve")
    if decision not in (APPROVE, REJECT):
        raise ValidationError({"decision": "Decision must be 'approve' or 'reject'."})

    with transaction.atomic():
        submission = StockAuditSubmission.objects.select_for_update().filter(pk=submission_id).first()
        if submission is None:
            raise NotFound("Stock audit not found.")
        if submission.status != StockAuditSubmission.Status.PENDING:
            raise InvalidState(f"Stock audit is already {submission.status}.", current_status=submission.status)

        lines = list(submission.lines.select_related("category").order_by("product_ref"))
        if decision == APPROVE:
            prices = _validate_line_prices(lines, line_prices)
            for line in lines:
                purchase_price, sale_price = prices[str(line.id)]
                product = _resolve_product(line, purchase_price, sale_price)
                result = reconcile_stock(
                    product=product,
                    warehouse=submission.warehouse_id,
                    counted_quantity=line.counted_quantity,
                    actor=actor,
                    reason=f"Stock audit {submission.id} - {line.product_ref}",
                    source_type=StockMovement.Source.AUDIT,
                    source_id=submission.id,
                )
                line.product = product
                line.purchase_price = purchase_price
                line.sale_price = sale_price
                line.expected_quantity = result.previous_quantity
                line.applied_delta = result.delta
                line.save(update_fields=["product", "purchase_price", "sale_price", "expected_quantity", "applied_delta"])
            new_status = StockAuditSubmission.Status.APPROVED
        else:
            new_status = StockAuditSubmission.Status.REJECTED

        now = timezone.now()
        updated = StockAuditSubmission.objects.filter(
            pk=submission.pk,
            status=StockAuditSubmission.Status.PENDING,
        ).update(
            status=new_status,
            audited_by=actor,
            audit_date=now,
            notes_from_manager=manager_notes or "",
            updated_at=now,
        )
        if updated != 1:
            raise InvalidState("Stock audit was resolved by another user.")

    submission.refresh_from_db()
    logger.info(
        "stock_audit_resolved audit=%s decision=%s lines=%s actor=%s",
        submission.id,
        decision,
        len(lines),
        actor.username,
        extra={"audit_id": str(submission.id), "warehouse_id": str(submission.warehouse_id)},
    )
    return submission


def delete_audit(actor, submission):
    require_capability(actor, "stock.audit.delete")
    with transaction.atomic():
        submission = StockAuditSubmission.objects.select_for_update().filter(pk=submission.pk).first()
        if submission is None:
            raise NotFound("Stock audit not found.")
        if submission.status == StockAuditSubmission.Status.APPROVED:
            raise InvalidState(
                "Approved stock audits are part of the stock history and cannot be deleted.",
                current_status=submission.status,
            )
        audit_id = submission.id
        submission.delete()

    logger.info("stock_audit_deleted audit=%s actor=%s", audit_id, actor.username, extra={"audit_id": str(audit_id)})


def visible_audits(user, queryset):
    """Controllers see their own submissions; reviewers see all of them."""
    if user_has_capability(user, "stock.audit.resolve"):
        return queryset
    return queryset.filter(submitted_by=user)
