"""Stock ledger: the only code path that writes ``StockLevel`` rows.

Every change to a balance appends a ``StockMovement`` and updates the
materialized ``StockLevel`` in the same transaction, while holding the row lock
for that (product, warehouse) key.
"""
import logging
import time
from dataclasses import dataclass

from django.conf import settings
from django.db import IntegrityError, OperationalError, connection, transaction
from django.db.models import Sum
from rest_framework.exceptions import NotAuthenticated, NotFound, ValidationError

from common.exceptions import Conflict, DuplicateOperation
from inventory.models import Product, StockLevel, StockMovement, Warehouse

logger = logging.getLogger("inventory.ledger")

# lock_not_available, deadlock_detected, serialization_failure
LOCK_CONTENTION_SQLSTATES = {"55P03", "40P01", "40001"}


@dataclass(frozen=True)
class AdjustmentResult:
    product_id: object
    warehouse_id: object
    previous_quantity: int
    new_quantity: int
    movement: StockMovement | None

    @property
    def delta(self):
        return self.new_quantity - self.previous_quantity

    @property
    def negative_balance(self):
        return self.new_quantity < 0


def current_quantity(product, warehouse):
    """Return the materialized balance, 0 when the key has never moved."""
    quantity = (
        StockLevel.objects.filter(product_id=_pk(product), warehouse_id=_pk(warehouse))
        .values_list("quantity", flat=True)
        .first()
    )
    return quantity or 0


def ledger_quantity(product, warehouse):
    """Recompute the balance from the movement history."""
    total = StockMovement.objects.filter(product_id=_pk(product), warehouse_id=_pk(warehouse)).aggregate(
        total=Sum("delta")
    )["total"]
    return total or 0


def adjust_stock(
    *,
    product,
    warehouse,
    delta,
    actor,
    reason,
    source_type=StockMovement.Source.MANUAL,
    source_id=None,
    operation_id=None,
):
    _require_actor(actor)
    delta = _validate_delta(delta)
    reason = _validate_reason(reason)
    operation_id = (operation_id or "").strip() or None

    def apply():
        if operation_id and StockMovement.objects.filter(operation_id=operation_id).exists():
            raise DuplicateOperation()
        level = _lock_level(product, warehouse)
        return _apply(level, delta, actor, reason, source_type, source_id, operation_id)

    return _run_locked(apply, actor=actor, product=product, warehouse=warehouse)


def reconcile_stock(*, product, warehouse, counted_quantity, actor, reason, source_type, source_id=None):
    """Move the balance to ``counted_quantity``, reading the current balance under the row lock."""
    _require_actor(actor)
    counted_quantity = int(counted_quantity)
    reason = _validate_reason(reason)

    def apply():
        level = _lock_level(product, warehouse)
        delta = counted_quantity - level.quantity
        if delta == 0:
            return AdjustmentResult(level.product_id, level.warehouse_id, level.quantity, level.quantity, None)
        return _apply(level, delta, actor, reason, source_type, source_id, None)

    return _run_locked(apply, actor=actor, product=product, warehouse=warehouse)


def _pk(value):
    return getattr(value, "pk", value)


def _validate_delta(value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError({"delta": "Delta must be a whole number."})
    if value == 0:
        raise ValidationError({"delta": "Delta must not be zero."})
    return value


def _require_actor(actor):
    if actor is None or not getattr(actor, "is_authenticated", False):
        raise NotAuthenticated()
    return actor


def _validate_reason(value):
    reason = (value or "").strip()
    if not reason:
        raise ValidationError({"reason": "A reason is required for every stock movement."})
    return reason[:255]


def _resolve_key(product, warehouse):
    product_id = _pk(product)
    warehouse_id = _pk(warehouse)
    if not Product.objects.filter(pk=product_id).exists():
        raise NotFound(f"Product {product_id} does not exist.")
    if not Warehouse.objects.filter(pk=warehouse_id).exists():
        raise NotFound(f"Warehouse {warehouse_id} does not exist.")
    return product_id, warehouse_id


def _lock_level(product, warehouse):
    product_id, warehouse_id = _resolve_key(product, warehouse)
    level = StockLevel.objects.select_for_update().filter(product_id=product_id, warehouse_id=warehouse_id).first()
    if level is not None:
        return level
    try:
        with transaction.atomic():
            StockLevel.objects.create(product_id=product_id, warehouse_id=warehouse_id, quantity=0)
    except IntegrityError:
        # Another transaction created the row first; fall through and lock it.
        pass
    return StockLevel.objects.select_for_update().get(product_id=product_id, warehouse_id=warehouse_id)


def _apply(level, delta, actor, reason, source_type, source_id, operation_id):
    previous = level.quantity
    level.quantity = previous + delta
    level.save(update_fields=["quantity", "updated_at"])
    try:
        with transaction.atomic():
            movement = StockMovement.objects.create(
                product_id=level.product_id,
                warehouse_id=level.warehouse_id,
                delta=delta,
                resulting_quantity=level.quantity,
                actor=actor,
                reason=reason,
                source_type=source_type,
                source_id=source_id,
                operation_id=operation_id,
            )
    except IntegrityError as exc:
        if operation_id:
            raise DuplicateOperation() from exc
        raise

    logger.info(
        "stock_adjusted product=%s warehouse=%s delta=%s quantity=%s source=%s source_id=%s actor=%s",
        level.product_id,
        level.warehouse_id,
        delta,
        level.quantity,
        source_type,
        source_id,
        actor.username,
        extra={"product_id": str(level.product_id), "warehouse_id": str(level.warehouse_id)},
    )
    if level.quantity < 0:
        logger.warning(
            "stock_negative_balance product=%s warehouse=%s quantity=%s delta=%s actor=%s",
            level.product_id,
            level.warehouse_id,
            level.quantity,
            delta,
            actor.username,
            extra={"product_id": str(level.product_id), "warehouse_id": str(level.warehouse_id)},
        )
    return AdjustmentResult(level.product_id, level.warehouse_id, previous, level.quantity, movement)


def _is_lock_contention(exc):
    cause = exc.__cause__
    sqlstate = getattr(cause, "sqlstate", None) or getattr(cause, "pgcode", None)
    if sqlstate:
        return sqlstate in LOCK_CONTENTION_SQLSTATES
    return "locked" in str(exc).lower()


def _set_lock_timeout():
    timeout_ms = settings.STOCK_LOCK_TIMEOUT_MS
    if connection.vendor == "postgresql" and timeout_ms > 0:
        with connection.cursor() as cursor:
            cursor.execute("SET LOCAL lock_timeout = %s", [f"{int(timeout_ms)}ms"])


def _run_locked(apply, *, actor, product, warehouse):
    """Run ``apply`` in a savepoint, retrying lock contention a bounded number of times."""
    attempts = max(1, settings.STOCK_LOCK_RETRY_ATTEMPTS)
    backoff = settings.STOCK_LOCK_RETRY_BACKOFF_SECONDS
    for attempt in range(1, attempts + 1):
        try:
            with transaction.atomic():
                _set_lock_timeout()
                return apply()
        except OperationalError as exc:
            if not _is_lock_contention(exc):
                raise
            logger.warning(
                "stock_lock_contention product=%s warehouse=%s attempt=%s/%s actor=%s",
                _pk(product),
                _pk(warehouse),
                attempt,
                attempts,
                getattr(actor, "username", None),
            )
            if attempt < attempts and backoff:
                time.sleep(backoff * attempt)
    raise Conflict("The stock record is busy. Re-read the current quantity and retry.")
