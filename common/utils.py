from decimal import Decimal, ROUND_HALF_UP

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework.exceptions import ValidationError

MONEY_QUANT = Decimal("0.01")


def to_money(value):
    return Decimal(value or 0).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def parse_query_date(value, field="date_range", with_time=False):
    """Parse a ``YYYY-MM-DD`` (or ISO datetime) query value; ``None`` when absent.

    A well-formed but impossible value such as ``2024-02-30`` is a client
    error, not a server one.
    """
    if not value:
        return None
    parser = parse_datetime if with_time else parse_date
    try:
        return parser(value)
    except ValueError:
        raise ValidationError({field: f"Invalid date: {value}."})


def next_daily_reference(queryset, field, prefix):
    """Return ``{prefix}-YYYYMMDD-NNNN`` using the highest serial already issued today.

    Callers run inside the transaction that inserts the row; the unique
    constraint on ``field`` rejects a concurrent duplicate.
    """
    day_prefix = timezone.now().strftime(f"{prefix}-%Y%m%d-")
    existing = list(queryset.filter(**{f"{field}__startswith": day_prefix}).values_list(field, flat=True))
    serial = 1
    if existing:
        serial = max([int(str(number).split("-")[-1]) for number in existing if str(number).split("-")[-1].isdigit()] + [0]) + 1
    return f"{day_prefix}{serial:04d}"
