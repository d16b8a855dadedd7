import csv
from dataclasses import dataclass
from datetime import datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings
from django.core.cache import cache
from django.http import HttpResponse
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from common.permissions import RoleCapabilityPermission, user_has_capability
from common.utils import parse_query_date
from core.models import Branch, BusinessSettings

NOT_AVAILABLE = "N/A"


@dataclass(frozen=True)
class ReportContext:
    """Presentation settings handed to report builders instead of read from globals."""

    currency_symbol: str
    currency_position: str
    date_format: str
    timezone: str

    @classmethod
    def from_business_settings(cls, business_settings, tz_name):
        return cls(
            currency_symbol=business_settings.currency_symbol,
            currency_position=business_settings.currency_position,
            date_format=business_settings.date_format,
            timezone=tz_name,
        )

    def as_dict(self):
        return {
            "currency": {"symbol": self.currency_symbol, "position": self.currency_position},
            "date_format": self.date_format,
            "timezone": self.timezone,
        }


def name_or_na(obj, attr="name"):
    if obj is None:
        return NOT_AVAILABLE
    return getattr(obj, attr, None) or NOT_AVAILABLE


class BaseReportView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "reports.view"}
    cache_key = None

    def perform_content_negotiation(self, request, force=False):
        # ?format=csv is rendered by _csv_response, not by a DRF renderer.
        if request.query_params.get("format") == "csv":
            force = True
        return super().perform_content_negotiation(request, force=force)

    def _branch_ids(self, request):
        user = request.user
        branch_id = request.query_params.get("branch_id")
        if user.is_superuser or user_has_capability(user, "admin.records.manage"):
            if branch_id:
                return [branch_id]
            return list(Branch.objects.values_list("id", flat=True))

        if not getattr(user, "branch_id", None):
            return []

        if branch_id and str(user.branch_id) != branch_id:
            raise ValidationError({"branch_id": "You can only query your own branch."})
        return [user.branch_id]

    def _parse_timezone(self, tz_name):
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError({"timezone": "Invalid IANA timezone."})

    def _date_range(self, request, tz):
        date_from = parse_query_date(request.query_params.get("date_from"))
        date_to = parse_query_date(request.query_params.get("date_to"))
        if not date_from and not date_to:
            return None, None

        if not date_from or not date_to:
            raise ValidationError({"date_range": "Both date_from and date_to are required."})
        if date_from > date_to:
            raise ValidationError({"date_range": "date_from must be before or equal to date_to."})

        start = datetime.combine(date_from, time.min).replace(tzinfo=tz)
        end = datetime.combine(date_to, time.max).replace(tzinfo=tz)
        return start, end

    def _tz_name(self, request, branch_ids):
        tz_name = request.query_params.get("timezone")
        if tz_name:
            return tz_name
        if len(branch_ids) == 1:
            branch = Branch.objects.filter(id=branch_ids[0]).only("timezone").first()
            return branch.timezone if branch else "UTC"
        return "UTC"

    def _report_context(self, tz_name):
        return ReportContext.from_business_settings(BusinessSettings.current(), tz_name)

    def _window(self, request, branch_ids=()):
        """Return ``(start, end, context)`` for the request's date filter."""
        tz_name = self._tz_name(request, list(branch_ids))
        tz = self._parse_timezone(tz_name)
        start, end = self._date_range(request, tz)
        return start, end, self._report_context(tz_name)

    def _csv_response(self, filename, rows):
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = f'attachment; filename="{filename}"'

        if not rows:
            return response

        writer = csv.DictWriter(response, fieldnames=list(rows[0].keys()))
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return response

    def _cached(self, request, callback):
        timeout = settings.REPORT_CACHE_TIMEOUT
        if not timeout:
            return callback()
        cache_key = f"reports:{self.cache_key}:{request.user.pk}:{request.get_full_path()}"
        payload = cache.get(cache_key)
        if payload is None:
            payload = callback()
            cache.set(cache_key, payload, timeout)
        return payload
