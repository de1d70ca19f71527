import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional

from django.utils import timezone


TWO_PLACES = Decimal("0.01")


def normalize_plate(plate: Optional[str]) -> str:
    if not plate:
        return ""
    return re.sub(r"[^A-Za-z0-9]", "", plate).upper()


def normalize_phone(phone: Optional[str]) -> str:
    return re.sub(r"\D", "", phone or "")


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")


def quantize_amount(value: Any) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def build_line_items(raw_items, *, keep_totals=True) -> List[dict]:
    """Normalize incoming line items into the stored snapshot shape.

    Each item keeps ``description``, ``qty``, ``unit_price`` and ``total``;
    ``total`` defaults to ``qty * unit_price`` unless the caller provided one
    and ``keep_totals`` is set. Work orders pass ``keep_totals=False``.
    """
    items = []
    for raw in raw_items or []:
        qty = to_decimal(raw.get("qty"))
        unit_price = quantize_amount(raw.get("unit_price"))
        explicit_total = raw.get("total")
        if not keep_totals or explicit_total is None or explicit_total == "":
            line_total = quantize_amount(qty * unit_price)
        else:
            line_total = quantize_amount(explicit_total)
        items.append(
            {
                "description": (raw.get("description") or "").strip(),
                "qty": qty,
                "unit_price": unit_price,
                "total": line_total,
            }
        )
    return items


def items_total(items, *, use_line_totals=True) -> Decimal:
    total = Decimal("0")
    for item in items or []:
        if use_line_totals and item.get("total") not in (None, ""):
            total += to_decimal(item.get("total"))
        else:
            total += to_decimal(item.get("qty")) * to_decimal(item.get("unit_price"))
    return quantize_amount(total)


def grand_total(items, labor_cost, discount) -> Decimal:
    """Work order total: always ``qty * unit_price`` per line, whatever ``total`` says."""
    return quantize_amount(items_total(items, use_line_totals=False) + to_decimal(labor_cost) - to_decimal(discount))


def comparable_items(items):
    return [
        (
            (item.get("description") or "").strip(),
            to_decimal(item.get("qty")).normalize(),
            to_decimal(item.get("unit_price")).normalize(),
        )
        for item in items or []
    ]


def start_of_day(day) -> datetime:
    tz = timezone.get_current_timezone()
    return timezone.make_aware(datetime.combine(day, time.min), tz)


def day_bounds(day):
    """Return the aware ``[start, end)`` interval covering a shop calendar day."""
    start = start_of_day(day)
    return start, start_of_day(day + timedelta(days=1))


def local_day(value) -> "datetime.date":
    return timezone.localtime(value).date()


def build_vehicle_label(vehicle, fallback="Vehiculo"):
    if vehicle is None:
        return fallback
    parts = [value for value in (vehicle.make, vehicle.model) if value]
    joined = " ".join(parts).strip()
    plate = getattr(vehicle, "plate_normalized", "") or ""
    if joined and plate:
        return f"{joined} ({plate})"
    return joined or plate or fallback


@dataclass
class Outcome:
    """Result of an operation whose side effects are best-effort.

    ``deferred`` names the side effects that did not happen (``"pdf"``,
    ``"email"``) and can be retried later through a dedicated action.
    """

    value: Any
    deferred: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.deferred)

    def defer(self, side_effect: str) -> None:
        if side_effect not in self.deferred:
            self.deferred.append(side_effect)
