from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Optional, Tuple

from django.conf import settings
from django.utils import timezone

from taller.models import ShopSettings


@dataclass(frozen=True)
class BlackoutWindow:
    start: datetime
    end: datetime
    reason: str = ""

    @classmethod
    def from_range(cls, start, end, reason=""):
        """Date-only ranges (end at local midnight) cover the whole end day."""
        local_end = timezone.localtime(end)
        if local_end.time() == time.min:
            end = local_end + timedelta(days=1) - timedelta(microseconds=1)
        return cls(start=start, end=end, reason=reason or "")

    def overlaps(self, start, end):
        return start <= self.end and end >= self.start


@dataclass(frozen=True)
class ShopContext:
    """Shop configuration loaded once per request or per sweep.

    Operations receive it explicitly instead of reading ``ShopSettings``
    on their own, so a single request sees one consistent configuration.
    """

    shop_name: str = "Taller Suarez"
    address: str = ""
    phone: str = ""
    email_from: str = ""
    owner_email: str = ""
    logo_url: str = ""
    reminder_24h: bool = True
    reminder_2h: bool = True
    estimate_validity_days: int = 15
    estimate_prefix: str = "P-"
    invoice_prefix: str = "A-"
    blackout_ranges: Tuple[BlackoutWindow, ...] = field(default_factory=tuple)

    @classmethod
    def load(cls):
        row = ShopSettings.objects.order_by("pk").first()
        if row is None:
            return cls()
        windows = tuple(
            BlackoutWindow.from_range(item.start_at, item.end_at, item.reason)
            for item in row.blackout_ranges.all()
        )
        return cls(
            shop_name=row.shop_name,
            address=row.address,
            phone=row.phone,
            email_from=row.email_from,
            owner_email=row.owner_email,
            logo_url=row.logo_url,
            reminder_24h=row.reminder_24h,
            reminder_2h=row.reminder_2h,
            estimate_validity_days=row.estimate_validity_days,
            estimate_prefix=row.estimate_prefix or "P-",
            invoice_prefix=row.invoice_prefix or "A-",
            blackout_ranges=windows,
        )

    @property
    def from_email(self):
        return self.email_from or settings.DEFAULT_FROM_EMAIL

    def blackout_for(self, start, end) -> Optional[BlackoutWindow]:
        for window in self.blackout_ranges:
            if window.overlaps(start, end):
                return window
        return None

    def template_context(self):
        return {
            "shop_name": self.shop_name,
            "shop_address": self.address,
            "shop_phone": self.phone,
            "shop_email": self.email_from,
            "shop_logo_url": self.logo_url,
        }
