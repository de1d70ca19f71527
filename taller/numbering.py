import logging
import re

from django.db import IntegrityError, transaction
from django.db.models import F

from taller.models import Sequence

logger = logging.getLogger(__name__)

ESTIMATE_SERIES = "estimate"
INVOICE_SERIES = "invoice"


def format_number(prefix, value):
    return f"{prefix}{value:04d}"


def max_used_number(model, prefix, field="number"):
    """Highest numeric suffix among ``model`` rows whose ``field`` is ``{prefix}<digits>``."""
    values = model.objects.filter(**{f"{field}__startswith": prefix}).values_list(field, flat=True)
    patt = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    max_n = 0
    for value in values:
        if not value:
            continue
        m = patt.match(value)
        if not m:
            continue
        n = int(m.group(1))
        if n > max_n:
            max_n = n
    return max_n


def _ensure_sequence(series_key):
    try:
        Sequence.objects.get_or_create(key=series_key)
    except IntegrityError:
        # Created concurrently by another caller.
        pass


def next_number(model, *, series_key, prefix, field="number"):
    """Allocate the next document number for ``series_key``.

    The counter is first raised to the highest number actually used by
    ``model`` (so a counter that drifted behind the documents heals itself)
    and then incremented with a single ``UPDATE``; the value read back is
    unique among callers.
    """
    used = max_used_number(model, prefix, field=field)
    _ensure_sequence(series_key)
    with transaction.atomic():
        sequence = Sequence.objects.select_for_update().get(key=series_key)
        rows = Sequence.objects.filter(pk=sequence.pk)
        if sequence.value < used:
            rows.update(value=used)
            logger.warning("sequence_healed key=%s value=%s", series_key, used)
        rows.update(value=F("value") + 1)
        value = rows.values_list("value", flat=True).get()
    return format_number(prefix, value)
