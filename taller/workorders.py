import logging

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from taller.exceptions import BusinessRuleError
from taller.models import Appointment, Estimate, Evidence, Invoice, WorkOrder
from taller.storage import BlobStore
from taller.utils import build_line_items, comparable_items, to_decimal

logger = logging.getLogger(__name__)

CLOSED_ORDER_MESSAGE = "Orden cerrada. Solo se permite agregar evidencia."

SIMPLE_FIELDS = (
    "category",
    "work_details",
    "notes",
    "maintenance_notice",
    "maintenance_date",
    "maintenance_detail",
    "payment_method",
)


def create_work_order(*, vehicle, client, items=None, labor_cost=0, discount=0, user=None, estimate=None, **fields):
    appointment = fields.get("appointment")
    if appointment is not None and appointment.work_orders.exists():
        raise BusinessRuleError("Ya existe una Orden de Trabajo para esta cita")
    order = WorkOrder(
        vehicle=vehicle,
        client=client,
        items=build_line_items(items, keep_totals=False),
        labor_cost=to_decimal(labor_cost),
        discount=to_decimal(discount),
        created_by=user,
        **fields,
    )
    if order.status in WorkOrder.STARTED_STATUSES:
        order.work_started_at = timezone.now()
    order.recompute_total()
    with transaction.atomic():
        order.save()
        if estimate is not None:
            link_estimate(order, estimate)
        if order.status in WorkOrder.STARTED_STATUSES:
            snapshot_original_estimate(order, estimate)
            sync_appointment_status(order)
    logger.info("work_order_created order=%s vehicle=%s total=%s", order.pk, vehicle.pk, order.total)
    return order


def link_estimate(order, estimate):
    """Attach ``estimate`` to ``order`` and copy its PDF reference when the order has none."""
    if not estimate.work_order_id:
        estimate.work_order = order
        estimate.save(update_fields=["work_order", "updated_at"])
    update_fields = []
    if estimate.pdf_url and not order.estimate_pdf_url:
        order.estimate_pdf_url = estimate.pdf_url
        update_fields.append("estimate_pdf_url")
    if estimate.number and not order.estimate_number:
        order.estimate_number = estimate.number
        update_fields.append("estimate_number")
    if update_fields:
        order.save(update_fields=update_fields + ["updated_at"])
    return bool(update_fields)


def _budget_changed(order, changes):
    if "items" in changes and comparable_items(build_line_items(changes["items"], keep_totals=False)) != comparable_items(order.items):
        return True
    for name in ("labor_cost", "discount"):
        if name in changes and to_decimal(changes[name]) != to_decimal(getattr(order, name)):
            return True
    return False


def invalidate_invoice(order, *, blob_store=None):
    """Drop the invoice PDF reference so the invoice gets regenerated."""
    if not order.invoice_pdf_url and not order.invoice_number:
        return False
    if order.invoice_pdf_url:
        (blob_store or BlobStore()).destroy_url(order.invoice_pdf_url)
    logger.info("work_order_invoice_invalidated order=%s number=%s", order.pk, order.invoice_number)
    order.invoice_pdf_url = ""
    order.invoice_number = ""
    return True


def add_evidence(order, *, kind=Evidence.Kind.TEXT, text="", url="", file_name="", mime_type="", size=None):
    if not (text or url):
        raise BusinessRuleError("La evidencia requiere texto o url")
    return Evidence.objects.create(
        work_order=order,
        kind=kind or Evidence.Kind.TEXT,
        text=text or "",
        url=url or "",
        file_name=file_name or "",
        mime_type=mime_type or "",
        size=size,
    )


def sync_appointment_status(order):
    if not order.appointment_id:
        return None
    mapped = WorkOrder.APPOINTMENT_STATUS_MAP.get(order.status)
    if not mapped:
        return None
    Appointment.objects.filter(pk=order.appointment_id).update(status=mapped, updated_at=timezone.now())
    return mapped


def snapshot_original_estimate(order, estimate=None):
    """Freeze the quote that was current when work started.

    Uses ``estimate`` when given, else the latest estimate of the order (or
    of its appointment). The ``original_*`` fields are written once and
    never refreshed.
    """
    if order.status not in WorkOrder.STARTED_STATUSES:
        return False
    if order.original_estimate_pdf_url and order.original_estimate_number:
        return False
    if estimate is None:
        lookup = Q(work_order=order)
        if order.appointment_id:
            lookup |= Q(appointment_id=order.appointment_id)
        estimate = Estimate.objects.filter(lookup).order_by("-created_at", "-pk").first()
    if estimate is None:
        return False
    link_estimate(order, estimate)
    update_fields = []
    pdf_url = order.estimate_pdf_url or estimate.pdf_url
    number = order.estimate_number or estimate.number
    if pdf_url and not order.original_estimate_pdf_url:
        order.original_estimate_pdf_url = pdf_url
        update_fields.append("original_estimate_pdf_url")
    if number and not order.original_estimate_number:
        order.original_estimate_number = number
        update_fields.append("original_estimate_number")
    if update_fields:
        order.save(update_fields=update_fields + ["updated_at"])
        logger.info("work_order_original_estimate order=%s number=%s", order.pk, order.original_estimate_number)
    return bool(update_fields)


def check_work_order_update(order, changes):
    """Raise ``BusinessRuleError`` when ``changes`` cannot be applied; returns the target status."""
    target_status = changes.get("status") or order.status
    if order.is_closed:
        leaving_closed = target_status != WorkOrder.Status.COMPLETADA
        if set(changes) - WorkOrder.CLOSED_EDITABLE_FIELDS and not leaving_closed:
            raise BusinessRuleError(CLOSED_ORDER_MESSAGE)
    ok, error = order.validate_transition(target_status)
    if not ok:
        raise BusinessRuleError(error)
    return target_status


def update_work_order(order, changes, *, blob_store=None, now=None):
    """Apply a partial update to ``order``.

    ``changes`` only carries the keys the caller sent. ``evidence`` entries
    are appended, never replaced.
    """
    now = now or timezone.now()
    incoming = set(changes)
    target_status = check_work_order_update(order, changes)

    previous_status = order.status
    budget_changed = _budget_changed(order, changes)
    if budget_changed:
        started = order.has_started or target_status in WorkOrder.STARTED_STATUSES
        logger.info("work_order_budget_changed order=%s started=%s", order.pk, started)
        if started:
            invalidate_invoice(order, blob_store=blob_store)

    order.status = target_status
    if not order.work_started_at and target_status in WorkOrder.STARTED_STATUSES:
        order.work_started_at = now

    for name in SIMPLE_FIELDS:
        if name in changes:
            setattr(order, name, changes[name])
    if "items" in changes:
        order.items = build_line_items(changes["items"], keep_totals=False)
    if "labor_cost" in changes:
        order.labor_cost = to_decimal(changes["labor_cost"])
    if "discount" in changes:
        order.discount = to_decimal(changes["discount"])
    if incoming & set(WorkOrder.BUDGET_FIELDS):
        order.recompute_total()

    with transaction.atomic():
        order.save()
        for entry in changes.get("evidence") or []:
            add_evidence(order, **entry)

    snapshot_original_estimate(order)
    if "status" in changes and previous_status != order.status:
        sync_appointment_status(order)
        logger.info("work_order_status order=%s from=%s to=%s", order.pk, previous_status, order.status)
    return order


def reopen_work_order(order):
    """COMPLETADA -> EN_PROCESO; snapshots and documents stay as they are."""
    if not order.is_closed:
        raise BusinessRuleError("Solo se pueden reabrir ordenes completadas")
    return update_work_order(order, {"status": WorkOrder.Status.EN_PROCESO})


def delete_work_order(order, *, blob_store=None):
    blob_store = blob_store or BlobStore()
    estimates = list(Estimate.objects.filter(work_order=order))
    invoices = list(Invoice.objects.filter(work_order=order))
    urls = order.document_urls()
    urls.update(doc.pdf_url for doc in estimates + invoices if doc.pdf_url)
    order_id = order.pk
    deleted = sum(1 for url in sorted(urls) if blob_store.destroy_url(url))
    with transaction.atomic():
        Estimate.objects.filter(pk__in=[doc.pk for doc in estimates]).delete()
        Invoice.objects.filter(pk__in=[doc.pk for doc in invoices]).delete()
        order.delete()
    logger.info("work_order_deleted order=%s blobs=%s/%s", order_id, deleted, len(urls))
    return deleted
