"""Estimate and invoice issuance.

Documents are persisted first and their PDF is rendered and uploaded
afterwards on a best-effort basis: a failed PDF leaves the document without
``pdf_url`` and the result reports ``"pdf"`` as deferred. The work order is
always written last.
"""
import logging
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from taller import emails
from taller.exceptions import BusinessRuleError, CollaboratorError
from taller.mailer import Attachment, send_email
from taller.models import Estimate, Invoice, WorkOrder
from taller.numbering import ESTIMATE_SERIES, INVOICE_SERIES, next_number
from taller.pdf import generate_estimate_pdf, generate_invoice_pdf
from taller.storage import BlobStore, is_legacy_url
from taller.utils import Outcome, build_line_items, items_total, quantize_amount
from taller.workorders import update_work_order

logger = logging.getLogger(__name__)

EMPTY_ESTIMATE_MESSAGE = "No se puede generar un presupuesto sin items ni mano de obra"


def _finance_folder():
    return getattr(settings, "TALLER_FINANCE_FOLDER", "taller_finance")


def _pdf_public_id(kind, number):
    return f"{kind}-{number}"


def _upload_document_pdf(blob_store, content, kind, number):
    return blob_store.upload_pdf(content, folder=_finance_folder(), public_id=_pdf_public_id(kind, number))


def _work_order_started(order):
    return order is not None and order.has_started


def create_estimate(
    shop,
    *,
    vehicle=None,
    client=None,
    work_order=None,
    appointment=None,
    items=None,
    labor_cost=None,
    discount=None,
    notes="",
    blob_store=None,
):
    if work_order is not None:
        vehicle = vehicle or work_order.vehicle
        client = client or work_order.client
    if vehicle is None or client is None:
        raise BusinessRuleError("Vehiculo y cliente son requeridos")

    raw_items = items if items else (work_order.items if work_order is not None else [])
    line_items = build_line_items(raw_items)
    if labor_cost is None:
        labor_cost = work_order.labor_cost if work_order is not None else 0
    if discount is None:
        discount = work_order.discount if work_order is not None else 0
    labor_cost = quantize_amount(labor_cost)
    discount = quantize_amount(discount)
    subtotal = items_total(line_items)
    if subtotal <= 0 and labor_cost <= 0:
        raise BusinessRuleError(EMPTY_ESTIMATE_MESSAGE)

    number = next_number(Estimate, series_key=ESTIMATE_SERIES, prefix=shop.estimate_prefix)
    validity_days = shop.estimate_validity_days
    estimate = Estimate.objects.create(
        vehicle=vehicle,
        client=client,
        work_order=work_order,
        appointment=appointment,
        number=number,
        items=line_items,
        labor_cost=labor_cost,
        discount=discount,
        total=quantize_amount(subtotal + labor_cost - discount),
        notes=notes or "",
        validity_days=validity_days,
        valid_until=timezone.localdate() + timedelta(days=validity_days),
    )
    logger.info("estimate_created estimate=%s number=%s total=%s", estimate.pk, number, estimate.total)

    outcome = Outcome(estimate)
    blob_store = blob_store or BlobStore()
    try:
        content = generate_estimate_pdf(shop, estimate)
        uploaded = _upload_document_pdf(blob_store, content, "Presupuesto", number)
    except CollaboratorError:
        logger.exception("estimate_pdf_failed estimate=%s number=%s", estimate.pk, number)
        outcome.defer("pdf")
        return outcome

    estimate.pdf_url = uploaded.url
    estimate.save(update_fields=["pdf_url", "updated_at"])
    if work_order is not None and not _work_order_started(work_order):
        work_order.estimate_pdf_url = uploaded.url
        work_order.estimate_number = number
        work_order.save(update_fields=["estimate_pdf_url", "estimate_number", "updated_at"])
    return outcome


def create_invoice(shop, work_order, *, items=None, labor_cost=None, discount=None, notes="", blob_store=None):
    if work_order.status == WorkOrder.Status.CANCELADA:
        raise BusinessRuleError("No se puede facturar una orden cancelada")

    line_items = build_line_items(items if items is not None else work_order.items)
    labor_cost = quantize_amount(work_order.labor_cost if labor_cost is None else labor_cost)
    discount = quantize_amount(work_order.discount if discount is None else discount)
    number = next_number(Invoice, series_key=INVOICE_SERIES, prefix=shop.invoice_prefix)
    invoice = Invoice.objects.create(
        vehicle=work_order.vehicle,
        client=work_order.client,
        work_order=work_order,
        number=number,
        items=line_items,
        labor_cost=labor_cost,
        discount=discount,
        total=quantize_amount(items_total(line_items) + labor_cost - discount),
        notes=notes or "",
        payment_method=work_order.payment_method,
        issued_at=timezone.now(),
    )
    logger.info("invoice_created invoice=%s number=%s order=%s", invoice.pk, number, work_order.pk)

    outcome = Outcome(invoice)
    blob_store = blob_store or BlobStore()
    try:
        content = generate_invoice_pdf(shop, invoice)
        uploaded = _upload_document_pdf(blob_store, content, "Factura", number)
    except CollaboratorError:
        logger.exception("invoice_pdf_failed invoice=%s number=%s", invoice.pk, number)
        outcome.defer("pdf")
    else:
        invoice.pdf_url = uploaded.url
        invoice.save(update_fields=["pdf_url", "updated_at"])
        work_order.invoice_pdf_url = uploaded.url
        work_order.invoice_number = number
        work_order.save(update_fields=["invoice_pdf_url", "invoice_number", "updated_at"])

    if work_order.status != WorkOrder.Status.COMPLETADA:
        update_work_order(work_order, {"status": WorkOrder.Status.COMPLETADA}, blob_store=blob_store)
    return outcome


def _require_client_email(document):
    email = (document.client.email or "").strip()
    if not email:
        raise BusinessRuleError("El cliente no tiene email")
    return email


def send_estimate_email(shop, estimate, *, blob_store=None):
    to_email = _require_client_email(estimate)
    content = generate_estimate_pdf(shop, estimate)
    if not estimate.pdf_url or is_legacy_url(estimate.pdf_url):
        uploaded = _upload_document_pdf(blob_store or BlobStore(), content, "Presupuesto", estimate.number)
        estimate.pdf_url = uploaded.url
        estimate.save(update_fields=["pdf_url", "updated_at"])
        order = estimate.work_order
        if order is not None:
            order.estimate_pdf_url = uploaded.url
            order.estimate_number = estimate.number
            order.save(update_fields=["estimate_pdf_url", "estimate_number", "updated_at"])

    message = emails.compose_estimate_email(shop, estimate)
    send_email(
        to=[to_email],
        subject=message.subject,
        html=message.html,
        text=message.text,
        bcc=[shop.from_email],
        from_email=shop.from_email,
        attachments=[Attachment(f"Presupuesto-{estimate.number}.pdf", content)],
    )

    channels = list(estimate.channels_used or [])
    if "EMAIL" not in channels:
        channels.append("EMAIL")
    estimate.status = Estimate.Status.SENT
    estimate.sent_at = timezone.now()
    estimate.channels_used = channels
    estimate.save(update_fields=["status", "sent_at", "channels_used", "updated_at"])
    logger.info("estimate_sent estimate=%s to=%s", estimate.pk, to_email)
    return estimate


def send_invoice_email(shop, invoice, *, blob_store=None):
    to_email = _require_client_email(invoice)
    content = generate_invoice_pdf(shop, invoice)
    if not invoice.pdf_url or is_legacy_url(invoice.pdf_url):
        uploaded = _upload_document_pdf(blob_store or BlobStore(), content, "Factura", invoice.number)
        invoice.pdf_url = uploaded.url
        invoice.save(update_fields=["pdf_url", "updated_at"])
        order = invoice.work_order
        order.invoice_pdf_url = uploaded.url
        order.invoice_number = invoice.number
        order.save(update_fields=["invoice_pdf_url", "invoice_number", "updated_at"])

    message = emails.compose_invoice_email(shop, invoice)
    send_email(
        to=[to_email],
        subject=message.subject,
        html=message.html,
        text=message.text,
        bcc=[shop.from_email],
        from_email=shop.from_email,
        attachments=[Attachment(f"Factura-{invoice.number}.pdf", content)],
    )
    invoice.sent_at = timezone.now()
    invoice.save(update_fields=["sent_at", "updated_at"])
    logger.info("invoice_sent invoice=%s to=%s", invoice.pk, to_email)
    return invoice


def delete_invoice(invoice, *, reopen=False, blob_store=None):
    order = invoice.work_order
    if invoice.pdf_url:
        (blob_store or BlobStore()).destroy_url(invoice.pdf_url)
    number = invoice.number
    pdf_url = invoice.pdf_url
    invoice.delete()

    update_fields = []
    if order.invoice_number == number or (pdf_url and order.invoice_pdf_url == pdf_url):
        order.invoice_pdf_url = ""
        order.invoice_number = ""
        update_fields = ["invoice_pdf_url", "invoice_number", "updated_at"]
    if update_fields:
        order.save(update_fields=update_fields)
    if reopen and order.is_closed:
        update_work_order(order, {"status": WorkOrder.Status.EN_PROCESO}, blob_store=blob_store)
    logger.info("invoice_deleted number=%s order=%s reopen=%s", number, order.pk, reopen)
    return order

