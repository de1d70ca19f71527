import base64
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from io import BytesIO
from typing import List, Optional

import qrcode
from django.conf import settings
from django.template.loader import render_to_string
from django.utils import timezone
from xhtml2pdf import pisa

from taller.exceptions import PdfRenderError
from taller.utils import build_line_items, build_vehicle_label, items_total, quantize_amount

logger = logging.getLogger(__name__)

DOCUMENT_TEMPLATE = "taller/pdf/document.html"


@dataclass
class DocumentFields:
    title: str
    number: str
    issued_on: date
    client_name: str
    client_phone: str = ""
    client_email: str = ""
    vehicle_label: str = ""
    vehicle_km: Optional[int] = None
    items: List[dict] = field(default_factory=list)
    labor_cost: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    notes: str = ""
    valid_until: Optional[date] = None
    payment_method: str = ""
    public_url: str = ""

    @property
    def items_subtotal(self):
        return items_total(self.items)


def _qr_b64(url):
    if not url:
        return ""
    try:
        buf = BytesIO()
        qrcode.make(url).save(buf, format="PNG")
        return base64.b64encode(buf.getvalue()).decode("ascii")
    except Exception:
        logger.warning("pdf_qr_failed url=%s", url)
        return ""


def _public_url(work_order_id):
    base = getattr(settings, "TALLER_FRONTEND_URL", "")
    if not base or not work_order_id:
        return ""
    return f"{base}/ordenes/{work_order_id}"


def render_pdf(template_name, context):
    html = render_to_string(template_name, context)
    pdf_io = BytesIO()
    try:
        result = pisa.CreatePDF(html, dest=pdf_io, encoding="utf-8")
    except Exception as exc:
        raise PdfRenderError(f"No se pudo generar el PDF: {exc}") from exc
    if result.err:
        raise PdfRenderError("No se pudo generar el PDF")
    return pdf_io.getvalue()


def render_document(shop, fields: DocumentFields):
    context = {
        **shop.template_context(),
        "doc": fields,
        "items": fields.items,
        "qr_b64": _qr_b64(fields.public_url),
    }
    return render_pdf(DOCUMENT_TEMPLATE, context)


def _common_fields(document, title):
    client = document.client
    vehicle = document.vehicle
    return dict(
        title=title,
        number=document.number,
        issued_on=timezone.localdate(getattr(document, "issued_at", None) or document.created_at or timezone.now()),
        client_name=client.display_name,
        client_phone=client.phone,
        client_email=client.email,
        vehicle_label=build_vehicle_label(vehicle),
        vehicle_km=vehicle.km,
        items=build_line_items(document.items),
        labor_cost=quantize_amount(document.labor_cost),
        discount=quantize_amount(document.discount),
        total=quantize_amount(document.total),
        notes=document.notes,
        public_url=_public_url(document.work_order_id),
    )


def generate_estimate_pdf(shop, estimate):
    fields = DocumentFields(valid_until=estimate.valid_until, **_common_fields(estimate, "Presupuesto"))
    return render_document(shop, fields)


def generate_invoice_pdf(shop, invoice):
    fields = DocumentFields(
        payment_method=invoice.get_payment_method_display() if invoice.payment_method else "",
        **_common_fields(invoice, "Factura"),
    )
    return render_document(shop, fields)
