from dataclasses import dataclass
from datetime import timedelta

from django.template.loader import render_to_string
from django.utils import timezone

from taller.templatetags.money import ars
from taller.utils import build_vehicle_label

MESSAGE_TEMPLATE = "taller/emails/message.html"


@dataclass(frozen=True)
class EmailContent:
    subject: str
    text: str
    html: str


def _fmt_dt(value):
    return timezone.localtime(value).strftime("%d/%m/%Y %H:%M")


def _compose(shop, *, subject, title, greeting="", lines=(), rows=()):
    context = {
        **shop.template_context(),
        "title": title,
        "greeting": greeting,
        "lines": list(lines),
        "rows": list(rows),
    }
    text_lines = [greeting, ""] if greeting else []
    text_lines.extend(lines)
    if rows:
        text_lines.append("")
        text_lines.extend(f"{label}: {value}" for label, value in rows)
    text_lines.append("")
    text_lines.append(shop.shop_name)
    return EmailContent(
        subject=subject,
        text="\n".join(text_lines),
        html=render_to_string(MESSAGE_TEMPLATE, context),
    )


def _greeting(client):
    name = getattr(client, "first_name", "") or "cliente"
    return f"Hola {name},"


def compose_estimate_email(shop, estimate):
    rows = [
        ("Presupuesto", estimate.number),
        ("Vehiculo", build_vehicle_label(estimate.vehicle)),
        ("Total", ars(estimate.total)),
    ]
    if estimate.valid_until:
        rows.append(("Valido hasta", estimate.valid_until.strftime("%d/%m/%Y")))
    return _compose(
        shop,
        subject=f"Presupuesto {estimate.number} - {shop.shop_name}",
        title=f"Presupuesto {estimate.number}",
        greeting=_greeting(estimate.client),
        lines=["Te enviamos adjunto el presupuesto solicitado.", "Ante cualquier duda respondé este correo."],
        rows=rows,
    )


def compose_invoice_email(shop, invoice):
    return _compose(
        shop,
        subject=f"Factura {invoice.number} - {shop.shop_name}",
        title=f"Factura {invoice.number}",
        greeting=_greeting(invoice.client),
        lines=["Te enviamos adjunta la factura del trabajo realizado.", "Gracias por tu confianza."],
        rows=[
            ("Factura", invoice.number),
            ("Vehiculo", build_vehicle_label(invoice.vehicle)),
            ("Total", ars(invoice.total)),
        ],
    )


def _appointment_rows(appointment):
    rows = [
        ("Fecha", _fmt_dt(appointment.start_at)),
        ("Vehiculo", build_vehicle_label(appointment.vehicle)),
    ]
    if appointment.service_type:
        rows.append(("Servicio", appointment.service_type))
    return rows


def compose_appointment_created(shop, appointment):
    return _compose(
        shop,
        subject=f"Turno agendado - {shop.shop_name}",
        title="Turno agendado",
        greeting=_greeting(appointment.client),
        lines=["Tu turno quedo registrado con los siguientes datos."],
        rows=_appointment_rows(appointment),
    )


def compose_appointment_rescheduled(shop, appointment):
    return _compose(
        shop,
        subject=f"Turno reprogramado - {shop.shop_name}",
        title="Turno reprogramado",
        greeting=_greeting(appointment.client),
        lines=["Tu turno fue reprogramado. Estos son los nuevos datos."],
        rows=_appointment_rows(appointment),
    )


def compose_appointment_cancelled(shop, appointment):
    lines = ["Tu turno fue cancelado."]
    if appointment.cancel_reason:
        lines.append(f"Motivo: {appointment.cancel_reason}")
    return _compose(
        shop,
        subject=f"Turno cancelado - {shop.shop_name}",
        title="Turno cancelado",
        greeting=_greeting(appointment.client),
        lines=lines,
        rows=_appointment_rows(appointment),
    )


def compose_appointment_reminder(shop, appointment, *, when="pronto"):
    return _compose(
        shop,
        subject=f"Recordatorio de turno - {shop.shop_name}",
        title="Recordatorio de turno",
        greeting=_greeting(appointment.client),
        lines=[f"Te recordamos que tenes un turno {when}."],
        rows=_appointment_rows(appointment),
    )


def compose_maintenance_reminder(shop, work_order):
    lines = ["Tu vehiculo tiene un mantenimiento programado."]
    if work_order.maintenance_detail:
        lines.append(work_order.maintenance_detail)
    lines.append("Respondé este correo o llamanos para agendar un turno.")
    rows = [("Vehiculo", build_vehicle_label(work_order.vehicle))]
    if work_order.maintenance_date:
        rows.append(("Fecha sugerida", work_order.maintenance_date.strftime("%d/%m/%Y")))
    return _compose(
        shop,
        subject=f"Recordatorio de mantenimiento - {shop.shop_name}",
        title="Recordatorio de mantenimiento",
        greeting=_greeting(work_order.client),
        lines=lines,
        rows=rows,
    )


def compose_owner_summary(shop, day, appointments, *, pending_requests=0):
    rows = [
        (
            timezone.localtime(item.start_at).strftime("%H:%M"),
            f"{item.client.display_name} - {build_vehicle_label(item.vehicle)} ({item.get_status_display()})",
        )
        for item in appointments
    ]
    scheduled = sum(1 for item in appointments if item.status in ("SCHEDULED", "CONFIRMED"))
    in_progress = sum(1 for item in appointments if item.status == "IN_PROGRESS")
    lines = [
        f"Turnos del dia: {len(rows)}.",
        f"Programados: {scheduled}",
        f"En proceso: {in_progress}",
        f"Solicitudes pendientes: {pending_requests}",
    ]
    if not rows:
        lines.append("No hay turnos agendados para hoy.")
    return _compose(
        shop,
        subject=f"Agenda del {day:%d/%m/%Y} - {shop.shop_name}",
        title=f"Agenda del {day:%d/%m/%Y}",
        lines=lines,
        rows=rows,
    )


def compose_request_confirmed(shop, request_obj, appointment):
    return _compose(
        shop,
        subject=f"Solicitud de turno confirmada - {shop.shop_name}",
        title="Solicitud confirmada",
        greeting=f"Hola {request_obj.client_name},",
        lines=["Confirmamos tu turno."],
        rows=_appointment_rows(appointment),
    )


def compose_request_rejected(shop, request_obj):
    return _compose(
        shop,
        subject=f"Solicitud de turno - {shop.shop_name}",
        title="No pudimos confirmar tu solicitud",
        greeting=f"Hola {request_obj.client_name},",
        lines=[
            "Lamentablemente no podemos tomar tu solicitud de turno.",
            f"Motivo: {request_obj.rejection_reason}",
        ],
    )


def reminder_when_label(appointment, now=None):
    now = now or timezone.now()
    delta = appointment.start_at - now
    if delta <= timedelta(hours=3):
        return "en las proximas horas"
    if timezone.localtime(appointment.start_at).date() == timezone.localdate(now) + timedelta(days=1):
        return "mañana"
    return "pronto"
