import logging

from django.db import transaction
from django.utils import timezone

from taller import emails
from taller.appointments import create_appointment
from taller.exceptions import BusinessRuleError, EmailDeliveryError
from taller.mailer import send_email
from taller.models import Appointment, AppointmentRequest, Client, Vehicle
from taller.utils import Outcome, normalize_email, normalize_phone, normalize_plate

logger = logging.getLogger(__name__)

MIN_SUGGESTED_DAYS = 3
SERVICE_TYPE_BY_REQUEST = {
    AppointmentRequest.RequestType.DIAGNOSIS: "DIAGNOSTICO",
    AppointmentRequest.RequestType.REPAIR: "REPARACION",
}


def _validate_suggested_dates(days, today):
    unique_days = sorted(set(days or []))
    if len(unique_days) < MIN_SUGGESTED_DAYS:
        raise BusinessRuleError("Debe sugerir al menos 3 fechas diferentes")
    if any(day < today for day in unique_days):
        raise BusinessRuleError("Las fechas sugeridas no pueden ser anteriores a hoy")
    return unique_days


def _split_name(full_name):
    parts = (full_name or "").strip().split(" ", 1)
    first = parts[0] if parts else ""
    last = parts[1].strip() if len(parts) > 1 else ""
    return first, last


def _send_best_effort(outcome, *, to, content, shop):
    if not to:
        return False
    try:
        send_email(to=[to], subject=content.subject, html=content.html, text=content.text, from_email=shop.from_email)
    except EmailDeliveryError:
        logger.exception("appointment_request_email_failed request=%s", outcome.value.pk)
        outcome.defer("email")
        return False
    return True


def create_request(shop, *, client_name, phone, email="", vehicle_data, request_type, description="", suggested_dates, today=None):
    today = today or timezone.localdate()
    if request_type not in AppointmentRequest.RequestType.values:
        raise BusinessRuleError("Tipo de solicitud inválido")
    plate = normalize_plate(vehicle_data.get("plate_raw"))
    if not plate:
        raise BusinessRuleError("La patente del vehículo es obligatoria")
    if not (client_name or "").strip():
        raise BusinessRuleError("Nombre y apellido del titular son obligatorios")
    if not normalize_phone(phone):
        raise BusinessRuleError("El teléfono del titular es obligatorio")
    days = _validate_suggested_dates(suggested_dates, today)

    request_obj = AppointmentRequest.objects.create(
        client_name=client_name.strip(),
        phone=normalize_phone(phone),
        email=normalize_email(email),
        vehicle_data={**vehicle_data, "plate_normalized": plate},
        request_type=request_type,
        description=(description or "").strip(),
        suggested_dates=[day.isoformat() for day in days],
    )
    logger.info("appointment_request_created request=%s plate=%s", request_obj.pk, plate)
    return Outcome(request_obj)


def _resolve_client_and_vehicle(request_obj):
    first_name, last_name = _split_name(request_obj.client_name)
    client = Client.resolve(
        first_name=first_name,
        last_name=last_name,
        phone=request_obj.phone,
        email=request_obj.email,
    )
    data = request_obj.vehicle_data or {}
    plate = normalize_plate(data.get("plate_raw") or data.get("plate_normalized"))
    vehicle = Vehicle.objects.filter(plate_normalized=plate).first()
    if vehicle is None:
        vehicle = Vehicle.register(
            plate=data.get("plate_raw") or plate,
            owner=client,
            note="Titular desde solicitud de turno",
            make=data.get("make") or "",
            model=data.get("model") or "",
            year=data.get("year") or None,
            color=data.get("color") or "",
            km=data.get("km") or None,
        )
    elif vehicle.current_owner_id != client.pk:
        vehicle.change_owner(client, note="Titular actualizado desde solicitud de turno")
    return client, vehicle


def confirm_request(shop, request_obj, *, start_at, user=None, now=None):
    if request_obj.status != AppointmentRequest.Status.PENDING:
        raise BusinessRuleError("Solo se pueden confirmar solicitudes pendientes")
    if start_at < (now or timezone.now()):
        raise BusinessRuleError("No se puede confirmar un turno en una fecha pasada")

    with transaction.atomic():
        client, vehicle = _resolve_client_and_vehicle(request_obj)
        created = create_appointment(
            shop,
            vehicle=vehicle,
            client=client,
            start_at=start_at,
            end_at=start_at,
            service_type=SERVICE_TYPE_BY_REQUEST.get(request_obj.request_type, ""),
            notes=request_obj.description,
            user=user,
            status=Appointment.Status.CONFIRMED,
            notify=False,
            now=now,
        )
        appointment = created.value
        request_obj.status = AppointmentRequest.Status.CONFIRMED
        request_obj.client = client
        request_obj.vehicle = vehicle
        if not request_obj.email and client.email:
            request_obj.email = client.email
        request_obj.confirmed_appointment = appointment
        request_obj.confirmed_at = timezone.now()
        request_obj.rejection_reason = ""
        request_obj.rejected_at = None
        request_obj.save()
    logger.info("appointment_request_confirmed request=%s appointment=%s", request_obj.pk, appointment.pk)

    outcome = Outcome(request_obj, deferred=list(created.deferred))
    _send_best_effort(
        outcome,
        to=request_obj.email,
        content=emails.compose_request_confirmed(shop, request_obj, appointment),
        shop=shop,
    )
    return outcome


def reject_request(shop, request_obj, *, reason):
    if request_obj.status != AppointmentRequest.Status.PENDING:
        raise BusinessRuleError("Solo se pueden rechazar solicitudes pendientes")
    reason = (reason or "").strip()
    if not reason:
        raise BusinessRuleError("Debe indicar el motivo de rechazo")
    request_obj.status = AppointmentRequest.Status.REJECTED
    request_obj.rejection_reason = reason
    request_obj.rejected_at = timezone.now()
    request_obj.confirmed_appointment = None
    request_obj.confirmed_at = None
    request_obj.save()
    logger.info("appointment_request_rejected request=%s", request_obj.pk)

    outcome = Outcome(request_obj)
    _send_best_effort(outcome, to=request_obj.email, content=emails.compose_request_rejected(shop, request_obj), shop=shop)
    return outcome
