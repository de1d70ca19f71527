import logging
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from taller import emails
from taller.exceptions import BusinessRuleError, EmailDeliveryError
from taller.mailer import send_email
from taller.models import Appointment, Estimate, ReminderJob, WorkOrder
from taller.utils import Outcome, day_bounds, local_day
from taller.workorders import create_work_order, delete_work_order

logger = logging.getLogger(__name__)

REMINDER_LEAD = timedelta(hours=2)
SAME_DAY_MESSAGE = "Ya existe un turno para ese vehículo en ese día"
REPAIR_SERVICE_TYPE = "REPARACION"


def is_repair_service(service_type):
    return (service_type or "").strip().upper() == REPAIR_SERVICE_TYPE


def has_same_day_appointment(vehicle, start_at, *, exclude_pk=None):
    day_start, day_end = day_bounds(local_day(start_at))
    qs = Appointment.objects.filter(
        vehicle=vehicle,
        start_at__gte=day_start,
        start_at__lt=day_end,
    ).exclude(status__in=Appointment.INACTIVE_STATUSES)
    if exclude_pk is not None:
        qs = qs.exclude(pk=exclude_pk)
    return qs.exists()


def notify_client(shop, appointment, content, outcome):
    """Best-effort email to the appointment's client; bcc to the shop."""
    email = (appointment.client.email or "").strip()
    if not email:
        return False
    try:
        send_email(
            to=[email],
            subject=content.subject,
            html=content.html,
            text=content.text,
            bcc=[shop.from_email],
            from_email=shop.from_email,
        )
    except EmailDeliveryError:
        logger.exception("appointment_email_failed appointment=%s", appointment.pk)
        outcome.defer("email")
        return False
    return True


def enqueue_reminder(shop, appointment, *, now=None):
    if not shop.reminder_2h:
        return None
    now = now or timezone.now()
    run_at = appointment.start_at - REMINDER_LEAD
    if run_at <= now:
        return None
    return ReminderJob.objects.create(
        appointment=appointment,
        run_at=run_at,
        channel=ReminderJob.Channel.EMAIL,
    )


def create_appointment(shop, *, vehicle, client, start_at, end_at=None, service_type="", notes="", assigned_to=None, user=None, status=None, notify=True, now=None):
    now = now or timezone.now()
    end_at = end_at or start_at
    if start_at < now:
        raise BusinessRuleError("No se puede crear un turno en una fecha pasada")
    if end_at < start_at:
        raise BusinessRuleError("La fecha de fin no puede ser anterior al inicio")
    if has_same_day_appointment(vehicle, start_at):
        raise BusinessRuleError(SAME_DAY_MESSAGE)
    if shop.blackout_for(start_at, end_at) is not None:
        raise BusinessRuleError("El taller no está disponible en esas fechas")

    with transaction.atomic():
        appointment = Appointment.objects.create(
            vehicle=vehicle,
            client=client,
            start_at=start_at,
            end_at=end_at,
            service_type=service_type or "",
            notes=notes or "",
            assigned_to=assigned_to,
            created_by=user,
            status=status or Appointment.Status.SCHEDULED,
        )
        enqueue_reminder(shop, appointment, now=now)
    logger.info("appointment_created appointment=%s vehicle=%s start=%s", appointment.pk, vehicle.pk, start_at.isoformat())

    outcome = Outcome(appointment)
    if notify:
        notify_client(shop, appointment, emails.compose_appointment_created(shop, appointment), outcome)
    return outcome


def update_appointment(shop, appointment, changes, *, now=None):
    now = now or timezone.now()
    if appointment.status == Appointment.Status.COMPLETED:
        raise BusinessRuleError("El turno ya está completado y no puede editarse")
    if appointment.status in Appointment.INACTIVE_STATUSES:
        raise BusinessRuleError("El turno ya no está activo y no puede editarse")

    new_start = changes.get("start_at")
    new_end = changes.get("end_at")
    target_status = changes.get("status") or appointment.status
    if (new_start or target_status != appointment.status) and target_status not in Appointment.INACTIVE_STATUSES:
        if has_same_day_appointment(appointment.vehicle, new_start or appointment.start_at, exclude_pk=appointment.pk):
            raise BusinessRuleError(SAME_DAY_MESSAGE)
    if new_start and new_start < now:
        raise BusinessRuleError("No se puede reprogramar a una fecha pasada")
    if new_end and new_end < now:
        raise BusinessRuleError("La fecha de fin no puede ser pasada")

    previous = (appointment.start_at, appointment.end_at)
    if new_start:
        appointment.start_at = new_start
    if new_end:
        appointment.end_at = new_end
    if appointment.end_at < appointment.start_at:
        raise BusinessRuleError("La fecha de fin no puede ser anterior al inicio")

    for name in ("service_type", "notes"):
        if name in changes:
            setattr(appointment, name, changes[name] or "")
    if "assigned_to" in changes:
        appointment.assigned_to = changes["assigned_to"]
    appointment.status = target_status

    rescheduled = previous != (appointment.start_at, appointment.end_at)
    with transaction.atomic():
        appointment.save()
        if rescheduled:
            appointment.reminder_jobs.filter(status=ReminderJob.Status.PENDING).delete()
            enqueue_reminder(shop, appointment, now=now)

    outcome = Outcome(appointment)
    if rescheduled:
        logger.info("appointment_rescheduled appointment=%s start=%s", appointment.pk, appointment.start_at.isoformat())
        notify_client(shop, appointment, emails.compose_appointment_rescheduled(shop, appointment), outcome)
    return outcome


def cancel_appointment(shop, appointment, *, reason=""):
    if appointment.status == Appointment.Status.COMPLETED:
        raise BusinessRuleError("No se puede cancelar un turno completado")
    if appointment.status in Appointment.INACTIVE_STATUSES:
        raise BusinessRuleError("El turno ya no está activo")
    appointment.status = Appointment.Status.CANCELLED
    appointment.cancel_reason = (reason or "").strip()
    with transaction.atomic():
        appointment.save(update_fields=["status", "cancel_reason", "updated_at"])
        appointment.reminder_jobs.filter(status=ReminderJob.Status.PENDING).delete()
    logger.info("appointment_cancelled appointment=%s", appointment.pk)

    outcome = Outcome(appointment)
    notify_client(shop, appointment, emails.compose_appointment_cancelled(shop, appointment), outcome)
    return outcome


def delete_appointment(appointment, *, blob_store=None):
    if appointment.status == Appointment.Status.COMPLETED:
        raise BusinessRuleError("No se puede eliminar un turno completado")
    for order in list(appointment.work_orders.all()):
        delete_work_order(order, blob_store=blob_store)
    appointment_id = appointment.pk
    appointment.delete()
    logger.info("appointment_deleted appointment=%s", appointment_id)


def _reference_estimate(appointment, repair):
    estimate = Estimate.objects.filter(appointment=appointment).order_by("-created_at", "-pk").first()
    if estimate is None and repair:
        estimate = (
            Estimate.objects.filter(vehicle_id=appointment.vehicle_id, client_id=appointment.client_id)
            .order_by("-created_at", "-pk")
            .first()
        )
    return estimate


def convert_to_work_order(appointment, *, user=None, now=None):
    now = now or timezone.now()
    if appointment.status == Appointment.Status.COMPLETED:
        raise BusinessRuleError("Un turno completado no permite crear una nueva orden de trabajo")
    if appointment.status in Appointment.INACTIVE_STATUSES:
        raise BusinessRuleError("El turno no está activo")
    if local_day(appointment.start_at) > timezone.localdate(now):
        raise BusinessRuleError("No se puede crear una orden de trabajo antes de la fecha del turno")
    if appointment.work_orders.exists():
        raise BusinessRuleError("Ya existe una Orden de Trabajo para esta cita")

    repair = is_repair_service(appointment.service_type)
    with transaction.atomic():
        order = create_work_order(
            vehicle=appointment.vehicle,
            client=appointment.client,
            appointment=appointment,
            category=WorkOrder.Category.REPARACION if repair else WorkOrder.Category.PRESUPUESTO,
            status=WorkOrder.Status.EN_PROCESO if repair else WorkOrder.Status.PRESUPUESTO,
            work_details=appointment.notes,
            user=user,
            estimate=_reference_estimate(appointment, repair),
        )
        appointment.status = Appointment.Status.IN_PROGRESS
        appointment.save(update_fields=["status", "updated_at"])
    logger.info("appointment_converted appointment=%s order=%s repair=%s", appointment.pk, order.pk, repair)
    return order
