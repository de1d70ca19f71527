"""Periodic sweeps run by ``manage.py run_cron`` or the cron endpoints.

Every sweep loads nothing implicitly: the caller passes a ``ShopContext`` and,
for tests, a fixed ``now``. Items are processed one by one and a failure is
recorded on the item (or counted in the result) without aborting the batch.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
from typing import List, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from taller import emails
from taller.context import ShopContext
from taller.mailer import send_email
from taller.models import Appointment, AppointmentRequest, CronExecution, ReminderJob, WorkOrder
from taller.utils import day_bounds, start_of_day

logger = logging.getLogger(__name__)

OWNER_SUMMARY_JOB = "owner-summary"
DEFAULT_SLOT_TIMES = ("08:00", "09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00", "17:00")


@dataclass
class SweepResult:
    def as_dict(self):
        return asdict(self)


@dataclass
class ReminderJobsResult(SweepResult):
    processed: int = 0
    sent: int = 0
    failed: int = 0


@dataclass
class OverdueResult(SweepResult):
    processed: int = 0
    no_show: int = 0
    rescheduled: int = 0
    failed: int = 0


@dataclass
class DayBeforeResult(SweepResult):
    target_date: str = ""
    enabled: bool = True
    sent: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class MaintenanceResult(SweepResult):
    sent: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class OwnerSummaryResult(SweepResult):
    day: str = ""
    sent: bool = False
    reason: str = ""
    appointments: int = 0
    pending_requests: int = 0
    recipients: List[str] = field(default_factory=list)
    failed_recipients: List[str] = field(default_factory=list)


def _client_email(obj):
    client = getattr(obj, "client", None)
    if client is None:
        return ""
    return (client.email or "").strip()


# --- Reminder jobs ---------------------------------------------------------

def _reminder_failure(job):
    appointment = job.appointment
    if appointment is None:
        return "Turno inexistente"
    if appointment.status in Appointment.INACTIVE_STATUSES:
        return f"Turno {appointment.get_status_display().lower()}"
    if appointment.client_id is None:
        return "Turno sin cliente"
    if job.channel != ReminderJob.Channel.EMAIL:
        return f"Canal {job.channel} no soportado"
    if not _client_email(appointment):
        return "El cliente no tiene email"
    return None


def process_reminders(shop: Optional[ShopContext] = None, *, now: Optional[datetime] = None) -> ReminderJobsResult:
    shop = shop or ShopContext.load()
    now = now or timezone.now()
    result = ReminderJobsResult()
    jobs = (
        ReminderJob.objects.filter(status=ReminderJob.Status.PENDING, run_at__lte=now)
        .select_related("appointment__client", "appointment__vehicle")
        .order_by("run_at", "pk")
    )
    for job in jobs:
        result.processed += 1
        job.tries += 1
        try:
            reason = _reminder_failure(job)
            if reason:
                job.status = ReminderJob.Status.FAILED
                job.last_error = reason
                result.failed += 1
            else:
                appointment = job.appointment
                content = emails.compose_appointment_reminder(
                    shop,
                    appointment,
                    when=emails.reminder_when_label(appointment, now),
                )
                send_email(
                    to=[_client_email(appointment)],
                    subject=content.subject,
                    html=content.html,
                    text=content.text,
                    from_email=shop.from_email,
                )
                job.status = ReminderJob.Status.SENT
                job.last_error = ""
                result.sent += 1
        except Exception as exc:
            logger.exception("reminder_job_failed job=%s", job.pk)
            job.status = ReminderJob.Status.FAILED
            job.last_error = str(exc)[:1000]
            result.failed += 1
        job.save(update_fields=["status", "last_error", "tries", "updated_at"])
    logger.info("cron_reminders %s", result.as_dict())
    return result


# --- Overdue appointments --------------------------------------------------

def _slot_times():
    configured = getattr(settings, "TALLER_SLOT_TIMES", None) or DEFAULT_SLOT_TIMES
    slots = []
    for raw in configured:
        hour, _, minute = str(raw).strip().partition(":")
        slots.append(time(int(hour), int(minute or 0)))
    return sorted(set(slots))


def _occupied_slots(day):
    day_start, day_end = day_bounds(day)
    starts = (
        Appointment.objects.filter(start_at__gte=day_start, start_at__lt=day_end)
        .exclude(status__in=Appointment.INACTIVE_STATUSES)
        .values_list("start_at", flat=True)
    )
    return {timezone.localtime(value).time().replace(second=0, microsecond=0) for value in starts}


def pick_slot(day, occupied):
    """First grid time of ``day`` not in ``occupied``; the earliest one when all are taken."""
    slots = _slot_times()
    chosen = next((slot for slot in slots if slot not in occupied), slots[0])
    return chosen, timezone.make_aware(datetime.combine(day, chosen), timezone.get_current_timezone())


def _has_active_work_order(appointment):
    return appointment.work_orders.exclude(
        status__in=[WorkOrder.Status.COMPLETADA, WorkOrder.Status.CANCELADA]
    ).exists()


def reschedule_overdue_appointments(shop: Optional[ShopContext] = None, *, now: Optional[datetime] = None) -> OverdueResult:
    now = now or timezone.now()
    today = timezone.localdate(now)
    tomorrow = today + timedelta(days=1)
    min_duration = timedelta(minutes=getattr(settings, "TALLER_MIN_RESCHEDULE_MINUTES", 30))
    result = OverdueResult()

    overdue = Appointment.objects.filter(
        status__in=[Appointment.Status.CONFIRMED, Appointment.Status.IN_PROGRESS],
        end_at__lt=start_of_day(today),
    ).order_by("start_at", "pk")
    occupied = _occupied_slots(tomorrow)

    for appointment in overdue:
        result.processed += 1
        try:
            if appointment.status == Appointment.Status.IN_PROGRESS and _has_active_work_order(appointment):
                duration = max(appointment.end_at - appointment.start_at, min_duration)
                slot, start_at = pick_slot(tomorrow, occupied)
                appointment.start_at = start_at
                appointment.end_at = start_at + duration
                appointment.save(update_fields=["start_at", "end_at", "updated_at"])
                occupied.add(slot)
                result.rescheduled += 1
                logger.info("appointment_auto_rescheduled appointment=%s start=%s", appointment.pk, start_at.isoformat())
            else:
                appointment.status = Appointment.Status.NO_SHOW
                appointment.save(update_fields=["status", "updated_at"])
                result.no_show += 1
                logger.info("appointment_no_show appointment=%s", appointment.pk)
        except Exception:
            logger.exception("overdue_appointment_failed appointment=%s", appointment.pk)
            result.failed += 1
    logger.info("cron_overdue %s", result.as_dict())
    return result


# --- Day-before reminders --------------------------------------------------

def send_day_before_appointment_reminders(
    shop: Optional[ShopContext] = None,
    *,
    days_ahead: int = 1,
    now: Optional[datetime] = None,
) -> DayBeforeResult:
    shop = shop or ShopContext.load()
    now = now or timezone.now()
    target = timezone.localdate(now) + timedelta(days=days_ahead)
    result = DayBeforeResult(target_date=target.isoformat())
    if not shop.reminder_24h:
        result.enabled = False
        logger.info("cron_day_before disabled")
        return result

    day_start, day_end = day_bounds(target)
    appointments = (
        Appointment.objects.filter(
            status=Appointment.Status.CONFIRMED,
            start_at__gte=day_start,
            start_at__lt=day_end,
        )
        .filter(Q(reminded_for_date__isnull=True) | ~Q(reminded_for_date=target))
        .select_related("client", "vehicle")
        .order_by("start_at", "pk")
    )
    for appointment in appointments:
        email = _client_email(appointment)
        if not email:
            result.skipped += 1
            continue
        try:
            content = emails.compose_appointment_reminder(shop, appointment, when="mañana")
            send_email(
                to=[email],
                subject=content.subject,
                html=content.html,
                text=content.text,
                from_email=shop.from_email,
            )
        except Exception:
            logger.exception("day_before_reminder_failed appointment=%s", appointment.pk)
            result.failed += 1
            continue
        appointment.reminded_for_date = target
        appointment.save(update_fields=["reminded_for_date", "updated_at"])
        result.sent += 1
    logger.info("cron_day_before %s", result.as_dict())
    return result


# --- Maintenance reminders -------------------------------------------------

def process_maintenance_reminders(shop: Optional[ShopContext] = None, *, now: Optional[datetime] = None) -> MaintenanceResult:
    shop = shop or ShopContext.load()
    now = now or timezone.now()
    today = timezone.localdate(now)
    result = MaintenanceResult()
    orders = (
        WorkOrder.objects.filter(maintenance_notice=True, maintenance_date__lte=today)
        .filter(Q(maintenance_last_notified_at__isnull=True) | Q(maintenance_last_notified_at__lt=start_of_day(today)))
        .exclude(status=WorkOrder.Status.CANCELADA)
        .select_related("client", "vehicle")
        .order_by("maintenance_date", "pk")
    )
    for order in orders:
        email = _client_email(order)
        if not email:
            result.skipped += 1
            continue
        try:
            content = emails.compose_maintenance_reminder(shop, order)
            send_email(
                to=[email],
                subject=content.subject,
                html=content.html,
                text=content.text,
                from_email=shop.from_email,
            )
        except Exception:
            logger.exception("maintenance_reminder_failed order=%s", order.pk)
            result.failed += 1
            continue
        order.maintenance_last_notified_at = now
        order.save(update_fields=["maintenance_last_notified_at", "updated_at"])
        result.sent += 1
    logger.info("cron_maintenance %s", result.as_dict())
    return result


# --- Owner daily summary ---------------------------------------------------

def owner_summary_recipients(shop):
    """Shop owner first, then ADMINS, MANAGERS and finally staff users with email."""
    if shop.owner_email:
        return [shop.owner_email]
    recipients = [email for _, email in getattr(settings, "ADMINS", ()) if email]
    if not recipients:
        recipients = [email for _, email in getattr(settings, "MANAGERS", ()) if email]
    if not recipients:
        User = get_user_model()
        recipients = list(
            User.objects.filter(is_staff=True, is_active=True)
            .exclude(email="")
            .order_by("pk")
            .values_list("email", flat=True)[:5]
        )
    return recipients


def send_owner_daily_summary(shop: Optional[ShopContext] = None, *, now: Optional[datetime] = None) -> OwnerSummaryResult:
    shop = shop or ShopContext.load()
    now = now or timezone.now()
    today = timezone.localdate(now)
    result = OwnerSummaryResult(day=today.isoformat())

    recipients = owner_summary_recipients(shop)
    if not recipients:
        result.reason = "NO_RECIPIENTS"
        logger.info("cron_owner_summary %s", result.as_dict())
        return result

    try:
        with transaction.atomic():
            marker = CronExecution.objects.create(job=OWNER_SUMMARY_JOB, day_key=result.day)
    except IntegrityError:
        result.reason = "ALREADY_SENT_FOR_DAY"
        logger.info("cron_owner_summary %s", result.as_dict())
        return result

    day_start, day_end = day_bounds(today)
    appointments = list(
        Appointment.objects.filter(start_at__gte=day_start, start_at__lt=day_end)
        .exclude(status__in=Appointment.INACTIVE_STATUSES)
        .select_related("client", "vehicle")
        .order_by("start_at", "pk")
    )
    pending_requests = AppointmentRequest.objects.filter(status=AppointmentRequest.Status.PENDING).count()
    result.appointments = len(appointments)
    result.pending_requests = pending_requests
    content = emails.compose_owner_summary(shop, today, appointments, pending_requests=pending_requests)

    for email in recipients:
        try:
            send_email(
                to=[email],
                subject=content.subject,
                html=content.html,
                text=content.text,
                from_email=shop.from_email,
            )
        except Exception:
            logger.exception("owner_summary_failed to=%s", email)
            result.failed_recipients.append(email)
            continue
        result.recipients.append(email)

    result.sent = bool(result.recipients)
    if not result.sent:
        # nothing went out; let a later run retry today
        marker.delete()
        result.reason = "SEND_FAILED"
    logger.info("cron_owner_summary %s", result.as_dict())
    return result


JOBS = {
    "reminders": process_reminders,
    "overdue": reschedule_overdue_appointments,
    "day-before": send_day_before_appointment_reminders,
    "maintenance": process_maintenance_reminders,
    "owner-summary": send_owner_daily_summary,
}


def run_job(name, shop=None, *, now=None):
    """Run one sweep (or ``all``) and return ``{job: result_dict}``."""
    if name == "all":
        names = list(JOBS)
    elif name in JOBS:
        names = [name]
    else:
        raise KeyError(name)
    shop = shop or ShopContext.load()
    return {job: JOBS[job](shop, now=now).as_dict() for job in names}
