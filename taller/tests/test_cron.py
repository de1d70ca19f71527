from datetime import date, time, timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.core import mail
from django.test import TestCase, override_settings

from taller import cron
from taller.context import ShopContext
from taller.exceptions import EmailDeliveryError
from taller.models import Appointment, AppointmentRequest, CronExecution, ReminderJob, WorkOrder
from taller.tests.helpers import aware, make_appointment, make_client, make_vehicle
from taller.workorders import create_work_order

SLOTS = ["08:00", "09:00", "10:00"]


@override_settings(
    EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend",
    ADMINS=[],
    MANAGERS=[],
    TALLER_SLOT_TIMES=SLOTS,
    TALLER_MIN_RESCHEDULE_MINUTES=30,
)
class CronTestCase(TestCase):
    def setUp(self):
        self.shop = ShopContext(shop_name="Taller Test", email_from="taller@example.com", owner_email="dueno@example.com")
        self.vehicle = make_vehicle()
        self.client_row = self.vehicle.current_owner


class ReminderJobTests(CronTestCase):
    def job(self, appointment, run_at, **fields):
        return ReminderJob.objects.create(appointment=appointment, run_at=run_at, **fields)

    def test_mixed_batch(self):
        now = aware(2025, 6, 10, 8, 30)
        due = aware(2025, 6, 10, 8, 0)
        start = aware(2025, 6, 10, 10, 0)
        ok = self.job(make_appointment(self.vehicle, start), due)
        orphan = self.job(None, due)
        cancelled = self.job(make_appointment(self.vehicle, start, status=Appointment.Status.CANCELLED), due)
        whatsapp = self.job(make_appointment(self.vehicle, start), due, channel=ReminderJob.Channel.WHATSAPP)
        no_email = make_client(first_name="Sin", phone="1199990000", email="")
        silent = self.job(make_appointment(self.vehicle, start, client=no_email), due)
        future = self.job(make_appointment(self.vehicle, start), aware(2025, 6, 10, 9, 0))

        result = cron.process_reminders(self.shop, now=now)

        self.assertEqual((result.processed, result.sent, result.failed), (5, 1, 4))
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["ana@example.com"])
        self.assertIn("en las proximas horas", mail.outbox[0].body)

        expected = {
            ok.pk: (ReminderJob.Status.SENT, ""),
            orphan.pk: (ReminderJob.Status.FAILED, "Turno inexistente"),
            cancelled.pk: (ReminderJob.Status.FAILED, "Turno cancelado"),
            whatsapp.pk: (ReminderJob.Status.FAILED, "Canal WHATSAPP no soportado"),
            silent.pk: (ReminderJob.Status.FAILED, "El cliente no tiene email"),
        }
        for pk, (status, error) in expected.items():
            job = ReminderJob.objects.get(pk=pk)
            self.assertEqual((job.status, job.last_error), (status, error))
            self.assertEqual(job.tries, 1)

        future.refresh_from_db()
        self.assertEqual(future.status, ReminderJob.Status.PENDING)
        self.assertEqual(future.tries, 0)

    def test_send_error_is_recorded(self):
        job = self.job(make_appointment(self.vehicle, aware(2025, 6, 10, 10, 0)), aware(2025, 6, 10, 8, 0))
        with mock.patch("taller.cron.send_email", side_effect=EmailDeliveryError("smtp caido")):
            result = cron.process_reminders(self.shop, now=aware(2025, 6, 10, 8, 30))
        job.refresh_from_db()
        self.assertEqual(result.failed, 1)
        self.assertEqual(job.status, ReminderJob.Status.FAILED)
        self.assertEqual(job.last_error, "smtp caido")
        self.assertEqual(job.tries, 1)

    def test_processed_jobs_are_not_retried(self):
        self.job(make_appointment(self.vehicle, aware(2025, 6, 10, 10, 0)), aware(2025, 6, 10, 8, 0))
        cron.process_reminders(self.shop, now=aware(2025, 6, 10, 8, 30))
        result = cron.process_reminders(self.shop, now=aware(2025, 6, 10, 8, 45))
        self.assertEqual(result.processed, 0)
        self.assertEqual(len(mail.outbox), 1)


class OverdueAppointmentTests(CronTestCase):
    now = aware(2025, 6, 10, 9, 0)

    def in_progress(self, start, end):
        appointment = make_appointment(self.vehicle, start, end_at=end, status=Appointment.Status.IN_PROGRESS)
        create_work_order(
            vehicle=self.vehicle,
            client=self.client_row,
            appointment=appointment,
            status=WorkOrder.Status.EN_PROCESO,
        )
        return appointment

    def test_confirmed_past_appointment_becomes_no_show(self):
        appointment = make_appointment(self.vehicle, aware(2025, 6, 8, 10, 0), status=Appointment.Status.CONFIRMED)
        scheduled = make_appointment(self.vehicle, aware(2025, 6, 8, 11, 0))
        result = cron.reschedule_overdue_appointments(self.shop, now=self.now)
        appointment.refresh_from_db()
        scheduled.refresh_from_db()
        self.assertEqual((result.processed, result.no_show), (1, 1))
        self.assertEqual(appointment.status, Appointment.Status.NO_SHOW)
        self.assertEqual(scheduled.status, Appointment.Status.SCHEDULED)

    def test_in_progress_without_open_order_becomes_no_show(self):
        appointment = make_appointment(self.vehicle, aware(2025, 6, 9, 10, 0), status=Appointment.Status.IN_PROGRESS)
        cron.reschedule_overdue_appointments(self.shop, now=self.now)
        appointment.refresh_from_db()
        self.assertEqual(appointment.status, Appointment.Status.NO_SHOW)

    def test_in_progress_with_open_order_moves_to_tomorrow(self):
        first = self.in_progress(aware(2025, 6, 9, 10, 0), aware(2025, 6, 9, 10, 10))
        second = self.in_progress(aware(2025, 6, 9, 11, 0), aware(2025, 6, 9, 13, 0))

        result = cron.reschedule_overdue_appointments(self.shop, now=self.now)

        self.assertEqual((result.processed, result.rescheduled), (2, 2))
        first.refresh_from_db()
        second.refresh_from_db()
        self.assertEqual(first.start_at, aware(2025, 6, 11, 8, 0))
        self.assertEqual(first.end_at, aware(2025, 6, 11, 8, 30))
        self.assertEqual(second.start_at, aware(2025, 6, 11, 9, 0))
        self.assertEqual(second.end_at, aware(2025, 6, 11, 11, 0))
        self.assertEqual(first.status, Appointment.Status.IN_PROGRESS)

        again = cron.reschedule_overdue_appointments(self.shop, now=self.now)
        self.assertEqual(again.processed, 0)

    def test_taken_slots_are_skipped(self):
        other = make_vehicle(owner=make_client(phone="1166660000", email="b@example.com"), plate="AC456EF")
        make_appointment(other, aware(2025, 6, 11, 8, 0))
        appointment = self.in_progress(aware(2025, 6, 9, 10, 0), aware(2025, 6, 9, 11, 0))
        cron.reschedule_overdue_appointments(self.shop, now=self.now)
        appointment.refresh_from_db()
        self.assertEqual(appointment.start_at, aware(2025, 6, 11, 9, 0))

    def test_full_day_falls_back_to_first_slot(self):
        occupied = {time(8, 0), time(9, 0), time(10, 0)}
        chosen, start_at = cron.pick_slot(date(2025, 6, 11), occupied)
        self.assertEqual(chosen.strftime("%H:%M"), "08:00")
        self.assertEqual(start_at, aware(2025, 6, 11, 8, 0))


class DayBeforeReminderTests(CronTestCase):
    now = aware(2025, 6, 9, 18, 0)

    def test_sends_once_per_target_day(self):
        confirmed = make_appointment(self.vehicle, aware(2025, 6, 10, 10, 0), status=Appointment.Status.CONFIRMED)
        make_appointment(self.vehicle, aware(2025, 6, 10, 12, 0))
        no_email = make_client(first_name="Sin", phone="1199990000", email="")
        make_appointment(self.vehicle, aware(2025, 6, 10, 15, 0), status=Appointment.Status.CONFIRMED, client=no_email)

        result = cron.send_day_before_appointment_reminders(self.shop, now=self.now)

        self.assertEqual(result.target_date, "2025-06-10")
        self.assertEqual((result.sent, result.skipped, result.failed), (1, 1, 0))
        confirmed.refresh_from_db()
        self.assertEqual(confirmed.reminded_for_date, date(2025, 6, 10))
        self.assertIn("mañana", mail.outbox[0].body)

        again = cron.send_day_before_appointment_reminders(self.shop, now=self.now)
        self.assertEqual(again.sent, 0)
        self.assertEqual(len(mail.outbox), 1)

    def test_disabled_by_shop(self):
        make_appointment(self.vehicle, aware(2025, 6, 10, 10, 0), status=Appointment.Status.CONFIRMED)
        shop = ShopContext(reminder_24h=False)
        result = cron.send_day_before_appointment_reminders(shop, now=self.now)
        self.assertFalse(result.enabled)
        self.assertEqual(len(mail.outbox), 0)


class MaintenanceReminderTests(CronTestCase):
    def order(self, **fields):
        fields.setdefault("maintenance_notice", True)
        fields.setdefault("maintenance_date", date(2025, 6, 1))
        return create_work_order(vehicle=self.vehicle, client=self.client_row, **fields)

    def test_once_per_day(self):
        order = self.order(maintenance_detail="Cambio de aceite")
        self.order(maintenance_date=date(2025, 6, 20))
        self.order(maintenance_notice=False)
        self.order(status=WorkOrder.Status.CANCELADA)

        result = cron.process_maintenance_reminders(self.shop, now=aware(2025, 6, 10, 9, 0))
        self.assertEqual(result.sent, 1)
        self.assertIn("Cambio de aceite", mail.outbox[0].body)
        order.refresh_from_db()
        self.assertEqual(order.maintenance_last_notified_at, aware(2025, 6, 10, 9, 0))

        same_day = cron.process_maintenance_reminders(self.shop, now=aware(2025, 6, 10, 15, 0))
        self.assertEqual(same_day.sent, 0)
        next_day = cron.process_maintenance_reminders(self.shop, now=aware(2025, 6, 11, 9, 0))
        self.assertEqual(next_day.sent, 1)

    def test_client_without_email_is_skipped(self):
        self.client_row.email = ""
        self.client_row.save()
        self.order()
        result = cron.process_maintenance_reminders(self.shop, now=aware(2025, 6, 10, 9, 0))
        self.assertEqual((result.sent, result.skipped), (0, 1))


class OwnerSummaryTests(CronTestCase):
    now = aware(2025, 6, 10, 7, 0)

    def test_sent_once_per_day(self):
        make_appointment(self.vehicle, aware(2025, 6, 10, 9, 0), status=Appointment.Status.CONFIRMED)
        make_appointment(self.vehicle, aware(2025, 6, 10, 11, 0), status=Appointment.Status.IN_PROGRESS)
        make_appointment(self.vehicle, aware(2025, 6, 10, 12, 0), status=Appointment.Status.CANCELLED)
        AppointmentRequest.objects.create(client_name="Juan", request_type=AppointmentRequest.RequestType.DIAGNOSIS)

        result = cron.send_owner_daily_summary(self.shop, now=self.now)

        self.assertTrue(result.sent)
        self.assertEqual((result.appointments, result.pending_requests), (2, 1))
        self.assertEqual(result.recipients, ["dueno@example.com"])
        body = mail.outbox[0].body
        self.assertIn("Programados: 1", body)
        self.assertIn("En proceso: 1", body)
        self.assertIn("Solicitudes pendientes: 1", body)

        again = cron.send_owner_daily_summary(self.shop, now=self.now + timedelta(hours=3))
        self.assertFalse(again.sent)
        self.assertEqual(again.reason, "ALREADY_SENT_FOR_DAY")
        self.assertEqual(len(mail.outbox), 1)

    def test_no_recipients(self):
        result = cron.send_owner_daily_summary(ShopContext(), now=self.now)
        self.assertEqual(result.reason, "NO_RECIPIENTS")
        self.assertFalse(CronExecution.objects.exists())

    def test_falls_back_to_staff_emails(self):
        get_user_model().objects.create_user("jefe", email="jefe@example.com", password="x", is_staff=True)
        self.assertEqual(cron.owner_summary_recipients(ShopContext()), ["jefe@example.com"])

    @override_settings(ADMINS=[("Admin", "admin@example.com")])
    def test_admins_before_staff(self):
        get_user_model().objects.create_user("jefe", email="jefe@example.com", password="x", is_staff=True)
        self.assertEqual(cron.owner_summary_recipients(ShopContext()), ["admin@example.com"])

    def test_failed_send_allows_retry(self):
        with mock.patch("taller.cron.send_email", side_effect=EmailDeliveryError()):
            result = cron.send_owner_daily_summary(self.shop, now=self.now)
        self.assertEqual(result.reason, "SEND_FAILED")
        self.assertEqual(result.failed_recipients, ["dueno@example.com"])
        self.assertFalse(CronExecution.objects.exists())

        retry = cron.send_owner_daily_summary(self.shop, now=self.now)
        self.assertTrue(retry.sent)


class RunJobTests(CronTestCase):
    def test_run_all(self):
        results = cron.run_job("all", self.shop, now=aware(2025, 6, 10, 7, 0))
        self.assertEqual(set(results), set(cron.JOBS))
        self.assertEqual(results["reminders"]["processed"], 0)

    def test_unknown_job(self):
        with self.assertRaises(KeyError):
            cron.run_job("backup", self.shop)
