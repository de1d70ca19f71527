from datetime import timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from taller.exceptions import EmailDeliveryError
from taller.models import ErrorLog, WorkOrder
from taller.permissions import ROLE_EMPLEADO
from taller.tests.helpers import make_appointment, make_client, make_vehicle
from taller.workorders import CLOSED_ORDER_MESSAGE, create_work_order


@override_settings(EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend")
class ApiTestCase(TestCase):
    def setUp(self):
        self.api = APIClient()
        self.User = get_user_model()
        self.staff = self.User.objects.create_user(username="mostrador", password="pass123", is_staff=True)
        self.vehicle = make_vehicle()
        self.owner = self.vehicle.current_owner

    def login(self, user=None):
        self.api.force_login(user or self.staff)


class PermissionTests(ApiTestCase):
    def test_anonymous_is_forbidden(self):
        response = self.api.get(reverse("work_order_detail", args=[1]))
        self.assertEqual(response.status_code, 403)

    def test_regular_user_is_forbidden(self):
        user = self.User.objects.create_user(username="regular", password="pass123")
        self.login(user)
        response = self.api.get(reverse("work_order_detail", args=[1]))
        self.assertEqual(response.status_code, 403)

    def test_employee_group_has_access(self):
        group, _ = Group.objects.get_or_create(name=ROLE_EMPLEADO)
        user = self.User.objects.create_user(username="empleado", password="pass123")
        user.groups.add(group)
        self.login(user)
        response = self.api.get(reverse("work_order_detail", args=[999]))
        self.assertEqual(response.status_code, 404)


class WorkOrderApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.login()

    def test_create_work_order(self):
        payload = {
            "vehicle": self.vehicle.pk,
            "client": self.owner.pk,
            "items": [{"description": "Pastillas", "qty": "2", "unit_price": "1000"}],
            "labor_cost": "500",
            "discount": "100",
        }
        response = self.api.post(reverse("work_order_create"), payload, format="json")
        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["total"], "2400.00")
        self.assertEqual(body["status"], WorkOrder.Status.PRESUPUESTO)
        self.assertEqual(
            body["allowed_next_statuses"],
            [WorkOrder.Status.EN_PROCESO, WorkOrder.Status.COMPLETADA, WorkOrder.Status.CANCELADA],
        )

    def test_cannot_create_cancelled(self):
        payload = {"vehicle": self.vehicle.pk, "client": self.owner.pk, "status": "CANCELADA"}
        response = self.api.post(reverse("work_order_create"), payload, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertFalse(WorkOrder.objects.exists())

    def test_closed_order_rejects_budget_edit(self):
        order = create_work_order(vehicle=self.vehicle, client=self.owner, status=WorkOrder.Status.COMPLETADA)
        url = reverse("work_order_detail", args=[order.pk])
        response = self.api.patch(url, {"labor_cost": "10"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json(), {"message": CLOSED_ORDER_MESSAGE})

        response = self.api.patch(url, {"evidence": [{"text": "Entregado"}]}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["evidence"]), 1)

    def test_invalid_transition(self):
        order = create_work_order(vehicle=self.vehicle, client=self.owner, status=WorkOrder.Status.EN_PROCESO)
        response = self.api.patch(
            reverse("work_order_detail", args=[order.pk]),
            {"status": WorkOrder.Status.PRESUPUESTO},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("Transicion no permitida", response.json()["message"])

    def test_missing_order(self):
        response = self.api.get(reverse("work_order_detail", args=[999]))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"message": "Orden de trabajo no encontrado"})

    def test_empty_estimate_rejected(self):
        response = self.api.post(
            reverse("estimate_create"),
            {"vehicle": self.vehicle.pk, "client": self.owner.pk},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("sin items", response.json()["message"])

    def test_unexpected_error_is_logged(self):
        order = create_work_order(vehicle=self.vehicle, client=self.owner, status=WorkOrder.Status.COMPLETADA)
        with mock.patch("taller.workorders.reopen_work_order", side_effect=RuntimeError("boom")):
            response = self.api.post(reverse("work_order_reopen", args=[order.pk]))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["message"], "boom")
        entry = ErrorLog.objects.get()
        self.assertEqual(entry.status_code, 500)
        self.assertEqual(entry.method, "POST")
        self.assertEqual(entry.user, "mostrador")


class DegradedOutcomeApiTests(ApiTestCase):
    def test_deferred_side_effect_is_reported_and_logged(self):
        self.login()
        appointment = make_appointment(self.vehicle, timezone.now() + timedelta(days=2))
        with mock.patch("taller.appointments.send_email", side_effect=EmailDeliveryError()):
            with self.assertLogs("taller.views", level="WARNING") as logs:
                response = self.api.post(reverse("appointment_cancel", args=[appointment.pk]), {}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deferred"], ["email"])
        self.assertIn("operation_degraded model=Appointment", logs.output[0])


class VehicleApiTests(ApiTestCase):
    def test_change_owner(self):
        self.login()
        buyer = make_client(first_name="Luis", phone="1177770000", email="luis@example.com")
        url = reverse("vehicle_change_owner", args=[self.vehicle.pk])
        response = self.api.post(url, {"client": buyer.pk, "note": "Venta"}, format="json")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["changed"])
        self.assertEqual(body["current_owner"], buyer.pk)
        self.assertEqual(len(body["owner_history"]), 2)

        response = self.api.post(url, {"client": buyer.pk}, format="json")
        self.assertFalse(response.json()["changed"])


class CronApiTests(TestCase):
    def setUp(self):
        self.api = APIClient()

    @override_settings(CRON_SECRET="")
    def test_missing_secret_is_forbidden(self):
        response = self.api.get(reverse("cron_run", args=["reminders"]))
        self.assertEqual(response.status_code, 403)

    @override_settings(CRON_SECRET="s3cret")
    def test_wrong_secret_is_forbidden(self):
        response = self.api.get(reverse("cron_run", args=["reminders"]), HTTP_AUTHORIZATION="Bearer nope")
        self.assertEqual(response.status_code, 403)

    @override_settings(CRON_SECRET="s3cret")
    def test_runs_job(self):
        response = self.api.get(reverse("cron_run", args=["reminders"]), HTTP_AUTHORIZATION="Bearer s3cret")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["results"]["reminders"]["processed"], 0)

    @override_settings(CRON_SECRET="s3cret")
    def test_unknown_job(self):
        response = self.api.get(reverse("cron_run", args=["backup"]), HTTP_AUTHORIZATION="Bearer s3cret")
        self.assertEqual(response.status_code, 404)
