import shutil
import tempfile
from datetime import datetime

from django.test import override_settings
from django.utils import timezone

from taller.models import Appointment, Client, Vehicle


def aware(*args):
    return timezone.make_aware(datetime(*args), timezone.get_current_timezone())


def make_client(first_name="Ana", last_name="Gomez", phone="1155550000", email="ana@example.com"):
    return Client.objects.create(first_name=first_name, last_name=last_name, phone=phone, email=email)


def make_vehicle(owner=None, plate="AB123CD", **fields):
    fields.setdefault("make", "Ford")
    fields.setdefault("model", "Fiesta")
    return Vehicle.register(plate=plate, owner=owner or make_client(), **fields)


def make_appointment(vehicle, start_at, *, end_at=None, status=Appointment.Status.SCHEDULED, **fields):
    """Insert an appointment directly, skipping the booking rules."""
    return Appointment.objects.create(
        vehicle=vehicle,
        client=fields.pop("client", None) or vehicle.current_owner,
        start_at=start_at,
        end_at=end_at or start_at,
        status=status,
        **fields,
    )


class TempMediaMixin:
    """Point MEDIA_ROOT at a throwaway directory for the whole test class."""

    @classmethod
    def setUpClass(cls):
        cls._media_root = tempfile.mkdtemp(prefix="taller-test-")
        cls._media_override = override_settings(MEDIA_ROOT=cls._media_root, MEDIA_URL="/media/")
        cls._media_override.enable()
        super().setUpClass()

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        cls._media_override.disable()
        shutil.rmtree(cls._media_root, ignore_errors=True)
