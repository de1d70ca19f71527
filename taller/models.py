import logging
from decimal import Decimal

from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone

from taller.exceptions import BusinessRuleError
from taller.utils import grand_total, normalize_email, normalize_phone, normalize_plate

logger = logging.getLogger(__name__)


class Client(models.Model):
    first_name = models.CharField(max_length=80)
    last_name = models.CharField(max_length=80, blank=True, default="")
    phone = models.CharField(max_length=30, blank=True, default="", db_index=True)
    email = models.EmailField(blank=True, default="", db_index=True)
    notes = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["last_name", "first_name"]

    def __str__(self):
        return self.display_name

    @property
    def display_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    def save(self, *args, **kwargs):
        self.phone = normalize_phone(self.phone)
        self.email = normalize_email(self.email)
        super().save(*args, **kwargs)

    @classmethod
    def resolve(cls, *, first_name, last_name="", phone="", email="", notes=""):
        """Return the client matching ``phone`` (then ``email``) or create one.

        A match gets its blank phone/email filled from the incoming data, so
        repeated contacts converge on a single client row.
        """
        phone = normalize_phone(phone)
        email = normalize_email(email)
        client = None
        if phone:
            client = cls.objects.filter(phone=phone).order_by("pk").first()
        if client is None and email:
            client = cls.objects.filter(email=email).order_by("pk").first()
        if client is None:
            return cls.objects.create(
                first_name=(first_name or "").strip() or "Cliente",
                last_name=(last_name or "").strip(),
                phone=phone,
                email=email,
                notes=notes or "",
            )
        update_fields = []
        if phone and not client.phone:
            client.phone = phone
            update_fields.append("phone")
        if email and not client.email:
            client.email = email
            update_fields.append("email")
        if update_fields:
            update_fields.append("updated_at")
            client.save(update_fields=update_fields)
        return client


class Vehicle(models.Model):
    plate_raw = models.CharField(max_length=20)
    plate_normalized = models.CharField(max_length=20, unique=True, editable=False)
    make = models.CharField(max_length=60, blank=True, default="")
    model = models.CharField(max_length=60, blank=True, default="")
    year = models.PositiveSmallIntegerField(null=True, blank=True)
    color = models.CharField(max_length=40, blank=True, default="")
    km = models.PositiveIntegerField(null=True, blank=True)
    current_owner = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="vehicles")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        label = " ".join(value for value in (self.make, self.model) if value)
        if label:
            return f"{label} ({self.plate_normalized})"
        return self.plate_normalized

    def save(self, *args, **kwargs):
        self.plate_normalized = normalize_plate(self.plate_raw)
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "plate_raw" in update_fields:
            kwargs["update_fields"] = set(update_fields) | {"plate_normalized"}
        super().save(*args, **kwargs)

    @classmethod
    def register(cls, *, plate, owner, note="Titular inicial", **fields):
        normalized = normalize_plate(plate)
        if not normalized:
            raise BusinessRuleError("La patente es requerida")
        if cls.objects.filter(plate_normalized=normalized).exists():
            raise BusinessRuleError("Ya existe un vehiculo con esa patente")
        with transaction.atomic():
            vehicle = cls.objects.create(plate_raw=plate.strip(), current_owner=owner, **fields)
            VehicleOwnership.objects.create(
                vehicle=vehicle,
                client=owner,
                from_at=timezone.now(),
                note=note or "",
            )
        return vehicle

    def change_owner(self, client, *, note=""):
        """Move the vehicle to ``client``; returns False when nothing changed."""
        if client.pk == self.current_owner_id:
            return False
        now = timezone.now()
        with transaction.atomic():
            self.owner_history.filter(to_at__isnull=True).update(to_at=now)
            VehicleOwnership.objects.create(vehicle=self, client=client, from_at=now, note=note or "")
            self.current_owner = client
            self.save(update_fields=["current_owner", "updated_at"])
        logger.info("vehicle_owner_changed vehicle=%s client=%s", self.pk, client.pk)
        return True


class VehicleOwnership(models.Model):
    vehicle = models.ForeignKey(Vehicle, on_delete=models.CASCADE, related_name="owner_history")
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="ownerships")
    from_at = models.DateTimeField()
    to_at = models.DateTimeField(null=True, blank=True)
    note = models.CharField(max_length=200, blank=True, default="")

    class Meta:
        ordering = ["from_at", "pk"]
        constraints = [
            models.UniqueConstraint(
                fields=["vehicle"],
                condition=Q(to_at__isnull=True),
                name="vehicle_single_open_ownership",
            ),
        ]


class Appointment(models.Model):
    class Status(models.TextChoices):
        SCHEDULED = "SCHEDULED", "Agendado"
        CONFIRMED = "CONFIRMED", "Confirmado"
        CANCELLED = "CANCELLED", "Cancelado"
        NO_SHOW = "NO_SHOW", "No se presento"
        COMPLETED = "COMPLETED", "Completado"
        IN_PROGRESS = "IN_PROGRESS", "En proceso"

    INACTIVE_STATUSES = {Status.CANCELLED, Status.NO_SHOW}
    TERMINAL_STATUSES = {Status.CANCELLED, Status.NO_SHOW, Status.COMPLETED}

    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name="appointments")
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="appointments")
    start_at = models.DateTimeField(db_index=True)
    end_at = models.DateTimeField(db_index=True)
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.SCHEDULED, db_index=True)
    service_type = models.CharField(max_length=60, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    assigned_to = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="assigned_appointments",
    )
    cancel_reason = models.CharField(max_length=255, blank=True, default="")
    reminded_for_date = models.DateField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="created_appointments",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["start_at", "pk"]
        constraints = [
            models.CheckConstraint(condition=Q(end_at__gte=F("start_at")), name="appointment_end_after_start"),
        ]

    def __str__(self):
        return f"Turno {self.pk} {self.vehicle.plate_normalized} {timezone.localtime(self.start_at):%Y-%m-%d %H:%M}"

    @property
    def is_active(self):
        return self.status not in self.INACTIVE_STATUSES


class AppointmentRequest(models.Model):
    class RequestType(models.TextChoices):
        DIAGNOSIS = "diagnosis", "Diagnostico"
        REPAIR = "repair", "Reparacion"

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pendiente"
        CONFIRMED = "CONFIRMED", "Confirmada"
        REJECTED = "REJECTED", "Rechazada"

    client_name = models.CharField(max_length=160)
    phone = models.CharField(max_length=30, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    client = models.ForeignKey(Client, null=True, blank=True, on_delete=models.SET_NULL, related_name="appointment_requests")
    vehicle = models.ForeignKey(Vehicle, null=True, blank=True, on_delete=models.SET_NULL, related_name="appointment_requests")
    vehicle_data = models.JSONField(default=dict, blank=True)
    request_type = models.CharField(max_length=12, choices=RequestType.choices)
    description = models.TextField(blank=True, default="")
    suggested_dates = models.JSONField(default=list, blank=True, encoder=DjangoJSONEncoder)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING, db_index=True)
    rejection_reason = models.TextField(blank=True, default="")
    confirmed_appointment = models.OneToOneField(
        Appointment,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="source_request",
    )
    confirmed_at = models.DateTimeField(null=True, blank=True)
    rejected_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"Solicitud {self.pk} {self.client_name}"


class WorkOrder(models.Model):
    class Category(models.TextChoices):
        PRESUPUESTO = "PRESUPUESTO", "Presupuesto"
        REPARACION = "REPARACION", "Reparacion"
        GENERAL = "GENERAL", "General"

    class Status(models.TextChoices):
        PRESUPUESTO = "PRESUPUESTO", "Presupuesto"
        EN_PROCESO = "EN_PROCESO", "En proceso"
        COMPLETADA = "COMPLETADA", "Completada"
        CANCELADA = "CANCELADA", "Cancelada"

    class PaymentMethod(models.TextChoices):
        CASH = "CASH", "Efectivo"
        TRANSFER = "TRANSFER", "Transferencia"
        CARD = "CARD", "Tarjeta"
        OTHER = "OTHER", "Otro"

    STATUS_TRANSITIONS = {
        Status.PRESUPUESTO: (Status.EN_PROCESO, Status.COMPLETADA, Status.CANCELADA),
        Status.EN_PROCESO: (Status.COMPLETADA, Status.CANCELADA),
        Status.COMPLETADA: (Status.EN_PROCESO,),
        Status.CANCELADA: (),
    }
    STARTED_STATUSES = {Status.EN_PROCESO, Status.COMPLETADA}
    CLOSED_EDITABLE_FIELDS = {"status", "evidence"}
    BUDGET_FIELDS = ("items", "labor_cost", "discount")
    APPOINTMENT_STATUS_MAP = {
        Status.EN_PROCESO: Appointment.Status.IN_PROGRESS,
        Status.COMPLETADA: Appointment.Status.COMPLETED,
        Status.CANCELADA: Appointment.Status.CANCELLED,
    }

    appointment = models.ForeignKey(
        Appointment,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="work_orders",
    )
    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name="work_orders")
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="work_orders")
    category = models.CharField(max_length=12, choices=Category.choices, default=Category.GENERAL)
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.PRESUPUESTO, db_index=True)
    work_details = models.TextField(blank=True, default="")
    notes = models.TextField(blank=True, default="")
    maintenance_notice = models.BooleanField(default=False)
    maintenance_date = models.DateField(null=True, blank=True)
    maintenance_detail = models.TextField(blank=True, default="")
    maintenance_last_notified_at = models.DateTimeField(null=True, blank=True)
    work_started_at = models.DateTimeField(null=True, blank=True)
    items = models.JSONField(default=list, blank=True, encoder=DjangoJSONEncoder)
    labor_cost = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    payment_method = models.CharField(max_length=10, choices=PaymentMethod.choices, blank=True, default="")
    estimate_pdf_url = models.CharField(max_length=500, blank=True, default="")
    estimate_number = models.CharField(max_length=20, blank=True, default="")
    original_estimate_pdf_url = models.CharField(max_length=500, blank=True, default="")
    original_estimate_number = models.CharField(max_length=20, blank=True, default="")
    invoice_pdf_url = models.CharField(max_length=500, blank=True, default="")
    invoice_number = models.CharField(max_length=20, blank=True, default="")
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="work_orders",
    )
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["appointment"],
                condition=Q(appointment__isnull=False),
                name="work_order_single_per_appointment",
            ),
        ]

    def __str__(self):
        return f"OT {self.pk} {self.vehicle.plate_normalized}"

    @property
    def is_closed(self):
        return self.status == self.Status.COMPLETADA

    @property
    def has_started(self):
        return bool(self.work_started_at) or self.status in self.STARTED_STATUSES

    def allowed_next_statuses(self):
        return list(self.STATUS_TRANSITIONS.get(self.status, ()))

    def validate_transition(self, new_status):
        target = str(new_status)
        if target == self.status:
            return True, None
        if target not in self.Status.values:
            return False, f"Estado invalido: {target}"
        if target not in self.allowed_next_statuses():
            return False, f"Transicion no permitida de {self.status} a {target}"
        return True, None

    def recompute_total(self):
        self.total = grand_total(self.items, self.labor_cost, self.discount)
        return self.total

    def document_urls(self):
        urls = {
            self.estimate_pdf_url,
            self.original_estimate_pdf_url,
            self.invoice_pdf_url,
        }
        urls.update(self.evidence.exclude(url="").values_list("url", flat=True))
        return {url for url in urls if url}


class Evidence(models.Model):
    class Kind(models.TextChoices):
        TEXT = "text", "Texto"
        IMAGE = "image", "Imagen"
        VIDEO = "video", "Video"
        FILE = "file", "Archivo"

    work_order = models.ForeignKey(WorkOrder, on_delete=models.CASCADE, related_name="evidence")
    kind = models.CharField(max_length=10, choices=Kind.choices, default=Kind.TEXT)
    text = models.TextField(blank=True, default="")
    url = models.CharField(max_length=500, blank=True, default="")
    file_name = models.CharField(max_length=255, blank=True, default="")
    mime_type = models.CharField(max_length=100, blank=True, default="")
    size = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "pk"]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise BusinessRuleError("La evidencia no puede modificarse")
        super().save(*args, **kwargs)


class IssuedDocument(models.Model):
    """Common fields of estimates and invoices.

    Issued documents are immutable: after the first insert only the fields in
    ``MUTABLE_FIELDS`` can be written, and only through ``save(update_fields=...)``.
    """

    MUTABLE_FIELDS = frozenset({"pdf_url", "sent_at", "updated_at"})

    number = models.CharField(max_length=20, unique=True)
    pdf_url = models.CharField(max_length=500, blank=True, default="")
    items = models.JSONField(default=list, blank=True, encoder=DjangoJSONEncoder)
    labor_cost = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    notes = models.TextField(blank=True, default="")
    sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True
        ordering = ["-created_at", "-pk"]

    def __str__(self):
        return self.number

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= self.MUTABLE_FIELDS:
                raise BusinessRuleError(f"El documento {self.number} ya fue emitido y no puede modificarse")
        super().save(*args, **kwargs)


class Estimate(IssuedDocument):
    class Status(models.TextChoices):
        DRAFT = "DRAFT", "Borrador"
        SENT = "SENT", "Enviado"
        ACCEPTED = "ACCEPTED", "Aceptado"
        REJECTED = "REJECTED", "Rechazado"

    MUTABLE_FIELDS = IssuedDocument.MUTABLE_FIELDS | {"status", "channels_used", "work_order"}

    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name="estimates")
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="estimates")
    appointment = models.ForeignKey(
        Appointment,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="estimates",
    )
    work_order = models.ForeignKey(
        WorkOrder,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="estimates",
    )
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.DRAFT, db_index=True)
    validity_days = models.PositiveSmallIntegerField(default=15)
    valid_until = models.DateField(null=True, blank=True)
    channels_used = models.JSONField(default=list, blank=True)

    class Meta(IssuedDocument.Meta):
        pass


class Invoice(IssuedDocument):
    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name="invoices")
    client = models.ForeignKey(Client, on_delete=models.PROTECT, related_name="invoices")
    work_order = models.ForeignKey(WorkOrder, on_delete=models.PROTECT, related_name="invoices")
    issued_at = models.DateTimeField(default=timezone.now)
    payment_method = models.CharField(
        max_length=10,
        choices=WorkOrder.PaymentMethod.choices,
        blank=True,
        default="",
    )

    class Meta(IssuedDocument.Meta):
        pass


class Sequence(models.Model):
    key = models.CharField(max_length=40, unique=True)
    value = models.PositiveBigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.key}={self.value}"


class ReminderJob(models.Model):
    class Channel(models.TextChoices):
        EMAIL = "EMAIL", "Email"
        WHATSAPP = "WHATSAPP", "WhatsApp"

    class Status(models.TextChoices):
        PENDING = "PENDING", "Pendiente"
        SENT = "SENT", "Enviado"
        FAILED = "FAILED", "Fallido"

    appointment = models.ForeignKey(
        Appointment,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="reminder_jobs",
    )
    run_at = models.DateTimeField(db_index=True)
    channel = models.CharField(max_length=10, choices=Channel.choices, default=Channel.EMAIL)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING, db_index=True)
    tries = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["run_at", "pk"]


class CronExecution(models.Model):
    job = models.CharField(max_length=60)
    day_key = models.CharField(max_length=10)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["job", "day_key"], name="cron_execution_once_per_day"),
        ]

    def __str__(self):
        return f"{self.job} {self.day_key}"


class ShopSettings(models.Model):
    shop_name = models.CharField(max_length=120, default="Taller Suarez")
    address = models.CharField(max_length=200, blank=True, default="")
    phone = models.CharField(max_length=40, blank=True, default="")
    email_from = models.EmailField(blank=True, default="")
    owner_email = models.EmailField(blank=True, default="")
    logo_url = models.CharField(max_length=500, blank=True, default="")
    reminder_24h = models.BooleanField(default=True)
    reminder_2h = models.BooleanField(default=True)
    estimate_validity_days = models.PositiveSmallIntegerField(
        default=15,
        validators=[MinValueValidator(1), MaxValueValidator(365)],
    )
    estimate_prefix = models.CharField(max_length=8, default="P-")
    invoice_prefix = models.CharField(max_length=8, default="A-")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "configuracion del taller"
        verbose_name_plural = "configuracion del taller"

    def __str__(self):
        return self.shop_name


class BlackoutRange(models.Model):
    shop_settings = models.ForeignKey(ShopSettings, on_delete=models.CASCADE, related_name="blackout_ranges")
    start_at = models.DateTimeField()
    end_at = models.DateTimeField()
    reason = models.CharField(max_length=200, blank=True, default="")

    class Meta:
        ordering = ["start_at"]
        constraints = [
            models.CheckConstraint(condition=Q(end_at__gte=F("start_at")), name="blackout_end_after_start"),
        ]

    def __str__(self):
        return f"{self.start_at:%Y-%m-%d} - {self.end_at:%Y-%m-%d} {self.reason}".strip()


class ErrorLog(models.Model):
    message = models.CharField(max_length=500)
    status_code = models.PositiveSmallIntegerField(default=500)
    method = models.CharField(max_length=10, blank=True, default="")
    path = models.CharField(max_length=255, blank=True, default="")
    stack = models.TextField(blank=True, default="")
    user = models.CharField(max_length=150, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.status_code} {self.method} {self.path}"
