"""Request payloads (one serializer per operation) and response shapes."""
from rest_framework import serializers

from taller.models import (
    Appointment,
    AppointmentRequest,
    Client,
    Estimate,
    Evidence,
    Invoice,
    Vehicle,
    WorkOrder,
)


# --- input -----------------------------------------------------------------

class LineItemSerializer(serializers.Serializer):
    description = serializers.CharField(max_length=255, allow_blank=True, default="")
    qty = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, default=1)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)
    total = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)


class EvidenceInputSerializer(serializers.Serializer):
    kind = serializers.ChoiceField(choices=Evidence.Kind.choices, default=Evidence.Kind.TEXT)
    text = serializers.CharField(allow_blank=True, default="")
    url = serializers.CharField(max_length=500, allow_blank=True, default="")
    file_name = serializers.CharField(max_length=255, allow_blank=True, default="")
    mime_type = serializers.CharField(max_length=100, allow_blank=True, default="")
    size = serializers.IntegerField(min_value=0, required=False, allow_null=True)

    def validate(self, attrs):
        if not (attrs.get("text") or attrs.get("url")):
            raise serializers.ValidationError("La evidencia requiere texto o url")
        return attrs


class WorkOrderCreateSerializer(serializers.Serializer):
    vehicle = serializers.PrimaryKeyRelatedField(queryset=Vehicle.objects.all())
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    appointment = serializers.PrimaryKeyRelatedField(queryset=Appointment.objects.all(), required=False, allow_null=True)
    category = serializers.ChoiceField(choices=WorkOrder.Category.choices, default=WorkOrder.Category.GENERAL)
    status = serializers.ChoiceField(choices=WorkOrder.Status.choices, default=WorkOrder.Status.PRESUPUESTO)
    work_details = serializers.CharField(allow_blank=True, default="")
    notes = serializers.CharField(allow_blank=True, default="")
    items = LineItemSerializer(many=True, required=False, default=list)
    labor_cost = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)
    maintenance_notice = serializers.BooleanField(default=False)
    maintenance_date = serializers.DateField(required=False, allow_null=True)
    maintenance_detail = serializers.CharField(allow_blank=True, default="")
    payment_method = serializers.ChoiceField(choices=WorkOrder.PaymentMethod.choices, allow_blank=True, default="")

    def validate_status(self, value):
        if value == WorkOrder.Status.CANCELADA:
            raise serializers.ValidationError("Una orden no puede crearse cancelada")
        return value


class WorkOrderUpdateSerializer(serializers.Serializer):
    """Partial update: only the keys present in the payload reach ``update_work_order``."""

    category = serializers.ChoiceField(choices=WorkOrder.Category.choices, required=False)
    status = serializers.ChoiceField(choices=WorkOrder.Status.choices, required=False)
    work_details = serializers.CharField(allow_blank=True, required=False)
    notes = serializers.CharField(allow_blank=True, required=False)
    items = LineItemSerializer(many=True, required=False)
    labor_cost = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    maintenance_notice = serializers.BooleanField(required=False)
    maintenance_date = serializers.DateField(required=False, allow_null=True)
    maintenance_detail = serializers.CharField(allow_blank=True, required=False)
    payment_method = serializers.ChoiceField(choices=WorkOrder.PaymentMethod.choices, allow_blank=True, required=False)
    evidence = EvidenceInputSerializer(many=True, required=False)


class EstimateCreateSerializer(serializers.Serializer):
    vehicle = serializers.PrimaryKeyRelatedField(queryset=Vehicle.objects.all(), required=False, allow_null=True)
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all(), required=False, allow_null=True)
    work_order = serializers.PrimaryKeyRelatedField(queryset=WorkOrder.objects.all(), required=False, allow_null=True)
    appointment = serializers.PrimaryKeyRelatedField(queryset=Appointment.objects.all(), required=False, allow_null=True)
    items = LineItemSerializer(many=True, required=False, default=list)
    labor_cost = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)
    notes = serializers.CharField(allow_blank=True, default="")


class InvoiceCreateSerializer(serializers.Serializer):
    work_order = serializers.PrimaryKeyRelatedField(queryset=WorkOrder.objects.all())
    items = LineItemSerializer(many=True, required=False, allow_null=True, default=None)
    labor_cost = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True)
    notes = serializers.CharField(allow_blank=True, default="")


class AppointmentCreateSerializer(serializers.Serializer):
    vehicle = serializers.PrimaryKeyRelatedField(queryset=Vehicle.objects.all())
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    start_at = serializers.DateTimeField()
    end_at = serializers.DateTimeField(required=False, allow_null=True)
    service_type = serializers.CharField(max_length=60, allow_blank=True, default="")
    notes = serializers.CharField(allow_blank=True, default="")
    assigned_to = serializers.IntegerField(required=False, allow_null=True)


class AppointmentUpdateSerializer(serializers.Serializer):
    start_at = serializers.DateTimeField(required=False)
    end_at = serializers.DateTimeField(required=False)
    service_type = serializers.CharField(max_length=60, allow_blank=True, required=False)
    notes = serializers.CharField(allow_blank=True, required=False)
    status = serializers.ChoiceField(
        choices=[
            (Appointment.Status.SCHEDULED, "Agendado"),
            (Appointment.Status.CONFIRMED, "Confirmado"),
        ],
        required=False,
    )


class AppointmentCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, allow_blank=True, default="")


class RequestVehicleSerializer(serializers.Serializer):
    plate_raw = serializers.CharField(max_length=20)
    make = serializers.CharField(max_length=60, allow_blank=True, default="")
    model = serializers.CharField(max_length=60, allow_blank=True, default="")
    year = serializers.IntegerField(min_value=1900, max_value=2100, required=False, allow_null=True)
    color = serializers.CharField(max_length=40, allow_blank=True, default="")
    km = serializers.IntegerField(min_value=0, required=False, allow_null=True)


class AppointmentRequestCreateSerializer(serializers.Serializer):
    client_name = serializers.CharField(max_length=160)
    phone = serializers.CharField(max_length=30)
    email = serializers.EmailField(allow_blank=True, default="")
    vehicle_data = RequestVehicleSerializer()
    request_type = serializers.ChoiceField(choices=AppointmentRequest.RequestType.choices)
    description = serializers.CharField(allow_blank=True, default="")
    suggested_dates = serializers.ListField(child=serializers.DateField(), min_length=1)


class AppointmentRequestConfirmSerializer(serializers.Serializer):
    start_at = serializers.DateTimeField()


class AppointmentRequestRejectSerializer(serializers.Serializer):
    reason = serializers.CharField(allow_blank=True, default="")


class ChangeOwnerSerializer(serializers.Serializer):
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all())
    note = serializers.CharField(max_length=200, allow_blank=True, default="")


# --- output ----------------------------------------------------------------

class EvidenceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Evidence
        fields = ["id", "kind", "text", "url", "file_name", "mime_type", "size", "created_at"]


class WorkOrderSerializer(serializers.ModelSerializer):
    evidence = EvidenceSerializer(many=True, read_only=True)
    allowed_next_statuses = serializers.SerializerMethodField()

    class Meta:
        model = WorkOrder
        fields = [
            "id",
            "appointment",
            "vehicle",
            "client",
            "category",
            "status",
            "allowed_next_statuses",
            "work_details",
            "notes",
            "maintenance_notice",
            "maintenance_date",
            "maintenance_detail",
            "maintenance_last_notified_at",
            "work_started_at",
            "items",
            "labor_cost",
            "discount",
            "total",
            "payment_method",
            "estimate_pdf_url",
            "estimate_number",
            "original_estimate_pdf_url",
            "original_estimate_number",
            "invoice_pdf_url",
            "invoice_number",
            "evidence",
            "created_at",
            "updated_at",
        ]

    def get_allowed_next_statuses(self, obj):
        return obj.allowed_next_statuses()


class EstimateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Estimate
        fields = [
            "id",
            "number",
            "status",
            "vehicle",
            "client",
            "work_order",
            "appointment",
            "items",
            "labor_cost",
            "discount",
            "total",
            "notes",
            "pdf_url",
            "validity_days",
            "valid_until",
            "channels_used",
            "sent_at",
            "created_at",
        ]


class InvoiceSerializer(serializers.ModelSerializer):
    class Meta:
        model = Invoice
        fields = [
            "id",
            "number",
            "vehicle",
            "client",
            "work_order",
            "items",
            "labor_cost",
            "discount",
            "total",
            "notes",
            "payment_method",
            "pdf_url",
            "issued_at",
            "sent_at",
            "created_at",
        ]


class AppointmentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Appointment
        fields = [
            "id",
            "vehicle",
            "client",
            "start_at",
            "end_at",
            "status",
            "service_type",
            "notes",
            "assigned_to",
            "cancel_reason",
            "reminded_for_date",
            "created_at",
            "updated_at",
        ]


class AppointmentRequestSerializer(serializers.ModelSerializer):
    class Meta:
        model = AppointmentRequest
        fields = [
            "id",
            "client_name",
            "phone",
            "email",
            "client",
            "vehicle",
            "vehicle_data",
            "request_type",
            "description",
            "suggested_dates",
            "status",
            "rejection_reason",
            "confirmed_appointment",
            "confirmed_at",
            "rejected_at",
            "created_at",
        ]


class VehicleSerializer(serializers.ModelSerializer):
    owner_history = serializers.SerializerMethodField()

    class Meta:
        model = Vehicle
        fields = [
            "id",
            "plate_raw",
            "plate_normalized",
            "make",
            "model",
            "year",
            "color",
            "km",
            "current_owner",
            "owner_history",
        ]

    def get_owner_history(self, obj):
        return [
            {"client": entry.client_id, "from_at": entry.from_at, "to_at": entry.to_at, "note": entry.note}
            for entry in obj.owner_history.all()
        ]
