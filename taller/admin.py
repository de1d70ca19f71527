import csv

from django import forms
from django.contrib import admin
from django.db import transaction
from django.http import HttpResponse
from django.utils import timezone

from .exceptions import BusinessRuleError
from .models import (
    Appointment,
    AppointmentRequest,
    BlackoutRange,
    Client,
    CronExecution,
    ErrorLog,
    Estimate,
    Evidence,
    Invoice,
    ReminderJob,
    Sequence,
    ShopSettings,
    Vehicle,
    VehicleOwnership,
    WorkOrder,
)
from .utils import build_line_items, build_vehicle_label, normalize_plate
from .workorders import check_work_order_update, snapshot_original_estimate, sync_appointment_status, update_work_order

admin.site.site_header = "Taller - Administración"
admin.site.site_title = "Taller Admin"
admin.site.index_title = "Turnos, órdenes y facturación"


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ("first_name", "last_name", "phone", "email")
    search_fields = ("first_name", "last_name", "phone", "email")


class VehicleOwnershipInline(admin.TabularInline):
    model = VehicleOwnership
    extra = 0
    fields = ("client", "from_at", "to_at", "note")
    readonly_fields = ("client", "from_at", "to_at", "note")
    can_delete = False


class VehicleAdminForm(forms.ModelForm):
    class Meta:
        model = Vehicle
        fields = "__all__"

    def clean_plate_raw(self):
        plate = self.cleaned_data["plate_raw"]
        normalized = normalize_plate(plate)
        if not normalized:
            raise forms.ValidationError("La patente es requerida")
        taken = Vehicle.objects.filter(plate_normalized=normalized)
        if self.instance.pk:
            taken = taken.exclude(pk=self.instance.pk)
        if taken.exists():
            raise forms.ValidationError("Ya existe un vehiculo con esa patente")
        return plate


@admin.register(Vehicle)
class VehicleAdmin(admin.ModelAdmin):
    form = VehicleAdminForm
    list_display = ("plate_normalized", "make", "model", "year", "current_owner")
    search_fields = ("plate_normalized", "plate_raw", "make", "model", "current_owner__last_name")
    inlines = [VehicleOwnershipInline]

    def get_readonly_fields(self, request, obj=None):
        # El titular inicial se elige al crear; despues solo cambia via change_owner
        if obj is None:
            return ("plate_normalized",)
        return ("plate_normalized", "current_owner")

    def save_model(self, request, obj, form, change):
        if change:
            super().save_model(request, obj, form, change)
            return
        with transaction.atomic():
            super().save_model(request, obj, form, change)
            VehicleOwnership.objects.create(
                vehicle=obj,
                client=obj.current_owner,
                from_at=timezone.now(),
                note="Titular inicial",
            )


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ("start_at", "vehicle", "client", "status", "service_type", "assigned_to")
    list_filter = ("status", "start_at")
    search_fields = ("vehicle__plate_normalized", "client__last_name", "client__phone")
    readonly_fields = ("reminded_for_date", "created_by", "created_at", "updated_at")


@admin.register(AppointmentRequest)
class AppointmentRequestAdmin(admin.ModelAdmin):
    list_display = ("created_at", "client_name", "phone", "request_type", "status")
    list_filter = ("status", "request_type")
    search_fields = ("client_name", "phone", "email")
    readonly_fields = ("confirmed_appointment", "confirmed_at", "rejected_at")


class EvidenceInline(admin.TabularInline):
    model = Evidence
    extra = 0
    fields = ("kind", "text", "url", "file_name", "created_at")
    readonly_fields = ("created_at",)

    def has_change_permission(self, request, obj=None):
        return False


def export_work_orders_csv(modeladmin, request, queryset):
    response = HttpResponse(content_type="text/csv")
    response["Content-Disposition"] = 'attachment; filename="ordenes_trabajo.csv"'
    w = csv.writer(response)
    w.writerow(["OT", "Cliente", "Vehiculo", "Estado", "Total", "Presupuesto", "Factura", "Creada"])
    for order in queryset.select_related("client", "vehicle"):
        created = timezone.localtime(order.created_at).strftime("%Y-%m-%d %H:%M") if order.created_at else ""
        w.writerow(
            [
                order.pk,
                order.client.display_name,
                build_vehicle_label(order.vehicle),
                order.get_status_display(),
                order.total,
                order.estimate_number,
                order.invoice_number,
                created,
            ]
        )
    return response


export_work_orders_csv.short_description = "Exportar órdenes seleccionadas a CSV"


class WorkOrderAdminForm(forms.ModelForm):
    class Meta:
        model = WorkOrder
        fields = "__all__"

    def clean(self):
        cleaned = super().clean()
        if self.instance.pk:
            current = WorkOrder.objects.get(pk=self.instance.pk)
            try:
                check_work_order_update(current, self.admin_changes())
            except BusinessRuleError as exc:
                raise forms.ValidationError(exc.message)
        return cleaned

    def admin_changes(self):
        return {name: self.cleaned_data[name] for name in self.changed_data if name in self.cleaned_data}


@admin.register(WorkOrder)
class WorkOrderAdmin(admin.ModelAdmin):
    form = WorkOrderAdminForm
    list_display = ("pk", "status", "category", "vehicle", "client", "total", "invoice_number")
    list_filter = ("status", "category")
    search_fields = ("vehicle__plate_normalized", "client__last_name", "estimate_number", "invoice_number")
    readonly_fields = (
        "total",
        "work_started_at",
        "estimate_pdf_url",
        "estimate_number",
        "original_estimate_pdf_url",
        "original_estimate_number",
        "invoice_pdf_url",
        "invoice_number",
        "maintenance_last_notified_at",
    )
    inlines = [EvidenceInline]
    actions = [export_work_orders_csv]

    def save_model(self, request, obj, form, change):
        if not change:
            obj.items = build_line_items(obj.items, keep_totals=False)
            obj.recompute_total()
            if obj.status in WorkOrder.STARTED_STATUSES:
                obj.work_started_at = timezone.now()
            with transaction.atomic():
                super().save_model(request, obj, form, change)
                snapshot_original_estimate(obj)
                sync_appointment_status(obj)
            return
        # Los cambios pasan por la misma regla de estados que la API; el form ya los valido
        current = WorkOrder.objects.get(pk=obj.pk)
        update_work_order(current, form.admin_changes())


class ReadOnlyDocumentAdmin(admin.ModelAdmin):
    """Issued documents cannot be edited from the admin."""

    list_display = ("number", "client", "vehicle", "total", "sent_at", "created_at")
    search_fields = ("number", "client__last_name", "vehicle__plate_normalized")

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(Estimate)
class EstimateAdmin(ReadOnlyDocumentAdmin):
    list_display = ReadOnlyDocumentAdmin.list_display + ("status",)
    list_filter = ("status",)


@admin.register(Invoice)
class InvoiceAdmin(ReadOnlyDocumentAdmin):
    pass


@admin.register(Sequence)
class SequenceAdmin(admin.ModelAdmin):
    list_display = ("key", "value", "updated_at")
    readonly_fields = ("value",)


@admin.register(ReminderJob)
class ReminderJobAdmin(admin.ModelAdmin):
    list_display = ("run_at", "appointment", "channel", "status", "tries")
    list_filter = ("status", "channel")
    readonly_fields = ("tries", "last_error")


@admin.register(CronExecution)
class CronExecutionAdmin(admin.ModelAdmin):
    list_display = ("job", "day_key", "created_at")
    list_filter = ("job",)


class BlackoutRangeInline(admin.TabularInline):
    model = BlackoutRange
    extra = 0


@admin.register(ShopSettings)
class ShopSettingsAdmin(admin.ModelAdmin):
    list_display = ("shop_name", "email_from", "owner_email", "reminder_24h", "reminder_2h")
    inlines = [BlackoutRangeInline]


@admin.register(ErrorLog)
class ErrorLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "status_code", "method", "path", "user")
    list_filter = ("status_code", "method")
    readonly_fields = ("message", "status_code", "method", "path", "stack", "user", "created_at")
