import logging

from django.contrib.auth import get_user_model
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.response import Response

from taller import appointment_requests, appointments, cron, finance, workorders
from taller.context import ShopContext
from taller.exceptions import BusinessRuleError, NotFoundError
from taller.models import Appointment, AppointmentRequest, Estimate, Invoice, Vehicle, WorkOrder
from taller.permissions import HasCronSecret
from taller.serializers import (
    AppointmentCancelSerializer,
    AppointmentCreateSerializer,
    AppointmentRequestConfirmSerializer,
    AppointmentRequestCreateSerializer,
    AppointmentRequestRejectSerializer,
    AppointmentRequestSerializer,
    AppointmentSerializer,
    AppointmentUpdateSerializer,
    ChangeOwnerSerializer,
    EstimateCreateSerializer,
    EstimateSerializer,
    EvidenceInputSerializer,
    EvidenceSerializer,
    InvoiceCreateSerializer,
    InvoiceSerializer,
    VehicleSerializer,
    WorkOrderCreateSerializer,
    WorkOrderSerializer,
    WorkOrderUpdateSerializer,
)

logger = logging.getLogger(__name__)


def _get_or_404(queryset, pk, label):
    try:
        return queryset.get(pk=pk)
    except queryset.model.DoesNotExist:
        raise NotFoundError(f"{label} no encontrado")


def _validated(serializer_class, request, **kwargs):
    serializer = serializer_class(data=request.data, **kwargs)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


def _outcome_response(outcome, serializer_class, status_code=status.HTTP_200_OK):
    body = dict(serializer_class(outcome.value).data)
    body["deferred"] = list(outcome.deferred)
    if outcome.degraded:
        logger.warning(
            "operation_degraded model=%s pk=%s deferred=%s",
            type(outcome.value).__name__,
            getattr(outcome.value, "pk", None),
            ",".join(outcome.deferred),
        )
    return Response(body, status=status_code)


def _flag(value):
    return str(value or "").lower() in ("1", "true", "yes", "si")


# --- work orders -----------------------------------------------------------

@api_view(["POST"])
def work_order_create(request):
    data = dict(_validated(WorkOrderCreateSerializer, request))
    items = [dict(item) for item in data.pop("items", [])]
    order = workorders.create_work_order(
        vehicle=data.pop("vehicle"),
        client=data.pop("client"),
        items=items,
        labor_cost=data.pop("labor_cost"),
        discount=data.pop("discount"),
        user=request.user,
        **data,
    )
    return Response(WorkOrderSerializer(order).data, status=status.HTTP_201_CREATED)


@api_view(["GET", "PATCH", "DELETE"])
def work_order_detail(request, pk):
    order = _get_or_404(WorkOrder.objects.select_related("vehicle", "client"), pk, "Orden de trabajo")
    if request.method == "GET":
        return Response(WorkOrderSerializer(order).data)
    if request.method == "DELETE":
        deleted = workorders.delete_work_order(order)
        return Response({"deleted": True, "blobs_deleted": deleted})

    changes = dict(_validated(WorkOrderUpdateSerializer, request, partial=True))
    if "items" in changes:
        changes["items"] = [dict(item) for item in changes["items"]]
    if "evidence" in changes:
        changes["evidence"] = [dict(entry) for entry in changes["evidence"]]
    order = workorders.update_work_order(order, changes)
    return Response(WorkOrderSerializer(order).data)


@api_view(["POST"])
def work_order_add_evidence(request, pk):
    order = _get_or_404(WorkOrder.objects.all(), pk, "Orden de trabajo")
    entry = workorders.add_evidence(order, **dict(_validated(EvidenceInputSerializer, request)))
    return Response(EvidenceSerializer(entry).data, status=status.HTTP_201_CREATED)


@api_view(["POST"])
def work_order_reopen(request, pk):
    order = _get_or_404(WorkOrder.objects.all(), pk, "Orden de trabajo")
    order = workorders.reopen_work_order(order)
    return Response(WorkOrderSerializer(order).data)


# --- estimates / invoices --------------------------------------------------

@api_view(["POST"])
def estimate_create(request):
    data = _validated(EstimateCreateSerializer, request)
    outcome = finance.create_estimate(
        ShopContext.load(),
        vehicle=data.get("vehicle"),
        client=data.get("client"),
        work_order=data.get("work_order"),
        appointment=data.get("appointment"),
        items=[dict(item) for item in data.get("items") or []],
        labor_cost=data.get("labor_cost"),
        discount=data.get("discount"),
        notes=data.get("notes", ""),
    )
    return _outcome_response(outcome, EstimateSerializer, status.HTTP_201_CREATED)


@api_view(["POST"])
def estimate_send(request, pk):
    estimate = _get_or_404(Estimate.objects.select_related("client", "vehicle", "work_order"), pk, "Presupuesto")
    estimate = finance.send_estimate_email(ShopContext.load(), estimate)
    return Response(EstimateSerializer(estimate).data)


@api_view(["POST"])
def invoice_create(request):
    data = _validated(InvoiceCreateSerializer, request)
    items = data.get("items")
    outcome = finance.create_invoice(
        ShopContext.load(),
        data["work_order"],
        items=[dict(item) for item in items] if items is not None else None,
        labor_cost=data.get("labor_cost"),
        discount=data.get("discount"),
        notes=data.get("notes", ""),
    )
    return _outcome_response(outcome, InvoiceSerializer, status.HTTP_201_CREATED)


@api_view(["DELETE"])
def invoice_detail(request, pk):
    invoice = _get_or_404(Invoice.objects.select_related("work_order"), pk, "Factura")
    order = finance.delete_invoice(invoice, reopen=_flag(request.query_params.get("reopen")))
    return Response({"deleted": True, "work_order": WorkOrderSerializer(order).data})


@api_view(["POST"])
def invoice_send(request, pk):
    invoice = _get_or_404(Invoice.objects.select_related("client", "vehicle", "work_order"), pk, "Factura")
    invoice = finance.send_invoice_email(ShopContext.load(), invoice)
    return Response(InvoiceSerializer(invoice).data)


# --- appointments ----------------------------------------------------------

def _assignee(user_id):
    if not user_id:
        return None
    User = get_user_model()
    try:
        return User.objects.get(pk=user_id)
    except User.DoesNotExist:
        raise BusinessRuleError("Usuario asignado inexistente")


@api_view(["POST"])
def appointment_create(request):
    data = _validated(AppointmentCreateSerializer, request)
    outcome = appointments.create_appointment(
        ShopContext.load(),
        vehicle=data["vehicle"],
        client=data["client"],
        start_at=data["start_at"],
        end_at=data.get("end_at"),
        service_type=data.get("service_type", ""),
        notes=data.get("notes", ""),
        assigned_to=_assignee(data.get("assigned_to")),
        user=request.user,
    )
    return _outcome_response(outcome, AppointmentSerializer, status.HTTP_201_CREATED)


@api_view(["PATCH", "DELETE"])
def appointment_detail(request, pk):
    appointment = _get_or_404(Appointment.objects.select_related("vehicle", "client"), pk, "Turno")
    if request.method == "DELETE":
        appointments.delete_appointment(appointment)
        return Response({"deleted": True})
    changes = _validated(AppointmentUpdateSerializer, request, partial=True)
    outcome = appointments.update_appointment(ShopContext.load(), appointment, dict(changes))
    return _outcome_response(outcome, AppointmentSerializer)


@api_view(["POST"])
def appointment_cancel(request, pk):
    appointment = _get_or_404(Appointment.objects.select_related("vehicle", "client"), pk, "Turno")
    data = _validated(AppointmentCancelSerializer, request)
    outcome = appointments.cancel_appointment(ShopContext.load(), appointment, reason=data["reason"])
    return _outcome_response(outcome, AppointmentSerializer)


@api_view(["POST"])
def appointment_convert(request, pk):
    appointment = _get_or_404(Appointment.objects.select_related("vehicle", "client"), pk, "Turno")
    order = appointments.convert_to_work_order(appointment, user=request.user)
    return Response(WorkOrderSerializer(order).data, status=status.HTTP_201_CREATED)


# --- appointment requests --------------------------------------------------

@api_view(["POST"])
def appointment_request_create(request):
    data = _validated(AppointmentRequestCreateSerializer, request)
    outcome = appointment_requests.create_request(
        ShopContext.load(),
        client_name=data["client_name"],
        phone=data["phone"],
        email=data.get("email", ""),
        vehicle_data=dict(data["vehicle_data"]),
        request_type=data["request_type"],
        description=data.get("description", ""),
        suggested_dates=data["suggested_dates"],
    )
    return _outcome_response(outcome, AppointmentRequestSerializer, status.HTTP_201_CREATED)


@api_view(["POST"])
def appointment_request_confirm(request, pk):
    request_obj = _get_or_404(AppointmentRequest.objects.all(), pk, "Solicitud")
    data = _validated(AppointmentRequestConfirmSerializer, request)
    outcome = appointment_requests.confirm_request(
        ShopContext.load(),
        request_obj,
        start_at=data["start_at"],
        user=request.user,
    )
    return _outcome_response(outcome, AppointmentRequestSerializer)


@api_view(["POST"])
def appointment_request_reject(request, pk):
    request_obj = _get_or_404(AppointmentRequest.objects.all(), pk, "Solicitud")
    data = _validated(AppointmentRequestRejectSerializer, request)
    outcome = appointment_requests.reject_request(ShopContext.load(), request_obj, reason=data["reason"])
    return _outcome_response(outcome, AppointmentRequestSerializer)


# --- vehicles --------------------------------------------------------------

@api_view(["POST"])
def vehicle_change_owner(request, pk):
    vehicle = _get_or_404(Vehicle.objects.select_related("current_owner"), pk, "Vehiculo")
    data = _validated(ChangeOwnerSerializer, request)
    changed = vehicle.change_owner(data["client"], note=data["note"])
    body = dict(VehicleSerializer(vehicle).data)
    body["changed"] = changed
    return Response(body)


# --- cron ------------------------------------------------------------------

@api_view(["GET"])
@authentication_classes([])
@permission_classes([HasCronSecret])
def cron_run(request, job):
    if job != "all" and job not in cron.JOBS:
        raise NotFoundError(f"Tarea desconocida: {job}")
    results = cron.run_job(job)
    return Response({"success": True, "results": results})

