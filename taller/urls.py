from django.urls import path

from . import views

urlpatterns = [
    # Ordenes de trabajo
    path("work-orders/", views.work_order_create, name="work_order_create"),
    path("work-orders/<int:pk>/", views.work_order_detail, name="work_order_detail"),
    path("work-orders/<int:pk>/evidence/", views.work_order_add_evidence, name="work_order_add_evidence"),
    path("work-orders/<int:pk>/reopen/", views.work_order_reopen, name="work_order_reopen"),

    # Presupuestos y facturas
    path("estimates/", views.estimate_create, name="estimate_create"),
    path("estimates/<int:pk>/send/", views.estimate_send, name="estimate_send"),
    path("invoices/", views.invoice_create, name="invoice_create"),
    path("invoices/<int:pk>/", views.invoice_detail, name="invoice_detail"),
    path("invoices/<int:pk>/send/", views.invoice_send, name="invoice_send"),

    # Turnos
    path("appointments/", views.appointment_create, name="appointment_create"),
    path("appointments/<int:pk>/", views.appointment_detail, name="appointment_detail"),
    path("appointments/<int:pk>/cancel/", views.appointment_cancel, name="appointment_cancel"),
    path(
        "appointments/<int:pk>/convert-to-work-order/",
        views.appointment_convert,
        name="appointment_convert",
    ),
    path("appointment-requests/", views.appointment_request_create, name="appointment_request_create"),
    path(
        "appointment-requests/<int:pk>/confirm/",
        views.appointment_request_confirm,
        name="appointment_request_confirm",
    ),
    path(
        "appointment-requests/<int:pk>/reject/",
        views.appointment_request_reject,
        name="appointment_request_reject",
    ),

    path("vehicles/<int:pk>/change-owner/", views.vehicle_change_owner, name="vehicle_change_owner"),

    path("cron/<slug:job>/", views.cron_run, name="cron_run"),
]
