from decimal import Decimal
from unittest import mock

from django.core import mail
from django.test import TestCase, override_settings
from django.utils import timezone

from taller.context import ShopContext
from taller.exceptions import BusinessRuleError, PdfRenderError
from taller.finance import (
    EMPTY_ESTIMATE_MESSAGE,
    create_estimate,
    create_invoice,
    delete_invoice,
    send_estimate_email,
    send_invoice_email,
)
from taller.models import Estimate, Invoice, WorkOrder
from taller.pdf import generate_estimate_pdf
from taller.storage import is_legacy_url
from taller.tests.helpers import TempMediaMixin, make_vehicle
from taller.workorders import create_work_order, update_work_order

FAKE_PDF = b"%PDF-1.4 fake"


@override_settings(EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend")
class FinanceBaseTests(TempMediaMixin, TestCase):
    def setUp(self):
        self.shop = ShopContext(shop_name="Taller Test", email_from="taller@example.com")
        self.vehicle = make_vehicle()
        self.owner = self.vehicle.current_owner
        self.order = create_work_order(
            vehicle=self.vehicle,
            client=self.owner,
            items=[{"description": "Pastillas", "qty": 2, "unit_price": 1000}],
            labor_cost=500,
            discount=100,
        )
        patcher_est = mock.patch("taller.finance.generate_estimate_pdf", return_value=FAKE_PDF)
        patcher_inv = mock.patch("taller.finance.generate_invoice_pdf", return_value=FAKE_PDF)
        self.estimate_pdf = patcher_est.start()
        self.invoice_pdf = patcher_inv.start()
        self.addCleanup(patcher_est.stop)
        self.addCleanup(patcher_inv.stop)


class CreateEstimateTests(FinanceBaseTests):
    def test_empty_estimate_rejected_without_consuming_a_number(self):
        with self.assertRaisesMessage(BusinessRuleError, EMPTY_ESTIMATE_MESSAGE):
            create_estimate(self.shop, vehicle=self.vehicle, client=self.owner, items=[], labor_cost=0)
        self.assertFalse(Estimate.objects.exists())
        outcome = create_estimate(self.shop, vehicle=self.vehicle, client=self.owner, labor_cost=100)
        self.assertEqual(outcome.value.number, "P-0001")

    def test_vehicle_and_client_required(self):
        with self.assertRaises(BusinessRuleError):
            create_estimate(self.shop, labor_cost=100)

    def test_estimate_from_work_order(self):
        outcome = create_estimate(self.shop, work_order=self.order)
        estimate = outcome.value
        self.assertFalse(outcome.degraded)
        self.assertEqual(estimate.number, "P-0001")
        self.assertEqual(estimate.total, Decimal("2400.00"))
        self.assertEqual(estimate.vehicle, self.vehicle)
        self.assertIn("/taller_finance/Presupuesto-P-0001.pdf", estimate.pdf_url)
        self.assertEqual(estimate.validity_days, 15)
        self.assertIsNotNone(estimate.valid_until)

        self.order.refresh_from_db()
        self.assertEqual(self.order.estimate_number, "P-0001")
        self.assertEqual(self.order.estimate_pdf_url, estimate.pdf_url)

    def test_started_order_is_not_backfilled(self):
        update_work_order(self.order, {"status": WorkOrder.Status.EN_PROCESO})
        create_estimate(self.shop, work_order=self.order)
        self.order.refresh_from_db()
        self.assertEqual(self.order.estimate_number, "")

    def test_pdf_failure_keeps_estimate(self):
        self.estimate_pdf.side_effect = PdfRenderError()
        outcome = create_estimate(self.shop, work_order=self.order)
        self.assertTrue(outcome.degraded)
        self.assertEqual(outcome.deferred, ["pdf"])
        estimate = Estimate.objects.get()
        self.assertEqual(estimate.pdf_url, "")
        self.order.refresh_from_db()
        self.assertEqual(self.order.estimate_number, "")

    def test_issued_estimate_is_immutable(self):
        estimate = create_estimate(self.shop, work_order=self.order).value
        estimate.total = Decimal("1.00")
        with self.assertRaises(BusinessRuleError):
            estimate.save()

    def test_validity_days_from_shop(self):
        shop = ShopContext(estimate_validity_days=30)
        estimate = create_estimate(shop, work_order=self.order).value
        self.assertEqual((estimate.valid_until - timezone.localdate()).days, 30)


class CreateInvoiceTests(FinanceBaseTests):
    def test_invoice_completes_work_order(self):
        outcome = create_invoice(self.shop, self.order)
        invoice = outcome.value
        self.assertEqual(invoice.number, "A-0001")
        self.assertEqual(invoice.total, Decimal("2400.00"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, WorkOrder.Status.COMPLETADA)
        self.assertIsNotNone(self.order.work_started_at)
        self.assertEqual(self.order.invoice_number, "A-0001")
        self.assertEqual(self.order.invoice_pdf_url, invoice.pdf_url)

    def test_invoice_pdf_failure_still_completes(self):
        self.invoice_pdf.side_effect = PdfRenderError()
        outcome = create_invoice(self.shop, self.order)
        self.assertEqual(outcome.deferred, ["pdf"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, WorkOrder.Status.COMPLETADA)
        self.assertEqual(self.order.invoice_number, "")

    def test_cancelled_order_cannot_be_invoiced(self):
        update_work_order(self.order, {"status": WorkOrder.Status.CANCELADA})
        with self.assertRaises(BusinessRuleError):
            create_invoice(self.shop, self.order)
        self.assertFalse(Invoice.objects.exists())

    def test_delete_invoice_and_reopen(self):
        invoice = create_invoice(self.shop, self.order).value
        delete_invoice(invoice, reopen=True)
        self.order.refresh_from_db()
        self.assertFalse(Invoice.objects.exists())
        self.assertEqual(self.order.invoice_number, "")
        self.assertEqual(self.order.invoice_pdf_url, "")
        self.assertEqual(self.order.status, WorkOrder.Status.EN_PROCESO)

    def test_delete_invoice_without_reopen_keeps_status(self):
        invoice = create_invoice(self.shop, self.order).value
        delete_invoice(invoice)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, WorkOrder.Status.COMPLETADA)


class SendDocumentEmailTests(FinanceBaseTests):
    def test_estimate_requires_client_email(self):
        self.owner.email = ""
        self.owner.save()
        estimate = create_estimate(self.shop, work_order=self.order).value
        with self.assertRaisesMessage(BusinessRuleError, "El cliente no tiene email"):
            send_estimate_email(self.shop, estimate)
        self.assertEqual(len(mail.outbox), 0)

    def test_send_estimate(self):
        estimate = create_estimate(self.shop, work_order=self.order).value
        url_before = estimate.pdf_url
        send_estimate_email(self.shop, estimate)
        send_estimate_email(self.shop, estimate)

        self.assertEqual(len(mail.outbox), 2)
        message = mail.outbox[0]
        self.assertEqual(message.to, ["ana@example.com"])
        self.assertIn("taller@example.com", message.bcc)
        self.assertEqual(message.attachments[0][0], "Presupuesto-P-0001.pdf")

        estimate.refresh_from_db()
        self.assertEqual(estimate.status, Estimate.Status.SENT)
        self.assertIsNotNone(estimate.sent_at)
        self.assertEqual(estimate.channels_used, ["EMAIL"])
        self.assertEqual(estimate.pdf_url, url_before)
        self.assertEqual(self.estimate_pdf.call_count, 3)

    def test_send_estimate_reuploads_legacy_pdf(self):
        estimate = Estimate.objects.create(
            vehicle=self.vehicle,
            client=self.owner,
            work_order=self.order,
            number="P-0009",
            pdf_url="/media/raw/upload/taller_finance/Presupuesto-P-0009.pdf",
            labor_cost=500,
            total=500,
        )
        send_estimate_email(self.shop, estimate)
        estimate.refresh_from_db()
        self.assertFalse(is_legacy_url(estimate.pdf_url))
        self.order.refresh_from_db()
        self.assertEqual(self.order.estimate_pdf_url, estimate.pdf_url)

    def test_send_invoice(self):
        invoice = create_invoice(self.shop, self.order).value
        send_invoice_email(self.shop, invoice)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].attachments[0][0], "Factura-A-0001.pdf")
        invoice.refresh_from_db()
        self.assertIsNotNone(invoice.sent_at)


class PdfRenderingTests(TempMediaMixin, TestCase):
    def test_estimate_pdf_is_rendered(self):
        vehicle = make_vehicle()
        estimate = Estimate.objects.create(
            vehicle=vehicle,
            client=vehicle.current_owner,
            number="P-0001",
            items=[{"description": "Filtro", "qty": "1", "unit_price": "1500.00", "total": "1500.00"}],
            labor_cost=500,
            total=2000,
        )
        content = generate_estimate_pdf(ShopContext(shop_name="Taller Test"), estimate)
        self.assertTrue(content.startswith(b"%PDF"))
