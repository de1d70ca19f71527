from django.core.files.storage import FileSystemStorage
from django.test import SimpleTestCase

from taller.storage import BlobStore, is_legacy_url, public_id_from_url
from taller.tests.helpers import TempMediaMixin


class UrlHelperTests(SimpleTestCase):
    def test_public_id_from_url(self):
        self.assertEqual(
            public_id_from_url("https://cdn.example.com/demo/image/upload/v1712/taller_finance/Factura-A-0001.pdf"),
            "taller_finance/Factura-A-0001",
        )
        self.assertEqual(public_id_from_url("/media/raw/upload/ev/foto.jpg"), "ev/foto")
        self.assertIsNone(public_id_from_url("/static/logo.png"))
        self.assertIsNone(public_id_from_url(""))

    def test_legacy_urls(self):
        self.assertTrue(is_legacy_url("/media/raw/upload/taller_finance/Presupuesto-P-0001.pdf"))
        self.assertFalse(is_legacy_url("/media/image/upload/taller_finance/Presupuesto-P-0001.pdf"))
        self.assertFalse(is_legacy_url(None))


class BlobStoreTests(TempMediaMixin, SimpleTestCase):
    def setUp(self):
        self.store = BlobStore(FileSystemStorage(location=self._media_root, base_url="/media/"))

    def test_upload_pdf_and_destroy(self):
        blob = self.store.upload_pdf(b"%PDF-1.4", folder="taller_finance", public_id="Factura-A-0001")
        self.assertEqual(blob.url, "/media/image/upload/taller_finance/Factura-A-0001.pdf")
        self.assertEqual(blob.resource_type, "image")
        self.assertTrue(self.store.storage.exists("image/upload/taller_finance/Factura-A-0001.pdf"))

        self.assertTrue(self.store.destroy_url(blob.url))
        self.assertFalse(self.store.storage.exists("image/upload/taller_finance/Factura-A-0001.pdf"))

    def test_upload_overwrites_same_public_id(self):
        self.store.upload_pdf(b"uno", folder="f", public_id="doc")
        blob = self.store.upload_pdf(b"dos", folder="f", public_id="doc")
        with self.store.storage.open("image/upload/f/doc.pdf") as fh:
            self.assertEqual(fh.read(), b"dos")
        self.assertTrue(blob.url.endswith("/f/doc.pdf"))

    def test_destroy_falls_back_to_raw(self):
        self.store.upload(b"%PDF", folder="f", public_id="viejo", resource_type="raw", extension=".pdf")
        self.assertTrue(self.store.destroy_url("/media/image/upload/f/viejo.pdf"))
        self.assertFalse(self.store.storage.exists("raw/upload/f/viejo.pdf"))

    def test_destroy_unknown_returns_false(self):
        self.assertFalse(self.store.destroy_url("/media/image/upload/f/nada.pdf"))
        self.assertFalse(self.store.destroy_url("/static/logo.png"))
