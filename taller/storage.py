import logging
import posixpath
import re
from dataclasses import dataclass

from django.core.files.base import ContentFile
from django.core.files.storage import default_storage

from taller.exceptions import StorageError

logger = logging.getLogger(__name__)

RESOURCE_TYPES = ("image", "raw", "video")
LEGACY_MARKER = "/raw/upload/"
_PUBLIC_ID_RE = re.compile(r"/upload/(?:v\d+/)?(.+?)(?:\.\w+)?$")


@dataclass(frozen=True)
class UploadedBlob:
    url: str
    public_id: str
    resource_type: str


def public_id_from_url(url):
    if not url:
        return None
    m = _PUBLIC_ID_RE.search(url)
    return m.group(1) if m else None


def is_legacy_url(url):
    return bool(url) and LEGACY_MARKER in url


class BlobStore:
    """Object store laid out as ``<resource_type>/upload/<public_id><ext>``.

    Backed by any Django storage; the resource type must be known to delete
    a blob, which is why ``destroy_url`` walks every type.
    """

    def __init__(self, storage=None):
        self.storage = storage or default_storage

    def _name(self, resource_type, public_id, extension=""):
        return f"{resource_type}/upload/{public_id}{extension}"

    def upload(self, content, *, folder, public_id, resource_type="image", extension=""):
        if resource_type not in RESOURCE_TYPES:
            raise StorageError(f"Tipo de recurso invalido: {resource_type}")
        full_id = posixpath.join(folder, public_id) if folder else public_id
        name = self._name(resource_type, full_id, extension)
        try:
            if self.storage.exists(name):
                self.storage.delete(name)
            saved = self.storage.save(name, ContentFile(content))
            url = self.storage.url(saved)
        except Exception as exc:
            raise StorageError(f"No se pudo subir {full_id}: {exc}") from exc
        logger.info("blob_uploaded public_id=%s type=%s", full_id, resource_type)
        return UploadedBlob(url=url, public_id=full_id, resource_type=resource_type)

    def upload_pdf(self, content, *, folder, public_id):
        """Upload a PDF as ``image`` and fall back to ``raw`` if that fails."""
        try:
            return self.upload(content, folder=folder, public_id=public_id, resource_type="image", extension=".pdf")
        except StorageError:
            logger.warning("pdf_upload_image_failed public_id=%s retry=raw", public_id)
            return self.upload(content, folder=folder, public_id=public_id, resource_type="raw", extension=".pdf")

    def _find(self, resource_type, public_id):
        directory, stem = posixpath.split(self._name(resource_type, public_id))
        try:
            _, files = self.storage.listdir(directory)
        except (FileNotFoundError, NotImplementedError):
            return None
        for file_name in files:
            if posixpath.splitext(file_name)[0] == stem:
                return posixpath.join(directory, file_name)
        return None

    def delete(self, public_id, *, resource_type):
        name = self._find(resource_type, public_id)
        if name is None:
            raise StorageError(f"No existe {resource_type}/{public_id}")
        try:
            self.storage.delete(name)
        except Exception as exc:
            raise StorageError(f"No se pudo borrar {public_id}: {exc}") from exc

    def destroy_url(self, url):
        """Best-effort delete of the blob behind ``url``; never raises."""
        public_id = public_id_from_url(url)
        if not public_id:
            return False
        for resource_type in RESOURCE_TYPES:
            try:
                self.delete(public_id, resource_type=resource_type)
            except StorageError:
                continue
            logger.info("blob_deleted public_id=%s type=%s", public_id, resource_type)
            return True
        logger.warning("blob_delete_failed url=%s", url)
        return False
