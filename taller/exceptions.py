import logging
import traceback

from django.conf import settings
from django.core.mail import mail_admins
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class TallerError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Error en la operacion"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BusinessRuleError(TallerError):
    """Input or business-rule violation; surfaced as-is to the caller."""


class NotFoundError(TallerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "No encontrado"


class CollaboratorError(TallerError):
    """A collaborator (email, PDF, storage) failed.

    Operations that treat the collaborator as best-effort catch these and
    report the side effect as deferred. Uncaught ones map to 502.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Fallo un servicio externo"


class EmailDeliveryError(CollaboratorError):
    default_message = "No se pudo enviar el email"


class PdfRenderError(CollaboratorError):
    default_message = "No se pudo generar el PDF"


class StorageError(CollaboratorError):
    default_message = "No se pudo guardar el archivo"


def _record_error(exc, context, stack):
    from taller.models import ErrorLog

    request = context.get("request") if context else None
    user = getattr(request, "user", None)
    username = ""
    if user is not None and getattr(user, "is_authenticated", False):
        username = user.get_username()
    method = getattr(request, "method", "") or ""
    path = getattr(request, "path", "") or ""
    try:
        ErrorLog.objects.create(
            message=str(exc)[:500],
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            method=method,
            path=path[:255],
            stack=stack,
            user=username,
        )
    except Exception:
        logger.exception("No se pudo registrar ErrorLog")
    try:
        mail_admins(
            f"Error 500 en {method} {path}",
            f"{exc}\n\n{stack}",
            fail_silently=True,
        )
    except Exception:
        logger.exception("No se pudo alertar a ADMINS")


def api_exception_handler(exc, context):
    response = exception_handler(exc, context)
    if response is not None:
        return response

    if isinstance(exc, TallerError):
        return Response({"message": exc.message}, status=exc.status_code)

    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.error("unhandled_api_error error=%s", exc, exc_info=exc)
    _record_error(exc, context, stack)
    body = {"message": str(exc) or "Error interno del servidor"}
    if settings.DEBUG:
        body["stack"] = stack
    return Response(body, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
