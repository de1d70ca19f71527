import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.utils.html import strip_tags

from taller.exceptions import EmailDeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    mimetype: str = "application/pdf"


def _clean(addresses):
    if not addresses:
        return []
    if isinstance(addresses, str):
        addresses = [addresses]
    return [a.strip() for a in addresses if a and a.strip()]


def send_email(
    *,
    to,
    subject: str,
    html: str,
    text: Optional[str] = None,
    bcc: Optional[Sequence[str]] = None,
    attachments: Iterable[Attachment] = (),
    from_email: Optional[str] = None,
) -> int:
    recipients = _clean(to)
    if not recipients:
        raise EmailDeliveryError("No hay destinatarios para el email")
    bcc_list = [a for a in _clean(bcc) if a not in recipients]
    message = EmailMultiAlternatives(
        subject=subject,
        body=text or strip_tags(html),
        from_email=from_email or getattr(settings, "DEFAULT_FROM_EMAIL", None),
        to=recipients,
        bcc=bcc_list,
    )
    message.attach_alternative(html, "text/html")
    for attachment in attachments:
        message.attach(attachment.filename, attachment.content, attachment.mimetype)
    try:
        sent = message.send(fail_silently=False)
    except Exception as exc:
        logger.warning("email_send_failed to=%s subject=%s error=%s", recipients, subject, exc)
        raise EmailDeliveryError(f"No se pudo enviar el email: {exc}") from exc
    logger.info("email_sent to=%s subject=%s", recipients, subject)
    return sent
