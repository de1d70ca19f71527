import hmac

from django.conf import settings
from rest_framework.permissions import BasePermission


ROLE_DUENO = "Dueño"
ROLE_EMPLEADO = "Empleado"
SHOP_ROLES = (ROLE_DUENO, ROLE_EMPLEADO)


def has_role(user, *roles):
    if not getattr(user, "is_authenticated", False):
        return False
    if getattr(user, "is_superuser", False):
        return True
    return user.groups.filter(name__in=list(roles)).exists()


def is_shop_staff(user):
    """Staff users and members of the shop groups can operate the API."""
    if not getattr(user, "is_authenticated", False):
        return False
    if getattr(user, "is_staff", False):
        return True
    return has_role(user, *SHOP_ROLES)


def is_owner(user):
    return has_role(user, ROLE_DUENO)


class IsShopStaff(BasePermission):
    message = "No autorizado"

    def has_permission(self, request, view):
        return is_shop_staff(request.user)


class HasCronSecret(BasePermission):
    """``Authorization: Bearer <CRON_SECRET>``; always denied if the secret is unset."""

    message = "Unauthorized"

    def has_permission(self, request, view):
        secret = getattr(settings, "CRON_SECRET", "")
        if not secret:
            return False
        header = request.headers.get("Authorization", "")
        return hmac.compare_digest(header, f"Bearer {secret}")
