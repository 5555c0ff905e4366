from rest_framework.permissions import SAFE_METHODS, BasePermission

from .models import UserRole


def _authenticated(request):
    user = request.user
    return bool(user and user.is_authenticated)


class IsAdminUserRole(BasePermission):
    """Allow only admin role or superuser."""

    def has_permission(self, request, view):
        return _authenticated(request) and request.user.is_admin_role


class IsCashierOrAdminRole(BasePermission):
    """Allow cashier or admin (including superuser)."""

    def has_permission(self, request, view):
        if not _authenticated(request):
            return False
        user = request.user
        return user.is_superuser or getattr(user, "role", None) in (UserRole.CASHIER, UserRole.ADMIN)


class RequiresOpenShift(BasePermission):
    """Writes that move money need the caller to hold an open POS shift."""

    message = "Action denied. You must open a shift before recording payments."

    def has_permission(self, request, view):
        if request.method in SAFE_METHODS:
            return True
        if not _authenticated(request):
            return False
        from pos.services import open_shift_for_user

        return open_shift_for_user(request.user) is not None
