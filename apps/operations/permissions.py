from rest_framework.permissions import BasePermission


class IsOperator(BasePermission):
    """Operators and admins: claim, update, message and finish operations"""

    message = "Only operators can do this."

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and getattr(user, "is_operator", False))


class IsTechnician(BasePermission):
    """Technicians submit and answer; admins may act on their behalf"""

    message = "Only technicians can do this."

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and getattr(user, "role", None) in ("technician", "admin"))
