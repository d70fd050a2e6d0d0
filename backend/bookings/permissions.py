# bookings/permissions.py
from rest_framework.permissions import BasePermission
from django.contrib.auth import get_user_model

User = get_user_model()


def _role(request):
    user = getattr(request, "user", None)
    if not user or not user.is_authenticated:
        return None
    return getattr(user, "role", None)


def is_operator(user) -> bool:
    return bool(user and (getattr(user, "role", None) == User.OPERATOR or user.is_staff))


class IsRider(BasePermission):
    """Allows access only to users with role == 'rider'."""
    def has_permission(self, request, view):
        return _role(request) == User.RIDER


class IsOperator(BasePermission):
    """Allows access only to operators (or staff)."""
    def has_permission(self, request, view):
        return _role(request) is not None and is_operator(request.user)


class IsBookingParty(BasePermission):
    """
    Object-level: the rider, chauffeur or operator on the booking, any operator,
    or a chauffeur looking at a booking nobody has claimed yet. The store only
    lets such a chauffeur make the moves that claim the booking.
    """
    message = "You are not a party to this booking."

    def has_object_permission(self, request, view, obj):
        user = request.user
        if obj.is_party(user) or is_operator(user):
            return True
        return getattr(user, "role", None) == User.CHAUFFEUR and obj.chauffeur_id is None
