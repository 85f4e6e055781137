"""
DRF permission classes backed by the role authority.

Views that only managers may reach use these on top of IsAuthenticated;
the service layer re-checks with the same functions.
"""
from rest_framework.permissions import BasePermission

from . import roles
from .services import session_from_request


class IsManager(BasePermission):
    message = 'Only managers can access this resource'

    def has_permission(self, request, view):
        return roles.resolve_role(session_from_request(request)) == roles.MANAGER


class IsAdminManager(BasePermission):
    message = 'Only the admin manager can access this resource'

    def has_permission(self, request, view):
        return roles.is_admin_manager(session_from_request(request))
