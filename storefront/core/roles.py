"""
Role authority.

A Session is the snapshot of "who is acting" taken once per request and
handed to every service call. The checks below are pure functions of
(caller session, action, target); they raise PermissionDeniedError and
never touch the database.

Role ladder: general -> user -> manager, with the is_admin flag usable only
while in manager.
"""
from dataclasses import dataclass
from typing import Any, Optional

from .exceptions import PermissionDeniedError, ValidationFailure
from .models import Profile

GENERAL = Profile.ROLE_GENERAL
USER = Profile.ROLE_USER
MANAGER = Profile.ROLE_MANAGER

ROLES = (GENERAL, USER, MANAGER)

# Roles a manager may move an account between
ASSIGNABLE_ROLES = (USER, MANAGER)


@dataclass(frozen=True)
class Session:
    user: Optional[Any] = None
    role: Optional[str] = None
    is_admin: Optional[bool] = None

    @property
    def user_id(self):
        return self.user.pk if self.user is not None else None

    @property
    def is_authenticated(self):
        return self.user is not None


ANONYMOUS = Session()


def session_for(user, profile=None):
    """Snapshot a user and (optionally loaded) profile into a Session"""
    if user is None or not getattr(user, 'is_authenticated', False):
        return ANONYMOUS
    if profile is None:
        return Session(user=user)
    return Session(user=user, role=profile.role, is_admin=profile.is_admin)


def resolve_role(session) -> str:
    """Role of the caller; 'general' when anonymous or not loaded yet"""
    if session is None or session.user is None or not session.role:
        return GENERAL
    return session.role


def is_admin_manager(session) -> bool:
    if session is None:
        return False
    return resolve_role(session) == MANAGER and session.is_admin is True


def capabilities(session) -> dict:
    """Flags the dashboard uses to decide which sections to show"""
    role = resolve_role(session)
    is_manager = role == MANAGER
    admin = is_admin_manager(session)
    return {
        'can_access_dashboard': role in (USER, MANAGER),
        'can_manage_products': is_manager,
        'can_manage_orders': is_manager,
        'can_manage_users': is_manager,
        'can_view_reports': is_manager,
        'can_change_admin': admin,
        'can_delete_accounts': admin,
    }


def require_authenticated(session, message='Please sign in to continue'):
    if session is None or not session.is_authenticated:
        raise PermissionDeniedError(message)


def require_manager(session, message='Only managers can perform this action'):
    if resolve_role(session) != MANAGER:
        raise PermissionDeniedError(message)


def require_admin_manager(session, message='Only the admin manager can perform this action'):
    if not is_admin_manager(session):
        raise PermissionDeniedError(message)


def check_role_change(session, target, new_role):
    """
    Validate a role change on `target` (a Profile).

    Promotion user -> manager is open to every manager. Demotion
    manager -> user needs the admin manager.
    """
    require_manager(session, 'Only managers can change user roles')
    if new_role not in ASSIGNABLE_ROLES:
        raise ValidationFailure(f'Invalid role: {new_role}', allowed_roles=list(ASSIGNABLE_ROLES))
    if target.role == MANAGER and new_role == USER:
        require_admin_manager(session, 'Only the admin manager can demote managers')


def check_admin_change(session, target_user_id=None):
    """Granting or revoking admin status needs the admin manager"""
    require_admin_manager(session, 'Only the admin manager can change admin status')


def check_account_delete(session, target_user_id):
    require_admin_manager(session, 'Only the admin manager can delete accounts')
    if target_user_id == session.user_id:
        raise PermissionDeniedError('You cannot delete your own account')
