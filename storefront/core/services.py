"""
Identity and role services.

Every operation that changes an account takes the acting Session first and
runs the matching check from `roles` before it writes anything.
"""
import logging

from django.conf import settings
from django.contrib.auth import authenticate, get_user_model
from django.contrib.auth.password_validation import validate_password
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import RefreshToken

from . import roles
from .exceptions import (
    AuthenticationFailure, NotFoundError, PermissionDeniedError,
    ValidationFailure, reports_remote_failure,
)
from .models import Profile
from .utils import create_audit_log

logger = logging.getLogger(__name__)

User = get_user_model()


# ==================== SESSION ====================

def provision_profile(user) -> Profile:
    """
    Load the profile of `user`, creating it with role 'user' on first sight.

    The one-to-one column makes concurrent first sightings converge:
    get_or_create falls back to a read when the insert loses the race.
    """
    profile, created = Profile.objects.get_or_create(
        user=user,
        defaults={'role': roles.USER, 'is_admin': False},
    )
    if created:
        logger.info(f"Provisioned profile for user {user.pk} with role '{profile.role}'")
    return profile


def load_session(user) -> roles.Session:
    """Session for an authenticated user, provisioning the profile lazily"""
    if user is None or not getattr(user, 'is_authenticated', False):
        return roles.ANONYMOUS
    return roles.session_for(user, provision_profile(user))


def session_from_request(request) -> roles.Session:
    return load_session(getattr(request, 'user', None))


# ==================== AUTHENTICATION ====================

def issue_tokens(user, profile=None):
    """Access/refresh pair carrying the role snapshot as claims"""
    profile = profile or provision_profile(user)
    refresh = RefreshToken.for_user(user)
    refresh['email'] = user.email
    refresh['role'] = profile.role
    refresh['is_admin'] = profile.is_admin
    return {
        'access': str(refresh.access_token),
        'refresh': str(refresh),
    }


@reports_remote_failure('Failed to create account')
def sign_up(email, password, display_name, requested_role=roles.USER) -> Profile:
    """
    Create an identity and its profile.

    The requested role is only honoured when STOREFRONT['ALLOW_SIGNUP_ROLE']
    is set; otherwise every new account starts as 'user'.
    """
    email = User.objects.normalize_email(email or '').strip().lower()
    if not email:
        raise ValidationFailure('Email is required')

    if User.objects.filter(username__iexact=email).exists():
        logger.warning(f"Sign up rejected, email already in use: {email}")
        raise AuthenticationFailure('Email already in use', status_code=400)

    try:
        validate_password(password, user=User(username=email, email=email))
    except DjangoValidationError as e:
        raise ValidationFailure('Invalid password', password=list(e.messages))

    role = roles.USER
    if settings.STOREFRONT.get('ALLOW_SIGNUP_ROLE'):
        if requested_role not in roles.ASSIGNABLE_ROLES:
            raise ValidationFailure(f'Invalid role: {requested_role}')
        role = requested_role
    elif requested_role != roles.USER:
        logger.warning(f"Ignoring requested role '{requested_role}' at sign up for {email}")

    try:
        with transaction.atomic():
            user = User.objects.create_user(
                username=email,
                email=email,
                password=password,
                display_name=display_name or '',
            )
            profile = Profile.objects.create(user=user, role=role, is_admin=False)
    except IntegrityError:
        logger.warning(f"Sign up lost a race for email {email}")
        raise AuthenticationFailure('Email already in use', status_code=400)

    create_audit_log(
        user=user,
        action='sign_up',
        model_name='User',
        object_id=user.pk,
        object_name=user.email,
        changes={'role': role, 'requested_role': requested_role},
    )
    logger.info(f"Account created: {email} (role={role})")
    return profile


@reports_remote_failure('Failed to sign in')
def sign_in(email, password):
    """Authenticate and return (user, tokens)"""
    email = (email or '').strip().lower()
    user = authenticate(username=email, password=password)
    if user is None:
        inactive = User.objects.filter(username__iexact=email, is_active=False).exists()
        logger.warning(f"Failed sign in for {email}")
        if inactive:
            raise AuthenticationFailure('User account is disabled.')
        raise AuthenticationFailure('Invalid email or password')

    profile = provision_profile(user)
    logger.info(f"User {user.pk} signed in")
    return user, issue_tokens(user, profile)


@reports_remote_failure('Failed to sign out')
def sign_out(refresh_token):
    """Revoke a refresh token"""
    if not refresh_token:
        raise ValidationFailure('Refresh token is required')
    try:
        RefreshToken(refresh_token).blacklist()
    except TokenError as e:
        logger.warning(f"Sign out failed: {str(e)}")
        raise AuthenticationFailure('Failed to sign out', status_code=400)


@reports_remote_failure('Failed to update profile')
def update_display_name(session, display_name):
    """The only change an owner may make to their own account"""
    roles.require_authenticated(session, 'Please sign in to update your profile')
    display_name = (display_name or '').strip()
    if not display_name:
        raise ValidationFailure('Display name is required')
    user = session.user
    user.display_name = display_name
    user.save(update_fields=['display_name', 'updated_at'])
    return user


# ==================== ACCOUNT ADMINISTRATION ====================

def _locked_profile(user_id):
    """Profile row for `user_id`, locked for the enclosing transaction"""
    try:
        user = User.objects.get(pk=user_id)
    except User.DoesNotExist:
        raise NotFoundError('User not found')
    provision_profile(user)
    return Profile.objects.select_for_update().select_related('user').get(user=user)


@reports_remote_failure('Failed to load users')
def list_accounts(session):
    roles.require_manager(session, 'Only managers can view users')
    return list(Profile.objects.select_related('user').order_by('user__email'))


@reports_remote_failure('Failed to load user')
def get_account(session, user_id):
    roles.require_manager(session, 'Only managers can view users')
    try:
        return Profile.objects.select_related('user').get(user_id=user_id)
    except Profile.DoesNotExist:
        raise NotFoundError('User not found')


@reports_remote_failure('Failed to update user role')
def change_role(session, user_id, new_role) -> Profile:
    """Move an account between 'user' and 'manager'"""
    roles.require_manager(session, 'Only managers can change user roles')
    with transaction.atomic():
        target = _locked_profile(user_id)
        roles.check_role_change(session, target, new_role)
        old_role = target.role
        if old_role == new_role:
            return target
        target.role = new_role
        if new_role != roles.MANAGER:
            target.is_admin = False
        target.save(update_fields=['role', 'is_admin', 'updated_at'])

    create_audit_log(
        user=session.user,
        action='role_change',
        model_name='Profile',
        object_id=target.user_id,
        object_name=target.user.email,
        changes={'role': {'old': old_role, 'new': new_role}},
    )
    logger.info(f"User {session.user_id} changed role of user {target.user_id}: {old_role} -> {new_role}")
    return target


@reports_remote_failure('Failed to grant admin status')
def grant_admin(session, user_id) -> Profile:
    """
    Flag `user_id` as admin manager, promoting them to manager if needed.

    The caller keeps their own flag; use transfer_admin to hand it over.
    """
    roles.check_admin_change(session, user_id)
    with transaction.atomic():
        target = _locked_profile(user_id)
        if target.is_admin_manager:
            return target
        old = {'role': target.role, 'is_admin': target.is_admin}
        target.role = roles.MANAGER
        target.is_admin = True
        target.save(update_fields=['role', 'is_admin', 'updated_at'])

    create_audit_log(
        user=session.user,
        action='admin_grant',
        model_name='Profile',
        object_id=target.user_id,
        object_name=target.user.email,
        changes={'old': old, 'new': {'role': target.role, 'is_admin': True}},
    )
    logger.info(f"User {session.user_id} granted admin status to user {target.user_id}")
    return target


@reports_remote_failure('Failed to revoke admin status')
def revoke_admin(session, user_id) -> Profile:
    """Clear the admin flag; the admin manager may revoke their own"""
    roles.check_admin_change(session, user_id)
    with transaction.atomic():
        target = _locked_profile(user_id)
        if not target.is_admin:
            return target
        target.is_admin = False
        target.save(update_fields=['is_admin', 'updated_at'])

    create_audit_log(
        user=session.user,
        action='admin_revoke',
        model_name='Profile',
        object_id=target.user_id,
        object_name=target.user.email,
        changes={'is_admin': {'old': True, 'new': False}},
    )
    logger.info(f"User {session.user_id} revoked admin status of user {target.user_id}")
    return target


@reports_remote_failure('Failed to transfer admin status')
def transfer_admin(session, user_id) -> Profile:
    """
    Hand the admin flag from the caller to `user_id` in one transaction.

    Both rows are locked in primary-key order, so two concurrent transfers
    cannot leave two admins behind.
    """
    roles.require_admin_manager(session, 'Only the admin manager can transfer admin status')
    if user_id == session.user_id:
        raise ValidationFailure('You are already the admin manager')

    with transaction.atomic():
        locked = {
            p.user_id: p
            for p in Profile.objects.select_for_update().select_related('user').filter(
                user_id__in=[session.user_id, user_id]
            ).order_by('pk')
        }
        caller = locked.get(session.user_id)
        target = locked.get(user_id)
        if target is None:
            if not User.objects.filter(pk=user_id).exists():
                raise NotFoundError('User not found')
            provision_profile(User.objects.get(pk=user_id))
            target = Profile.objects.select_for_update().select_related('user').get(user_id=user_id)
        # Re-check against the locked row: the snapshot may be stale
        if caller is None or not caller.is_admin_manager:
            raise PermissionDeniedError('Only the admin manager can transfer admin status')

        target.role = roles.MANAGER
        target.is_admin = True
        target.save(update_fields=['role', 'is_admin', 'updated_at'])
        caller.is_admin = False
        caller.save(update_fields=['is_admin', 'updated_at'])

    create_audit_log(
        user=session.user,
        action='admin_transfer',
        model_name='Profile',
        object_id=target.user_id,
        object_name=target.user.email,
        changes={'from_user': session.user_id, 'to_user': target.user_id},
    )
    logger.info(f"Admin status transferred from user {session.user_id} to user {target.user_id}")
    return target


@reports_remote_failure('Failed to delete user')
def delete_account(session, user_id):
    """Delete an account; orders it placed are kept with no owner"""
    roles.check_account_delete(session, user_id)
    try:
        user = User.objects.get(pk=user_id)
    except User.DoesNotExist:
        raise NotFoundError('User not found')

    email = user.email
    user.delete()

    create_audit_log(
        user=session.user,
        action='account_delete',
        model_name='User',
        object_id=user_id,
        object_name=email,
    )
    logger.info(f"User {session.user_id} deleted account {user_id} ({email})")


@reports_remote_failure('Failed to set up admin manager')
def setup_admin_manager(user_id, force=False) -> Profile:
    """
    Bootstrap the admin manager from the command line.

    Promotes the user to manager and sets the admin flag. Refuses when a
    different account already holds the flag unless `force` is given.
    """
    with transaction.atomic():
        target = _locked_profile(user_id)
        if target.is_admin_manager:
            logger.info(f"User {user_id} is already the admin manager")
            return target

        others = Profile.objects.filter(is_admin=True).exclude(pk=target.pk)
        if others.exists() and not force:
            raise ValidationFailure(
                'Another account is already the admin manager',
                admin_user_ids=list(others.values_list('user_id', flat=True)),
            )

        target.role = roles.MANAGER
        target.is_admin = True
        target.save(update_fields=['role', 'is_admin', 'updated_at'])

    create_audit_log(
        action='admin_grant',
        model_name='Profile',
        object_id=target.user_id,
        object_name=target.user.email,
        changes={'context': 'setup_admin_manager', 'force': force},
    )
    logger.info(f"User {user_id} set up as admin manager")
    return target
