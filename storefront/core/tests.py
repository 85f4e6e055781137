"""
Test suite for accounts, roles and the admin manager
Tests: Role Authority, Profile Provisioning, Role Changes, Admin Status, Account Deletion, Auth API, Settings
"""
from io import StringIO
from unittest import mock

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import OperationalError
from django.db.models.query import QuerySet
from django.test import TestCase, override_settings
from rest_framework import status

from storefront.core import roles, services
from storefront.core.exceptions import PermissionDeniedError, ValidationFailure, NotFoundError
from storefront.core.models import AuditLog, Profile, Setting
from storefront.core.test_utils import TestDataFactory, AuthenticatedAPIClient


class RoleAuthorityTests(TestCase):
    """Pure permission checks on Session snapshots"""

    def test_anonymous_session_is_general(self):
        self.assertEqual(roles.resolve_role(roles.ANONYMOUS), roles.GENERAL)
        self.assertEqual(roles.resolve_role(None), roles.GENERAL)
        self.assertFalse(roles.is_admin_manager(roles.ANONYMOUS))

    def test_session_without_profile_is_general(self):
        user = TestDataFactory.create_user(with_profile=False)
        session = roles.session_for(user)
        self.assertEqual(roles.resolve_role(session), roles.GENERAL)
        self.assertFalse(roles.is_admin_manager(session))

    def test_is_admin_manager_truth_table(self):
        user = TestDataFactory.create_user(with_profile=False)
        cases = [
            (roles.MANAGER, True, True),
            (roles.MANAGER, False, False),
            (roles.MANAGER, None, False),
            (roles.USER, True, False),
            (roles.USER, False, False),
            (roles.GENERAL, True, False),
        ]
        for role, is_admin, expected in cases:
            with self.subTest(role=role, is_admin=is_admin):
                session = roles.Session(user=user, role=role, is_admin=is_admin)
                self.assertIs(roles.is_admin_manager(session), expected)

    def test_capabilities(self):
        user = TestDataFactory.create_user(with_profile=False)
        member = roles.capabilities(roles.Session(user=user, role=roles.USER, is_admin=False))
        self.assertTrue(member['can_access_dashboard'])
        self.assertFalse(member['can_manage_products'])
        self.assertFalse(member['can_view_reports'])

        manager = roles.capabilities(roles.Session(user=user, role=roles.MANAGER, is_admin=False))
        self.assertTrue(manager['can_manage_products'])
        self.assertTrue(manager['can_manage_users'])
        self.assertFalse(manager['can_change_admin'])
        self.assertFalse(manager['can_delete_accounts'])

        admin = roles.capabilities(roles.Session(user=user, role=roles.MANAGER, is_admin=True))
        self.assertTrue(admin['can_change_admin'])
        self.assertTrue(admin['can_delete_accounts'])

        guest = roles.capabilities(roles.ANONYMOUS)
        self.assertFalse(any(guest.values()))

    def test_check_account_delete_rejects_self(self):
        admin = TestDataFactory.create_manager(is_admin=True)
        session = TestDataFactory.session(admin)
        with self.assertRaises(PermissionDeniedError) as ctx:
            roles.check_account_delete(session, admin.pk)
        self.assertEqual(ctx.exception.message, 'You cannot delete your own account')


class ProvisioningTests(TestCase):
    """Lazy profile provisioning"""

    def test_first_sight_creates_user_profile(self):
        user = TestDataFactory.create_user(with_profile=False)
        profile = services.provision_profile(user)
        self.assertEqual(profile.role, roles.USER)
        self.assertFalse(profile.is_admin)

    def test_provisioning_is_idempotent(self):
        user = TestDataFactory.create_user(with_profile=False)
        first = services.provision_profile(user)
        second = services.provision_profile(user)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Profile.objects.filter(user=user).count(), 1)

    def test_provisioning_converges_when_insert_loses_race(self):
        user = TestDataFactory.create_user(with_profile=False)
        original_get = QuerySet.get
        raced = []

        def get_after_concurrent_insert(queryset, *args, **kwargs):
            # Another request inserts the profile between the lookup and the insert
            if queryset.model is Profile and not raced:
                raced.append(True)
                Profile.objects.create(user=user, role=roles.MANAGER)
                raise Profile.DoesNotExist
            return original_get(queryset, *args, **kwargs)

        with mock.patch.object(QuerySet, 'get', autospec=True, side_effect=get_after_concurrent_insert):
            profile = services.provision_profile(user)

        self.assertTrue(raced)
        self.assertEqual(profile.role, roles.MANAGER)
        self.assertEqual(Profile.objects.filter(user=user).count(), 1)

    def test_existing_profile_is_loaded_unchanged(self):
        manager = TestDataFactory.create_manager(is_admin=True)
        profile = services.provision_profile(manager)
        self.assertEqual(profile.role, roles.MANAGER)
        self.assertTrue(profile.is_admin)

    def test_load_session_provisions(self):
        user = TestDataFactory.create_user(with_profile=False)
        session = services.load_session(user)
        self.assertEqual(session.role, roles.USER)
        self.assertTrue(Profile.objects.filter(user=user).exists())


class RoleChangeTests(TestCase):
    """Promotion and demotion rules"""

    def setUp(self):
        self.admin = TestDataFactory.create_manager(is_admin=True)
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()

    def test_promotion_by_non_admin_manager(self):
        profile = services.change_role(TestDataFactory.session(self.manager), self.member.pk, roles.MANAGER)
        self.assertEqual(profile.role, roles.MANAGER)
        self.assertTrue(AuditLog.objects.filter(action='role_change', object_id=str(self.member.pk)).exists())

    def test_promotion_by_admin_manager(self):
        profile = services.change_role(TestDataFactory.session(self.admin), self.member.pk, roles.MANAGER)
        self.assertEqual(profile.role, roles.MANAGER)

    def test_demotion_by_non_admin_manager_is_denied(self):
        other = TestDataFactory.create_manager()
        with self.assertRaises(PermissionDeniedError) as ctx:
            services.change_role(TestDataFactory.session(self.manager), other.pk, roles.USER)
        self.assertEqual(ctx.exception.message, 'Only the admin manager can demote managers')
        other.profile.refresh_from_db()
        self.assertEqual(other.profile.role, roles.MANAGER)

    def test_demotion_by_admin_manager(self):
        profile = services.change_role(TestDataFactory.session(self.admin), self.manager.pk, roles.USER)
        self.assertEqual(profile.role, roles.USER)
        self.assertFalse(profile.is_admin)

    def test_user_cannot_change_roles(self):
        with self.assertRaises(PermissionDeniedError):
            services.change_role(TestDataFactory.session(self.member), self.member.pk, roles.MANAGER)
        self.member.profile.refresh_from_db()
        self.assertEqual(self.member.profile.role, roles.USER)

    def test_invalid_role_rejected(self):
        with self.assertRaises(ValidationFailure):
            services.change_role(TestDataFactory.session(self.admin), self.member.pk, 'owner')
        with self.assertRaises(ValidationFailure):
            services.change_role(TestDataFactory.session(self.admin), self.member.pk, roles.GENERAL)

    def test_unknown_user(self):
        with self.assertRaises(NotFoundError):
            services.change_role(TestDataFactory.session(self.admin), 999999, roles.MANAGER)


class AdminStatusTests(TestCase):
    """Granting, revoking and transferring the admin flag"""

    def setUp(self):
        self.admin = TestDataFactory.create_manager(is_admin=True)
        self.manager = TestDataFactory.create_manager()

    def test_grant_leaves_two_admins(self):
        profile = services.grant_admin(TestDataFactory.session(self.admin), self.manager.pk)
        self.assertTrue(profile.is_admin_manager)
        self.admin.profile.refresh_from_db()
        # The caller is not revoked automatically
        self.assertTrue(self.admin.profile.is_admin)
        self.assertEqual(Profile.objects.filter(is_admin=True).count(), 2)

    def test_grant_promotes_user_to_manager(self):
        member = TestDataFactory.create_user()
        profile = services.grant_admin(TestDataFactory.session(self.admin), member.pk)
        self.assertEqual(profile.role, roles.MANAGER)
        self.assertTrue(profile.is_admin)

    def test_grant_by_non_admin_manager_is_denied(self):
        member = TestDataFactory.create_user()
        with self.assertRaises(PermissionDeniedError):
            services.grant_admin(TestDataFactory.session(self.manager), member.pk)
        member.profile.refresh_from_db()
        self.assertFalse(member.profile.is_admin)

    def test_admin_can_revoke_own_status(self):
        profile = services.revoke_admin(TestDataFactory.session(self.admin), self.admin.pk)
        self.assertFalse(profile.is_admin)
        self.assertEqual(profile.role, roles.MANAGER)

    def test_transfer_leaves_exactly_one_admin(self):
        profile = services.transfer_admin(TestDataFactory.session(self.admin), self.manager.pk)
        self.assertTrue(profile.is_admin_manager)
        self.admin.profile.refresh_from_db()
        self.assertFalse(self.admin.profile.is_admin)
        self.assertEqual(list(Profile.objects.filter(is_admin=True).values_list('user_id', flat=True)),
                         [self.manager.pk])
        self.assertTrue(AuditLog.objects.filter(action='admin_transfer').exists())

    def test_transfer_to_account_without_profile(self):
        member = TestDataFactory.create_user(with_profile=False)
        profile = services.transfer_admin(TestDataFactory.session(self.admin), member.pk)
        self.assertTrue(profile.is_admin_manager)
        self.assertEqual(list(Profile.objects.filter(is_admin=True).values_list('user_id', flat=True)),
                         [member.pk])

    def test_transfer_to_self_rejected(self):
        with self.assertRaises(ValidationFailure):
            services.transfer_admin(TestDataFactory.session(self.admin), self.admin.pk)

    def test_transfer_with_stale_session_is_denied(self):
        session = TestDataFactory.session(self.admin)
        Profile.objects.filter(user=self.admin).update(is_admin=False)
        with self.assertRaises(PermissionDeniedError):
            services.transfer_admin(session, self.manager.pk)
        self.manager.profile.refresh_from_db()
        self.assertFalse(self.manager.profile.is_admin)


class AccountDeletionTests(TestCase):

    def setUp(self):
        self.admin = TestDataFactory.create_manager(is_admin=True)
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()

    def test_admin_deletes_other_account(self):
        services.delete_account(TestDataFactory.session(self.admin), self.member.pk)
        self.assertFalse(Profile.objects.filter(user_id=self.member.pk).exists())
        self.assertTrue(AuditLog.objects.filter(action='account_delete', object_id=str(self.member.pk)).exists())

    def test_admin_cannot_delete_self(self):
        with self.assertRaises(PermissionDeniedError):
            services.delete_account(TestDataFactory.session(self.admin), self.admin.pk)
        self.assertTrue(Profile.objects.filter(user=self.admin).exists())

    def test_non_admin_manager_cannot_delete(self):
        with self.assertRaises(PermissionDeniedError):
            services.delete_account(TestDataFactory.session(self.manager), self.member.pk)
        self.assertTrue(Profile.objects.filter(user=self.member).exists())


class AuthAPITests(TestCase):
    """Register, login, me and logout endpoints"""

    password = 'Str0ng-Passw0rd!'

    def setUp(self):
        self.client = AuthenticatedAPIClient()

    def register(self, email='alice@example.com', **extra):
        data = {'email': email, 'password': self.password, 'display_name': 'Alice'}
        data.update(extra)
        return self.client.post('/api/v1/auth/register/', data, format='json')

    def test_register_creates_user_profile(self):
        response = self.register()
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['message'], 'Account created successfully!')
        self.assertEqual(response.data['user']['role'], roles.USER)
        self.assertFalse(response.data['user']['is_admin'])
        self.assertIn('access', response.data)
        self.assertIn('refresh', response.data)

    def test_register_ignores_requested_manager_role(self):
        response = self.register(role='manager')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(Profile.objects.get(user__email='alice@example.com').role, roles.USER)

    @override_settings(STOREFRONT={'LOW_STOCK_THRESHOLD': 10, 'ALLOW_SIGNUP_ROLE': True})
    def test_register_honours_role_when_enabled(self):
        response = self.register(role='manager')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        profile = Profile.objects.get(user__email='alice@example.com')
        self.assertEqual(profile.role, roles.MANAGER)
        self.assertFalse(profile.is_admin)

    def test_register_duplicate_email(self):
        self.register()
        response = self.register(email='ALICE@example.com')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['message'], 'Email already in use')

    def test_register_password_mismatch(self):
        response = self.register(password_confirm='something-else-1')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_login(self):
        self.register()
        response = self.client.post('/api/v1/auth/login/', {
            'email': 'alice@example.com', 'password': self.password,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['message'], 'Signed in successfully!')
        self.assertEqual(response.data['user']['email'], 'alice@example.com')

    def test_login_wrong_password(self):
        self.register()
        response = self.client.post('/api/v1/auth/login/', {
            'email': 'alice@example.com', 'password': 'wrong-password',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.data['message'], 'Invalid email or password')

    def test_login_disabled_account(self):
        user = TestDataFactory.create_user(email='bob@example.com', password=self.password)
        user.is_active = False
        user.save()
        response = self.client.post('/api/v1/auth/login/', {
            'email': 'bob@example.com', 'password': self.password,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(response.data['message'], 'User account is disabled.')

    def test_login_database_failure_is_reported(self):
        with mock.patch('storefront.core.services.authenticate', side_effect=OperationalError('database is locked')):
            response = self.client.post('/api/v1/auth/login/', {
                'email': 'alice@example.com', 'password': self.password,
            }, format='json')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response.data['message'], 'Failed to sign in')

    def test_me_provisions_profile(self):
        user = TestDataFactory.create_user(with_profile=False)
        self.client.authenticate_user(user)
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['role'], roles.USER)
        self.assertTrue(response.data['can_access_dashboard'])
        self.assertFalse(response.data['can_manage_products'])

    def test_me_update_display_name(self):
        user = TestDataFactory.create_user()
        self.client.authenticate_user(user)
        response = self.client.patch('/api/v1/auth/me/', {'display_name': 'New Name'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['display_name'], 'New Name')

    def test_me_requires_authentication(self):
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_logout_blacklists_refresh_token(self):
        refresh = self.register().data['refresh']
        user = Profile.objects.get(user__email='alice@example.com').user
        self.client.authenticate_user(user)

        response = self.client.post('/api/v1/auth/logout/', {'refresh': refresh}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.post('/api/v1/auth/refresh/', {'refresh': refresh}, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_logout_requires_token(self):
        user = TestDataFactory.create_user()
        self.client.authenticate_user(user)
        response = self.client.post('/api/v1/auth/logout/', {}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class UserManagementAPITests(TestCase):
    """User management endpoints"""

    def setUp(self):
        self.admin = TestDataFactory.create_manager(is_admin=True)
        self.manager = TestDataFactory.create_manager()
        self.member = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()

    def test_list_users_as_manager(self):
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/users/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 3)

    def test_list_users_as_user_denied(self):
        self.client.authenticate_user(self.member)
        response = self.client.get('/api/v1/users/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['message'], 'Only managers can view users')

    def test_promote_via_api(self):
        self.client.authenticate_user(self.manager)
        response = self.client.patch(f'/api/v1/users/{self.member.pk}/role/', {'role': 'manager'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['message'], 'User role updated to manager')

    def test_demote_via_api_requires_admin(self):
        self.client.authenticate_user(self.manager)
        response = self.client.patch(f'/api/v1/users/{self.admin.pk}/role/', {'role': 'user'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.authenticate_user(self.admin)
        response = self.client.patch(f'/api/v1/users/{self.manager.pk}/role/', {'role': 'user'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['user']['role'], 'user')

    def test_grant_and_revoke_admin_via_api(self):
        self.client.authenticate_user(self.admin)
        response = self.client.post(f'/api/v1/users/{self.manager.pk}/admin/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['user']['is_admin'])

        response = self.client.delete(f'/api/v1/users/{self.manager.pk}/admin/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['user']['is_admin'])

    def test_transfer_admin_via_api(self):
        self.client.authenticate_user(self.admin)
        response = self.client.post(f'/api/v1/users/{self.manager.pk}/admin/transfer/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['user']['is_admin_manager'])
        self.assertEqual(Profile.objects.filter(is_admin=True).count(), 1)

    def test_delete_user_via_api(self):
        self.client.authenticate_user(self.admin)
        response = self.client.delete(f'/api/v1/users/{self.member.pk}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

        response = self.client.delete(f'/api/v1/users/{self.admin.pk}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['message'], 'You cannot delete your own account')


class SettingAPITests(TestCase):

    def setUp(self):
        self.admin = TestDataFactory.create_manager(is_admin=True)
        self.manager = TestDataFactory.create_manager()
        self.client = AuthenticatedAPIClient()

    def test_manager_reads_settings(self):
        Setting.objects.create(key='low_stock_threshold', value='5')
        self.client.authenticate_user(self.manager)
        response = self.client.get('/api/v1/settings/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data[0]['key'], 'low_stock_threshold')

    def test_only_admin_writes_settings(self):
        self.client.authenticate_user(self.manager)
        response = self.client.post('/api/v1/settings/', {'key': 'store_name', 'value': 'Shop'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.authenticate_user(self.admin)
        response = self.client.post('/api/v1/settings/', {'key': 'store_name', 'value': 'Shop'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)


class AuditLogAPITests(TestCase):

    def setUp(self):
        self.manager = TestDataFactory.create_manager()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.manager)
        AuditLog.objects.create(user=self.manager, action='create', model_name='Product',
                                object_id='1', object_name='Yoga Mat')

    def test_filter_by_date(self):
        response = self.client.get('/api/v1/audit-logs/', {'date_from': '2000-01-01'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)

        response = self.client.get('/api/v1/audit-logs/', {'date_to': '2000-01-01'})
        self.assertEqual(response.data, [])

    def test_bad_date_rejected(self):
        response = self.client.get('/api/v1/audit-logs/', {'date_from': 'yesterday'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class SetupAdminManagerCommandTests(TestCase):

    def test_promotes_account(self):
        user = TestDataFactory.create_user()
        out = StringIO()
        call_command('setup_admin_manager', user.pk, stdout=out)
        user.profile.refresh_from_db()
        self.assertTrue(user.profile.is_admin_manager)
        self.assertIn('is now the admin manager', out.getvalue())

    def test_lookup_by_email(self):
        user = TestDataFactory.create_user(email='owner@example.com')
        call_command('setup_admin_manager', email='owner@example.com', stdout=StringIO())
        user.profile.refresh_from_db()
        self.assertTrue(user.profile.is_admin_manager)

    def test_refuses_second_admin_without_force(self):
        TestDataFactory.create_manager(is_admin=True)
        user = TestDataFactory.create_user()
        with self.assertRaises(CommandError):
            call_command('setup_admin_manager', user.pk, stdout=StringIO())
        call_command('setup_admin_manager', user.pk, force=True, stdout=StringIO())
        user.profile.refresh_from_db()
        self.assertTrue(user.profile.is_admin)
