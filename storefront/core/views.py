import logging
from datetime import datetime

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated, AllowAny
from rest_framework_simplejwt.views import TokenRefreshView
from rest_framework_simplejwt.serializers import TokenRefreshSerializer
from rest_framework_simplejwt.exceptions import InvalidToken, TokenError
from django.contrib.auth import get_user_model
from django.core.exceptions import ObjectDoesNotExist
from django.shortcuts import get_object_or_404

from . import roles, services
from .exceptions import StorefrontError, error_response
from .models import Setting, AuditLog
from .permissions import IsManager, IsAdminManager
from .serializers import (
    UserSerializer, ProfileSerializer, SignUpSerializer, SignInSerializer,
    RoleChangeSerializer, DisplayNameSerializer, SettingSerializer, AuditLogSerializer,
)

logger = logging.getLogger(__name__)

User = get_user_model()


class CustomTokenRefreshSerializer(TokenRefreshSerializer):
    """Token refresh serializer that handles deleted users gracefully"""
    def validate(self, attrs):
        try:
            return super().validate(attrs)
        except (InvalidToken, TokenError):
            raise InvalidToken('Token is invalid or expired.')
        except (ObjectDoesNotExist, User.DoesNotExist):
            # User referenced in token doesn't exist anymore
            raise InvalidToken('Token is invalid. User no longer exists.')


class CustomTokenRefreshView(TokenRefreshView):
    serializer_class = CustomTokenRefreshSerializer


def session_payload(user, profile):
    """Identity, profile and dashboard flags for the signed-in user"""
    session = roles.session_for(user, profile)
    data = UserSerializer(user).data
    data['role'] = roles.resolve_role(session)
    data['is_admin'] = bool(profile.is_admin)
    data['is_admin_manager'] = roles.is_admin_manager(session)
    data.update(roles.capabilities(session))
    return data


# Auth views
@api_view(['POST'])
@permission_classes([AllowAny])
def register(request):
    """Create an account and sign it in"""
    serializer = SignUpSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    try:
        profile = services.sign_up(
            data['email'], data['password'], data['display_name'],
            requested_role=data.get('role', roles.USER),
        )
    except StorefrontError as e:
        return error_response(e)

    return Response({
        'message': 'Account created successfully!',
        'user': session_payload(profile.user, profile),
        **services.issue_tokens(profile.user, profile),
    }, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([AllowAny])
def login(request):
    """Exchange email and password for a token pair"""
    serializer = SignInSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    try:
        user, tokens = services.sign_in(
            serializer.validated_data['email'], serializer.validated_data['password']
        )
    except StorefrontError as e:
        return error_response(e)

    return Response({
        'message': 'Signed in successfully!',
        'user': session_payload(user, user.profile),
        **tokens,
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def logout(request):
    """Revoke the refresh token of the current session"""
    try:
        services.sign_out(request.data.get('refresh'))
    except StorefrontError as e:
        return error_response(e)
    return Response({'message': 'Signed out successfully'})


@api_view(['GET', 'PATCH'])
@permission_classes([IsAuthenticated])
def user_me(request):
    """Current user with role and capability flags; PATCH updates the display name"""
    session = services.session_from_request(request)
    if request.method == 'PATCH':
        serializer = DisplayNameSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        try:
            services.update_display_name(session, serializer.validated_data['display_name'])
        except StorefrontError as e:
            return error_response(e)
    return Response(session_payload(request.user, request.user.profile))


# User management views
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def user_list(request):
    """List all accounts (managers only)"""
    session = services.session_from_request(request)
    try:
        profiles = services.list_accounts(session)
    except StorefrontError as e:
        return error_response(e)
    return Response(ProfileSerializer(profiles, many=True).data)


@api_view(['GET', 'DELETE'])
@permission_classes([IsAuthenticated])
def user_detail(request, pk):
    """Retrieve an account, or delete it (admin manager only, never yourself)"""
    session = services.session_from_request(request)
    try:
        if request.method == 'GET':
            profile = services.get_account(session, pk)
            return Response(ProfileSerializer(profile).data)
        services.delete_account(session, pk)
    except StorefrontError as e:
        return error_response(e)
    return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(['PATCH'])
@permission_classes([IsAuthenticated])
def user_role(request, pk):
    """Promote to manager or demote to user"""
    serializer = RoleChangeSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    session = services.session_from_request(request)
    try:
        profile = services.change_role(session, pk, serializer.validated_data['role'])
    except StorefrontError as e:
        return error_response(e)
    return Response({
        'message': f'User role updated to {profile.role}',
        'user': ProfileSerializer(profile).data,
    })


@api_view(['POST', 'DELETE'])
@permission_classes([IsAuthenticated])
def user_admin(request, pk):
    """POST grants admin status, DELETE revokes it"""
    session = services.session_from_request(request)
    try:
        if request.method == 'POST':
            profile = services.grant_admin(session, pk)
            message = 'Admin status granted'
        else:
            profile = services.revoke_admin(session, pk)
            message = 'Admin status revoked'
    except StorefrontError as e:
        return error_response(e)
    return Response({'message': message, 'user': ProfileSerializer(profile).data})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def user_admin_transfer(request, pk):
    """Hand the admin manager role over to another account"""
    session = services.session_from_request(request)
    try:
        profile = services.transfer_admin(session, pk)
    except StorefrontError as e:
        return error_response(e)
    return Response({
        'message': 'Admin status transferred',
        'user': ProfileSerializer(profile).data,
    })


# Setting views
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated, IsManager])
def setting_list_create(request):
    """List settings (managers) or create one (admin manager)"""
    if request.method == 'GET':
        settings = Setting.objects.all().order_by('key')
        serializer = SettingSerializer(settings, many=True)
        return Response(serializer.data)

    if not IsAdminManager().has_permission(request, None):
        return Response({'error': 'Permission denied', 'message': IsAdminManager.message},
                        status=status.HTTP_403_FORBIDDEN)
    serializer = SettingSerializer(data=request.data)
    if serializer.is_valid():
        serializer.save()
        return Response(serializer.data, status=status.HTTP_201_CREATED)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


@api_view(['GET', 'PUT', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated, IsManager])
def setting_detail(request, pk):
    """Retrieve a setting (managers); update or delete it (admin manager)"""
    setting = get_object_or_404(Setting, pk=pk)

    if request.method == 'GET':
        serializer = SettingSerializer(setting)
        return Response(serializer.data)

    if not IsAdminManager().has_permission(request, None):
        return Response({'error': 'Permission denied', 'message': IsAdminManager.message},
                        status=status.HTTP_403_FORBIDDEN)
    if request.method == 'DELETE':
        setting.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)

    serializer = SettingSerializer(setting, data=request.data, partial=request.method == 'PATCH')
    if serializer.is_valid():
        serializer.save()
        return Response(serializer.data)
    return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)


# AuditLog views (read-only)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def audit_log_list(request):
    """List audit logs; non-managers only see their own"""
    session = services.session_from_request(request)
    queryset = AuditLog.objects.select_related('user')

    if roles.resolve_role(session) != roles.MANAGER:
        queryset = queryset.filter(user=request.user)

    action_filter = request.query_params.get('action', None)
    if action_filter:
        queryset = queryset.filter(action=action_filter)

    model_filter = request.query_params.get('model', None)
    if model_filter:
        queryset = queryset.filter(model_name=model_filter)

    date_from = request.query_params.get('date_from', None)
    date_to = request.query_params.get('date_to', None)
    try:
        if date_from:
            queryset = queryset.filter(created_at__date__gte=datetime.strptime(date_from, '%Y-%m-%d').date())
        if date_to:
            queryset = queryset.filter(created_at__date__lte=datetime.strptime(date_to, '%Y-%m-%d').date())
    except ValueError:
        return Response({'error': 'Validation failed', 'message': 'Use YYYY-MM-DD dates'},
                        status=status.HTTP_400_BAD_REQUEST)

    queryset = queryset.order_by('-created_at')
    serializer = AuditLogSerializer(queryset, many=True)
    return Response(serializer.data)
