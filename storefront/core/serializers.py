from rest_framework import serializers
from .models import User, Profile, Setting, AuditLog
from . import roles


class UserSerializer(serializers.ModelSerializer):
    class Meta:
        model = User
        fields = ['id', 'email', 'display_name', 'is_active', 'created_at', 'updated_at']
        read_only_fields = fields


class ProfileSerializer(serializers.ModelSerializer):
    """Account as shown on the user-management page: identity joined with profile"""
    id = serializers.IntegerField(source='user.id', read_only=True)
    email = serializers.EmailField(source='user.email', read_only=True)
    display_name = serializers.CharField(source='user.display_name', read_only=True)
    is_admin_manager = serializers.BooleanField(read_only=True)

    class Meta:
        model = Profile
        fields = ['id', 'email', 'display_name', 'role', 'is_admin', 'is_admin_manager', 'created_at', 'updated_at']
        read_only_fields = fields


class SignUpSerializer(serializers.Serializer):
    email = serializers.EmailField()
    password = serializers.CharField(write_only=True)
    password_confirm = serializers.CharField(write_only=True, required=False)
    display_name = serializers.CharField(max_length=150)
    role = serializers.ChoiceField(choices=roles.ASSIGNABLE_ROLES, default=roles.USER)

    def validate(self, attrs):
        confirm = attrs.get('password_confirm')
        if confirm is not None and attrs['password'] != confirm:
            raise serializers.ValidationError({"password": "Passwords don't match"})
        return attrs


class SignInSerializer(serializers.Serializer):
    email = serializers.EmailField()
    password = serializers.CharField(write_only=True)


class RoleChangeSerializer(serializers.Serializer):
    role = serializers.CharField()


class DisplayNameSerializer(serializers.Serializer):
    display_name = serializers.CharField(max_length=150)


class SettingSerializer(serializers.ModelSerializer):
    class Meta:
        model = Setting
        fields = ['id', 'key', 'value', 'description', 'updated_at']


class AuditLogSerializer(serializers.ModelSerializer):
    user = UserSerializer(read_only=True)

    class Meta:
        model = AuditLog
        fields = ['id', 'user', 'action', 'model_name', 'object_id', 'object_name',
                  'object_reference', 'changes', 'ip_address', 'created_at']
