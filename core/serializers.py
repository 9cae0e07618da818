from rest_framework import serializers
from django.contrib.auth import get_user_model
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from core.models import Branch, Company

User = get_user_model()


class EmailOrUsernameTokenObtainPairSerializer(TokenObtainPairSerializer):
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["role"] = getattr(user, "role", None)
        token["is_superuser"] = user.is_superuser
        token["branch_id"] = str(user.branch_id) if user.branch_id else None
        token["company_id"] = str(user.company_id) if user.company_id else None
        return token

    def validate(self, attrs):
        username = attrs.get("username", "")
        if username and "@" in username:
            user = User.objects.filter(email__iexact=username).first()
            if user is not None:
                attrs["username"] = user.get_username()
        return super().validate(attrs)


class CompanySerializer(serializers.ModelSerializer):
    class Meta:
        model = Company
        fields = [
            "id",
            "name",
            "legal_name",
            "tax_id",
            "phone",
            "email",
            "website",
            "logo_url",
            "storage_days",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "is_active", "created_at", "updated_at"]


class BranchSerializer(serializers.ModelSerializer):
    code = serializers.CharField(max_length=32, required=False, allow_blank=True)

    class Meta:
        model = Branch
        fields = [
            "id",
            "company",
            "code",
            "name",
            "address",
            "phone",
            "whatsapp",
            "email",
            "timezone",
            "is_active",
            "order_prefix",
            "last_order_number",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "company", "last_order_number", "created_at", "updated_at"]


class OnboardingCompanySerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    legal_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    tax_id = serializers.CharField(max_length=32, required=False, allow_blank=True)
    phone = serializers.CharField(max_length=32, required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    website = serializers.URLField(required=False, allow_blank=True)
    storage_days = serializers.IntegerField(required=False, min_value=1)


class OnboardingBranchSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    code = serializers.CharField(max_length=32, required=False, allow_blank=True)
    address = serializers.CharField(max_length=500, required=False, allow_blank=True)
    phone = serializers.CharField(max_length=32, required=False, allow_blank=True)
    whatsapp = serializers.CharField(max_length=32, required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    timezone = serializers.CharField(max_length=64, required=False)
    order_prefix = serializers.CharField(max_length=16, required=False, allow_blank=True)


class OnboardingSerializer(serializers.Serializer):
    company = OnboardingCompanySerializer()
    branch = OnboardingBranchSerializer()


class StaffSerializer(serializers.ModelSerializer):
    branch_name = serializers.CharField(source="branch.name", read_only=True)

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "email",
            "first_name",
            "last_name",
            "role",
            "branch",
            "branch_name",
            "is_active",
            "last_login",
            "date_joined",
        ]
        read_only_fields = fields


class StaffCreateSerializer(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(write_only=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    first_name = serializers.CharField(max_length=150, required=False, allow_blank=True)
    last_name = serializers.CharField(max_length=150, required=False, allow_blank=True)
    role = serializers.ChoiceField(choices=User.Role.choices, default=User.Role.RECEPTIONIST)
    branch = serializers.UUIDField(required=False)

    def validate_email(self, value):
        normalized_email = value.strip().lower()
        if normalized_email and User.objects.filter(email__iexact=normalized_email).exists():
            raise serializers.ValidationError("A user with this email already exists.")
        return normalized_email


class StaffUpdateSerializer(serializers.Serializer):
    password = serializers.CharField(write_only=True, required=False)
    email = serializers.EmailField(required=False, allow_blank=True)
    first_name = serializers.CharField(max_length=150, required=False, allow_blank=True)
    last_name = serializers.CharField(max_length=150, required=False, allow_blank=True)
    role = serializers.ChoiceField(choices=User.Role.choices, required=False)
    branch = serializers.UUIDField(required=False)
    is_active = serializers.BooleanField(required=False)
