from rest_framework import serializers

from catalog.models import BrandModel, EquipmentType


class EquipmentTypeSerializer(serializers.ModelSerializer):
    class Meta:
        model = EquipmentType
        fields = ["id", "branch", "name", "usage_count", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "branch", "usage_count", "is_active", "created_at", "updated_at"]
        validators = []


class BrandModelSerializer(serializers.ModelSerializer):
    label = serializers.SerializerMethodField()

    class Meta:
        model = BrandModel
        fields = ["id", "branch", "brand", "model", "label", "usage_count", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "branch", "usage_count", "is_active", "created_at", "updated_at"]
        validators = []

    def get_label(self, obj):
        return f"{obj.brand} {obj.model}"
