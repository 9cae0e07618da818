from rest_framework import serializers

from orders.models import OrderHistoryEntry, OrderPhoto, Payment, ServiceOrder


class OrderPhotoSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderPhoto
        fields = ["id", "url", "kind", "created_at"]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    recorded_by_username = serializers.CharField(source="recorded_by.username", read_only=True, default=None)

    class Meta:
        model = Payment
        fields = [
            "id",
            "order",
            "amount",
            "method",
            "kind",
            "reference",
            "note",
            "idempotency_key",
            "recorded_by",
            "recorded_by_username",
            "created_at",
        ]
        read_only_fields = fields


class OrderHistoryEntrySerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True, default=None)

    class Meta:
        model = OrderHistoryEntry
        fields = [
            "id",
            "order",
            "action",
            "previous_status",
            "new_status",
            "note",
            "payload",
            "actor",
            "actor_username",
            "request_id",
            "created_at",
        ]
        read_only_fields = fields


class ServiceOrderSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.full_name", read_only=True)
    customer_phone = serializers.CharField(source="customer.phone", read_only=True)
    equipment_type_name = serializers.CharField(source="equipment_type.name", read_only=True)
    brand = serializers.CharField(source="brand_model.brand", read_only=True, default=None)
    model = serializers.CharField(source="brand_model.model", read_only=True, default=None)
    received_by_username = serializers.CharField(source="received_by.username", read_only=True, default=None)
    photos = OrderPhotoSerializer(many=True, read_only=True)

    class Meta:
        model = ServiceOrder
        fields = [
            "id",
            "branch",
            "order_number",
            "status",
            "customer",
            "customer_name",
            "customer_phone",
            "equipment_type",
            "equipment_type_name",
            "brand_model",
            "brand",
            "model",
            "serial_number",
            "accessories",
            "reported_problem",
            "diagnosis",
            "repair_performed",
            "notes",
            "estimated_cost",
            "final_cost",
            "outstanding_balance",
            "signature_url",
            "received_by",
            "received_by_username",
            "received_at",
            "completed_at",
            "updated_at",
            "photos",
        ]
        read_only_fields = fields


class OrderCustomerInputSerializer(serializers.Serializer):
    full_name = serializers.CharField(max_length=255)
    phone = serializers.CharField(max_length=32)
    email = serializers.EmailField(required=False, allow_blank=True, allow_null=True)


class OrderCreateSerializer(serializers.Serializer):
    customer = OrderCustomerInputSerializer()
    equipment_type = serializers.CharField(max_length=120)
    brand = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    model = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    serial_number = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    accessories = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    reported_problem = serializers.CharField()
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    estimated_cost = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=0, required=False, allow_null=True
    )
    signature = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    idempotency_key = serializers.UUIDField(required=False, allow_null=True)


class OrderStatusUpdateSerializer(serializers.Serializer):
    status = serializers.CharField(max_length=32)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    diagnosis = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    repair_performed = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    estimated_cost = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    final_cost = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)


class PaymentCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    method = serializers.CharField(max_length=32)
    kind = serializers.CharField(max_length=32)
    reference = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True)
    note = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    idempotency_key = serializers.UUIDField(required=False, allow_null=True)


class PhotoUploadSerializer(serializers.Serializer):
    photos = serializers.ListField(child=serializers.FileField(), allow_empty=False)
    kind = serializers.ChoiceField(choices=OrderPhoto.Kind.choices, default=OrderPhoto.Kind.INTAKE)


class PublicOrderStatusSerializer(serializers.Serializer):
    order_number = serializers.CharField()
    status = serializers.CharField()
    status_label = serializers.CharField()
    received_at = serializers.DateTimeField()
    completed_at = serializers.DateTimeField(allow_null=True)
    equipment = serializers.CharField()
    branch_name = serializers.CharField()
