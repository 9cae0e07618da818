import logging

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from catalog.models import BrandModel, EquipmentType
from common.exceptions import BlockedByDependents, ConflictError

logger = logging.getLogger(__name__)


def canonicalize_catalog_name(raw):
    return " ".join((raw or "").split()).upper()


def _set_active(instance, active, ctx):
    type(instance).objects.filter(pk=instance.pk).update(is_active=active, updated_at=timezone.now())
    instance.is_active = active
    logger.info(
        "catalog_entry_%s model=%s id=%s",
        "activated" if active else "deactivated",
        type(instance).__name__,
        instance.pk,
        extra={"branch_id": str(ctx.branch_id), "request_id": ctx.request_id},
    )


def _find_or_insert(model, lookup, log_event, ctx):
    """Find-or-create keyed on a unique natural key; an insert conflict means "found".

    A deactivated row that matches is brought back instead of inserting a twin.
    """
    instance = model.objects.filter(**lookup).first()
    if instance is None:
        try:
            with transaction.atomic():
                instance = model.objects.create(**lookup)
        except IntegrityError:
            instance = model.objects.filter(**lookup).first()
            if instance is None:
                raise
        else:
            logger.info(log_event, extra={"branch_id": str(ctx.branch_id), "request_id": ctx.request_id})
            return instance
    if not instance.is_active:
        _set_active(instance, True, ctx)
    return instance


def resolve_or_create_equipment_type(ctx, name):
    canonical = canonicalize_catalog_name(name)
    if not canonical:
        raise ValidationError({"equipment_type": "Equipment type is required."})
    return _find_or_insert(EquipmentType, {"branch": ctx.branch, "name": canonical}, "equipment_type_created", ctx)


def _brand_model_key(brand, model):
    canonical_brand = canonicalize_catalog_name(brand)
    canonical_model = canonicalize_catalog_name(model)
    if not canonical_brand and not canonical_model:
        return None
    return canonical_brand or BrandModel.NO_BRAND, canonical_model or BrandModel.NO_MODEL


def resolve_or_create_brand_model(ctx, brand=None, model=None):
    key = _brand_model_key(brand, model)
    if key is None:
        return None
    lookup = {"branch": ctx.branch, "brand": key[0], "model": key[1]}
    return _find_or_insert(BrandModel, lookup, "brand_model_created", ctx)


def increment_usage(instance):
    """Bump the popularity counter. Not authoritative; only used to order pick lists."""
    if instance is None:
        return
    type(instance).objects.filter(pk=instance.pk).update(usage_count=F("usage_count") + 1)


def _create_catalog_entry(model, lookup, conflict_message, ctx):
    hidden = model.objects.filter(is_active=False, **lookup).first()
    if hidden is not None:
        _set_active(hidden, True, ctx)
        return hidden
    try:
        with transaction.atomic():
            return model.objects.create(**lookup)
    except IntegrityError as exc:
        raise ConflictError(conflict_message) from exc


def create_equipment_type(ctx, name):
    """Explicit create. Re-entering a deactivated name brings the old row back."""
    canonical = canonicalize_catalog_name(name)
    if not canonical:
        raise ValidationError({"name": "Equipment type name is required."})
    return _create_catalog_entry(
        EquipmentType,
        {"branch": ctx.branch, "name": canonical},
        "This equipment type already exists.",
        ctx,
    )


def create_brand_model(ctx, brand, model):
    if not canonicalize_catalog_name(brand) or not canonicalize_catalog_name(model):
        raise ValidationError({"brand": "Brand and model are required."})
    brand_key, model_key = _brand_model_key(brand, model)
    return _create_catalog_entry(
        BrandModel,
        {"branch": ctx.branch, "brand": brand_key, "model": model_key},
        "This brand and model combination already exists.",
        ctx,
    )


def list_equipment_types(ctx, include_inactive=False):
    queryset = EquipmentType.objects.filter(branch=ctx.branch)
    if not include_inactive:
        queryset = queryset.filter(is_active=True)
    return queryset.order_by("-usage_count", "name")


def list_brand_models(ctx, include_inactive=False):
    queryset = BrandModel.objects.filter(branch=ctx.branch)
    if not include_inactive:
        queryset = queryset.filter(is_active=True)
    return queryset.order_by("-usage_count", "brand", "model")


def _get_catalog_entry(model, ctx, entry_id, label):
    instance = model.objects.filter(branch=ctx.branch, id=entry_id).first()
    if instance is None:
        raise NotFound(f"{label} was not found.")
    return instance


def set_equipment_type_active(ctx, equipment_type_id, active):
    """Hide or restore an equipment type in pick lists. Orders keep their reference either way."""
    instance = _get_catalog_entry(EquipmentType, ctx, equipment_type_id, "Equipment type")
    if instance.is_active != active:
        _set_active(instance, active, ctx)
    return instance


def set_brand_model_active(ctx, brand_model_id, active):
    instance = _get_catalog_entry(BrandModel, ctx, brand_model_id, "Brand/model")
    if instance.is_active != active:
        _set_active(instance, active, ctx)
    return instance


def _delete_catalog_entry(instance, label):
    order_count = instance.service_orders.count()
    if order_count:
        raise BlockedByDependents(
            f"This {label} is used by service orders and cannot be deleted.",
            dependents={"orders": order_count},
        )
    instance.delete()


def delete_equipment_type(ctx, equipment_type_id):
    instance = _get_catalog_entry(EquipmentType, ctx, equipment_type_id, "Equipment type")
    _delete_catalog_entry(instance, "equipment type")


def delete_brand_model(ctx, brand_model_id):
    instance = _get_catalog_entry(BrandModel, ctx, brand_model_id, "Brand/model")
    _delete_catalog_entry(instance, "brand/model")
