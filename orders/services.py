"""Write side of the order repository.

Database writes for one operation happen in a single ``transaction.atomic``
block. Blob uploads cannot join that transaction, so they run first and are
deleted again when the transaction does not commit.
"""

import logging

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from catalog.services import increment_usage, resolve_or_create_brand_model, resolve_or_create_equipment_type
from common.exceptions import ConflictError, DependencyError, PartialWriteInconsistency
from common.storage import decode_data_url, delete_blob, store_image, store_uploaded_file
from common.utils import to_money
from customers.services import clean_customer_input, resolve_or_create_customer
from orders.history import append_history_for_context
from orders.models import OrderHistoryEntry, OrderPhoto, ServiceOrder
from orders.numbering import next_order_number
from orders.payments import expected_balance, parse_amount
from orders.state import apply_transition

logger = logging.getLogger(__name__)

TRACKED_FIELDS = ("status", "diagnosis", "repair_performed", "estimated_cost", "final_cost", "outstanding_balance")


def _clean_text(value):
    return " ".join(str(value or "").split())


def _discard_blobs(blobs, *, pending):
    """Delete blobs written for a write that did not commit.

    When a delete fails the blob is orphaned and the caller gets a
    ``PartialWriteInconsistency`` naming it.
    """
    orphaned = []
    for blob in blobs:
        try:
            delete_blob(blob.path)
        except DependencyError:
            orphaned.append(blob.path)
    if orphaned:
        raise PartialWriteInconsistency(
            "Stored files could not be cleaned up after a failed write.",
            committed=orphaned,
            pending=pending,
        )


def _validate_intake(customer_input, equipment_type_name, reported_problem):
    errors = {}
    if not _clean_text((customer_input or {}).get("name")):
        errors["customer.name"] = "Customer name is required."
    if not _clean_text((customer_input or {}).get("phone")):
        errors["customer.phone"] = "Customer phone is required."
    if not _clean_text(equipment_type_name):
        errors["equipment_type"] = "Equipment type is required."
    if not (reported_problem or "").strip():
        errors["reported_problem"] = "Reported problem is required."
    if errors:
        raise ValidationError(errors)


def _find_by_idempotency_key(ctx, idempotency_key):
    if not idempotency_key:
        return None
    return ServiceOrder.objects.filter(branch=ctx.branch, idempotency_key=idempotency_key).first()


def create_order(
    ctx,
    customer_input,
    equipment_type_name,
    *,
    reported_problem,
    brand=None,
    model=None,
    serial=None,
    accessories=None,
    notes=None,
    estimated_cost=None,
    signature_image=None,
    idempotency_key=None,
):
    """Register a device intake: customer, catalog entries, order and its first history entry.

    ``customer_input`` is a mapping with ``name``, ``phone`` and optional
    ``email``. ``signature_image`` is a base64 ``data:`` URL. A repeated
    ``idempotency_key`` for the branch returns the order created by the first
    call.
    """
    _validate_intake(customer_input, equipment_type_name, reported_problem)
    clean_customer_input(customer_input.get("name"), customer_input.get("phone"), customer_input.get("email"))
    if estimated_cost is not None:
        estimated_cost = parse_amount(estimated_cost, field="estimated_cost")
        if estimated_cost < 0:
            raise ValidationError({"estimated_cost": "Cost cannot be negative."})

    existing = _find_by_idempotency_key(ctx, idempotency_key)
    if existing is not None:
        return existing

    signature_content = None
    if signature_image:
        signature_content = decode_data_url(signature_image)

    blobs = []
    if signature_content is not None:
        content, content_type = signature_content
        blobs.append(
            store_image(content, content_type=content_type, folder=f"{ctx.branch.code}/signatures", field="signature")
        )

    try:
        with transaction.atomic():
            customer = resolve_or_create_customer(
                ctx,
                customer_input.get("name"),
                customer_input.get("phone"),
                customer_input.get("email"),
            )
            equipment_type = resolve_or_create_equipment_type(ctx, equipment_type_name)
            brand_model = resolve_or_create_brand_model(ctx, brand, model)
            increment_usage(equipment_type)
            increment_usage(brand_model)

            order = ServiceOrder.objects.create(
                branch=ctx.branch,
                customer=customer,
                equipment_type=equipment_type,
                brand_model=brand_model,
                received_by=ctx.user if ctx.user is not None and ctx.user.is_authenticated else None,
                order_number=next_order_number(ctx.branch),
                idempotency_key=idempotency_key,
                status=ServiceOrder.Status.PENDING,
                serial_number=_clean_text(serial),
                accessories=(accessories or "").strip(),
                reported_problem=reported_problem.strip(),
                notes=(notes or "").strip(),
                estimated_cost=estimated_cost,
                outstanding_balance=to_money(estimated_cost or 0),
                signature_url=blobs[0].url if blobs else None,
                signature_path=blobs[0].path if blobs else "",
            )
            append_history_for_context(
                ctx,
                order,
                action=OrderHistoryEntry.Action.CREATION,
                previous_status=None,
                new_status=order.status,
                note="Service order created.",
                payload={"order_number": order.order_number, "customer_id": customer.id},
            )
    except IntegrityError as exc:
        _discard_blobs(blobs, pending=["service_order"])
        replay = _find_by_idempotency_key(ctx, idempotency_key)
        if replay is not None:
            return replay
        raise ConflictError("The service order could not be created because of a conflicting record.") from exc
    except Exception:
        _discard_blobs(blobs, pending=["service_order"])
        raise

    logger.info(
        "order_created",
        extra={
            "order_id": str(order.id),
            "order_number": order.order_number,
            "branch_id": str(ctx.branch_id),
            "request_id": ctx.request_id,
        },
    )
    return order


def _parse_cost(value, field):
    amount = parse_amount(value, field=field)
    if amount < 0:
        raise ValidationError({field: "Cost cannot be negative."})
    return amount


def _snapshot(order):
    return {field: getattr(order, field) for field in TRACKED_FIELDS}


def update_order_status(
    ctx,
    order_id,
    new_status,
    notes=None,
    diagnosis=None,
    repair_performed=None,
    estimated_cost=None,
    final_cost=None,
):
    """Move an order to ``new_status`` and apply optional field updates.

    Every call writes exactly one ``status_change`` history entry, also when
    the status itself is unchanged. Off-path moves are accepted and marked
    ``off_path`` in the entry payload.
    """
    if estimated_cost is not None:
        estimated_cost = _parse_cost(estimated_cost, "estimated_cost")
    if final_cost is not None:
        final_cost = _parse_cost(final_cost, "final_cost")

    with transaction.atomic():
        order = ServiceOrder.objects.select_for_update().filter(branch=ctx.branch, id=order_id).first()
        if order is None:
            raise NotFound("Service order was not found.")

        before = _snapshot(order)
        transition = apply_transition(order, new_status, timezone.now())

        if diagnosis is not None:
            order.diagnosis = diagnosis.strip() or None
        if repair_performed is not None:
            order.repair_performed = repair_performed.strip() or None
        if estimated_cost is not None:
            order.estimated_cost = estimated_cost
        if final_cost is not None:
            order.final_cost = final_cost
        if before["estimated_cost"] != order.estimated_cost or before["final_cost"] != order.final_cost:
            order.outstanding_balance = expected_balance(order)

        after = _snapshot(order)
        changes = {
            field: {"before": before[field], "after": after[field]}
            for field in TRACKED_FIELDS
            if before[field] != after[field]
        }
        order.save()

        append_history_for_context(
            ctx,
            order,
            action=OrderHistoryEntry.Action.STATUS_CHANGE,
            previous_status=transition.previous_status,
            new_status=transition.new_status,
            note=(notes or "").strip() or None,
            payload={
                "changes": changes,
                "off_path": transition.off_path,
                "completed_at_set": transition.completed_at_set,
            },
        )

    log_extra = {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "branch_id": str(ctx.branch_id),
        "request_id": ctx.request_id,
    }
    if transition.off_path:
        logger.warning(
            "order_status_off_path from=%s to=%s", transition.previous_status, transition.new_status, extra=log_extra
        )
    else:
        logger.info("order_status_updated", extra=log_extra)
    return order


def add_order_photos(ctx, order_id, files, kind=OrderPhoto.Kind.INTAKE):
    files = list(files or [])
    if not files:
        raise ValidationError({"photos": "At least one photo is required."})
    try:
        kind = OrderPhoto.Kind(kind)
    except ValueError:
        raise ValidationError({"kind": f"Unknown photo kind '{kind}'."}) from None

    order = ServiceOrder.objects.filter(branch=ctx.branch, id=order_id).first()
    if order is None:
        raise NotFound("Service order was not found.")

    limit = settings.REPAIRS_MAX_PHOTOS_PER_ORDER
    if order.photos.count() + len(files) > limit:
        raise ValidationError({"photos": f"An order can have at most {limit} photos."})

    blobs = []
    try:
        for uploaded in files:
            blobs.append(store_uploaded_file(uploaded, folder=f"{ctx.branch.code}/{order.order_number}"))

        with transaction.atomic():
            locked = ServiceOrder.objects.select_for_update().get(pk=order.pk)
            if locked.photos.count() + len(blobs) > limit:
                raise ValidationError({"photos": f"An order can have at most {limit} photos."})
            photos = OrderPhoto.objects.bulk_create(
                [OrderPhoto(order=locked, url=blob.url, storage_path=blob.path, kind=kind) for blob in blobs]
            )
            append_history_for_context(
                ctx,
                locked,
                action=OrderHistoryEntry.Action.OTHER,
                previous_status=locked.status,
                new_status=locked.status,
                note=f"{len(photos)} photo(s) added.",
                payload={"photo_ids": [photo.id for photo in photos], "kind": kind.value},
            )
    except Exception:
        _discard_blobs(blobs, pending=["order_photo"])
        raise

    logger.info(
        "order_photos_added count=%s",
        len(photos),
        extra={"order_id": str(order.id), "branch_id": str(ctx.branch_id), "request_id": ctx.request_id},
    )
    return photos


def delete_order(ctx, order_id):
    """Hard-delete an order with its photos, history and payments. Reserved for managers and admins."""
    order = ServiceOrder.objects.filter(branch=ctx.branch, id=order_id).first()
    if order is None:
        raise NotFound("Service order was not found.")

    storage_paths = [path for path in order.photos.values_list("storage_path", flat=True) if path]
    if order.signature_path:
        storage_paths.append(order.signature_path)
    order_number = order.order_number
    order.delete()

    for path in storage_paths:
        try:
            delete_blob(path)
        except DependencyError:
            logger.warning("order_blob_orphaned path=%s", path, extra={"order_number": order_number})

    logger.info(
        "order_deleted",
        extra={"order_number": order_number, "branch_id": str(ctx.branch_id), "request_id": ctx.request_id},
    )
