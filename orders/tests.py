import base64
import shutil
import tempfile
import uuid
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.files.storage import default_storage
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase, override_settings
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.test import APIClient

from catalog.models import BrandModel, EquipmentType
from common.exceptions import ConflictError, DependencyError, PartialWriteInconsistency
from common.storage import StoredBlob
from core.models import Branch, Company
from core.tenancy import TenantContext
from customers.models import Customer
from orders.history import history_for_order
from orders.models import AppendOnlyError, OrderHistoryEntry, OrderPhoto, Payment, ServiceOrder
from orders.numbering import format_order_number
from orders.payments import expected_balance, record_payment
from orders.selectors import public_order_status
from orders.services import add_order_photos, create_order, delete_order, update_order_status
from orders.state import ALLOWED_TRANSITIONS, apply_transition, is_nominal_transition, parse_status

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
SIGNATURE = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()


def make_context(code, user=None):
    company = Company.objects.create(name=f"Company {code}")
    branch = Branch.objects.create(company=company, code=code, name=f"Branch {code}", order_prefix=code)
    return TenantContext(company=company, branch=branch, user=user, request_id="test-request")


def intake(ctx, phone="(555) 123-4567", equipment="LAPTOP", **kwargs):
    kwargs.setdefault("reported_problem", "No enciende")
    return create_order(ctx, {"name": "Ana Pérez", "phone": phone}, equipment, **kwargs)


class OrderCreationTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="intake-user", password="pass1234")
        self.ctx = make_context("MAIN", user=self.user)

    def test_intake_resolves_entities_and_writes_creation_entry(self):
        order = intake(self.ctx, brand="DELL", model="XPS 13")

        self.assertEqual(order.equipment_type.name, "LAPTOP")
        self.assertEqual((order.brand_model.brand, order.brand_model.model), ("DELL", "XPS 13"))
        self.assertEqual(order.customer.phone, "5551234567")
        self.assertEqual(order.status, ServiceOrder.Status.PENDING)
        self.assertEqual(order.outstanding_balance, Decimal("0"))
        self.assertEqual(order.received_by, self.user)

        entries = list(order.history.all())
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].action, OrderHistoryEntry.Action.CREATION)
        self.assertIsNone(entries[0].previous_status)
        self.assertEqual(entries[0].new_status, ServiceOrder.Status.PENDING)
        self.assertEqual(entries[0].actor, self.user)
        self.assertEqual(entries[0].request_id, "test-request")

    def test_repeat_customer_and_catalog_are_reused(self):
        first = intake(self.ctx, phone="555 123 4567", equipment="laptop", brand="dell", model="xps 13")
        second = intake(self.ctx, phone="(555)123-4567", equipment=" Laptop ", brand="DELL", model="XPS 13")

        self.assertEqual(first.customer_id, second.customer_id)
        self.assertEqual(first.equipment_type_id, second.equipment_type_id)
        self.assertEqual(first.brand_model_id, second.brand_model_id)
        self.assertEqual(Customer.objects.count(), 1)
        self.assertEqual(EquipmentType.objects.get().usage_count, 2)
        self.assertEqual(BrandModel.objects.get().usage_count, 2)

    def test_missing_problem_is_rejected_before_any_write(self):
        with self.assertRaises(ValidationError) as raised:
            intake(self.ctx, reported_problem="  ")

        self.assertIn("reported_problem", raised.exception.detail)
        self.assertFalse(Customer.objects.exists())
        self.assertFalse(EquipmentType.objects.exists())
        self.assertFalse(ServiceOrder.objects.exists())

    def test_estimated_cost_at_intake_sets_balance(self):
        order = intake(self.ctx, estimated_cost="850.5")

        self.assertEqual(order.estimated_cost, Decimal("850.50"))
        self.assertEqual(order.outstanding_balance, Decimal("850.50"))

    def test_repeated_idempotency_key_returns_first_order(self):
        key = uuid.uuid4()

        first = intake(self.ctx, idempotency_key=key)
        second = intake(self.ctx, idempotency_key=key)

        self.assertEqual(first.id, second.id)
        self.assertEqual(ServiceOrder.objects.count(), 1)
        self.assertEqual(OrderHistoryEntry.objects.count(), 1)

    def test_signature_is_stored_before_the_order(self):
        with patch("orders.services.store_image", return_value=StoredBlob("sig/a.png", "/media/sig/a.png")) as store:
            order = intake(self.ctx, signature_image=SIGNATURE)

        self.assertEqual(order.signature_url, "/media/sig/a.png")
        self.assertEqual(store.call_args.args, (PNG_BYTES,))
        self.assertEqual(store.call_args.kwargs["content_type"], "image/png")

    def test_malformed_signature_is_rejected(self):
        with self.assertRaises(ValidationError) as raised:
            intake(self.ctx, signature_image="not a data url")

        self.assertIn("signature", raised.exception.detail)
        self.assertFalse(ServiceOrder.objects.exists())

    def test_failed_transaction_removes_uploaded_signature(self):
        blob = StoredBlob("sig/orphan.png", "/media/sig/orphan.png")

        with patch("orders.services.store_image", return_value=blob), patch(
            "orders.services.next_order_number", side_effect=DatabaseError("boom")
        ), patch("orders.services.delete_blob") as delete_blob:
            with self.assertRaises(DatabaseError):
                intake(self.ctx, signature_image=SIGNATURE)

        delete_blob.assert_called_once_with("sig/orphan.png")
        self.assertFalse(ServiceOrder.objects.exists())
        self.assertFalse(Customer.objects.exists())

    def test_failed_cleanup_is_a_partial_write(self):
        blob = StoredBlob("sig/orphan.png", "/media/sig/orphan.png")

        with patch("orders.services.store_image", return_value=blob), patch(
            "orders.services.next_order_number", side_effect=DatabaseError("boom")
        ), patch("orders.services.delete_blob", side_effect=DependencyError()):
            with self.assertRaises(PartialWriteInconsistency) as raised:
                intake(self.ctx, signature_image=SIGNATURE)

        self.assertEqual(raised.exception.committed, ["sig/orphan.png"])
        self.assertEqual(raised.exception.pending, ["service_order"])


class OrderNumberingTests(TestCase):
    def setUp(self):
        self.ctx = make_context("NUM")

    def test_format(self):
        self.assertEqual(format_order_number("NUM", 42), "NUM-000042")

    def test_numbers_are_sequential_per_branch(self):
        other = make_context("ALT")

        first = intake(self.ctx)
        second = intake(self.ctx)
        elsewhere = intake(other)

        self.assertEqual(first.order_number, "NUM-000001")
        self.assertEqual(second.order_number, "NUM-000002")
        self.assertEqual(elsewhere.order_number, "ALT-000001")
        self.ctx.branch.refresh_from_db()
        self.assertEqual(self.ctx.branch.last_order_number, 2)

    def test_existing_numbers_are_skipped(self):
        intake(self.ctx)
        Branch.objects.filter(pk=self.ctx.branch.pk).update(last_order_number=0)

        order = intake(self.ctx)

        self.assertEqual(order.order_number, "NUM-000002")

    def test_stale_counter_jumps_past_every_issued_number(self):
        for index in range(6):
            intake(self.ctx, phone=f"55512300{index:02d}")
        Branch.objects.filter(pk=self.ctx.branch.pk).update(last_order_number=0)

        order = intake(self.ctx)
        following = intake(self.ctx)

        self.assertEqual(order.order_number, "NUM-000007")
        self.assertEqual(following.order_number, "NUM-000008")
        self.ctx.branch.refresh_from_db()
        self.assertEqual(self.ctx.branch.last_order_number, 8)


    @override_settings(REPAIRS_ORDER_NUMBER_MAX_RETRIES=1)
    def test_exhausted_retries_is_a_conflict(self):
        intake(self.ctx)
        Branch.objects.filter(pk=self.ctx.branch.pk).update(last_order_number=0)

        with self.assertRaises(ConflictError):
            intake(self.ctx)

        self.assertEqual(ServiceOrder.objects.count(), 1)


class OrderStateMachineTests(TestCase):
    def setUp(self):
        self.ctx = make_context("ST")
        self.order = intake(self.ctx)

    def test_parse_status_normalizes_input(self):
        self.assertEqual(parse_status(" in repair "), ServiceOrder.Status.IN_REPAIR)
        with self.assertRaises(ValidationError):
            parse_status("LOST")

    def test_nominal_path(self):
        self.assertTrue(is_nominal_transition("PENDING", "UNDER_REVIEW"))
        self.assertTrue(is_nominal_transition("REPAIRED", "REPAIRED"))
        self.assertFalse(is_nominal_transition("PENDING", "DELIVERED"))
        self.assertEqual(ALLOWED_TRANSITIONS[ServiceOrder.Status.DELIVERED], set())

    def test_apply_transition_does_not_touch_the_database(self):
        result = apply_transition(self.order, "DELIVERED", self.order.received_at)

        self.assertTrue(result.changed)
        self.assertTrue(result.completed_at_set)
        self.assertTrue(result.off_path)
        self.assertEqual(ServiceOrder.objects.get(pk=self.order.pk).status, ServiceOrder.Status.PENDING)

    def test_delivery_sets_completion_and_reopening_keeps_it(self):
        delivered = update_order_status(self.ctx, self.order.id, "DELIVERED")
        completed_at = delivered.completed_at
        self.assertIsNotNone(completed_at)

        reopened = update_order_status(self.ctx, self.order.id, "IN_REPAIR")

        self.assertEqual(reopened.status, ServiceOrder.Status.IN_REPAIR)
        self.assertEqual(reopened.completed_at, completed_at)
        changes = self.order.history.filter(action=OrderHistoryEntry.Action.STATUS_CHANGE)
        self.assertEqual(changes.count(), 2)

    def test_off_path_moves_are_allowed_and_flagged(self):
        update_order_status(self.ctx, self.order.id, "UNDER_REVIEW")
        update_order_status(self.ctx, self.order.id, "DELIVERED", notes="Entregado sin reparar")

        entries = list(history_for_order(self.order, ascending=True))
        self.assertEqual([entry.payload.get("off_path") for entry in entries[1:]], [False, True])
        self.assertEqual(entries[-1].previous_status, ServiceOrder.Status.UNDER_REVIEW)
        self.assertEqual(entries[-1].note, "Entregado sin reparar")

    def test_unknown_status_writes_nothing(self):
        with self.assertRaises(ValidationError):
            update_order_status(self.ctx, self.order.id, "LOST")

        self.assertEqual(self.order.history.count(), 1)

    def test_same_status_update_still_records_one_entry(self):
        update_order_status(self.ctx, self.order.id, "PENDING", diagnosis="Fuente dañada")

        entry = self.order.history.get(action=OrderHistoryEntry.Action.STATUS_CHANGE)
        self.assertEqual(entry.previous_status, entry.new_status)
        self.assertEqual(entry.payload["changes"], {"diagnosis": {"before": None, "after": "Fuente dañada"}})

    def test_negative_cost_is_rejected(self):
        with self.assertRaises(ValidationError):
            update_order_status(self.ctx, self.order.id, "UNDER_REVIEW", estimated_cost="-1")

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, ServiceOrder.Status.PENDING)

    def test_cost_change_recomputes_balance_from_payments(self):
        update_order_status(self.ctx, self.order.id, "UNDER_REVIEW", estimated_cost="1000")
        record_payment(self.ctx, self.order.id, "400", "cash", "deposit")

        order = update_order_status(self.ctx, self.order.id, "REPAIRED", final_cost="500")
        self.assertEqual(order.outstanding_balance, Decimal("100.00"))

        order = update_order_status(self.ctx, self.order.id, "REPAIRED", final_cost="300")
        self.assertEqual(order.outstanding_balance, Decimal("0.00"))
        entry = history_for_order(order).first()
        self.assertEqual(entry.payload["changes"]["outstanding_balance"], {"before": "100.00", "after": "0.00"})

    def test_other_branch_order_is_not_found(self):
        other = make_context("ST2")

        with self.assertRaises(NotFound):
            update_order_status(other, self.order.id, "UNDER_REVIEW")


class PaymentLedgerTests(TestCase):
    def setUp(self):
        self.ctx = make_context("PAY")
        self.order = intake(self.ctx)
        update_order_status(self.ctx, self.order.id, "UNDER_REVIEW", estimated_cost=Decimal("1000.00"))

    def _history_count(self):
        return OrderHistoryEntry.objects.filter(order=self.order).count()

    def _balance(self):
        self.order.refresh_from_db()
        return self.order.outstanding_balance

    def test_partial_then_rejected_then_final_settlement(self):
        history_before = self._history_count()

        result = record_payment(self.ctx, self.order.id, Decimal("400.00"), "cash", "abono")
        self.assertEqual(result.balance_after, Decimal("600.00"))
        self.assertEqual(self._balance(), Decimal("600.00"))
        self.assertEqual(self._history_count(), history_before + 1)

        with self.assertRaises(ValidationError):
            record_payment(self.ctx, self.order.id, Decimal("700.00"), "cash", "abono")
        self.assertEqual(self._balance(), Decimal("600.00"))
        self.assertEqual(self._history_count(), history_before + 1)

        record_payment(self.ctx, self.order.id, Decimal("600.00"), "card", "pago_final")
        self.assertEqual(self._balance(), Decimal("0.00"))
        self.assertEqual(self._history_count(), history_before + 2)
        self.assertEqual(Payment.objects.filter(order=self.order).count(), 2)

    def test_non_positive_amounts_are_rejected(self):
        for amount in ["0", "-5", "abc"]:
            with self.assertRaises(ValidationError):
                record_payment(self.ctx, self.order.id, amount, "cash", "deposit")

        self.assertFalse(Payment.objects.exists())
        self.assertEqual(self._balance(), Decimal("1000.00"))

    def test_unknown_method_is_rejected(self):
        with self.assertRaises(ValidationError):
            record_payment(self.ctx, self.order.id, "10", "bitcoin", "deposit")

    def test_final_settlement_may_exceed_balance(self):
        result = record_payment(self.ctx, self.order.id, "1200", "transfer", "final_settlement", reference="SPEI-1")

        self.assertEqual(result.balance_before, Decimal("1000.00"))
        self.assertEqual(result.balance_after, Decimal("0.00"))
        self.assertEqual(result.payment.reference, "SPEI-1")

    def test_history_payload_describes_the_payment(self):
        result = record_payment(self.ctx, self.order.id, "250", "efectivo", "anticipo")

        entry = OrderHistoryEntry.objects.get(action=OrderHistoryEntry.Action.PAYMENT_RECORDED)
        self.assertEqual(
            entry.payload,
            {
                "payment_id": str(result.payment.id),
                "amount": "250.00",
                "method": "cash",
                "kind": "deposit",
                "balance_before": "1000.00",
                "balance_after": "750.00",
            },
        )
        self.assertEqual(entry.previous_status, entry.new_status)

    def test_repeated_idempotency_key_does_not_reapply(self):
        key = uuid.uuid4()

        first = record_payment(self.ctx, self.order.id, "100", "cash", "partial", idempotency_key=key)
        second = record_payment(self.ctx, self.order.id, "100", "cash", "partial", idempotency_key=key)

        self.assertFalse(first.replayed)
        self.assertTrue(second.replayed)
        self.assertEqual(first.payment.id, second.payment.id)
        self.assertEqual(self._balance(), Decimal("900.00"))
        self.assertEqual(Payment.objects.count(), 1)

    def test_balance_invariant_holds_after_every_write(self):
        steps = [
            lambda: record_payment(self.ctx, self.order.id, "300", "cash", "deposit"),
            lambda: update_order_status(self.ctx, self.order.id, "IN_REPAIR", estimated_cost="1500"),
            lambda: record_payment(self.ctx, self.order.id, "200", "card", "partial"),
            lambda: update_order_status(self.ctx, self.order.id, "REPAIRED", final_cost="450"),
            lambda: record_payment(self.ctx, self.order.id, "50", "cash", "final_settlement"),
        ]
        for step in steps:
            step()
            self.order.refresh_from_db()
            self.assertEqual(self.order.outstanding_balance, expected_balance(self.order))

    def test_payment_on_other_branch_order_is_not_found(self):
        other = make_context("PAY2")

        with self.assertRaises(NotFound):
            record_payment(other, self.order.id, "10", "cash", "deposit")


class AppendOnlyTests(TestCase):
    def setUp(self):
        self.ctx = make_context("AO")
        self.order = intake(self.ctx, estimated_cost="100")

    def test_history_entries_cannot_be_changed_or_deleted(self):
        entry = self.order.history.get()
        entry.note = "rewritten"

        with self.assertRaises(AppendOnlyError):
            entry.save()
        with self.assertRaises(AppendOnlyError):
            entry.delete()

        self.assertEqual(OrderHistoryEntry.objects.get(pk=entry.pk).note, "Service order created.")

    def test_payments_cannot_be_changed(self):
        payment = record_payment(self.ctx, self.order.id, "10", "cash", "deposit").payment
        payment.amount = Decimal("1.00")

        with self.assertRaises(AppendOnlyError):
            payment.save()

    def test_history_ordering(self):
        update_order_status(self.ctx, self.order.id, "UNDER_REVIEW")

        newest_first = [entry.action for entry in history_for_order(self.order)]
        oldest_first = [entry.action for entry in history_for_order(self.order, ascending=True)]

        self.assertEqual(oldest_first, ["creation", "status_change"])
        self.assertEqual(newest_first, list(reversed(oldest_first)))


class PublicLookupTests(TestCase):
    def test_lookup_exposes_only_tracking_fields(self):
        ctx = make_context("PUB")
        order = intake(ctx, brand="Dell", model="XPS 13")

        result = public_order_status(order.order_number.lower())

        self.assertEqual(
            sorted(result.keys()),
            ["branch_name", "completed_at", "equipment", "order_number", "received_at", "status", "status_label"],
        )
        self.assertEqual(result["equipment"], "LAPTOP DELL XPS 13")

    def test_unknown_number_is_not_found(self):
        with self.assertRaises(NotFound):
            public_order_status("NOPE-000001")


class OrderApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.ctx = make_context("API")
        self.other = make_context("OTH")

        self.receptionist = self.user_model.objects.create_user(
            username="api-receptionist",
            password="pass1234",
            branch=self.ctx.branch,
        )
        self.technician = self.user_model.objects.create_user(
            username="api-technician",
            password="pass1234",
            branch=self.ctx.branch,
            role=self.user_model.Role.TECHNICIAN,
        )
        self.manager = self.user_model.objects.create_user(
            username="api-manager",
            password="pass1234",
            branch=self.ctx.branch,
            role=self.user_model.Role.MANAGER,
        )
        self.order = intake(self.ctx, estimated_cost="1000")
        self.foreign_order = intake(self.other)

    def _create_body(self, **overrides):
        body = {
            "customer": {"full_name": "Luis Gómez", "phone": "(555) 987-6543"},
            "equipment_type": "impresora",
            "brand": "hp",
            "reported_problem": "Atasco de papel",
        }
        body.update(overrides)
        return body

    def test_create_order(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.post("/api/v1/orders/", self._create_body(), format="json")

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["order_number"], "API-000002")
        self.assertEqual(payload["status"], "PENDING")
        self.assertEqual(payload["customer_phone"], "5559876543")
        self.assertEqual(payload["equipment_type_name"], "IMPRESORA")
        self.assertEqual((payload["brand"], payload["model"]), ("HP", "SIN MODELO"))
        self.assertEqual(payload["received_by_username"], "api-receptionist")

    def test_create_with_idempotency_header_is_deduplicated(self):
        self.client.force_authenticate(user=self.receptionist)
        key = str(uuid.uuid4())

        first = self.client.post("/api/v1/orders/", self._create_body(), format="json", HTTP_IDEMPOTENCY_KEY=key)
        second = self.client.post("/api/v1/orders/", self._create_body(), format="json", HTTP_IDEMPOTENCY_KEY=key)

        self.assertEqual(first.json()["id"], second.json()["id"])
        self.assertEqual(ServiceOrder.objects.filter(branch=self.ctx.branch).count(), 2)

    def test_malformed_idempotency_header_is_rejected(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.post(
            "/api/v1/orders/", self._create_body(), format="json", HTTP_IDEMPOTENCY_KEY="retry-1"
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("idempotency_key", response.json()["errors"])

    def test_create_validation_error_envelope(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.post("/api/v1/orders/", self._create_body(reported_problem=""), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("reported_problem", response.json()["errors"])

    def test_technician_cannot_create_orders(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.post("/api/v1/orders/", self._create_body(), format="json")

        self.assertEqual(response.status_code, 403)

    def test_list_is_branch_scoped_and_filterable(self):
        update_order_status(self.ctx, self.order.id, "UNDER_REVIEW")
        intake(self.ctx)
        self.client.force_authenticate(user=self.receptionist)

        everything = self.client.get("/api/v1/orders/")
        in_review = self.client.get("/api/v1/orders/", {"status": "under_review"})

        ids = {item["id"] for item in everything.json()["results"]}
        self.assertEqual(len(ids), 2)
        self.assertNotIn(str(self.foreign_order.id), ids)
        self.assertEqual([item["id"] for item in in_review.json()["results"]], [str(self.order.id)])

    def test_search_by_phone_digits(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.get("/api/v1/orders/", {"search": "123-4567"})

        self.assertEqual([item["id"] for item in response.json()["results"]], [str(self.order.id)])

    def test_other_branch_order_is_not_found(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.get(f"/api/v1/orders/{self.foreign_order.id}/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_lookup_by_number(self):
        self.client.force_authenticate(user=self.technician)

        found = self.client.get(f"/api/v1/orders/by-number/{self.order.order_number.lower()}/")
        foreign = self.client.get(f"/api/v1/orders/by-number/{self.foreign_order.order_number}/")

        self.assertEqual(found.status_code, 200)
        self.assertEqual(found.json()["id"], str(self.order.id))
        self.assertEqual(foreign.status_code, 404)

    def test_status_update_endpoint(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.post(
            f"/api/v1/orders/{self.order.id}/status/",
            {"status": "IN_REPAIR", "diagnosis": "Capacitor inflado", "final_cost": "800.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "IN_REPAIR")
        self.assertEqual(payload["outstanding_balance"], "800.00")
        history = self.client.get(f"/api/v1/orders/{self.order.id}/history/").json()
        self.assertEqual(history[0]["action"], "status_change")
        self.assertTrue(history[0]["payload"]["off_path"])
        self.assertEqual(history[0]["actor_username"], "api-technician")

    def test_record_and_list_payments(self):
        self.client.force_authenticate(user=self.receptionist)

        created = self.client.post(
            f"/api/v1/orders/{self.order.id}/payments/",
            {"amount": "400.00", "method": "cash", "kind": "abono"},
            format="json",
        )
        rejected = self.client.post(
            f"/api/v1/orders/{self.order.id}/payments/",
            {"amount": "700.00", "method": "cash", "kind": "abono"},
            format="json",
        )
        listing = self.client.get(f"/api/v1/orders/{self.order.id}/payments/")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["balance_after"], "600.00")
        self.assertEqual(rejected.status_code, 400)
        self.assertIn("amount", rejected.json()["errors"])
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["total_paid"], "400.00")
        self.assertEqual(listing.json()["outstanding_balance"], "600.00")
        self.assertEqual(len(listing.json()["payments"]), 1)

    def test_replayed_payment_returns_200(self):
        self.client.force_authenticate(user=self.receptionist)
        body = {"amount": "100.00", "method": "card", "kind": "partial", "idempotency_key": str(uuid.uuid4())}

        first = self.client.post(f"/api/v1/orders/{self.order.id}/payments/", body, format="json")
        second = self.client.post(f"/api/v1/orders/{self.order.id}/payments/", body, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["replayed"])
        self.assertEqual(first.json()["payment"]["id"], second.json()["payment"]["id"])

    def test_technician_cannot_record_payments(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.post(
            f"/api/v1/orders/{self.order.id}/payments/",
            {"amount": "10.00", "method": "cash", "kind": "deposit"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(Payment.objects.exists())

    def test_history_is_read_only_over_http(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.delete(f"/api/v1/orders/{self.order.id}/history/")

        self.assertEqual(response.status_code, 405)
        self.assertEqual(self.order.history.count(), 1)

    def test_order_lookup_accepts_upper_case_id(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.get(f"/api/v1/orders/{str(self.order.id).upper()}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["order_number"], self.order.order_number)

    def test_only_managers_delete_orders(self):
        record_payment(self.ctx, self.order.id, "100", "cash", "deposit")
        self.client.force_authenticate(user=self.receptionist)
        denied = self.client.delete(f"/api/v1/orders/{self.order.id}/")
        self.client.force_authenticate(user=self.manager)
        deleted = self.client.delete(f"/api/v1/orders/{self.order.id}/")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(deleted.status_code, 204)
        self.assertFalse(ServiceOrder.objects.filter(id=self.order.id).exists())
        self.assertFalse(OrderHistoryEntry.objects.filter(order_id=self.order.id).exists())
        self.assertFalse(Payment.objects.filter(order_id=self.order.id).exists())

    def test_public_lookup_needs_no_credentials(self):
        response = self.client.get(f"/api/v1/public/orders/{self.order.order_number}/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "PENDING")
        self.assertNotIn("customer_name", payload)
        self.assertNotIn("outstanding_balance", payload)

    def test_public_lookup_unknown_number(self):
        response = self.client.get("/api/v1/public/orders/API-999999/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")


class OrderPhotoTests(TestCase):
    def setUp(self):
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)
        self.client = APIClient()
        self.ctx = make_context("PH")
        self.user = get_user_model().objects.create_user(
            username="photo-user",
            password="pass1234",
            branch=self.ctx.branch,
        )
        self.order = intake(self.ctx)

    def _photo(self, name="front.png", content_type="image/png", content=PNG_BYTES):
        return SimpleUploadedFile(name, content, content_type=content_type)

    def test_upload_records_photos_and_one_history_entry(self):
        self.client.force_authenticate(user=self.user)

        with override_settings(MEDIA_ROOT=self.media_root):
            response = self.client.post(
                f"/api/v1/orders/{self.order.id}/photos/",
                {"photos": [self._photo("a.png"), self._photo("b.png")], "kind": "intake"},
                format="multipart",
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.json()), 2)
        self.assertEqual(self.order.photos.count(), 2)
        self.assertEqual(self.order.history.filter(action=OrderHistoryEntry.Action.OTHER).count(), 1)

    @override_settings(REPAIRS_MAX_PHOTOS_PER_ORDER=1)
    def test_photo_limit_is_enforced(self):
        self.client.force_authenticate(user=self.user)

        with override_settings(MEDIA_ROOT=self.media_root):
            response = self.client.post(
                f"/api/v1/orders/{self.order.id}/photos/",
                {"photos": [self._photo("a.png"), self._photo("b.png")]},
                format="multipart",
            )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(self.order.photos.exists())

    @override_settings(REPAIRS_MAX_UPLOAD_BYTES=16)
    def test_oversized_photo_is_rejected(self):
        self.client.force_authenticate(user=self.user)

        with override_settings(MEDIA_ROOT=self.media_root):
            response = self.client.post(
                f"/api/v1/orders/{self.order.id}/photos/",
                {"photos": [self._photo()]},
                format="multipart",
            )

        self.assertEqual(response.status_code, 400)
        self.assertIn("photos", response.json()["errors"])

    def test_non_image_upload_is_rejected(self):
        self.client.force_authenticate(user=self.user)

        with override_settings(MEDIA_ROOT=self.media_root):
            response = self.client.post(
                f"/api/v1/orders/{self.order.id}/photos/",
                {"photos": [self._photo("notes.txt", "text/plain", b"hello")]},
                format="multipart",
            )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(self.order.photos.exists())


class OrderDeletionTests(TestCase):
    def setUp(self):
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)
        media = override_settings(MEDIA_ROOT=self.media_root)
        media.enable()
        self.addCleanup(media.disable)
        self.ctx = make_context("DEL")
        self.order = intake(self.ctx, signature_image=SIGNATURE)
        add_order_photos(
            self.ctx,
            self.order.id,
            [SimpleUploadedFile("a.png", PNG_BYTES, content_type="image/png")],
        )
        self.order.refresh_from_db()

    def test_signature_path_is_kept_on_the_order(self):
        self.assertTrue(self.order.signature_path)
        self.assertTrue(default_storage.exists(self.order.signature_path))

    def test_delete_removes_photo_rows_and_every_blob(self):
        photo_path = self.order.photos.get().storage_path
        signature_path = self.order.signature_path

        delete_order(self.ctx, self.order.id)

        self.assertFalse(ServiceOrder.objects.filter(id=self.order.id).exists())
        self.assertFalse(OrderPhoto.objects.filter(order_id=self.order.id).exists())
        self.assertFalse(default_storage.exists(photo_path))
        self.assertFalse(default_storage.exists(signature_path))

    def test_blob_failure_does_not_undo_the_delete(self):
        with patch("orders.services.delete_blob", side_effect=DependencyError("down")) as mocked:
            delete_order(self.ctx, self.order.id)

        self.assertEqual(mocked.call_count, 2)
        self.assertFalse(ServiceOrder.objects.filter(id=self.order.id).exists())

    def test_order_of_another_branch_is_not_found(self):
        other = make_context("DEL2")

        with self.assertRaises(NotFound):
            delete_order(other, self.order.id)

        self.assertTrue(ServiceOrder.objects.filter(id=self.order.id).exists())
        self.assertTrue(default_storage.exists(self.order.signature_path))


class ReconcileBalancesCommandTests(TestCase):
    def setUp(self):
        self.ctx = make_context("REC")
        self.order = intake(self.ctx, estimated_cost="500")
        record_payment(self.ctx, self.order.id, "200", "cash", "deposit")
        ServiceOrder.objects.filter(pk=self.order.pk).update(outstanding_balance=Decimal("999.00"))

    def test_dry_run_reports_without_writing(self):
        out = StringIO()

        call_command("reconcile_balances", stdout=out)

        self.assertIn(self.order.order_number, out.getvalue())
        self.order.refresh_from_db()
        self.assertEqual(self.order.outstanding_balance, Decimal("999.00"))

    def test_apply_repairs_balance_and_records_entry(self):
        out = StringIO()

        call_command("reconcile_balances", "--apply", stdout=out)

        self.order.refresh_from_db()
        self.assertEqual(self.order.outstanding_balance, Decimal("300.00"))
        entry = history_for_order(self.order).first()
        self.assertEqual(entry.action, OrderHistoryEntry.Action.OTHER)
        self.assertEqual(entry.payload["balance_before"], "999.00")
        self.assertEqual(entry.payload["balance_after"], "300.00")
