from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from common.exceptions import ConflictError
from core.models import Branch, Company
from core.tenancy import TenantContext
from customers.models import Customer
from customers.services import (
    canonicalize_phone,
    register_customer,
    resolve_or_create_customer,
    search_customers,
    update_customer,
)
from orders.services import create_order


def make_context(code, user=None):
    company = Company.objects.create(name=f"Company {code}")
    branch = Branch.objects.create(company=company, code=code, name=f"Branch {code}", order_prefix=code)
    return TenantContext(company=company, branch=branch, user=user)


class PhoneCanonicalizationTests(TestCase):
    def test_formatting_is_stripped(self):
        self.assertEqual(canonicalize_phone("(555) 123-4567"), "5551234567")
        self.assertEqual(canonicalize_phone("+52 55 1234 5678"), "525512345678")
        self.assertEqual(canonicalize_phone(None), "")

    def test_canonicalization_is_idempotent(self):
        for raw in ["(555) 123-4567", "555.123.4567", "5551234567", " 55-51 23 45 67 "]:
            once = canonicalize_phone(raw)
            self.assertEqual(canonicalize_phone(once), once)


class CustomerResolutionTests(TestCase):
    def setUp(self):
        self.ctx = make_context("CR")

    def test_same_phone_in_any_format_resolves_to_one_customer(self):
        first = resolve_or_create_customer(self.ctx, "Ana Pérez", "(555) 123-4567")
        second = resolve_or_create_customer(self.ctx, "Ana  Pérez López", "555-123-4567", "ANA@Example.com")

        self.assertEqual(first.id, second.id)
        self.assertEqual(Customer.objects.filter(branch=self.ctx.branch).count(), 1)
        second.refresh_from_db()
        self.assertEqual(second.phone, "5551234567")
        self.assertEqual(second.full_name, "Ana Pérez López")
        self.assertEqual(second.email, "ana@example.com")

    def test_existing_email_is_kept_when_none_supplied(self):
        resolve_or_create_customer(self.ctx, "Ana", "5551234567", "ana@example.com")
        customer = resolve_or_create_customer(self.ctx, "Ana", "5551234567")

        self.assertEqual(customer.email, "ana@example.com")

    def test_same_phone_in_other_branch_is_a_different_customer(self):
        other = make_context("CR2")

        here = resolve_or_create_customer(self.ctx, "Ana", "5551234567")
        there = resolve_or_create_customer(other, "Ana", "5551234567")

        self.assertNotEqual(here.id, there.id)

    @override_settings(REPAIRS_PHONE_MIN_DIGITS=10)
    def test_short_phone_is_rejected_before_any_write(self):
        with self.assertRaises(ValidationError) as raised:
            resolve_or_create_customer(self.ctx, "Ana", "555-12")

        self.assertIn("phone", raised.exception.detail)
        self.assertFalse(Customer.objects.exists())

    def test_blank_name_and_bad_email_are_reported_together(self):
        with self.assertRaises(ValidationError) as raised:
            resolve_or_create_customer(self.ctx, "   ", "5551234567", "not-an-email")

        self.assertIn("name", raised.exception.detail)
        self.assertIn("email", raised.exception.detail)

    def test_insert_conflict_is_resolved_as_found(self):
        existing = Customer.objects.create(branch=self.ctx.branch, full_name="Ana", phone="5551234567")

        with patch("customers.services._find_by_phone", side_effect=[None, existing]):
            customer = resolve_or_create_customer(self.ctx, "Ana", "555 123 4567")

        self.assertEqual(customer.id, existing.id)
        self.assertEqual(Customer.objects.count(), 1)

    def test_register_rejects_duplicate_phone(self):
        register_customer(self.ctx, "Ana", "5551234567")

        with self.assertRaises(ConflictError):
            register_customer(self.ctx, "Otra Ana", "(555) 123 4567")

    def test_update_to_taken_phone_is_a_conflict(self):
        register_customer(self.ctx, "Ana", "5551234567")
        luis = register_customer(self.ctx, "Luis", "5559876543")

        with self.assertRaises(ConflictError):
            update_customer(self.ctx, luis.id, phone="555 123 4567")

    def test_search_matches_name_and_phone_digits(self):
        register_customer(self.ctx, "Ana Pérez", "5551234567")
        register_customer(self.ctx, "Luis Gómez", "5559876543")

        self.assertEqual([c.full_name for c in search_customers(self.ctx, "pérez")], ["Ana Pérez"])
        self.assertEqual([c.full_name for c in search_customers(self.ctx, "987-65")], ["Luis Gómez"])
        self.assertEqual(len(search_customers(self.ctx, "", limit=1)), 1)


class CustomerApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.ctx = make_context("CA")
        self.other = make_context("CB")

        self.receptionist = self.user_model.objects.create_user(
            username="customer-receptionist",
            password="pass1234",
            branch=self.ctx.branch,
        )
        self.manager = self.user_model.objects.create_user(
            username="customer-manager",
            password="pass1234",
            branch=self.ctx.branch,
            role=self.user_model.Role.MANAGER,
        )

        self.customer = Customer.objects.create(branch=self.ctx.branch, full_name="Ana", phone="5551234567")
        self.foreign_customer = Customer.objects.create(branch=self.other.branch, full_name="Beto", phone="5550000000")

    def test_list_is_branch_scoped(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.get("/api/v1/customers/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertIn(str(self.customer.id), ids)
        self.assertNotIn(str(self.foreign_customer.id), ids)

    def test_other_branch_customer_is_not_found(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.get(f"/api/v1/customers/{self.foreign_customer.id}/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_create_ignores_injected_branch_and_canonicalizes_phone(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.post(
            "/api/v1/customers/",
            {"branch": str(self.other.branch.id), "full_name": "Luis", "phone": "(555) 987-6543"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        created = Customer.objects.get(id=response.json()["id"])
        self.assertEqual(created.branch_id, self.ctx.branch.id)
        self.assertEqual(created.phone, "5559876543")

    def test_duplicate_phone_is_a_conflict(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.post(
            "/api/v1/customers/",
            {"full_name": "Ana Again", "phone": "555-123-4567"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")

    def test_search_endpoint(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.get("/api/v1/customers/search/", {"q": "1234"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["id"] for item in response.json()], [str(self.customer.id)])

    def test_receptionist_cannot_delete(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.delete(f"/api/v1/customers/{self.customer.id}/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(Customer.objects.filter(id=self.customer.id).exists())

    def test_customer_with_orders_cannot_be_deleted(self):
        create_order(
            TenantContext(company=self.ctx.company, branch=self.ctx.branch, user=self.manager),
            {"name": "Ana", "phone": "5551234567"},
            "Laptop",
            reported_problem="No enciende",
        )
        self.client.force_authenticate(user=self.manager)

        response = self.client.delete(f"/api/v1/customers/{self.customer.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "blocked_by_dependents")
        self.assertEqual(response.json()["errors"], {"dependents": {"orders": 1}})

    def test_customer_without_orders_can_be_deleted(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.delete(f"/api/v1/customers/{self.customer.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(Customer.objects.filter(id=self.customer.id).exists())
