from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from catalog.models import BrandModel, EquipmentType
from catalog.services import (
    canonicalize_catalog_name,
    create_equipment_type,
    list_equipment_types,
    resolve_or_create_brand_model,
    resolve_or_create_equipment_type,
    set_brand_model_active,
    set_equipment_type_active,
)
from common.exceptions import ConflictError
from core.models import Branch, Company
from core.tenancy import TenantContext
from orders.services import create_order


def make_context(code, user=None):
    company = Company.objects.create(name=f"Company {code}")
    branch = Branch.objects.create(company=company, code=code, name=f"Branch {code}", order_prefix=code)
    return TenantContext(company=company, branch=branch, user=user)


class CatalogResolutionTests(TestCase):
    def setUp(self):
        self.ctx = make_context("CAT")

    def test_names_are_trimmed_collapsed_and_uppercased(self):
        self.assertEqual(canonicalize_catalog_name("  xps   13 "), "XPS 13")

    def test_equipment_type_resolution_is_case_insensitive(self):
        first = resolve_or_create_equipment_type(self.ctx, "impresora")
        second = resolve_or_create_equipment_type(self.ctx, "  IMPRESORA ")

        self.assertEqual(first.id, second.id)
        self.assertEqual(first.name, "IMPRESORA")
        self.assertEqual(EquipmentType.objects.filter(branch=self.ctx.branch).count(), 1)

    def test_blank_equipment_type_is_rejected(self):
        with self.assertRaises(ValidationError):
            resolve_or_create_equipment_type(self.ctx, "   ")

    def test_brand_model_pair_resolution(self):
        first = resolve_or_create_brand_model(self.ctx, "dell", "xps 13")
        second = resolve_or_create_brand_model(self.ctx, "DELL ", " XPS 13")

        self.assertEqual(first.id, second.id)
        self.assertEqual((first.brand, first.model), ("DELL", "XPS 13"))

    def test_missing_half_uses_placeholder(self):
        brand_only = resolve_or_create_brand_model(self.ctx, "HP", None)
        model_only = resolve_or_create_brand_model(self.ctx, "", "LaserJet")

        self.assertEqual((brand_only.brand, brand_only.model), ("HP", BrandModel.NO_MODEL))
        self.assertEqual((model_only.brand, model_only.model), (BrandModel.NO_BRAND, "LASERJET"))

    def test_no_brand_and_no_model_resolves_to_nothing(self):
        self.assertIsNone(resolve_or_create_brand_model(self.ctx, " ", None))
        self.assertFalse(BrandModel.objects.exists())

    def test_catalogs_are_per_branch(self):
        other = make_context("CAT2")

        here = resolve_or_create_equipment_type(self.ctx, "Laptop")
        there = resolve_or_create_equipment_type(other, "Laptop")

        self.assertNotEqual(here.id, there.id)

    def test_explicit_create_rejects_duplicates(self):
        create_equipment_type(self.ctx, "Tablet")

        with self.assertRaises(ConflictError):
            create_equipment_type(self.ctx, "tablet")

    def test_resolution_reactivates_a_hidden_entry(self):
        hidden = resolve_or_create_equipment_type(self.ctx, "Consola")
        set_equipment_type_active(self.ctx, hidden.id, False)

        resolved = resolve_or_create_equipment_type(self.ctx, "consola")

        self.assertEqual(resolved.id, hidden.id)
        self.assertTrue(resolved.is_active)
        self.assertIn(hidden.id, list(list_equipment_types(self.ctx).values_list("id", flat=True)))

    def test_intake_brings_back_a_hidden_brand_model(self):
        hidden = resolve_or_create_brand_model(self.ctx, "Dell", "XPS 13")
        set_brand_model_active(self.ctx, hidden.id, False)

        order = create_order(
            self.ctx,
            {"name": "Ana", "phone": "5551234567"},
            "Laptop",
            reported_problem="Screen",
            brand="dell",
            model="xps 13",
        )

        self.assertEqual(order.brand_model_id, hidden.id)
        hidden.refresh_from_db()
        self.assertTrue(hidden.is_active)

    def test_explicit_create_restores_a_hidden_entry(self):
        hidden = create_equipment_type(self.ctx, "Tablet")
        set_equipment_type_active(self.ctx, hidden.id, False)

        restored = create_equipment_type(self.ctx, "tablet")

        self.assertEqual(restored.id, hidden.id)
        self.assertTrue(restored.is_active)



class CatalogApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.ctx = make_context("CAPI")
        self.technician = self.user_model.objects.create_user(
            username="catalog-tech",
            password="pass1234",
            branch=self.ctx.branch,
            role=self.user_model.Role.TECHNICIAN,
        )
        self.manager = self.user_model.objects.create_user(
            username="catalog-manager",
            password="pass1234",
            branch=self.ctx.branch,
            role=self.user_model.Role.MANAGER,
        )

    def test_list_is_ordered_by_usage(self):
        ctx = TenantContext(company=self.ctx.company, branch=self.ctx.branch, user=self.manager)
        for _ in range(2):
            create_order(ctx, {"name": "Ana", "phone": "5551234567"}, "Printer", reported_problem="Jam")
        create_order(ctx, {"name": "Ana", "phone": "5551234567"}, "Laptop", reported_problem="Screen")
        resolve_or_create_equipment_type(ctx, "Tablet")
        self.client.force_authenticate(user=self.technician)

        response = self.client.get("/api/v1/equipment-types/")

        self.assertEqual(response.status_code, 200)
        rows = [(item["name"], item["usage_count"]) for item in response.json()]
        self.assertEqual(rows, [("PRINTER", 2), ("LAPTOP", 1), ("TABLET", 0)])

    def test_create_duplicate_equipment_type_is_a_conflict(self):
        self.client.force_authenticate(user=self.technician)

        created = self.client.post("/api/v1/equipment-types/", {"name": "celular"}, format="json")
        duplicate = self.client.post("/api/v1/equipment-types/", {"name": "CELULAR"}, format="json")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["name"], "CELULAR")
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["code"], "conflict")

    def test_create_brand_model_requires_both_halves(self):
        self.client.force_authenticate(user=self.technician)

        response = self.client.post("/api/v1/brand-models/", {"brand": "Dell"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("model", response.json()["errors"])

    def test_brand_models_filter_by_brand(self):
        resolve_or_create_brand_model(self.ctx, "Dell", "XPS 13")
        resolve_or_create_brand_model(self.ctx, "HP", "Pavilion")
        self.client.force_authenticate(user=self.technician)

        response = self.client.get("/api/v1/brand-models/", {"brand": "dell"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["label"] for item in response.json()], ["DELL XPS 13"])

    def test_technician_cannot_delete_catalog_entries(self):
        equipment_type = resolve_or_create_equipment_type(self.ctx, "Tablet")
        self.client.force_authenticate(user=self.technician)

        response = self.client.delete(f"/api/v1/equipment-types/{equipment_type.id}/")

        self.assertEqual(response.status_code, 403)

    def test_used_equipment_type_cannot_be_deleted(self):
        ctx = TenantContext(company=self.ctx.company, branch=self.ctx.branch, user=self.manager)
        order = create_order(ctx, {"name": "Ana", "phone": "5551234567"}, "Laptop", reported_problem="Screen")
        self.client.force_authenticate(user=self.manager)

        response = self.client.delete(f"/api/v1/equipment-types/{order.equipment_type_id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "blocked_by_dependents")

    def test_unused_brand_model_can_be_deleted(self):
        brand_model = resolve_or_create_brand_model(self.ctx, "Dell", "XPS 13")
        self.client.force_authenticate(user=self.manager)

        response = self.client.delete(f"/api/v1/brand-models/{brand_model.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(BrandModel.objects.filter(id=brand_model.id).exists())

    def test_deactivated_entry_leaves_the_pick_list(self):
        equipment_type = resolve_or_create_equipment_type(self.ctx, "Tablet")
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(f"/api/v1/equipment-types/{equipment_type.id}/deactivate/")
        listed = self.client.get("/api/v1/equipment-types/")
        everything = self.client.get("/api/v1/equipment-types/", {"include_inactive": "true"})

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["is_active"])
        self.assertEqual(listed.json(), [])
        self.assertEqual([item["name"] for item in everything.json()], ["TABLET"])

    def test_used_entry_can_be_deactivated_and_reactivated(self):
        ctx = TenantContext(company=self.ctx.company, branch=self.ctx.branch, user=self.manager)
        order = create_order(ctx, {"name": "Ana", "phone": "5551234567"}, "Laptop", reported_problem="Screen")
        self.client.force_authenticate(user=self.manager)

        hidden = self.client.post(f"/api/v1/equipment-types/{order.equipment_type_id}/deactivate/")
        restored = self.client.post(f"/api/v1/equipment-types/{order.equipment_type_id}/activate/")

        self.assertEqual(hidden.status_code, 200)
        self.assertEqual(restored.status_code, 200)
        self.assertTrue(restored.json()["is_active"])
        order.refresh_from_db()
        self.assertEqual(order.equipment_type.name, "LAPTOP")

    def test_technician_cannot_deactivate_catalog_entries(self):
        brand_model = resolve_or_create_brand_model(self.ctx, "Dell", "XPS 13")
        self.client.force_authenticate(user=self.technician)

        response = self.client.post(f"/api/v1/brand-models/{brand_model.id}/deactivate/")

        self.assertEqual(response.status_code, 403)
        brand_model.refresh_from_db()
        self.assertTrue(brand_model.is_active)

    def test_brand_model_lookup_accepts_upper_case_id(self):
        brand_model = resolve_or_create_brand_model(self.ctx, "Dell", "XPS 13")
        self.client.force_authenticate(user=self.manager)

        response = self.client.post(f"/api/v1/brand-models/{str(brand_model.id).upper()}/deactivate/")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["is_active"])
