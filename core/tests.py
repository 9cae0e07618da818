from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.db import OperationalError
from django.test import TestCase
from rest_framework.exceptions import NotAuthenticated, PermissionDenied, ValidationError
from rest_framework.test import APIClient

from common.exceptions import ConflictError
from core.models import Branch, Company
from core.services import create_branch, create_staff, default_order_prefix, update_branch
from core.tenancy import TenantContext, resolve_tenant_context
from orders.services import create_order


def make_branch(code, company=None, **extra):
    company = company or Company.objects.create(name=f"Company {code}")
    return Branch.objects.create(company=company, code=code, name=f"Branch {code}", order_prefix=code, **extra)


class TenantContextResolutionTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.company = Company.objects.create(name="Tenant A")
        self.branch_a = make_branch("TA", company=self.company)
        self.branch_a2 = make_branch("TA2", company=self.company)
        self.branch_b = make_branch("TB")

        self.receptionist = self.user_model.objects.create_user(
            username="tenant-receptionist",
            password="pass1234",
            branch=self.branch_a,
        )
        self.admin = self.user_model.objects.create_user(
            username="tenant-admin",
            password="pass1234",
            branch=self.branch_a,
            role=self.user_model.Role.ADMIN,
        )

    def test_unauthenticated_principal_is_rejected(self):
        with self.assertRaises(NotAuthenticated):
            resolve_tenant_context(AnonymousUser())

    def test_user_is_scoped_to_own_branch(self):
        ctx = resolve_tenant_context(self.receptionist, request_id="req-1")

        self.assertEqual(ctx.branch, self.branch_a)
        self.assertEqual(ctx.company, self.company)
        self.assertEqual(ctx.request_id, "req-1")

    def test_user_company_is_derived_from_branch(self):
        self.assertEqual(self.receptionist.company_id, self.company.id)

    def test_user_without_branch_has_no_fallback(self):
        orphan = self.user_model.objects.create_user(username="orphan", password="pass1234")

        with self.assertRaises(ValidationError):
            resolve_tenant_context(orphan)

    def test_non_admin_cannot_switch_branch(self):
        with self.assertRaises(PermissionDenied):
            resolve_tenant_context(self.receptionist, requested_branch_id=str(self.branch_a2.id))

    def test_admin_can_switch_to_branch_of_own_company(self):
        ctx = resolve_tenant_context(self.admin, requested_branch_id=str(self.branch_a2.id))

        self.assertEqual(ctx.branch, self.branch_a2)

    def test_admin_cannot_switch_to_other_company_branch(self):
        with self.assertRaises(PermissionDenied):
            resolve_tenant_context(self.admin, requested_branch_id=str(self.branch_b.id))

    def test_superuser_can_pick_any_branch(self):
        root = self.user_model.objects.create_superuser(username="root", password="pass1234", email="root@example.com")

        ctx = resolve_tenant_context(root, requested_branch_id=str(self.branch_b.id))

        self.assertEqual(ctx.branch, self.branch_b)

    def test_malformed_branch_header_is_a_validation_error(self):
        with self.assertRaises(ValidationError):
            resolve_tenant_context(self.admin, requested_branch_id="not-a-uuid")

    def test_disabled_branch_is_rejected(self):
        self.branch_a.is_active = False
        self.branch_a.save(update_fields=["is_active"])

        with self.assertRaises(PermissionDenied):
            resolve_tenant_context(self.receptionist)


class OnboardingTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="owner", password="pass1234")

    def test_onboarding_creates_company_branch_and_promotes_user(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.post(
            "/api/v1/onboarding/",
            {"company": {"name": "Fix It Fast"}, "branch": {"name": "Centro", "code": "cen"}},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["branch"]["code"], "CEN")
        self.assertEqual(payload["branch"]["order_prefix"], "CEN")
        self.user.refresh_from_db()
        self.assertEqual(self.user.role, self.user.Role.ADMIN)
        self.assertEqual(str(self.user.branch_id), payload["branch"]["id"])
        self.assertEqual(str(self.user.company_id), payload["company"]["id"])

    def test_onboarding_twice_is_a_conflict(self):
        self.client.force_authenticate(user=self.user)
        body = {"company": {"name": "Fix It Fast"}, "branch": {"name": "Centro"}}

        self.client.post("/api/v1/onboarding/", body, format="json")
        response = self.client.post("/api/v1/onboarding/", body, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")
        self.assertEqual(Company.objects.count(), 1)

    def test_onboarding_requires_company_name(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.post("/api/v1/onboarding/", {"company": {}, "branch": {"name": "Centro"}}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertFalse(Company.objects.exists())


class BranchAdministrationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.company = Company.objects.create(name="Admin Co")
        self.home = make_branch("HOME", company=self.company)
        self.admin = self.user_model.objects.create_user(
            username="branch-admin",
            password="pass1234",
            branch=self.home,
            role=self.user_model.Role.ADMIN,
        )
        self.receptionist = self.user_model.objects.create_user(
            username="branch-receptionist",
            password="pass1234",
            branch=self.home,
        )

    def test_default_order_prefix_uses_name_letters(self):
        self.assertEqual(default_order_prefix("Sucursal Norte"), "SUC")
        self.assertEqual(default_order_prefix("!!"), "ORD")

    def test_create_branch_generates_unique_code(self):
        first = create_branch(self.company, {"name": "Norte"})
        second = create_branch(self.company, {"name": "Norte"})

        self.assertEqual(first.code, "NOR")
        self.assertEqual(second.code, "NOR2")
        self.assertEqual(second.order_prefix, "NOR2")

    def test_admin_creates_branch_in_own_company(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/branches/", {"name": "Sur", "code": "sur"}, format="json")

        self.assertEqual(response.status_code, 201)
        branch = Branch.objects.get(id=response.json()["id"])
        self.assertEqual(branch.company_id, self.company.id)
        self.assertEqual(branch.code, "SUR")

    def test_duplicate_branch_code_is_a_conflict(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/branches/", {"name": "Again", "code": "HOME"}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")

    def test_receptionist_cannot_manage_branches(self):
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.post("/api/v1/branches/", {"name": "Sur"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_receptionist_only_sees_own_branch(self):
        make_branch("OTHER", company=self.company)
        self.client.force_authenticate(user=self.receptionist)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        codes = [item["code"] for item in response.json()["results"]]
        self.assertEqual(codes, ["HOME"])

    def test_branch_with_orders_cannot_be_deleted(self):
        branch = make_branch("BUSY", company=self.company)
        ctx = TenantContext(company=self.company, branch=branch, user=self.admin)
        create_order(
            ctx,
            {"name": "Ana", "phone": "5551234567"},
            "Laptop",
            reported_problem="Broken screen",
        )
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/branches/{branch.id}/")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "blocked_by_dependents")
        self.assertEqual(payload["errors"], {"dependents": {"orders": 1}})
        self.assertTrue(Branch.objects.filter(id=branch.id).exists())

    def test_empty_branch_can_be_deleted(self):
        branch = make_branch("EMPTY", company=self.company)
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/branches/{branch.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(Branch.objects.filter(id=branch.id).exists())

    def test_branch_with_staff_cannot_be_deleted(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/branches/{self.home.id}/")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["errors"]["dependents"]["users"], 2)

    def test_branch_cannot_take_another_branch_prefix(self):
        other = make_branch("OTR", company=self.company)

        with self.assertRaises(ConflictError):
            update_branch(other, {"order_prefix": "home"})

        other.refresh_from_db()
        self.assertEqual(other.order_prefix, "OTR")

    def test_prefix_clash_over_api_is_a_conflict(self):
        other = make_branch("OTR", company=self.company)
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/branches/{other.id}/", {"order_prefix": "HOME"}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")

    def test_new_branch_cannot_reuse_a_taken_prefix(self):
        with self.assertRaises(ConflictError):
            create_branch(self.company, {"name": "Copy", "code": "COPY", "order_prefix": "home"})

        self.assertFalse(Branch.objects.filter(code="COPY").exists())

    def test_code_of_branch_without_prefix_is_reserved(self):
        Branch.objects.create(company=self.company, code="BARE", name="Bare", order_prefix="")

        with self.assertRaises(ConflictError):
            create_branch(self.company, {"name": "Clash", "code": "CLASH", "order_prefix": "BARE"})

    def test_branch_lookup_accepts_upper_case_id(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get(f"/api/v1/branches/{str(self.home.id).upper()}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["code"], "HOME")


class StaffAdministrationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.company = Company.objects.create(name="Staff Co")
        self.home = make_branch("STH", company=self.company)
        self.annex = make_branch("STA", company=self.company)
        self.foreign = make_branch("FRN")
        self.admin = self.user_model.objects.create_user(
            username="staff-admin",
            password="pass1234",
            branch=self.home,
            role=self.user_model.Role.ADMIN,
        )
        self.manager = self.user_model.objects.create_user(
            username="staff-manager",
            password="pass1234",
            branch=self.home,
            role=self.user_model.Role.MANAGER,
        )
        self.annex_tech = self.user_model.objects.create_user(
            username="annex-tech",
            password="pass1234",
            branch=self.annex,
            role=self.user_model.Role.TECHNICIAN,
        )
        self.outsider = self.user_model.objects.create_user(username="outsider", password="pass1234", branch=self.foreign)

    def test_admin_creates_employee_in_own_company_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/staff/",
            {
                "username": "new-tech",
                "password": "s3cret-pass",
                "email": "Tech@Example.com",
                "role": "technician",
                "branch": str(self.annex.id),
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        user = self.user_model.objects.get(username="new-tech")
        self.assertEqual(user.branch, self.annex)
        self.assertEqual(user.company, self.company)
        self.assertEqual(user.role, self.user_model.Role.TECHNICIAN)
        self.assertEqual(user.email, "tech@example.com")
        self.assertTrue(user.check_password("s3cret-pass"))

    def test_employee_defaults_to_the_admins_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/staff/", {"username": "desk", "password": "s3cret-pass"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["branch"], str(self.home.id))
        self.assertEqual(response.json()["role"], "receptionist")

    def test_admin_cannot_attach_employee_to_another_company_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/staff/",
            {"username": "spy", "password": "s3cret-pass", "branch": str(self.foreign.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("branch", response.json()["errors"])
        self.assertFalse(self.user_model.objects.filter(username="spy").exists())

    def test_admin_cannot_move_employee_to_another_company_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(
            f"/api/v1/staff/{self.annex_tech.id}/",
            {"branch": str(self.foreign.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.annex_tech.refresh_from_db()
        self.assertEqual(self.annex_tech.branch, self.annex)

    def test_admin_cannot_manage_another_company_employee(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/staff/{self.outsider.id}/", {"role": "admin"}, format="json")

        self.assertEqual(response.status_code, 404)
        self.outsider.refresh_from_db()
        self.assertEqual(self.outsider.role, self.user_model.Role.RECEPTIONIST)

    def test_admin_changes_role_and_branch(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(
            f"/api/v1/staff/{self.annex_tech.id}/",
            {"role": "manager", "branch": str(self.home.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.annex_tech.refresh_from_db()
        self.assertEqual(self.annex_tech.role, self.user_model.Role.MANAGER)
        self.assertEqual(self.annex_tech.branch, self.home)

    def test_deactivated_employee_is_hidden_from_list(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/staff/{self.annex_tech.id}/")

        self.assertEqual(response.status_code, 204)
        self.annex_tech.refresh_from_db()
        self.assertFalse(self.annex_tech.is_active)
        usernames = [item["username"] for item in self.client.get("/api/v1/staff/").json()["results"]]
        self.assertNotIn("annex-tech", usernames)
        usernames = [
            item["username"] for item in self.client.get("/api/v1/staff/?include_inactive=true").json()["results"]
        ]
        self.assertIn("annex-tech", usernames)

    def test_admin_cannot_deactivate_self(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/staff/{self.admin.id}/")

        self.assertEqual(response.status_code, 400)
        self.admin.refresh_from_db()
        self.assertTrue(self.admin.is_active)

    def test_duplicate_username_is_a_conflict(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/staff/",
            {"username": "annex-tech", "password": "s3cret-pass"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")

    def test_duplicate_email_is_rejected_case_insensitively(self):
        self.annex_tech.email = "tech@example.com"
        self.annex_tech.save(update_fields=["email"])
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/staff/",
            {"username": "other-tech", "password": "s3cret-pass", "email": "TECH@example.com"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("email", response.json()["errors"])

    def test_manager_lists_own_branch_only(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/staff/")

        self.assertEqual(response.status_code, 200)
        usernames = sorted(item["username"] for item in response.json()["results"])
        self.assertEqual(usernames, ["staff-admin", "staff-manager"])

    def test_manager_cannot_create_employees(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post("/api/v1/staff/", {"username": "x", "password": "s3cret-pass"}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_service_rejects_foreign_branch(self):
        ctx = TenantContext(company=self.company, branch=self.home, user=self.admin)

        with self.assertRaises(ValidationError):
            create_staff(ctx, {"username": "svc", "password": "s3cret-pass", "branch": self.foreign.id})


class CompanyTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.company = Company.objects.create(name="Soft Delete Co")
        self.branch = make_branch("SD", company=self.company)
        self.admin = self.user_model.objects.create_user(
            username="company-admin",
            password="pass1234",
            branch=self.branch,
            role=self.user_model.Role.ADMIN,
        )

    def test_company_can_be_updated_by_admin(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch("/api/v1/company/", {"phone": "5550001111"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.company.refresh_from_db()
        self.assertEqual(self.company.phone, "5550001111")

    def test_deactivated_company_loses_access(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete("/api/v1/company/")

        self.assertEqual(response.status_code, 204)
        self.company.refresh_from_db()
        self.branch.refresh_from_db()
        self.assertFalse(self.company.is_active)
        self.assertFalse(self.branch.is_active)

        response = self.client.get("/api/v1/orders/")
        self.assertEqual(response.status_code, 403)


class ErrorEnvelopeTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.branch = make_branch("ERR")
        self.user = get_user_model().objects.create_user(username="err-user", password="pass1234", branch=self.branch)

    def test_unauthenticated_request_uses_envelope(self):
        response = self.client.get("/api/v1/orders/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["code"], "not_authenticated")

    def test_database_failure_is_reported_as_dependency_error(self):
        self.client.force_authenticate(user=self.user)

        with patch("orders.views.list_orders", side_effect=OperationalError("connection lost")):
            response = self.client.get("/api/v1/orders/")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "dependency_error")

    def test_request_id_is_echoed(self):
        response = self.client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="abc-123")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["X-Request-ID"], "abc-123")
        self.assertEqual(response.json()["request_id"], "abc-123")

    def test_malformed_request_id_is_replaced(self):
        response = self.client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="bad id with spaces")

        self.assertNotEqual(response["X-Request-ID"], "bad id with spaces")
        self.assertEqual(response.json()["request_id"], response["X-Request-ID"])
