"""Clinic administration and plan entitlement synchronisation."""

import pytest

import services.tenant as tenant_service
from extensions import db
from models import AuditLog, PlanProduct, ProductToken, Tenant, TenantProduct, User
from services.errors import InvariantError, ValidationError
from services.sessions import AuthUser
from services.sso import issue_token
from services.tenant import (
    create_tenant_with_admin,
    delete_tenant,
    sync_all_tenants,
    sync_tenant_products,
    update_tenant,
)


def _active_product_ids(tenant_id):
    return {
        tp.product_id
        for tp in TenantProduct.query.filter_by(tenant_id=tenant_id, is_active=True).all()
    }


def _clinic_payload(plan_id, **extra):
    payload = {
        "name": "Clínica Nova",
        "slug": "clinica-nova",
        "planId": plan_id,
        "adminEmail": "admin@clinica-nova.test",
        "adminName": "Admin Nova",
        "adminPassword": "nova-password",
    }
    payload.update(extra)
    return payload


class TestProductSync:
    def test_new_tenant_gets_plan_products(self, app, sample_data):
        with app.app_context():
            assert _active_product_ids(sample_data["tenant_a"]) == {sample_data["educational"]}
            assert _active_product_ids(sample_data["tenant_b"]) == {
                sample_data["educational"],
                sample_data["ecommerce"],
            }

    def test_sync_is_idempotent(self, app, sample_data):
        with app.app_context():
            tenant = db.session.get(Tenant, sample_data["tenant_b"])
            before = TenantProduct.query.filter_by(tenant_id=tenant.id).count()
            first = sync_tenant_products(tenant)
            db.session.commit()
            second = sync_tenant_products(tenant)
            db.session.commit()
            assert not first.changed
            assert not second.changed
            assert TenantProduct.query.filter_by(tenant_id=tenant.id).count() == before

    def test_downgrade_deactivates_and_revokes(self, app, sample_data):
        with app.app_context():
            admin_b = AuthUser.from_model(db.session.get(User, sample_data["admin_b"]))
            token = issue_token(admin_b, "ecommerce")["token"]

            tenant = db.session.get(Tenant, sample_data["tenant_b"])
            changed = update_tenant(tenant, {"planId": sample_data["basic"]})
            assert "planId" in changed
            assert _active_product_ids(tenant.id) == {sample_data["educational"]}
            assert ProductToken.query.filter_by(token=token).first().is_revoked is True

    def test_upgrade_reactivates_without_duplicates(self, app, sample_data):
        with app.app_context():
            tenant = db.session.get(Tenant, sample_data["tenant_b"])
            update_tenant(tenant, {"planId": sample_data["basic"]})
            update_tenant(tenant, {"planId": sample_data["enterprise"]})
            assert _active_product_ids(tenant.id) == {
                sample_data["educational"],
                sample_data["ecommerce"],
                sample_data["telemedicine"],
            }
            assert TenantProduct.query.filter_by(
                tenant_id=tenant.id, product_id=sample_data["ecommerce"]
            ).count() == 1

    def test_sync_all_tenants(self, app, sample_data):
        with app.app_context():
            db.session.add(
                PlanProduct(
                    plan_id=sample_data["basic"],
                    product_id=sample_data["telemedicine"],
                    is_active=True,
                )
            )
            db.session.commit()

            stats = sync_all_tenants()
            assert stats == {
                "totalTenants": 2,
                "tenantsUpdated": 1,
                "productsActivated": 1,
                "productsDeactivated": 0,
            }
            assert sync_all_tenants()["tenantsUpdated"] == 0

    def test_sync_all_skips_inactive_tenants(self, app, sample_data):
        with app.app_context():
            tenant = db.session.get(Tenant, sample_data["tenant_a"])
            tenant.status = "INACTIVE"
            db.session.commit()
            assert sync_all_tenants()["totalTenants"] == 1

    def test_inactive_plan_product_is_deactivated(self, app, sample_data):
        with app.app_context():
            plan_product = PlanProduct.query.filter_by(
                plan_id=sample_data["premium"], product_id=sample_data["ecommerce"]
            ).first()
            plan_product.is_active = False
            db.session.commit()
            assert sync_all_tenants()["productsDeactivated"] == 1
            assert sample_data["ecommerce"] not in _active_product_ids(sample_data["tenant_b"])


class TestTenantLifecycle:
    def test_create_with_admin(self, app, sample_data):
        with app.app_context():
            tenant, admin = create_tenant_with_admin(
                _clinic_payload(sample_data["premium"], adminEmail="Admin@Clinica-Nova.test")
            )
            assert tenant.status == "ACTIVE"
            assert tenant.max_users == 50
            assert admin.role == "ADMIN"
            assert admin.email == "admin@clinica-nova.test"
            assert admin.tenant_id == tenant.id

    def test_missing_fields(self, app, sample_data):
        with app.app_context():
            with pytest.raises(ValidationError) as excinfo:
                create_tenant_with_admin({"name": "X"})
            assert "slug" in excinfo.value.extra["missing"]

    @pytest.mark.parametrize(
        "extra",
        [
            {"slug": "clinica-a"},
            {"slug": "Not A Slug"},
            {"adminEmail": "admin@clinica-a.test"},
            {"planId": 9999},
        ],
    )
    def test_rejected_payloads(self, app, sample_data, extra):
        with app.app_context():
            with pytest.raises(ValidationError):
                create_tenant_with_admin(_clinic_payload(sample_data["basic"], **extra))
            assert Tenant.query.filter_by(name="Clínica Nova").count() == 0

    def test_creation_is_atomic(self, app, sample_data, monkeypatch):
        def boom(_tenant):
            raise RuntimeError("sync failed")

        monkeypatch.setattr(tenant_service, "sync_tenant_products", boom)
        with app.app_context():
            with pytest.raises(RuntimeError):
                create_tenant_with_admin(_clinic_payload(sample_data["basic"]))
            assert Tenant.query.filter_by(slug="clinica-nova").first() is None
            assert User.query.filter_by(email="admin@clinica-nova.test").first() is None

    def test_delete_refused_with_regular_users(self, app, sample_data):
        with app.app_context():
            tenant = db.session.get(Tenant, sample_data["tenant_a"])
            with pytest.raises(InvariantError) as excinfo:
                delete_tenant(tenant)
            assert excinfo.value.extra["count"] == 1
            assert db.session.get(Tenant, sample_data["tenant_a"]) is not None

    def test_delete_takes_admins_and_activations(self, app, sample_data):
        with app.app_context():
            tenant = db.session.get(Tenant, sample_data["tenant_b"])
            delete_tenant(tenant)
            assert db.session.get(Tenant, sample_data["tenant_b"]) is None
            assert db.session.get(User, sample_data["admin_b"]) is None
            assert TenantProduct.query.filter_by(tenant_id=sample_data["tenant_b"]).count() == 0

    def test_invalid_status(self, app, sample_data):
        with app.app_context():
            tenant = db.session.get(Tenant, sample_data["tenant_a"])
            with pytest.raises(ValidationError):
                update_tenant(tenant, {"status": "PAUSED"})


class TestClinicRoutes:
    def test_super_admin_lists_all(self, super_client, sample_data):
        resp = super_client.get("/api/clinics")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["total"] == 2
        stats = {t["slug"]: t["stats"] for t in body["tenants"]}
        assert stats["clinica-a"]["totalUsers"] == 2
        assert stats["clinica-a"]["adminCount"] == 1

    def test_admin_lists_own(self, admin_client, sample_data):
        body = admin_client.get("/api/clinics").get_json()
        assert [t["slug"] for t in body["tenants"]] == ["clinica-a"]

    def test_user_cannot_list(self, user_client):
        assert user_client.get("/api/clinics").status_code == 403

    def test_create_clinic(self, app, super_client, sample_data):
        resp = super_client.post(
            "/api/clinics", json=_clinic_payload(sample_data["enterprise"], city="Recife")
        )
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["tenant"]["city"] == "Recife"
        assert body["admin"]["role"] == "ADMIN"
        with app.app_context():
            assert len(_active_product_ids(body["tenant"]["id"])) == 3
            assert AuditLog.query.filter_by(action="CREATE_TENANT").count() == 1

    def test_admin_cannot_create(self, admin_client, sample_data):
        resp = admin_client.post("/api/clinics", json=_clinic_payload(sample_data["basic"]))
        assert resp.status_code == 403

    def test_detail_includes_users(self, admin_client, sample_data):
        body = admin_client.get(f"/api/clinics/{sample_data['tenant_a']}").get_json()
        assert {u["email"] for u in body["users"]} == {
            "admin@clinica-a.test",
            "user@clinica-a.test",
        }

    def test_admin_cannot_see_other_clinic(self, admin_client, sample_data):
        assert admin_client.get(f"/api/clinics/{sample_data['tenant_b']}").status_code == 403

    def test_admin_updates_profile(self, admin_client, sample_data):
        resp = admin_client.put(
            f"/api/clinics/{sample_data['tenant_a']}", json={"city": "Olinda"}
        )
        assert resp.status_code == 200
        assert resp.get_json()["tenant"]["city"] == "Olinda"

    def test_admin_cannot_change_restricted_fields(self, admin_client, sample_data):
        resp = admin_client.put(
            f"/api/clinics/{sample_data['tenant_a']}", json={"status": "INACTIVE"}
        )
        assert resp.status_code == 403
        resp = admin_client.put(
            f"/api/clinics/{sample_data['tenant_a']}", json={"planId": sample_data["enterprise"]}
        )
        assert resp.status_code == 403

    def test_unchanged_restricted_field_is_allowed(self, admin_client, sample_data):
        resp = admin_client.put(
            f"/api/clinics/{sample_data['tenant_a']}",
            json={"slug": "clinica-a", "name": "Clínica A Renomeada"},
        )
        assert resp.status_code == 200

    def test_suspension_is_audited(self, app, super_client, sample_data):
        resp = super_client.put(
            f"/api/clinics/{sample_data['tenant_a']}", json={"status": "SUSPENDED"}
        )
        assert resp.status_code == 200
        with app.app_context():
            assert AuditLog.query.filter_by(action="SUSPEND_TENANT").count() == 1

    def test_delete_clinic_refused(self, super_client, sample_data):
        resp = super_client.delete(f"/api/clinics/{sample_data['tenant_a']}")
        assert resp.status_code == 400
        assert resp.get_json()["count"] == 1

    def test_delete_clinic(self, super_client, sample_data):
        resp = super_client.delete(f"/api/clinics/{sample_data['tenant_b']}")
        assert resp.status_code == 200
        assert super_client.get(f"/api/clinics/{sample_data['tenant_b']}").status_code == 404

    def test_sync_endpoint(self, super_client):
        resp = super_client.post("/api/clinics/sync-products")
        assert resp.status_code == 200
        assert resp.get_json()["stats"]["totalTenants"] == 2
        assert super_client.post("/api/admin/sync-products").status_code == 200


class TestTenantProductRoutes:
    def test_member_lists_products(self, user_client, sample_data):
        resp = user_client.get(f"/api/tenants/{sample_data['tenant_a']}/products")
        assert resp.status_code == 200
        products = {p["slug"]: p for p in resp.get_json()["products"]}
        assert products["educational"]["hasAccess"] is True

    def test_other_tenant_forbidden(self, user_client, sample_data):
        resp = user_client.get(f"/api/tenants/{sample_data['tenant_b']}/products")
        assert resp.status_code == 403

    def test_deactivate_revokes_tokens(self, app, super_client, sample_data):
        with app.app_context():
            user = AuthUser.from_model(db.session.get(User, sample_data["user_a"]))
            token = issue_token(user, "educational")["token"]
        resp = super_client.put(
            f"/api/tenants/{sample_data['tenant_a']}/products/{sample_data['educational']}",
            json={"isActive": False},
        )
        assert resp.status_code == 200
        assert resp.get_json()["tenantProduct"]["isActive"] is False
        with app.app_context():
            assert ProductToken.query.filter_by(token=token).first().is_revoked is True

    def test_unknown_activation(self, super_client, sample_data):
        resp = super_client.delete(
            f"/api/tenants/{sample_data['tenant_a']}/products/{sample_data['telemedicine']}"
        )
        assert resp.status_code == 404
