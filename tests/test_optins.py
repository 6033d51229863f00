"""
Tests for the opt-in endpoints.

Tests cover:
- Create, update and reactivate (no duplicate records)
- total_opt_ins moves only on create or reactivate
- Preference updates and opt-out
- Validation errors (422) and unknown records (404)
- Persistent insert conflicts surface as StoreBusy
"""

import pytest
from sqlalchemy.exc import IntegrityError

from cart_notifier.errors import StoreBusy
from cart_notifier.models import OptIn
from cart_notifier.optins import upsert_opt_in



def create_opt_in(client, tenant_id, phone="+15551234567", **fields):
    response = client.post(f"/api/tenants/{tenant_id}/optins", json={"phone_number": phone, **fields})
    assert response.status_code == 200
    return response.json()


def total_opt_ins(client, tenant_id) -> int:
    return client.get(f"/api/tenants/{tenant_id}/stats").json()["total_opt_ins"]


class TestCreateOptIn:

    def test_create_with_defaults(self, client, tenant):
        data = create_opt_in(client, tenant.id, "+1 (555) 123-4567")

        assert data["phone_number"] == "15551234567"
        assert data["customer_id"] == "guest_15551234567"
        assert data["source"] == "widget"
        assert data["is_active"] is True
        assert data["preferences"] == {
            "abandoned_cart": True,
            "order_updates": True,
            "promotions": False,
        }
        assert total_opt_ins(client, tenant.id) == 1

    def test_repeat_opt_in_updates_same_record(self, client, db, tenant):
        first = create_opt_in(client, tenant.id)
        second = create_opt_in(client, tenant.id, "15551234567", customer_id="cust_42", source="checkout")

        assert second["id"] == first["id"]
        assert second["customer_id"] == "cust_42"
        assert second["source"] == "checkout"
        assert db.query(OptIn).count() == 1
        assert total_opt_ins(client, tenant.id) == 1

    def test_reactivation_counts_again(self, client, tenant):
        create_opt_in(client, tenant.id)
        client.delete(f"/api/tenants/{tenant.id}/optins/15551234567")

        data = create_opt_in(client, tenant.id)

        assert data["is_active"] is True
        assert total_opt_ins(client, tenant.id) == 2

    def test_phone_without_digits_rejected(self, client, tenant):
        response = client.post(f"/api/tenants/{tenant.id}/optins", json={"phone_number": "n/a"})

        assert response.status_code == 422

    def test_unknown_source_rejected(self, client, tenant):
        response = client.post(
            f"/api/tenants/{tenant.id}/optins",
            json={"phone_number": "15551234567", "source": "fax"},
        )

        assert response.status_code == 422

    def test_unknown_tenant(self, client, tenant):
        response = client.post("/api/tenants/9999/optins", json={"phone_number": "15551234567"})

        assert response.status_code == 404


class TestPreferencesAndOptOut:

    def test_partial_preference_update(self, client, tenant, opt_in):
        response = client.patch(
            f"/api/tenants/{tenant.id}/optins/15551234567",
            json={"promotions": True},
        )

        assert response.status_code == 200
        assert response.json()["preferences"] == {
            "abandoned_cart": True,
            "order_updates": True,
            "promotions": True,
        }

    def test_opt_out_keeps_record(self, client, db, tenant, opt_in):
        response = client.delete(f"/api/tenants/{tenant.id}/optins/15551234567")

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert db.query(OptIn).count() == 1
        # Opting out never decrements the lifetime counter
        assert total_opt_ins(client, tenant.id) == 1

    def test_unknown_phone(self, client, tenant):
        response = client.patch(f"/api/tenants/{tenant.id}/optins/15559999999", json={"promotions": True})

        assert response.status_code == 404


class TestConcurrentInsert:

    def test_persistent_conflict_raises_store_busy(self, db, tenant, monkeypatch):
        real_flush = db.flush

        def always_conflicts(*args, **kwargs):
            if db.new:
                raise IntegrityError("INSERT INTO opt_ins", {}, Exception("UNIQUE constraint failed"))
            return real_flush(*args, **kwargs)

        monkeypatch.setattr(db, "flush", always_conflicts)

        with pytest.raises(StoreBusy):
            upsert_opt_in(db, tenant.id, "+15551234567")

        monkeypatch.undo()
        assert db.query(OptIn).count() == 0
