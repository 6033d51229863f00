"""
Tests for the dispatch orchestrator.

Tests cover:
- At most one message per (tenant, linked object, category)
- Consent and preference gating
- Provider failure isolation between recipients
- Retry after send_failed
- A redelivery racing an in-flight send never reaches the provider
- Messages without a linked object are never deduplicated
- Tenant and feature gating
"""

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from cart_notifier import dispatch
from cart_notifier.dispatch import (
    DispatchOutcome,
    DispatchResult,
    dispatch_commerce_event,
    find_existing_dispatch,
    resolve_recipient_phone,
)
from cart_notifier.errors import ValidationError
from cart_notifier.models import Message, MessageCategory, MessageStatus
from cart_notifier.optins import upsert_opt_in
from cart_notifier.schemas import CommerceEvent, RenderContext
from cart_notifier.storage import engine
from cart_notifier.tenants import configure_channel, deactivate_tenant


def cart_event(linked_object_id="chk_1", phone="+15551234567", category=MessageCategory.ABANDONED_CART):
    return CommerceEvent(
        category=category,
        linked_object_id=linked_object_id,
        recipient_phone_candidates=[phone],
        monetary_value=Decimal("49.99"),
        currency="USD",
        render_context=RenderContext(
            customer_name="Ada",
            item_count=2,
            total_price=Decimal("49.99"),
            currency="USD",
        ),
    )


@pytest.fixture
def provider(fake_provider):
    return fake_provider.client


class TestIdempotency:

    def test_second_dispatch_is_duplicate(self, db, tenant, opt_in, provider, fake_provider):
        first = dispatch_commerce_event(db, provider, tenant.id, cart_event())
        second = dispatch_commerce_event(db, provider, tenant.id, cart_event())

        assert first.outcome is DispatchOutcome.SENT
        assert second.outcome is DispatchOutcome.DUPLICATE
        assert db.query(Message).count() == 1
        assert len(fake_provider.requests) == 1

    def test_same_object_different_category_both_send(self, db, tenant, opt_in, provider):
        dispatch_commerce_event(db, provider, tenant.id, cart_event("order_1", category=MessageCategory.ORDER_CONFIRMATION))
        dispatch_commerce_event(db, provider, tenant.id, cart_event("order_1", category=MessageCategory.ORDER_SHIPPED))

        assert db.query(Message).count() == 2

    def test_send_failed_allows_retry(self, db, tenant, opt_in, provider, fake_provider):
        fake_provider.fail_all = True
        failed = dispatch_commerce_event(db, provider, tenant.id, cart_event())
        assert failed.outcome is DispatchOutcome.SEND_FAILED
        assert failed.reason == "Recipient phone number not in allowed list"

        fake_provider.fail_all = False
        retried = dispatch_commerce_event(db, provider, tenant.id, cart_event())

        assert retried.outcome is DispatchOutcome.SENT
        statuses = sorted(m.status for m in db.query(Message).all())
        assert statuses == [MessageStatus.SEND_FAILED.value, MessageStatus.SENT.value]

    def test_unique_index_rejects_second_live_message(self, db, tenant):
        for _ in range(2):
            db.add(Message(
                tenant_id=tenant.id,
                category=MessageCategory.ABANDONED_CART.value,
                recipient_phone="15551234567",
                content="hi",
                linked_object_id="chk_race",
                status=MessageStatus.SENT.value,
            ))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_null_linked_object_never_deduplicated(self, db, tenant):
        for _ in range(2):
            db.add(Message(
                tenant_id=tenant.id,
                category=MessageCategory.TEST.value,
                recipient_phone="15551234567",
                content="hi",
                linked_object_id=None,
                status=MessageStatus.SENT.value,
            ))
        db.commit()

        assert db.query(Message).count() == 2
        assert find_existing_dispatch(db, tenant.id, None, MessageCategory.TEST) is None

    def test_insert_conflict_is_duplicate_without_send(self, db, tenant, opt_in, provider, fake_provider, monkeypatch):
        # A live row committed between the existence check and the insert
        db.add(Message(
            tenant_id=tenant.id,
            category=MessageCategory.ABANDONED_CART.value,
            recipient_phone="15551234567",
            content="hi",
            linked_object_id="chk_1",
            status=MessageStatus.SENT.value,
        ))
        db.commit()
        monkeypatch.setattr(dispatch, "find_existing_dispatch", lambda *args: None)

        result = dispatch_commerce_event(db, provider, tenant.id, cart_event())

        assert result.outcome is DispatchOutcome.DUPLICATE
        assert fake_provider.requests == []
        assert db.query(Message).count() == 1


class TestConcurrentRedelivery:
    """A redelivered webhook dispatched while the first send is still in flight."""

    @pytest.fixture
    def second_session(self, client):
        if engine.dialect.name != "sqlite":
            pytest.skip("re-entrant dispatch needs a lock timeout instead of a blocking insert")
        other_engine = create_engine(
            engine.url,
            connect_args={"check_same_thread": False, "timeout": 0.1},
        )
        session = sessionmaker(bind=other_engine)()
        yield session
        session.close()
        other_engine.dispose()

    def test_provider_called_once(self, db, second_session, tenant, opt_in, fake_provider):
        inner_results = []

        class RedeliveringProvider:
            """Runs the duplicate dispatch from inside the first provider call."""

            def send_text(self, credentials, phone, text):
                inner_results.append(
                    dispatch_commerce_event(second_session, fake_provider.client, tenant.id, cart_event())
                )
                second_session.close()
                return fake_provider.client.send_text(credentials, phone, text)

        outer = dispatch_commerce_event(db, RedeliveringProvider(), tenant.id, cart_event())

        assert outer.outcome is DispatchOutcome.SENT
        assert len(inner_results) == 1
        assert inner_results[0].outcome in (DispatchOutcome.DUPLICATE, DispatchOutcome.STORE_BUSY)
        assert len(fake_provider.requests) == 1
        live = db.query(Message).filter(Message.status != MessageStatus.SEND_FAILED.value).all()
        assert [m.id for m in live] == [outer.message_id]
        assert db.query(Message).count() == 1

    def test_sync_send_reports_busy_store(self, client, tenant, fake_provider, monkeypatch):
        busy = DispatchResult(outcome=DispatchOutcome.STORE_BUSY, reason="store busy")
        monkeypatch.setattr(dispatch, "_claim", lambda db, message: busy)

        response = client.post(
            f"/api/tenants/{tenant.id}/test-message",
            json={"phone_number": "+15551234567"},
        )

        assert response.status_code == 503
        assert fake_provider.requests == []


class TestConsentGating:

    def test_no_opt_in(self, db, tenant, provider, fake_provider):
        result = dispatch_commerce_event(db, provider, tenant.id, cart_event())

        assert result.outcome is DispatchOutcome.NO_CONSENT
        assert db.query(Message).count() == 0
        assert fake_provider.requests == []

    def test_preference_off(self, db, tenant, provider, fake_provider):
        upsert_opt_in(
            db, tenant.id, "+15551234567",
            preferences={"abandoned_cart": False, "order_updates": True},
        )

        cart = dispatch_commerce_event(db, provider, tenant.id, cart_event())
        order = dispatch_commerce_event(
            db, provider, tenant.id, cart_event("order_1", category=MessageCategory.ORDER_CONFIRMATION)
        )

        assert cart.outcome is DispatchOutcome.NO_CONSENT
        assert order.outcome is DispatchOutcome.SENT
        assert [m.category for m in db.query(Message).all()] == ["order_confirmation"]

    def test_opted_out(self, client, db, tenant, opt_in, provider):
        client.delete(f"/api/tenants/{tenant.id}/optins/+15551234567")

        result = dispatch_commerce_event(db, provider, tenant.id, cart_event())

        assert result.outcome is DispatchOutcome.NO_CONSENT

    def test_first_usable_phone_candidate_wins(self, db, tenant, opt_in, provider, fake_provider):
        event = cart_event().model_copy(update={"recipient_phone_candidates": ["", "n/a", "+1 555 123 4567"]})

        result = dispatch_commerce_event(db, provider, tenant.id, event)

        assert result.outcome is DispatchOutcome.SENT
        assert fake_provider.requests[0]["to"] == "15551234567"

    def test_no_recipient(self, db, tenant, opt_in, provider):
        event = cart_event().model_copy(update={"recipient_phone_candidates": []})

        result = dispatch_commerce_event(db, provider, tenant.id, event)

        assert result.outcome is DispatchOutcome.NO_RECIPIENT


class TestFailureIsolation:

    def test_one_failing_recipient_does_not_affect_another(self, db, tenant, provider, fake_provider):
        upsert_opt_in(db, tenant.id, "+15550000001")
        upsert_opt_in(db, tenant.id, "+15550000002")
        fake_provider.fail_for = {"15550000001"}

        a = dispatch_commerce_event(db, provider, tenant.id, cart_event("chk_a", "+15550000001"))
        b = dispatch_commerce_event(db, provider, tenant.id, cart_event("chk_b", "+15550000002"))

        assert a.outcome is DispatchOutcome.SEND_FAILED
        assert b.outcome is DispatchOutcome.SENT
        by_key = {m.linked_object_id: m.status for m in db.query(Message).all()}
        assert by_key == {"chk_a": "send_failed", "chk_b": "sent"}

        db.refresh(tenant)
        assert tenant.messages_delivered == 1


class TestTenantGating:

    def test_feature_disabled(self, db, tenant, opt_in, provider):
        configure_channel(
            db, tenant.id, access_token="provider-token", sender_id="1234567890",
            abandoned_cart=False,
        )

        result = dispatch_commerce_event(db, provider, tenant.id, cart_event())

        assert result.outcome is DispatchOutcome.FEATURE_DISABLED
        assert db.query(Message).count() == 0

    def test_inactive_tenant(self, db, tenant, opt_in, provider):
        deactivate_tenant(db, tenant.id)

        result = dispatch_commerce_event(db, provider, tenant.id, cart_event())

        assert result.outcome is DispatchOutcome.TENANT_INACTIVE


class TestResolveRecipientPhone:

    def test_strips_formatting(self):
        assert resolve_recipient_phone(["+1 (555) 123-4567"]) == "15551234567"

    def test_raises_without_digits(self):
        with pytest.raises(ValidationError):
            resolve_recipient_phone(["", "none"])
