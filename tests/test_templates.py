"""
Tests for message rendering.
"""

from decimal import Decimal

import pytest

from cart_notifier.errors import ValidationError
from cart_notifier.models import MessageCategory
from cart_notifier.schemas import RenderContext
from cart_notifier.templates import (
    describe_template_send,
    display_name,
    format_money,
    pluralize,
    render_message,
)


@pytest.fixture
def cart_context():
    return RenderContext(
        customer_name="Ada",
        item_count=2,
        total_price=Decimal("49.99"),
        currency="usd",
        checkout_url="https://test-store.myshopify.com/checkouts/chk_1",
    )


class TestDisplayName:

    def test_explicit_name(self):
        assert display_name(RenderContext(customer_name=" Ada ", customer_email="x@example.com")) == "Ada"

    def test_email_local_part(self):
        assert display_name(RenderContext(customer_email="grace.hopper@example.com")) == "grace.hopper"

    def test_generic_fallback(self):
        assert display_name(RenderContext()) == "there"
        assert display_name(RenderContext(customer_name="  ", customer_email="not-an-email")) == "there"


class TestFormatting:

    def test_pluralize(self):
        assert pluralize(1, "item") == "1 item"
        assert pluralize(2, "item") == "2 items"
        assert pluralize(0, "item") == "0 items"

    def test_format_money(self):
        assert format_money(Decimal("49.99"), "usd") == "USD 49.99"
        assert format_money(Decimal("5"), "EUR") == "EUR 5.00"
        assert format_money(Decimal("1.005"), None) == "1.01"
        assert format_money(None, "USD") is None


class TestRenderMessage:

    def test_abandoned_cart(self, cart_context):
        text = render_message(MessageCategory.ABANDONED_CART, cart_context)

        assert text.startswith("Hi Ada!")
        assert "You left 2 items in your cart worth USD 49.99." in text
        assert "https://test-store.myshopify.com/checkouts/chk_1" in text

    def test_rendering_is_deterministic(self, cart_context):
        first = render_message(MessageCategory.ABANDONED_CART, cart_context)
        second = render_message(MessageCategory.ABANDONED_CART, cart_context)

        assert first == second

    def test_single_item_without_total(self):
        text = render_message(MessageCategory.ABANDONED_CART, RenderContext(item_count=1))

        assert "Hi there!" in text
        assert "You left 1 item in your cart." in text

    def test_order_confirmation(self):
        context = RenderContext(
            customer_name="Ada", order_number="1001", total_price=Decimal("120"), currency="EUR"
        )
        text = render_message(MessageCategory.ORDER_CONFIRMATION, context)

        assert "Your order #1001 has been confirmed!" in text
        assert "EUR 120.00" in text

    def test_order_shipped_without_tracking(self):
        text = render_message(MessageCategory.ORDER_SHIPPED, RenderContext(customer_name="Ada"))

        assert "Your order is on its way!" in text
        assert "Tracking" not in text

    def test_order_delivered(self):
        text = render_message(MessageCategory.ORDER_DELIVERED, RenderContext(order_number="7"))

        assert "Your order #7 has been delivered." in text

    def test_test_message_names_store(self):
        text = render_message(MessageCategory.TEST, RenderContext(store_name="Test Store"))

        assert text.startswith("🧪 Test message from Test Store!")

    def test_promotion_has_no_text_template(self):
        with pytest.raises(ValidationError):
            render_message(MessageCategory.PROMOTION, RenderContext())


def test_describe_template_send():
    assert describe_template_send("spring_sale", []) == "[template:spring_sale]"
    assert describe_template_send("spring_sale", ["Ada", "20%"]) == "[template:spring_sale] Ada | 20%"
