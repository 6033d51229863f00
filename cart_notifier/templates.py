"""
Message templates.

Pure functions from (category, RenderContext) to message text. No I/O and no
clock reads: identical inputs always render byte-identical text, which the
dispatch idempotency tests rely on.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from cart_notifier.errors import ValidationError
from cart_notifier.models import MessageCategory
from cart_notifier.schemas import RenderContext

GENERIC_GREETING_NAME = "there"
_CENTS = Decimal("0.01")


def display_name(context: RenderContext) -> str:
    """Explicit name, else the email local-part, else a generic greeting."""
    if context.customer_name and context.customer_name.strip():
        return context.customer_name.strip()
    if context.customer_email and "@" in context.customer_email:
        local_part = context.customer_email.split("@", 1)[0].strip()
        if local_part:
            return local_part
    return GENERIC_GREETING_NAME


def pluralize(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def format_money(amount: Optional[Decimal], currency: Optional[str]) -> Optional[str]:
    """Render ``USD 49.99``; None when the amount is unknown."""
    if amount is None:
        return None
    quantized = Decimal(amount).quantize(_CENTS, rounding=ROUND_HALF_UP)
    if currency:
        return f"{currency.upper()} {quantized}"
    return str(quantized)


def _your_order(context: RenderContext) -> str:
    if context.order_number:
        return f"Your order #{context.order_number}"
    return "Your order"


def _abandoned_cart(context: RenderContext) -> str:
    items = pluralize(context.item_count, "item")
    total = format_money(context.total_price, context.currency)
    lines = [f"Hi {display_name(context)}! 👋", ""]
    if total:
        lines.append(f"You left {items} in your cart worth {total}.")
    else:
        lines.append(f"You left {items} in your cart.")
    lines += ["", "Complete your purchase now and get them before they're gone!"]
    if context.checkout_url:
        lines += ["", f"🛒 Complete Order: {context.checkout_url}"]
    lines += ["", "Need help? Just reply to this message!"]
    return "\n".join(lines)


def _order_confirmation(context: RenderContext) -> str:
    lines = [
        f"Hi {display_name(context)}! ✅",
        "",
        f"{_your_order(context)} has been confirmed!",
        "",
    ]
    total = format_money(context.total_price, context.currency)
    if total:
        lines.append(f"📦 Order Total: {total}")
    lines += [
        "🚚 We'll send you tracking info once your order ships.",
        "",
        "Thanks for shopping with us! If you have any questions, just reply to this message.",
    ]
    return "\n".join(lines)


def _order_shipped(context: RenderContext) -> str:
    lines = [
        f"Hi {display_name(context)}! 🚚",
        "",
        f"{_your_order(context)} is on its way!",
    ]
    if context.tracking_number:
        lines += ["", f"Tracking number: {context.tracking_number}"]
    if context.tracking_url:
        lines.append(f"Track it here: {context.tracking_url}")
    lines += ["", "Questions? Just reply to this message."]
    return "\n".join(lines)


def _order_delivered(context: RenderContext) -> str:
    return "\n".join([
        f"Hi {display_name(context)}! 📬",
        "",
        f"{_your_order(context)} has been delivered.",
        "",
        "We hope you love it! Reply to this message if anything isn't right.",
    ])


def _test(context: RenderContext) -> str:
    store = context.store_name or "your store"
    return "\n".join([
        f"🧪 Test message from {store}!",
        "",
        "This is a test to verify your messaging integration is working correctly.",
    ])


_RENDERERS: dict[MessageCategory, Callable[[RenderContext], str]] = {
    MessageCategory.ABANDONED_CART: _abandoned_cart,
    MessageCategory.ORDER_CONFIRMATION: _order_confirmation,
    MessageCategory.ORDER_SHIPPED: _order_shipped,
    MessageCategory.ORDER_DELIVERED: _order_delivered,
    MessageCategory.TEST: _test,
}


def render_message(category: MessageCategory, context: RenderContext) -> str:
    """
    Render the text body for a message category.

    Raises:
        ValidationError: for categories sent as provider templates (promotion)
    """
    renderer = _RENDERERS.get(MessageCategory(category))
    if renderer is None:
        raise ValidationError(f"no text template for category {category}")
    return renderer(context)


def describe_template_send(template_name: str, parameters: list[str]) -> str:
    """Content recorded on a Message sent as a provider template."""
    if not parameters:
        return f"[template:{template_name}]"
    return f"[template:{template_name}] " + " | ".join(parameters)
