"""
Webhook payload normalization.

Each known commerce payload shape has its own pydantic model and an explicit
mapping into CommerceEvent. Provider callbacks are flattened into StatusCallback
and InboundMessage events. Anything that does not fit a known shape raises
ValidationError instead of reading undefined fields.
"""

import logging
from typing import Callable, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ValidationError as PydanticValidationError

from cart_notifier.errors import ValidationError
from cart_notifier.models import MessageCategory, MessageStatus
from cart_notifier.schemas import (
    Change,
    CheckoutPayload,
    CommerceEvent,
    Entry,
    FulfillmentPayload,
    InboundItem,
    InboundMessage,
    OrderPayload,
    ProviderWebhookPayload,
    RenderContext,
    StatusCallback,
    StatusItem,
)

logger = logging.getLogger(__name__)

ProviderEvent = Union[StatusCallback, InboundMessage]

# Provider status strings we reconcile; anything else is rejected per item
PROVIDER_STATUSES = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "failed": MessageStatus.FAILED,
}


def _phone_candidates(payload) -> list[str]:
    """Billing address, shipping address, customer profile, then top-level phone."""
    candidates = []
    for address in (getattr(payload, "billing_address", None), getattr(payload, "shipping_address", None)):
        if address is not None and address.phone:
            candidates.append(address.phone)
    destination = getattr(payload, "destination", None)
    if destination is not None and destination.phone:
        candidates.append(destination.phone)
    if payload.customer is not None and payload.customer.phone:
        candidates.append(payload.customer.phone)
    if getattr(payload, "phone", None):
        candidates.append(payload.phone)
    return candidates


def _customer_name(payload) -> Optional[str]:
    for source in (getattr(payload, "billing_address", None), getattr(payload, "destination", None), payload.customer):
        if source is not None and source.first_name:
            return source.first_name
    return None


def _customer_email(payload) -> Optional[str]:
    if payload.email:
        return payload.email
    if payload.customer is not None:
        return payload.customer.email
    return None


def _customer_id(payload) -> Optional[str]:
    if payload.customer is not None and payload.customer.id is not None:
        return str(payload.customer.id)
    return None


def _checkout_event(payload: CheckoutPayload) -> CommerceEvent:
    currency = payload.currency or payload.presentment_currency
    return CommerceEvent(
        category=MessageCategory.ABANDONED_CART,
        linked_object_id=str(payload.id),
        recipient_phone_candidates=_phone_candidates(payload),
        monetary_value=payload.total_price,
        currency=currency,
        customer_id=_customer_id(payload),
        render_context=RenderContext(
            customer_name=_customer_name(payload),
            customer_email=_customer_email(payload),
            item_count=len(payload.line_items),
            total_price=payload.total_price,
            currency=currency,
            checkout_url=payload.abandoned_checkout_url,
        ),
    )


def _order_number(value) -> Optional[str]:
    if value is None:
        return None
    return str(value).lstrip("#") or None


def _order_event(payload: OrderPayload) -> CommerceEvent:
    currency = payload.currency or payload.presentment_currency
    return CommerceEvent(
        category=MessageCategory.ORDER_CONFIRMATION,
        linked_object_id=str(payload.id),
        recipient_phone_candidates=_phone_candidates(payload),
        monetary_value=payload.total_price,
        currency=currency,
        customer_id=_customer_id(payload),
        render_context=RenderContext(
            customer_name=_customer_name(payload),
            customer_email=_customer_email(payload),
            item_count=len(payload.line_items),
            total_price=payload.total_price,
            currency=currency,
            order_number=_order_number(payload.order_number or payload.name),
        ),
    )


def _fulfillment_event(payload: FulfillmentPayload) -> CommerceEvent:
    delivered = (payload.shipment_status or "").lower() == "delivered"
    return CommerceEvent(
        category=MessageCategory.ORDER_DELIVERED if delivered else MessageCategory.ORDER_SHIPPED,
        linked_object_id=str(payload.order_id),
        recipient_phone_candidates=_phone_candidates(payload),
        customer_id=_customer_id(payload),
        render_context=RenderContext(
            customer_name=_customer_name(payload),
            customer_email=_customer_email(payload),
            item_count=len(payload.line_items),
            order_number=_order_number(payload.name),
            tracking_number=payload.tracking_number,
            tracking_url=payload.tracking_url,
        ),
    )


# topic -> (payload shape, mapping function)
COMMERCE_TOPICS: dict[str, tuple[type[BaseModel], Callable[..., CommerceEvent]]] = {
    "checkouts/abandoned": (CheckoutPayload, _checkout_event),
    "orders/create": (OrderPayload, _order_event),
    "fulfillments/update": (FulfillmentPayload, _fulfillment_event),
}


def normalize_commerce_event(topic: str, body: object) -> CommerceEvent:
    """
    Map a commerce webhook body of a known topic into a CommerceEvent.

    Raises:
        ValidationError: unknown topic, or body does not fit the topic's shape
    """
    if topic not in COMMERCE_TOPICS:
        raise ValidationError(f"unknown commerce topic: {topic}")
    if not isinstance(body, dict):
        raise ValidationError("commerce payload must be a JSON object")

    shape, mapper = COMMERCE_TOPICS[topic]
    try:
        payload = shape.model_validate(body)
        return mapper(payload)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid {topic} payload: {e.error_count()} error(s)") from e


def resolve_shop_domain(header_domain: Optional[str], body: object) -> Optional[str]:
    """Header first, then payload shop_domain, then the checkout URL host."""
    if header_domain:
        return header_domain.strip().lower()
    if not isinstance(body, dict):
        return None
    if body.get("shop_domain"):
        return str(body["shop_domain"]).strip().lower()
    checkout_url = body.get("abandoned_checkout_url")
    if isinstance(checkout_url, str):
        host = urlparse(checkout_url).hostname
        if host:
            return host.lower()
    return None


def _timestamp_seconds(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"invalid timestamp: {value!r}") from e


def _status_event(raw: object) -> StatusCallback:
    try:
        item = StatusItem.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid status item: {e.error_count()} error(s)") from e
    status = PROVIDER_STATUSES.get(item.status.lower())
    if status is None:
        raise ValidationError(f"unsupported provider status: {item.status}")
    failure_reason = None
    if status is MessageStatus.FAILED and item.errors:
        first = item.errors[0]
        failure_reason = first.title or first.message or (str(first.code) if first.code else None)
    return StatusCallback(
        provider_message_id=item.id,
        new_status=status,
        timestamp_seconds=_timestamp_seconds(item.timestamp),
        failure_reason=failure_reason,
    )


def _inbound_event(raw: object) -> InboundMessage:
    try:
        item = InboundItem.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid inbound message: {e.error_count()} error(s)") from e
    return InboundMessage(
        inbound_from=item.from_number,
        inbound_text=item.text.body if item.text else "",
        provider_message_id=item.id,
    )


def _item_id(raw: object) -> object:
    return raw.get("id") if isinstance(raw, dict) else None


def _validated(shape: type[BaseModel], raw: object, label: str, rejected: list[str]) -> Optional[BaseModel]:
    try:
        return shape.model_validate(raw)
    except PydanticValidationError as e:
        reason = f"invalid {label}: {e.error_count()} error(s)"
        logger.warning(f"Dropping provider {label} {_item_id(raw)}: {reason}")
        rejected.append(reason)
        return None


def parse_provider_callbacks(body: object) -> tuple[list[ProviderEvent], list[str]]:
    """
    Flatten every entry/change of a provider webhook into internal events.

    Entries, changes and items are validated one at a time, so a malformed
    one (null, a string, a change without a value) is rejected on its own.

    Returns:
        (events, rejected) where rejected holds one reason per entry, change or
        item that could not be normalized; those are skipped without affecting
        the rest.

    Raises:
        ValidationError: if the envelope itself has an unknown shape
    """
    try:
        envelope = ProviderWebhookPayload.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(f"invalid provider payload: {e.error_count()} error(s)") from e

    events: list[ProviderEvent] = []
    rejected: list[str] = []
    for raw_entry in envelope.entry:
        entry = _validated(Entry, raw_entry, "entry", rejected)
        if entry is None:
            continue
        for raw_change in entry.changes:
            change = _validated(Change, raw_change, "change", rejected)
            if change is None:
                continue
            for raw_status in change.value.statuses:
                try:
                    events.append(_status_event(raw_status))
                except ValidationError as e:
                    logger.warning(f"Dropping provider status {_item_id(raw_status)}: {e}")
                    rejected.append(str(e))
            for raw_message in change.value.messages:
                try:
                    events.append(_inbound_event(raw_message))
                except ValidationError as e:
                    logger.warning(f"Dropping inbound message {_item_id(raw_message)}: {e}")
                    rejected.append(str(e))
    return events, rejected
