"""
Dispatch orchestrator.

Turns a normalized CommerceEvent into at most one outbound Message:

1. skip if a non-send_failed Message already exists for the idempotency key
   (tenant, linked_object_id, category)
2. resolve the recipient phone from the event's candidates
3. require an active opt-in with the category's preference
4. render the text
5. insert the Message uncommitted, which claims the idempotency key
6. send through the provider client and commit the Message as sent or
   send_failed

The existence check in step 1 is backed by the partial unique index on
messages. A concurrent duplicate that loses the insert in step 5 is treated
exactly like step 1 finding the row, and the provider is never called for it.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from cart_notifier.errors import ConsentAbsent, NotifierError, ProviderError, StoreBusy, ValidationError
from cart_notifier.metrics import record_dispatch_outcome
from cart_notifier.models import Message, MessageCategory, MessageStatus, OptIn, Tenant
from cart_notifier.optins import EngagementKind, Preference, find_active_opt_in, record_engagement
from cart_notifier.provider import ProviderClient, ProviderCredentials
from cart_notifier.schemas import CommerceEvent, RenderContext
from cart_notifier.stats import increment_counter
from cart_notifier.storage import SessionLocal
from cart_notifier.templates import describe_template_send, render_message
from cart_notifier.tenants import feature_enabled, get_tenant
from cart_notifier.utils import normalize_phone
from cart_notifier.workflow import trigger_workflow

logger = logging.getLogger(__name__)


class DispatchOutcome(str, enum.Enum):
    SENT = "sent"
    SEND_FAILED = "send_failed"
    DUPLICATE = "duplicate"
    NO_RECIPIENT = "no_recipient"
    NO_CONSENT = "no_consent"
    FEATURE_DISABLED = "feature_disabled"
    TENANT_INACTIVE = "tenant_inactive"
    STORE_BUSY = "store_busy"


@dataclass(frozen=True)
class DispatchResult:
    outcome: DispatchOutcome
    message_id: Optional[int] = None
    provider_message_id: Optional[str] = None
    reason: Optional[str] = None


CATEGORY_PREFERENCES = {
    MessageCategory.ABANDONED_CART: Preference.ABANDONED_CART,
    MessageCategory.ORDER_CONFIRMATION: Preference.ORDER_UPDATES,
    MessageCategory.ORDER_SHIPPED: Preference.ORDER_UPDATES,
    MessageCategory.ORDER_DELIVERED: Preference.ORDER_UPDATES,
    MessageCategory.PROMOTION: Preference.PROMOTIONS,
}

WORKFLOWS = {
    MessageCategory.ABANDONED_CART: "abandoned-cart",
    MessageCategory.ORDER_CONFIRMATION: "order-confirmation",
    MessageCategory.ORDER_SHIPPED: "order-shipped",
    MessageCategory.ORDER_DELIVERED: "order-delivered",
}


def find_existing_dispatch(
    db: Session,
    tenant_id: int,
    linked_object_id: Optional[str],
    category: MessageCategory,
) -> Optional[Message]:
    """Non-failed Message for the idempotency key; a NULL key never matches."""
    if not linked_object_id:
        return None
    return (
        db.query(Message)
        .filter(
            Message.tenant_id == tenant_id,
            Message.linked_object_id == linked_object_id,
            Message.category == MessageCategory(category).value,
            Message.status != MessageStatus.SEND_FAILED.value,
        )
        .first()
    )


def resolve_recipient_phone(candidates: list[str]) -> str:
    """
    First candidate that still has digits after normalization.

    Raises:
        ValidationError: if no candidate yields a phone number
    """
    for candidate in candidates:
        phone = normalize_phone(candidate)
        if phone:
            return phone
    raise ValidationError("no recipient phone number on event")


def _context_with_opt_in(context: RenderContext, opt_in: OptIn) -> RenderContext:
    # The opt-in record fills in identity the event did not carry
    updates = {}
    if not context.customer_name and opt_in.customer_name:
        updates["customer_name"] = opt_in.customer_name
    if not context.customer_email and opt_in.customer_email:
        updates["customer_email"] = opt_in.customer_email
    return context.model_copy(update=updates) if updates else context


def _claim(db: Session, message: Message) -> Optional[DispatchResult]:
    """
    Insert the Message uncommitted so its idempotency key is held before any
    provider call. Returns a skip result when another writer holds the key.
    """
    message.status = MessageStatus.SENDING.value
    db.add(message)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.warning(
            f"Duplicate dispatch lost insert race: tenant={message.tenant_id}, "
            f"linked_object_id={message.linked_object_id}, category={message.category}"
        )
        return DispatchResult(outcome=DispatchOutcome.DUPLICATE, reason="concurrent duplicate")
    except OperationalError as e:
        # SQLite serializes writers; a lock timeout means another dispatch
        # holds the write lock and may be sending this very message
        if "locked" not in str(e.orig):
            raise
        db.rollback()
        logger.warning(
            f"Dispatch not claimed, store busy: tenant={message.tenant_id}, "
            f"linked_object_id={message.linked_object_id}, category={message.category}"
        )
        return DispatchResult(outcome=DispatchOutcome.STORE_BUSY, reason="store busy")
    return None


def _send_and_record(
    db: Session,
    message: Message,
    send: Callable[[], str],
    counted: bool = True,
) -> DispatchResult:
    """
    Claim the idempotency key, run the provider call, then commit the terminal
    state in the same transaction as the claim.

    The provider is never called for a Message whose insert did not succeed,
    and nothing is committed until the status is sent or send_failed.
    ``counted`` controls whether a successful send moves the tenant and opt-in
    counters.
    """
    skipped = _claim(db, message)
    if skipped is not None:
        return skipped

    try:
        provider_message_id = send()
    except ProviderError as e:
        message.status = MessageStatus.SEND_FAILED.value
        message.failure_reason = e.reason
        message.failed_at = datetime.now(timezone.utc)
        logger.warning(
            f"Send failed: tenant={message.tenant_id}, category={message.category}, reason={e.reason}"
        )
    else:
        message.status = MessageStatus.SENT.value
        message.provider_message_id = provider_message_id
        message.sent_at = datetime.now(timezone.utc)

    if counted and message.status == MessageStatus.SENT.value:
        increment_counter(db, message.tenant_id, "messages_delivered")
        if message.opt_in_id is not None:
            record_engagement(db, message.opt_in_id, EngagementKind.RECEIVED)
    db.commit()

    outcome = DispatchOutcome(message.status)
    logger.info(f"Message {message.id} recorded as {outcome.value}")
    return DispatchResult(
        outcome=outcome,
        message_id=message.id,
        provider_message_id=message.provider_message_id,
        reason=message.failure_reason,
    )


def _raise_for_sync_outcome(result: DispatchResult) -> None:
    if result.outcome is DispatchOutcome.SEND_FAILED:
        raise ProviderError(result.reason or "send failed")
    if result.outcome is not DispatchOutcome.SENT:
        raise StoreBusy(f"message not recorded: {result.reason}")


def _skip(category: MessageCategory, outcome: DispatchOutcome, reason: str) -> DispatchResult:
    logger.info(f"Dispatch skipped ({outcome.value}): category={category.value}, {reason}")
    record_dispatch_outcome(category.value, outcome.value)
    return DispatchResult(outcome=outcome, reason=reason)


def dispatch_commerce_event(
    db: Session,
    provider: ProviderClient,
    tenant_id: int,
    event: CommerceEvent,
) -> DispatchResult:
    """
    Send at most one message for a commerce event.

    Skips (duplicate, no recipient, no consent, disabled feature, busy store)
    are normal outcomes, not exceptions. A provider failure is recorded as a send_failed
    Message and reported in the result; it is never retried here.

    Raises:
        NotFound: if the tenant does not exist
    """
    category = MessageCategory(event.category)
    tenant = get_tenant(db, tenant_id)

    if not tenant.is_active or not tenant.channel_configured:
        return _skip(category, DispatchOutcome.TENANT_INACTIVE, f"tenant {tenant_id} not dispatchable")
    if not feature_enabled(tenant, category):
        return _skip(category, DispatchOutcome.FEATURE_DISABLED, f"feature off for tenant {tenant_id}")

    existing = find_existing_dispatch(db, tenant_id, event.linked_object_id, category)
    if existing is not None:
        return _skip(
            category,
            DispatchOutcome.DUPLICATE,
            f"message {existing.id} already covers {event.linked_object_id}",
        )

    try:
        phone = resolve_recipient_phone(event.recipient_phone_candidates)
    except ValidationError as e:
        return _skip(category, DispatchOutcome.NO_RECIPIENT, str(e))

    opt_in = find_active_opt_in(db, tenant_id, phone, CATEGORY_PREFERENCES[category])
    if opt_in is None:
        return _skip(category, DispatchOutcome.NO_CONSENT, f"no active opt-in for {category.value}")

    content = render_message(category, _context_with_opt_in(event.render_context, opt_in))
    credentials = ProviderCredentials.for_tenant(tenant)

    message = Message(
        tenant_id=tenant_id,
        opt_in_id=opt_in.id,
        category=category.value,
        provider_sender_id=credentials.sender_id,
        recipient_phone=phone,
        content=content,
        linked_object_id=event.linked_object_id,
        monetary_value=event.monetary_value,
        currency=event.currency,
        status=MessageStatus.CREATED.value,
    )
    result = _send_and_record(db, message, lambda: provider.send_text(credentials, phone, content))
    record_dispatch_outcome(category.value, result.outcome.value)

    if result.outcome is DispatchOutcome.SENT and category in WORKFLOWS:
        trigger_workflow(WORKFLOWS[category], {
            "tenant_id": tenant_id,
            "category": category.value,
            "linked_object_id": event.linked_object_id,
            "provider_message_id": result.provider_message_id,
            "customer_id": event.customer_id or opt_in.customer_id,
            "monetary_value": str(event.monetary_value) if event.monetary_value is not None else None,
            "currency": event.currency,
        })
    return result


def run_dispatch(provider: ProviderClient, tenant_id: int, event: CommerceEvent) -> Optional[DispatchResult]:
    """
    Background-task entry point: one session per event, errors contained.

    Runs after the webhook response has been sent, so nothing raised here can
    reach the webhook sender.
    """
    db = SessionLocal()
    try:
        return dispatch_commerce_event(db, provider, tenant_id, event)
    except NotifierError as e:
        db.rollback()
        logger.error(f"Dispatch dropped for tenant {tenant_id}, object {event.linked_object_id}: {e}")
    except Exception:
        db.rollback()
        logger.exception(f"Unexpected dispatch failure for tenant {tenant_id}, object {event.linked_object_id}")
    finally:
        db.close()
    return None


def _require_channel(tenant: Tenant) -> ProviderCredentials:
    if not tenant.is_active or not tenant.channel_configured:
        raise ValidationError(f"messaging channel not configured for tenant {tenant.id}")
    return ProviderCredentials.for_tenant(tenant)


def send_test_message(
    db: Session,
    provider: ProviderClient,
    tenant_id: int,
    phone_number: str,
    text: Optional[str] = None,
) -> Message:
    """
    Synchronous diagnostic send. Not consent-gated, never deduplicated and not
    counted in tenant statistics.

    Raises:
        ValidationError: bad phone number or unconfigured channel
        ProviderError: after the send_failed Message has been persisted
        StoreBusy: if the Message could not be written
    """
    tenant = get_tenant(db, tenant_id)
    credentials = _require_channel(tenant)
    phone = resolve_recipient_phone([phone_number])
    content = text or render_message(MessageCategory.TEST, RenderContext(store_name=tenant.name))

    message = Message(
        tenant_id=tenant_id,
        opt_in_id=None,
        category=MessageCategory.TEST.value,
        provider_sender_id=credentials.sender_id,
        recipient_phone=phone,
        content=content,
        status=MessageStatus.CREATED.value,
    )
    result = _send_and_record(
        db,
        message,
        lambda: provider.send_text(credentials, phone, content),
        counted=False,
    )
    record_dispatch_outcome(MessageCategory.TEST.value, result.outcome.value)
    _raise_for_sync_outcome(result)
    db.refresh(message)
    return message


def send_promotion(
    db: Session,
    provider: ProviderClient,
    tenant_id: int,
    phone_number: str,
    template_name: str,
    parameters: Optional[list[str]] = None,
) -> Message:
    """
    Synchronous promotional send through a provider template.

    Raises:
        ValidationError: bad phone number or unconfigured channel
        ConsentAbsent: recipient has not opted in to promotions
        ProviderError: after the send_failed Message has been persisted
        StoreBusy: if the Message could not be written
    """
    tenant = get_tenant(db, tenant_id)
    credentials = _require_channel(tenant)
    phone = resolve_recipient_phone([phone_number])
    opt_in = find_active_opt_in(db, tenant_id, phone, Preference.PROMOTIONS)
    if opt_in is None:
        raise ConsentAbsent(f"recipient has not opted in to promotions for tenant {tenant_id}")

    parameters = parameters or []
    message = Message(
        tenant_id=tenant_id,
        opt_in_id=opt_in.id,
        category=MessageCategory.PROMOTION.value,
        provider_sender_id=credentials.sender_id,
        recipient_phone=phone,
        template_name=template_name,
        content=describe_template_send(template_name, parameters),
        status=MessageStatus.CREATED.value,
    )
    result = _send_and_record(
        db,
        message,
        lambda: provider.send_template(credentials, phone, template_name, parameters),
    )
    record_dispatch_outcome(MessageCategory.PROMOTION.value, result.outcome.value)
    _raise_for_sync_outcome(result)
    db.refresh(message)
    return message
