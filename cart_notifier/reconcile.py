"""
Delivery reconciler.

Applies provider status callbacks and click/conversion attribution onto
Message records. Every change is a conditional UPDATE, so duplicate, late or
out-of-order callbacks are harmless:

- sent < delivered < read: a callback only ever moves a message up this rank
- failed is terminal and overrides any prior status
- each status timestamp is written once, even when the status does not move
"""

import enum
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from cart_notifier.errors import NotFound, NotifierError
from cart_notifier.metrics import record_provider_callback
from cart_notifier.models import Message, MessageStatus
from cart_notifier.normalize import ProviderEvent
from cart_notifier.optins import EngagementKind, record_engagement
from cart_notifier.schemas import InboundMessage, StatusCallback
from cart_notifier.stats import increment_counter
from cart_notifier.storage import SessionLocal

logger = logging.getLogger(__name__)

STATUS_RANK = {
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

STATUS_TIMESTAMPS = {
    MessageStatus.SENT: "sent_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.READ: "read_at",
    MessageStatus.FAILED: "failed_at",
}


class ReconcileOutcome(str, enum.Enum):
    UPDATED = "updated"
    STALE = "stale"
    NOT_FOUND = "not_found"
    INBOUND_LOGGED = "inbound_logged"


def _lower_ranked(status: MessageStatus) -> list[str]:
    rank = STATUS_RANK[status]
    return [s.value for s, r in STATUS_RANK.items() if r < rank]


def find_message_by_provider_id(db: Session, tenant_id: int, provider_message_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(
            Message.tenant_id == tenant_id,
            Message.provider_message_id == provider_message_id,
        )
        .first()
    )


def apply_status_callback(db: Session, tenant_id: int, callback: StatusCallback) -> ReconcileOutcome:
    """
    Reconcile one status callback onto its Message.

    Unknown provider message ids are logged and dropped (NOT_FOUND); they may
    belong to a test send or a message outside this tenant.
    """
    message = find_message_by_provider_id(db, tenant_id, callback.provider_message_id)
    if message is None:
        logger.info(
            f"Status callback for unknown provider message {callback.provider_message_id} dropped"
        )
        return ReconcileOutcome.NOT_FOUND

    status = MessageStatus(callback.new_status)
    at = datetime.fromtimestamp(callback.timestamp_seconds, tz=timezone.utc)
    ts_column = getattr(Message, STATUS_TIMESTAMPS[status])
    not_failed = Message.status != MessageStatus.FAILED.value

    if status is MessageStatus.FAILED:
        result = db.execute(
            update(Message)
            .where(Message.id == message.id, not_failed)
            .values(status=status.value, failed_at=at, failure_reason=callback.failure_reason)
        )
        moved = result.rowcount > 0
    else:
        result = db.execute(
            update(Message)
            .where(Message.id == message.id, Message.status.in_(_lower_ranked(status)))
            .values(status=status.value)
        )
        moved = result.rowcount > 0
        # Record when it happened even if a higher status arrived first
        db.execute(
            update(Message)
            .where(Message.id == message.id, not_failed, ts_column.is_(None))
            .values({ts_column: at})
        )
    db.commit()

    outcome = ReconcileOutcome.UPDATED if moved else ReconcileOutcome.STALE
    logger.info(
        f"Message {message.id} ({callback.provider_message_id}) status callback "
        f"{status.value}: {outcome.value}"
    )
    return outcome


def handle_inbound_message(tenant_id: int, inbound: InboundMessage) -> ReconcileOutcome:
    # Replies are only logged for now; they never touch Message state
    logger.info(
        f"Inbound message for tenant {tenant_id} from {inbound.inbound_from}: "
        f"{len(inbound.inbound_text)} chars"
    )
    return ReconcileOutcome.INBOUND_LOGGED


def reconcile_events(db: Session, tenant_id: int, events: list[ProviderEvent]) -> dict[str, int]:
    """
    Apply a batch of provider events; one failing event never stops the rest.

    Returns:
        Count of events per outcome (plus "error")
    """
    summary: dict[str, int] = {}
    for event in events:
        kind = "status" if isinstance(event, StatusCallback) else "inbound"
        try:
            if isinstance(event, StatusCallback):
                outcome = apply_status_callback(db, tenant_id, event).value
            else:
                outcome = handle_inbound_message(tenant_id, event).value
        except NotifierError as e:
            db.rollback()
            logger.error(f"Provider event dropped for tenant {tenant_id}: {e}")
            outcome = "error"
        except Exception:
            db.rollback()
            logger.exception(f"Unexpected failure reconciling provider event for tenant {tenant_id}")
            outcome = "error"
        record_provider_callback(kind, outcome)
        summary[outcome] = summary.get(outcome, 0) + 1
    return summary


def run_reconcile(tenant_id: int, events: list[ProviderEvent]) -> dict[str, int]:
    """Background-task entry point with its own session."""
    db = SessionLocal()
    try:
        return reconcile_events(db, tenant_id, events)
    finally:
        db.close()


# =============================================================================
# Click / Conversion Attribution
# =============================================================================

def _get_message(db: Session, tenant_id: int, message_id: int) -> Message:
    message = (
        db.query(Message)
        .filter(Message.tenant_id == tenant_id, Message.id == message_id)
        .first()
    )
    if message is None:
        raise NotFound(f"message {message_id} not found for tenant {tenant_id}")
    return message


def record_click(db: Session, tenant_id: int, message_id: int, url: Optional[str] = None) -> bool:
    """
    Mark a message clicked. Only the first click counts toward the tenant and
    opt-in click counters.

    Returns:
        True if this call recorded the click, False if it was already clicked

    Raises:
        NotFound: if the message does not belong to the tenant
    """
    message = _get_message(db, tenant_id, message_id)
    result = db.execute(
        update(Message)
        .where(Message.id == message.id, Message.clicked.is_(False))
        .values(clicked=True, clicked_at=datetime.now(timezone.utc), clicked_url=url)
    )
    counted = result.rowcount > 0
    if counted:
        increment_counter(db, tenant_id, "messages_clicked")
        if message.opt_in_id is not None:
            record_engagement(db, message.opt_in_id, EngagementKind.CLICKED)
    db.commit()
    logger.info(f"Click on message {message_id}: counted={counted}")
    return counted


def record_conversion(
    db: Session,
    tenant_id: int,
    message_id: int,
    value: Optional[Decimal] = None,
) -> bool:
    """
    Attribute a conversion to a message, once.

    Returns:
        True if this call recorded the conversion, False if already converted

    Raises:
        NotFound: if the message does not belong to the tenant
    """
    message = _get_message(db, tenant_id, message_id)
    result = db.execute(
        update(Message)
        .where(Message.id == message.id, Message.converted.is_(False))
        .values(converted=True, converted_at=datetime.now(timezone.utc), conversion_value=value)
    )
    counted = result.rowcount > 0
    if counted:
        increment_counter(db, tenant_id, "conversions")
    db.commit()
    logger.info(f"Conversion on message {message_id}: counted={counted}")
    return counted
