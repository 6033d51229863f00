"""
Opt-in registry.

Durable consent records keyed by (tenant, digits-only phone number). Absence of
consent is an expected outcome: lookups return None rather than raising.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cart_notifier.errors import NotFound, StoreBusy, ValidationError
from cart_notifier.models import OptIn, OptInSource
from cart_notifier.stats import increment_counter
from cart_notifier.tenants import get_tenant
from cart_notifier.utils import normalize_phone

logger = logging.getLogger(__name__)


class Preference(str, enum.Enum):
    ABANDONED_CART = "abandoned_cart"
    ORDER_UPDATES = "order_updates"
    PROMOTIONS = "promotions"


class EngagementKind(str, enum.Enum):
    RECEIVED = "received"
    CLICKED = "clicked"


PREFERENCE_COLUMNS = {
    Preference.ABANDONED_CART: "pref_abandoned_cart",
    Preference.ORDER_UPDATES: "pref_order_updates",
    Preference.PROMOTIONS: "pref_promotions",
}


def _require_phone(phone: Optional[str]) -> str:
    digits = normalize_phone(phone)
    if digits is None:
        raise ValidationError("recipient phone number is required")
    return digits


def _apply_preferences(opt_in: OptIn, preferences: Optional[dict]) -> None:
    for name, value in (preferences or {}).items():
        if value is None:
            continue
        setattr(opt_in, PREFERENCE_COLUMNS[Preference(name)], bool(value))


def upsert_opt_in(
    db: Session,
    tenant_id: int,
    phone_number: str,
    customer_id: Optional[str] = None,
    customer_email: Optional[str] = None,
    customer_name: Optional[str] = None,
    source: OptInSource = OptInSource.WIDGET,
    preferences: Optional[dict] = None,
) -> OptIn:
    """
    Create or reactivate the consent record for (tenant, phone).

    Repeated calls update the existing record instead of duplicating it. The
    tenant's total_opt_ins counter moves only when a record is created or an
    inactive one is reactivated.

    Raises:
        ValidationError: if the phone number has no digits
        NotFound: if the tenant does not exist
        StoreBusy: if concurrent writers keep the record from being written
    """
    phone = _require_phone(phone_number)
    get_tenant(db, tenant_id)

    # Two attempts: a concurrent insert for the same key makes the first
    # one fail on the unique constraint, after which the row exists.
    for attempt in range(2):
        existing = (
            db.query(OptIn)
            .filter(OptIn.tenant_id == tenant_id, OptIn.phone_number == phone)
            .first()
        )
        now = datetime.now(timezone.utc)

        if existing is not None:
            reactivated = not existing.is_active
            if customer_id:
                existing.customer_id = customer_id
            if customer_email:
                existing.customer_email = customer_email
            if customer_name:
                existing.customer_name = customer_name
            existing.source = OptInSource(source).value
            existing.is_active = True
            existing.opted_out_at = None
            if reactivated:
                existing.opted_in_at = now
                increment_counter(db, tenant_id, "total_opt_ins")
            _apply_preferences(existing, preferences)
            db.commit()
            db.refresh(existing)
            logger.info(
                f"Opt-in updated: id={existing.id}, tenant={tenant_id}, reactivated={reactivated}"
            )
            return existing

        opt_in = OptIn(
            tenant_id=tenant_id,
            phone_number=phone,
            customer_id=customer_id or f"guest_{phone}",
            customer_email=customer_email,
            customer_name=customer_name,
            source=OptInSource(source).value,
            opted_in_at=now,
            is_active=True,
        )
        _apply_preferences(opt_in, preferences)
        db.add(opt_in)
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            logger.info(f"Concurrent opt-in for tenant={tenant_id}, retrying as update (attempt {attempt + 1})")
            continue
        increment_counter(db, tenant_id, "total_opt_ins")
        db.commit()
        db.refresh(opt_in)
        logger.info(f"Opt-in created: id={opt_in.id}, tenant={tenant_id}, source={opt_in.source}")
        return opt_in

    raise StoreBusy(f"could not upsert opt-in for tenant {tenant_id}: concurrent writers")


def get_opt_in(db: Session, tenant_id: int, phone_number: str) -> OptIn:
    phone = _require_phone(phone_number)
    opt_in = (
        db.query(OptIn)
        .filter(OptIn.tenant_id == tenant_id, OptIn.phone_number == phone)
        .first()
    )
    if opt_in is None:
        raise NotFound(f"no opt-in for tenant {tenant_id}")
    return opt_in


def find_active_opt_in(
    db: Session,
    tenant_id: int,
    phone_number: Optional[str],
    required_preference: Preference,
) -> Optional[OptIn]:
    """
    Return the active opt-in for (tenant, phone) only if the named preference
    is switched on; None otherwise.
    """
    phone = normalize_phone(phone_number)
    if phone is None:
        return None
    preference_column = getattr(OptIn, PREFERENCE_COLUMNS[Preference(required_preference)])
    return (
        db.query(OptIn)
        .filter(
            OptIn.tenant_id == tenant_id,
            OptIn.phone_number == phone,
            OptIn.is_active.is_(True),
            preference_column.is_(True),
        )
        .first()
    )


def record_engagement(db: Session, opt_in_id: int, kind: EngagementKind) -> None:
    """
    Bump the received or clicked counter of an opt-in. The caller owns the commit.
    """
    kind = EngagementKind(kind)
    if kind is EngagementKind.RECEIVED:
        values = {
            OptIn.messages_received: OptIn.messages_received + 1,
            OptIn.last_message_at: datetime.now(timezone.utc),
        }
    else:
        values = {OptIn.messages_clicked: OptIn.messages_clicked + 1}
    db.execute(update(OptIn).where(OptIn.id == opt_in_id).values(values))


def update_preferences(db: Session, tenant_id: int, phone_number: str, preferences: dict) -> OptIn:
    opt_in = get_opt_in(db, tenant_id, phone_number)
    _apply_preferences(opt_in, preferences)
    db.commit()
    db.refresh(opt_in)
    logger.info(f"Opt-in {opt_in.id} preferences updated")
    return opt_in


def deactivate_opt_in(db: Session, tenant_id: int, phone_number: str) -> OptIn:
    """Opt the recipient out; the record is kept for later reactivation."""
    opt_in = get_opt_in(db, tenant_id, phone_number)
    if opt_in.is_active:
        opt_in.is_active = False
        opt_in.opted_out_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(opt_in)
        logger.info(f"Opt-in {opt_in.id} deactivated")
    return opt_in
