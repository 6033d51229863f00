"""
Per-tenant statistics.

Counters on the Tenant row are bumped with single UPDATE ... SET col = col + n
statements, never read-modify-write, so concurrent webhook tasks cannot lose
increments. Rates are derived at read time.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, func, update
from sqlalchemy.orm import Session

from cart_notifier.models import Message, OptIn, Tenant
from cart_notifier.tenants import get_tenant

logger = logging.getLogger(__name__)

COUNTERS = {
    "total_opt_ins": Tenant.total_opt_ins,
    "messages_delivered": Tenant.messages_delivered,
    "messages_clicked": Tenant.messages_clicked,
    "conversions": Tenant.conversions,
}


def increment_counter(db: Session, tenant_id: int, counter: str, by: int = 1) -> None:
    """
    Atomically add ``by`` to a tenant counter. The caller owns the commit.

    Raises:
        KeyError: for an unknown counter name
    """
    column = COUNTERS[counter]
    db.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values({column: column + by})
    )
    logger.debug(f"Tenant {tenant_id} counter {counter} += {by}")


def safe_rate(numerator: int, denominator: int) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator, 4)


def get_tenant_stats(db: Session, tenant_id: int) -> dict:
    """
    Counters for the dashboard, plus click and conversion rates.

    Raises:
        NotFound: if the tenant does not exist
    """
    tenant = get_tenant(db, tenant_id)
    db.refresh(tenant)
    return {
        "total_opt_ins": tenant.total_opt_ins,
        "messages_delivered": tenant.messages_delivered,
        "messages_clicked": tenant.messages_clicked,
        "conversions": tenant.conversions,
        "click_rate": safe_rate(tenant.messages_clicked, tenant.messages_delivered),
        "conversion_rate": safe_rate(tenant.conversions, tenant.messages_delivered),
    }


def get_analytics(db: Session, tenant_id: int, days: int = 30) -> dict:
    """
    Message breakdowns over the last ``days`` days.

    Computes:
    - recent_opt_ins: opt-ins created in the window
    - message_stats: message count per status
    - messages_by_category: count, clicked and converted per category
    """
    tenant = get_tenant(db, tenant_id)
    since = datetime.now(timezone.utc) - timedelta(days=days)
    logger.info(f"Computing analytics for tenant {tenant_id} over {days} days")

    recent_opt_ins = (
        db.query(func.count(OptIn.id))
        .filter(OptIn.tenant_id == tenant_id, OptIn.created_at >= since)
        .scalar()
    ) or 0

    status_rows = (
        db.query(Message.status, func.count(Message.id).label("count"))
        .filter(Message.tenant_id == tenant_id, Message.created_at >= since)
        .group_by(Message.status)
        .order_by(func.count(Message.id).desc(), Message.status.asc())
        .all()
    )

    category_rows = (
        db.query(
            Message.category,
            func.count(Message.id).label("count"),
            func.sum(case((Message.clicked.is_(True), 1), else_=0)).label("clicked"),
            func.sum(case((Message.converted.is_(True), 1), else_=0)).label("converted"),
        )
        .filter(Message.tenant_id == tenant_id, Message.created_at >= since)
        .group_by(Message.category)
        .order_by(func.count(Message.id).desc(), Message.category.asc())
        .all()
    )

    return {
        "total_opt_ins": tenant.total_opt_ins,
        "recent_opt_ins": recent_opt_ins,
        "message_stats": [
            {"status": row.status, "count": row.count} for row in status_rows
        ],
        "messages_by_category": [
            {
                "category": row.category,
                "count": row.count,
                "clicked": row.clicked or 0,
                "converted": row.converted or 0,
            }
            for row in category_rows
        ],
        "days": days,
    }
