import logging
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from cart_notifier.models import Message

logger = logging.getLogger(__name__)


def list_messages(
    db: Session,
    tenant_id: int,
    limit: int = 50,
    offset: int = 0,
    category: Optional[str] = None,
    status: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve a tenant's messages with pagination and filtering.

    Args:
        db: Database session
        tenant_id: Owning tenant
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip
        category: Filter by message category (exact match)
        status: Filter by status (exact match)

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    logger.info(f"Querying messages: tenant={tenant_id}, limit={limit}, offset={offset}")
    logger.debug(f"Filters: category={category}, status={status}")

    query = db.query(Message).filter(Message.tenant_id == tenant_id)

    if category:
        query = query.filter(Message.category == category)

    if status:
        query = query.filter(Message.status == status)

    # Get total count before pagination
    total = query.count()

    # Newest first, id breaks ties deterministically
    query = query.order_by(Message.created_at.desc(), Message.id.desc())

    messages = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(messages)} of {total} total messages")

    return messages, total
