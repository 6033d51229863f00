"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)

from cart_notifier.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageCategory(str, enum.Enum):
    ABANDONED_CART = "abandoned_cart"
    ORDER_CONFIRMATION = "order_confirmation"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    PROMOTION = "promotion"
    TEST = "test"


class MessageStatus(str, enum.Enum):
    # Dispatch side: created -> sending -> sent | send_failed.
    # Only sent and send_failed are ever persisted by the dispatcher.
    CREATED = "created"
    SENDING = "sending"
    SENT = "sent"
    SEND_FAILED = "send_failed"
    # Reconciliation side, driven by provider callbacks
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class OptInSource(str, enum.Enum):
    WIDGET = "widget"
    CHECKOUT = "checkout"
    MANUAL = "manual"


class Tenant(Base):
    """
    A connected merchant store and its messaging channel configuration.

    Table: tenants
    Counters are only ever changed through stats.increment_counter.
    """
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    shop_domain = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Channel configuration
    channel_configured = Column(Boolean, nullable=False, default=False)
    provider_access_token = Column(String, nullable=True)
    provider_sender_id = Column(String, nullable=True)
    provider_verify_token = Column(String, nullable=True)
    provider_app_secret = Column(String, nullable=True)
    commerce_webhook_secret = Column(String, nullable=True)

    # Feature flags
    abandoned_cart_enabled = Column(Boolean, nullable=False, default=True)
    order_confirmation_enabled = Column(Boolean, nullable=False, default=True)
    order_delivered_enabled = Column(Boolean, nullable=False, default=False)

    # Lifetime counters
    total_opt_ins = Column(Integer, nullable=False, default=0)
    messages_delivered = Column(Integer, nullable=False, default=0)
    messages_clicked = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, shop_domain={self.shop_domain}, active={self.is_active})>"


class OptIn(Base):
    """
    A recipient's consent record.

    Table: opt_ins
    Unique on (tenant_id, phone_number); phone_number holds digits only.
    """
    __tablename__ = "opt_ins"
    __table_args__ = (
        UniqueConstraint("tenant_id", "phone_number", name="uq_opt_ins_tenant_phone"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    customer_id = Column(String, nullable=False)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=False, index=True)

    source = Column(String, nullable=False, default=OptInSource.WIDGET.value)
    opted_in_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    opted_out_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Preferences
    pref_abandoned_cart = Column(Boolean, nullable=False, default=True)
    pref_order_updates = Column(Boolean, nullable=False, default=True)
    pref_promotions = Column(Boolean, nullable=False, default=False)

    # Engagement
    messages_received = Column(Integer, nullable=False, default=0)
    messages_clicked = Column(Integer, nullable=False, default=0)
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<OptIn(id={self.id}, tenant_id={self.tenant_id}, phone={self.phone_number}, active={self.is_active})>"


class Message(Base):
    """
    One outbound notification and its delivery lifecycle.

    Table: messages
    The partial unique index on (tenant_id, linked_object_id, category) is the
    idempotency guarantee: it ignores send_failed rows, and NULL
    linked_object_id values never collide, so test and promotional sends are
    never deduplicated.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index(
            "uq_messages_idempotency_key",
            "tenant_id",
            "linked_object_id",
            "category",
            unique=True,
            sqlite_where=text("status != 'send_failed'"),
            postgresql_where=text("status != 'send_failed'"),
        ),
        Index("ix_messages_category_status", "category", "status"),
        Index("ix_messages_tenant_created", "tenant_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    opt_in_id = Column(Integer, ForeignKey("opt_ins.id"), nullable=True)
    category = Column(String, nullable=False)

    provider_message_id = Column(String, nullable=True, index=True)
    provider_sender_id = Column(String, nullable=True)
    recipient_phone = Column(String, nullable=False)
    template_name = Column(String, nullable=True)
    content = Column(Text, nullable=False)

    linked_object_id = Column(String, nullable=True)
    monetary_value = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)

    status = Column(String, nullable=False, default=MessageStatus.CREATED.value)
    failure_reason = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    clicked = Column(Boolean, nullable=False, default=False)
    clicked_at = Column(DateTime(timezone=True), nullable=True)
    clicked_url = Column(Text, nullable=True)
    converted = Column(Boolean, nullable=False, default=False)
    converted_at = Column(DateTime(timezone=True), nullable=True)
    conversion_value = Column(Numeric(12, 2), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, category={self.category}, "
            f"status={self.status}, provider_id={self.provider_message_id})>"
        )
