"""
Tenant repository functions.

Tenants are created by the merchant onboarding flow; this module only looks
them up, updates channel configuration and answers feature-gating questions.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from cart_notifier.errors import NotFound
from cart_notifier.models import MessageCategory, Tenant

logger = logging.getLogger(__name__)

# Which tenant feature flag gates each webhook-triggered category
FEATURE_FLAGS = {
    MessageCategory.ABANDONED_CART: "abandoned_cart_enabled",
    MessageCategory.ORDER_CONFIRMATION: "order_confirmation_enabled",
    MessageCategory.ORDER_SHIPPED: "order_confirmation_enabled",
    MessageCategory.ORDER_DELIVERED: "order_delivered_enabled",
}


def create_tenant(db: Session, shop_domain: str, name: Optional[str] = None, **fields) -> Tenant:
    """Register a connected store. Extra keyword fields map onto Tenant columns."""
    tenant = Tenant(shop_domain=shop_domain.lower(), name=name, **fields)
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    logger.info(f"Tenant created: id={tenant.id}, shop_domain={tenant.shop_domain}")
    return tenant


def get_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFound(f"tenant {tenant_id} not found")
    return tenant


def find_tenant_by_domain(db: Session, shop_domain: Optional[str]) -> Optional[Tenant]:
    if not shop_domain:
        return None
    return db.query(Tenant).filter(Tenant.shop_domain == shop_domain.lower()).first()


def configure_channel(
    db: Session,
    tenant_id: int,
    access_token: str,
    sender_id: str,
    verify_token: Optional[str] = None,
    app_secret: Optional[str] = None,
    commerce_webhook_secret: Optional[str] = None,
    abandoned_cart: bool = True,
    order_confirmation: bool = True,
    order_delivered: bool = False,
) -> Tenant:
    """Replace the tenant's channel configuration and feature flags."""
    tenant = get_tenant(db, tenant_id)
    tenant.provider_access_token = access_token
    tenant.provider_sender_id = sender_id
    tenant.provider_verify_token = verify_token
    tenant.provider_app_secret = app_secret
    tenant.commerce_webhook_secret = commerce_webhook_secret
    tenant.abandoned_cart_enabled = abandoned_cart
    tenant.order_confirmation_enabled = order_confirmation
    tenant.order_delivered_enabled = order_delivered
    tenant.channel_configured = True
    db.commit()
    db.refresh(tenant)
    logger.info(f"Channel configured for tenant {tenant_id}")
    return tenant


def deactivate_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = get_tenant(db, tenant_id)
    tenant.is_active = False
    db.commit()
    logger.info(f"Tenant {tenant_id} deactivated")
    return tenant


def feature_enabled(tenant: Tenant, category: MessageCategory) -> bool:
    flag = FEATURE_FLAGS.get(MessageCategory(category))
    if flag is None:
        return False
    return bool(getattr(tenant, flag))
