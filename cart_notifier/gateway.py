"""
Event ingestion gateway.

Authenticates and normalizes inbound webhooks. The HTTP layer (main.py) hands
the normalized events to background tasks and answers the sender right away;
nothing here waits on the provider.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from cart_notifier.config import settings
from cart_notifier.dispatch import find_existing_dispatch
from cart_notifier.errors import AuthenticationError, ValidationError
from cart_notifier.models import Tenant
from cart_notifier.normalize import (
    ProviderEvent,
    normalize_commerce_event,
    parse_provider_callbacks,
    resolve_shop_domain,
)
from cart_notifier.schemas import CommerceEvent
from cart_notifier.tenants import find_tenant_by_domain, get_tenant
from cart_notifier.utils import verify_hmac_signature, verify_hub_signature

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE = "subscribe"


@dataclass
class CommerceIngest:
    """Gateway verdict for one commerce webhook delivery."""
    result: str
    tenant_id: Optional[int] = None
    event: Optional[CommerceEvent] = None
    reason: Optional[str] = None

    @property
    def should_dispatch(self) -> bool:
        return self.result == "accepted"


def parse_json(raw_body: bytes) -> object:
    try:
        return json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"invalid JSON: {e}") from e


def authenticate_commerce_webhook(tenant: Tenant, raw_body: bytes, signature: Optional[str]) -> None:
    """
    Check the commerce HMAC when the tenant has a shared secret.

    Without a secret the webhook is accepted unverified, unless
    REQUIRE_WEBHOOK_SIGNATURES is set.

    Raises:
        AuthenticationError: on a missing or wrong signature
    """
    secret = tenant.commerce_webhook_secret
    if not secret:
        if settings.REQUIRE_WEBHOOK_SIGNATURES:
            raise AuthenticationError(f"tenant {tenant.id} has no webhook secret configured")
        logger.warning(f"Accepting unverified commerce webhook for tenant {tenant.id}: no secret configured")
        return
    if not signature or not verify_hmac_signature(raw_body, signature, secret):
        raise AuthenticationError("invalid signature")


def authenticate_provider_webhook(tenant: Tenant, raw_body: bytes, signature: Optional[str]) -> None:
    """
    Check X-Hub-Signature-256 when the tenant has a provider app secret.

    Raises:
        AuthenticationError: on a missing or wrong signature
    """
    secret = tenant.provider_app_secret
    if not secret:
        if settings.REQUIRE_WEBHOOK_SIGNATURES:
            raise AuthenticationError(f"tenant {tenant.id} has no provider app secret configured")
        logger.warning(f"Accepting unverified provider webhook for tenant {tenant.id}: no app secret configured")
        return
    if not verify_hub_signature(raw_body, signature or "", secret):
        raise AuthenticationError("invalid signature")


def verify_subscription(
    db: Session,
    tenant_id: int,
    mode: Optional[str],
    verify_token: Optional[str],
    challenge: Optional[str],
) -> str:
    """
    Answer the provider's subscription handshake.

    Returns:
        The challenge to echo back

    Raises:
        AuthenticationError: wrong mode, token mismatch, or unknown tenant
    """
    tenant = db.get(Tenant, tenant_id)
    expected = tenant.provider_verify_token if tenant is not None else None
    if (
        mode != SUBSCRIBE_MODE
        or not expected
        or not verify_token
        or verify_token != expected
        or challenge is None
    ):
        raise AuthenticationError("subscription verification failed")
    logger.info(f"Provider webhook subscription verified for tenant {tenant_id}")
    return challenge


def ingest_commerce_webhook(
    db: Session,
    topic: str,
    raw_body: bytes,
    shop_domain_header: Optional[str],
    signature: Optional[str],
) -> CommerceIngest:
    """
    Authenticate and normalize one commerce webhook.

    Events that can never be processed (unknown store, malformed body) come
    back as "ignored"/"unknown_tenant" rather than errors, so the sender does
    not keep retrying them.

    Raises:
        AuthenticationError: signature check failed
    """
    try:
        body = parse_json(raw_body)
    except ValidationError as e:
        body = None
        parse_error = str(e)
    else:
        parse_error = None

    domain = resolve_shop_domain(shop_domain_header, body)
    tenant = find_tenant_by_domain(db, domain)
    if tenant is None:
        logger.info(f"Commerce webhook {topic} for unknown shop {domain!r} ignored")
        return CommerceIngest(result="unknown_tenant", reason=f"unknown shop {domain}")

    authenticate_commerce_webhook(tenant, raw_body, signature)

    if parse_error is not None:
        logger.error(f"Commerce webhook {topic} for tenant {tenant.id} dropped: {parse_error}")
        return CommerceIngest(result="ignored", tenant_id=tenant.id, reason=parse_error)

    try:
        event = normalize_commerce_event(topic, body)
    except ValidationError as e:
        logger.error(f"Commerce webhook {topic} for tenant {tenant.id} dropped: {e}")
        return CommerceIngest(result="ignored", tenant_id=tenant.id, reason=str(e))

    # Cheap early exit for redeliveries; dispatch re-checks under the unique index
    if find_existing_dispatch(db, tenant.id, event.linked_object_id, event.category) is not None:
        logger.info(f"Commerce webhook {topic} for {event.linked_object_id} already dispatched")
        return CommerceIngest(result="duplicate", tenant_id=tenant.id, event=event)

    return CommerceIngest(result="accepted", tenant_id=tenant.id, event=event)


def ingest_provider_webhook(
    db: Session,
    tenant_id: int,
    raw_body: bytes,
    signature: Optional[str],
) -> tuple[list[ProviderEvent], list[str]]:
    """
    Authenticate and normalize one provider callback delivery.

    Raises:
        NotFound: unknown tenant
        AuthenticationError: signature check failed
        ValidationError: body is not a provider envelope
    """
    tenant = get_tenant(db, tenant_id)
    authenticate_provider_webhook(tenant, raw_body, signature)
    return parse_provider_callbacks(parse_json(raw_body))
