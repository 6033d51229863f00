"""
Pydantic schemas for request/response validation.

This module contains:
- Commerce webhook payload shapes, one model per known source shape
- Provider callback payload shape
- Normalized internal event types produced by the gateway
- Request and response models for the HTTP API
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cart_notifier.models import MessageCategory, MessageStatus, OptInSource
from cart_notifier.utils import normalize_phone

# Same precision as the Numeric(12, 2) money columns
MONEY_DIGITS = 12
MONEY_PLACES = 2


# =============================================================================
# Commerce Webhook Payloads
# =============================================================================

class _Payload(BaseModel):
    # Commerce payloads carry far more fields than we read
    model_config = ConfigDict(extra="ignore")


class Address(_Payload):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


class CustomerInfo(_Payload):
    id: Optional[Union[int, str]] = None
    first_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class LineItem(_Payload):
    title: Optional[str] = None
    quantity: int = 1


class CheckoutPayload(_Payload):
    """Abandoned checkout (cart) webhook body."""
    id: Union[int, str]
    shop_domain: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    abandoned_checkout_url: Optional[str] = None
    line_items: list[LineItem] = Field(default_factory=list)
    total_price: Optional[Decimal] = Field(None, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)
    currency: Optional[str] = None
    presentment_currency: Optional[str] = None
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    customer: Optional[CustomerInfo] = None


class OrderPayload(_Payload):
    """Order created webhook body."""
    id: Union[int, str]
    shop_domain: Optional[str] = None
    order_number: Optional[Union[int, str]] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    line_items: list[LineItem] = Field(default_factory=list)
    total_price: Optional[Decimal] = Field(None, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)
    currency: Optional[str] = None
    presentment_currency: Optional[str] = None
    billing_address: Optional[Address] = None
    shipping_address: Optional[Address] = None
    customer: Optional[CustomerInfo] = None


class FulfillmentPayload(_Payload):
    """Fulfillment created/updated webhook body."""
    id: Union[int, str]
    order_id: Union[int, str]
    shop_domain: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    shipment_status: Optional[str] = None
    tracking_company: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    line_items: list[LineItem] = Field(default_factory=list)
    destination: Optional[Address] = None
    customer: Optional[CustomerInfo] = None


# =============================================================================
# Provider Webhook Payload
# =============================================================================

class StatusErrorDetail(_Payload):
    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None


class StatusItem(_Payload):
    id: str
    status: str
    timestamp: Union[int, str]
    recipient_id: Optional[str] = None
    errors: list[StatusErrorDetail] = Field(default_factory=list)


class TextBody(_Payload):
    body: str = ""


class InboundItem(_Payload):
    id: Optional[str] = None
    from_number: str = Field(..., alias="from")
    timestamp: Optional[Union[int, str]] = None
    type: Optional[str] = None
    text: Optional[TextBody] = None


class ChangeValue(_Payload):
    # Lists below stay raw and are validated item by item in
    # parse_provider_callbacks; a bad item rejects only itself
    metadata: Optional[dict[str, Any]] = None
    statuses: list[Any] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)


class Change(_Payload):
    field: Optional[str] = None
    value: ChangeValue


class Entry(_Payload):
    id: Optional[str] = None
    changes: list[Any] = Field(default_factory=list)


class ProviderWebhookPayload(_Payload):
    object: Optional[str] = None
    entry: list[Any] = Field(default_factory=list)


# =============================================================================
# Normalized Internal Events
# =============================================================================

class RenderContext(BaseModel):
    """Structured data a message template is rendered from."""
    model_config = ConfigDict(frozen=True)

    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    item_count: int = 0
    total_price: Optional[Decimal] = None
    currency: Optional[str] = None
    checkout_url: Optional[str] = None
    order_number: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    store_name: Optional[str] = None


class CommerceEvent(BaseModel):
    """A commerce webhook normalized into the single dispatchable shape."""
    model_config = ConfigDict(frozen=True)

    category: MessageCategory
    linked_object_id: str = Field(..., min_length=1)
    recipient_phone_candidates: list[str] = Field(default_factory=list)
    monetary_value: Optional[Decimal] = None
    currency: Optional[str] = None
    customer_id: Optional[str] = None
    render_context: RenderContext = Field(default_factory=RenderContext)


class StatusCallback(BaseModel):
    provider_message_id: str
    new_status: MessageStatus
    timestamp_seconds: int
    failure_reason: Optional[str] = None


class InboundMessage(BaseModel):
    inbound_from: str
    inbound_text: str
    provider_message_id: Optional[str] = None


# =============================================================================
# API Request Models
# =============================================================================

class ChannelConfigRequest(BaseModel):
    """Channel configuration update for a tenant."""
    access_token: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1, description="Provider phone number id")
    verify_token: Optional[str] = None
    app_secret: Optional[str] = None
    commerce_webhook_secret: Optional[str] = None
    abandoned_cart: bool = True
    order_confirmation: bool = True
    order_delivered: bool = False


class PreferencesModel(BaseModel):
    abandoned_cart: bool = True
    order_updates: bool = True
    promotions: bool = False


class OptInRequest(BaseModel):
    """
    Opt-in submitted by the storefront widget or checkout.

    phone_number may be formatted freely; it is reduced to digits for keying.
    """
    phone_number: str = Field(..., max_length=32)
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    source: OptInSource = OptInSource.WIDGET
    preferences: Optional[PreferencesModel] = None

    @field_validator("phone_number")
    @classmethod
    def validate_has_digits(cls, v: str) -> str:
        if normalize_phone(v) is None:
            raise ValueError("phone_number must contain digits")
        return v


class PreferencesUpdate(BaseModel):
    abandoned_cart: Optional[bool] = None
    order_updates: Optional[bool] = None
    promotions: Optional[bool] = None


class TestMessageRequest(BaseModel):
    phone_number: str = Field(..., max_length=32)
    text: Optional[str] = Field(None, max_length=4096)

    @field_validator("phone_number")
    @classmethod
    def validate_has_digits(cls, v: str) -> str:
        if normalize_phone(v) is None:
            raise ValueError("phone_number must contain digits")
        return v


class PromotionRequest(BaseModel):
    phone_number: str = Field(..., max_length=32)
    template_name: str = Field(..., min_length=1)
    parameters: list[str] = Field(default_factory=list)

    @field_validator("phone_number")
    @classmethod
    def validate_has_digits(cls, v: str) -> str:
        if normalize_phone(v) is None:
            raise ValueError("phone_number must contain digits")
        return v


class ClickRequest(BaseModel):
    url: Optional[str] = None


class ConversionRequest(BaseModel):
    value: Optional[Decimal] = Field(None, ge=0, max_digits=MONEY_DIGITS, decimal_places=MONEY_PLACES)


# =============================================================================
# API Response Models
# =============================================================================

class WebhookAck(BaseModel):
    """Acknowledgement returned to webhook senders before processing completes."""
    status: str = Field(default="ok", description="ok, or ignored for dropped events")
    result: Optional[str] = Field(None, description="Gateway outcome")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class TenantResponse(BaseModel):
    id: int
    shop_domain: str
    name: Optional[str] = None
    channel_configured: bool
    abandoned_cart_enabled: bool
    order_confirmation_enabled: bool
    order_delivered_enabled: bool

    model_config = ConfigDict(from_attributes=True)


class OptInResponse(BaseModel):
    id: int
    phone_number: str
    customer_id: str
    source: str
    is_active: bool
    preferences: PreferencesModel
    messages_received: int
    messages_clicked: int

    @classmethod
    def from_record(cls, opt_in) -> "OptInResponse":
        return cls(
            id=opt_in.id,
            phone_number=opt_in.phone_number,
            customer_id=opt_in.customer_id,
            source=opt_in.source,
            is_active=opt_in.is_active,
            preferences=PreferencesModel(
                abandoned_cart=opt_in.pref_abandoned_cart,
                order_updates=opt_in.pref_order_updates,
                promotions=opt_in.pref_promotions,
            ),
            messages_received=opt_in.messages_received,
            messages_clicked=opt_in.messages_clicked,
        )


class SendResponse(BaseModel):
    message_id: int
    provider_message_id: Optional[str] = None
    status: str


class AttributionResponse(BaseModel):
    message_id: int
    counted: bool = Field(..., description="False when already attributed earlier")


class MessageResponse(BaseModel):
    id: int
    category: str
    status: str
    provider_message_id: Optional[str] = None
    recipient_phone: str
    content: str
    linked_object_id: Optional[str] = None
    monetary_value: Optional[Decimal] = None
    currency: Optional[str] = None
    failure_reason: Optional[str] = None
    clicked: bool
    converted: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MessagesListResponse(BaseModel):
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Total messages matching filters")
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    total_opt_ins: int
    messages_delivered: int
    messages_clicked: int
    conversions: int
    click_rate: float = Field(..., description="clicked / delivered, 0 when nothing delivered")
    conversion_rate: float = Field(..., description="conversions / delivered, 0 when nothing delivered")


class StatusCount(BaseModel):
    status: str
    count: int


class CategoryCount(BaseModel):
    category: str
    count: int
    clicked: int
    converted: int


class AnalyticsResponse(BaseModel):
    total_opt_ins: int
    recent_opt_ins: int
    message_stats: list[StatusCount] = Field(default_factory=list)
    messages_by_category: list[CategoryCount] = Field(default_factory=list)
    days: int
