import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from cart_notifier import optins, reconcile, stats, tenants
from cart_notifier.config import settings
from cart_notifier.dispatch import run_dispatch, send_promotion, send_test_message
from cart_notifier.errors import (
    AuthenticationError,
    ConsentAbsent,
    NotFound,
    ProviderError,
    StoreBusy,
    ValidationError,
)
from cart_notifier.gateway import ingest_commerce_webhook, ingest_provider_webhook, verify_subscription
from cart_notifier.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from cart_notifier.messages import list_messages
from cart_notifier.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from cart_notifier.provider import ProviderClient
from cart_notifier.schemas import (
    AnalyticsResponse,
    AttributionResponse,
    ChannelConfigRequest,
    ClickRequest,
    ConversionRequest,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    OptInRequest,
    OptInResponse,
    PreferencesUpdate,
    PromotionRequest,
    SendResponse,
    StatsResponse,
    TenantResponse,
    TestMessageRequest,
    WebhookAck,
)
from cart_notifier.storage import check_db_health, get_db, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables and the shared provider client.
    Shutdown: close the provider client's connection pool.
    """
    init_db()
    app.state.provider_client = ProviderClient(
        base_url=settings.PROVIDER_API_BASE,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        template_language=settings.PROVIDER_TEMPLATE_LANGUAGE,
    )
    yield
    app.state.provider_client.close()


app = FastAPI(
    title="Cart Notifier",
    description="Cart-abandonment and order notifications over a messaging channel",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_provider_client(request: Request) -> ProviderClient:
    return request.app.state.provider_client


# =============================================================================
# Domain Error Handlers
# =============================================================================

@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(ConsentAbsent)
async def consent_absent_handler(request: Request, exc: ConsentAbsent) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": f"provider error: {exc.reason}"},
    )


@app.exception_handler(StoreBusy)
async def store_busy_handler(request: Request, exc: StoreBusy) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """Readiness probe - 200 only when the DB is reachable and the schema applied."""
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# Commerce Webhook Routes
# =============================================================================

async def _commerce_webhook(
    topic: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session,
    provider: ProviderClient,
    shop_domain: str | None,
    hmac_signature: str | None,
) -> WebhookAck:
    raw_body = await request.body()
    logger.info(f"Commerce webhook received: {topic}, {len(raw_body)} bytes")

    try:
        ingest = ingest_commerce_webhook(db, topic, raw_body, shop_domain, hmac_signature)
    except AuthenticationError as e:
        logger.error(f"Commerce webhook {topic} rejected: {e}")
        record_webhook_outcome("commerce", "invalid_signature")
        log_webhook_data(request, source="commerce", result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    event_id = ingest.event.linked_object_id if ingest.event else None
    record_webhook_outcome("commerce", ingest.result)
    log_webhook_data(
        request,
        source="commerce",
        result=ingest.result,
        event_id=event_id,
        dup=ingest.result == "duplicate",
    )

    if ingest.should_dispatch:
        # Runs after the response is sent; the sender never waits on the provider
        background_tasks.add_task(run_dispatch, provider, ingest.tenant_id, ingest.event)
        return WebhookAck(status="ok", result=ingest.result)
    if ingest.result == "duplicate":
        return WebhookAck(status="ok", result=ingest.result)
    return WebhookAck(status="ignored", result=ingest.result)


_COMMERCE_RESPONSES = {401: {"model": ErrorResponse, "description": "Invalid signature"}}


@app.post("/webhooks/commerce/checkouts/abandoned", response_model=WebhookAck, responses=_COMMERCE_RESPONSES)
async def checkout_abandoned_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_shop_domain: Annotated[str | None, Header(alias="X-Shopify-Shop-Domain")] = None,
    x_hmac: Annotated[str | None, Header(alias="X-Shopify-Hmac-Sha256")] = None,
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> WebhookAck:
    """Abandoned checkout: may trigger an abandoned_cart message."""
    return await _commerce_webhook(
        "checkouts/abandoned", request, background_tasks, db, provider, x_shop_domain, x_hmac
    )


@app.post("/webhooks/commerce/orders/create", response_model=WebhookAck, responses=_COMMERCE_RESPONSES)
async def order_created_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_shop_domain: Annotated[str | None, Header(alias="X-Shopify-Shop-Domain")] = None,
    x_hmac: Annotated[str | None, Header(alias="X-Shopify-Hmac-Sha256")] = None,
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> WebhookAck:
    """Order created: may trigger an order_confirmation message."""
    return await _commerce_webhook(
        "orders/create", request, background_tasks, db, provider, x_shop_domain, x_hmac
    )


@app.post("/webhooks/commerce/fulfillments/update", response_model=WebhookAck, responses=_COMMERCE_RESPONSES)
async def fulfillment_updated_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_shop_domain: Annotated[str | None, Header(alias="X-Shopify-Shop-Domain")] = None,
    x_hmac: Annotated[str | None, Header(alias="X-Shopify-Hmac-Sha256")] = None,
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> WebhookAck:
    """Fulfillment update: may trigger order_shipped or order_delivered."""
    return await _commerce_webhook(
        "fulfillments/update", request, background_tasks, db, provider, x_shop_domain, x_hmac
    )


# =============================================================================
# Provider Webhook Routes
# =============================================================================

@app.get("/webhooks/provider/{tenant_id}", response_class=PlainTextResponse)
async def provider_subscription(
    tenant_id: int,
    request: Request,
    db: Session = Depends(get_db),
) -> PlainTextResponse:
    """
    Subscription handshake: echo ``challenge`` when the verify token matches.

    Accepts both the provider's ``hub.``-prefixed parameter names and the
    bare ``mode`` / ``verify_token`` / ``challenge`` names.
    """
    params = request.query_params
    try:
        challenge = verify_subscription(
            db,
            tenant_id,
            mode=params.get("hub.mode") or params.get("mode"),
            verify_token=params.get("hub.verify_token") or params.get("verify_token"),
            challenge=params.get("hub.challenge") or params.get("challenge"),
        )
    except AuthenticationError as e:
        logger.warning(f"Provider subscription for tenant {tenant_id} refused: {e}")
        record_webhook_outcome("provider", "forbidden")
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)

    record_webhook_outcome("provider", "verified")
    return PlainTextResponse(challenge)


@app.post(
    "/webhooks/provider/{tenant_id}",
    response_model=WebhookAck,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def provider_callback(
    tenant_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    db: Session = Depends(get_db),
) -> WebhookAck:
    """
    Delivery status and inbound message callbacks.

    Every status/message in the batch is reconciled independently after the
    response has been returned.
    """
    raw_body = await request.body()
    logger.info(f"Provider webhook received for tenant {tenant_id}, {len(raw_body)} bytes")

    try:
        events, rejected = ingest_provider_webhook(db, tenant_id, raw_body, x_hub_signature)
    except AuthenticationError as e:
        logger.error(f"Provider webhook for tenant {tenant_id} rejected: {e}")
        record_webhook_outcome("provider", "invalid_signature")
        log_webhook_data(request, source="provider", result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )
    except ValidationError as e:
        logger.error(f"Provider webhook for tenant {tenant_id} dropped: {e}")
        record_webhook_outcome("provider", "ignored")
        log_webhook_data(request, source="provider", result="ignored")
        return WebhookAck(status="ignored", result="ignored")

    if rejected:
        logger.warning(f"{len(rejected)} provider item(s) rejected for tenant {tenant_id}")
    if events:
        background_tasks.add_task(reconcile.run_reconcile, tenant_id, events)

    record_webhook_outcome("provider", "accepted")
    log_webhook_data(request, source="provider", result="accepted")
    return WebhookAck(status="ok", result="accepted")


# =============================================================================
# Tenant Channel & Opt-in Routes
# =============================================================================

@app.put("/api/tenants/{tenant_id}/channel", response_model=TenantResponse)
async def configure_channel(
    tenant_id: int,
    config: ChannelConfigRequest,
    db: Session = Depends(get_db),
) -> TenantResponse:
    """Replace the tenant's provider credentials and feature flags."""
    tenant = tenants.configure_channel(db, tenant_id, **config.model_dump())
    return TenantResponse.model_validate(tenant)


@app.post("/api/tenants/{tenant_id}/optins", response_model=OptInResponse)
async def create_opt_in(
    tenant_id: int,
    opt_in_request: OptInRequest,
    db: Session = Depends(get_db),
) -> OptInResponse:
    """Create or reactivate a recipient's consent record."""
    preferences = opt_in_request.preferences.model_dump() if opt_in_request.preferences else None
    opt_in = optins.upsert_opt_in(
        db,
        tenant_id,
        opt_in_request.phone_number,
        customer_id=opt_in_request.customer_id,
        customer_email=opt_in_request.customer_email,
        customer_name=opt_in_request.customer_name,
        source=opt_in_request.source,
        preferences=preferences,
    )
    return OptInResponse.from_record(opt_in)


@app.patch("/api/tenants/{tenant_id}/optins/{phone_number}", response_model=OptInResponse)
async def update_opt_in_preferences(
    tenant_id: int,
    phone_number: str,
    update: PreferencesUpdate,
    db: Session = Depends(get_db),
) -> OptInResponse:
    opt_in = optins.update_preferences(db, tenant_id, phone_number, update.model_dump(exclude_none=True))
    return OptInResponse.from_record(opt_in)


@app.delete("/api/tenants/{tenant_id}/optins/{phone_number}", response_model=OptInResponse)
async def opt_out(
    tenant_id: int,
    phone_number: str,
    db: Session = Depends(get_db),
) -> OptInResponse:
    opt_in = optins.deactivate_opt_in(db, tenant_id, phone_number)
    return OptInResponse.from_record(opt_in)


# =============================================================================
# Synchronous Send Routes
# =============================================================================

@app.post(
    "/api/tenants/{tenant_id}/test-message",
    response_model=SendResponse,
    responses={
        502: {"model": ErrorResponse, "description": "Provider error"},
        503: {"model": ErrorResponse, "description": "Message could not be recorded"},
    },
)
def test_message(
    tenant_id: int,
    send_request: TestMessageRequest,
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> SendResponse:
    """Diagnostic send; provider failures are reported to the caller."""
    message = send_test_message(db, provider, tenant_id, send_request.phone_number, send_request.text)
    return SendResponse(
        message_id=message.id,
        provider_message_id=message.provider_message_id,
        status=message.status,
    )


@app.post(
    "/api/tenants/{tenant_id}/promotions",
    response_model=SendResponse,
    responses={
        409: {"model": ErrorResponse, "description": "Recipient has not opted in"},
        502: {"model": ErrorResponse, "description": "Provider error"},
        503: {"model": ErrorResponse, "description": "Message could not be recorded"},
    },
)
def promotion(
    tenant_id: int,
    promotion_request: PromotionRequest,
    db: Session = Depends(get_db),
    provider: ProviderClient = Depends(get_provider_client),
) -> SendResponse:
    """Template send to a recipient who opted in to promotions."""
    message = send_promotion(
        db,
        provider,
        tenant_id,
        promotion_request.phone_number,
        promotion_request.template_name,
        promotion_request.parameters,
    )
    return SendResponse(
        message_id=message.id,
        provider_message_id=message.provider_message_id,
        status=message.status,
    )


# =============================================================================
# Attribution Routes
# =============================================================================

@app.post("/api/tenants/{tenant_id}/messages/{message_id}/click", response_model=AttributionResponse)
async def message_clicked(
    tenant_id: int,
    message_id: int,
    click: ClickRequest,
    db: Session = Depends(get_db),
) -> AttributionResponse:
    """Called by the tracked-link redirector when a recipient follows a link."""
    counted = reconcile.record_click(db, tenant_id, message_id, click.url)
    return AttributionResponse(message_id=message_id, counted=counted)


@app.post("/api/tenants/{tenant_id}/messages/{message_id}/conversion", response_model=AttributionResponse)
async def message_converted(
    tenant_id: int,
    message_id: int,
    conversion: ConversionRequest,
    db: Session = Depends(get_db),
) -> AttributionResponse:
    counted = reconcile.record_conversion(db, tenant_id, message_id, conversion.value)
    return AttributionResponse(message_id=message_id, counted=counted)


# =============================================================================
# Read Routes
# =============================================================================

@app.get("/api/tenants/{tenant_id}/messages", response_model=MessagesListResponse)
async def get_tenant_messages(
    tenant_id: int,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    category: Annotated[str | None, Query(description="Filter by category")] = None,
    status_filter: Annotated[str | None, Query(alias="status", description="Filter by status")] = None,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """List a tenant's messages, newest first."""
    tenants.get_tenant(db, tenant_id)
    messages, total = list_messages(
        db,
        tenant_id,
        limit=limit,
        offset=offset,
        category=category,
        status=status_filter,
    )
    return MessagesListResponse(
        data=[MessageResponse.model_validate(m) for m in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@app.get("/api/tenants/{tenant_id}/stats", response_model=StatsResponse)
async def get_tenant_stats(tenant_id: int, db: Session = Depends(get_db)) -> StatsResponse:
    """Lifetime counters with derived click and conversion rates."""
    return StatsResponse(**stats.get_tenant_stats(db, tenant_id))


@app.get("/api/tenants/{tenant_id}/analytics", response_model=AnalyticsResponse)
async def get_tenant_analytics(
    tenant_id: int,
    days: Annotated[int, Query(ge=1, le=365)] = 30,
    db: Session = Depends(get_db),
) -> AnalyticsResponse:
    return AnalyticsResponse(**stats.get_analytics(db, tenant_id, days))


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
