"""
FastAPI Application Entry Point

Cafe ordering backend: table QR guest sessions, order placement and the
order status workflow with polled notifications.

Endpoints:
    - GET|POST /api/auth/invitation/{token}: Preview / redeem an invitation
    - POST /api/orders: Place an order
    - GET /api/orders: List orders
    - PATCH /api/orders/{id}/status: Staff status updates
    - /api/admin/invitations: Table invitation administration
    - /api/notifications: Notification polling
    - GET /health: System health check
"""

import asyncio
import sys
import logging
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

# Windows-specific event loop policy (psycopg async needs the selector loop)
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from cafe_orders.core.auth import (
    GUEST_ORDER_ABILITY,
    GUEST_READ_ABILITY,
    RequestContext,
    get_current_token,
    get_request_context,
    require_guest_ability,
)
from cafe_orders.core.config import get_settings, setup_logging
from cafe_orders.database import get_db, init_db, engine
from cafe_orders.exceptions import OrderingError
from cafe_orders.models import AccessToken, UserInvitation, utcnow
from cafe_orders.schemas import (
    AccountInvitationCreate,
    BulkRevokeRequest,
    CountResponse,
    ErrorResponse,
    GuestSessionResponse,
    HealthResponse,
    InvitationCreate,
    InvitationListResponse,
    InvitationPreviewResponse,
    InvitationRedeem,
    InvitationResponse,
    NotificationListResponse,
    NotificationResponse,
    OrderCreate,
    OrderEnvelope,
    OrderListResponse,
    OrderResponse,
    OrderStatusUpdate,
    UnreadCountResponse,
    UserResponse,
)
from cafe_orders.services import credentials, guest_sessions, invitations, orders
from cafe_orders.services.notifications import feed, get_unread_count_cache
from cafe_orders.services.order_state import get_state_machine, parse_status
from cafe_orders.services.pricing import ItemRequest

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    cache = get_unread_count_cache()
    machine = get_state_machine()
    logger.info(f"Unread count cache: {cache.provider_name}")
    logger.info(f"Forward-only status transitions: {machine.enforce_forward}")

    logger.info("=" * 60)
    logger.info("Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Cafe ordering backend. Diners scan a table QR code to start a guest "
        "session, place orders and poll for status notifications."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_RESPONSES = {
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def invitation_response(invitation: UserInvitation) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        kind=invitation.kind.value,
        token=invitation.token,
        role=invitation.role,
        table_number=invitation.table_number,
        invitation_url=invitations.invitation_url(invitation),
        issuer_id=invitation.issuer_id,
        expires_at=invitation.expires_at,
        used_at=invitation.used_at,
        created_at=invitation.created_at,
    )


def order_envelope(order, message: str) -> OrderEnvelope:
    return OrderEnvelope(message=message, order=OrderResponse.model_validate(order))


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.restaurant_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check cache
    cache = get_unread_count_cache()
    if cache.provider_name == "disabled":
        cache_status = "disabled"
    else:
        cache_status = "healthy" if cache.health_check() else "unhealthy"

    overall = "operational" if db_status == "healthy" and cache_status != "unhealthy" else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        cache=cache_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# AUTH ENDPOINTS
# =============================================================================

@app.get(
    "/api/auth/invitation/{token}",
    response_model=InvitationPreviewResponse,
    responses=ERROR_RESPONSES,
    tags=["Auth"],
    summary="Preview Invitation",
)
async def preview_invitation(
    token: str,
    db: AsyncSession = Depends(get_db),
) -> InvitationPreviewResponse:
    """Show who issued an invitation and for which table, without redeeming it."""
    preview = await guest_sessions.preview_invitation(db, token, utcnow())
    return InvitationPreviewResponse(
        restaurant_name=preview.restaurant_name,
        invited_by=preview.issuer_name,
        role=preview.role,
        table_number=preview.table_number,
        expires_at=preview.expires_at,
    )


@app.post(
    "/api/auth/invitation/{token}",
    response_model=GuestSessionResponse,
    responses=ERROR_RESPONSES,
    tags=["Auth"],
    summary="Redeem Invitation",
)
async def redeem_invitation(
    token: str,
    payload: Optional[InvitationRedeem] = None,
    db: AsyncSession = Depends(get_db),
) -> GuestSessionResponse:
    """
    Redeem an invitation.

    Table invitations start a guest session on the table's shared account;
    account invitations sign into the provisioned account.
    """
    result = await guest_sessions.redeem_invitation(
        db,
        token,
        utcnow(),
        table_number=payload.table_number if payload else None,
    )
    return GuestSessionResponse(
        user=UserResponse.model_validate(result.user),
        token=result.token,
        session_id=result.session_id,
        table_number=result.table_number,
        expires_at=result.expires_at,
        expires_in=result.expires_in,
    )


@app.post("/api/logout", tags=["Auth"], responses=ERROR_RESPONSES)
async def logout(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Revoke the credential used for this request."""
    await credentials.revoke_token(db, ctx.token_id)
    await db.commit()
    logger.info(f"User #{ctx.actor.user_id} logged out (token #{ctx.token_id})")
    return {"success": True, "message": "Logged out successfully"}


@app.get("/api/user", response_model=UserResponse, tags=["Auth"], responses=ERROR_RESPONSES)
async def current_user(
    ctx: RequestContext = Depends(get_request_context),
    token: AccessToken = Depends(get_current_token),
) -> UserResponse:
    return UserResponse.model_validate(token.user)


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderEnvelope,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Place Order",
    dependencies=[Depends(require_guest_ability(GUEST_ORDER_ABILITY))],
)
async def create_order(
    order_data: OrderCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> OrderEnvelope:
    """
    Place a new order.

    Guests may hold only one active order per session; a second attempt
    returns 409 with the existing order.
    """
    items = [
        ItemRequest(
            product_size_id=item.product_size_id,
            quantity=item.quantity,
            sugar_level=item.sugar_level,
            topping_ids=tuple(t.topping_id for t in item.toppings),
        )
        for item in order_data.items
    ]
    order = await orders.place_order(
        db,
        ctx,
        items,
        customer_name=order_data.customer_name,
        session_id=order_data.session_id,
        table_number=order_data.table_number,
    )
    return order_envelope(order, "Order placed successfully!")


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="List Orders",
    dependencies=[Depends(require_guest_ability(GUEST_READ_ABILITY))],
)
async def list_orders(
    status: Optional[str] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    """Staff see every order; other callers see their own."""
    status_filter = parse_status(status) if status else None
    found = await orders.list_orders(db, ctx, status=status_filter)
    return OrderListResponse(
        total=len(found),
        orders=[OrderResponse.model_validate(order) for order in found],
    )


@app.get(
    "/api/orders/session/{session_id}",
    response_model=OrderListResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    dependencies=[Depends(require_guest_ability(GUEST_READ_ABILITY))],
)
async def list_session_orders(
    session_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> OrderListResponse:
    found = await orders.list_session_orders(db, ctx, session_id)
    return OrderListResponse(
        total=len(found),
        orders=[OrderResponse.model_validate(order) for order in found],
    )


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    dependencies=[Depends(require_guest_ability(GUEST_READ_ABILITY))],
)
async def get_order(
    order_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Get a specific order by ID."""
    order = await orders.get_order(db, ctx, order_id)
    return OrderResponse.model_validate(order)


@app.patch(
    "/api/orders/{order_id}/status",
    response_model=OrderEnvelope,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Update Order Status",
)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> OrderEnvelope:
    order = await get_state_machine().update_status(db, ctx, order_id, payload.order_status)
    return order_envelope(order, "Order status updated successfully")


# =============================================================================
# INVITATION ADMINISTRATION
# =============================================================================

@app.get(
    "/api/admin/invitations",
    response_model=InvitationListResponse,
    responses=ERROR_RESPONSES,
    tags=["Invitations"],
)
async def list_invitations(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> InvitationListResponse:
    found = await invitations.list_invitations(db, ctx)
    return InvitationListResponse(
        total=len(found),
        invitations=[invitation_response(i) for i in found],
    )


@app.post(
    "/api/admin/invitations",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse}},
    tags=["Invitations"],
    summary="Create Table Invitation",
)
async def create_table_invitation(
    payload: InvitationCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> InvitationResponse:
    """Issue the QR invitation for a table (one active invitation per table)."""
    invitation = await invitations.create_table_invitation(
        db, ctx, payload.table_number, expires_at=payload.expires_at
    )
    return invitation_response(invitation)


@app.post(
    "/api/admin/invitations/bulk-revoke",
    response_model=CountResponse,
    responses=ERROR_RESPONSES,
    tags=["Invitations"],
)
async def bulk_revoke_invitations(
    payload: BulkRevokeRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    count = await invitations.bulk_revoke(db, ctx, payload.tokens)
    return CountResponse(message=f"{count} invitation(s) revoked", count=count)


@app.post(
    "/api/admin/invitations/cleanup",
    response_model=CountResponse,
    responses=ERROR_RESPONSES,
    tags=["Invitations"],
)
async def cleanup_invitations(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    count = await invitations.cleanup_expired(db, ctx)
    return CountResponse(message=f"{count} expired invitation(s) deleted", count=count)


@app.get(
    "/api/admin/invitations/{token}",
    response_model=InvitationResponse,
    responses=ERROR_RESPONSES,
    tags=["Invitations"],
)
async def get_invitation(
    token: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> InvitationResponse:
    invitation = await invitations.get_invitation(db, ctx, token)
    return invitation_response(invitation)


@app.delete("/api/admin/invitations/{token}", responses=ERROR_RESPONSES, tags=["Invitations"])
async def revoke_invitation(
    token: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    table_number = await invitations.revoke(db, ctx, token)
    return {
        "success": True,
        "message": f"Invitation for table {table_number} revoked",
        "table_number": table_number,
    }


@app.get(
    "/api/admin/tables/{table_number}/invitations",
    response_model=InvitationListResponse,
    responses=ERROR_RESPONSES,
    tags=["Invitations"],
)
async def list_table_invitations(
    table_number: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> InvitationListResponse:
    found = await invitations.list_table_invitations(db, ctx, table_number)
    return InvitationListResponse(
        total=len(found),
        invitations=[invitation_response(i) for i in found],
    )


@app.post(
    "/api/admin/users/invite",
    response_model=InvitationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse}},
    tags=["Invitations"],
    summary="Invite User Account",
)
async def invite_user(
    payload: AccountInvitationCreate,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> InvitationResponse:
    """Provision an account and a single-use invitation link for it."""
    invitation = await invitations.create_account_invitation(
        db,
        ctx,
        name=payload.name,
        email=payload.email,
        role=payload.role,
        phone=payload.phone,
        expires_at=payload.expires_at,
        table_number=payload.table_number,
    )
    return invitation_response(invitation)


# =============================================================================
# NOTIFICATION ENDPOINTS
# =============================================================================

@app.get(
    "/api/notifications",
    response_model=NotificationListResponse,
    responses=ERROR_RESPONSES,
    tags=["Notifications"],
    dependencies=[Depends(require_guest_ability(GUEST_READ_ABILITY))],
)
async def list_notifications(
    read: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> NotificationListResponse:
    page = await feed.list_notifications(db, ctx.actor.user_id, read=read, limit=limit)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in page.notifications],
        unread_count=page.unread_count,
        total_count=page.total_count,
    )


@app.get(
    "/api/notifications/unread-count",
    response_model=UnreadCountResponse,
    responses=ERROR_RESPONSES,
    tags=["Notifications"],
    dependencies=[Depends(require_guest_ability(GUEST_READ_ABILITY))],
)
async def unread_count(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> UnreadCountResponse:
    return UnreadCountResponse(unread_count=await feed.unread_count(db, ctx.actor.user_id))


@app.get(
    "/api/notifications/latest",
    response_model=NotificationListResponse,
    responses=ERROR_RESPONSES,
    tags=["Notifications"],
    dependencies=[Depends(require_guest_ability(GUEST_READ_ABILITY))],
)
async def latest_notifications(
    since: Optional[datetime] = Query(None),
    limit: int = Query(20, ge=1),
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> NotificationListResponse:
    """Polling endpoint: notifications newer than ``since``."""
    page = await feed.latest(db, ctx.actor.user_id, since=since, limit=limit)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in page.notifications],
        unread_count=page.unread_count,
        total_count=page.total_count,
    )


@app.patch(
    "/api/notifications/read-all",
    response_model=CountResponse,
    responses=ERROR_RESPONSES,
    tags=["Notifications"],
)
async def mark_all_notifications_read(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> CountResponse:
    count = await feed.mark_all_read(db, ctx.actor.user_id, ctx.now)
    return CountResponse(message="All notifications marked as read", count=count)


@app.patch(
    "/api/notifications/{notification_id}/read",
    response_model=NotificationResponse,
    responses=ERROR_RESPONSES,
    tags=["Notifications"],
)
async def mark_notification_read(
    notification_id: int,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
) -> NotificationResponse:
    notification = await feed.mark_read(db, ctx.actor.user_id, notification_id, ctx.now)
    return NotificationResponse.model_validate(notification)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderingError)
async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
    """Map domain errors to their HTTP status and a structured body."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} rejected: invalid request body")
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "validation_failed",
            "message": "The given data was invalid.",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "internal_error",
            "message": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cafe_orders.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
