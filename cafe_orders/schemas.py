"""
Pydantic Schemas for Request/Response Validation

Covers the ordering core's HTTP surface:
- Order placement, listing and status changes
- Invitation redemption and guest sessions
- Invitation administration
- Notification polling
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from cafe_orders.models import NotificationType, OrderStatus, SizeOption, SugarLevel, UserRole


# =============================================================================
# ORDER REQUEST SCHEMAS
# =============================================================================

class OrderToppingCreate(BaseModel):
    topping_id: int = Field(..., examples=[3])


class OrderItemCreate(BaseModel):
    """Single item in an order."""
    product_size_id: int = Field(..., examples=[12])
    quantity: int = Field(..., ge=1, examples=[2])
    sugar_level: SugarLevel = Field(default=SugarLevel.FULL, examples=["50%"])
    toppings: List[OrderToppingCreate] = Field(default_factory=list)


class OrderCreate(BaseModel):
    """Request schema for placing a new order."""
    items: List[OrderItemCreate] = Field(..., min_length=1)
    customer_name: Optional[str] = Field(None, max_length=255, examples=["Sam"])

    # Guest context (taken from the guest's credential when present)
    session_id: Optional[str] = Field(None, max_length=64)
    table_number: Optional[str] = Field(None, max_length=10, examples=["5"])

    @field_validator('customer_name', 'table_number')
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None


class OrderStatusUpdate(BaseModel):
    """Validated by the state machine so unknown values map to a domain error."""
    order_status: str = Field(..., examples=["ready_for_pickup"])


# =============================================================================
# ORDER RESPONSE SCHEMAS
# =============================================================================

class ProductSummary(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class ProductSizeSummary(BaseModel):
    id: int
    size: SizeOption
    price: Decimal
    product: ProductSummary

    class Config:
        from_attributes = True


class ToppingSummary(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class OrderToppingResponse(BaseModel):
    id: int
    topping_id: int
    price: Decimal
    topping: ToppingSummary

    class Config:
        from_attributes = True


class OrderItemResponse(BaseModel):
    id: int
    product_size_id: int
    quantity: int
    unit_price: Decimal
    sugar_level: SugarLevel
    line_total: Decimal
    product_size: ProductSizeSummary
    toppings: List[OrderToppingResponse]

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    user_id: int
    session_id: Optional[str]
    customer_name: Optional[str]
    order_number: str
    total_price: Decimal
    status: OrderStatus
    items: List[OrderItemResponse]
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class OrderEnvelope(BaseModel):
    success: bool = True
    message: str
    order: OrderResponse


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderResponse]


# =============================================================================
# USERS & GUEST SESSIONS
# =============================================================================

class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    phone: Optional[str]
    role: UserRole
    table_number: Optional[str]
    guest_expires_at: Optional[datetime]

    class Config:
        from_attributes = True


class InvitationRedeem(BaseModel):
    """Only needed for table invitations issued without a table number."""
    table_number: Optional[str] = Field(None, examples=["5"])


class InvitationPreviewResponse(BaseModel):
    success: bool = True
    restaurant_name: str
    invited_by: Optional[str]
    role: UserRole
    table_number: Optional[str]
    expires_at: Optional[datetime]


class GuestSessionResponse(BaseModel):
    """Returned when an invitation is redeemed."""
    success: bool = True
    user: UserResponse
    token: str
    session_id: Optional[str] = None
    table_number: Optional[str] = None
    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = None


# =============================================================================
# INVITATION ADMINISTRATION
# =============================================================================

class InvitationCreate(BaseModel):
    """Issue a table QR invitation."""
    table_number: str = Field(..., examples=["5"])
    expires_at: Optional[datetime] = None


class AccountInvitationCreate(BaseModel):
    """Provision a named account with a single-use invitation."""
    name: str = Field(..., min_length=1, max_length=255, examples=["Robin Barista"])
    email: str = Field(..., examples=["robin@example.com"])
    phone: Optional[str] = Field(None, max_length=20)
    role: UserRole = Field(default=UserRole.STAFF)
    table_number: Optional[str] = None
    expires_at: Optional[datetime] = None

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError('Invalid email format')
        return v


class BulkRevokeRequest(BaseModel):
    tokens: List[str] = Field(..., min_length=1)


class InvitationResponse(BaseModel):
    id: int
    kind: str
    token: str
    role: UserRole
    table_number: Optional[str]
    invitation_url: str
    issuer_id: int
    expires_at: Optional[datetime]
    used_at: Optional[datetime]
    created_at: datetime


class InvitationListResponse(BaseModel):
    total: int
    invitations: List[InvitationResponse]


class CountResponse(BaseModel):
    success: bool = True
    message: str
    count: int


# =============================================================================
# NOTIFICATION SCHEMAS
# =============================================================================

class NotificationResponse(BaseModel):
    id: int
    user_id: int
    order_id: Optional[int]
    title: str
    message: str
    type: NotificationType
    read: bool
    created_at: datetime
    updated_at: Optional[datetime]

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int
    total_count: int


class UnreadCountResponse(BaseModel):
    unread_count: int


# =============================================================================
# SYSTEM
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    message: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    cache: str
    timestamp: datetime
