"""Domain exceptions for the ordering core.

Each exception carries the HTTP status it maps to and an optional payload
that is merged into the JSON error body.
"""

from typing import Any, Optional


class OrderingError(Exception):
    """Base exception for all application errors."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "An internal error occurred", payload: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        rv = dict(self.payload or ())
        rv["success"] = False
        rv["error"] = self.code
        rv["message"] = self.message
        return rv


# =============================================================================
# VALIDATION (422)
# =============================================================================

class ValidationFailed(OrderingError):
    status_code = 422
    code = "validation_failed"


class EmptyOrder(ValidationFailed):
    code = "empty_order"

    def __init__(self):
        super().__init__("An order must contain at least one item")


class InvalidQuantity(ValidationFailed):
    code = "invalid_quantity"

    def __init__(self, quantity):
        super().__init__(f"Quantity must be at least 1 (got {quantity})")


class ProductUnavailable(ValidationFailed):
    code = "product_unavailable"

    def __init__(self, product_name: str):
        super().__init__(f"Product '{product_name}' is not available", {"product": product_name})


class ToppingUnavailable(ValidationFailed):
    code = "topping_unavailable"

    def __init__(self, topping_name: str):
        super().__init__(f"Topping '{topping_name}' is not available", {"topping": topping_name})


class ToppingNotOfferedForProduct(ValidationFailed):
    code = "topping_not_offered"

    def __init__(self, topping_name: str, product_name: str):
        super().__init__(
            f"Topping '{topping_name}' is not available for product '{product_name}'",
            {"topping": topping_name, "product": product_name},
        )


class MissingGuestContext(ValidationFailed):
    code = "missing_guest_context"

    def __init__(self):
        super().__init__("Guest orders require a session_id and table_number")


class TableNumberRequired(ValidationFailed):
    code = "table_number_required"

    def __init__(self):
        super().__init__("A table number is required to start a guest session")


class TableNumberTooLong(ValidationFailed):
    code = "table_number_too_long"

    def __init__(self, max_length: int):
        super().__init__(f"Table number may not be longer than {max_length} characters")


class InvalidStatus(ValidationFailed):
    code = "invalid_status"

    def __init__(self, status, detail: Optional[str] = None):
        super().__init__(detail or f"Invalid order status '{status}'", {"order_status": str(status)})


# =============================================================================
# AUTHENTICATION / AUTHORIZATION (401 / 403)
# =============================================================================

class Unauthenticated(OrderingError):
    status_code = 401
    code = "unauthenticated"

    def __init__(self, message: str = "Unauthenticated", payload: Optional[dict[str, Any]] = None):
        super().__init__(message, payload)


class SessionExpired(Unauthenticated):
    code = "session_expired"

    def __init__(self):
        super().__init__(
            "Guest session has expired. Please scan QR code again.",
            {"session_expired": True},
        )


class Unauthorized(OrderingError):
    status_code = 403
    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


# =============================================================================
# NOT FOUND (404)
# =============================================================================

class NotFound(OrderingError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Resource not found", payload: Optional[dict[str, Any]] = None):
        super().__init__(message, payload)


class InvitationNotFound(NotFound):
    code = "invitation_not_found"

    def __init__(self):
        super().__init__("Invalid invitation link.")


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_id):
        super().__init__(f"Order #{order_id} not found")


class CatalogEntryNotFound(NotFound):
    code = "catalog_entry_not_found"

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} #{entity_id} not found", {entity.lower().replace(" ", "_") + "_id": entity_id})


class NotificationNotFound(NotFound):
    code = "notification_not_found"

    def __init__(self, notification_id):
        super().__init__(f"Notification #{notification_id} not found")


# =============================================================================
# CONFLICTS (409 / 400)
# =============================================================================

class Conflict(OrderingError):
    status_code = 409
    code = "conflict"


class ActiveOrderExists(Conflict):
    code = "active_order_exists"

    def __init__(self, order):
        super().__init__(
            f"You already have an active order ({order.order_number}) for this session",
            {"existing_order": {"id": order.id, "order_number": order.order_number, "status": order.status.value}},
        )
        self.order = order


class TableAlreadyInvited(Conflict):
    code = "table_already_invited"

    def __init__(self, invitation):
        super().__init__(
            f"Table {invitation.table_number} already has an active invitation",
            {"existing_invitation": {
                "token": invitation.token,
                "table_number": invitation.table_number,
                "expires_at": invitation.expires_at.isoformat() if invitation.expires_at else None,
            }},
        )
        self.invitation = invitation


class InvitationInvalid(OrderingError):
    status_code = 400
    code = "invitation_invalid"

    def __init__(self):
        super().__init__("This invitation has expired or already been used.")


# =============================================================================
# INFRASTRUCTURE (500)
# =============================================================================

class OrderCreationFailed(OrderingError):
    status_code = 500
    code = "order_creation_failed"

    def __init__(self):
        super().__init__("Failed to create order")
