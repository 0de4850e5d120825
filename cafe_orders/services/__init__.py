"""
                        Services Module

Contains the business logic of the ordering core. Every service works on an
``AsyncSession`` handed in by the caller.

Services:
    - catalog: read-only product/size/topping lookup
    - pricing: order price computation
    - orders: order placement and retrieval
    - order_state: order status state machine
    - guest_sessions: invitation redemption and guest session expiry
    - invitations: table and account invitation management
    - credentials: bearer token issuance and lookup
    - notifications: status-change notifications and the polling feed
"""
