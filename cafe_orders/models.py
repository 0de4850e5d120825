"""
SQLAlchemy Database Models

Covers the ordering core of the cafe backend:
- Users (staff, customers and table-scoped guest accounts) and their credentials
- Guest sessions layered on top of a table's shared guest account
- Table invitations and legacy account invitations
- Catalog rows consumed read-only by order pricing
- Orders, order items, order toppings and notifications
"""

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from cafe_orders.database import Base


def utcnow() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are stored as UTC and always come back timezone-aware, including
    on backends (SQLite) that drop tzinfo.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _values(enum_cls):
    return [member.value for member in enum_cls]


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, enum.Enum):
    ADMIN = "admin"
    SHOP_OWNER = "shop_owner"
    STAFF = "staff"
    USER = "user"
    GUEST = "guest"


class OrderStatus(str, enum.Enum):
    """Order status workflow: preparing -> ready_for_pickup -> completed."""
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    COMPLETED = "completed"


class SugarLevel(str, enum.Enum):
    NONE = "0%"
    QUARTER = "25%"
    HALF = "50%"
    THREE_QUARTERS = "75%"
    FULL = "100%"


class SizeOption(str, enum.Enum):
    NONE = "none"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class InvitationKind(str, enum.Enum):
    TABLE = "table"
    ACCOUNT = "account"


class NotificationType(str, enum.Enum):
    ORDER = "order"
    GENERAL = "general"


# =============================================================================
# USERS & CREDENTIALS
# =============================================================================

class User(Base):
    """
    Any authenticated identity.

    Guest accounts are shared by everyone seated at one table. Only a live
    guest account carries ``table_number``; the unique constraint on that
    column is what keeps concurrent redemptions from creating two accounts
    for the same table.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(20), nullable=True, unique=True)
    role = Column(
        Enum(UserRole, values_callable=_values, native_enum=False, length=20),
        default=UserRole.USER,
        nullable=False,
        index=True,
    )
    table_number = Column(String(10), nullable=True, unique=True)
    guest_expires_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    tokens = relationship(
        "AccessToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_guest(self) -> bool:
        return self.role == UserRole.GUEST

    def guest_account_expired(self, now: datetime) -> bool:
        return self.guest_expires_at is not None and self.guest_expires_at <= now

    def __repr__(self):
        return f"<User #{self.id} - {self.role.value} - {self.name}>"


class AccessToken(Base):
    """
    Bearer credential bound to a user.

    Only the SHA-256 hash of the secret is stored. ``expires_at`` is the
    structured session expiry; guest credentials also mirror it in their
    ability list as ``expires_at:<unix-ts>`` for clients.
    """
    __tablename__ = "access_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True)
    abilities = Column(JSON, nullable=False, default=list)
    expires_at = Column(UTCDateTime, nullable=True, index=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="tokens")

    def can(self, ability: str) -> bool:
        return "*" in self.abilities or ability in self.abilities

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def __repr__(self):
        return f"<AccessToken #{self.id} - user {self.user_id} - {self.name}>"


class GuestSession(Base):
    """One diner's short-lived session on a table's shared guest account."""
    __tablename__ = "guest_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    table_number = Column(String(10), nullable=False, index=True)
    token_id = Column(Integer, ForeignKey("access_tokens.id", ondelete="CASCADE"), nullable=True)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    user = relationship("User")

    def __repr__(self):
        return f"<GuestSession {self.session_id} - table {self.table_number}>"


# =============================================================================
# INVITATIONS
# =============================================================================

class UserInvitation(Base):
    """
    Invitation token. Two lifecycles share this table:

    - TableInvitation: printed as a QR code on a table, redeemed by many
      diners until it expires; ``used_at`` is never set.
    - AccountInvitation: provisions one named account; single use.
    """
    __tablename__ = "user_invitations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(
        Enum(InvitationKind, values_callable=_values, native_enum=False, length=20),
        nullable=False,
    )
    issuer_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token = Column(String(64), nullable=False, unique=True)
    role = Column(
        Enum(UserRole, values_callable=_values, native_enum=False, length=20),
        nullable=False,
    )
    table_number = Column(String(10), nullable=True, index=True)
    expires_at = Column(UTCDateTime, nullable=True, index=True)
    used_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    issuer = relationship("User", foreign_keys=[issuer_id], lazy="joined")

    __mapper_args__ = {
        "polymorphic_on": kind,
        "with_polymorphic": "*",
    }

    single_use = False

    def is_valid(self, now: datetime) -> bool:
        return self.used_at is None and (self.expires_at is None or now < self.expires_at)

    def __repr__(self):
        return f"<{type(self).__name__} #{self.id} - table {self.table_number}>"


class TableInvitation(UserInvitation):
    """Multi-use table QR invitation."""
    __mapper_args__ = {
        "polymorphic_identity": InvitationKind.TABLE,
    }

    single_use = False  # shared by every diner at the table until it expires


class AccountInvitation(UserInvitation):
    """Single-use invitation that signs in a provisioned account."""
    invitee_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)

    invitee = relationship("User", foreign_keys=[invitee_id], lazy="joined")

    __mapper_args__ = {
        "polymorphic_identity": InvitationKind.ACCOUNT,
    }

    single_use = True


# =============================================================================
# CATALOG
# =============================================================================

class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)

    category = relationship("Category")
    sizes = relationship("ProductSize", back_populates="product", cascade="all, delete-orphan")
    product_toppings = relationship("ProductTopping", back_populates="product", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Product #{self.id} - {self.name}>"


class ProductSize(Base):
    __tablename__ = "product_sizes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    size = Column(
        Enum(SizeOption, values_callable=_values, native_enum=False, length=10),
        default=SizeOption.NONE,
        nullable=False,
    )
    price = Column(Numeric(10, 2), nullable=False)

    product = relationship("Product", back_populates="sizes")


class Topping(Base):
    """
    A topping. ``price`` is the list price shown in the catalog; orders are
    always priced from the product-specific ProductTopping row instead.
    """
    __tablename__ = "toppings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    is_available = Column(Boolean, default=True, nullable=False)


class ProductTopping(Base):
    __tablename__ = "product_toppings"
    __table_args__ = (
        UniqueConstraint("product_id", "topping_id", name="uq_product_topping"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    topping_id = Column(Integer, ForeignKey("toppings.id", ondelete="CASCADE"), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    product = relationship("Product", back_populates="product_toppings")
    topping = relationship("Topping")


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    A placed order.

    ``total_price`` is computed once at creation from the item snapshots and
    is never recomputed afterwards.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    session_id = Column(String(64), nullable=True, index=True)
    customer_name = Column(String(255), nullable=True)
    order_number = Column(String(20), nullable=False, unique=True)
    total_price = Column(Numeric(10, 2), nullable=False)
    status = Column(
        Enum(OrderStatus, values_callable=_values, native_enum=False, length=20),
        default=OrderStatus.PREPARING,
        nullable=False,
        index=True,
    )

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User")
    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderItem.id",
    )

    def __repr__(self):
        return f"<Order {self.order_number} - {self.status.value} - {self.total_price}>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_size_id = Column(Integer, ForeignKey("product_sizes.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)  # snapshot at order time
    sugar_level = Column(
        Enum(SugarLevel, values_callable=_values, native_enum=False, length=5),
        default=SugarLevel.FULL,
        nullable=False,
    )

    order = relationship("Order", back_populates="items")
    product_size = relationship("ProductSize")
    toppings = relationship(
        "OrderTopping",
        back_populates="order_item",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="OrderTopping.id",
    )

    @property
    def line_total(self) -> Decimal:
        toppings = sum((t.price for t in self.toppings), Decimal("0.00"))
        return (self.unit_price + toppings) * self.quantity


class OrderTopping(Base):
    __tablename__ = "order_toppings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True)
    topping_id = Column(Integer, ForeignKey("toppings.id"), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # product-topping price at order time

    order_item = relationship("OrderItem", back_populates="toppings")
    topping = relationship("Topping")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class Notification(Base):
    """Polled, per-user notification; written only by the ordering core."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(
        Enum(NotificationType, values_callable=_values, native_enum=False, length=20),
        default=NotificationType.GENERAL,
        nullable=False,
    )
    read = Column(Boolean, default=False, nullable=False, index=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Notification #{self.id} - user {self.user_id} - {self.title}>"
